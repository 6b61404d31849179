"""Bounded FIFO of messages waiting for a usable connection."""

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Deque, List, Optional

from .exceptions import QueueCapacityError, TransportError
from .logging_config import get_logger
from .models import OfflineMessage, Priority


class OfflineQueue:
    """Holds outbound messages while no connection is usable.

    The queue never grows beyond ``capacity``; enqueueing into a full queue
    evicts the oldest entry. A message that fails delivery
    ``max_attempts`` times is dropped.
    """

    def __init__(self, capacity: int = 100, max_attempts: int = 3):
        self.capacity = capacity
        self.max_attempts = max_attempts
        self._messages: Deque[OfflineMessage] = deque()
        self._draining = False
        self._dropped = 0
        self._evicted = 0
        self._delivered = 0
        self.logger = get_logger(__name__)

    def enqueue(self, event: str, payload: Any = None,
                priority: Priority = Priority.NORMAL) -> Optional[OfflineMessage]:
        """Append a message, returning the evicted oldest entry if the queue was full."""
        self._messages.append(OfflineMessage(event=event, payload=payload, priority=priority))

        evicted = self._enforce_capacity()

        self.logger.debug(f"Queued offline message {event}, queue size: {len(self._messages)}")
        return evicted

    def _enforce_capacity(self) -> Optional[OfflineMessage]:
        evicted = None
        while len(self._messages) > self.capacity:
            evicted = self._messages.popleft()
            self._evicted += 1
            error = QueueCapacityError(self.capacity, evicted.event)
            self.logger.warning(error.message, extra={"event_type": error.error_code})
        return evicted

    async def drain(self, deliver: Callable[[OfflineMessage], Awaitable[bool]],
                    interval: float = 0.1) -> int:
        """Deliver queued messages oldest-first, ``interval`` seconds apart.

        ``deliver`` returns True once the message went out. On a failed
        delivery the message goes back to the head of the queue and the
        drain stops, so ordering is preserved for the next drain. Returns the
        number of messages delivered.
        """
        if self._draining or not self._messages:
            return 0

        self._draining = True
        delivered = 0
        try:
            self.logger.info(f"Draining offline queue: {len(self._messages)} messages")
            while self._messages:
                if delivered:
                    await asyncio.sleep(interval)
                    if not self._messages:
                        break

                message = self._messages.popleft()
                message.attempts += 1
                try:
                    sent = await deliver(message)
                except TransportError as e:
                    self.logger.warning(f"Redelivery of {message.event} failed: {e}")
                    sent = False

                if sent:
                    delivered += 1
                    self._delivered += 1
                    continue

                if message.attempts >= self.max_attempts:
                    self._dropped += 1
                    self.logger.warning(
                        f"Dropping offline message {message.event} after {message.attempts} failed deliveries"
                    )
                    continue

                self._messages.appendleft(message)
                self._enforce_capacity()
                break
        finally:
            self._draining = False

        if delivered:
            self.logger.info(f"Delivered {delivered} offline messages, {len(self._messages)} remaining")
        return delivered

    def messages(self) -> List[OfflineMessage]:
        """Snapshot of queued messages, oldest first."""
        return list(self._messages)

    def clear(self) -> int:
        count = len(self._messages)
        self._messages.clear()
        return count

    def stats(self):
        return {
            "size": len(self._messages),
            "capacity": self.capacity,
            "delivered": self._delivered,
            "evicted": self._evicted,
            "dropped": self._dropped,
            "draining": self._draining,
        }

    def __len__(self) -> int:
        return len(self._messages)
