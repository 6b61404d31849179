"""In-process event dispatcher decoupling the transport from its consumers."""

from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from ..sync.logging_config import get_logger


Listener = Callable[[Any], None]

logger = get_logger(__name__)


class EventDispatcher:
    """Named-channel publish/subscribe with synchronous fan-out.

    A listener that raises is logged and skipped; the remaining listeners
    for the same event still receive it.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._metrics = {
            "events_emitted": 0,
            "listener_errors": 0,
        }

    def on(self, event: str, listener: Listener) -> None:
        """Register ``listener`` for ``event``."""
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Optional[Listener] = None) -> None:
        """Remove one listener, or all listeners of ``event`` when none is given."""
        if listener is None:
            self._listeners.pop(event, None)
            return

        listeners = self._listeners.get(event)
        if not listeners:
            return
        try:
            listeners.remove(listener)
        except ValueError:
            return
        if not listeners:
            del self._listeners[event]

    def emit(self, event: str, data: Any = None) -> int:
        """Deliver ``data`` to every listener of ``event``; returns how many ran cleanly."""
        self._metrics["events_emitted"] += 1
        delivered = 0

        # Listeners may unsubscribe while being called
        for listener in list(self._listeners.get(event, ())):
            try:
                listener(data)
                delivered += 1
            except Exception as e:
                self._metrics["listener_errors"] += 1
                logger.error(f"Listener for {event} raised: {e}", exc_info=True)

        return delivered

    def get_metrics(self) -> Dict[str, Any]:
        return {
            **self._metrics,
            "events": sorted(self._listeners),
            "total_listeners": sum(len(listeners) for listeners in self._listeners.values()),
        }
