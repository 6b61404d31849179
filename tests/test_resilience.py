"""Tests for the offline queue, retry budgets and fallback mode."""

import asyncio
import random
from unittest.mock import AsyncMock, Mock

from hypothesis import given, settings, strategies as st

from karaoke_realtime.sync.config import RealtimeConfig
from karaoke_realtime.sync.exceptions import ConnectionFailedError
from karaoke_realtime.sync.offline_queue import OfflineQueue
from karaoke_realtime.sync.resilience import ResilienceController

from fakes import wait_until


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestOfflineQueue:
    """Bounded FIFO with capped redelivery."""

    @given(st.integers(min_value=1, max_value=20), st.integers(min_value=0, max_value=60))
    @settings(max_examples=50)
    def test_queue_never_exceeds_capacity_property(self, capacity, count):
        queue = OfflineQueue(capacity=capacity)
        for i in range(count):
            queue.enqueue("request_song", {"n": i})
            assert len(queue) <= capacity

        kept = [m.payload["n"] for m in queue.messages()]
        assert kept == list(range(max(0, count - capacity), count))

    def test_overflow_evicts_oldest(self):
        queue = OfflineQueue(capacity=2)
        queue.enqueue("a")
        queue.enqueue("b")
        evicted = queue.enqueue("c")

        assert evicted.event == "a"
        assert [m.event for m in queue.messages()] == ["b", "c"]
        assert queue.stats()["evicted"] == 1

    def test_drain_delivers_in_order_with_spacing(self):
        async def run_test():
            queue = OfflineQueue()
            for i in range(5):
                queue.enqueue("request_song", {"n": i})

            loop = asyncio.get_running_loop()
            delivered_at = []

            async def deliver(message):
                delivered_at.append((message.payload["n"], loop.time()))
                return True

            assert await queue.drain(deliver, interval=0.02) == 5
            assert [n for n, _ in delivered_at] == [0, 1, 2, 3, 4]
            gaps = [b - a for (_, a), (_, b) in zip(delivered_at, delivered_at[1:])]
            assert all(gap >= 0.019 for gap in gaps)
            assert len(queue) == 0

        asyncio.run(run_test())

    def test_failed_delivery_stops_drain_and_keeps_order(self):
        async def run_test():
            queue = OfflineQueue()
            queue.enqueue("first")
            queue.enqueue("second")

            deliver = AsyncMock(side_effect=ConnectionFailedError("not connected"))
            assert await queue.drain(deliver, interval=0) == 0

            assert deliver.await_count == 1
            assert [m.event for m in queue.messages()] == ["first", "second"]
            assert queue.messages()[0].attempts == 1

        asyncio.run(run_test())

    def test_message_dropped_after_max_attempts(self):
        async def run_test():
            queue = OfflineQueue(max_attempts=3)
            queue.enqueue("doomed")
            queue.enqueue("next")

            async def deliver(message):
                return message.event != "doomed"

            await queue.drain(deliver, interval=0)
            await queue.drain(deliver, interval=0)
            assert [m.event for m in queue.messages()] == ["doomed", "next"]

            delivered = await queue.drain(deliver, interval=0)
            assert delivered == 1
            assert len(queue) == 0
            assert queue.stats()["dropped"] == 1

        asyncio.run(run_test())

    def test_drain_is_single_flight(self):
        async def run_test():
            queue = OfflineQueue()
            queue.enqueue("a")
            queue.enqueue("b")
            started = asyncio.Event()

            async def deliver(message):
                started.set()
                await asyncio.sleep(0.01)
                return True

            first = asyncio.create_task(queue.drain(deliver, interval=0))
            await started.wait()
            assert await queue.drain(deliver, interval=0) == 0
            assert await first == 2

        asyncio.run(run_test())


class TestResilienceController:
    """Retry eligibility, fallback escalation and recovery."""

    def test_retry_delay_formula(self):
        config = RealtimeConfig(retry_base_delay_seconds=1.0, retry_max_delay_seconds=30.0)
        controller = ResilienceController(config, Mock(), rng=random.Random(7))

        for count in range(1, 10):
            nominal = 2 ** (count - 1)
            delay = controller.retry_delay(count)
            assert min(nominal, 30.0) <= delay <= min(nominal * 1.3, 30.0)

    def test_failures_within_min_interval_are_not_retried(self):
        async def run_test():
            clock = FakeClock()
            config = RealtimeConfig.for_testing(retry_min_interval_seconds=5.0)
            controller = ResilienceController(config, Mock(), clock=clock)
            action = AsyncMock()

            assert controller.record_failure("send_request_song", "boom", action) is True
            clock.now += 1
            assert controller.record_failure("send_request_song", "boom", action) is False
            clock.now += 5
            assert controller.record_failure("send_request_song", "boom", action) is True

            await wait_until(lambda: action.await_count >= 1)
            controller.cancel_timers()

        asyncio.run(run_test())

    def test_retry_budget_is_exhausted_after_five(self):
        async def run_test():
            config = RealtimeConfig.for_testing(fallback_threshold=20)
            controller = ResilienceController(config, Mock())
            action = AsyncMock()

            results = [controller.record_failure("connect", "down", action) for _ in range(7)]

            assert results == [True] * 5 + [False] * 2
            controller.cancel_timers()

        asyncio.run(run_test())

    def test_scheduled_retry_runs_action(self):
        async def run_test():
            controller = ResilienceController(RealtimeConfig.for_testing(), Mock())
            action = AsyncMock()

            controller.record_failure("send_join_event", "closed", action)

            assert await wait_until(lambda: action.await_count == 1)
            assert controller.stats()["pending_retries"] == 0

        asyncio.run(run_test())

    def test_success_clears_record(self):
        controller = ResilienceController(RealtimeConfig.for_testing(), Mock())
        controller.record_failure("connect", "down")
        controller.record_success("connect")
        assert controller.stats()["error_counts"] == {}

    def test_threshold_enters_fallback_once(self):
        async def run_test():
            emit = Mock()
            controller = ResilienceController(RealtimeConfig.for_testing(fallback_threshold=10), emit)

            for _ in range(12):
                controller.record_failure("connect", "down")

            assert controller.in_fallback
            fallback_events = [c for c in emit.call_args_list if c.args[0] == "fallback_enabled"]
            assert len(fallback_events) == 1
            assert fallback_events[0].args[1]["context"] == "connect"
            controller.cancel_timers()

        asyncio.run(run_test())

    def test_poll_loop_exits_fallback_and_drains(self):
        async def run_test():
            emit = Mock()
            controller = ResilienceController(RealtimeConfig.for_testing(), emit)
            delivered = []
            connected = {"up": False}

            async def reconnect():
                return connected["up"]

            async def deliver(message):
                delivered.append(message.event)
                return True

            controller.attach(reconnect, deliver)
            controller.enter_fallback("all_pool_connections_failed")
            controller.enqueue("request_song", {"title": "Wonderwall"})

            # Draining is suspended while in fallback
            assert await controller.drain_offline_queue() == 0

            await asyncio.sleep(0.12)
            assert controller.in_fallback

            connected["up"] = True
            assert await wait_until(lambda: not controller.in_fallback)
            assert delivered == ["request_song"]

            names = [c.args[0] for c in emit.call_args_list]
            assert names == ["fallback_enabled", "fallback_disabled"]
            assert controller.stats()["error_counts"] == {}

        asyncio.run(run_test())

    def test_reset_clears_everything(self):
        async def run_test():
            emit = Mock()
            controller = ResilienceController(RealtimeConfig.for_testing(), emit)
            controller.enqueue("a")
            controller.enter_fallback("connect")
            controller.record_failure("connect", "down")

            controller.reset()

            stats = controller.stats()
            assert stats["fallback_mode"] is False
            assert stats["offline_queue_size"] == 0
            assert stats["error_counts"] == {}
            assert emit.call_args_list[-1].args[0] == "fallback_disabled"

        asyncio.run(run_test())
