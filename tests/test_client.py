"""End-to-end tests of the realtime client against an in-memory server."""

import asyncio
from unittest.mock import Mock

import pytest

from karaoke_realtime.client import RealtimeClient
from karaoke_realtime.sync.config import RealtimeConfig
from karaoke_realtime.sync.exceptions import ChannelClosed, ProtocolError
from karaoke_realtime.sync.merger import checksum
from karaoke_realtime.sync.models import TopicUpdate

from fakes import wait_until


def make_client(factory, config=None, **overrides):
    # Periodic audits would race the updates pushed by these tests
    overrides.setdefault("sync_check_enabled", False)
    config = config or RealtimeConfig.for_testing(**overrides)
    return RealtimeClient(config, channel_factory=factory)


def listen(client, *events):
    listeners = {event: Mock(name=event) for event in events}
    for event, listener in listeners.items():
        client.on(event, listener)
    return listeners


class TestOfflineDelivery:
    """Messages sent while disconnected wait in the offline queue."""

    def test_queued_messages_are_delivered_in_order_after_connect(self, factory, server):
        async def run_test():
            client = make_client(factory, drain_interval_seconds=0.02)
            loop = asyncio.get_running_loop()
            arrivals = []

            def record(channel, message):
                if message["event"] == "request_song":
                    arrivals.append((message["payload"]["n"], loop.time()))

            server.on_message = record

            for n in range(5):
                assert await client.send("request_song", {"n": n}) is False
            assert client.get_connection_status()["offline_queue_size"] == 5

            assert await client.connect("tok") is True
            assert await wait_until(lambda: len(arrivals) == 5)

            assert [n for n, _ in arrivals] == [0, 1, 2, 3, 4]
            gaps = [b - a for (_, a), (_, b) in zip(arrivals, arrivals[1:])]
            assert all(gap >= 0.019 for gap in gaps)
            assert client.get_connection_status()["offline_queue_size"] == 0
            await client.stop()

        asyncio.run(run_test())

    def test_send_when_connected_goes_out_immediately(self, factory, server):
        async def run_test():
            client = make_client(factory)
            await client.connect("tok")

            assert await client.send("request_song", {"title": "Africa"}) is True
            assert server.latest.events("request_song") == [{"title": "Africa"}]
            await client.stop()

        asyncio.run(run_test())

    def test_failed_send_is_retried(self, factory, server):
        async def run_test():
            client = make_client(factory)
            await client.connect("tok")
            channel = server.latest
            original = channel.send
            failures = {"left": 1}

            async def flaky_send(frame):
                if "request_song" in frame and failures["left"]:
                    failures["left"] -= 1
                    raise ChannelClosed(False, reason="connection reset")
                await original(frame)

            channel.send = flaky_send

            assert await client.send("request_song", {"title": "Jolene"}) is False
            assert await wait_until(lambda: channel.events("request_song") == [{"title": "Jolene"}])
            assert client.get_error_stats()["error_counts"] == {}
            await client.stop()

        asyncio.run(run_test())

    def test_failed_send_without_retry_is_dropped(self, factory, server):
        async def run_test():
            client = make_client(factory)
            await client.connect("tok")
            channel = server.latest
            original = channel.send

            async def failing_send(frame):
                if "vote" in frame:
                    raise ChannelClosed(False, reason="connection reset")
                await original(frame)

            channel.send = failing_send

            assert await client.send("vote", {"requestId": 3}, retry_on_fail=False) is False
            await asyncio.sleep(0.05)

            stats = client.get_error_stats()
            assert stats["error_counts"] == {"send_vote": 1}
            assert stats["offline_queue_size"] == 0
            assert stats["pending_retries"] == 0
            await client.stop()

        asyncio.run(run_test())

    def test_oversized_message_raises(self, factory):
        async def run_test():
            client = make_client(factory, max_payload_bytes=2048, compression_enabled=False)
            await client.connect("tok")

            with pytest.raises(ProtocolError):
                await client.send("request_song", {"note": "x" * 4096})
            await client.stop()

        asyncio.run(run_test())


class TestTopicUpdates:
    """Topic updates are merged and delivered as full state."""

    def test_snapshot_then_delta_delivers_full_state(self, factory, server):
        async def run_test():
            client = make_client(factory)
            listeners = listen(client, "queue_update")
            await client.connect("tok")

            server.latest.push("queue_update", {"eventId": 5, "data": [{"id": 1, "title": "Hello"}]})
            assert await wait_until(lambda: listeners["queue_update"].call_count == 1)

            server.latest.push("queue_update", {
                "scopeId": 5,
                "isIncremental": True,
                "changes": [{"action": "add", "item": {"id": 2, "title": "Zombie"}}],
            })
            assert await wait_until(lambda: listeners["queue_update"].call_count == 2)

            payload = listeners["queue_update"].call_args.args[0]
            expected = [{"id": 1, "title": "Hello"}, {"id": 2, "title": "Zombie"}]
            assert payload["data"] == expected
            assert payload["isIncremental"] is False
            assert payload["scopeId"] == "5"
            assert payload["checksum"] == checksum(expected)
            assert "changes" not in payload
            assert client.get_cached("queue_update", 5) == expected
            await client.stop()

        asyncio.run(run_test())

    def test_delta_without_baseline_requests_one_resync(self, factory, server):
        async def run_test():
            client = make_client(factory)
            listeners = listen(client, "queue_update", "resync_requested")
            await client.connect("tok")
            delta = {"scopeId": 9, "isIncremental": True, "changes": [{"action": "delete", "itemId": 1}]}

            server.latest.push("queue_update", delta)
            server.latest.push("queue_update", delta)

            assert await wait_until(lambda: listeners["resync_requested"].called)
            await asyncio.sleep(0.05)
            assert server.events("request_data_resync") == [
                {"type": "queue_update", "scopeId": "9", "reason": "missing_baseline"}
            ]
            listeners["queue_update"].assert_not_called()

            # The snapshot answering the resync completes it
            server.latest.push("queue_update", {"scopeId": 9, "data": []})
            assert await wait_until(lambda: listeners["queue_update"].called)
            assert client.get_connection_status()["sync_check"]["pending_resyncs"] == []
            await client.stop()

        asyncio.run(run_test())

    def test_integrity_failure_clears_topic_and_resyncs(self, factory, server):
        async def run_test():
            client = make_client(factory)
            listeners = listen(client, "request_update")
            await client.connect("tok")

            server.latest.push("request_update", {"data": [{"id": 1}]})
            assert await wait_until(lambda: listeners["request_update"].called)

            server.latest.push("request_update", {
                "isIncremental": True,
                "changes": [{"action": "add", "item": {"id": 2}}],
                "checksum": "not-the-right-digest",
            })

            assert await wait_until(lambda: server.events("request_data_resync"))
            assert server.events("request_data_resync")[0]["reason"] == "data_integrity_check_failed"
            assert client.get_cached("request_update") is None
            assert listeners["request_update"].call_count == 1
            await client.stop()

        asyncio.run(run_test())

    def test_resync_lost_with_connection_is_asked_again(self, factory, server):
        async def run_test():
            client = make_client(factory)
            await client.connect("tok")
            delta = {"scopeId": 5, "isIncremental": True, "changes": [{"action": "delete", "itemId": 1}]}

            first = server.latest
            first.push("queue_update", delta)
            assert await wait_until(lambda: first.events("request_data_resync"))

            first.drop()
            assert await wait_until(lambda: len(server.channels) == 2 and client.is_connected)
            second = server.latest
            second.push("queue_update", delta)

            assert await wait_until(lambda: second.events("request_data_resync"))
            assert second.events("request_data_resync") == [
                {"type": "queue_update", "scopeId": "5", "reason": "missing_baseline"}
            ]
            await client.stop()

        asyncio.run(run_test())

    def test_updates_are_not_dispatched_in_fallback(self, factory):
        async def run_test():
            client = make_client(factory, fallback_poll_interval_seconds=10.0)
            listeners = listen(client, "queue_update")
            client.resilience.enter_fallback("connection_given_up")

            client._on_message(None, TopicUpdate(event="queue_update", scopeId=1, data=[{"id": 1}]))

            listeners["queue_update"].assert_not_called()
            assert client.get_cached("queue_update", 1) is None
            client.resilience.cancel_timers()

        asyncio.run(run_test())

    def test_other_events_pass_through(self, factory, server):
        async def run_test():
            client = make_client(factory)
            listeners = listen(client, "system_notification")
            await client.connect("tok")

            server.latest.push("system_notification", {"text": "Last call"})

            assert await wait_until(lambda: listeners["system_notification"].called)
            listeners["system_notification"].assert_called_once_with({"text": "Last call"})
            await client.stop()

        asyncio.run(run_test())

    def test_unknown_message_kind_is_rejected(self, factory):
        client = make_client(factory)
        with pytest.raises(ProtocolError):
            client._on_message(None, object())

    def test_incremental_sync_request_carries_last_sync_time(self, factory, server):
        async def run_test():
            client = make_client(factory)
            listeners = listen(client, "queue_update")
            await client.connect("tok")
            server.latest.push("queue_update", {"scopeId": 5, "data": []})
            assert await wait_until(lambda: listeners["queue_update"].called)

            assert await client.request_incremental_sync("queue_update", 5) is True

            request = server.latest.events("request_incremental_sync")[0]
            assert request["type"] == "queue_update"
            assert request["scopeId"] == "5"
            assert request["since"] > 0
            await client.stop()

        asyncio.run(run_test())

    def test_clear_cache(self, factory, server):
        async def run_test():
            client = make_client(factory)
            listeners = listen(client, "queue_update")
            await client.connect("tok")
            server.latest.push("queue_update", {"scopeId": 1, "data": []})
            server.latest.push("queue_update", {"scopeId": 2, "data": []})
            assert await wait_until(lambda: listeners["queue_update"].call_count == 2)

            client.clear_cache("queue_update", 1)
            assert client.get_connection_status()["cached_topics"] == ["queue_update_2"]

            client.clear_cache()
            assert client.get_connection_status()["cached_topics"] == []
            await client.stop()

        asyncio.run(run_test())


class TestScopes:
    """Joined scopes survive reconnects."""

    def test_join_and_leave(self, factory, server):
        async def run_test():
            client = make_client(factory)
            await client.connect("tok")

            assert await client.join_scope("event", 5) is True
            assert server.latest.events("join_event") == [{"eventId": 5}]
            assert client.joined_scopes == [("event", "5")]

            assert await client.leave_scope("event", 5) is True
            assert server.latest.events("leave_event") == [{"eventId": 5}]
            assert client.joined_scopes == []
            await client.stop()

        asyncio.run(run_test())

    def test_scopes_are_rejoined_after_reconnect(self, factory, server):
        async def run_test():
            client = make_client(factory)
            await client.connect("tok")
            await client.join_scope("event", 5)

            server.latest.drop()

            assert await wait_until(
                lambda: len(server.channels) == 2 and server.channels[1].events("join_event")
            )
            rejoin = [m for m in server.channels[1].sent if m["event"] == "join_event"][0]
            assert rejoin["payload"] == {"eventId": 5}
            assert rejoin["priority"] == "high"
            await client.stop()

        asyncio.run(run_test())

    def test_join_while_disconnected_is_remembered(self, factory, server):
        async def run_test():
            client = make_client(factory)

            assert await client.join_scope("event", 8) is False
            await client.connect("tok")

            assert await wait_until(lambda: server.latest.events("join_event") == [{"eventId": 8}])
            await client.stop()

        asyncio.run(run_test())


class TestLifecycleEvents:
    """Connection events reach subscribers."""

    def test_connect_and_disconnect_events(self, factory):
        async def run_test():
            client = make_client(factory)
            listeners = listen(client, "connect", "disconnect")

            await client.connect("tok")
            listeners["connect"].assert_called_once()
            assert listeners["connect"].call_args.args[0]["connectionId"] == client.manager.connection.connection_id

            await client.disconnect()
            data = listeners["disconnect"].call_args.args[0]
            assert data["reason"] == "client disconnect"
            assert data["serverInitiated"] is False
            assert not client.auditor.running

        asyncio.run(run_test())

    def test_token_expired_event(self, factory, server):
        async def run_test():
            server.connect_error = "Token has expired"
            client = make_client(factory)
            listeners = listen(client, "token_expired")

            assert await client.connect("old") is False

            listeners["token_expired"].assert_called_once()
            assert listeners["token_expired"].call_args.args[0]["reason"] == "Token has expired"

            server.connect_error = None
            assert await client.update_credential("new") is True
            await client.stop()

        asyncio.run(run_test())

    def test_given_up_enters_fallback_and_recovers(self, factory, server):
        async def run_test():
            server.fail_opens = 100
            client = make_client(factory)
            listeners = listen(client, "given_up", "fallback_enabled", "fallback_disabled")

            await client.connect("tok")
            assert await wait_until(lambda: listeners["fallback_enabled"].called)
            listeners["given_up"].assert_called()
            assert listeners["fallback_enabled"].call_args.args[0]["context"] == "connection_given_up"
            assert client.get_connection_status()["fallback_mode"] is True

            assert await client.send("request_song", {"title": "Creep"}) is False

            server.fail_opens = 0
            assert await wait_until(lambda: listeners["fallback_disabled"].called)
            assert client.is_connected
            assert await wait_until(lambda: server.events("request_song") == [{"title": "Creep"}])
            await client.stop()

        asyncio.run(run_test())

    def test_server_close_gives_up_without_fallback(self, factory, server):
        async def run_test():
            client = make_client(factory)
            listeners = listen(client, "given_up", "disconnect", "fallback_enabled")
            await client.connect("tok")

            server.latest.server_close(4001, "session ended")

            assert await wait_until(lambda: listeners["given_up"].called)
            assert listeners["disconnect"].call_args.args[0]["serverInitiated"] is True
            listeners["fallback_enabled"].assert_not_called()

            client.reset_connection()
            assert await client.connect() is True
            await client.stop()

        asyncio.run(run_test())

    def test_pool_exhaustion_enters_fallback(self, factory, server):
        async def run_test():
            client = make_client(
                factory, pool_enabled=True, pool_size=2, pool_replace_delay_seconds=5.0,
                pool_health_check_interval_seconds=10.0
            )
            listeners = listen(client, "fallback_enabled", "connection_switched")
            await client.connect("tok")
            server.fail_opens = 100

            for channel in list(server.channels):
                channel.drop()

            assert await wait_until(lambda: listeners["fallback_enabled"].called)
            contexts = [c.args[0]["context"] for c in listeners["fallback_enabled"].call_args_list]
            assert contexts[0] == "all_pool_connections_failed"
            await client.stop()

        asyncio.run(run_test())

    def test_pool_switch_emits_event(self, factory, server):
        async def run_test():
            client = make_client(factory, pool_enabled=True, pool_size=2, pool_health_check_interval_seconds=10.0)
            listeners = listen(client, "connection_switched")
            await client.connect("tok")
            first = client.manager.connection

            first.channel.drop()

            assert await wait_until(lambda: listeners["connection_switched"].called)
            data = listeners["connection_switched"].call_args.args[0]
            assert data["previous"] == first.connection_id
            assert data["current"] == client.manager.connection.connection_id
            await client.stop()

        asyncio.run(run_test())


class TestFacade:

    def test_async_context_manager_disconnects(self, factory, server):
        async def run_test():
            async with make_client(factory) as client:
                await client.connect("tok")
                assert client.is_connected

            assert not client.is_connected
            assert server.latest.closed

        asyncio.run(run_test())

    def test_sync_check_runs_against_server(self, factory, server):
        async def run_test():
            client = make_client(factory, sync_check_enabled=False)
            listeners = listen(client, "queue_update")
            await client.connect("tok")
            server.latest.push("queue_update", {"scopeId": 5, "data": [{"id": 1}]})
            assert await wait_until(lambda: listeners["queue_update"].called)

            results = await client.trigger_sync_check()

            assert [r.matched for r in results] == [True]
            await client.stop()

        asyncio.run(run_test())

    def test_trigger_sync_check_requires_connection(self, factory):
        async def run_test():
            client = make_client(factory)
            assert await client.trigger_sync_check() == []

        asyncio.run(run_test())

    def test_status_reports_every_component(self, factory):
        async def run_test():
            client = make_client(factory)
            await client.connect("tok")
            await client.join_scope("event", 3)

            status = client.get_connection_status()

            assert status["connected"] is True
            assert status["state"] == "connected"
            assert status["fallback_mode"] is False
            assert status["joined_scopes"] == ["event_3"]
            assert "sync_check" in status and "codec" in status
            assert status["events"]["events_emitted"] >= 1
            assert status["events"]["listener_errors"] == 0
            await client.stop()

        asyncio.run(run_test())

    def test_runtime_options(self, factory):
        client = make_client(factory)

        client.set_compression_options(False, 4096)
        client.set_sync_check_options(True, 30.0)

        codec = client.get_connection_status()["codec"]
        assert codec["enabled"] is False
        assert codec["threshold"] == 4096
        assert client.auditor.enabled is True
        assert client.auditor.interval == 30.0

    def test_pool_can_be_enabled_and_disabled_while_connected(self, factory, server):
        async def run_test():
            client = make_client(factory)
            await client.connect("tok")
            original = client.manager.connection

            client.enable_connection_pool(2, "least-connections")
            assert await wait_until(lambda: len(server.open_channels()) == 2)
            assert client.get_connection_status()["pool"]["strategy"] == "least-connections"

            client.disable_connection_pool()

            assert client.get_connection_status()["pool"] == {"enabled": False}
            assert client.manager.connection is original
            assert await wait_until(lambda: len(server.open_channels()) == 1)
            await client.stop()

        asyncio.run(run_test())

    def test_enable_pool_rejects_unknown_strategy(self, factory):
        client = make_client(factory)
        with pytest.raises(ValueError):
            client.enable_connection_pool(3, "random")

    def test_reset_error_stats(self, factory):
        async def run_test():
            client = make_client(factory)
            await client.send("request_song", {})
            client.resilience.record_failure("connect", "down")

            client.reset_error_stats()

            stats = client.get_error_stats()
            assert stats["offline_queue_size"] == 0
            assert stats["error_counts"] == {}

        asyncio.run(run_test())
