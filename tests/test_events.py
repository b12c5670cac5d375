"""
Tests for the StreamManager event stream.

Most tests drive the manager through an in-memory transport factory so
drops and failed reconnects can be simulated precisely; the last one
runs against a real local websockets server.
"""

from __future__ import annotations

import asyncio
import json
import logging

import pytest
from websockets.asyncio.server import serve

from render_runtime.constants import WEBSOCKET_ENDPOINTS
from render_runtime.events import StreamConnectionError, StreamManager, wait_for_event
from render_runtime.types import ConnectionState, StreamEventType


_CLOSED = object()


class FakeTransport:
    """Minimal stand-in for a websockets client connection."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, raw: str) -> None:
        self.sent.append(json.loads(raw))

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(_CLOSED)

    def feed(self, message) -> None:
        self._inbox.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def drop(self) -> None:
        """Simulate the server going away."""
        self._inbox.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Transport factory that can be told to refuse the next N connections."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.transports: list[FakeTransport] = []
        self.fail_next = 0

    async def __call__(self, url: str, **kwargs) -> FakeTransport:
        self.calls.append((url, kwargs))
        if self.fail_next > 0:
            self.fail_next -= 1
            raise OSError("connection refused")
        transport = FakeTransport()
        self.transports.append(transport)
        return transport


def _manager(connector: FakeConnector, **kwargs) -> StreamManager:
    kwargs.setdefault("reconnect_interval_ms", 0)
    return StreamManager("rk_test", transport_factory=connector, **kwargs)


def _event(event_type: str = "job:completed", **data) -> dict:
    return {"type": event_type, "timestamp": "2025-01-01T00:00:00Z", "data": data}


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


# ============================================================
#  Connecting
# ============================================================


@pytest.mark.asyncio
async def test_connect_sends_bearer_and_uses_group_endpoint() -> None:
    connector = FakeConnector()
    manager = _manager(connector)

    await manager.connect("nodes")

    url, kwargs = connector.calls[0]
    assert url == WEBSOCKET_ENDPOINTS["nodes"]
    assert kwargs["additional_headers"] == {"Authorization": "Bearer rk_test"}
    assert manager.is_active()
    assert manager.state is ConnectionState.CONNECTED

    await manager.disconnect()


@pytest.mark.asyncio
async def test_connect_failure_raises_then_retries() -> None:
    connector = FakeConnector()
    connector.fail_next = 1
    manager = _manager(connector)

    with pytest.raises(StreamConnectionError):
        await manager.connect()

    await _wait_until(manager.is_active)
    assert len(connector.calls) == 2
    assert manager.reconnect_attempts == 0
    await manager.disconnect()


@pytest.mark.asyncio
async def test_connect_failure_without_reconnect_stays_down() -> None:
    connector = FakeConnector()
    connector.fail_next = 1
    manager = _manager(connector, reconnect=False)

    with pytest.raises(StreamConnectionError):
        await manager.connect()
    await asyncio.sleep(0.02)

    assert manager.state is ConnectionState.DISCONNECTED
    assert not manager.is_active()
    assert len(connector.calls) == 1


@pytest.mark.asyncio
async def test_disconnect_is_idempotent() -> None:
    connector = FakeConnector()
    manager = _manager(connector)
    await manager.connect()

    await manager.disconnect()
    await manager.disconnect()

    assert connector.transports[0].closed
    assert manager.state is ConnectionState.DISCONNECTED


# ============================================================
#  Channels
# ============================================================


@pytest.mark.asyncio
async def test_channel_subscribe_sent_when_connected() -> None:
    connector = FakeConnector()
    manager = _manager(connector)
    await manager.connect()

    await manager.subscribe_to_job("job-1")

    assert connector.transports[0].sent == [{"type": "subscribe", "channel": "job:job-1"}]
    await manager.disconnect()


@pytest.mark.asyncio
async def test_channels_added_offline_are_sent_on_connect() -> None:
    connector = FakeConnector()
    manager = _manager(connector)

    await manager.subscribe_to_wallet("wallet-addr")
    await manager.subscribe_to_network_stats()
    await manager.connect()

    channels = [msg["channel"] for msg in connector.transports[0].sent]
    assert sorted(channels) == ["network:stats", "wallet:wallet-addr"]
    await manager.disconnect()


@pytest.mark.asyncio
async def test_all_channels_replayed_after_reconnect() -> None:
    connector = FakeConnector()
    manager = _manager(connector)
    await manager.connect()

    await manager.subscribe_to_job("job-1")
    await manager.subscribe_to_job("job-1")
    await manager.subscribe_to_node("node-9")
    await manager.subscribe_to_wallet("wallet-addr")
    await manager.subscribe_to_network_stats()

    connector.transports[0].drop()
    await _wait_until(lambda: len(connector.transports) == 2 and manager.is_active())

    replayed = [msg["channel"] for msg in connector.transports[1].sent]
    assert sorted(replayed) == sorted(
        ["job:job-1", "node:node-9", "wallet:wallet-addr", "network:stats"]
    )
    assert all(msg["type"] == "subscribe" for msg in connector.transports[1].sent)
    await manager.disconnect()


@pytest.mark.asyncio
async def test_unsubscribe_from_job_is_not_replayed() -> None:
    connector = FakeConnector()
    manager = _manager(connector)
    await manager.connect()
    await manager.subscribe_to_job("job-1")
    await manager.subscribe_to_job("job-2")

    await manager.unsubscribe_from_job("job-1")

    assert connector.transports[0].sent[-1] == {"type": "unsubscribe", "channel": "job:job-1"}
    assert manager.subscriptions == ("job:job-2",)

    connector.transports[0].drop()
    await _wait_until(lambda: len(connector.transports) == 2 and manager.is_active())
    assert connector.transports[1].sent == [{"type": "subscribe", "channel": "job:job-2"}]
    await manager.disconnect()


# ============================================================
#  Dispatch
# ============================================================


@pytest.mark.asyncio
async def test_events_reach_typed_and_global_handlers_in_order() -> None:
    connector = FakeConnector()
    manager = _manager(connector)
    calls = []

    manager.subscribe(StreamEventType.JOB_COMPLETED, lambda e: calls.append(("typed", e.data)))
    manager.subscribe_all(lambda e: calls.append(("all", e.type)))
    manager.subscribe("job:failed", lambda e: calls.append(("failed", e.data)))
    await manager.connect()

    connector.transports[0].feed(_event("job:completed", jobId="job-1"))
    await _wait_until(lambda: len(calls) == 2)

    assert calls == [("typed", {"jobId": "job-1"}), ("all", "job:completed")]
    await manager.disconnect()


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others(caplog) -> None:
    connector = FakeConnector()
    manager = _manager(connector)
    received = []

    def broken(event) -> None:
        raise RuntimeError("handler bug")

    manager.subscribe("job:progress", broken)
    manager.subscribe("job:progress", received.append)
    await manager.connect()

    connector.transports[0].feed(_event("job:progress", progress=10))
    await _wait_until(lambda: len(received) == 1)

    assert received[0].data == {"progress": 10}
    assert manager.is_active()
    assert "Error in event handler for job:progress" in caplog.text
    await manager.disconnect()


@pytest.mark.asyncio
async def test_async_handlers_are_awaited() -> None:
    connector = FakeConnector()
    manager = _manager(connector)
    received = []

    async def handler(event) -> None:
        await asyncio.sleep(0)
        received.append(event.type)

    manager.subscribe("ai:completed", handler)
    await manager.connect()
    connector.transports[0].feed(_event("ai:completed"))
    await _wait_until(lambda: received == ["ai:completed"])
    await manager.disconnect()


@pytest.mark.asyncio
async def test_malformed_messages_are_dropped() -> None:
    connector = FakeConnector()
    manager = _manager(connector)
    received = []
    manager.subscribe_all(received.append)
    await manager.connect()

    connector.transports[0].feed("not json at all")
    connector.transports[0].feed({"data": "no type or timestamp"})
    connector.transports[0].feed(_event("node:online", nodeId="n-1"))
    await _wait_until(lambda: len(received) == 1)

    assert received[0].type == "node:online"
    assert manager.is_active()
    await manager.disconnect()


@pytest.mark.asyncio
async def test_duplicate_handler_registered_once() -> None:
    connector = FakeConnector()
    manager = _manager(connector)
    received = []
    manager.subscribe("job:started", received.append)
    manager.subscribe("job:started", received.append)
    await manager.connect()

    connector.transports[0].feed(_event("job:started"))
    connector.transports[0].feed(_event("job:completed"))
    await _wait_until(lambda: len(received) >= 1)
    await asyncio.sleep(0.02)

    assert len(received) == 1
    await manager.disconnect()


@pytest.mark.asyncio
async def test_handler_changes_apply_from_next_event() -> None:
    """Handlers removed mid-dispatch still see the current event."""
    connector = FakeConnector()
    manager = _manager(connector)
    second_calls = []

    def second(event) -> None:
        second_calls.append(event.data)

    def first(event) -> None:
        manager.unsubscribe("job:progress", second)

    manager.subscribe("job:progress", first)
    manager.subscribe("job:progress", second)
    await manager.connect()

    connector.transports[0].feed(_event("job:progress", n=1))
    connector.transports[0].feed(_event("job:progress", n=2))
    await asyncio.sleep(0.05)

    assert second_calls == [{"n": 1}]
    await manager.disconnect()


def test_unknown_event_type_rejected() -> None:
    manager = StreamManager("rk_test")
    with pytest.raises(ValueError):
        manager.subscribe("job:exploded", lambda e: None)


@pytest.mark.asyncio
async def test_unsubscribe_unknown_handler_is_noop() -> None:
    manager = StreamManager("rk_test")
    manager.unsubscribe("job:completed", lambda e: None)
    manager.unsubscribe_all(lambda e: None)


# ============================================================
#  Reconnection
# ============================================================


@pytest.mark.asyncio
async def test_reconnect_counter_resets_after_success() -> None:
    connector = FakeConnector()
    manager = _manager(connector, max_reconnect_attempts=5)
    await manager.connect()

    connector.fail_next = 2
    connector.transports[0].drop()
    await _wait_until(lambda: len(connector.transports) == 2 and manager.is_active())

    assert len(connector.calls) == 4
    assert manager.reconnect_attempts == 0
    await manager.disconnect()


@pytest.mark.asyncio
async def test_reconnect_gives_up_after_max_attempts(caplog) -> None:
    connector = FakeConnector()
    manager = _manager(connector, max_reconnect_attempts=3)
    await manager.connect()

    connector.fail_next = 100
    connector.transports[0].drop()
    await _wait_until(lambda: manager.state is ConnectionState.DISCONNECTED)

    assert manager.reconnect_attempts == 3
    assert len(connector.calls) == 1 + 3
    assert "Max reconnection attempts" in caplog.text

    await asyncio.sleep(0.02)
    assert len(connector.calls) == 1 + 3


@pytest.mark.asyncio
async def test_no_reconnect_after_disconnect() -> None:
    connector = FakeConnector()
    manager = _manager(connector)
    await manager.connect()
    transport = connector.transports[0]

    await manager.disconnect()
    transport.drop()
    await asyncio.sleep(0.02)

    assert manager.reconnect_attempts == 0
    assert manager.state is ConnectionState.DISCONNECTED
    assert len(connector.calls) == 1


@pytest.mark.asyncio
async def test_disconnect_cancels_pending_reconnect() -> None:
    connector = FakeConnector()
    manager = _manager(connector, reconnect_interval_ms=60_000)
    await manager.connect()

    connector.transports[0].drop()
    await _wait_until(lambda: manager.state is ConnectionState.RECONNECTING)
    await manager.disconnect()

    assert manager.state is ConnectionState.DISCONNECTED
    assert len(connector.calls) == 1


@pytest.mark.asyncio
async def test_reconnect_disabled() -> None:
    connector = FakeConnector()
    manager = _manager(connector, reconnect=False)
    await manager.connect()

    connector.transports[0].drop()
    await _wait_until(lambda: manager.state is ConnectionState.DISCONNECTED)

    assert len(connector.calls) == 1
    assert manager.reconnect_attempts == 0


# ============================================================
#  wait_for_event
# ============================================================


@pytest.mark.asyncio
async def test_wait_for_event_matches_predicate() -> None:
    connector = FakeConnector()
    manager = _manager(connector)
    await manager.connect()

    waiter = asyncio.create_task(
        wait_for_event(
            manager,
            "job:completed",
            predicate=lambda e: e.data.get("jobId") == "job-2",
            timeout_ms=2000,
        )
    )
    await asyncio.sleep(0)
    connector.transports[0].feed(_event("job:completed", jobId="job-1"))
    connector.transports[0].feed(_event("job:completed", jobId="job-2"))

    event = await waiter
    assert event.data["jobId"] == "job-2"
    assert not manager._handlers["job:completed"]
    await manager.disconnect()


@pytest.mark.asyncio
async def test_wait_for_event_timeout() -> None:
    manager = StreamManager("rk_test")

    with pytest.raises(asyncio.TimeoutError):
        await wait_for_event(manager, "job:completed", timeout_ms=20)

    assert not manager._handlers["job:completed"]


# ============================================================
#  Real transport
# ============================================================


@pytest.mark.asyncio
async def test_real_websocket_round_trip() -> None:
    """Handshake header, subscribe directive and event delivery over websockets."""
    seen_headers = {}
    seen_messages = []

    async def handler(ws) -> None:
        seen_headers["authorization"] = ws.request.headers.get("Authorization")
        seen_messages.append(json.loads(await ws.recv()))
        await ws.send(json.dumps(_event("job:completed", jobId="job-1")))
        await ws.wait_closed()

    async with serve(handler, "127.0.0.1", 0) as server:
        port = next(iter(server.sockets)).getsockname()[1]
        manager = StreamManager("rk_live", endpoint=f"ws://127.0.0.1:{port}")
        await manager.subscribe_to_job("job-1")

        received = []
        manager.subscribe("job:completed", received.append)
        await manager.connect()
        await _wait_until(lambda: len(received) == 1)
        await manager.disconnect()

    assert seen_headers["authorization"] == "Bearer rk_live"
    assert seen_messages == [{"type": "subscribe", "channel": "job:job-1"}]
    assert received[0].data == {"jobId": "job-1"}
