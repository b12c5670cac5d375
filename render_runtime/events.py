"""
Real-time event stream for the Render Network Runtime SDK.

Owns a single WebSocket connection to one stream endpoint, keeps the
set of channels the caller wants, replays that set after every
(re)connect, and fans inbound events out to registered handlers.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Coroutine

from pydantic import ValidationError
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from render_runtime.constants import WEBSOCKET_ENDPOINTS
from render_runtime.types import (
    ChannelGroup,
    ConnectionState,
    StreamConfig,
    StreamEvent,
    StreamEventType,
)

logger = logging.getLogger(__name__)

# Type alias for event handlers
EventHandler = Callable[[StreamEvent], Coroutine[Any, Any, None] | None]
# Called as factory(url, additional_headers=...) and awaited for an open transport
TransportFactory = Callable[..., Awaitable[Any]]


class StreamConnectionError(ConnectionError):
    """The stream transport could not be opened."""


def _event_key(event_type: StreamEventType | str) -> str:
    return StreamEventType(event_type).value


class StreamManager:
    """Manages one WebSocket stream, its channel subscriptions and handlers.

    Reconnection is bounded: after ``max_reconnect_attempts`` consecutive
    failures the manager logs an error and stays disconnected.
    :meth:`disconnect` always wins over a pending reconnect.
    """

    def __init__(
        self,
        api_key: str,
        *,
        endpoint: str | None = None,
        reconnect: bool = True,
        reconnect_interval_ms: int = 5000,
        max_reconnect_attempts: int = 10,
        logger: logging.Logger | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self._api_key = api_key
        self._endpoint = endpoint
        self._auto_reconnect = reconnect
        self._reconnect_interval = reconnect_interval_ms / 1000.0
        self._max_reconnect_attempts = max_reconnect_attempts
        self._logger = logger or logging.getLogger(__name__)
        self._transport_factory = transport_factory or ws_connect

        self._handlers: dict[str, dict[EventHandler, None]] = {}
        self._global_handlers: dict[EventHandler, None] = {}
        self._subscriptions: dict[str, None] = {}

        self._ws: Any | None = None
        self._listen_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._state = ConnectionState.DISCONNECTED
        self._should_reconnect = True
        self._reconnect_attempts = 0
        self._channel_group: ChannelGroup = "jobs"

    @classmethod
    def from_config(
        cls,
        api_key: str,
        config: StreamConfig,
        **kwargs: Any,
    ) -> StreamManager:
        return cls(
            api_key,
            endpoint=config.endpoint,
            reconnect=config.reconnect,
            reconnect_interval_ms=config.reconnect_interval_ms,
            max_reconnect_attempts=config.max_reconnect_attempts,
            **kwargs,
        )

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        """Consecutive reconnect attempts since the last successful connect."""
        return self._reconnect_attempts

    @property
    def subscriptions(self) -> tuple[str, ...]:
        """Channels that are (re)subscribed on every connect."""
        return tuple(self._subscriptions)

    def is_active(self) -> bool:
        """Whether the transport is currently open."""
        return self._state is ConnectionState.CONNECTED

    # ---- Connection lifecycle ----

    async def connect(self, channel_group: ChannelGroup = "jobs") -> None:
        """Open the stream for ``channel_group``.

        Raises:
            StreamConnectionError: If the transport could not be opened. When
                reconnection is enabled, bounded retries are scheduled anyway.
        """
        self._should_reconnect = True
        await self._cancel_reconnect()
        try:
            await self._open(channel_group)
        except StreamConnectionError:
            # The caller still sees the failure; retries follow in the background
            self._schedule_reconnect()
            raise

    async def disconnect(self) -> None:
        """Close the stream and stop any automatic reconnection."""
        self._should_reconnect = False
        await self._cancel_reconnect()
        await self._teardown()
        if self._state is not ConnectionState.DISCONNECTED:
            self._logger.info("Disconnected from %s stream", self._channel_group)
        self._state = ConnectionState.DISCONNECTED

    async def _open(self, channel_group: ChannelGroup) -> None:
        url = self._endpoint or WEBSOCKET_ENDPOINTS[channel_group]
        await self._teardown()
        self._channel_group = channel_group
        self._state = ConnectionState.CONNECTING

        try:
            ws = await self._transport_factory(
                url,
                additional_headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except Exception as exc:
            self._state = ConnectionState.DISCONNECTED
            raise StreamConnectionError(f"Could not connect to {url}: {exc}") from exc

        if self._state is not ConnectionState.CONNECTING:
            # disconnect() ran while the handshake was in flight
            await ws.close()
            raise StreamConnectionError(f"Disconnected while connecting to {url}")

        self._ws = ws
        self._state = ConnectionState.CONNECTED
        self._reconnect_attempts = 0
        self._logger.info("Connected to %s stream at %s", channel_group, url)

        # Replay every channel before the listener starts reading
        for channel in list(self._subscriptions):
            await self._send({"type": "subscribe", "channel": channel})

        self._listen_task = asyncio.create_task(self._listen_loop(ws))

    async def _teardown(self) -> None:
        task, self._listen_task = self._listen_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception:
                self._logger.debug("Error while closing stream transport", exc_info=True)

    async def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ---- Reconnection ----

    def _on_transport_closed(self, ws: Any) -> None:
        """Transport for ``ws`` went away; ignored unless it is the live one."""
        if ws is not self._ws:
            return
        self._ws = None
        self._listen_task = None
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if not self._should_reconnect or not self._auto_reconnect:
            self._state = ConnectionState.DISCONNECTED
            return

        if self._reconnect_attempts >= self._max_reconnect_attempts:
            self._state = ConnectionState.DISCONNECTED
            self._logger.error(
                "Max reconnection attempts (%d) reached for %s stream; giving up",
                self._max_reconnect_attempts,
                self._channel_group,
            )
            return

        self._reconnect_attempts += 1
        self._state = ConnectionState.RECONNECTING
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after_delay(self._reconnect_attempts)
        )

    async def _reconnect_after_delay(self, attempt: int) -> None:
        await asyncio.sleep(self._reconnect_interval)
        if not self._should_reconnect:
            return

        self._logger.info(
            "Reconnecting to %s stream (attempt %d/%d)",
            self._channel_group,
            attempt,
            self._max_reconnect_attempts,
        )
        try:
            await self._open(self._channel_group)
        except StreamConnectionError as exc:
            self._logger.warning("Reconnection failed: %s", exc)
            self._schedule_reconnect()

    # ---- Handlers ----

    def subscribe(self, event_type: StreamEventType | str, handler: EventHandler) -> None:
        """Register a handler for a specific event type.

        Raises:
            ValueError: If ``event_type`` is not a known event tag.
        """
        self._handlers.setdefault(_event_key(event_type), {})[handler] = None

    def unsubscribe(
        self, event_type: StreamEventType | str, handler: EventHandler | None = None
    ) -> None:
        """Remove a handler (or all handlers) for an event type."""
        key = _event_key(event_type)
        if handler is None:
            self._handlers.pop(key, None)
        else:
            self._handlers.get(key, {}).pop(handler, None)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Register a handler for all event types."""
        self._global_handlers[handler] = None

    def unsubscribe_all(self, handler: EventHandler) -> None:
        self._global_handlers.pop(handler, None)

    # ---- Channels ----

    async def subscribe_to_job(self, job_id: str) -> None:
        await self._add_channel(f"job:{job_id}")

    async def unsubscribe_from_job(self, job_id: str) -> None:
        channel = f"job:{job_id}"
        self._subscriptions.pop(channel, None)
        if self.is_active():
            await self._send({"type": "unsubscribe", "channel": channel})

    async def subscribe_to_node(self, node_id: str) -> None:
        await self._add_channel(f"node:{node_id}")

    async def subscribe_to_wallet(self, address: str) -> None:
        await self._add_channel(f"wallet:{address}")

    async def subscribe_to_network_stats(self) -> None:
        await self._add_channel("network:stats")

    async def _add_channel(self, channel: str) -> None:
        self._subscriptions[channel] = None
        if self.is_active():
            await self._send({"type": "subscribe", "channel": channel})

    async def _send(self, payload: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None or not self.is_active():
            return
        try:
            await ws.send(json.dumps(payload))
        except ConnectionClosed:
            self._logger.warning(
                "Stream closed before %s for %s could be sent",
                payload.get("type"),
                payload.get("channel"),
            )

    # ---- Dispatch ----

    async def _listen_loop(self, ws: Any) -> None:
        """Read messages until the transport closes, then hand over to reconnect."""
        try:
            async for raw in ws:
                await self._handle_message(raw)
        except ConnectionClosed as exc:
            self._logger.warning("Stream connection lost: %s", exc)
        except Exception:
            self._logger.exception("Stream listener crashed")
        self._on_transport_closed(ws)

    async def _handle_message(self, raw: str | bytes) -> None:
        try:
            event = StreamEvent.model_validate_json(raw)
        except ValidationError:
            self._logger.warning("Dropping malformed stream message: %.200r", raw)
            return
        await self._dispatch(event)

    async def _dispatch(self, event: StreamEvent) -> None:
        """Dispatch an event to all matching handlers."""
        handlers = list(self._handlers.get(event.type, ()))
        handlers.extend(self._global_handlers)

        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                self._logger.exception("Error in event handler for %s", event.type)


async def wait_for_event(
    manager: StreamManager,
    event_type: StreamEventType | str,
    predicate: Callable[[StreamEvent], bool] | None = None,
    timeout_ms: int | None = None,
) -> StreamEvent:
    """Wait for the first ``event_type`` event accepted by ``predicate``.

    The temporary handler is always removed, including on timeout.

    Raises:
        asyncio.TimeoutError: If no matching event arrives in time.
    """
    future: asyncio.Future[StreamEvent] = asyncio.get_running_loop().create_future()

    def _handler(event: StreamEvent) -> None:
        if future.done():
            return
        if predicate is None or predicate(event):
            future.set_result(event)

    manager.subscribe(event_type, _handler)
    try:
        timeout = timeout_ms / 1000.0 if timeout_ms is not None else None
        return await asyncio.wait_for(future, timeout)
    finally:
        manager.unsubscribe(event_type, _handler)
