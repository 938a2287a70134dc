"""
StreamConnection - one transport to the market gateway namespace.

Handles the connection lifecycle including:
- Handshake with websocket -> long-poll fallback (see transport.py)
- Bounded exponential backoff reconnection
- Heartbeat pings while connected
- Fan-out of decoded gateway events to registered handlers
- Rate-limit halting of reconnection

State machine:
    [DISCONNECTED] --connect()--> [CONNECTING] --ok--> [CONNECTED]
    [CONNECTING]   --fail------> [RECONNECTING]
    [CONNECTED]    --lost------> [RECONNECTING] --ok--> [CONNECTED]
    [RECONNECTING] --attempts exhausted / rate limited--> [FAILED]
    any            --disconnect()--> [DISCONNECTED]
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine, Mapping, Optional

from pydantic import ValidationError

from marketstream.live.config import ConnectionConfig
from marketstream.live.errors import MessageParseError, RateLimitError
from marketstream.live.router import EventRouter, MessageHandler, decode_frame, encode_frame
from marketstream.live.transport import Transport, TransportOpener, open_transport
from marketstream.live.types import (
    ConnectionHealth,
    ConnectionState,
    GatewayEvent,
    GatewayMessage,
    ServerError,
)

logger = logging.getLogger(__name__)

StateListener = Callable[[ConnectionState], None]

RETRIES_EXHAUSTED_MESSAGE = "Unable to establish real-time connection."
RATE_LIMITED_MESSAGE = "Real-time connection halted: rate limited by gateway."


class StreamConnection:
    """
    Owns exactly one transport handle to the gateway.

    The connection never raises into its callers for transport problems:
    failures become state (``reconnecting``/``failed``) plus ``last_error``.
    Outbound frames are only accepted while connected; anything emitted
    while disconnected is dropped, and subscription replay on ``connected``
    is the caller's job (see SubscriptionManager).

    Usage:
        conn = StreamConnection(ConnectionConfig(base_url="https://api.example.com"))
        unsubscribe = conn.on_message("price:update", handle_price)
        await conn.connect({"connectionId": "abc"})
        conn.emit("subscribe:price", {"connectionId": "abc", "symbol": "BTCUSDT"})
        ...
        unsubscribe()
        conn.disconnect()
    """

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        opener: TransportOpener = open_transport,
        name: str = "stream",
    ) -> None:
        self._config = config
        self._opener = opener
        self._name = name

        self._state = ConnectionState.DISCONNECTED
        self._auth: Optional[dict[str, str]] = None
        self._transport: Optional[Transport] = None
        self._outbound: Optional[asyncio.Queue[str]] = None

        self._router = EventRouter(name=f"{name}_router")
        self._state_listeners: list[StateListener] = []

        # Tasks
        self._receive_task: Optional[asyncio.Task[None]] = None
        self._writer_task: Optional[asyncio.Task[None]] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._closing: set[asyncio.Task[None]] = set()

        # Bumped on every teardown; stale tasks compare against it and bail out
        self._generation = 0

        # Reconnection state
        self._reconnect_attempt = 0
        self._halted = False
        self._halt_error: Optional[RateLimitError] = None

        # Metrics
        self._message_count = 0
        self._error_count = 0
        self._last_error: Optional[str] = None
        self._connected_at: Optional[datetime] = None
        self._last_pong_at: Optional[datetime] = None

    # --- Properties ---

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def auth(self) -> Optional[dict[str, str]]:
        return dict(self._auth) if self._auth is not None else None

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def reconnect_attempt(self) -> int:
        return self._reconnect_attempt

    @property
    def halted(self) -> bool:
        return self._halted

    @property
    def halt_error(self) -> Optional[RateLimitError]:
        """The rate-limit error that halted reconnection, if any."""
        return self._halt_error

    @property
    def router(self) -> EventRouter:
        return self._router

    @property
    def active_task_count(self) -> int:
        """Live receive/writer/heartbeat/reconnect tasks (0 once torn down)."""
        tasks = (self._receive_task, self._writer_task, self._heartbeat_task, self._reconnect_task)
        return sum(1 for t in tasks if t is not None and not t.done())

    # --- Registration ---

    def on_message(self, event: str, handler: MessageHandler) -> Callable[[], None]:
        """Register a handler for a gateway event; returns an unregister function."""
        return self._router.register(event, handler)

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        """Register a state listener; returns an unregister function."""
        self._state_listeners.append(listener)

        def _unregister() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return _unregister

    def _set_state(self, new_state: ConnectionState) -> None:
        old_state = self._state
        self._state = new_state
        if old_state == new_state:
            return

        logger.debug(f"[{self._name}] State: {old_state.value} -> {new_state.value}")
        for listener in list(self._state_listeners):
            try:
                listener(new_state)
            except Exception as e:
                logger.warning(f"[{self._name}] State listener error: {e}")

    # --- Lifecycle ---

    async def connect(self, auth: Mapping[str, str]) -> None:
        """
        Connect to the gateway with the given handshake auth.

        Idempotent for the same auth while connecting, connected or
        reconnecting. A different auth tears down the current handle first.
        From ``failed`` the attempt counter and any rate-limit halt are reset.
        """
        auth = dict(auth)
        active = (
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
        )
        if self._state in active and auth == self._auth:
            logger.debug(f"[{self._name}] Already {self._state.value}, connect() ignored")
            return

        if self._state != ConnectionState.DISCONNECTED or self._transport is not None:
            self._teardown()

        self._auth = auth
        self._reconnect_attempt = 0
        self._halted = False
        self._halt_error = None
        self._last_error = None

        generation = self._generation
        self._set_state(ConnectionState.CONNECTING)
        if not await self._handshake(generation):
            if generation == self._generation:
                self._schedule_reconnect()

    def disconnect(self) -> None:
        """
        Tear down the transport and every timer. Safe to call repeatedly.

        Frames already queued (e.g. unsubscribe messages) are flushed before
        the transport is closed.
        """
        if self._state == ConnectionState.DISCONNECTED and self._transport is None:
            return
        logger.info(f"[{self._name}] Disconnecting")
        self._teardown()
        self._set_state(ConnectionState.DISCONNECTED)

    async def reconnect(self) -> None:
        """Manual retry: reset attempts, drop the current handle and connect again."""
        auth = self._auth
        self.disconnect()
        if auth is not None:
            await self.connect(auth)

    async def wait_closed(self) -> None:
        """Wait until transports handed off by disconnect() have closed."""
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)

    def emit(self, event: str, payload: Any = None) -> bool:
        """
        Send an event if connected. Returns False (and drops it) otherwise.
        """
        if self._state != ConnectionState.CONNECTED or self._outbound is None:
            logger.debug(f"[{self._name}] Dropped {event}: not connected")
            return False
        self._outbound.put_nowait(encode_frame(event, payload))
        return True

    # --- Internals ---

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task[None]:
        return asyncio.get_running_loop().create_task(coro, name=f"{self._name}_{name}")

    async def _handshake(self, generation: int) -> bool:
        """Open a transport. Returns True when no reconnect is needed."""
        try:
            transport = await self._opener(self._config, self._auth or {})
        except Exception as e:
            self._error_count += 1
            self._last_error = str(e)
            logger.warning(f"[{self._name}] Handshake failed: {e}")
            return False

        if generation != self._generation:
            # disconnect() or a new connect() won the race
            self._close_later(transport, None, None)
            return True

        self._transport = transport
        self._outbound = asyncio.Queue()
        self._reconnect_attempt = 0
        self._last_error = None
        self._connected_at = datetime.now(timezone.utc)

        self._receive_task = self._spawn(self._receive_loop(generation, transport), "receive")
        self._writer_task = self._spawn(self._writer_loop(transport, self._outbound), "writer")
        self._heartbeat_task = self._spawn(self._heartbeat_loop(), "heartbeat")

        logger.info(
            f"[{self._name}] Connected to {self._config.url} via {getattr(transport, 'name', '?')}"
        )
        self._set_state(ConnectionState.CONNECTED)
        return True

    def _schedule_reconnect(self) -> None:
        if self._halted:
            self._fail(RATE_LIMITED_MESSAGE)
            return
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_task = self._spawn(self._reconnect_loop(self._generation), "reconnect")

    async def _reconnect_loop(self, generation: int) -> None:
        try:
            while generation == self._generation:
                self._reconnect_attempt += 1
                if self._reconnect_attempt > self._config.max_reconnect_attempts:
                    self._fail(RETRIES_EXHAUSTED_MESSAGE)
                    return

                delay = self._calculate_backoff_delay()
                logger.warning(
                    f"[{self._name}] Reconnect attempt {self._reconnect_attempt}/"
                    f"{self._config.max_reconnect_attempts} in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

                if generation != self._generation:
                    return
                if self._halted:
                    self._fail(RATE_LIMITED_MESSAGE)
                    return
                if await self._handshake(generation):
                    return
        except asyncio.CancelledError:
            logger.debug(f"[{self._name}] Reconnect loop cancelled")
            raise

    def _calculate_backoff_delay(self) -> float:
        """Exponential backoff base * 2^(attempt-1), capped, with optional jitter."""
        delay = self._config.base_reconnect_delay_s * (2 ** (self._reconnect_attempt - 1))
        delay = min(delay, self._config.max_reconnect_delay_s)

        jitter = self._config.reconnect_jitter
        if jitter:
            jitter_range = delay * jitter
            delay += random.uniform(-jitter_range, jitter_range)

        return float(max(0.0, delay))

    def _fail(self, reason: str) -> None:
        logger.error(f"[{self._name}] Giving up: {reason}")
        # a halting server error keeps its own message
        if not self._halted or self._last_error is None:
            self._last_error = reason
        self._reconnect_task = None
        self._set_state(ConnectionState.FAILED)

    async def _receive_loop(self, generation: int, transport: Transport) -> None:
        try:
            async for raw in transport.receive():
                if generation != self._generation:
                    return
                self._message_count += 1
                self._on_frame(raw)
        except asyncio.CancelledError:
            logger.debug(f"[{self._name}] Receive loop cancelled")
            raise
        except Exception as e:
            self._error_count += 1
            self._last_error = str(e)
            logger.error(f"[{self._name}] Receive loop error: {e}")

        if generation == self._generation:
            logger.info(f"[{self._name}] Connection lost, initiating reconnect")
            self._teardown()
            self._schedule_reconnect()

    async def _writer_loop(self, transport: Transport, queue: asyncio.Queue[str]) -> None:
        while True:
            text = await queue.get()
            try:
                await transport.send(text)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._error_count += 1
                logger.warning(f"[{self._name}] Send failed: {e}")

    async def _heartbeat_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._config.heartbeat_interval_s)
                self.emit(GatewayEvent.PING.value)
        except asyncio.CancelledError:
            pass

    def _on_frame(self, raw: str) -> None:
        try:
            message = decode_frame(raw, int(time.time() * 1000))
        except MessageParseError as e:
            self._router.stats.parse_errors += 1
            logger.warning(f"[{self._name}] Dropped malformed frame: {e}")
            return
        self._handle_internal(message)
        self._router.route(message)

    def _handle_internal(self, message: GatewayMessage) -> None:
        if message.event == GatewayEvent.PONG.value:
            self._last_pong_at = datetime.now(timezone.utc)
        elif message.event == GatewayEvent.ERROR.value:
            self._on_server_error(message.data)

    def _on_server_error(self, data: Any) -> None:
        try:
            if isinstance(data, dict):
                error = ServerError.model_validate(data)
            else:
                error = ServerError(message=str(data) if data is not None else "Unknown gateway error")
        except ValidationError:
            error = ServerError()

        self._error_count += 1
        self._last_error = error.message
        logger.error(f"[{self._name}] Server error: {error.message} (code={error.code})")

        if error.is_rate_limit and not self._halted:
            self._halted = True
            self._halt_error = RateLimitError(error.message, code=error.code, component=self._name)
            logger.error(f"[{self._name}] Rate limited; reconnection halted until manual retry")
            if self._state == ConnectionState.RECONNECTING:
                self._cancel(self._reconnect_task)
                self._fail(RATE_LIMITED_MESSAGE)

    def _cancel(self, task: Optional[asyncio.Task[None]]) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _teardown(self) -> None:
        """Release the transport and all tasks, synchronously."""
        self._generation += 1

        self._cancel(self._reconnect_task)
        self._cancel(self._heartbeat_task)
        self._cancel(self._receive_task)
        writer = self._writer_task

        transport, queue = self._transport, self._outbound
        self._reconnect_task = None
        self._heartbeat_task = None
        self._receive_task = None
        self._writer_task = None
        self._transport = None
        self._outbound = None
        self._connected_at = None

        if transport is not None:
            self._close_later(transport, queue, writer)
        else:
            self._cancel(writer)

    def _close_later(
        self,
        transport: Transport,
        queue: Optional[asyncio.Queue[str]],
        writer: Optional[asyncio.Task[None]],
    ) -> None:
        try:
            task = self._spawn(self._drain_and_close(transport, queue, writer), "close")
        except RuntimeError:
            logger.warning(f"[{self._name}] No running loop; transport left to garbage collection")
            return
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _drain_and_close(
        self,
        transport: Transport,
        queue: Optional[asyncio.Queue[str]],
        writer: Optional[asyncio.Task[None]],
    ) -> None:
        if writer is not None and not writer.done():
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass

        if queue is not None and not transport.closed:
            while not queue.empty():
                try:
                    await transport.send(queue.get_nowait())
                except Exception as e:
                    logger.debug(f"[{self._name}] Flush on close failed: {e}")
                    break

        try:
            await transport.close()
        except Exception as e:
            logger.warning(f"[{self._name}] Error closing transport: {e}")

    def get_health(self) -> ConnectionHealth:
        return ConnectionHealth(
            state=self._state,
            url=self._config.url,
            connection_id=(self._auth or {}).get("connectionId"),
            transport=getattr(self._transport, "name", None),
            connected_since=self._connected_at,
            reconnect_attempt=self._reconnect_attempt,
            message_count=self._message_count,
            error_count=self._error_count,
            last_error=self._last_error,
            last_pong_at=self._last_pong_at,
            halted=self._halted,
        )
