"""
Unit tests for StreamConnection.
"""

import asyncio

import pytest

from marketstream.live.connection import (
    RATE_LIMITED_MESSAGE,
    RETRIES_EXHAUSTED_MESSAGE,
    StreamConnection,
)
from marketstream.live.config import ConnectionConfig
from marketstream.live.types import ConnectionState, GatewayMessage
from tests.unit.fixtures.fakes import FakeOpener, fast_connection_config, settle, wait_for

AUTH = {"connectionId": "conn-1"}


def _connection(opener: FakeOpener, **overrides: object) -> StreamConnection:
    return StreamConnection(fast_connection_config(**overrides), opener=opener, name="test")


class TestConnect:
    """Connect / disconnect lifecycle."""

    @pytest.mark.asyncio
    async def test_connect_reaches_connected(self) -> None:
        opener = FakeOpener()
        conn = _connection(opener)
        states: list[ConnectionState] = []
        conn.on_state_change(states.append)

        await conn.connect(AUTH)

        assert conn.state == ConnectionState.CONNECTED
        assert states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
        assert opener.auths == [AUTH]
        conn.disconnect()

    @pytest.mark.asyncio
    async def test_connect_same_auth_is_noop(self) -> None:
        opener = FakeOpener()
        conn = _connection(opener)

        await conn.connect(AUTH)
        await conn.connect(dict(AUTH))

        assert opener.calls == 1
        conn.disconnect()

    @pytest.mark.asyncio
    async def test_connect_new_auth_tears_down_first(self) -> None:
        """At most one live transport: a different auth closes the old one first."""
        opener = FakeOpener()
        conn = _connection(opener)

        await conn.connect(AUTH)
        first = opener.latest
        await conn.connect({"connectionId": "conn-2"})
        await conn.wait_closed()

        assert opener.calls == 2
        assert first.closed
        assert not opener.latest.closed
        assert conn.auth == {"connectionId": "conn-2"}
        conn.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_twice_leaves_nothing(self) -> None:
        opener = FakeOpener()
        conn = _connection(opener, heartbeat_interval_s=0.01)

        await conn.connect(AUTH)
        conn.disconnect()
        conn.disconnect()
        await conn.wait_closed()

        assert conn.state == ConnectionState.DISCONNECTED
        assert conn.active_task_count == 0
        assert opener.latest.closed
        assert opener.latest.close_calls == 1

    @pytest.mark.asyncio
    async def test_disconnect_when_never_connected(self) -> None:
        conn = _connection(FakeOpener())
        conn.disconnect()
        assert conn.state == ConnectionState.DISCONNECTED


class TestEmit:
    """Outbound frames."""

    @pytest.mark.asyncio
    async def test_emit_dropped_when_disconnected(self) -> None:
        conn = _connection(FakeOpener())
        assert conn.emit("subscribe:price", {"symbol": "BTCUSDT"}) is False

    @pytest.mark.asyncio
    async def test_emit_sends_when_connected(self) -> None:
        opener = FakeOpener()
        conn = _connection(opener)
        await conn.connect(AUTH)

        assert conn.emit("subscribe:price", {"connectionId": "conn-1", "symbol": "BTCUSDT"})
        await settle()

        assert opener.latest.sent_frames() == [
            ("subscribe:price", {"connectionId": "conn-1", "symbol": "BTCUSDT"})
        ]
        conn.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_flushes_queued_frames(self) -> None:
        """Unsubscribes emitted right before disconnect still reach the wire."""
        opener = FakeOpener()
        conn = _connection(opener)
        await conn.connect(AUTH)

        conn.emit("unsubscribe:price", {"connectionId": "conn-1", "symbol": "BTCUSDT"})
        conn.disconnect()
        await conn.wait_closed()

        assert opener.latest.sent_events() == ["unsubscribe:price"]


class TestInbound:
    """Inbound frame handling."""

    @pytest.mark.asyncio
    async def test_fan_out_to_handlers(self) -> None:
        opener = FakeOpener()
        conn = _connection(opener)
        first: list[GatewayMessage] = []
        second: list[GatewayMessage] = []
        conn.on_message("price:update", first.append)
        unregister = conn.on_message("price:update", second.append)
        await conn.connect(AUTH)

        opener.latest.push("price:update", {"price": 1})
        await settle()
        unregister()
        opener.latest.push("price:update", {"price": 2})
        await settle()

        assert [m.data["price"] for m in first] == [1, 2]
        assert [m.data["price"] for m in second] == [1]
        conn.disconnect()

    @pytest.mark.asyncio
    async def test_malformed_frame_does_not_break_stream(self) -> None:
        opener = FakeOpener()
        conn = _connection(opener)
        received: list[GatewayMessage] = []
        conn.on_message("pong", received.append)
        await conn.connect(AUTH)

        opener.latest.push_raw("<<not json>>")
        opener.latest.push("pong")
        await settle()

        assert len(received) == 1
        assert conn.router.stats.parse_errors == 1
        assert conn.state == ConnectionState.CONNECTED
        assert conn.get_health().last_pong_at is not None
        conn.disconnect()

    @pytest.mark.asyncio
    async def test_server_error_surfaces_message(self) -> None:
        opener = FakeOpener()
        conn = _connection(opener)
        await conn.connect(AUTH)

        opener.latest.push("error", {"message": "Symbol not supported"})
        await settle()

        assert conn.last_error == "Symbol not supported"
        assert conn.state == ConnectionState.CONNECTED
        assert not conn.halted
        conn.disconnect()


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_ping_sent_while_connected(self) -> None:
        opener = FakeOpener()
        conn = _connection(opener, heartbeat_interval_s=0.01)
        await conn.connect(AUTH)

        await wait_for(lambda: "ping" in opener.latest.sent_events())
        conn.disconnect()


class TestReconnect:
    """Backoff, replay trigger and failure."""

    @pytest.mark.asyncio
    async def test_transport_loss_reconnects(self) -> None:
        opener = FakeOpener()
        conn = _connection(opener)
        states: list[ConnectionState] = []
        conn.on_state_change(states.append)
        await conn.connect(AUTH)

        opener.latest.drop()
        await wait_for(lambda: opener.calls == 2 and conn.is_connected)

        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
            ConnectionState.CONNECTED,
        ]
        assert conn.reconnect_attempt == 0
        assert opener.transports[0].closed
        conn.disconnect()

    @pytest.mark.asyncio
    async def test_initial_failure_moves_to_reconnecting(self) -> None:
        """connect() never raises; a refused handshake retries in the background."""
        opener = FakeOpener(fail_times=1)
        conn = _connection(opener)

        await conn.connect(AUTH)
        assert conn.state == ConnectionState.RECONNECTING

        await wait_for(lambda: conn.is_connected)
        assert opener.calls == 2
        conn.disconnect()

    @pytest.mark.asyncio
    async def test_fails_after_max_attempts(self) -> None:
        opener = FakeOpener(always_fail=True)
        conn = _connection(opener, max_reconnect_attempts=2)

        await conn.connect(AUTH)
        await wait_for(lambda: conn.state == ConnectionState.FAILED)

        assert opener.calls == 3  # initial handshake + 2 retries
        assert conn.last_error == RETRIES_EXHAUSTED_MESSAGE
        assert conn.active_task_count == 0

        # failed is terminal until a manual connect
        await asyncio.sleep(0.05)
        assert opener.calls == 3

    @pytest.mark.asyncio
    async def test_manual_retry_after_failed(self) -> None:
        opener = FakeOpener(fail_times=10)
        conn = _connection(opener, max_reconnect_attempts=1)
        await conn.connect(AUTH)
        await wait_for(lambda: conn.state == ConnectionState.FAILED)

        opener.fail_times = 0
        await conn.reconnect()

        assert conn.state == ConnectionState.CONNECTED
        assert conn.reconnect_attempt == 0
        assert conn.last_error is None
        conn.disconnect()

    @pytest.mark.asyncio
    async def test_rate_limit_halts_reconnection(self) -> None:
        """A rate-limit error followed by transport loss ends in failed, no retries."""
        opener = FakeOpener()
        conn = _connection(opener)
        await conn.connect(AUTH)

        opener.latest.push("error", {"message": "Too many requests", "code": "RATE_LIMITED"})
        opener.latest.drop()
        await wait_for(lambda: conn.state == ConnectionState.FAILED)
        await asyncio.sleep(0.05)

        assert opener.calls == 1
        assert conn.halted
        assert conn.last_error == "Too many requests"
        assert conn.halt_error is not None
        assert conn.halt_error.code == "RATE_LIMITED"

        # manual retry clears the halt
        await conn.reconnect()
        assert conn.is_connected
        assert not conn.halted
        assert conn.halt_error is None
        conn.disconnect()

    @pytest.mark.asyncio
    async def test_rate_limit_while_reconnecting_cancels_retry(self) -> None:
        opener = FakeOpener()
        conn = _connection(opener, base_reconnect_delay_s=0.2, max_reconnect_delay_s=0.2)
        await conn.connect(AUTH)
        opener.latest.drop()
        await wait_for(lambda: conn.state == ConnectionState.RECONNECTING)
        conn._on_server_error({"message": "slow down", "status": 429})

        assert conn.state == ConnectionState.FAILED
        await asyncio.sleep(0.3)
        assert opener.calls == 1

    @pytest.mark.asyncio
    async def test_rate_limited_message_without_server_text(self) -> None:
        opener = FakeOpener()
        conn = _connection(opener)
        await conn.connect(AUTH)

        conn._halted = True
        conn._last_error = None
        opener.latest.drop()
        await wait_for(lambda: conn.state == ConnectionState.FAILED)

        assert conn.last_error == RATE_LIMITED_MESSAGE


class TestBackoff:
    def test_exponential_and_capped(self) -> None:
        conn = StreamConnection(ConnectionConfig(), opener=FakeOpener())
        delays = []
        for attempt in range(1, 6):
            conn._reconnect_attempt = attempt
            delays.append(conn._calculate_backoff_delay())
        assert delays == [3.0, 6.0, 12.0, 24.0, 30.0]

    def test_jitter_within_bounds(self) -> None:
        conn = StreamConnection(ConnectionConfig(reconnect_jitter=0.5), opener=FakeOpener())
        conn._reconnect_attempt = 1
        for _ in range(50):
            assert 1.5 <= conn._calculate_backoff_delay() <= 4.5
