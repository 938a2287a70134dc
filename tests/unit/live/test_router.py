"""
Unit tests for the EventRouter and frame codec.
"""

import orjson
import pytest

from marketstream.live.errors import MessageParseError
from marketstream.live.router import EventRouter, decode_frame, encode_frame
from marketstream.live.types import GatewayMessage


class TestFrameCodec:
    """Tests for encode_frame / decode_frame."""

    def test_encode_with_data(self) -> None:
        frame = encode_frame("subscribe:price", {"connectionId": "c1", "symbol": "BTCUSDT"})
        assert orjson.loads(frame) == {
            "event": "subscribe:price",
            "data": {"connectionId": "c1", "symbol": "BTCUSDT"},
        }

    def test_encode_without_data(self) -> None:
        assert orjson.loads(encode_frame("ping")) == {"event": "ping"}

    def test_decode_object_form(self) -> None:
        msg = decode_frame('{"event": "price:update", "data": {"price": 1}}', recv_ts=123)
        assert msg == GatewayMessage(event="price:update", data={"price": 1}, recv_ts=123)

    def test_decode_array_form(self) -> None:
        msg = decode_frame('["pong"]', recv_ts=1)
        assert msg.event == "pong"
        assert msg.data is None

    @pytest.mark.parametrize("raw", ["not json", '{"data": 1}', "[]", "42"])
    def test_decode_rejects(self, raw: str) -> None:
        with pytest.raises(MessageParseError):
            decode_frame(raw, recv_ts=0)


class TestEventRouter:
    """Tests for EventRouter."""

    @pytest.fixture
    def router(self) -> EventRouter:
        """Create a fresh router for each test."""
        return EventRouter()

    def test_fan_out_in_registration_order(self, router: EventRouter) -> None:
        """Every handler for an event runs, in registration order."""
        calls: list[str] = []
        router.register("price:update", lambda m: calls.append("first"))
        router.register("price:update", lambda m: calls.append("second"))

        router.route(decode_frame('{"event": "price:update", "data": {}}', recv_ts=1))

        assert calls == ["first", "second"]
        assert router.stats.routed_messages == 1
        assert router.stats.by_event == {"price:update": 1}

    def test_unregister(self, router: EventRouter) -> None:
        calls: list[GatewayMessage] = []
        unregister = router.register("pong", calls.append)
        unregister()
        unregister()  # idempotent

        router.route(decode_frame('{"event": "pong"}', recv_ts=1))

        assert calls == []
        assert router.handler_count() == 0
        assert router.stats.dropped_messages == 1

    def test_handler_error_isolated(self, router: EventRouter) -> None:
        """A failing handler does not stop the next one."""
        received: list[GatewayMessage] = []

        def boom(msg: GatewayMessage) -> None:
            raise RuntimeError("boom")

        router.register("trades:update", boom)
        router.register("trades:update", received.append)

        router.route(decode_frame('{"event": "trades:update", "data": []}', recv_ts=1))

        assert len(received) == 1
        assert router.stats.handler_errors == 1

    def test_handler_count(self, router: EventRouter) -> None:
        router.register("a", lambda m: None)
        router.register("a", lambda m: None)
        router.register("b", lambda m: None)
        assert router.handler_count("a") == 2
        assert router.handler_count() == 3
        router.clear()
        assert router.handler_count() == 0
