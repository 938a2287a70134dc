"""
Unit tests for live types and gateway payload models.
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from marketstream.live.types import (
    SUBSCRIBE_EVENTS,
    UNSUBSCRIBE_EVENTS,
    ConnectionHealth,
    ConnectionState,
    OrderBookPayload,
    PricePayload,
    ServerError,
    StreamKind,
    SubscriptionKey,
    TradesPayload,
)


class TestSubscriptionKey:
    def test_hashable_and_equal(self) -> None:
        a = SubscriptionKey("conn-1", "BTCUSDT", StreamKind.PRICE)
        b = SubscriptionKey("conn-1", "BTCUSDT", StreamKind.PRICE)
        assert a == b
        assert len({a, b}) == 1

    def test_str(self) -> None:
        key = SubscriptionKey("conn-1", "BTCUSDT", StreamKind.ORDERBOOK)
        assert str(key) == "conn-1:BTCUSDT:orderbook"

    def test_event_tables_cover_every_kind(self) -> None:
        for kind in StreamKind:
            assert SUBSCRIBE_EVENTS[kind].value == f"subscribe:{kind.value}"
            assert UNSUBSCRIBE_EVENTS[kind].value == f"unsubscribe:{kind.value}"


class TestOrderBookPayload:
    def test_array_levels_coerced(self) -> None:
        """String numbers in [price, qty] arrays become floats."""
        payload = OrderBookPayload.model_validate(
            {
                "symbol": "BTCUSDT",
                "bids": [["16800.00", "1.5"]],
                "asks": [["16800.50", "1.0"]],
                "lastUpdateId": 160,
            }
        )
        assert payload.bids is not None and payload.bids[0].price == 16800.0
        assert payload.bids[0].quantity == 1.5
        assert payload.last_update_id == 160

    def test_object_levels_with_alias(self) -> None:
        payload = OrderBookPayload.model_validate({"asks": [{"price": "1", "qty": "2"}]})
        assert payload.asks is not None and payload.asks[0].quantity == 2.0
        assert payload.bids is None

    def test_to_fields_drops_absent_and_routing(self) -> None:
        """Absent sides stay out of the merge payload; symbol/connection id are routing only."""
        payload = OrderBookPayload.model_validate(
            {"symbol": "BTCUSDT", "connectionId": "c1", "bids": [["1", "2"]]}
        )
        fields = payload.to_fields()
        assert fields == {"bids": [{"price": 1.0, "quantity": 2.0}]}


class TestTradesPayload:
    def test_from_bare_list(self) -> None:
        payload = TradesPayload.from_data(
            [{"id": 1, "price": "100.5", "qty": "0.1", "side": "buy", "time": 1700000000000}]
        )
        trade = payload.trades[0]
        assert trade.id == "1"
        assert trade.price == 100.5
        assert trade.quantity == 0.1
        assert trade.timestamp == 1700000000000
        assert payload.symbol is None

    def test_from_object(self) -> None:
        payload = TradesPayload.from_data({"symbol": "ETHUSDT", "trades": []})
        assert payload.symbol == "ETHUSDT"
        assert payload.trades == []

    def test_invalid_trade(self) -> None:
        with pytest.raises(ValidationError):
            TradesPayload.from_data([{"id": 1, "price": "not-a-number", "qty": 1}])


class TestPricePayload:
    def test_aliases(self) -> None:
        payload = PricePayload.model_validate(
            {"symbol": "BTCUSDT", "price": "105", "change24h": "5", "changePercent24h": 5.0, "high24h": 110}
        )
        assert payload.to_fields() == {
            "price": 105.0,
            "change_24h": 5.0,
            "change_percent_24h": 5.0,
            "high_24h": 110.0,
        }

    def test_stats_only_ticker(self) -> None:
        payload = PricePayload.model_validate({"symbol": "BTCUSDT", "high24h": "120", "changePercent24h": 2.5})
        assert payload.price is None
        assert payload.to_fields() == {"high_24h": 120.0, "change_percent_24h": 2.5}

    @pytest.mark.parametrize(
        "raw",
        [1_700_000_000, 1_700_000_000_000, "1700000000000", "2023-11-14T22:13:20Z"],
    )
    def test_timestamp_normalised_to_ms(self, raw: object) -> None:
        assert PricePayload.model_validate({"price": 1, "timestamp": raw}).timestamp == 1_700_000_000_000

    def test_bad_timestamp_rejected(self) -> None:
        with pytest.raises(ValidationError):
            PricePayload.model_validate({"price": 1, "timestamp": "yesterday"})


class TestServerError:
    @pytest.mark.parametrize(
        "data",
        [{"code": "RATE_LIMITED"}, {"code": "rate_limited"}, {"status": 429}, {"code": 429}],
    )
    def test_rate_limit_detection(self, data: dict) -> None:
        assert ServerError.model_validate(data).is_rate_limit

    def test_plain_error(self) -> None:
        error = ServerError.model_validate({"message": "Symbol not found", "code": "NOT_FOUND"})
        assert not error.is_rate_limit
        assert error.message == "Symbol not found"


class TestConnectionHealth:
    def test_is_healthy(self) -> None:
        health = ConnectionHealth(state=ConnectionState.CONNECTED, url="http://x/market")
        assert health.is_healthy
        health.state = ConnectionState.RECONNECTING
        assert not health.is_healthy

    def test_uptime(self) -> None:
        health = ConnectionHealth(state=ConnectionState.CONNECTED, url="http://x/market")
        assert health.uptime_s is None
        health.connected_since = datetime.now(timezone.utc) - timedelta(seconds=5)
        assert health.uptime_s is not None and health.uptime_s >= 5
