"""
Payload Handlers for gateway events.

Handlers validate and coerce duck-typed gateway payloads into the typed
models from ``types.py`` before anything reaches the cache:
- OrderBookHandler: orderbook:snapshot / orderbook:update
- TradesHandler: trades:snapshot / trades:update
- PriceHandler: price:update / ticker:update

A malformed payload is counted and logged; it never propagates into the
receive loop.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Optional, TypeVar

from pydantic import BaseModel, ValidationError

from marketstream.live.errors import MessageParseError
from marketstream.live.types import (
    GatewayMessage,
    OrderBookPayload,
    PricePayload,
    TradesPayload,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)
M = TypeVar("M", bound=BaseModel)


@dataclass
class HandlerStats:
    """Statistics for a payload handler."""

    messages_received: int = 0
    messages_processed: int = 0
    messages_skipped: int = 0
    parse_errors: int = 0
    by_symbol: dict[str, int] = field(default_factory=dict)


def _validate(model: type[M], data: Any, expected_type: str) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise MessageParseError(
            f"Invalid {expected_type} payload: {e.error_count()} error(s)",
            expected_type=expected_type,
            details={"errors": [err["loc"] for err in e.errors()]},
        ) from e


class BaseHandler(ABC, Generic[T]):
    """
    Abstract base class for payload handlers.

    Each handler:
    1. Receives a GatewayMessage from the connection's router
    2. Validates the payload into a typed model
    3. Calls the registered callback with (payload, message)
    """

    def __init__(
        self,
        on_event: Callable[[T, GatewayMessage], None],
        name: str = "handler",
    ) -> None:
        self._on_event = on_event
        self._name = name
        self._stats = HandlerStats()

    @property
    def stats(self) -> HandlerStats:
        return self._stats

    def handle(self, msg: GatewayMessage) -> None:
        self._stats.messages_received += 1

        try:
            payload = self._parse(msg)
            if payload is None:
                self._stats.messages_skipped += 1
                return

            self._stats.messages_processed += 1
            symbol = getattr(payload, "symbol", None)
            if symbol:
                self._stats.by_symbol[symbol] = self._stats.by_symbol.get(symbol, 0) + 1

            self._on_event(payload, msg)

        except MessageParseError as e:
            self._stats.parse_errors += 1
            logger.warning(f"[{self._name}] Parse error on {msg.event}: {e}")
        except Exception as e:
            self._stats.parse_errors += 1
            logger.error(f"[{self._name}] Unexpected error on {msg.event}: {e}", exc_info=True)

    @abstractmethod
    def _parse(self, msg: GatewayMessage) -> Optional[T]:
        """Parse the message payload. Return None to skip."""
        ...

    def reset_stats(self) -> None:
        self._stats = HandlerStats()


class OrderBookHandler(BaseHandler[OrderBookPayload]):
    """
    Order book frames.

    Accepted shapes:
    {
        "symbol": "BTCUSDT",
        "bids": [["16800.00", "1.5"], ...] | [{"price": .., "quantity": ..}, ...],
        "asks": [...],
        "lastUpdateId": 160
    }
    Updates may carry only one side; the other side is kept by the cache.
    """

    def __init__(self, on_event: Callable[[OrderBookPayload, GatewayMessage], None]) -> None:
        super().__init__(on_event, name="OrderBookHandler")

    def _parse(self, msg: GatewayMessage) -> Optional[OrderBookPayload]:
        if not isinstance(msg.data, dict):
            raise MessageParseError("Order book payload must be an object", expected_type="orderbook")
        payload = _validate(OrderBookPayload, msg.data, "orderbook")
        if payload.bids is None and payload.asks is None:
            return None
        return payload


class TradesHandler(BaseHandler[TradesPayload]):
    """
    Recent trades frames: a bare list of trades or ``{"symbol", "trades": [..]}``.

    Trade shape: {"id": 1, "price": "16800.5", "qty": "0.01", "side": "buy", "time": 1672515782136}
    """

    def __init__(self, on_event: Callable[[TradesPayload, GatewayMessage], None]) -> None:
        super().__init__(on_event, name="TradesHandler")

    def _parse(self, msg: GatewayMessage) -> Optional[TradesPayload]:
        if not isinstance(msg.data, (dict, list)):
            raise MessageParseError("Trades payload must be a list or object", expected_type="trades")
        try:
            return TradesPayload.from_data(msg.data)
        except ValidationError as e:
            raise MessageParseError(
                f"Invalid trades payload: {e.error_count()} error(s)",
                expected_type="trades",
            ) from e


class PriceHandler(BaseHandler[PricePayload]):
    """
    Price / ticker frames.

    {
        "symbol": "BTCUSDT",
        "price": 16850.5,           // optional on ticker frames
        "change24h": 50.5,          // optional
        "changePercent24h": 0.3,    // optional
        "high24h": 16900.0,         // optional
        "low24h": 16700.0,          // optional
        "volume24h": 10000.5,       // optional
        "timestamp": 1672515782136  // optional, seconds or ms
    }
    """

    def __init__(self, on_event: Callable[[PricePayload, GatewayMessage], None]) -> None:
        super().__init__(on_event, name="PriceHandler")

    def _parse(self, msg: GatewayMessage) -> Optional[PricePayload]:
        if not isinstance(msg.data, dict):
            raise MessageParseError("Price payload must be an object", expected_type="price")
        payload = _validate(PricePayload, msg.data, "price")
        if not payload.to_fields():
            return None
        return payload
