"""
Shared types, enums, and payload models for the live market data core.

Gateway payloads are duck-typed JSON; the pydantic models below are the
boundary where they get validated and coerced (string numbers become floats,
alternate field spellings collapse to one name). Fields that the server did
not send stay ``None`` and are dropped by ``to_fields()`` so that merges in
the cache never erase previously known values.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class ConnectionState(str, Enum):
    """State machine for a StreamConnection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class StreamKind(str, Enum):
    """Logical streams multiplexed over one connection."""

    ORDERBOOK = "orderbook"
    TRADES = "trades"
    PRICE = "price"


class GatewayEvent(str, Enum):
    """Event names spoken on the market gateway namespace."""

    # client -> server
    SUBSCRIBE_ORDERBOOK = "subscribe:orderbook"
    SUBSCRIBE_TRADES = "subscribe:trades"
    SUBSCRIBE_PRICE = "subscribe:price"
    UNSUBSCRIBE_ORDERBOOK = "unsubscribe:orderbook"
    UNSUBSCRIBE_TRADES = "unsubscribe:trades"
    UNSUBSCRIBE_PRICE = "unsubscribe:price"
    PING = "ping"

    # server -> client
    ORDERBOOK_SNAPSHOT = "orderbook:snapshot"
    ORDERBOOK_UPDATE = "orderbook:update"
    TRADES_SNAPSHOT = "trades:snapshot"
    TRADES_UPDATE = "trades:update"
    PRICE_UPDATE = "price:update"
    TICKER_UPDATE = "ticker:update"
    ERROR = "error"
    PONG = "pong"


SUBSCRIBE_EVENTS: dict[StreamKind, GatewayEvent] = {
    StreamKind.ORDERBOOK: GatewayEvent.SUBSCRIBE_ORDERBOOK,
    StreamKind.TRADES: GatewayEvent.SUBSCRIBE_TRADES,
    StreamKind.PRICE: GatewayEvent.SUBSCRIBE_PRICE,
}

UNSUBSCRIBE_EVENTS: dict[StreamKind, GatewayEvent] = {
    StreamKind.ORDERBOOK: GatewayEvent.UNSUBSCRIBE_ORDERBOOK,
    StreamKind.TRADES: GatewayEvent.UNSUBSCRIBE_TRADES,
    StreamKind.PRICE: GatewayEvent.UNSUBSCRIBE_PRICE,
}

RATE_LIMIT_CODES = frozenset({"RATE_LIMITED", "RATE_LIMIT", "TOO_MANY_REQUESTS", "429"})


@dataclass(frozen=True, slots=True)
class SubscriptionKey:
    """Composite key of one logical subscription."""

    connection_id: str
    symbol: str
    kind: StreamKind

    def __str__(self) -> str:
        return f"{self.connection_id}:{self.symbol}:{self.kind.value}"


@dataclass(frozen=True, slots=True)
class GatewayMessage:
    """Decoded frame envelope."""

    event: str
    data: Any
    recv_ts: int  # local receive time (Unix ms)


@dataclass
class ConnectionHealth:
    """Health snapshot for a single StreamConnection."""

    state: ConnectionState
    url: str
    connection_id: Optional[str] = None
    transport: Optional[str] = None
    connected_since: Optional[datetime] = None
    reconnect_attempt: int = 0
    message_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None
    last_pong_at: Optional[datetime] = None
    halted: bool = False

    @property
    def is_healthy(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def uptime_s(self) -> Optional[float]:
        """Connection uptime in seconds, or None if not connected."""
        if self.connected_since is None:
            return None
        return (datetime.now(timezone.utc) - self.connected_since).total_seconds()


# -------- Gateway payloads --------

# epoch values below this are seconds, at or above it milliseconds
_MS_THRESHOLD = 10**11


def epoch_ms(value: Any) -> Optional[int]:
    """
    Epoch seconds or milliseconds (number, numeric string or ISO-8601 string)
    to Unix ms. ``None`` and empty strings stay ``None``.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return int(parsed.timestamp() * 1000)
    number = float(value)
    if abs(number) < _MS_THRESHOLD:
        number *= 1000
    return int(number)


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    connection_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("connectionId", "connection_id")
    )

    def to_fields(self) -> dict[str, Any]:
        """Fields actually carried by this message, without routing data."""
        return self.model_dump(exclude_none=True, exclude={"symbol", "connection_id"})


class OrderBookLevel(BaseModel):
    price: float
    quantity: float = Field(validation_alias=AliasChoices("quantity", "qty", "amount", "size"))

    model_config = ConfigDict(populate_by_name=True)


def _coerce_levels(value: Any) -> Any:
    # Accept [["price", "qty"], ...] as well as [{"price": .., "quantity": ..}]
    if value is None:
        return None
    levels = []
    for level in value:
        if isinstance(level, (list, tuple)):
            if len(level) < 2:
                continue
            levels.append({"price": level[0], "quantity": level[1]})
        else:
            levels.append(level)
    return levels


class OrderBookPayload(_Payload):
    symbol: Optional[str] = None
    bids: Optional[list[OrderBookLevel]] = None
    asks: Optional[list[OrderBookLevel]] = None
    last_update_id: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("lastUpdateId", "last_update_id")
    )
    timestamp: Optional[int] = None

    @field_validator("bids", "asks", mode="before")
    @classmethod
    def _levels(cls, value: Any) -> Any:
        return _coerce_levels(value)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _timestamp_ms(cls, value: Any) -> Any:
        return epoch_ms(value)


class TradePayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("id", "tradeId", "trade_id"))
    price: float
    quantity: float = Field(validation_alias=AliasChoices("quantity", "qty", "amount"))
    side: Optional[str] = None
    timestamp: Optional[int] = Field(default=None, validation_alias=AliasChoices("timestamp", "time"))

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, value: Any) -> Any:
        return None if value is None else str(value)


class TradesPayload(_Payload):
    symbol: Optional[str] = None
    trades: list[TradePayload] = Field(default_factory=list)

    @classmethod
    def from_data(cls, data: Any) -> "TradesPayload":
        # trades frames are either a bare list or {"symbol": .., "trades": [..]}
        if isinstance(data, list):
            return cls.model_validate({"trades": data})
        return cls.model_validate(data)


class PricePayload(_Payload):
    """Price or ticker frame. Ticker frames may carry only the 24h stats."""

    symbol: Optional[str] = None
    price: Optional[float] = None
    change_24h: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("change24h", "change_24h")
    )
    change_percent_24h: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("changePercent24h", "change_percent_24h")
    )
    high_24h: Optional[float] = Field(default=None, validation_alias=AliasChoices("high24h", "high_24h"))
    low_24h: Optional[float] = Field(default=None, validation_alias=AliasChoices("low24h", "low_24h"))
    volume_24h: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("volume24h", "volume_24h")
    )
    timestamp: Optional[int] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _timestamp_ms(cls, value: Any) -> Any:
        return epoch_ms(value)


class ServerError(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: str = "Unknown gateway error"
    code: Optional[str] = None
    status: Optional[int] = None

    @field_validator("code", mode="before")
    @classmethod
    def _code_as_str(cls, value: Any) -> Any:
        return None if value is None else str(value)

    @property
    def is_rate_limit(self) -> bool:
        if self.status == 429:
            return True
        return self.code is not None and self.code.upper() in RATE_LIMIT_CODES
