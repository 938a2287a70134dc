"""
SubscriptionManager - logical subscriptions multiplexed over one StreamConnection.

Responsibilities:
- Subscription bookkeeping per (connection_id, symbol, kind)
- De-duplication of subscribe messages by key
- Owner reference counting: the wire unsubscribe goes out with the last owner
- Replay of every registered subscription on ``connected`` (registration order)
- Decoding of gateway payloads into the LiveDataCache
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from marketstream.live.cache import LiveDataCache
from marketstream.live.connection import StreamConnection
from marketstream.live.errors import SubscriptionError
from marketstream.live.handlers import OrderBookHandler, PriceHandler, TradesHandler
from marketstream.live.types import (
    SUBSCRIBE_EVENTS,
    UNSUBSCRIBE_EVENTS,
    ConnectionState,
    GatewayEvent,
    GatewayMessage,
    OrderBookPayload,
    PricePayload,
    StreamKind,
    SubscriptionKey,
    TradesPayload,
)

logger = logging.getLogger(__name__)

DEFAULT_OWNER = "default"

SNAPSHOT_EVENTS = frozenset({GatewayEvent.ORDERBOOK_SNAPSHOT.value, GatewayEvent.TRADES_SNAPSHOT.value})


@dataclass
class Subscription:
    """One registered subscription."""

    key: SubscriptionKey
    params: dict[str, Any]
    owners: set[str] = field(default_factory=set)
    active: bool = True

    def wire_payload(self) -> dict[str, Any]:
        return {"connectionId": self.key.connection_id, "symbol": self.key.symbol, **self.params}


@dataclass
class SubscriptionStats:
    subscribes_sent: int = 0
    unsubscribes_sent: int = 0
    replays: int = 0
    unroutable: int = 0


def _normalize_symbol(symbol: str) -> str:
    return symbol.strip().upper()


class SubscriptionManager:
    """
    Single authority for what is subscribed on one StreamConnection.

    Usage:
        manager = SubscriptionManager(connection, cache)
        manager.subscribe("conn-1", "BTCUSDT", StreamKind.ORDERBOOK, {"limit": 20})
        ...
        manager.unsubscribe("conn-1", "BTCUSDT", StreamKind.ORDERBOOK)
    """

    def __init__(
        self,
        connection: StreamConnection,
        cache: LiveDataCache,
        *,
        name: str = "subscriptions",
    ) -> None:
        self._connection = connection
        self._cache = cache
        self._name = name
        self._subs: dict[SubscriptionKey, Subscription] = {}
        self._stats = SubscriptionStats()

        self._book_handler = OrderBookHandler(on_event=self._on_orderbook)
        self._trades_handler = TradesHandler(on_event=self._on_trades)
        self._price_handler = PriceHandler(on_event=self._on_price)

        routes = (
            (GatewayEvent.ORDERBOOK_SNAPSHOT, self._book_handler.handle),
            (GatewayEvent.ORDERBOOK_UPDATE, self._book_handler.handle),
            (GatewayEvent.TRADES_SNAPSHOT, self._trades_handler.handle),
            (GatewayEvent.TRADES_UPDATE, self._trades_handler.handle),
            # price:update and ticker:update merge into the same entry, last write wins
            (GatewayEvent.PRICE_UPDATE, self._price_handler.handle),
            (GatewayEvent.TICKER_UPDATE, self._price_handler.handle),
        )
        self._unregister: list[Callable[[], None]] = [
            connection.on_message(event.value, handler) for event, handler in routes
        ]
        self._unregister.append(connection.on_state_change(self._on_state_change))

    @property
    def stats(self) -> SubscriptionStats:
        return self._stats

    @property
    def connection(self) -> StreamConnection:
        return self._connection

    def __len__(self) -> int:
        return len(self._subs)

    def get(self, connection_id: str, symbol: str, kind: StreamKind) -> Optional[Subscription]:
        return self._subs.get(SubscriptionKey(connection_id, _normalize_symbol(symbol), kind))

    def subscriptions(self) -> list[Subscription]:
        """Registered subscriptions in registration order."""
        return list(self._subs.values())

    # --- Public API ---

    def subscribe(
        self,
        connection_id: str,
        symbol: str,
        kind: StreamKind,
        params: Optional[dict[str, Any]] = None,
        *,
        owner: str = DEFAULT_OWNER,
    ) -> SubscriptionKey:
        """
        Register interest in a stream.

        An already registered key only gains the owner; the subscribe message
        is re-issued when the params changed, and not at all otherwise.

        Raises:
            SubscriptionError: If connection_id or symbol is empty
        """
        if not connection_id or not symbol or not symbol.strip():
            raise SubscriptionError(
                "connection_id and symbol are required",
                symbol=symbol,
                kind=kind.value,
                component=self._name,
            )

        key = SubscriptionKey(connection_id, _normalize_symbol(symbol), kind)
        params = dict(params or {})

        sub = self._subs.get(key)
        if sub is not None:
            sub.owners.add(owner)
            if params != sub.params:
                logger.debug(f"[{self._name}] Params changed for {key}: {sub.params} -> {params}")
                sub.params = params
                self._send_subscribe(sub)
            return key

        sub = Subscription(key=key, params=params, owners={owner})
        self._subs[key] = sub
        logger.info(f"[{self._name}] Subscribed {key}")
        self._send_subscribe(sub)
        return key

    def unsubscribe(
        self,
        connection_id: str,
        symbol: str,
        kind: StreamKind,
        *,
        owner: str = DEFAULT_OWNER,
    ) -> None:
        """
        Drop ``owner``'s interest. The last owner out removes the record,
        sends the unsubscribe (if connected) and clears the cache entry.
        """
        key = SubscriptionKey(connection_id, _normalize_symbol(symbol), kind)
        sub = self._subs.get(key)
        if sub is None:
            return

        sub.owners.discard(owner)
        if sub.owners:
            return

        del self._subs[key]
        sub.active = False
        self._send_unsubscribe(sub)
        self._cache.clear(key)
        logger.info(f"[{self._name}] Unsubscribed {key}")

    def release_owner(self, owner: str) -> None:
        """Unsubscribe every key held by ``owner``."""
        for sub in [s for s in self._subs.values() if owner in s.owners]:
            self.unsubscribe(sub.key.connection_id, sub.key.symbol, sub.key.kind, owner=owner)

    def replay(self) -> None:
        """Re-send every registered subscription in registration order."""
        subs = list(self._subs.values())
        if subs:
            logger.info(f"[{self._name}] Replaying {len(subs)} subscription(s)")
        for sub in subs:
            self._send_subscribe(sub)
        self._stats.replays += 1

    def suspend(self) -> None:
        """Send unsubscribe for everything but keep the registry for replay."""
        for sub in list(self._subs.values()):
            self._send_unsubscribe(sub)

    def dispose(self) -> None:
        """Detach from the connection. Registered subscriptions are dropped."""
        for unregister in self._unregister:
            unregister()
        self._unregister.clear()
        for key in list(self._subs):
            self._cache.clear(key)
        self._subs.clear()

    # --- Wire ---

    def _send_subscribe(self, sub: Subscription) -> None:
        if self._connection.emit(SUBSCRIBE_EVENTS[sub.key.kind].value, sub.wire_payload()):
            self._stats.subscribes_sent += 1

    def _send_unsubscribe(self, sub: Subscription) -> None:
        payload = {"connectionId": sub.key.connection_id, "symbol": sub.key.symbol}
        if self._connection.emit(UNSUBSCRIBE_EVENTS[sub.key.kind].value, payload):
            self._stats.unsubscribes_sent += 1

    def _on_state_change(self, state: ConnectionState) -> None:
        if state == ConnectionState.CONNECTED:
            self.replay()

    # --- Inbound ---

    def _resolve(
        self, kind: StreamKind, symbol: Optional[str], connection_id: Optional[str]
    ) -> list[SubscriptionKey]:
        """
        Keys a payload belongs to. Payloads for keys that are not subscribed
        (late frames after an unsubscribe) resolve to nothing.
        """
        wanted = _normalize_symbol(symbol) if symbol else None
        keys = [
            k
            for k in self._subs
            if k.kind == kind
            and (wanted is None or k.symbol == wanted)
            and (connection_id is None or k.connection_id == connection_id)
        ]
        if wanted is None and len({k.symbol for k in keys}) > 1:
            # no symbol on the payload and several candidates: ambiguous
            return []
        return keys

    def _apply(
        self,
        kind: StreamKind,
        payload: OrderBookPayload | TradesPayload | PricePayload,
        msg: GatewayMessage,
    ) -> None:
        keys = self._resolve(kind, payload.symbol, payload.connection_id)
        if not keys:
            self._stats.unroutable += 1
            logger.debug(f"[{self._name}] No subscription for {msg.event} ({payload.symbol})")
            return

        fields = payload.to_fields()
        # time of this message only
        event_time = getattr(payload, "timestamp", None) or msg.recv_ts
        snapshot = msg.event in SNAPSHOT_EVENTS
        for key in keys:
            if snapshot:
                self._cache.apply_snapshot(key, fields, event_time=event_time)
            else:
                self._cache.apply_update(key, fields, event_time=event_time)

    def _on_orderbook(self, payload: OrderBookPayload, msg: GatewayMessage) -> None:
        self._apply(StreamKind.ORDERBOOK, payload, msg)

    def _on_trades(self, payload: TradesPayload, msg: GatewayMessage) -> None:
        self._apply(StreamKind.TRADES, payload, msg)

    def _on_price(self, payload: PricePayload, msg: GatewayMessage) -> None:
        self._apply(StreamKind.PRICE, payload, msg)
