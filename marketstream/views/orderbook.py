"""LiveOrderBookView - live order book plus recent trades for one symbol."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from marketstream.live.cache import CacheEntry
from marketstream.live.hub import MarketDataHub
from marketstream.live.subscriptions import SubscriptionManager
from marketstream.live.types import StreamKind, SubscriptionKey
from marketstream.views.base import LiveView


@dataclass(frozen=True)
class OrderBookState:
    order_book: Optional[dict[str, Any]] = None
    trades: list[dict[str, Any]] = field(default_factory=list)
    is_connected: bool = False
    is_loading: bool = True
    error: Optional[str] = None
    last_update: Optional[int] = None  # Unix ms


class LiveOrderBookView(LiveView[OrderBookState]):
    """
    Usage:
        view = LiveOrderBookView(hub, "conn-1", "BTCUSDT")
        view.on_change(render)
        await view.open()
        ...
        view.close()
    """

    def __init__(self, hub: MarketDataHub, connection_id: str, symbol: str) -> None:
        super().__init__(hub, connection_id, symbol, name="orderbook")
        self._book_key = SubscriptionKey(connection_id, self._symbol, StreamKind.ORDERBOOK)
        self._trades_key = SubscriptionKey(connection_id, self._symbol, StreamKind.TRADES)

    def _initial_state(self) -> OrderBookState:
        return OrderBookState()

    def _enter(self, manager: SubscriptionManager) -> None:
        streams = self._hub.config.streams
        cache = self._hub.cache

        self._cleanups.append(cache.on_change(self._book_key, self._on_book))
        self._cleanups.append(cache.on_change(self._trades_key, self._on_trades))

        manager.subscribe(
            self._connection_id,
            self._symbol,
            StreamKind.ORDERBOOK,
            {"limit": streams.orderbook_depth},
            owner=self._owner,
        )
        manager.subscribe(
            self._connection_id,
            self._symbol,
            StreamKind.TRADES,
            {"limit": streams.trades_limit},
            owner=self._owner,
        )

        # another view may already hold these streams
        book = cache.get(self._book_key)
        if book is not None:
            self._on_book(self._book_key, book)
        trades = cache.get(self._trades_key)
        if trades is not None:
            self._on_trades(self._trades_key, trades)

    def _on_book(self, key: SubscriptionKey, entry: Optional[CacheEntry]) -> None:
        if self._disposed or entry is None:
            return
        self._update(
            order_book=dict(entry.payload),
            is_loading=False,
            last_update=entry.last_update,
        )

    def _on_trades(self, key: SubscriptionKey, entry: Optional[CacheEntry]) -> None:
        if self._disposed or entry is None:
            return
        self._update(trades=list(entry.payload.get("trades", [])), last_update=entry.last_update)

    def is_stale(self) -> bool:
        threshold = self._hub.config.streams.staleness_threshold_ms
        return self._hub.cache.is_stale(self._book_key, threshold)
