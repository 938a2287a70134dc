"""LivePriceView - last price and 24h stats for one symbol."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from marketstream.live.cache import CacheEntry
from marketstream.live.hub import MarketDataHub
from marketstream.live.subscriptions import SubscriptionManager
from marketstream.live.types import StreamKind, SubscriptionKey
from marketstream.views.base import LiveView


@dataclass(frozen=True)
class PriceState:
    price: Optional[float] = None
    change_24h: Optional[float] = None
    change_percent_24h: Optional[float] = None
    high_24h: Optional[float] = None
    low_24h: Optional[float] = None
    volume_24h: Optional[float] = None
    is_connected: bool = False
    error: Optional[str] = None
    last_update: Optional[int] = None  # Unix ms


class LivePriceView(LiveView[PriceState]):
    """``initial_price`` is shown until the first live update arrives."""

    def __init__(
        self,
        hub: MarketDataHub,
        connection_id: str,
        symbol: str,
        initial_price: Optional[float] = None,
    ) -> None:
        self._initial_price = initial_price
        super().__init__(hub, connection_id, symbol, name="price")
        self._key = SubscriptionKey(connection_id, self._symbol, StreamKind.PRICE)

    def _initial_state(self) -> PriceState:
        return PriceState(price=self._initial_price)

    def _enter(self, manager: SubscriptionManager) -> None:
        self._cleanups.append(self._hub.cache.on_change(self._key, self._on_price))
        manager.subscribe(self._connection_id, self._symbol, StreamKind.PRICE, owner=self._owner)

        entry = self._hub.cache.get(self._key)
        if entry is not None:
            self._on_price(self._key, entry)

    def _on_price(self, key: SubscriptionKey, entry: Optional[CacheEntry]) -> None:
        if self._disposed or entry is None:
            return
        payload = entry.payload
        current = self._state
        self._update(
            price=payload.get("price", current.price),
            change_24h=payload.get("change_24h", current.change_24h),
            change_percent_24h=payload.get("change_percent_24h", current.change_percent_24h),
            high_24h=payload.get("high_24h", current.high_24h),
            low_24h=payload.get("low_24h", current.low_24h),
            volume_24h=payload.get("volume_24h", current.volume_24h),
            last_update=entry.last_update,
        )
