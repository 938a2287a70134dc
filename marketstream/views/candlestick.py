"""
CandlestickSeriesView - historical bars merged with live price ticks.

Flow:
    open() -> load history -> moving averages + volume bars -> chart.set_series
    price tick -> CandleSeries.apply_tick -> recompute_tail -> chart.update_tail
    tab visible again -> reload history to backfill the gap
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

from marketstream.chart.controller import ChartLifecycleController
from marketstream.data.history import HistoricalSeriesLoader, limit_for_timeframe
from marketstream.live.cache import CacheEntry
from marketstream.live.hub import MarketDataHub
from marketstream.live.subscriptions import SubscriptionManager
from marketstream.live.types import StreamKind, SubscriptionKey
from marketstream.series.candles import Candle, CandleSeries
from marketstream.series.derived import (
    DerivedSeries,
    VolumeBar,
    compute_moving_average,
    recompute_tail,
    volume_bars,
)
from marketstream.views.base import LiveView

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CandlestickState:
    candles: list[Candle] = field(default_factory=list)
    volumes: list[VolumeBar] = field(default_factory=list)
    derived_series: list[DerivedSeries] = field(default_factory=list)
    is_loading: bool = True
    is_connected: bool = False
    error: Optional[str] = None


class CandlestickSeriesView(LiveView[CandlestickState]):
    """
    Usage:
        view = CandlestickSeriesView(hub, loader, "conn-1", "BTCUSDT", "1h", "1M", chart=controller)
        await view.open()
        ...
        view.close()
    """

    def __init__(
        self,
        hub: MarketDataHub,
        loader: HistoricalSeriesLoader,
        connection_id: str,
        symbol: str,
        interval: str,
        timeframe: str,
        *,
        candles_by_interval: Optional[Mapping[str, Sequence[Any]]] = None,
        chart: Optional[ChartLifecycleController] = None,
    ) -> None:
        super().__init__(hub, connection_id, symbol, name="candles")
        self._loader = loader
        self._interval = interval
        self._timeframe = timeframe
        self._candles_by_interval = candles_by_interval or {}
        self._chart = chart
        self._series = CandleSeries(interval)
        self._windows = hub.config.chart.moving_averages
        self._price_key = SubscriptionKey(connection_id, self._symbol, StreamKind.PRICE)
        self._history_loaded = False
        self._reload_task: Optional[asyncio.Task[None]] = None

    def _initial_state(self) -> CandlestickState:
        return CandlestickState()

    def _enter(self, manager: SubscriptionManager) -> None:
        self._cleanups.append(self._hub.cache.on_change(self._price_key, self._on_price))
        self._cleanups.append(self._hub.visibility.on_change(self._on_visibility))
        self._cleanups.append(self._cancel_reload)
        manager.subscribe(self._connection_id, self._symbol, StreamKind.PRICE, owner=self._owner)

    async def _after_enter(self) -> None:
        await self.load_history()

    # --- History ---

    async def load_history(self) -> None:
        """Fetch (or take the embedded) bars and push full series to the chart."""
        if self._disposed:
            return
        self._update(is_loading=True)

        limit = limit_for_timeframe(self._timeframe, self._loader.config)
        prefetched = self._candles_by_interval.get(self._interval)
        result = await self._loader.aload_bars(
            self._symbol, self._interval, limit, prefetched, connection_id=self._connection_id
        )
        if self._disposed:
            return

        self._series.replace(result.candles)
        self._history_loaded = True
        candles = self._series.candles
        derived = [compute_moving_average(candles, w) for w in self._windows]
        volumes = self._volume_bars(candles)
        self._update(
            candles=list(candles),
            volumes=volumes,
            derived_series=derived,
            is_loading=False,
            error=result.error,
        )

        if self._chart is not None and self._chart.accepts_data:
            self._chart.set_series(candles, volumes, derived)

    def _volume_bars(self, candles: Sequence[Candle]) -> list[VolumeBar]:
        cfg = self._hub.config.chart
        return volume_bars(candles, cfg.volume_up_color, cfg.volume_down_color)

    # --- Live ticks ---

    def _on_price(self, key: SubscriptionKey, entry: Optional[CacheEntry]) -> None:
        if self._disposed or entry is None or not self._history_loaded:
            return
        # stats-only ticker frames carry no price of their own
        price = entry.latest_fields.get("price")
        if price is None:
            return

        ts_ms = entry.event_time if entry.event_time is not None else entry.last_update
        changed = self._series.apply_tick(float(price), int(ts_ms) // 1000)
        if changed is None:
            return

        candles = self._series.candles
        state = self._state
        previous = {s.window: s for s in state.derived_series}
        derived = [recompute_tail(candles, w, changed, previous.get(w)) for w in self._windows]
        volumes = state.volumes[:changed] + self._volume_bars(candles[changed:])
        self._update(candles=list(candles), volumes=volumes, derived_series=derived)

        if self._chart is not None and self._chart.accepts_data:
            self._chart.update_tail(candles, volumes, derived, changed)

    # --- Visibility ---

    def _on_visibility(self, hidden: bool) -> None:
        if self._disposed or hidden:
            return
        self._cancel_reload()
        self._reload_task = asyncio.get_running_loop().create_task(self.load_history())

    def _cancel_reload(self) -> None:
        if self._reload_task is not None and not self._reload_task.done():
            self._reload_task.cancel()
        self._reload_task = None

    async def wait_reload(self) -> None:
        """Wait for a history reload started by a visibility change."""
        task = self._reload_task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
