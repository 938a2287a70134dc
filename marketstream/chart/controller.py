"""
ChartLifecycleController - owns one chart-library instance.

Lifecycle:
    [UNMOUNTED] --mount(width>0)--> [MOUNTED]
    [UNMOUNTED] --mount(width=0)--> [MOUNTING] --retry, width>0--> [MOUNTED]
    [MOUNTING]  --retries exhausted--> [GAVE_UP]
    any         --unmount()--> [UNMOUNTED]

Every listener acquired during mount (chart instance, resize observer,
window resize) is pushed onto an ExitStack, so a failure halfway through
mount releases what was already acquired, and unmount releases all of it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from marketstream.live.config import ChartConfig
from marketstream.live.errors import ChartError
from marketstream.ports.chart import (
    ChartApi,
    ChartContainer,
    ChartFactory,
    ResizeObserverFactory,
    SeriesApi,
    WindowEvents,
)
from marketstream.series.candles import Candle
from marketstream.series.derived import DerivedSeries, VolumeBar

logger = logging.getLogger(__name__)

MA_COLORS = ("#fbbf24", "#f97316", "#a855f7", "#38bdf8")


class ChartState(str, Enum):
    UNMOUNTED = "unmounted"
    MOUNTING = "mounting"
    MOUNTED = "mounted"
    GAVE_UP = "gave_up"


class ChartLifecycleController:
    """
    Usage:
        controller = ChartLifecycleController(create_chart, resize_observers=ResizeObserver)
        controller.mount(container)
        controller.set_series(candles, volumes, [ma5, ma10])
        ...
        controller.unmount()
    """

    def __init__(
        self,
        chart_factory: ChartFactory,
        *,
        config: Optional[ChartConfig] = None,
        resize_observers: Optional[ResizeObserverFactory] = None,
        window: Optional[WindowEvents] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        name: str = "chart",
    ) -> None:
        self._factory = chart_factory
        self._cfg = config or ChartConfig()
        self._resize_observers = resize_observers
        self._window = window
        self._loop = loop
        self._name = name

        self._state = ChartState.UNMOUNTED
        self._container: Optional[ChartContainer] = None
        self._resources: Optional[contextlib.ExitStack] = None
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._mount_attempts = 0
        self._live_handles = 0

        self._chart: Optional[ChartApi] = None
        self._candle_series: Optional[SeriesApi] = None
        self._volume_series: Optional[SeriesApi] = None
        self._ma_series: dict[int, SeriesApi] = {}
        self._pending: Optional[tuple[list[Candle], list[VolumeBar], list[DerivedSeries]]] = None

    # --- Properties ---

    @property
    def state(self) -> ChartState:
        return self._state

    @property
    def is_mounted(self) -> bool:
        return self._state == ChartState.MOUNTED

    @property
    def accepts_data(self) -> bool:
        return self._state in (ChartState.MOUNTING, ChartState.MOUNTED)

    @property
    def mount_attempts(self) -> int:
        return self._mount_attempts

    @property
    def outstanding_handles(self) -> int:
        """Listeners still registered plus pending retry timers."""
        return self._live_handles + (1 if self._retry_handle is not None else 0)

    # --- Mount ---

    def mount(self, container: ChartContainer) -> None:
        """
        Create the chart sized to ``container``. A zero-width container is
        retried on a timer up to ``max_mount_retries`` times.

        Raises:
            ChartError: If container is None
        """
        if container is None:
            raise ChartError("mount() requires a container", component=self._name)
        if self._state in (ChartState.MOUNTING, ChartState.MOUNTED):
            if container is self._container:
                return
            self.unmount()

        self._container = container
        self._mount_attempts = 0
        self._try_mount()

    def _try_mount(self) -> None:
        self._retry_handle = None
        container = self._container
        if container is None:
            return

        width = container.width
        if width <= 0:
            if self._mount_attempts >= self._cfg.max_mount_retries:
                logger.warning(
                    f"[{self._name}] Container still zero-width after "
                    f"{self._mount_attempts} retries; giving up"
                )
                self._state = ChartState.GAVE_UP
                return
            self._mount_attempts += 1
            self._state = ChartState.MOUNTING
            loop = self._loop or asyncio.get_running_loop()
            self._retry_handle = loop.call_later(self._cfg.mount_retry_delay_s, self._try_mount)
            return

        try:
            self._create(container, width)
        except Exception:
            self._state = ChartState.UNMOUNTED
            self._container = None
            raise

        if self._pending is not None:
            candles, volumes, derived = self._pending
            self._pending = None
            self.set_series(candles, volumes, derived)

    def _create(self, container: ChartContainer, width: int) -> None:
        with contextlib.ExitStack() as stack:
            chart = self._factory(container, {"width": width, "height": self._cfg.height})
            self._acquired(stack, chart.remove)

            candle_series = chart.add_series(
                "candlestick",
                {
                    "upColor": self._cfg.up_color,
                    "downColor": self._cfg.down_color,
                    "borderVisible": False,
                    "wickUpColor": self._cfg.up_color,
                    "wickDownColor": self._cfg.down_color,
                },
            )
            volume_series = chart.add_series(
                "histogram",
                {"priceFormat": {"type": "volume"}, "priceScaleId": ""},
            )
            ma_series = {
                window: chart.add_series(
                    "line",
                    {"color": MA_COLORS[i % len(MA_COLORS)], "lineWidth": 1, "title": f"MA{window}"},
                )
                for i, window in enumerate(self._cfg.moving_averages)
            }

            # the resize observer is only registered once the width is known
            if self._resize_observers is not None:
                observer = self._resize_observers(self.resize)
                observer.observe(container)
                self._acquired(stack, observer.disconnect)

            if self._window is not None:
                self._window.add_listener("resize", self._on_window_resize)
                self._acquired(stack, self._window.remove_listener, "resize", self._on_window_resize)

            self._resources = stack.pop_all()

        self._chart = chart
        self._candle_series = candle_series
        self._volume_series = volume_series
        self._ma_series = ma_series
        self._state = ChartState.MOUNTED
        logger.debug(f"[{self._name}] Mounted at width={width} after {self._mount_attempts} retries")

    def _acquired(self, stack: contextlib.ExitStack, release: Callable[..., Any], *args: Any) -> None:
        self._live_handles += 1

        def _release() -> None:
            self._live_handles -= 1
            release(*args)

        stack.callback(_release)

    def _on_window_resize(self) -> None:
        if self._container is not None:
            self.resize(self._container.width)

    # --- Data ---

    def set_series(
        self,
        candles: Sequence[Candle],
        volumes: Sequence[VolumeBar],
        derived_series: Sequence[DerivedSeries],
    ) -> None:
        """
        Replace the data of every rendered series. While a zero-width mount
        is still retrying the data is held and applied once mounted.

        Raises:
            ChartError: If called before mount()
        """
        if self._state == ChartState.MOUNTING:
            self._pending = (list(candles), list(volumes), list(derived_series))
            return
        if self._state != ChartState.MOUNTED:
            raise ChartError(f"set_series() while {self._state.value}", component=self._name)

        assert self._candle_series is not None and self._volume_series is not None
        self._candle_series.set_data([c.to_chart() for c in candles])
        self._volume_series.set_data([v.to_chart() for v in volumes])
        for series in derived_series:
            target = self._ma_series.get(series.window)
            if target is None:
                logger.debug(f"[{self._name}] No rendered series for {series.name}")
                continue
            target.set_data(series.to_chart())

    def update_tail(
        self,
        candles: Sequence[Candle],
        volumes: Sequence[VolumeBar],
        derived_series: Sequence[DerivedSeries],
        from_index: int,
    ) -> None:
        """Push incremental updates for candles at ``from_index`` and later."""
        if self._state == ChartState.MOUNTING:
            self._pending = (list(candles), list(volumes), list(derived_series))
            return
        if self._state != ChartState.MOUNTED or not candles:
            return

        assert self._candle_series is not None and self._volume_series is not None
        from_index = max(0, from_index)
        for candle in candles[from_index:]:
            self._candle_series.update(candle.to_chart())
        for bar in volumes[from_index:]:
            self._volume_series.update(bar.to_chart())

        if from_index >= len(candles):
            return
        since = candles[from_index].time
        for series in derived_series:
            target = self._ma_series.get(series.window)
            if target is None:
                continue
            for point in series.points:
                if point.time >= since:
                    target.update({"time": point.time, "value": point.value})

    def resize(self, width: int) -> None:
        """Re-apply the chart width without recreating the instance."""
        if self._state != ChartState.MOUNTED or self._chart is None or width <= 0:
            return
        self._chart.apply_options({"width": width})

    # --- Teardown ---

    def unmount(self) -> None:
        """Release every listener and the chart instance. Safe to call repeatedly."""
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

        resources, self._resources = self._resources, None
        self._chart = None
        self._candle_series = None
        self._volume_series = None
        self._ma_series = {}
        self._pending = None
        self._container = None
        self._state = ChartState.UNMOUNTED

        if resources is not None:
            resources.close()
            logger.debug(f"[{self._name}] Unmounted")
