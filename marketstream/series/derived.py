"""
Derived series over candles: moving averages and volume bars.

A live tick only changes the newest candle, so ``recompute_tail`` keeps the
already computed points and redoes just the trailing window.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

from marketstream.series.candles import Candle

UP_VOLUME_COLOR = "#22c55e80"
DOWN_VOLUME_COLOR = "#ef444480"


@dataclass(frozen=True, slots=True)
class SeriesPoint:
    time: int
    value: float


@dataclass
class DerivedSeries:
    """Moving average output. ``points[k]`` belongs to candle ``k + window - 1``."""

    window: int
    points: list[SeriesPoint] = field(default_factory=list)

    @property
    def name(self) -> str:
        return f"MA{self.window}"

    def values(self) -> list[float]:
        return [p.value for p in self.points]

    def to_chart(self) -> list[dict[str, float]]:
        return [{"time": p.time, "value": p.value} for p in self.points]


@dataclass(frozen=True, slots=True)
class VolumeBar:
    time: int
    value: float
    color: str

    def to_chart(self) -> dict[str, object]:
        return {"time": self.time, "value": self.value, "color": self.color}


def _rolling_mean(closes: np.ndarray, window: int) -> np.ndarray:
    # mean of closes[i-window+1 : i+1] for every i >= window-1
    csum = np.cumsum(np.concatenate(([0.0], closes)))
    return (csum[window:] - csum[:-window]) / window


def compute_moving_average(candles: Sequence[Candle], window: int) -> DerivedSeries:
    """
    Simple moving average of ``close``. Indices below ``window - 1`` are
    omitted, not zero-filled.
    """
    if window <= 0:
        raise ValueError(f"window must be positive, got {window}")
    if len(candles) < window:
        return DerivedSeries(window=window)

    closes = np.fromiter((c.close for c in candles), dtype=np.float64, count=len(candles))
    means = _rolling_mean(closes, window)
    points = [
        SeriesPoint(time=candles[i + window - 1].time, value=float(v)) for i, v in enumerate(means)
    ]
    return DerivedSeries(window=window, points=points)


def recompute_tail(
    candles: Sequence[Candle],
    window: int,
    changed_from_index: int,
    previous: Optional[DerivedSeries] = None,
) -> DerivedSeries:
    """
    Recompute only the points at candle indices >= ``changed_from_index - window``.

    Points of ``previous`` before that boundary are reused as is. Without a
    usable ``previous`` this falls back to a full computation.
    """
    if window <= 0:
        raise ValueError(f"window must be positive, got {window}")
    if previous is None or previous.window != window:
        return compute_moving_average(candles, window)

    start = max(changed_from_index - window, window - 1)
    # point index for candle i is i - (window - 1)
    keep = min(start - (window - 1), len(previous.points))
    if keep < 0:
        keep = 0
    first = keep + window - 1
    if first >= len(candles):
        return DerivedSeries(window=window, points=list(previous.points[:keep]))

    lo = first - window + 1
    closes = np.fromiter(
        (c.close for c in candles[lo:]), dtype=np.float64, count=len(candles) - lo
    )
    means = _rolling_mean(closes, window)
    tail = [
        SeriesPoint(time=candles[first + k].time, value=float(v)) for k, v in enumerate(means)
    ]
    return DerivedSeries(window=window, points=list(previous.points[:keep]) + tail)


def volume_color(candle: Candle, up: str = UP_VOLUME_COLOR, down: str = DOWN_VOLUME_COLOR) -> str:
    """close >= open is an up bar."""
    return up if candle.close >= candle.open else down


def volume_bars(
    candles: Sequence[Candle], up: str = UP_VOLUME_COLOR, down: str = DOWN_VOLUME_COLOR
) -> list[VolumeBar]:
    return [VolumeBar(time=c.time, value=c.volume, color=volume_color(c, up, down)) for c in candles]
