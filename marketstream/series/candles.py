"""
Candles and the live tick merge.

Candle times are epoch seconds, the unit the chart library expects.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

_INTERVAL_UNITS_S = {
    "s": 1,
    "m": 60,
    "h": 3_600,
    "d": 86_400,
    "w": 604_800,
    "M": 2_592_000,  # 30 days; month candles are not calendar-aligned here
}


def parse_interval(interval: str) -> int:
    """
    Parse interval strings like '1m', '4h', '1d', '1w', '1M' into seconds.

    Units are case-sensitive: 'm' is minutes, 'M' is months.
    Raises ValueError on unknown units, empty or non-positive quantities.
    """
    interval = interval.strip()
    if len(interval) < 2:
        raise ValueError(f"Invalid interval: {interval!r}")

    unit = interval[-1]
    prefix = interval[:-1]
    if unit not in _INTERVAL_UNITS_S:
        raise ValueError(f"Invalid interval unit in {interval!r}")
    if not prefix.isdigit():
        raise ValueError(f"Invalid interval quantity in {interval!r}")
    quantity = int(prefix)
    if quantity <= 0:
        raise ValueError(f"Interval quantity must be positive: {interval!r}")
    return quantity * _INTERVAL_UNITS_S[unit]


@dataclass(slots=True)
class Candle:
    """One OHLCV bar. ``time`` is the open time in epoch seconds."""

    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @property
    def is_up(self) -> bool:
        return self.close >= self.open

    def to_chart(self) -> dict[str, float]:
        return {
            "time": self.time,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
        }


class CandleSeries:
    """
    Ascending candle sequence for one (symbol, interval) with the live tick merge.

    A tick inside the newest candle's period replaces that candle with an
    updated copy; a tick past the period appends a new candle aligned to
    the interval grid. Ticks older than the newest candle are ignored.
    """

    def __init__(self, interval: str, candles: Iterable[Candle] = ()) -> None:
        self._interval = interval
        self._interval_s = parse_interval(interval)
        self._candles: list[Candle] = list(candles)

    @property
    def interval(self) -> str:
        return self._interval

    @property
    def interval_s(self) -> int:
        return self._interval_s

    @property
    def candles(self) -> list[Candle]:
        return self._candles

    def __len__(self) -> int:
        return len(self._candles)

    def replace(self, candles: Iterable[Candle]) -> None:
        self._candles = list(candles)

    def apply_tick(self, price: float, ts_s: int, volume: float = 0.0) -> Optional[int]:
        """
        Merge a live price tick.

        Returns:
            Index of the first candle that changed, or None if the tick was ignored
        """
        if price <= 0:
            return None

        if not self._candles:
            self._candles.append(self._open_candle(price, ts_s, volume))
            return 0

        last = self._candles[-1]
        if ts_s < last.time:
            logger.debug(f"Ignored tick at {ts_s}: older than candle {last.time}")
            return None

        if ts_s < last.time + self._interval_s:
            # swap in a copy; candles already handed out stay as they were
            self._candles[-1] = dataclasses.replace(
                last,
                close=price,
                high=max(last.high, price),
                low=min(last.low, price),
                volume=last.volume + volume,
            )
            return len(self._candles) - 1

        candle = self._open_candle(price, ts_s, volume)
        # the new candle opens where the previous one closed
        candle.open = last.close
        candle.high = max(candle.open, price)
        candle.low = min(candle.open, price)
        self._candles.append(candle)
        return len(self._candles) - 1

    def _open_candle(self, price: float, ts_s: int, volume: float) -> Candle:
        start = ts_s - (ts_s % self._interval_s)
        return Candle(time=start, open=price, high=price, low=price, close=price, volume=volume)
