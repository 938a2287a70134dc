"""
Unit tests for moving averages and volume bars.
"""

import pytest

from marketstream.series.candles import Candle
from marketstream.series.derived import (
    DOWN_VOLUME_COLOR,
    UP_VOLUME_COLOR,
    DerivedSeries,
    compute_moving_average,
    recompute_tail,
    volume_bars,
)

T0 = 1_700_000_000


def _candles(closes: list[float], opens: list[float] | None = None) -> list[Candle]:
    opens = opens or closes
    return [
        Candle(T0 + 60 * i, o, max(o, c), min(o, c), c, float(i + 1))
        for i, (o, c) in enumerate(zip(opens, closes))
    ]


class TestMovingAverage:
    def test_window_three(self) -> None:
        """Closes [1,2,3,4,5] with window 3 give [2,3,4] at indices 2..4."""
        candles = _candles([1, 2, 3, 4, 5])

        ma = compute_moving_average(candles, 3)

        assert ma.values() == pytest.approx([2.0, 3.0, 4.0])
        assert [p.time for p in ma.points] == [c.time for c in candles[2:]]
        assert ma.name == "MA3"

    def test_fewer_candles_than_window(self) -> None:
        assert compute_moving_average(_candles([1, 2]), 5).points == []

    def test_window_one_is_identity(self) -> None:
        assert compute_moving_average(_candles([4, 7]), 1).values() == [4.0, 7.0]

    def test_invalid_window(self) -> None:
        with pytest.raises(ValueError):
            compute_moving_average(_candles([1]), 0)

    def test_chart_shape(self) -> None:
        ma = compute_moving_average(_candles([2, 4]), 2)
        assert ma.to_chart() == [{"time": T0 + 60, "value": 3.0}]


class TestRecomputeTail:
    """Tail recomputation agrees with a full recomputation."""

    @pytest.mark.parametrize("window", [1, 3, 5])
    def test_last_candle_changed(self, window: int) -> None:
        candles = _candles([float(x) for x in range(1, 21)])
        previous = compute_moving_average(candles, window)

        candles[-1].close = 42.5
        tail = recompute_tail(candles, window, len(candles) - 1, previous)

        assert tail.values() == pytest.approx(compute_moving_average(candles, window).values())

    def test_candle_appended(self) -> None:
        candles = _candles([1, 2, 3, 4, 5, 6])
        previous = compute_moving_average(candles, 3)

        candles.append(Candle(T0 + 60 * 6, 6.0, 9.0, 6.0, 9.0, 1.0))
        tail = recompute_tail(candles, 3, len(candles) - 1, previous)

        assert tail.values() == pytest.approx([2.0, 3.0, 4.0, 5.0, 20.0 / 3.0])
        assert tail.points[:3] == previous.points[:3]

    def test_grows_past_window(self) -> None:
        candles = _candles([1, 2])
        previous = compute_moving_average(candles, 3)
        candles.append(Candle(T0 + 120, 3.0, 3.0, 3.0, 3.0, 1.0))

        tail = recompute_tail(candles, 3, 2, previous)

        assert tail.values() == pytest.approx([2.0])

    def test_without_previous_falls_back(self) -> None:
        candles = _candles([1, 2, 3])
        assert recompute_tail(candles, 2, 2).values() == pytest.approx([1.5, 2.5])
        other = DerivedSeries(window=3)
        assert recompute_tail(candles, 2, 2, other).window == 2


class TestVolumeBars:
    def test_colors_follow_direction(self) -> None:
        candles = _candles([11, 9, 10], opens=[10, 10, 10])

        bars = volume_bars(candles)

        assert [b.color for b in bars] == [UP_VOLUME_COLOR, DOWN_VOLUME_COLOR, UP_VOLUME_COLOR]
        assert [b.value for b in bars] == [1.0, 2.0, 3.0]
        assert bars[0].to_chart() == {"time": T0, "value": 1.0, "color": "#22c55e80"}
