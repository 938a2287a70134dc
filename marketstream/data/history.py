"""
HistoricalSeriesLoader - seed bars from the REST backend.

Fetches ``GET {base}/bars?symbol=&interval=&limit=`` and normalises the rows
into ascending, de-duplicated Candles. Failures never escape: the result
carries an empty candle list and an ``error`` string instead, so a chart can
show "no data" rather than crash.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

import polars as pl
import requests

from marketstream.live.config import HistoryConfig
from marketstream.live.errors import HistoryError
from marketstream.series.candles import Candle

logger = logging.getLogger(__name__)

BAR_SCHEMA = {
    "time": pl.Int64,
    "open": pl.Float64,
    "high": pl.Float64,
    "low": pl.Float64,
    "close": pl.Float64,
    "volume": pl.Float64,
}

_EPOCH_MS_KEYS = ("openTime", "open_time", "t")
_PAYLOAD_KEYS = ("bars", "candles", "data")

# anything above this is taken as milliseconds
_MS_THRESHOLD = 10**11


@dataclass
class BarsResult:
    """Candles plus the side-channel error (None on success)."""

    candles: list[Candle] = field(default_factory=list)
    error: Optional[str] = None
    source: str = "network"
    dropped_rows: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


def limit_for_timeframe(timeframe: Optional[str], config: Optional[HistoryConfig] = None) -> int:
    """100 bars by default, 200 for the long timeframes (3M, 6M)."""
    cfg = config or HistoryConfig()
    if timeframe in cfg.extended_timeframes:
        return cfg.extended_limit
    return cfg.default_limit


# ------------------------- Normalisation ------------------------------


def _to_float(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        raise ValueError(f"not numeric: {value!r}")
    return float(value)


def _epoch_seconds(value: Any) -> int:
    """Epoch ms/s number, numeric string or ISO-8601 string -> epoch seconds."""
    if isinstance(value, str):
        text = value.strip()
        try:
            value = float(text)
        except ValueError:
            parsed = dt.datetime.fromisoformat(text.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=dt.timezone.utc)
            return int(parsed.timestamp())
    number = _to_float(value)
    if abs(number) >= _MS_THRESHOLD:
        return int(number // 1000)
    return int(number)


def _row_time(raw: Mapping[str, Any]) -> int:
    for key in _EPOCH_MS_KEYS:
        value = raw.get(key)
        if value is not None:
            if isinstance(value, str):
                return _epoch_seconds(value)
            return int(_to_float(value) // 1000)
    if raw.get("timestamp") is not None:
        return _epoch_seconds(raw["timestamp"])
    if raw.get("time") is not None:
        return _epoch_seconds(raw["time"])
    raise ValueError("row has no time field")


def _coerce_row(raw: Any) -> tuple[int, float, float, float, float, float]:
    if isinstance(raw, Candle):
        # already normalised, e.g. the candles of an earlier BarsResult
        return (raw.time, raw.open, raw.high, raw.low, raw.close, raw.volume)
    if isinstance(raw, (list, tuple)):
        # kline array: [openTime, open, high, low, close, volume, ...]
        if len(raw) < 5:
            raise ValueError("kline array too short")
        volume = _to_float(raw[5]) if len(raw) > 5 else 0.0
        return (
            _epoch_seconds(raw[0]),
            _to_float(raw[1]),
            _to_float(raw[2]),
            _to_float(raw[3]),
            _to_float(raw[4]),
            volume,
        )
    if not isinstance(raw, Mapping):
        raise ValueError(f"unsupported row type {type(raw).__name__}")
    volume = raw.get("volume")
    return (
        _row_time(raw),
        _to_float(raw.get("open")),
        _to_float(raw.get("high")),
        _to_float(raw.get("low")),
        _to_float(raw.get("close")),
        _to_float(volume) if volume is not None else 0.0,
    )


def normalize_bars(rows: Sequence[Any]) -> tuple[list[Candle], int]:
    """
    Coerce raw bar rows into Candles: numeric fields to float, times to epoch
    seconds, sorted ascending, duplicate times collapsed (last one wins).

    Returns:
        (candles, dropped_row_count)
    """
    coerced: list[tuple[int, float, float, float, float, float]] = []
    dropped = 0
    for raw in rows:
        try:
            coerced.append(_coerce_row(raw))
        except (TypeError, ValueError, OverflowError) as e:
            dropped += 1
            logger.debug(f"Dropped malformed bar {raw!r}: {e}")

    if not coerced:
        return [], dropped

    df = (
        pl.DataFrame(coerced, schema=BAR_SCHEMA, orient="row")
        .filter(pl.all_horizontal(pl.col(["open", "high", "low", "close"]).is_finite()))
        .sort("time", maintain_order=True)
        .unique(subset=["time"], keep="last", maintain_order=True)
    )
    dropped += len(coerced) - df.height
    candles = [Candle(**row) for row in df.iter_rows(named=True)]
    return candles, dropped


def extract_rows(body: Any) -> list[Any]:
    """Pull the bar list out of ``{bars: [..]}``, ``{data: [..]}`` or a bare list."""
    if isinstance(body, list):
        return body
    if isinstance(body, Mapping):
        if body.get("success") is False:
            raise HistoryError(str(body.get("message") or body.get("error") or "request unsuccessful"))
        for key in _PAYLOAD_KEYS:
            value = body.get(key)
            if isinstance(value, list):
                return value
            if isinstance(value, Mapping):
                return extract_rows(value)
    raise HistoryError("unexpected bars payload shape")


# ------------------------- Loader -------------------------------------


class HistoricalSeriesLoader:
    """
    Usage:
        loader = HistoricalSeriesLoader(HistoryConfig(base_url="https://api.example.com"))
        result = loader.load_bars("BTCUSDT", "1h", limit_for_timeframe("1M"))
        if result.error:
            ...
    """

    def __init__(
        self,
        config: Optional[HistoryConfig] = None,
        *,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._cfg = config or HistoryConfig()
        self._session = session
        self._owns_session = session is None

    @property
    def config(self) -> HistoryConfig:
        return self._cfg

    def _get_session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers["User-Agent"] = self._cfg.user_agent
        return self._session

    def close(self) -> None:
        if self._session is not None and self._owns_session:
            self._session.close()
            self._session = None

    def load_bars(
        self,
        symbol: str,
        interval: str,
        limit: Optional[int] = None,
        prefetched: Optional[Sequence[Any]] = None,
        *,
        connection_id: Optional[str] = None,
    ) -> BarsResult:
        """
        Load bars for ``symbol``/``interval``.

        A non-empty ``prefetched`` sequence skips the network call. Never raises.
        """
        if prefetched:
            candles, dropped = normalize_bars(prefetched)
            logger.debug(f"Using {len(candles)} prefetched bars for {symbol} {interval}")
            if dropped:
                logger.warning(f"Dropped {dropped} malformed/duplicate prefetched bar(s) for {symbol} {interval}")
            return BarsResult(candles=candles, source="prefetched", dropped_rows=dropped)

        url = self._cfg.base_url.rstrip("/") + "/bars"
        params: dict[str, Any] = {
            "symbol": symbol,
            "interval": interval,
            "limit": limit if limit is not None else self._cfg.default_limit,
        }
        if connection_id:
            params["connectionId"] = connection_id

        try:
            body = self._fetch_json(url, params)
            candles, dropped = normalize_bars(extract_rows(body))
        except HistoryError as e:
            logger.warning(f"Bars fetch failed for {symbol} {interval}: {e}")
            return BarsResult(error=f"Failed to load bars: {e.args[0]}")
        except Exception as e:
            logger.error(f"Unexpected error loading bars for {symbol} {interval}: {e}", exc_info=True)
            return BarsResult(error=f"Unexpected error: {e}")

        if dropped:
            logger.warning(f"Dropped {dropped} malformed/duplicate bar(s) for {symbol} {interval}")
        return BarsResult(candles=candles, dropped_rows=dropped)

    async def aload_bars(
        self,
        symbol: str,
        interval: str,
        limit: Optional[int] = None,
        prefetched: Optional[Sequence[Any]] = None,
        *,
        connection_id: Optional[str] = None,
    ) -> BarsResult:
        """``load_bars`` off the event loop thread."""
        if prefetched:
            return self.load_bars(symbol, interval, limit, prefetched)
        return await asyncio.to_thread(
            self.load_bars, symbol, interval, limit, None, connection_id=connection_id
        )

    def _fetch_json(self, url: str, params: Mapping[str, Any]) -> Any:
        try:
            response = self._get_session().get(url, params=params, timeout=self._cfg.timeout_s)
        except requests.RequestException as e:
            raise HistoryError(f"Network error: {e}", url=url) from e

        if response.status_code != 200:
            raise HistoryError(f"HTTP {response.status_code}", status=response.status_code, url=url)

        try:
            return response.json()
        except ValueError as e:
            raise HistoryError("Invalid JSON in response", status=response.status_code, url=url) from e
