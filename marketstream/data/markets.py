"""
MarketSnapshotLoader - market listing snapshot from REST.

``GET {base}/markets?ids={csv}&per_page={n}`` returns a list of market
summaries. Rows are coerced with pydantic; rows that do not validate are
skipped. Like the bar loader, failures come back as an error string.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import requests
from pydantic import BaseModel, ConfigDict, ValidationError

from marketstream.live.config import HistoryConfig

logger = logging.getLogger(__name__)


class MarketSummary(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    symbol: str
    name: str = ""
    current_price: Optional[float] = None
    price_change_24h: Optional[float] = None
    price_change_percentage_24h: Optional[float] = None
    high_24h: Optional[float] = None
    low_24h: Optional[float] = None
    market_cap: Optional[float] = None
    total_volume: Optional[float] = None
    circulating_supply: Optional[float] = None


@dataclass
class MarketsResult:
    markets: list[MarketSummary] = field(default_factory=list)
    error: Optional[str] = None


class MarketSnapshotLoader:
    def __init__(
        self,
        config: Optional[HistoryConfig] = None,
        *,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._cfg = config or HistoryConfig()
        self._session = session or requests.Session()
        self._session.headers["User-Agent"] = self._cfg.user_agent

    def load_markets(self, ids: Sequence[str], per_page: Optional[int] = None) -> MarketsResult:
        url = self._cfg.base_url.rstrip("/") + "/markets"
        params: dict[str, Any] = {"ids": ",".join(ids), "per_page": per_page or max(len(ids), 1)}

        try:
            response = self._session.get(url, params=params, timeout=self._cfg.timeout_s)
        except requests.RequestException as e:
            logger.warning(f"Markets fetch failed: {e}")
            return MarketsResult(error=f"Network error: {e}")

        if response.status_code != 200:
            logger.warning(f"Markets fetch failed: HTTP {response.status_code}")
            return MarketsResult(error=f"HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            return MarketsResult(error="Invalid JSON in response")

        rows = body.get("data") if isinstance(body, dict) else body
        if not isinstance(rows, list):
            return MarketsResult(error="unexpected markets payload shape")

        markets: list[MarketSummary] = []
        for row in rows:
            try:
                markets.append(MarketSummary.model_validate(row))
            except ValidationError as e:
                logger.debug(f"Skipped market row: {e.error_count()} error(s)")
        return MarketsResult(markets=markets)

    def close(self) -> None:
        self._session.close()
