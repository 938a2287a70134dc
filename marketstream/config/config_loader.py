"""
Purpose:
    - Load a TOML config file into a FeedConfig
    - Validate every section (unknown keys are rejected)
    - Apply environment overrides for the gateway / REST base URLs

Environment:
    MARKETSTREAM_WS_URL   gateway base URL
    MARKETSTREAM_API_URL  REST base URL; also the gateway fallback
    (both unset -> http://localhost:3000)
"""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from marketstream.live.config import (
    DEFAULT_BASE_URL,
    ChartConfig,
    ConnectionConfig,
    FeedConfig,
    HistoryConfig,
    StreamDefaults,
)
from marketstream.live.errors import ConfigurationError

logger = logging.getLogger(__name__)

WS_URL_ENV = "MARKETSTREAM_WS_URL"
API_URL_ENV = "MARKETSTREAM_API_URL"


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ConnectionSection(_Section):
    base_url: Optional[str] = None
    namespace: Optional[str] = None
    transports: Optional[tuple[str, ...]] = None
    connect_timeout_s: Optional[float] = None
    heartbeat_interval_s: Optional[float] = None
    max_reconnect_attempts: Optional[int] = None
    base_reconnect_delay_s: Optional[float] = None
    max_reconnect_delay_s: Optional[float] = None
    reconnect_jitter: Optional[float] = None
    poll_interval_s: Optional[float] = None


class StreamsSection(_Section):
    orderbook_depth: Optional[int] = None
    trades_limit: Optional[int] = None
    max_cached_trades: Optional[int] = None
    staleness_threshold_ms: Optional[int] = None


class HistorySection(_Section):
    base_url: Optional[str] = None
    timeout_s: Optional[float] = None
    default_limit: Optional[int] = None
    extended_limit: Optional[int] = None
    extended_timeframes: Optional[tuple[str, ...]] = None
    user_agent: Optional[str] = None


class ChartSection(_Section):
    height: Optional[int] = None
    mount_retry_delay_s: Optional[float] = None
    max_mount_retries: Optional[int] = None
    moving_averages: Optional[tuple[int, ...]] = None
    up_color: Optional[str] = None
    down_color: Optional[str] = None
    volume_up_color: Optional[str] = None
    volume_down_color: Optional[str] = None


class FileConfig(_Section):
    connection: ConnectionSection = ConnectionSection()
    streams: StreamsSection = StreamsSection()
    history: HistorySection = HistorySection()
    chart: ChartSection = ChartSection()


def _given(section: _Section) -> dict[str, Any]:
    return section.model_dump(exclude_none=True)


class ConfigLoader:
    """
    Config-loader; loading toml file plus environment overrides.
    """

    def __init__(self, base_dir: str = ".", env: Optional[Mapping[str, str]] = None) -> None:
        self._base_dir = base_dir
        self._env = os.environ if env is None else env

    def load(self, file_name: str) -> dict[str, Any]:
        path = Path(file_name)
        if not path.is_absolute():
            path = Path(self._base_dir) / file_name

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open("rb") as f:
            return tomllib.load(f)

    def load_feed_config(self, file_name: Optional[str] = None) -> FeedConfig:
        """
        Build a FeedConfig from an optional TOML file and the environment.

        Raises:
            FileNotFoundError: If ``file_name`` is given but missing
            ConfigurationError: On unknown keys or invalid values
        """
        data = self.load(file_name) if file_name else {}
        return self.from_mapping(data)

    def from_mapping(self, data: Mapping[str, Any]) -> FeedConfig:
        try:
            parsed = FileConfig.model_validate(data)
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(p) for p in first["loc"])
            raise ConfigurationError(f"Invalid config: {first['msg']}", field=field) from e

        connection = _given(parsed.connection)
        history = _given(parsed.history)

        ws_url = self._env.get(WS_URL_ENV)
        api_url = self._env.get(API_URL_ENV)
        if ws_url:
            connection["base_url"] = ws_url
        elif "base_url" not in connection:
            connection["base_url"] = api_url or DEFAULT_BASE_URL
        if api_url:
            history["base_url"] = api_url

        config = FeedConfig(
            connection=ConnectionConfig(**connection),
            streams=StreamDefaults(**_given(parsed.streams)),
            history=HistoryConfig(**history),
            chart=ChartConfig(**_given(parsed.chart)),
        )
        logger.debug(
            f"Loaded config: gateway={config.connection.base_url} rest={config.history.base_url}"
        )
        return config
