"""
Configuration types for the live market data core.

Provides immutable, validated configuration dataclasses for all components.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from marketstream.live.errors import ConfigurationError

DEFAULT_BASE_URL = "http://localhost:3000"

TRANSPORT_NAMES = ("websocket", "polling")


@dataclass(frozen=True)
class ConnectionConfig:
    """Configuration for one gateway connection."""

    base_url: str = DEFAULT_BASE_URL
    namespace: str = "/market"
    transports: tuple[str, ...] = TRANSPORT_NAMES

    connect_timeout_s: float = 10.0
    heartbeat_interval_s: float = 30.0

    # Reconnect policy: base * 2^(attempt-1), capped
    max_reconnect_attempts: int = 5
    base_reconnect_delay_s: float = 3.0
    max_reconnect_delay_s: float = 30.0
    reconnect_jitter: float = 0.0  # fraction, e.g. 0.3 for ±30%

    # Long-poll fallback
    poll_interval_s: float = 1.0

    def __post_init__(self) -> None:
        if not self.base_url:
            raise ConfigurationError("base_url must not be empty", field="base_url")
        if self.connect_timeout_s <= 0:
            raise ConfigurationError(
                "connect_timeout_s must be positive",
                field="connect_timeout_s",
                value=self.connect_timeout_s,
            )
        if self.heartbeat_interval_s <= 0:
            raise ConfigurationError(
                "heartbeat_interval_s must be positive",
                field="heartbeat_interval_s",
                value=self.heartbeat_interval_s,
            )
        if self.max_reconnect_attempts < 0:
            raise ConfigurationError(
                "max_reconnect_attempts must be non-negative",
                field="max_reconnect_attempts",
                value=self.max_reconnect_attempts,
            )
        if self.base_reconnect_delay_s < 0 or self.max_reconnect_delay_s < 0:
            raise ConfigurationError(
                "reconnect delays must be non-negative",
                field="base_reconnect_delay_s",
                value=self.base_reconnect_delay_s,
            )
        if not (0 <= self.reconnect_jitter <= 1):
            raise ConfigurationError(
                "reconnect_jitter must be between 0 and 1",
                field="reconnect_jitter",
                value=self.reconnect_jitter,
            )
        if not self.transports:
            raise ConfigurationError("at least one transport is required", field="transports")
        unknown = [t for t in self.transports if t not in TRANSPORT_NAMES]
        if unknown:
            raise ConfigurationError(
                f"unknown transports: {unknown}",
                field="transports",
                value=self.transports,
            )

    @property
    def url(self) -> str:
        """Namespace URL, e.g. http://host:3000/market."""
        return self.base_url.rstrip("/") + "/" + self.namespace.strip("/")


@dataclass(frozen=True)
class StreamDefaults:
    """Default subscription parameters and cache policy."""

    orderbook_depth: int = 20
    trades_limit: int = 50
    max_cached_trades: int = 50
    staleness_threshold_ms: int = 30_000

    def __post_init__(self) -> None:
        for name in ("orderbook_depth", "trades_limit", "max_cached_trades", "staleness_threshold_ms"):
            value = getattr(self, name)
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive", field=name, value=value)


@dataclass(frozen=True)
class HistoryConfig:
    """Configuration for the REST history and market snapshot loaders."""

    base_url: str = DEFAULT_BASE_URL
    timeout_s: float = 10.0
    default_limit: int = 100
    extended_limit: int = 200
    extended_timeframes: tuple[str, ...] = ("3M", "6M")
    user_agent: str = "marketstream/0.1"

    def __post_init__(self) -> None:
        if self.timeout_s <= 0:
            raise ConfigurationError("timeout_s must be positive", field="timeout_s", value=self.timeout_s)
        if self.default_limit <= 0 or self.extended_limit <= 0:
            raise ConfigurationError(
                "bar limits must be positive",
                field="default_limit",
                value=self.default_limit,
            )


@dataclass(frozen=True)
class ChartConfig:
    """Configuration for the chart lifecycle controller."""

    height: int = 400
    mount_retry_delay_s: float = 0.1
    max_mount_retries: int = 10
    moving_averages: tuple[int, ...] = (5, 10)
    up_color: str = "#22c55e"
    down_color: str = "#ef4444"
    volume_up_color: str = "#22c55e80"
    volume_down_color: str = "#ef444480"

    def __post_init__(self) -> None:
        if self.height <= 0:
            raise ConfigurationError("height must be positive", field="height", value=self.height)
        if self.max_mount_retries < 0:
            raise ConfigurationError(
                "max_mount_retries must be non-negative",
                field="max_mount_retries",
                value=self.max_mount_retries,
            )
        if any(w <= 0 for w in self.moving_averages):
            raise ConfigurationError(
                "moving average windows must be positive",
                field="moving_averages",
                value=self.moving_averages,
            )


@dataclass(frozen=True)
class FeedConfig:
    """
    Immutable top-level configuration.

    Example:
        config = FeedConfig(
            connection=ConnectionConfig(base_url="https://api.example.com"),
            history=HistoryConfig(base_url="https://api.example.com"),
        )
    """

    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    streams: StreamDefaults = field(default_factory=StreamDefaults)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    chart: ChartConfig = field(default_factory=ChartConfig)
