"""
Unit tests for live feed configuration.
"""

import pytest

from marketstream.live.config import (
    ChartConfig,
    ConnectionConfig,
    FeedConfig,
    HistoryConfig,
    StreamDefaults,
)
from marketstream.live.errors import ConfigurationError


class TestConnectionConfig:
    """Tests for ConnectionConfig."""

    def test_defaults(self) -> None:
        """Defaults follow the gateway client: 5 attempts, 3s base delay, 30s heartbeat."""
        config = ConnectionConfig()
        assert config.base_url == "http://localhost:3000"
        assert config.max_reconnect_attempts == 5
        assert config.base_reconnect_delay_s == 3.0
        assert config.heartbeat_interval_s == 30.0
        assert config.connect_timeout_s == 10.0
        assert config.transports == ("websocket", "polling")

    def test_namespace_url(self) -> None:
        """Test the namespace URL is joined without doubled slashes."""
        config = ConnectionConfig(base_url="https://api.example.com/")
        assert config.url == "https://api.example.com/market"

    def test_invalid_timeout(self) -> None:
        """Test that negative timeout raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            ConnectionConfig(connect_timeout_s=-1.0)
        assert "connect_timeout_s must be positive" in str(exc_info.value)

    def test_invalid_reconnect_attempts(self) -> None:
        """Test that negative reconnect attempts raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            ConnectionConfig(max_reconnect_attempts=-1)
        assert "max_reconnect_attempts must be non-negative" in str(exc_info.value)

    def test_invalid_jitter(self) -> None:
        """Test that invalid jitter raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            ConnectionConfig(reconnect_jitter=1.5)
        assert "reconnect_jitter must be between 0 and 1" in str(exc_info.value)

    def test_unknown_transport(self) -> None:
        """Test that an unknown transport name is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            ConnectionConfig(transports=("carrier-pigeon",))
        assert exc_info.value.field == "transports"

    def test_empty_base_url(self) -> None:
        with pytest.raises(ConfigurationError):
            ConnectionConfig(base_url="")


class TestStreamDefaults:
    """Tests for StreamDefaults."""

    def test_defaults(self) -> None:
        defaults = StreamDefaults()
        assert defaults.orderbook_depth == 20
        assert defaults.trades_limit == 50
        assert defaults.max_cached_trades == 50

    def test_non_positive_rejected(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            StreamDefaults(orderbook_depth=0)
        assert "orderbook_depth must be positive" in str(exc_info.value)


class TestHistoryAndChartConfig:
    """Tests for HistoryConfig and ChartConfig."""

    def test_history_defaults(self) -> None:
        config = HistoryConfig()
        assert config.default_limit == 100
        assert config.extended_limit == 200
        assert config.extended_timeframes == ("3M", "6M")

    def test_history_invalid_timeout(self) -> None:
        with pytest.raises(ConfigurationError):
            HistoryConfig(timeout_s=0)

    def test_chart_defaults(self) -> None:
        config = ChartConfig()
        assert config.height == 400
        assert config.moving_averages == (5, 10)
        assert config.max_mount_retries == 10
        assert config.volume_up_color == "#22c55e80"
        assert config.volume_down_color == "#ef444480"

    def test_chart_invalid_window(self) -> None:
        with pytest.raises(ConfigurationError):
            ChartConfig(moving_averages=(5, 0))


class TestFeedConfig:
    """Tests for FeedConfig."""

    def test_sections_default(self) -> None:
        config = FeedConfig()
        assert isinstance(config.connection, ConnectionConfig)
        assert isinstance(config.streams, StreamDefaults)
        assert isinstance(config.history, HistoryConfig)
        assert isinstance(config.chart, ChartConfig)

    def test_immutable(self) -> None:
        config = FeedConfig()
        with pytest.raises(AttributeError):
            config.connection = ConnectionConfig()  # type: ignore[misc]
