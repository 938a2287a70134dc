"""
Live Market Data Module.

Real-time order book, trades and price streams from the market gateway,
multiplexed over one connection per connection id.

Components:
- StreamConnection: transport lifecycle, heartbeat, reconnect/backoff, event fan-out
- SubscriptionManager: de-duplicated, reference-counted subscriptions with replay
- LiveDataCache: latest value per (connection_id, symbol, kind), merge semantics
- MarketDataHub: application-root container wiring the above per connection id
- VisibilityMonitor: tab hidden/visible signal

Usage:
    from marketstream.live import FeedConfig, MarketDataHub, StreamKind

    hub = MarketDataHub(FeedConfig())
    manager = await hub.acquire("conn-1")
    manager.subscribe("conn-1", "BTCUSDT", StreamKind.PRICE)
"""

from marketstream.live.cache import CacheEntry, LiveDataCache
from marketstream.live.config import (
    ChartConfig,
    ConnectionConfig,
    FeedConfig,
    HistoryConfig,
    StreamDefaults,
)
from marketstream.live.connection import StreamConnection
from marketstream.live.errors import (
    ChartError,
    ConfigurationError,
    HistoryError,
    LiveFeedError,
    MessageParseError,
    RateLimitError,
    SubscriptionError,
    TransportError,
)
from marketstream.live.hub import MarketDataHub
from marketstream.live.subscriptions import SubscriptionManager
from marketstream.live.types import (
    ConnectionHealth,
    ConnectionState,
    GatewayEvent,
    StreamKind,
    SubscriptionKey,
)
from marketstream.live.visibility import VisibilityMonitor

__all__ = [
    # Main entry points
    "MarketDataHub",
    "StreamConnection",
    "SubscriptionManager",
    "LiveDataCache",
    "CacheEntry",
    "VisibilityMonitor",
    # Config
    "FeedConfig",
    "ConnectionConfig",
    "StreamDefaults",
    "HistoryConfig",
    "ChartConfig",
    # Types
    "ConnectionState",
    "ConnectionHealth",
    "GatewayEvent",
    "StreamKind",
    "SubscriptionKey",
    # Errors
    "LiveFeedError",
    "TransportError",
    "SubscriptionError",
    "MessageParseError",
    "ConfigurationError",
    "RateLimitError",
    "HistoryError",
    "ChartError",
]
