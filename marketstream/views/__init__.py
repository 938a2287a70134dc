"""
UI-facing views over the live feed.

Each view is a small enter/exit state machine (idle -> subscribed -> torn_down):
- LiveOrderBookView: order book + recent trades
- LivePriceView: price + 24h stats
- CandlestickSeriesView: history + live ticks + moving averages, pushed to a chart
"""

from marketstream.live.visibility import VisibilityMonitor
from marketstream.views.base import LiveView, ViewPhase
from marketstream.views.candlestick import CandlestickSeriesView, CandlestickState
from marketstream.views.orderbook import LiveOrderBookView, OrderBookState
from marketstream.views.price import LivePriceView, PriceState

__all__ = [
    "LiveView",
    "ViewPhase",
    "LiveOrderBookView",
    "OrderBookState",
    "LivePriceView",
    "PriceState",
    "CandlestickSeriesView",
    "CandlestickState",
    "VisibilityMonitor",
]
