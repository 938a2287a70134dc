"""
Command-line entrypoint for quick looks at the market data feed.

Usage:
  marketstream bars BTCUSDT --interval 1h --timeframe 3M
  marketstream markets --ids bitcoin,ethereum
  marketstream watch conn-1 BTCUSDT --seconds 30

Options:
  --config FILE         TOML config (see config_loader); env overrides still apply
  --log-level LEVEL     DEBUG, INFO, WARNING, ERROR (default WARNING)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from datetime import datetime, timezone

from marketstream.config.config_loader import ConfigLoader
from marketstream.data.history import HistoricalSeriesLoader, limit_for_timeframe
from marketstream.data.markets import MarketSnapshotLoader
from marketstream.live.config import FeedConfig
from marketstream.live.errors import ConfigurationError
from marketstream.live.hub import MarketDataHub
from marketstream.views.orderbook import LiveOrderBookView, OrderBookState
from marketstream.views.price import LivePriceView, PriceState


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="marketstream", description="Market data feed tools")
    parser.add_argument("--config", help="Path to a TOML config file.")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default WARNING).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    bars = sub.add_parser("bars", help="Fetch historical bars and print them.")
    bars.add_argument("symbol")
    bars.add_argument("--interval", default="1h")
    bars.add_argument("--timeframe", default="1M", help="Selects the bar limit (3M/6M fetch more).")
    bars.add_argument("--limit", type=int, help="Explicit bar limit; overrides --timeframe.")
    bars.add_argument("--connection-id", help="Exchange connection id, if the backend needs one.")

    markets = sub.add_parser("markets", help="Print a market listing snapshot.")
    markets.add_argument("--ids", required=True, help="Comma-separated ids, e.g. bitcoin,ethereum")
    markets.add_argument("--per-page", type=int)

    watch = sub.add_parser("watch", help="Stream live price and order book updates.")
    watch.add_argument("connection_id")
    watch.add_argument("symbol")
    watch.add_argument("--seconds", type=float, default=30.0)

    return parser.parse_args(argv)


def _fmt_ts(seconds: int) -> str:
    return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def _cmd_bars(cfg: FeedConfig, args: argparse.Namespace) -> int:
    loader = HistoricalSeriesLoader(cfg.history)
    try:
        limit = args.limit or limit_for_timeframe(args.timeframe, cfg.history)
        result = loader.load_bars(args.symbol, args.interval, limit, connection_id=args.connection_id)
    finally:
        loader.close()

    if result.error:
        print(f"[!] {result.error}")
        return 1
    for c in result.candles:
        print(
            f"{_fmt_ts(c.time)}  O {c.open:>12.4f}  H {c.high:>12.4f}  "
            f"L {c.low:>12.4f}  C {c.close:>12.4f}  V {c.volume:.4f}"
        )
    print(f"{len(result.candles)} bars")
    return 0


def _cmd_markets(cfg: FeedConfig, args: argparse.Namespace) -> int:
    loader = MarketSnapshotLoader(cfg.history)
    try:
        ids = [i.strip() for i in args.ids.split(",") if i.strip()]
        result = loader.load_markets(ids, args.per_page)
    finally:
        loader.close()

    if result.error:
        print(f"[!] {result.error}")
        return 1
    for m in result.markets:
        change = m.price_change_percentage_24h
        change_txt = f"{change:+.2f}%" if change is not None else "n/a"
        print(f"{m.symbol.upper():<8} {m.name:<20} {m.current_price!s:>14}  {change_txt}")
    return 0


async def _watch(cfg: FeedConfig, args: argparse.Namespace) -> None:
    hub = MarketDataHub(cfg)
    price = LivePriceView(hub, args.connection_id, args.symbol)
    book = LiveOrderBookView(hub, args.connection_id, args.symbol)

    def _on_price(state: PriceState) -> None:
        print(f"price {state.price}  24h {state.change_percent_24h}%  connected={state.is_connected}")
        if state.error:
            print(f"[!] {state.error}")

    def _on_book(state: OrderBookState) -> None:
        if state.order_book:
            bids = state.order_book.get("bids") or []
            asks = state.order_book.get("asks") or []
            best_bid = bids[0]["price"] if bids else None
            best_ask = asks[0]["price"] if asks else None
            print(f"book  bid {best_bid}  ask {best_ask}  trades={len(state.trades)}")

    price.on_change(_on_price)
    book.on_change(_on_book)
    try:
        await price.open()
        await book.open()
        await asyncio.sleep(args.seconds)
    finally:
        book.close()
        price.close()
        await hub.close()


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        cfg = ConfigLoader().load_feed_config(args.config)
    except (FileNotFoundError, ConfigurationError) as exc:
        print(f"[!] {exc}")
        return 1

    if args.command == "bars":
        return _cmd_bars(cfg, args)
    if args.command == "markets":
        return _cmd_markets(cfg, args)

    try:
        asyncio.run(_watch(cfg, args))
    except KeyboardInterrupt:
        print("Interrupted by user.")
        return 130
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
