"""
LiveDataCache - latest known value per subscription key.

Snapshots replace an entry wholesale; incremental updates are merged into
it. Merges are shallow and never erase a field the update does not carry,
so a price tick without ``high_24h`` keeps the last known ``high_24h``.
Trades merge differently: new trades are prepended to a bounded,
de-duplicated recent list.

Everything runs on the event loop thread; updates for a key are applied
strictly in the order they are handed in.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional

from marketstream.live.types import StreamKind, SubscriptionKey

logger = logging.getLogger(__name__)

Payload = dict[str, Any]
MergePolicy = Callable[[Payload, Payload], Payload]
ChangeListener = Callable[[SubscriptionKey, Optional["CacheEntry"]], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CacheEntry:
    """Latest value for one key."""

    key: SubscriptionKey
    payload: Payload
    last_update: int  # Unix ms, local
    update_count: int = 0
    snapshot_count: int = 0
    event_time: Optional[int] = None  # Unix ms carried by the latest message
    latest_fields: Payload = field(default_factory=dict)  # fields of the latest message only

    def age_ms(self, now_ms: int) -> int:
        return now_ms - self.last_update


def shallow_merge(current: Payload, update: Payload) -> Payload:
    """Overlay the non-None fields of ``update`` onto ``current``."""
    merged = dict(current)
    merged.update({k: v for k, v in update.items() if v is not None})
    return merged


def bounded_trades_merge(max_trades: int) -> MergePolicy:
    """Prepend incoming trades (newest first), drop repeated ids, keep ``max_trades``."""

    def merge(current: Payload, update: Payload) -> Payload:
        incoming = update.get("trades") or []
        existing = current.get("trades") or []

        seen: set[str] = set()
        trades: list[dict[str, Any]] = []
        for trade in (*incoming, *existing):
            trade_id = trade.get("id")
            if trade_id is not None:
                if trade_id in seen:
                    continue
                seen.add(trade_id)
            trades.append(trade)
            if len(trades) >= max_trades:
                break

        merged = shallow_merge(current, {k: v for k, v in update.items() if k != "trades"})
        merged["trades"] = trades
        return merged

    return merge


@dataclass
class CacheStats:
    snapshots: int = 0
    updates: int = 0
    clears: int = 0
    listener_errors: int = 0


class LiveDataCache:
    """
    Holds the latest payload per SubscriptionKey.

    Usage:
        cache = LiveDataCache()
        key = SubscriptionKey("conn-1", "BTCUSDT", StreamKind.PRICE)
        cache.apply_snapshot(key, {"price": 100.0, "high_24h": 110.0})
        cache.apply_update(key, {"price": 105.0})
        cache.get(key).payload  # {"price": 105.0, "high_24h": 110.0}
    """

    def __init__(
        self,
        *,
        max_trades: int = 50,
        clock: Callable[[], int] = _now_ms,
        merge_policies: Optional[dict[StreamKind, MergePolicy]] = None,
    ) -> None:
        self._entries: dict[SubscriptionKey, CacheEntry] = {}
        self._listeners: dict[SubscriptionKey, list[ChangeListener]] = {}
        self._clock = clock
        self._merge_policies: dict[StreamKind, MergePolicy] = {
            StreamKind.TRADES: bounded_trades_merge(max_trades),
        }
        if merge_policies:
            self._merge_policies.update(merge_policies)
        self._stats = CacheStats()

    @property
    def stats(self) -> CacheStats:
        return self._stats

    def now(self) -> int:
        return self._clock()

    # --- Writes ---

    def apply_snapshot(
        self,
        key: SubscriptionKey,
        payload: Payload,
        timestamp: Optional[int] = None,
        *,
        event_time: Optional[int] = None,
    ) -> CacheEntry:
        """
        Replace the entry for ``key`` wholesale.

        ``event_time`` is the time of this message alone (defaults to the
        local update time); it is never merged from earlier messages.
        """
        ts = self._clock() if timestamp is None else timestamp
        previous = self._entries.get(key)
        entry = CacheEntry(
            key=key,
            payload=dict(payload),
            last_update=ts,
            update_count=previous.update_count if previous else 0,
            snapshot_count=(previous.snapshot_count if previous else 0) + 1,
            event_time=ts if event_time is None else event_time,
            latest_fields=dict(payload),
        )
        self._entries[key] = entry
        self._stats.snapshots += 1
        self._notify(key, entry)
        return entry

    def apply_update(
        self,
        key: SubscriptionKey,
        partial: Payload,
        timestamp: Optional[int] = None,
        *,
        event_time: Optional[int] = None,
    ) -> CacheEntry:
        """Merge ``partial`` into the entry for ``key`` (creating it if absent)."""
        ts = self._clock() if timestamp is None else timestamp
        merge = self._merge_policies.get(key.kind, shallow_merge)

        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key, payload=merge({}, partial), last_update=ts, update_count=1)
            self._entries[key] = entry
        else:
            entry.payload = merge(entry.payload, partial)
            entry.last_update = ts
            entry.update_count += 1
        entry.event_time = ts if event_time is None else event_time
        entry.latest_fields = dict(partial)

        self._stats.updates += 1
        self._notify(key, entry)
        return entry

    def clear(self, key: SubscriptionKey) -> None:
        if self._entries.pop(key, None) is not None:
            self._stats.clears += 1
            self._notify(key, None)

    def clear_connection(self, connection_id: str) -> None:
        """Drop every entry belonging to one connection."""
        for key in [k for k in self._entries if k.connection_id == connection_id]:
            self.clear(key)

    # --- Reads ---

    def get(self, key: SubscriptionKey) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def is_stale(self, key: SubscriptionKey, threshold_ms: int) -> bool:
        """True if the entry is missing or older than ``threshold_ms``."""
        entry = self._entries.get(key)
        if entry is None:
            return True
        return self._clock() - entry.last_update > threshold_ms

    def keys(self) -> Iterator[SubscriptionKey]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    # --- Listeners ---

    def on_change(self, key: SubscriptionKey, listener: ChangeListener) -> Callable[[], None]:
        """Call ``listener(key, entry_or_None)`` whenever ``key`` changes."""
        self._listeners.setdefault(key, []).append(listener)

        def _unregister() -> None:
            listeners = self._listeners.get(key)
            if listeners and listener in listeners:
                listeners.remove(listener)
                if not listeners:
                    del self._listeners[key]

        return _unregister

    def listener_count(self) -> int:
        return sum(len(v) for v in self._listeners.values())

    def _notify(self, key: SubscriptionKey, entry: Optional[CacheEntry]) -> None:
        for listener in list(self._listeners.get(key, ())):
            try:
                listener(key, entry)
            except Exception as e:
                self._stats.listener_errors += 1
                logger.error(f"Cache listener error for {key}: {e}", exc_info=True)
