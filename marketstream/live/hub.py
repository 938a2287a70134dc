"""
MarketDataHub - application-root container for the live feed.

Owns one StreamConnection + SubscriptionManager per connection id, the
shared LiveDataCache and the VisibilityMonitor. Views get the hub handed in
instead of reaching for a module-level singleton.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Coroutine, Optional

from marketstream.live.cache import LiveDataCache
from marketstream.live.config import FeedConfig
from marketstream.live.connection import StreamConnection
from marketstream.live.errors import SubscriptionError
from marketstream.live.subscriptions import SubscriptionManager
from marketstream.live.transport import TransportOpener, open_transport
from marketstream.live.visibility import VisibilityMonitor

logger = logging.getLogger(__name__)


@dataclass
class _Slot:
    connection: StreamConnection
    manager: SubscriptionManager
    refs: int = 0


class MarketDataHub:
    """
    Reference-counted access to per-connection-id streams.

    Usage:
        hub = MarketDataHub(FeedConfig())
        manager = await hub.acquire("conn-1")
        ...
        hub.release("conn-1")
        await hub.close()
    """

    def __init__(
        self,
        config: Optional[FeedConfig] = None,
        *,
        opener: TransportOpener = open_transport,
        cache: Optional[LiveDataCache] = None,
        visibility: Optional[VisibilityMonitor] = None,
    ) -> None:
        self._config = config or FeedConfig()
        self._opener = opener
        self._cache = cache or LiveDataCache(max_trades=self._config.streams.max_cached_trades)
        self._visibility = visibility or VisibilityMonitor()
        self._slots: dict[str, _Slot] = {}
        self._pending: set[asyncio.Task[None]] = set()
        self._closed = False
        self._unregister_visibility = self._visibility.on_change(self._on_visibility)

    @property
    def config(self) -> FeedConfig:
        return self._config

    @property
    def cache(self) -> LiveDataCache:
        return self._cache

    @property
    def visibility(self) -> VisibilityMonitor:
        return self._visibility

    def connection_ids(self) -> list[str]:
        return list(self._slots)

    def connection(self, connection_id: str) -> Optional[StreamConnection]:
        slot = self._slots.get(connection_id)
        return slot.connection if slot else None

    def manager(self, connection_id: str) -> Optional[SubscriptionManager]:
        slot = self._slots.get(connection_id)
        return slot.manager if slot else None

    def ref_count(self, connection_id: str) -> int:
        slot = self._slots.get(connection_id)
        return slot.refs if slot else 0

    # --- Acquire / release ---

    async def acquire(self, connection_id: str) -> SubscriptionManager:
        """
        Take a reference on ``connection_id``, creating and connecting its
        stream on first use. Never raises for transport problems; the
        connection's state reflects them.
        """
        if self._closed:
            raise SubscriptionError("hub is closed", component="hub")
        if not connection_id:
            raise SubscriptionError("connection_id is required", component="hub")

        slot = self._slots.get(connection_id)
        if slot is None:
            connection = StreamConnection(
                self._config.connection,
                opener=self._opener,
                name=f"stream[{connection_id}]",
            )
            manager = SubscriptionManager(
                connection, self._cache, name=f"subscriptions[{connection_id}]"
            )
            slot = _Slot(connection=connection, manager=manager)
            self._slots[connection_id] = slot
            logger.info(f"[hub] Created stream for {connection_id}")

        slot.refs += 1
        if not self._visibility.hidden:
            await slot.connection.connect(self._auth(connection_id))
        return slot.manager

    def release(self, connection_id: str) -> None:
        """Drop a reference; the last one disconnects and forgets the stream."""
        slot = self._slots.get(connection_id)
        if slot is None:
            return
        slot.refs -= 1
        if slot.refs > 0:
            return

        del self._slots[connection_id]
        slot.manager.dispose()
        slot.connection.disconnect()
        self._cache.clear_connection(connection_id)
        logger.info(f"[hub] Released stream for {connection_id}")

    # --- Visibility ---

    def _on_visibility(self, hidden: bool) -> None:
        if self._closed:
            return
        if hidden:
            logger.info(f"[hub] Hidden: suspending {len(self._slots)} stream(s)")
            for slot in self._slots.values():
                slot.manager.suspend()
                slot.connection.disconnect()
            return

        logger.info(f"[hub] Visible: reconnecting {len(self._slots)} stream(s)")
        for connection_id, slot in self._slots.items():
            # subscriptions replay when the connection reports connected
            self._spawn(slot.connection.connect(self._auth(connection_id)))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def wait_pending(self) -> None:
        """Wait for reconnects started by a visibility change."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # --- Teardown ---

    async def close(self) -> None:
        """Tear down every stream. The hub is unusable afterwards."""
        if self._closed:
            return
        self._closed = True
        self._unregister_visibility()

        for task in list(self._pending):
            task.cancel()
        await self.wait_pending()

        slots = list(self._slots.items())
        self._slots.clear()
        for connection_id, slot in slots:
            slot.manager.dispose()
            slot.connection.disconnect()
            self._cache.clear_connection(connection_id)
        for _, slot in slots:
            await slot.connection.wait_closed()

    @staticmethod
    def _auth(connection_id: str) -> dict[str, str]:
        return {"connectionId": connection_id}
