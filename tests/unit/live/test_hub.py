"""
Unit tests for MarketDataHub.
"""

import pytest

from marketstream.live.config import FeedConfig
from marketstream.live.errors import SubscriptionError
from marketstream.live.hub import MarketDataHub
from marketstream.live.types import ConnectionState, StreamKind, SubscriptionKey
from marketstream.live.visibility import VisibilityMonitor
from tests.unit.fixtures.fakes import FakeOpener, fast_connection_config, settle


def _hub(opener: FakeOpener, visibility: VisibilityMonitor | None = None) -> MarketDataHub:
    config = FeedConfig(connection=fast_connection_config())
    return MarketDataHub(config, opener=opener, visibility=visibility)


class TestAcquireRelease:
    @pytest.mark.asyncio
    async def test_acquire_shares_stream(self) -> None:
        opener = FakeOpener()
        hub = _hub(opener)

        first = await hub.acquire("conn-1")
        second = await hub.acquire("conn-1")

        assert first is second
        assert hub.ref_count("conn-1") == 2
        assert opener.calls == 1
        assert opener.auths == [{"connectionId": "conn-1"}]
        await hub.close()

    @pytest.mark.asyncio
    async def test_separate_connection_ids(self) -> None:
        opener = FakeOpener()
        hub = _hub(opener)

        await hub.acquire("conn-1")
        await hub.acquire("conn-2")

        assert hub.connection_ids() == ["conn-1", "conn-2"]
        assert hub.connection("conn-1") is not hub.connection("conn-2")
        await hub.close()

    @pytest.mark.asyncio
    async def test_last_release_tears_down(self) -> None:
        opener = FakeOpener()
        hub = _hub(opener)
        manager = await hub.acquire("conn-1")
        await hub.acquire("conn-1")
        connection = hub.connection("conn-1")
        assert connection is not None
        key = manager.subscribe("conn-1", "BTCUSDT", StreamKind.PRICE)
        hub.cache.apply_update(key, {"price": 1.0})

        hub.release("conn-1")
        assert connection.is_connected

        hub.release("conn-1")
        await connection.wait_closed()

        assert connection.state == ConnectionState.DISCONNECTED
        assert hub.connection_ids() == []
        assert key not in hub.cache
        assert opener.latest.closed
        hub.release("conn-1")  # unknown id is a no-op
        await hub.close()

    @pytest.mark.asyncio
    async def test_invalid_acquire(self) -> None:
        hub = _hub(FakeOpener())
        with pytest.raises(SubscriptionError):
            await hub.acquire("")
        await hub.close()
        with pytest.raises(SubscriptionError):
            await hub.acquire("conn-1")


class TestVisibility:
    """Hidden tabs hold no live transport; visible again replays."""

    @pytest.mark.asyncio
    async def test_acquire_while_hidden_defers_connect(self) -> None:
        opener = FakeOpener()
        visibility = VisibilityMonitor(hidden=True)
        hub = _hub(opener, visibility)

        await hub.acquire("conn-1")
        assert opener.calls == 0

        visibility.set_hidden(False)
        await hub.wait_pending()

        connection = hub.connection("conn-1")
        assert connection is not None and connection.is_connected
        await hub.close()

    @pytest.mark.asyncio
    async def test_hide_unsubscribes_and_show_replays(self) -> None:
        opener = FakeOpener()
        visibility = VisibilityMonitor()
        hub = _hub(opener, visibility)
        manager = await hub.acquire("conn-1")
        manager.subscribe("conn-1", "BTCUSDT", StreamKind.PRICE)
        await settle()
        connection = hub.connection("conn-1")
        assert connection is not None

        visibility.set_hidden(True)
        await connection.wait_closed()

        first = opener.transports[0]
        assert first.sent_events() == ["subscribe:price", "unsubscribe:price"]
        assert connection.state == ConnectionState.DISCONNECTED
        assert manager.get("conn-1", "BTCUSDT", StreamKind.PRICE) is not None

        visibility.set_hidden(False)
        await hub.wait_pending()
        await settle()

        assert opener.calls == 2
        assert opener.latest.sent_events() == ["subscribe:price"]
        await hub.close()

    @pytest.mark.asyncio
    async def test_close_releases_everything(self) -> None:
        opener = FakeOpener()
        visibility = VisibilityMonitor()
        hub = _hub(opener, visibility)
        await hub.acquire("conn-1")
        await hub.acquire("conn-2")
        hub.cache.apply_update(SubscriptionKey("conn-1", "BTCUSDT", StreamKind.PRICE), {"price": 1})

        await hub.close()
        await hub.close()

        assert all(t.closed for t in opener.transports)
        assert len(hub.cache) == 0
        assert visibility.listener_count() == 0
