"""
Transports for the market gateway.

A transport moves text frames; it knows nothing about events or
subscriptions. Two implementations share the aiohttp stack:

- WebSocketTransport: a single websocket to ``{base}/{namespace}``
- PollingTransport: HTTP long-polling against the same namespace, used when
  the websocket upgrade fails

``open_transport`` tries them in the configured order and returns the first
one that opens.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Mapping, Optional, Protocol
from urllib.parse import urlencode

import aiohttp
import orjson

from marketstream.live.config import ConnectionConfig
from marketstream.live.errors import TransportError

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Frame-level transport owned exclusively by one StreamConnection."""

    name: str

    @property
    def closed(self) -> bool: ...

    async def open(self) -> None: ...

    async def send(self, text: str) -> None: ...

    def receive(self) -> AsyncIterator[str]: ...

    async def close(self) -> None: ...


TransportOpener = Callable[[ConnectionConfig, Mapping[str, str]], Awaitable[Transport]]


def _with_query(url: str, params: Mapping[str, str]) -> str:
    if not params:
        return url
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}{urlencode(dict(params))}"


def _ws_url(http_url: str) -> str:
    if http_url.startswith("https://"):
        return "wss://" + http_url[len("https://") :]
    if http_url.startswith("http://"):
        return "ws://" + http_url[len("http://") :]
    return http_url


class WebSocketTransport:
    """Websocket transport; auth travels as handshake query parameters."""

    name = "websocket"

    def __init__(self, config: ConnectionConfig, auth: Mapping[str, str]) -> None:
        self._config = config
        self._auth = dict(auth)
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    @property
    def closed(self) -> bool:
        return self._ws is None or self._ws.closed

    @property
    def url(self) -> str:
        return _with_query(_ws_url(self._config.url), {**self._auth, "transport": "websocket"})

    async def open(self) -> None:
        timeout = aiohttp.ClientTimeout(total=self._config.connect_timeout_s)
        self._session = aiohttp.ClientSession(timeout=timeout)
        try:
            self._ws = await self._session.ws_connect(self.url, autoping=True)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            await self.close()
            raise TransportError(
                f"Websocket upgrade failed: {e}",
                url=self._config.url,
                transport=self.name,
                component="WebSocketTransport",
            ) from e

    async def send(self, text: str) -> None:
        if self._ws is None or self._ws.closed:
            raise TransportError("Websocket is not open", transport=self.name)
        await self._ws.send_str(text)

    async def receive(self) -> AsyncIterator[str]:
        if self._ws is None:
            return
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                yield msg.data
            elif msg.type == aiohttp.WSMsgType.BINARY:
                yield msg.data.decode("utf-8", errors="replace")
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.error(f"[websocket] Transport error: {self._ws.exception()}")
                break
            elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                break

    async def close(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


class PollingTransport:
    """
    HTTP long-polling fallback.

    Handshake: ``GET {url}/poll?<auth>&transport=polling`` returns ``{"sid": ..}``.
    Receive: ``GET {url}/poll?sid=..`` returns a JSON array of frames.
    Send: ``POST {url}/emit?sid=..`` with the frame as body.
    """

    name = "polling"

    def __init__(self, config: ConnectionConfig, auth: Mapping[str, str]) -> None:
        self._config = config
        self._auth = dict(auth)
        self._session: Optional[aiohttp.ClientSession] = None
        self._sid: Optional[str] = None
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> None:
        timeout = aiohttp.ClientTimeout(total=self._config.connect_timeout_s * 3)
        self._session = aiohttp.ClientSession(timeout=timeout)
        url = _with_query(f"{self._config.url}/poll", {**self._auth, "transport": "polling"})
        try:
            async with self._session.get(url) as resp:
                resp.raise_for_status()
                body = orjson.loads(await resp.read())
        except (aiohttp.ClientError, asyncio.TimeoutError, orjson.JSONDecodeError) as e:
            await self.close()
            raise TransportError(
                f"Polling handshake failed: {e}",
                url=self._config.url,
                transport=self.name,
                component="PollingTransport",
            ) from e

        sid = body.get("sid") if isinstance(body, dict) else None
        if not sid:
            await self.close()
            raise TransportError("Polling handshake returned no sid", transport=self.name)
        self._sid = str(sid)
        self._closed = False

    async def send(self, text: str) -> None:
        if self._closed or self._session is None:
            raise TransportError("Polling transport is not open", transport=self.name)
        url = _with_query(f"{self._config.url}/emit", {"sid": self._sid or ""})
        async with self._session.post(url, data=text.encode("utf-8")) as resp:
            resp.raise_for_status()

    async def receive(self) -> AsyncIterator[str]:
        url = _with_query(f"{self._config.url}/poll", {"sid": self._sid or ""})
        while not self._closed and self._session is not None:
            try:
                async with self._session.get(url) as resp:
                    resp.raise_for_status()
                    frames = orjson.loads(await resp.read())
            except (aiohttp.ClientError, asyncio.TimeoutError, orjson.JSONDecodeError) as e:
                logger.warning(f"[polling] Poll failed: {e}")
                return

            if not isinstance(frames, list):
                continue
            for frame in frames:
                yield frame if isinstance(frame, str) else orjson.dumps(frame).decode()

            await asyncio.sleep(self._config.poll_interval_s)

    async def close(self) -> None:
        self._closed = True
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


TRANSPORTS: dict[str, Callable[[ConnectionConfig, Mapping[str, str]], Transport]] = {
    "websocket": WebSocketTransport,
    "polling": PollingTransport,
}


async def open_transport(config: ConnectionConfig, auth: Mapping[str, str]) -> Transport:
    """
    Open the first transport that succeeds, in configured order.

    Raises:
        TransportError: If every configured transport fails to open
    """
    errors: list[str] = []
    for name in config.transports:
        transport = TRANSPORTS[name](config, auth)
        try:
            await transport.open()
        except TransportError as e:
            errors.append(f"{name}: {e}")
            logger.warning(f"Transport {name} failed, trying next: {e}")
            continue
        logger.debug(f"Opened {name} transport to {config.url}")
        return transport

    raise TransportError(
        "All transports failed",
        url=config.url,
        component="open_transport",
        details={"errors": errors},
    )
