"""
Event Router for the market gateway.

Decodes ``{"event": ..., "data": ...}`` frames and fans them out to the
handlers registered for that event name.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import orjson

from marketstream.live.errors import MessageParseError
from marketstream.live.types import GatewayMessage

logger = logging.getLogger(__name__)

MessageHandler = Callable[[GatewayMessage], None]


def encode_frame(event: str, data: Any = None) -> str:
    """Encode one outbound frame."""
    frame: dict[str, Any] = {"event": event}
    if data is not None:
        frame["data"] = data
    return orjson.dumps(frame).decode()


def decode_frame(raw: str | bytes, recv_ts: int) -> GatewayMessage:
    """
    Decode one inbound frame.

    Accepts ``{"event": e, "data": d}`` and the array form ``[e, d]``.

    Raises:
        MessageParseError: If the frame is not valid JSON or has no event name
    """
    try:
        decoded = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise MessageParseError(
            f"Invalid JSON frame: {e}",
            raw_data=raw if isinstance(raw, str) else None,
            expected_type="frame",
        ) from e

    if isinstance(decoded, dict) and isinstance(decoded.get("event"), str):
        return GatewayMessage(event=decoded["event"], data=decoded.get("data"), recv_ts=recv_ts)

    if isinstance(decoded, list) and decoded and isinstance(decoded[0], str):
        data = decoded[1] if len(decoded) > 1 else None
        return GatewayMessage(event=decoded[0], data=data, recv_ts=recv_ts)

    raise MessageParseError("Frame has no event name", expected_type="frame")


@dataclass
class RouterStats:
    """Statistics for event routing."""

    total_messages: int = 0
    routed_messages: int = 0
    dropped_messages: int = 0
    parse_errors: int = 0
    handler_errors: int = 0
    by_event: dict[str, int] = field(default_factory=dict)


class EventRouter:
    """
    Routes decoded gateway frames to handlers by event name.

    Multiple handlers can be registered for the same event; they run in
    registration order. A failing handler is logged and does not stop the
    others, nor the receive loop that feeds the router.
    """

    def __init__(self, name: str = "router") -> None:
        self._name = name
        self._handlers: dict[str, list[MessageHandler]] = {}
        self._stats = RouterStats()

    @property
    def stats(self) -> RouterStats:
        return self._stats

    def register(self, event: str, handler: MessageHandler) -> Callable[[], None]:
        """Register a handler; returns a function that unregisters it."""
        self._handlers.setdefault(event, []).append(handler)
        logger.debug(f"[{self._name}] Registered handler for {event}")

        def _unregister() -> None:
            handlers = self._handlers.get(event)
            if handlers and handler in handlers:
                handlers.remove(handler)
                if not handlers:
                    del self._handlers[event]

        return _unregister

    def handler_count(self, event: str | None = None) -> int:
        if event is None:
            return sum(len(h) for h in self._handlers.values())
        return len(self._handlers.get(event, []))

    def route(self, message: GatewayMessage) -> None:
        """Route an already decoded message."""
        self._stats.total_messages += 1
        self._dispatch(message)

    def _dispatch(self, message: GatewayMessage) -> None:
        self._stats.by_event[message.event] = self._stats.by_event.get(message.event, 0) + 1

        # copy: handlers may unregister themselves while running
        handlers = list(self._handlers.get(message.event, ()))
        if not handlers:
            logger.debug(f"[{self._name}] No handler for event: {message.event}")
            self._stats.dropped_messages += 1
            return

        self._stats.routed_messages += 1
        for handler in handlers:
            try:
                handler(message)
            except Exception as e:
                self._stats.handler_errors += 1
                logger.error(
                    f"[{self._name}] Handler error for {message.event}: {e}",
                    exc_info=True,
                )

    def clear(self) -> None:
        self._handlers.clear()
