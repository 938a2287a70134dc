"""
LiveView - shared enter/exit state machine for the UI-facing views.

    [IDLE] --open()--> [SUBSCRIBED] --close()--> [TORN_DOWN]

``close()`` is synchronous: every handler registered by the view is removed
and its unsubscribe messages are issued within the same tick. Callbacks that
still arrive afterwards find ``disposed`` set and change nothing.
"""

from __future__ import annotations

import dataclasses
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar

from marketstream.live.hub import MarketDataHub
from marketstream.live.subscriptions import SubscriptionManager
from marketstream.live.types import ConnectionState, GatewayEvent, GatewayMessage

logger = logging.getLogger(__name__)

S = TypeVar("S")
ChangeCallback = Callable[[Any], None]


class ViewPhase(str, Enum):
    IDLE = "idle"
    SUBSCRIBED = "subscribed"
    TORN_DOWN = "torn_down"


class LiveView(ABC, Generic[S]):
    """Base for views bound to one (connection_id, symbol)."""

    def __init__(self, hub: MarketDataHub, connection_id: str, symbol: str, *, name: str) -> None:
        self._hub = hub
        self._connection_id = connection_id
        self._symbol = symbol.strip().upper()
        self._name = f"{name}[{self._symbol}]"
        self._owner = f"{name}#{id(self):x}"

        self._phase = ViewPhase.IDLE
        self._disposed = False
        self._acquired = False
        self._manager: Optional[SubscriptionManager] = None
        self._cleanups: list[Callable[[], None]] = []
        self._listeners: list[ChangeCallback] = []
        self._state: S = self._initial_state()

    # --- Properties ---

    @property
    def state(self) -> S:
        return self._state

    @property
    def phase(self) -> ViewPhase:
        return self._phase

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def symbol(self) -> str:
        return self._symbol

    def on_change(self, callback: ChangeCallback) -> Callable[[], None]:
        """Call ``callback(state)`` after every state change."""
        self._listeners.append(callback)

        def _unregister() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unregister

    # --- Enter / exit ---

    async def open(self) -> None:
        """Enter: acquire the stream, install handlers, subscribe."""
        if self._phase != ViewPhase.IDLE:
            return
        self._phase = ViewPhase.SUBSCRIBED
        self._acquired = True
        manager = await self._hub.acquire(self._connection_id)
        if self._disposed:
            return

        self._manager = manager
        connection = manager.connection
        self._cleanups.append(connection.on_state_change(self._on_connection_state))
        self._cleanups.append(connection.on_message(GatewayEvent.ERROR.value, self._on_server_error))
        self._update(is_connected=connection.is_connected, error=self._initial_error(connection.state))

        self._enter(manager)
        await self._after_enter()

    def close(self) -> None:
        """Exit: unregister handlers, unsubscribe, release the stream. Idempotent."""
        if self._phase == ViewPhase.TORN_DOWN:
            return
        self._disposed = True
        self._phase = ViewPhase.TORN_DOWN

        for cleanup in reversed(self._cleanups):
            try:
                cleanup()
            except Exception as e:
                logger.error(f"[{self._name}] Cleanup error: {e}", exc_info=True)
        self._cleanups.clear()

        if self._manager is not None:
            self._manager.release_owner(self._owner)
            self._manager = None
        if self._acquired:
            self._acquired = False
            self._hub.release(self._connection_id)
        self._listeners.clear()
        logger.debug(f"[{self._name}] Torn down")

    async def reconnect(self) -> None:
        """Manual retry of the shared connection, e.g. after it gave up."""
        if self._disposed or self._manager is None:
            return
        logger.info(f"[{self._name}] Manual reconnect requested")
        await self._manager.connection.reconnect()

    # --- Hooks ---

    @abstractmethod
    def _initial_state(self) -> S: ...

    @abstractmethod
    def _enter(self, manager: SubscriptionManager) -> None:
        """Subscribe and register cache listeners; append cleanups."""
        ...

    async def _after_enter(self) -> None:
        return None

    # --- State updates ---

    def _update(self, **changes: Any) -> None:
        if self._disposed:
            return
        self._state = dataclasses.replace(self._state, **changes)
        for callback in list(self._listeners):
            try:
                callback(self._state)
            except Exception as e:
                logger.error(f"[{self._name}] Change callback error: {e}", exc_info=True)

    def _initial_error(self, state: ConnectionState) -> Optional[str]:
        if state == ConnectionState.FAILED and self._manager is not None:
            return self._manager.connection.last_error
        return None

    def _on_connection_state(self, state: ConnectionState) -> None:
        if self._disposed:
            return
        if state == ConnectionState.CONNECTED:
            self._update(is_connected=True, error=None)
        elif state == ConnectionState.FAILED:
            error = self._manager.connection.last_error if self._manager else None
            self._update(is_connected=False, error=error)
        else:
            self._update(is_connected=False)

    def _on_server_error(self, msg: GatewayMessage) -> None:
        if self._disposed:
            return
        data = msg.data
        if isinstance(data, dict):
            message = data.get("message") or "Unknown gateway error"
        else:
            message = str(data) if data is not None else "Unknown gateway error"
        self._update(error=str(message))
