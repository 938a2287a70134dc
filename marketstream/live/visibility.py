"""Tab visibility signal shared by the hub and the views."""

from __future__ import annotations

import logging
from typing import Callable

logger = logging.getLogger(__name__)

VisibilityListener = Callable[[bool], None]


class VisibilityMonitor:
    """
    Holds the host page's hidden/visible flag and notifies listeners on change.

    Listeners receive ``hidden`` (True when the tab was hidden).
    """

    def __init__(self, hidden: bool = False) -> None:
        self._hidden = hidden
        self._listeners: list[VisibilityListener] = []

    @property
    def hidden(self) -> bool:
        return self._hidden

    def set_hidden(self, hidden: bool) -> None:
        if hidden == self._hidden:
            return
        self._hidden = hidden
        logger.debug(f"Visibility changed: hidden={hidden}")
        for listener in list(self._listeners):
            try:
                listener(hidden)
            except Exception as e:
                logger.error(f"Visibility listener error: {e}", exc_info=True)

    def on_change(self, listener: VisibilityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unregister() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unregister

    def listener_count(self) -> int:
        return len(self._listeners)
