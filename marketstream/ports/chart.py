"""Chart Port Interfaces.

Contract: the external chart library and the host page, as seen by the
ChartLifecycleController. Adapters wrap the concrete library; tests use fakes.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping, Protocol, Sequence


class ChartContainer(Protocol):
    @property
    def width(self) -> int:
        """Current laid-out width in pixels (0 until painted)."""
        ...


class SeriesApi(Protocol):
    def set_data(self, data: Sequence[Mapping[str, Any]]) -> None:
        """Replace the series data. Points must be ascending by time."""
        ...

    def update(self, point: Mapping[str, Any]) -> None:
        """Update the last point or append a newer one."""
        ...


class ChartApi(Protocol):
    def add_series(self, kind: str, options: Mapping[str, Any]) -> SeriesApi: ...

    def apply_options(self, options: Mapping[str, Any]) -> None: ...

    def remove(self) -> None: ...


class ChartFactory(Protocol):
    def __call__(self, container: ChartContainer, options: Mapping[str, Any]) -> ChartApi: ...


class ResizeObserver(Protocol):
    def observe(self, container: ChartContainer) -> None: ...

    def disconnect(self) -> None: ...


class ResizeObserverFactory(Protocol):
    def __call__(self, callback: Callable[[int], None]) -> ResizeObserver:
        """Build an observer that calls ``callback(width)`` on container resize."""
        ...


class WindowEvents(Protocol):
    def add_listener(self, event: str, callback: Callable[[], None]) -> None: ...

    def remove_listener(self, event: str, callback: Callable[[], None]) -> None: ...
