"""
Navigation / Messaging Boundary
===============================
Contracts between the run orchestrator and whatever actually drives the
pages (a Playwright browser, plain HTTP fetches, or a test fake).

    navigate(surface_id, url)            -> navigation token (raises NavigationError)
    on_load_complete(surface_id, cb)     -> unsubscribe callable
    send_to_surface(surface_id, request) -> response dict (raises ExtractionRequestError)
    broadcast(event)                     -> fan out to observers

Every load-complete event carries the token of the navigation it belongs to,
so a listener can ignore completions from an earlier, superseded navigation.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class NavigationError(RuntimeError):
    """Navigation to one URL failed.  Recorded and skipped; the run goes on."""


class SurfaceUnavailableError(NavigationError):
    """No navigable surface exists any more.  Fatal to the current run."""


class ExtractionRequestError(RuntimeError):
    """The page did not answer the extract-now request, or answered with an error."""


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PageDone:
    url: str
    ok: bool
    row_count: int = 0
    error: str = ""
    type: str = "page-done"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class NavigationFailed:
    url: str
    error: str
    type: str = "navigation-failed"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class RunError:
    url: str
    error: str
    type: str = "run-error"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class RunDone:
    total: int = 0
    type: str = "run-done"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class LoadComplete:
    """A surface finished loading the navigation identified by ``token``."""
    surface_id: str
    token: int
    url: str


EXTRACT_NOW = "extract-now"


@dataclass(frozen=True)
class ExtractNowRequest:
    type: str = EXTRACT_NOW


LoadListener = Callable[[LoadComplete], None]
Unsubscribe = Callable[[], None]


class NavigationBoundary(Protocol):
    async def navigate(self, surface_id: str, url: str) -> int: ...

    def on_load_complete(self, surface_id: str, listener: LoadListener) -> Unsubscribe: ...

    async def send_to_surface(self, surface_id: str, request: Any) -> Dict[str, Any]: ...

    def broadcast(self, event: Any) -> None: ...


# ---------------------------------------------------------------------------
# Event fan-out
# ---------------------------------------------------------------------------

class EventBus:
    """
    Synchronous publish/subscribe used by the boundaries' ``broadcast``.

    A failing subscriber is logged and never stops delivery to the others.
    """

    def __init__(self):
        self._subscribers: List[Callable[[Any], None]] = []

    def subscribe(self, callback: Callable[[Any], None]) -> Unsubscribe:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, event: Any) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"[EVENTS] Subscriber failed on {_event_type(event)}: {e}", exc_info=True)


def _event_type(event: Any) -> Optional[str]:
    return getattr(event, "type", None) or type(event).__name__


# ---------------------------------------------------------------------------
# Shared surface plumbing
# ---------------------------------------------------------------------------

class BaseSurface:
    """
    Listener bookkeeping and broadcast shared by the concrete surfaces.

    Subclasses implement ``navigate`` and ``send_to_surface`` and call
    ``_emit_load`` once the page for a navigation token has loaded.
    """

    def __init__(self, bus: Optional[EventBus] = None, surface_id: str = "main"):
        self.bus = bus or EventBus()
        self.surface_id = surface_id
        self._listeners: List[Tuple[str, LoadListener]] = []
        self._token = 0

    def _next_token(self) -> int:
        self._token += 1
        return self._token

    def on_load_complete(self, surface_id: str, listener: LoadListener) -> Unsubscribe:
        entry = (surface_id, listener)
        self._listeners.append(entry)

        def _unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return _unsubscribe

    def _emit_load(self, token: int, url: str) -> None:
        event = LoadComplete(self.surface_id, token, url)
        for surface_id, listener in list(self._listeners):
            if surface_id == self.surface_id:
                listener(event)

    def broadcast(self, event: Any) -> None:
        self.bus.publish(event)

    async def open(self) -> None:
        """Acquire the underlying page resources (no-op by default)."""

    async def close(self) -> None:
        """Release the underlying page resources (no-op by default)."""

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
