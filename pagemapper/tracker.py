"""
Live Tracking Layer
===================
Keeps every locked field bound to the element currently believed to
satisfy it, and keeps a marker positioned over that element.

- ``reconcile(snapshot)``   — after a batch of document mutations: re-resolve
  only the bindings whose element is gone; reposition the rest.  Idempotent.
- ``refresh_all(snapshot)`` — once per page visit: re-resolve every field,
  update ``content`` / ``link`` on success, leave them alone on a miss.

A miss never drops a binding.  The marker stays at its last known position
(or hidden if the field never resolved on this page).

``MutationBatcher`` collapses bursts of mutation notifications into a single
reconcile per batching window.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Hashable, List, Optional

from bs4 import Tag

from .document import Box, DocumentSnapshot
from .models import FieldSpec
from .selector_engine import Resolution, Strategy, resolve_field
from .settings import MapperSettings

logger = logging.getLogger(__name__)


class MarkerMode(str, Enum):
    LOCKED = "locked"
    EDITING = "editing"


@dataclass
class Marker:
    """Visual indicator drawn over a bound element."""
    row_id: str
    mode: MarkerMode = MarkerMode.LOCKED
    box: Optional[Box] = None
    visible: bool = False

    def to_dict(self) -> dict:
        return {
            "rowId": self.row_id,
            "mode": self.mode.value,
            "box": self.box.to_dict() if self.box else None,
            "visible": self.visible,
        }


@dataclass
class Binding:
    row_id: str
    node: Optional[Tag]
    node_key: Optional[Hashable]
    marker: Marker
    strategy: Optional[Strategy] = None


class LiveTracker:
    """
    Runtime bindings for one page.

    ``fields`` is a callable returning the session's current field list, so
    the tracker always sees renames and removals without holding a copy.
    """

    def __init__(self, fields: Callable[[], List[FieldSpec]],
                 settings: Optional[MapperSettings] = None):
        self._fields = fields
        self.settings = settings or MapperSettings()
        self._bindings: Dict[str, Binding] = {}

    # ------------------------------------------------------------------
    # Binding management
    # ------------------------------------------------------------------

    def bind(self, row_id: str, node: Optional[Tag], snapshot: DocumentSnapshot,
             strategy: Optional[Strategy] = None) -> Binding:
        existing = self._bindings.get(row_id)
        mode = existing.marker.mode if existing else MarkerMode.LOCKED
        box = snapshot.box(node) if node is not None else None
        marker = Marker(row_id=row_id, mode=mode, box=box, visible=node is not None)
        binding = Binding(
            row_id=row_id,
            node=node,
            node_key=snapshot.node_key(node) if node is not None else None,
            marker=marker,
            strategy=strategy,
        )
        self._bindings[row_id] = binding
        return binding

    def unbind(self, row_id: str) -> bool:
        return self._bindings.pop(row_id, None) is not None

    def clear(self) -> None:
        self._bindings.clear()

    def set_mode(self, row_id: str, mode: MarkerMode) -> bool:
        binding = self._bindings.get(row_id)
        if binding is None:
            return False
        binding.marker.mode = MarkerMode(mode)
        return True

    def binding(self, row_id: str) -> Optional[Binding]:
        return self._bindings.get(row_id)

    @property
    def bindings(self) -> List[Binding]:
        return list(self._bindings.values())

    def markers(self) -> List[Marker]:
        return [b.marker for b in self._bindings.values()]

    def _spec(self, row_id: str) -> Optional[FieldSpec]:
        for spec in self._fields():
            if spec.row_id == row_id:
                return spec
        return None

    def _resolve(self, spec: FieldSpec, snapshot: DocumentSnapshot) -> Optional[Resolution]:
        return resolve_field(spec, snapshot, self.settings)

    # ------------------------------------------------------------------
    # Page attach
    # ------------------------------------------------------------------

    def restore(self, snapshot: DocumentSnapshot) -> int:
        """Recreate markers for every field that resolves to an element."""
        self.clear()
        restored = 0
        for spec in self._fields():
            result = self._resolve(spec, snapshot)
            if result is not None and result.node is not None:
                self.bind(spec.row_id, result.node, snapshot, result.strategy)
                restored += 1
        logger.info(f"[TRACKER] Restored {restored}/{len(self._fields())} markers")
        return restored

    # ------------------------------------------------------------------
    # Mutation reconcile
    # ------------------------------------------------------------------

    def reconcile(self, snapshot: DocumentSnapshot) -> int:
        """
        Re-resolve bindings whose element left the document.

        Surviving elements only have their marker repositioned.  Returns the
        number of bindings that were re-resolved onto a new element.
        """
        rebound = 0
        for row_id, binding in list(self._bindings.items()):
            spec = self._spec(row_id)
            if spec is None:
                self.unbind(row_id)
                continue

            if binding.node_key is not None:
                node = snapshot.find_by_key(binding.node_key)
                if node is not None:
                    binding.node = node
                    binding.marker.box = snapshot.box(node)
                    binding.marker.visible = True
                    continue

            result = self._resolve(spec, snapshot)
            if result is None or result.node is None:
                logger.debug(f"[TRACKER] {spec.label}: element gone, keeping stale marker")
                continue
            self.bind(row_id, result.node, snapshot, result.strategy)
            rebound += 1
            logger.debug(f"[TRACKER] {spec.label}: rebound via {result.strategy.value}")
        return rebound

    # ------------------------------------------------------------------
    # Per-visit refresh
    # ------------------------------------------------------------------

    def refresh_all(self, snapshot: DocumentSnapshot) -> int:
        """
        Re-resolve every field regardless of binding state.

        Returns the count of fields refreshed.  ``content`` / ``link`` are
        only overwritten on success.
        """
        refreshed = 0
        for spec in self._fields():
            result = self._resolve(spec, snapshot)
            if result is None:
                logger.warning(f"[TRACKER] {spec.label}: not found on {snapshot.url}")
                continue
            spec.content = result.content
            spec.link = result.link
            refreshed += 1
            if result.node is not None:
                self.bind(spec.row_id, result.node, snapshot, result.strategy)
        logger.info(f"[TRACKER] Refreshed {refreshed}/{len(self._fields())} fields")
        return refreshed


SnapshotSource = Callable[[], Awaitable[DocumentSnapshot]]
MarkerRenderer = Callable[[List[Marker]], Awaitable[None]]


class MutationBatcher:
    """
    Debounces mutation notifications into one ``reconcile`` per window.

    Notifications arriving during the window are absorbed by the scheduled
    reconcile.  Once its snapshot capture has begun, a late notification
    marks the batch dirty and buys one more pass.
    """

    def __init__(self, tracker: LiveTracker, snapshot_source: SnapshotSource,
                 window_ms: Optional[int] = None,
                 renderer: Optional[MarkerRenderer] = None):
        self.tracker = tracker
        self.snapshot_source = snapshot_source
        self.window_ms = tracker.settings.mutation_batch_ms if window_ms is None else window_ms
        self.renderer = renderer
        self._task: Optional[asyncio.Task] = None
        self._capturing = False
        self._dirty = False
        self.flushes = 0

    def notify(self) -> None:
        if self._task is not None and not self._task.done():
            if self._capturing:
                self._dirty = True
            return
        self._task = asyncio.get_running_loop().create_task(self._flush())

    async def _flush(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.window_ms / 1000)
                self._capturing, self._dirty = True, False
                try:
                    snapshot = await self.snapshot_source()
                except Exception as e:
                    # page navigated away or closed mid-window
                    logger.debug(f"[TRACKER] Snapshot for reconcile failed: {e}")
                    return
                self.tracker.reconcile(snapshot)
                self.flushes += 1
                if self.renderer is not None:
                    await self.renderer(self.tracker.markers())
                if not self._dirty:
                    return
                self._capturing = False
        finally:
            self._capturing = self._dirty = False

    async def drain(self) -> None:
        """Wait for a scheduled reconcile to finish."""
        if self._task is not None:
            await self._task

    def close(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
