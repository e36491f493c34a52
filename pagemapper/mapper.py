"""
Field Mapper
============
Owns the session lifecycle on one page: locking fields, naming them,
removing them, switching page type, resetting, and the page-local
"extract now" operation the run orchestrator triggers once per visit.

Every mutation is persisted immediately through the ``SessionRepository``.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from bs4 import Tag

from .document import DocumentSnapshot
from .extraction import extract
from .models import ExtractionRecord, FieldSpec, PageType, Session, new_id
from .selector_engine import build_fallback, compute_selector, resolve_field
from .settings import MapperSettings
from .storage import SessionRepository
from .tracker import LiveTracker, MarkerMode

logger = logging.getLogger(__name__)


class FieldMapper:
    """
    Session + live bindings for the page currently attached.

    Usage::

        mapper = FieldMapper(SessionRepository(JsonFileStore(".pagemapper")))
        mapper.bootstrap(snapshot)
        mapper.lock_selector("row-1", "h1.product-title", snapshot)
        mapper.set_field_name("row-1", "Title")
        rows = mapper.extract_now(snapshot)
    """

    def __init__(self, repository: SessionRepository,
                 settings: Optional[MapperSettings] = None):
        self.repository = repository
        self.settings = settings or MapperSettings()
        self.tracker = LiveTracker(lambda: self.session.fields, self.settings)

    @property
    def session(self) -> Session:
        return self.repository.get()

    def _save(self) -> Session:
        return self.repository.set(self.session)

    # ------------------------------------------------------------------
    # Page attach
    # ------------------------------------------------------------------

    def bootstrap(self, snapshot: DocumentSnapshot) -> int:
        """Restore the stored session onto a freshly loaded page."""
        session = self.session
        session.page_url = snapshot.url
        self._save()
        restored = self.tracker.restore(snapshot)
        logger.info(
            f"[MAPPER] Session {session.id} attached to {snapshot.url} "
            f"({len(session.fields)} fields, {restored} markers)"
        )
        return restored

    # ------------------------------------------------------------------
    # Field lifecycle
    # ------------------------------------------------------------------

    def lock_field(self, row_id: str, node: Tag, snapshot: DocumentSnapshot,
                   field_name: str = "") -> FieldSpec:
        """
        Lock *row_id* onto *node*.

        Replaces any existing record for the row (new ``id``, name cleared
        unless *field_name* is given), computes the locators once, and
        captures the current content.
        """
        content, link = extract(node, snapshot)
        spec = FieldSpec(
            row_id=row_id,
            id=new_id(),
            field_name=field_name,
            selector=compute_selector(node, self.settings),
            fallback=build_fallback(node, self.settings),
            content=content,
            link=link,
        )
        session = self.session
        session.upsert(spec)
        self._save()
        self.tracker.bind(row_id, node, snapshot)
        logger.info(f"[MAPPER] Locked row {row_id} → {spec.selector}")
        return spec

    def lock_selector(self, row_id: str, css: str, snapshot: DocumentSnapshot,
                      field_name: str = "") -> Optional[FieldSpec]:
        """Lock *row_id* onto the first element *css* picks, if any."""
        node = snapshot.select_one(css)
        if node is None:
            logger.warning(f"[MAPPER] Nothing matches {css!r} on {snapshot.url}")
            return None
        return self.lock_field(row_id, node, snapshot, field_name)

    def lock_structured(self, row_id: str, field_name: str, snapshot: DocumentSnapshot,
                        json_path: Optional[List[str]] = None,
                        json_keys: Optional[List[str]] = None) -> FieldSpec:
        """Add a field resolved from the embedded page-state payload (no element)."""
        spec = FieldSpec(
            row_id=row_id,
            field_name=field_name,
            json_path=list(json_path) if json_path else None,
            json_keys=list(json_keys) if json_keys else None,
        )
        result = resolve_field(spec, snapshot, self.settings)
        if result is not None:
            spec.content, spec.link = result.content, result.link
        else:
            logger.warning(f"[MAPPER] {field_name}: embedded state has no match on {snapshot.url}")
        self.session.upsert(spec)
        self._save()
        return spec

    def set_field_name(self, row_id: str, name: str) -> bool:
        """Rename a row.  An empty *name* keeps the existing one."""
        spec = self.session.find(row_id)
        if spec is None:
            return False
        spec.field_name = name or spec.field_name or ""
        self._save()
        return True

    def remove_row(self, row_id: str) -> bool:
        removed = self.session.remove(row_id)
        self._save()
        self.tracker.unbind(row_id)
        return removed

    def set_page_type(self, page_type) -> PageType:
        session = self.session
        session.page_type = PageType.parse(page_type)
        self._save()
        return session.page_type

    def set_edit_mode(self, row_id: str, editing: bool) -> bool:
        return self.tracker.set_mode(row_id, MarkerMode.EDITING if editing else MarkerMode.LOCKED)

    def reset_session(self, keep_results: bool = False) -> Session:
        self.tracker.clear()
        session = self.repository.reset(keep_results=keep_results)
        logger.info("[MAPPER] Session reset and markers cleared")
        return session

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def records(self, page: Optional[str] = None) -> List[ExtractionRecord]:
        return self.session.records(page=page)

    def extract_now(self, snapshot: DocumentSnapshot) -> int:
        """
        Refresh every field on *snapshot* and append one record per field
        to the accumulated results.  Returns the number of rows pushed.
        """
        refreshed = self.tracker.refresh_all(snapshot)
        session = self.session
        session.page_url = snapshot.url or session.page_url
        self._save()
        rows = self.records(page=session.page_url)
        total = self.repository.push_results_batch(rows)
        logger.info(
            f"[MAPPER] Extracted {len(rows)} rows ({refreshed} refreshed) "
            f"from {session.page_url} — {total} total"
        )
        return len(rows)
