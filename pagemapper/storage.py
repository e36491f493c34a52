"""
Session Storage
===============
Persists the mapping session between page visits and CLI invocations.

Two layers:
    1. ``KeyValueStore`` — whole-value ``load(key)`` / ``save(key, value)``.
       ``JsonFileStore`` writes one JSON file per key under the state
       directory; ``MemoryStore`` keeps values in a dict (tests, one-shot runs).
    2. ``SessionRepository`` — typed access to the current ``Session`` with
       a read-through cache.  Every mutation is written straight back; there
       is no batching, so an interrupted run loses nothing.

Usage::

    repo = SessionRepository(JsonFileStore(".pagemapper"))
    session = repo.get()
    session.page_url = url
    repo.set(session)
"""

from __future__ import annotations

import copy
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .models import ExtractionRecord, FieldSpec, Session

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Storage keys
# ---------------------------------------------------------------------------

SESSION_KEY = "pagemapper_current"

_SAFE_KEY_RE = re.compile(r"[^A-Za-z0-9_.-]")


class KeyValueStore(Protocol):
    def load(self, key: str) -> Optional[Any]: ...

    def save(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    """Dict-backed store.  Values are deep-copied in both directions."""

    def __init__(self):
        self._data: Dict[str, Any] = {}

    def load(self, key: str) -> Optional[Any]:
        if key not in self._data:
            return None
        return copy.deepcopy(self._data[key])

    def save(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """One ``<key>.json`` file per key under *state_dir*."""

    def __init__(self, state_dir: str = ".pagemapper"):
        self.state_dir = Path(state_dir)

    def _path(self, key: str) -> Path:
        return self.state_dir / f"{_SAFE_KEY_RE.sub('_', key)}.json"

    def load(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning(f"[STORE] Corrupt state file {path}: {exc}")
            return None

    def save(self, key: str, value: Any) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # write-then-rename so readers never see a half-written file
        fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(value, f, indent=2, ensure_ascii=False)
            os.replace(tmp, path)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()


class SessionRepository:
    """
    Typed, cached access to the persisted session.

    ``get()`` always returns the same ``Session`` object until the next
    ``set()`` / ``remove()``; callers mutate it and hand it back to ``set``.
    """

    def __init__(self, store: Optional[KeyValueStore] = None, key: str = SESSION_KEY):
        self.store = store if store is not None else MemoryStore()
        self.key = key
        self._cache: Optional[Session] = None

    # ── Session ───────────────────────────────────────────────────

    def get(self) -> Session:
        if self._cache is not None:
            return self._cache
        raw = self.store.load(self.key)
        if isinstance(raw, dict):
            self._cache = Session.from_dict(raw)
        else:
            self._cache = Session()
            logger.info(f"[STORE] New session {self._cache.id}")
            self.store.save(self.key, self._cache.to_dict())
        return self._cache

    def set(self, session: Session) -> Session:
        self.store.save(self.key, session.to_dict())
        self._cache = session
        return session

    def remove(self) -> None:
        self.store.delete(self.key)
        self._cache = None

    def reset(self, keep_results: bool = False) -> Session:
        """Replace the session wholesale with a fresh one (new id, no fields)."""
        previous = self.get()
        fresh = Session()
        if keep_results:
            fresh.results = list(previous.results)
        logger.info(f"[STORE] Session reset: {previous.id} → {fresh.id}")
        return self.set(fresh)

    # ── Fields ────────────────────────────────────────────────────

    def append_field(self, spec: FieldSpec) -> Session:
        session = self.get()
        session.upsert(spec)
        return self.set(session)

    def records_for(self, page: Optional[str] = None) -> List[ExtractionRecord]:
        return self.get().records(page=page)

    # ── Results ───────────────────────────────────────────────────

    def push_results_batch(self, records: List[ExtractionRecord]) -> int:
        """Append *records* to the accumulated results; returns the new total."""
        session = self.get()
        session.results.extend(records)
        self.set(session)
        return len(session.results)

    def get_results(self) -> List[ExtractionRecord]:
        return list(self.get().results)

    def clear_results(self) -> None:
        session = self.get()
        cleared = len(session.results)
        session.results = []
        self.set(session)
        logger.info(f"[STORE] Cleared {cleared} result rows")
