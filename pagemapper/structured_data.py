"""
Embedded Page-State Reader
==========================
Best-effort access to the JSON payload a server-rendered page embeds for
client-side hydration (the Next.js ``__NEXT_DATA__`` blob).

Lookup order:
  1. The global variable captured from the live page (``window.__NEXT_DATA__``)
  2. ``<script id="__NEXT_DATA__">`` parsed as JSON

This reader never raises: parse failures mean "reader unavailable".
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from .document import DocumentSnapshot

logger = logging.getLogger(__name__)

STATE_SCRIPT_ID = "__NEXT_DATA__"


@dataclass(frozen=True)
class EmbeddedState:
    ok: bool
    data: Any = None


_UNAVAILABLE = EmbeddedState(ok=False, data=None)


def read_embedded_state(snapshot: DocumentSnapshot) -> EmbeddedState:
    """Return the embedded page-state payload of *snapshot*, if any."""
    if snapshot.embedded_state is not None:
        return EmbeddedState(ok=True, data=snapshot.embedded_state)

    script = snapshot.soup.find("script", id=STATE_SCRIPT_ID)
    if script is None:
        return _UNAVAILABLE
    raw = script.string if script.string is not None else script.get_text()
    try:
        data = json.loads(raw or "{}")
    except ValueError as e:
        logger.debug(f"[STATE] Embedded state unparsable on {snapshot.url}: {e}")
        return _UNAVAILABLE
    return EmbeddedState(ok=True, data=data)


def walk_path(data: Any, path: Iterable[Any]) -> Optional[Any]:
    """
    Follow *path* key by key through *data*.

    Lists accept integer (or digit-string) keys.  Any missing key or
    non-container intermediate yields ``None``.
    """
    node = data
    for key in path:
        if isinstance(node, dict):
            node = node.get(key if key in node else str(key))
        elif isinstance(node, list):
            try:
                idx = int(key)
            except (TypeError, ValueError):
                return None
            if idx < 0 or idx >= len(node):
                return None
            node = node[idx]
        else:
            return None
        if node is None:
            return None
    return node


def stringify(value: Any) -> str:
    """Render a payload value as field content."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return str(value)


def serialized(data: Any) -> str:
    """Compact, lower-cased serialisation used for key-presence checks."""
    return json.dumps(data, ensure_ascii=False, separators=(",", ":")).lower()
