"""
Selector Resolution Engine
==========================
Relocates a mapped field on a document whose markup may have shifted.

Strategies run in a fixed order; the first one that finds something wins:

  1. **structured data**  — embedded page-state payload (``json_path`` /
     ``json_keys`` fields only, when ``prefer_structured_data`` is on)
  2. **css**              — the primary locator recorded at lock time
  3. **structural**       — the positional fallback locator
  4. **role**             — role / label / identity attributes containing the
     field name (``enable_role_match``)
  5. **text**             — element whose text contains the text hint, nearest
     to the viewport origin (``enable_text_anchor``)

A miss on every strategy returns ``None``.  That is the normal outcome of
page variance, not an error, and ``resolve_field`` never raises.

Capture-time helpers (``compute_selector``, ``build_fallback``) turn the
element an operator locked into the locators stored on the field.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import soupsieve
from bs4 import Tag

from .document import DocumentSnapshot, same_tag_index, text_of
from .extraction import extract
from .models import Fallback, FieldSpec
from .settings import MapperSettings
from .structured_data import read_embedded_state, serialized, stringify, walk_path

logger = logging.getLogger(__name__)


class Strategy(str, Enum):
    """Provenance tag for a resolution."""
    JSON_PATH = "structured.jsonPath"
    JSON_KEYS = "structured.jsonKeys"
    CSS = "css"
    STRUCTURAL = "structural"
    ROLE = "role"
    TEXT = "text"


@dataclass
class Resolution:
    node: Optional[Tag]
    content: str
    link: str
    strategy: Strategy


# Attributes consulted by the role strategy
_ROLE_ATTRS = ("role", "aria-label", "itemprop", "name", "title")

# Attributes usable as a locator, after ``data-*``
_LOCATOR_ATTRS = ("name", "aria-label", "itemprop")

_SKIP_TEXT_TAGS = frozenset({"script", "style"})


# ---------------------------------------------------------------------------
# Strategies — uniform (field, snapshot, settings) -> Resolution | None
# ---------------------------------------------------------------------------

def try_structured(field: FieldSpec, snapshot: DocumentSnapshot,
                   settings: MapperSettings) -> Optional[Resolution]:
    if not settings.prefer_structured_data or not field.is_structured:
        return None
    state = read_embedded_state(snapshot)
    if not state.ok or not state.data:
        return None

    if field.json_path:
        value = walk_path(state.data, field.json_path)
        if value is None:
            return None
        return Resolution(None, stringify(value), "", Strategy.JSON_PATH)

    flat = serialized(state.data)
    for key in field.json_keys or []:
        k = str(key).lower()
        if f'"{k}"' in flat:
            # presence marker only; the value itself is not extracted
            return Resolution(None, f"[nextData:{k}]", "", Strategy.JSON_KEYS)
    return None


def try_css(field: FieldSpec, snapshot: DocumentSnapshot,
            settings: MapperSettings) -> Optional[Resolution]:
    return _from_locator(field.selector, snapshot, Strategy.CSS)


def try_structural(field: FieldSpec, snapshot: DocumentSnapshot,
                   settings: MapperSettings) -> Optional[Resolution]:
    return _from_locator(field.fallback.structural, snapshot, Strategy.STRUCTURAL)


def try_role(field: FieldSpec, snapshot: DocumentSnapshot,
             settings: MapperSettings) -> Optional[Resolution]:
    if not settings.enable_role_match:
        return None
    name = field.field_name.strip().lower()
    if not name:
        return None
    for tag in snapshot.elements():
        labels = [_attr_text(tag, a).lower() for a in _ROLE_ATTRS if tag.has_attr(a)]
        if not labels or not snapshot.is_searchable(tag):
            continue
        if any(name in label for label in labels):
            content, link = extract(tag, snapshot)
            return Resolution(tag, content, link, Strategy.ROLE)
    return None


def try_text_anchor(field: FieldSpec, snapshot: DocumentSnapshot,
                    settings: MapperSettings) -> Optional[Resolution]:
    if not settings.enable_text_anchor:
        return None
    hint = (field.fallback.text_hint or field.field_name).strip().lower()
    if not hint:
        return None
    anchor = nearest_text_anchor(hint, snapshot, settings.min_anchor_size)
    if anchor is None:
        return None
    target = first_child_element(anchor) or anchor
    content, link = extract(target, snapshot)
    return Resolution(target, content, link, Strategy.TEXT)


STRATEGIES: List[Callable[[FieldSpec, DocumentSnapshot, MapperSettings], Optional[Resolution]]] = [
    try_structured,
    try_css,
    try_structural,
    try_role,
    try_text_anchor,
]


def resolve_field(field: FieldSpec, snapshot: DocumentSnapshot,
                  settings: Optional[MapperSettings] = None) -> Optional[Resolution]:
    """Run the strategy chain for *field*; first hit wins, ``None`` on a full miss."""
    settings = settings or MapperSettings()
    for strategy in STRATEGIES:
        try:
            result = strategy(field, snapshot, settings)
        except Exception as e:
            logger.warning(f"[ENGINE] {strategy.__name__} errored for {field.label}: {e}")
            continue
        if result is not None:
            logger.debug(f"[ENGINE] {field.label} resolved via {result.strategy.value}")
            return result
    logger.debug(f"[ENGINE] {field.label}: no strategy matched on {snapshot.url}")
    return None


# ---------------------------------------------------------------------------
# Strategy helpers
# ---------------------------------------------------------------------------

def _from_locator(css: Optional[str], snapshot: DocumentSnapshot,
                  strategy: Strategy) -> Optional[Resolution]:
    node = snapshot.select_one(css)
    if node is None:
        return None
    content, link = extract(node, snapshot)
    return Resolution(node, content, link, strategy)


def _attr_text(tag: Tag, name: str) -> str:
    value = tag.get(name)
    if isinstance(value, list):
        return " ".join(value)
    return value or ""


def nearest_text_anchor(hint: str, snapshot: DocumentSnapshot,
                        min_size: float) -> Optional[Tag]:
    """
    Element under ``<body>`` whose text contains *hint* (lower-cased), closest
    to the viewport origin.

    Without layout every candidate sits at distance 0, so the first match in
    document order wins.  Ties keep the earlier element.
    """
    best: Optional[Tag] = None
    best_dist = float("inf")
    for tag in snapshot.body_elements():
        if tag.name in _SKIP_TEXT_TAGS:
            continue
        text = text_of(tag).lower()
        if not text or hint not in text:
            continue
        if snapshot.has_layout:
            box = snapshot.box(tag)
            if box is None or not box.at_least(min_size):
                continue
            dist = box.origin_distance
        else:
            dist = 0.0
        if dist < best_dist:
            best, best_dist = tag, dist
    return best


def first_child_element(tag: Tag) -> Optional[Tag]:
    for child in tag.children:
        if isinstance(child, Tag):
            return child
    return None


# ---------------------------------------------------------------------------
# Capture-time locator computation
# ---------------------------------------------------------------------------

def compute_selector(tag: Optional[Tag], settings: Optional[MapperSettings] = None) -> Optional[str]:
    """
    Locator for an element the operator locked.

    Preference: ``#id`` (whitespace-free ids) → attribute equality on the
    first usable ``data-*`` / ``name`` / ``aria-label`` / ``itemprop`` →
    positional path.
    """
    if tag is None:
        return None
    settings = settings or MapperSettings()

    tag_id = tag.get("id")
    if isinstance(tag_id, str) and tag_id and not any(c.isspace() for c in tag_id):
        return f"#{soupsieve.escape(tag_id)}"

    data_attrs = [a for a in tag.attrs if a.startswith("data-")]
    for attr in data_attrs + [a for a in _LOCATOR_ATTRS if tag.has_attr(a)]:
        value = _attr_text(tag, attr)
        if value and len(value) <= settings.max_attr_length:
            return f'{tag.name}[{soupsieve.escape(attr)}="{_quote(value)}"]'

    return positional_path(tag, settings.max_path_depth)


def positional_path(tag: Tag, max_depth: int = 6) -> Optional[str]:
    """``tag:nth-of-type(n)`` chain of up to *max_depth* levels, most specific last."""
    parts = []
    node = tag
    while isinstance(node, Tag) and node.parent is not None and len(parts) < max_depth:
        parts.append(f"{node.name}:nth-of-type({same_tag_index(node)})")
        node = node.parent
    return " > ".join(reversed(parts)) or None


def build_fallback(tag: Optional[Tag], settings: Optional[MapperSettings] = None) -> Fallback:
    """Positional locator plus the first characters of the element's text."""
    settings = settings or MapperSettings()
    if tag is None:
        return Fallback()
    return Fallback(
        structural=positional_path(tag, settings.max_path_depth),
        text_hint=text_of(tag)[: settings.text_hint_length],
    )


def _quote(value: str) -> str:
    """Escape *value* for use inside a double-quoted CSS string."""
    return (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\a ")
    )
