"""
Document Snapshots
==================
Immutable view of one page's document used by the selector engine and the
live tracker.

A snapshot pairs a parsed tree (BeautifulSoup, ``html.parser`` so the tree
mirrors the serialised markup one-to-one) with optional per-element state
captured from the live page:

- ``node_id``  — stable identity assigned in the page (survives across
  snapshots while the element stays attached)
- ``box``      — viewport-relative bounding box
- ``value``    — live form-control value (``el.value``)

Snapshots built from plain HTML carry no layout; layout-dependent rules
degrade gracefully (see ``has_layout``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Hashable, List, Mapping, Optional, Union
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

logger = logging.getLogger(__name__)

# Elements whose content the live DOM does not expose as child elements
_OPAQUE_TAGS = frozenset({"template", "noscript"})

# Attribute carried by overlay markers drawn into the page
MARKER_ATTR = "data-pagemapper-outline"


@dataclass(frozen=True)
class Box:
    """Viewport-relative bounding box (CSS pixels)."""
    top: float = 0.0
    left: float = 0.0
    width: float = 0.0
    height: float = 0.0

    @property
    def origin_distance(self) -> float:
        """Manhattan distance of the top-left corner from the viewport origin."""
        return abs(self.top) + abs(self.left)

    def at_least(self, size: float) -> bool:
        return self.width >= size and self.height >= size

    def to_dict(self) -> dict:
        return {"top": self.top, "left": self.left, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class ElementState:
    """Live per-element state captured alongside the markup."""
    node_id: Optional[int] = None
    box: Optional[Box] = None
    value: Optional[str] = None

    @classmethod
    def from_capture(cls, raw: Mapping[str, Any]) -> "ElementState":
        box = None
        if raw.get("width") is not None:
            box = Box(
                top=float(raw.get("top") or 0.0),
                left=float(raw.get("left") or 0.0),
                width=float(raw.get("width") or 0.0),
                height=float(raw.get("height") or 0.0),
            )
        value = raw.get("value")
        return cls(
            node_id=raw.get("id"),
            box=box,
            value=value if isinstance(value, str) else None,
        )


class DocumentSnapshot:
    """
    One page's document at one point in time.

    Usage::

        snap = DocumentSnapshot.from_html(html, url="https://shop.example/p/1")
        node = snap.select_one("#price")

        # from a live page (see ``browser.capture_snapshot``)
        snap = DocumentSnapshot.from_capture(payload)
    """

    def __init__(
        self,
        soup: BeautifulSoup,
        url: str = "",
        *,
        states: Optional[Dict[int, ElementState]] = None,
        embedded_state: Any = None,
        has_layout: bool = False,
    ):
        self.soup = soup
        self.url = url
        self.embedded_state = embedded_state
        self.has_layout = has_layout
        self._states: Dict[int, ElementState] = states or {}
        self._elements: Optional[List[Tag]] = None
        self._element_ids: Optional[set] = None
        self._key_index: Optional[Dict[Hashable, Tag]] = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_html(
        cls,
        html: str,
        url: str = "",
        *,
        layout: Optional[Mapping[str, Union[ElementState, Box]]] = None,
        embedded_state: Any = None,
    ) -> "DocumentSnapshot":
        """
        Parse *html* into a snapshot.

        ``layout`` maps a CSS selector to the state of the first element it
        matches.  When given, the snapshot counts as laid out and elements
        without an entry are treated as not rendered.
        """
        soup = BeautifulSoup(html or "", "html.parser")
        snap = cls(soup, url, embedded_state=embedded_state, has_layout=layout is not None)
        for css, state in (layout or {}).items():
            if isinstance(state, Box):
                state = ElementState(box=state)
            tag = soup.select_one(css)
            if tag is None:
                logger.debug(f"[DOCUMENT] Layout selector matched nothing: {css}")
                continue
            snap._states[id(tag)] = state
        return snap

    @classmethod
    def from_capture(cls, payload: Mapping[str, Any]) -> "DocumentSnapshot":
        """
        Build a snapshot from the live-page capture payload.

        The payload lists element states in ``querySelectorAll('*')`` order;
        they are zipped onto the parsed tree.  If the counts disagree the
        layout is dropped rather than risk pairing states with the wrong
        elements.
        """
        soup = BeautifulSoup(payload.get("html") or "", "html.parser")
        snap = cls(soup, payload.get("url") or "", embedded_state=payload.get("embedded"))
        raw_states = payload.get("states") or []
        elements = snap.elements()
        if len(elements) == len(raw_states):
            for tag, raw in zip(elements, raw_states):
                snap._states[id(tag)] = ElementState.from_capture(raw)
            snap.has_layout = True
        else:
            logger.warning(
                f"[DOCUMENT] Element count mismatch ({len(elements)} parsed vs "
                f"{len(raw_states)} captured) — layout dropped for {snap.url}"
            )
        return snap

    # ------------------------------------------------------------------
    # Element enumeration
    # ------------------------------------------------------------------

    def elements(self) -> List[Tag]:
        """All elements in document order, as the live DOM enumerates them."""
        if self._elements is None:
            out: List[Tag] = []
            stack = [iter(self.soup.children)]
            while stack:
                for child in stack[-1]:
                    if isinstance(child, Tag):
                        out.append(child)
                        if child.name not in _OPAQUE_TAGS:
                            stack.append(iter(child.children))
                        break
                else:
                    stack.pop()
            self._elements = out
            self._element_ids = {id(t) for t in out}
        return self._elements

    def body_elements(self) -> List[Tag]:
        """Descendants of ``<body>`` (the body itself excluded), page markers skipped."""
        body = self.soup.body
        if body is None:
            return []
        return [
            t for t in self.elements()
            if t is not body and _has_ancestor(t, body) and not is_internal(t)
        ]

    def is_searchable(self, tag: Tag) -> bool:
        self.elements()
        return id(tag) in self._element_ids and not is_internal(tag)

    def select_one(self, css: Optional[str]) -> Optional[Tag]:
        """First searchable element matching *css*; invalid selectors match nothing."""
        if not css:
            return None
        try:
            matches = self.soup.select(css)
        except Exception as e:
            logger.debug(f"[DOCUMENT] Unusable selector {css!r}: {e}")
            return None
        for tag in matches:
            if self.is_searchable(tag):
                return tag
        return None

    # ------------------------------------------------------------------
    # Per-element state
    # ------------------------------------------------------------------

    def state(self, tag: Tag) -> Optional[ElementState]:
        return self._states.get(id(tag))

    def box(self, tag: Tag) -> Optional[Box]:
        st = self._states.get(id(tag))
        return st.box if st else None

    def live_value(self, tag: Tag) -> Optional[str]:
        st = self._states.get(id(tag))
        return st.value if st else None

    def node_key(self, tag: Tag) -> Hashable:
        """Identity of *tag* comparable across snapshots of the same page."""
        st = self._states.get(id(tag))
        if st is not None and st.node_id is not None:
            return ("node", st.node_id)
        return ("path", absolute_path(tag))

    def find_by_key(self, key: Hashable) -> Optional[Tag]:
        if self._key_index is None:
            self._key_index = {self.node_key(t): t for t in self.elements()}
        return self._key_index.get(key)

    def contains(self, key: Hashable) -> bool:
        return self.find_by_key(key) is not None

    # ------------------------------------------------------------------
    # URLs
    # ------------------------------------------------------------------

    @property
    def base_url(self) -> str:
        base = self.soup.find("base", href=True)
        if base is not None:
            return urljoin(self.url, base["href"])
        return self.url

    def absolute(self, url: str) -> str:
        url = (url or "").strip()
        if not url:
            return ""
        return urljoin(self.base_url, url)


# ---------------------------------------------------------------------------
# Tree helpers
# ---------------------------------------------------------------------------

def is_internal(tag: Tag) -> bool:
    """True for overlay markers drawn by the tracker and anything inside them."""
    if tag.has_attr(MARKER_ATTR):
        return True
    return tag.find_parent(attrs={MARKER_ATTR: True}) is not None


def _has_ancestor(tag: Tag, ancestor: Tag) -> bool:
    parent = tag.parent
    while parent is not None:
        if parent is ancestor:
            return True
        parent = parent.parent
    return False


def same_tag_index(tag: Tag) -> int:
    """1-based position of *tag* among its parent's children with the same name."""
    parent = tag.parent
    if parent is None:
        return 1
    idx = 0
    for sibling in parent.children:
        if isinstance(sibling, Tag) and sibling.name == tag.name:
            idx += 1
            if sibling is tag:
                return idx
    return 1


def absolute_path(tag: Tag) -> str:
    """Positional path from the document root down to *tag*."""
    parts = []
    node = tag
    while isinstance(node, Tag) and not isinstance(node, BeautifulSoup):
        parts.append(f"{node.name}:nth-of-type({same_tag_index(node)})")
        node = node.parent
    return " > ".join(reversed(parts))


def text_of(tag: Tag) -> str:
    """Trimmed text content of *tag* (``textContent`` semantics)."""
    return tag.get_text().strip()
