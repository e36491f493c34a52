"""
Extraction primitive: turn a resolved element into ``(content, link)``.

Precedence:
  1. a form-control value, when the element carries a non-empty one
  2. otherwise the element's trimmed text
  link: the enclosing anchor's absolute URL, else the element's ``src``

Total — a missing element yields empty strings, never an exception.
"""

from __future__ import annotations

from typing import NamedTuple, Optional

from bs4 import Tag

from .document import DocumentSnapshot, text_of

# Elements exposing a ``value`` property in the DOM
_VALUE_TAGS = frozenset({
    "input", "textarea", "select", "option", "button",
    "output", "data", "param",
})


class Extracted(NamedTuple):
    content: str
    link: str


EMPTY = Extracted("", "")


def extract(node: Optional[Tag], snapshot: DocumentSnapshot) -> Extracted:
    if node is None:
        return EMPTY
    content = control_value(node, snapshot) or text_of(node)
    return Extracted(content, link_of(node, snapshot))


def control_value(node: Tag, snapshot: DocumentSnapshot) -> str:
    """Current value of a form-control-like element, or ``""``."""
    live = snapshot.live_value(node)
    if live is not None:
        return live
    if node.name not in _VALUE_TAGS:
        return ""
    if node.name == "textarea":
        return node.get_text()
    if node.name == "select":
        option = node.find("option", selected=True) or node.find("option")
        return _option_value(option) if option is not None else ""
    if node.name == "option":
        return _option_value(node)
    return node.get("value", "") or ""


def _option_value(option: Tag) -> str:
    value = option.get("value")
    return value if value is not None else text_of(option)


def link_of(node: Tag, snapshot: DocumentSnapshot) -> str:
    anchor = node if node.name == "a" else node.find_parent("a")
    if anchor is not None and anchor.get("href"):
        return snapshot.absolute(anchor["href"])
    src = node.get("src")
    if src:
        return snapshot.absolute(src)
    return ""
