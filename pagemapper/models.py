"""
Field / Session Data Model
==========================
In-memory and persisted representation of a mapping session.

A session holds the page type, the last-known origin URL, the ordered
field specifications the operator locked, and the flattened extraction
records accumulated by multi-page runs.

Persisted shape (JSON, camelCase keys so saved sessions stay readable by
any tool that consumed the earlier format)::

    {
      "id": "...", "pageType": "product", "pageUrl": "https://...",
      "fields": [{"id", "rowId", "fieldName", "selector",
                  "fallback": {"structural", "textHint"},
                  "content", "link", "jsonPath"?, "jsonKeys"?}],
      "results": [{"page", "time", "fieldName", "content", "link"}]
    }
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class PageType(str, Enum):
    """Kind of page the mapping was recorded on."""
    PRODUCT = "product"
    CATEGORY = "category"

    @classmethod
    def parse(cls, value: Any) -> "PageType":
        """Accept an enum member or its string value; unknown → PRODUCT."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.PRODUCT


def new_id() -> str:
    return str(uuid.uuid4())


def utc_timestamp() -> str:
    """ISO 8601 timestamp with millisecond precision and a ``Z`` suffix."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


@dataclass
class Fallback:
    """Second-chance locator plus a short text excerpt captured at lock time."""
    structural: Optional[str] = None
    text_hint: str = ""

    def to_dict(self) -> dict:
        return {"structural": self.structural, "textHint": self.text_hint}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "Fallback":
        data = data or {}
        return cls(
            structural=data.get("structural"),
            text_hint=data.get("textHint") or "",
        )


@dataclass
class FieldSpec:
    """
    One mapped field.

    ``id`` and ``row_id`` never change after creation.  ``content`` and
    ``link`` always hold the most recent successful resolution; a failed
    resolution leaves them untouched.
    """
    row_id: str
    id: str = field(default_factory=new_id)
    field_name: str = ""
    selector: Optional[str] = None
    fallback: Fallback = field(default_factory=Fallback)
    content: str = ""
    link: str = ""
    json_path: Optional[List[str]] = None
    json_keys: Optional[List[str]] = None

    @property
    def is_structured(self) -> bool:
        """True when the field resolves against the embedded page-state payload."""
        return bool(self.json_path) or bool(self.json_keys)

    @property
    def label(self) -> str:
        return self.field_name or self.row_id

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "rowId": self.row_id,
            "fieldName": self.field_name,
            "selector": self.selector,
            "fallback": self.fallback.to_dict(),
            "content": self.content,
            "link": self.link,
        }
        if self.json_path:
            data["jsonPath"] = list(self.json_path)
        if self.json_keys:
            data["jsonKeys"] = list(self.json_keys)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "FieldSpec":
        json_path = data.get("jsonPath")
        json_keys = data.get("jsonKeys")
        return cls(
            id=data.get("id") or new_id(),
            row_id=str(data.get("rowId", "")),
            field_name=data.get("fieldName") or "",
            selector=data.get("selector"),
            fallback=Fallback.from_dict(data.get("fallback")),
            content=data.get("content") or "",
            link=data.get("link") or "",
            json_path=list(json_path) if isinstance(json_path, list) and json_path else None,
            json_keys=list(json_keys) if isinstance(json_keys, list) and json_keys else None,
        )


@dataclass
class ExtractionRecord:
    """One extracted value: produced per field per page visited."""
    page: str
    time: str
    field_name: str
    content: str
    link: str

    def to_dict(self) -> dict:
        return {
            "page": self.page,
            "time": self.time,
            "fieldName": self.field_name,
            "content": self.content,
            "link": self.link,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExtractionRecord":
        return cls(
            page=data.get("page") or "",
            time=data.get("time") or "",
            field_name=data.get("fieldName") or "",
            content=data.get("content") or "",
            link=data.get("link") or "",
        )


@dataclass
class Session:
    """The mapping session aggregate."""
    id: str = field(default_factory=new_id)
    page_type: PageType = PageType.PRODUCT
    page_url: str = ""
    fields: List[FieldSpec] = field(default_factory=list)
    results: List[ExtractionRecord] = field(default_factory=list)

    # -- field lookup ---------------------------------------------------

    def find(self, row_id: str) -> Optional[FieldSpec]:
        for spec in self.fields:
            if spec.row_id == row_id:
                return spec
        return None

    def index_of(self, row_id: str) -> int:
        for i, spec in enumerate(self.fields):
            if spec.row_id == row_id:
                return i
        return -1

    def upsert(self, spec: FieldSpec) -> None:
        """Replace the record sharing ``spec.row_id`` in place, else append."""
        idx = self.index_of(spec.row_id)
        if idx >= 0:
            self.fields[idx] = spec
        else:
            self.fields.append(spec)

    def remove(self, row_id: str) -> bool:
        idx = self.index_of(row_id)
        if idx < 0:
            return False
        del self.fields[idx]
        return True

    # -- records --------------------------------------------------------

    def records(self, page: Optional[str] = None, time: Optional[str] = None) -> List[ExtractionRecord]:
        """Flatten the current fields into extraction records for one page."""
        page = self.page_url if page is None else page
        stamp = time or utc_timestamp()
        return [
            ExtractionRecord(
                page=page,
                time=stamp,
                field_name=spec.field_name,
                content=spec.content,
                link=spec.link,
            )
            for spec in self.fields
        ]

    # -- serialisation --------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pageType": self.page_type.value,
            "pageUrl": self.page_url,
            "fields": [f.to_dict() for f in self.fields],
            "results": [r.to_dict() for r in self.results],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        fields = data.get("fields")
        results = data.get("results")
        return cls(
            id=data.get("id") or new_id(),
            page_type=PageType.parse(data.get("pageType", PageType.PRODUCT.value)),
            page_url=data.get("pageUrl") or "",
            fields=[FieldSpec.from_dict(f) for f in fields] if isinstance(fields, list) else [],
            results=[ExtractionRecord.from_dict(r) for r in results] if isinstance(results, list) else [],
        )
