"""
Page Mapper
===========
Map fields on a sample page, then extract the same fields from many pages
whose markup differs.

Browser-backed surfaces live in ``pagemapper.browser`` and are imported on
demand so the core works without Playwright installed.
"""

from .document import Box, DocumentSnapshot, ElementState
from .mapper import FieldMapper
from .models import ExtractionRecord, Fallback, FieldSpec, PageType, Session
from .orchestrator import PageOutcome, RunOrchestrator, RunPhase, RunStartError
from .selector_engine import Resolution, Strategy, build_fallback, compute_selector, resolve_field
from .settings import MapperSettings
from .storage import JsonFileStore, MemoryStore, SessionRepository

__version__ = "1.3.0"

__all__ = [
    "Box",
    "DocumentSnapshot",
    "ElementState",
    "ExtractionRecord",
    "Fallback",
    "FieldMapper",
    "FieldSpec",
    "JsonFileStore",
    "MapperSettings",
    "MemoryStore",
    "PageOutcome",
    "PageType",
    "Resolution",
    "RunOrchestrator",
    "RunPhase",
    "RunStartError",
    "Session",
    "SessionRepository",
    "Strategy",
    "build_fallback",
    "compute_selector",
    "resolve_field",
]
