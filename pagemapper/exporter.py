"""
Record Export
=============
CSV and JSON writers for extraction records and session templates.

CSV files start with a UTF-8 BOM so spreadsheet tools pick the right
encoding; the header is fixed::

    Page, Time, Element Name, Element Content, Element Link
"""

from __future__ import annotations

import csv
import io
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from .models import ExtractionRecord
from .storage import SessionRepository

logger = logging.getLogger(__name__)

CSV_HEADER = ["Page", "Time", "Element Name", "Element Content", "Element Link"]

TEMPLATE_PREFIX = "pagemapper-template"


def timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%d_%H-%M-%S")


def default_filename(prefix: str, ext: str) -> str:
    return f"{prefix}_{timestamp()}.{ext}"


def build_csv(records: Iterable[ExtractionRecord], delimiter: str = ",") -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, delimiter=delimiter, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for r in records:
        writer.writerow([r.page, r.time, r.field_name, r.content, r.link])
    return "\ufeff" + buf.getvalue()


def export_csv(records: Iterable[ExtractionRecord], filepath: str, delimiter: str = ",") -> str:
    records = list(records)
    path = Path(filepath)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="", encoding="utf-8") as f:
        f.write(build_csv(records, delimiter))
    logger.info(f"[EXPORT] {len(records)} rows → {path}")
    return str(path.absolute())


def export_current_csv(repository: SessionRepository, filepath: Optional[str] = None,
                       delimiter: str = ",", prefix: str = "pagemapper-map") -> str:
    """Export accumulated run results, or the current page's fields when there are none."""
    records = repository.get_results()
    if not records:
        records = repository.records_for()
    return export_csv(records, filepath or default_filename(prefix, "csv"), delimiter)


def export_json(data: Any, filepath: Optional[str] = None, prefix: str = TEMPLATE_PREFIX) -> str:
    if hasattr(data, "to_dict"):
        data = data.to_dict()
    path = Path(filepath or default_filename(prefix, "json"))
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    logger.info(f"[EXPORT] JSON → {path}")
    return str(path.absolute())
