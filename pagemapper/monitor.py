"""
Run Monitor
===========
Progress tracking for a run, fed by the events the orchestrator broadcasts.

Tracks:
- Pages extracted / failed, navigation failures
- Rows captured
- Elapsed time and pages/min

Subscribe it to the boundary's ``EventBus``::

    monitor = RunMonitor()
    bus.subscribe(monitor.handle)
    ...
    print(monitor.format_summary())
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class RunMetrics:
    """Snapshot of run metrics at a point in time."""
    pages_ok: int = 0
    pages_failed: int = 0
    navigation_failures: int = 0
    rows_captured: int = 0
    queue_total: int = 0
    elapsed_sec: float = 0.0
    pages_per_min: float = 0.0
    finished: bool = False
    stop_reason: str = ""

    @property
    def pages_done(self) -> int:
        return self.pages_ok + self.pages_failed + self.navigation_failures


class RunMonitor:
    def __init__(self, queue_total: int = 0):
        self.queue_total = queue_total
        self._start_time = time.monotonic()
        self._end_time: Optional[float] = None
        self._pages_ok = 0
        self._pages_failed = 0
        self._nav_failures = 0
        self._rows = 0
        self._stop_reason = ""
        self.failures: List[str] = []
        self._progress_callback: Optional[Callable[[RunMetrics], None]] = None

    def set_progress_callback(self, callback: Callable[[RunMetrics], None]) -> None:
        """Set callback: callback(metrics: RunMetrics)"""
        self._progress_callback = callback

    def handle(self, event: Any) -> None:
        kind = getattr(event, "type", None)
        if kind == "page-done":
            if event.ok:
                self._pages_ok += 1
                self._rows += event.row_count
            else:
                self._pages_failed += 1
                self.failures.append(f"{event.url}: {event.error}")
        elif kind == "navigation-failed":
            self._nav_failures += 1
            self.failures.append(f"{event.url}: {event.error}")
        elif kind == "run-done":
            self._finish("completed")
        elif kind == "run-error":
            self.failures.append(f"{event.url}: {event.error}")
            self._finish(f"Error: {event.error}")
        else:
            return

        if kind in ("page-done", "navigation-failed"):
            m = self.snapshot()
            logger.info(
                f"[MONITOR] {m.pages_done}/{m.queue_total or '?'} "
                f"ok={m.pages_ok} fail={m.pages_failed} nav-fail={m.navigation_failures} "
                f"rows={m.rows_captured} elapsed={m.elapsed_sec:.0f}s"
            )
            if self._progress_callback:
                self._progress_callback(m)

    def mark_stopped(self, reason: str = "User requested stop") -> None:
        self._finish(reason)

    def _finish(self, reason: str) -> None:
        if self._end_time is None:
            self._end_time = time.monotonic()
            self._stop_reason = reason

    def snapshot(self) -> RunMetrics:
        end = self._end_time if self._end_time is not None else time.monotonic()
        elapsed = end - self._start_time
        done = self._pages_ok + self._pages_failed + self._nav_failures
        return RunMetrics(
            pages_ok=self._pages_ok,
            pages_failed=self._pages_failed,
            navigation_failures=self._nav_failures,
            rows_captured=self._rows,
            queue_total=self.queue_total,
            elapsed_sec=round(elapsed, 2),
            pages_per_min=round(done / elapsed * 60, 2) if elapsed > 0 else 0.0,
            finished=self._end_time is not None,
            stop_reason=self._stop_reason,
        )

    def format_summary(self, metrics: Optional[RunMetrics] = None) -> str:
        """Format a human-readable summary string."""
        m = metrics or self.snapshot()
        lines = [
            "=" * 65,
            "  RUN SUMMARY",
            "=" * 65,
            f"  Queue:               {m.queue_total}",
            f"  Pages extracted:     {m.pages_ok}",
            f"  Extraction failed:   {m.pages_failed}",
            f"  Navigation failed:   {m.navigation_failures}",
            f"  Rows captured:       {m.rows_captured}",
            "-" * 65,
            f"  Speed:               {m.pages_per_min:.1f} pages/min",
            f"  Elapsed time:        {m.elapsed_sec:.1f} s",
            f"  Stop reason:         {m.stop_reason or 'running'}",
            "=" * 65,
        ]
        return "\n".join(lines)
