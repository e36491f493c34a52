"""
Run Orchestrator
================
Drives one URL queue through the page cycle, strictly one page at a time:

    Navigating → WaitingForLoad → Hydrating → Extracting → Advancing
         ↑                                                   │
         └──────────────── jittered delay ───────────────────┘

Per-page failures (navigation or extraction) are recorded, broadcast, and
skipped.  Only an empty queue (``RunStartError``) or a vanished surface
(``SurfaceUnavailableError``) end a run early.

Cancellation: every run carries a generation number.  ``stop()`` and
``start()`` bump it, and every continuation re-checks it after each await
before touching run state, so work that resolves after a stop is dropped
without a trace.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .boundary import (
    ExtractNowRequest,
    LoadComplete,
    NavigationBoundary,
    NavigationFailed,
    PageDone,
    RunDone,
    RunError,
    SurfaceUnavailableError,
)
from .settings import MapperSettings

logger = logging.getLogger(__name__)


class RunStartError(ValueError):
    """The run cannot start (nothing left in the queue after filtering)."""


class RunPhase(str, Enum):
    IDLE = "idle"
    NAVIGATING = "navigating"
    WAITING_FOR_LOAD = "waiting-for-load"
    HYDRATING = "hydrating"
    EXTRACTING = "extracting"
    ADVANCING = "advancing"
    PAUSED = "paused"
    DONE = "done"
    FAILED = "failed"


@dataclass
class PageOutcome:
    url: str
    ok: bool
    row_count: int = 0
    error: str = ""
    navigated: bool = True

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "ok": self.ok,
            "rowCount": self.row_count,
            "error": self.error,
            "navigated": self.navigated,
        }


class RunOrchestrator:
    """
    Single-flight run state machine over a ``NavigationBoundary``.

    Usage::

        runner = RunOrchestrator(boundary, settings)
        runner.start(queue)          # inside a running event loop
        ...
        runner.pause(); runner.resume(); runner.stop()
        await runner.wait()

        # Or in one go:
        outcomes = await runner.run(queue)
    """

    def __init__(self, boundary: NavigationBoundary,
                 settings: Optional[MapperSettings] = None,
                 surface_id: str = "main",
                 rng: Optional[random.Random] = None):
        self.boundary = boundary
        self.settings = settings or MapperSettings()
        self.surface_id = surface_id
        self._rng = rng or random.Random()

        self.phase = RunPhase.IDLE
        self.current_url: Optional[str] = None
        self.failed_url: Optional[str] = None
        self.outcomes: List[PageOutcome] = []

        self._queue: List[str] = []
        self._index = 0
        self._paused = False
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._finished: Optional[asyncio.Event] = None
        self._started_at = 0.0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def index(self) -> int:
        return self._index

    @property
    def queue(self) -> List[str]:
        return list(self._queue)

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def active(self) -> bool:
        return self.phase not in (RunPhase.IDLE, RunPhase.DONE, RunPhase.FAILED)

    def status(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "url": self.current_url,
            "index": self._index,
            "total": len(self._queue),
            "paused": self._paused,
            "generation": self._generation,
        }

    def _is_current(self, gen: int) -> bool:
        return gen == self._generation

    def _set_phase(self, phase: RunPhase, url: Optional[str] = None) -> None:
        self.phase = phase
        if url is not None:
            self.current_url = url
        logger.debug(f"[RUNNER] → {phase.value}{f' ({url})' if url else ''}")

    def next_delay(self) -> float:
        """Inter-page delay in seconds, uniform over the configured window (inclusive)."""
        lo = self.settings.inter_url_delay_min_ms
        hi = self.settings.inter_url_delay_max_ms
        return self._rng.randint(lo, hi) / 1000

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start(self, queue: Iterable[str]) -> int:
        """
        Begin a run over *queue*; replaces any run already in progress.

        Must be called from inside a running event loop.  Returns the run's
        generation number.
        """
        urls = list(queue)
        if not urls:
            raise RunStartError("No URLs after filtering")

        if self.active:
            logger.info("[RUNNER] Replacing the active run")
        self._discard()
        gen = self._generation

        self._queue = urls
        self._index = 0
        self._paused = False
        self.outcomes = []
        self.failed_url = None
        self.current_url = None
        self._finished = asyncio.Event()
        self._started_at = time.monotonic()
        self._set_phase(RunPhase.NAVIGATING, urls[0])

        logger.info(f"[RUNNER] Run started with {len(urls)} URLs (generation {gen})")
        self._schedule(gen, 0.0)
        return gen

    def pause(self) -> None:
        """Stop issuing new steps; the page cycle in flight completes normally."""
        if not self._paused:
            logger.info(f"[RUNNER] Pause requested ({self.phase.value})")
        self._paused = True

    def resume(self) -> None:
        self._paused = False
        if self.phase != RunPhase.PAUSED:
            return
        if self._task is not None and not self._task.done():
            return
        logger.info(f"[RUNNER] Resuming at {self._index + 1}/{len(self._queue)}")
        # leave Paused before scheduling so a second resume() is a no-op
        self._set_phase(RunPhase.NAVIGATING, self._queue[self._index])
        self._schedule(self._generation, 0.0)

    def stop(self) -> None:
        """Discard the run unconditionally and return to ``Idle``."""
        was_active = self.active
        self._discard()
        self._queue = []
        self._index = 0
        self._paused = False
        self.current_url = None
        self._set_phase(RunPhase.IDLE)
        if self._finished is not None:
            self._finished.set()
        if was_active:
            logger.info("[RUNNER] Run stopped")

    async def wait(self) -> List[PageOutcome]:
        """Block until the current run is done, failed, or stopped."""
        finished, outcomes = self._finished, self.outcomes
        if finished is not None:
            await finished.wait()
        return list(outcomes)

    async def run(self, queue: Iterable[str]) -> List[PageOutcome]:
        self.start(queue)
        return await self.wait()

    def _discard(self) -> None:
        self._generation += 1
        if self._finished is not None:
            # release waiters of the discarded run
            self._finished.set()
        task, self._task = self._task, None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    def _schedule(self, gen: int, delay_s: float) -> None:
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run_step(gen, delay_s))

    # ------------------------------------------------------------------
    # Page cycle
    # ------------------------------------------------------------------

    async def _run_step(self, gen: int, delay_s: float) -> None:
        if delay_s > 0:
            await asyncio.sleep(delay_s)
        if not self._is_current(gen):
            return
        try:
            await self._step(gen)
        except Exception as e:
            logger.error(f"[RUNNER] Unexpected error on {self.current_url}: {e}", exc_info=True)
            if self._is_current(gen):
                self._fail(self.current_url or "", e)

    async def _step(self, gen: int) -> None:
        if self._paused:
            self._set_phase(RunPhase.PAUSED)
            return
        if self._index >= len(self._queue):
            self._finish()
            return

        url = self._queue[self._index]
        self._set_phase(RunPhase.NAVIGATING, url)
        logger.info(f"[RUNNER] [{self._index + 1}/{len(self._queue)}] {url}")

        loaded = asyncio.get_running_loop().create_future()
        early: List[LoadComplete] = []
        expected: Dict[str, int] = {}

        def on_load(event: LoadComplete) -> None:
            if loaded.done() or not self._is_current(gen):
                return
            if "token" not in expected:
                early.append(event)
            elif event.token == expected["token"]:
                loaded.set_result(event)

        # listen before navigating so a fast load cannot slip past
        unsubscribe = self.boundary.on_load_complete(self.surface_id, on_load)
        try:
            try:
                token = await self.boundary.navigate(self.surface_id, url)
            except SurfaceUnavailableError as e:
                if self._is_current(gen):
                    self._fail(url, e)
                return
            except Exception as e:
                if self._is_current(gen):
                    self._navigation_failed(url, e)
                return
            if not self._is_current(gen):
                return

            expected["token"] = token
            for event in early:
                if event.token == token and not loaded.done():
                    loaded.set_result(event)
            self._set_phase(RunPhase.WAITING_FOR_LOAD, url)
            await self._wait_for_load(loaded, url)
        finally:
            unsubscribe()

        if not self._is_current(gen):
            return
        self._set_phase(RunPhase.HYDRATING, url)
        await asyncio.sleep(self.settings.hydration_wait_ms / 1000)
        if not self._is_current(gen):
            return

        self._set_phase(RunPhase.EXTRACTING, url)
        try:
            response = await self.boundary.send_to_surface(self.surface_id, ExtractNowRequest())
        except Exception as e:
            response = {"ok": False, "error": str(e) or type(e).__name__}
        if not self._is_current(gen):
            return
        if not isinstance(response, dict):
            response = {"ok": False, "error": "No responder"}

        if response.get("ok"):
            outcome = PageOutcome(url, True, row_count=int(response.get("rows") or 0))
        else:
            outcome = PageOutcome(url, False, error=str(response.get("error") or "extraction failed"))
            logger.warning(f"[RUNNER] Extraction failed on {url}: {outcome.error}")
        self.outcomes.append(outcome)
        self.boundary.broadcast(PageDone(url, outcome.ok, outcome.row_count, outcome.error))
        self._advance(gen)

    async def _wait_for_load(self, loaded: asyncio.Future, url: str) -> None:
        timeout = self.settings.load_timeout_s
        if not timeout:
            await loaded
            return
        try:
            await asyncio.wait_for(asyncio.shield(loaded), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[RUNNER] No load completion after {timeout}s on {url}, extracting anyway")

    def _advance(self, gen: int) -> None:
        if not self._is_current(gen):
            return
        self._index += 1
        self._set_phase(RunPhase.ADVANCING)
        if self._index >= len(self._queue):
            self._finish()
            return
        if self._paused:
            self._set_phase(RunPhase.PAUSED)
            return
        self._schedule(gen, self.next_delay())

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _navigation_failed(self, url: str, error: Exception) -> None:
        message = str(error) or type(error).__name__
        logger.warning(f"[RUNNER] Navigation failed for {url}: {message}")
        self.outcomes.append(PageOutcome(url, False, error=message, navigated=False))
        self.boundary.broadcast(NavigationFailed(url, message))
        self._advance(self._generation)

    def _finish(self) -> None:
        self._set_phase(RunPhase.DONE)
        self.current_url = None
        ok = sum(1 for o in self.outcomes if o.ok)
        elapsed = time.monotonic() - self._started_at
        logger.info(
            f"[RUNNER] Run done: {ok}/{len(self._queue)} pages extracted "
            f"in {elapsed:.1f}s"
        )
        self.boundary.broadcast(RunDone(total=len(self._queue)))
        if self._finished is not None:
            self._finished.set()

    def _fail(self, url: str, error: Exception) -> None:
        message = str(error) or type(error).__name__
        logger.error(f"[RUNNER] Run failed at {url}: {message}")
        self.failed_url = url
        self._set_phase(RunPhase.FAILED, url)
        self.boundary.broadcast(RunError(url, message))
        if self._finished is not None:
            self._finished.set()
