"""
Tests for orchestrator.py against an in-memory navigation boundary.

Delays are zero unless a test needs a window to act in; the event loop is
driven with ``asyncio.run``.
"""

import asyncio
import random

import pytest

from pagemapper.boundary import (
    EXTRACT_NOW,
    BaseSurface,
    EventBus,
    ExtractionRequestError,
    NavigationError,
    SurfaceUnavailableError,
)
from pagemapper.orchestrator import RunOrchestrator, RunPhase, RunStartError
from pagemapper.settings import MapperSettings


class FakeSurface(BaseSurface):
    """
    Scripted boundary.

    ``auto_load`` emits the load completion on the next loop turn; otherwise
    the test calls ``finish_load()``.  URLs in ``bad_urls`` fail navigation,
    URLs in ``broken_pages`` fail extraction, ``silent_pages`` get no reply.
    ``extract_gate`` (a future) holds the extraction until it resolves.
    """

    def __init__(self, auto_load=True, bad_urls=(), broken_pages=(), early_load=False,
                 silent_pages=()):
        super().__init__()
        self.silent_pages = set(silent_pages)
        self.extract_gate = None
        self.auto_load = auto_load
        self.bad_urls = set(bad_urls)
        self.broken_pages = set(broken_pages)
        self.early_load = early_load
        self.visited = []
        self.extracted = []
        self.pending = None
        self.closed = False
        self.events = []
        self.bus.subscribe(self.events.append)

    async def navigate(self, surface_id, url):
        if self.closed:
            raise SurfaceUnavailableError("tab closed")
        if url in self.bad_urls:
            raise NavigationError(f"net::ERR_NAME_NOT_RESOLVED {url}")
        token = self._next_token()
        self.visited.append(url)
        if self.early_load:
            # stale completion from an older navigation, then the real one
            self._emit_load(token - 1, url)
            self._emit_load(token, url)
        elif self.auto_load:
            asyncio.get_running_loop().call_soon(self._emit_load, token, url)
        else:
            self.pending = (token, url)
        return token

    def finish_load(self):
        token, url = self.pending
        self.pending = None
        self._emit_load(token, url)

    async def send_to_surface(self, surface_id, request):
        assert request.type == EXTRACT_NOW
        url = self.visited[-1]
        if self.extract_gate is not None:
            await self.extract_gate
        if url in self.broken_pages:
            raise ExtractionRequestError("No responder")
        if url in self.silent_pages:
            return None
        self.extracted.append(url)
        return {"ok": True, "rows": 2}

    def types(self):
        return [e.type for e in self.events]


def _settings(**kwargs) -> MapperSettings:
    kwargs.setdefault("hydration_wait_ms", 0)
    kwargs.setdefault("inter_url_delay_min_ms", 0)
    kwargs.setdefault("inter_url_delay_max_ms", 0)
    return MapperSettings(**kwargs)


async def _until(predicate, turns=500):
    for _ in range(turns):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never reached")


async def _spin(turns=50):
    for _ in range(turns):
        await asyncio.sleep(0)


# ====================================================================
# 1. Happy path + per-page failures
# ====================================================================

class TestRunCycle:
    """One page at a time; failures recorded and skipped."""

    def test_visits_in_order(self):
        surface = FakeSurface()
        runner = RunOrchestrator(surface, _settings())
        outcomes = asyncio.run(runner.run(["https://a.example/1", "https://a.example/2"]))
        assert surface.extracted == ["https://a.example/1", "https://a.example/2"]
        assert [o.ok for o in outcomes] == [True, True]
        assert surface.types() == ["page-done", "page-done", "run-done"]
        assert runner.phase is RunPhase.DONE
        assert surface.events[-1].total == 2

    def test_navigation_failure_skipped(self):
        """A failing middle URL is reported and the run moves on."""
        surface = FakeSurface(bad_urls={"B"})
        runner = RunOrchestrator(surface, _settings())
        outcomes = asyncio.run(runner.run(["A", "B", "C"]))
        assert surface.visited == ["A", "C"]
        assert surface.types().count("navigation-failed") == 1
        assert surface.types().count("page-done") == 2
        assert surface.types()[-1] == "run-done"
        assert outcomes[1].navigated is False
        assert "ERR_NAME_NOT_RESOLVED" in outcomes[1].error

    def test_extraction_failure_advances(self):
        surface = FakeSurface(broken_pages={"A"})
        runner = RunOrchestrator(surface, _settings())
        asyncio.run(runner.run(["A", "B"]))
        done = [e for e in surface.events if e.type == "page-done"]
        assert [(e.url, e.ok) for e in done] == [("A", False), ("B", True)]
        assert done[0].error == "No responder"
        assert runner.phase is RunPhase.DONE

    def test_missing_reply_counts_as_extraction_failure(self):
        """A boundary answering with nothing is a failed page, not a failed run."""
        surface = FakeSurface(silent_pages={"A"})
        runner = RunOrchestrator(surface, _settings())
        outcomes = asyncio.run(runner.run(["A", "B"]))
        assert [(o.url, o.ok) for o in outcomes] == [("A", False), ("B", True)]
        assert outcomes[0].error == "No responder"
        assert surface.types() == ["page-done", "page-done", "run-done"]
        assert runner.phase is RunPhase.DONE

    def test_surface_unavailable_fails_run(self):
        surface = FakeSurface()
        surface.closed = True
        runner = RunOrchestrator(surface, _settings())
        asyncio.run(runner.run(["A", "B"]))
        assert runner.phase is RunPhase.FAILED
        assert runner.failed_url == "A"
        assert surface.types() == ["run-error"]
        assert surface.events[0].error == "tab closed"

    def test_empty_queue_rejected(self):
        runner = RunOrchestrator(FakeSurface(), _settings())

        async def scenario():
            with pytest.raises(RunStartError):
                runner.start([])

        asyncio.run(scenario())
        assert runner.phase is RunPhase.IDLE

    def test_load_completion_before_token_known(self):
        """A completion arriving during navigate() is buffered; stale tokens ignored."""
        surface = FakeSurface(early_load=True)
        runner = RunOrchestrator(surface, _settings())
        asyncio.run(runner.run(["A", "B"]))
        assert surface.extracted == ["A", "B"]
        assert surface.types().count("page-done") == 2

    def test_load_timeout_extracts_anyway(self):
        surface = FakeSurface(auto_load=False)
        runner = RunOrchestrator(surface, _settings(load_timeout_s=0.01))
        outcomes = asyncio.run(runner.run(["A"]))
        assert [o.ok for o in outcomes] == [True]
        assert surface.extracted == ["A"]

    def test_stale_token_ignored_while_waiting(self):
        surface = FakeSurface(auto_load=False)
        runner = RunOrchestrator(surface, _settings())

        async def scenario():
            runner.start(["A"])
            await _until(lambda: runner.phase is RunPhase.WAITING_FOR_LOAD)
            surface._emit_load(99, "A")
            await _spin()
            assert runner.phase is RunPhase.WAITING_FOR_LOAD
            surface.finish_load()
            await runner.wait()

        asyncio.run(scenario())
        assert surface.types() == ["page-done", "run-done"]


# ====================================================================
# 2. Pause / resume / stop
# ====================================================================

class TestControl:
    """Pause waits for the in-flight page; stop drops everything."""

    def test_pause_during_load_then_resume(self):
        surface = FakeSurface(auto_load=False)
        runner = RunOrchestrator(surface, _settings())

        async def scenario():
            runner.start(["A", "B"])
            await _until(lambda: runner.phase is RunPhase.WAITING_FOR_LOAD)
            runner.pause()
            surface.finish_load()
            await _until(lambda: runner.phase is RunPhase.PAUSED)
            await _spin()
            assert surface.types() == ["page-done"]
            assert surface.visited == ["A"]
            assert runner.index == 1

            runner.resume()
            await _until(lambda: surface.pending is not None)
            surface.finish_load()
            await runner.wait()

        asyncio.run(scenario())
        assert surface.types() == ["page-done", "page-done", "run-done"]
        assert runner.phase is RunPhase.DONE

    def test_resume_when_not_paused_is_noop(self):
        surface = FakeSurface()
        runner = RunOrchestrator(surface, _settings())

        async def scenario():
            runner.start(["A"])
            runner.resume()
            await runner.wait()

        asyncio.run(scenario())
        assert surface.visited == ["A"]

    def test_stop_suppresses_late_events(self):
        surface = FakeSurface(auto_load=False)
        runner = RunOrchestrator(surface, _settings())

        async def scenario():
            runner.start(["A", "B"])
            await _until(lambda: runner.phase is RunPhase.WAITING_FOR_LOAD)
            token, url = surface.pending
            runner.stop()
            surface._emit_load(token, url)
            await _spin()
            await runner.wait()

        asyncio.run(scenario())
        assert surface.events == []
        assert surface.extracted == []
        assert runner.phase is RunPhase.IDLE
        assert runner.status()["total"] == 0

    def test_restart_replaces_run(self):
        surface = FakeSurface(auto_load=False)
        runner = RunOrchestrator(surface, _settings())

        async def scenario():
            first = runner.start(["A"])
            await _until(lambda: runner.phase is RunPhase.WAITING_FOR_LOAD)
            stale = surface.pending
            second = runner.start(["B"])
            assert second > first
            surface._emit_load(*stale)
            await _until(lambda: surface.pending is not None and surface.pending[1] == "B")
            surface.finish_load()
            await runner.wait()

        asyncio.run(scenario())
        assert surface.extracted == ["B"]
        assert surface.types() == ["page-done", "run-done"]

    def test_restart_releases_previous_waiter(self):
        surface = FakeSurface(auto_load=False)
        runner = RunOrchestrator(surface, _settings())

        async def scenario():
            first = asyncio.ensure_future(runner.run(["A"]))
            await _until(lambda: runner.phase is RunPhase.WAITING_FOR_LOAD)
            runner.start(["B"])
            await _spin()
            assert first.done()
            assert first.result() == []
            await _until(lambda: surface.pending is not None and surface.pending[1] == "B")
            surface.finish_load()
            return await runner.wait()

        outcomes = asyncio.run(scenario())
        assert [o.url for o in outcomes] == ["B"]

    def test_double_resume_runs_one_cycle(self):
        surface = FakeSurface(auto_load=False)
        runner = RunOrchestrator(surface, _settings())

        async def scenario():
            runner.start(["A", "B", "C"])
            await _until(lambda: runner.phase is RunPhase.WAITING_FOR_LOAD)
            runner.pause()
            surface.finish_load()
            await _until(lambda: runner.phase is RunPhase.PAUSED)

            runner.resume()
            runner.resume()
            await _until(lambda: surface.pending is not None)
            await _spin()
            assert surface.visited == ["A", "B"]
            surface.finish_load()
            await _until(lambda: surface.pending is not None)
            surface.finish_load()
            await runner.wait()

        asyncio.run(scenario())
        assert surface.visited == ["A", "B", "C"]
        assert surface.types() == ["page-done", "page-done", "page-done", "run-done"]

    def test_stop_while_hydrating(self):
        surface = FakeSurface()
        runner = RunOrchestrator(surface, _settings(hydration_wait_ms=50))

        async def scenario():
            runner.start(["A", "B"])
            await _until(lambda: runner.phase is RunPhase.HYDRATING)
            runner.stop()
            await asyncio.sleep(0.08)

        asyncio.run(scenario())
        assert surface.visited == ["A"]
        assert surface.extracted == []
        assert surface.events == []
        assert runner.phase is RunPhase.IDLE

    def test_stop_while_extracting(self):
        surface = FakeSurface()
        runner = RunOrchestrator(surface, _settings())

        async def scenario():
            surface.extract_gate = asyncio.get_running_loop().create_future()
            runner.start(["A", "B"])
            await _until(lambda: runner.phase is RunPhase.EXTRACTING)
            runner.stop()
            surface.extract_gate.set_result(None)
            await _spin()

        asyncio.run(scenario())
        assert surface.extracted == []
        assert surface.events == []
        assert runner.phase is RunPhase.IDLE

    def test_stop_during_inter_page_delay(self):
        surface = FakeSurface()
        settings = _settings(inter_url_delay_min_ms=50, inter_url_delay_max_ms=60)
        runner = RunOrchestrator(surface, settings)

        async def scenario():
            runner.start(["A", "B"])
            await _until(lambda: runner.phase is RunPhase.ADVANCING)
            runner.stop()
            await asyncio.sleep(0.1)

        asyncio.run(scenario())
        assert surface.visited == ["A"]
        assert surface.types() == ["page-done"]
        assert runner.phase is RunPhase.IDLE

    def test_pause_during_inter_page_delay(self):
        surface = FakeSurface()
        settings = _settings(inter_url_delay_min_ms=30, inter_url_delay_max_ms=40)
        runner = RunOrchestrator(surface, settings)

        async def scenario():
            runner.start(["A", "B"])
            await _until(lambda: runner.phase is RunPhase.ADVANCING)
            runner.pause()
            await asyncio.sleep(0.08)
            assert runner.phase is RunPhase.PAUSED
            assert surface.visited == ["A"]
            runner.resume()
            await runner.wait()

        asyncio.run(scenario())
        assert surface.visited == ["A", "B"]
        assert surface.types() == ["page-done", "page-done", "run-done"]


# ====================================================================
# 3. Delays
# ====================================================================

class TestJitter:
    """Inter-page delay is uniform over the inclusive window."""

    def test_bounds(self):
        runner = RunOrchestrator(
            FakeSurface(),
            MapperSettings(inter_url_delay_min_ms=100, inter_url_delay_max_ms=250),
            rng=random.Random(7),
        )
        delays = [runner.next_delay() for _ in range(200)]
        assert all(0.1 <= d <= 0.25 for d in delays)
        assert len(set(delays)) > 1

    def test_fixed_window(self):
        runner = RunOrchestrator(
            FakeSurface(),
            MapperSettings(inter_url_delay_min_ms=300, inter_url_delay_max_ms=300),
        )
        assert runner.next_delay() == 0.3

    def test_inverted_window_swapped(self):
        settings = MapperSettings(inter_url_delay_min_ms=500, inter_url_delay_max_ms=100)
        assert (settings.inter_url_delay_min_ms, settings.inter_url_delay_max_ms) == (100, 500)


# ====================================================================
# 4. Event bus
# ====================================================================

class TestEventBus:
    def test_failing_subscriber_does_not_block_others(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise ValueError("boom")

        bus.subscribe(broken)
        unsubscribe = bus.subscribe(seen.append)
        bus.publish("first")
        unsubscribe()
        bus.publish("second")
        assert seen == ["first"]
