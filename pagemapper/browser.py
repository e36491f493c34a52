"""
Browser Surface (Playwright)
============================
Navigation boundary backed by a single Playwright page.

- ``navigate``        — ``page.goto(..., wait_until="commit")`` returns a token
  at once; a background task waits for the ``load`` state, re-attaches the
  stored session (markers included), then emits ``LoadComplete`` for that
  token.
- ``send_to_surface`` — answers the extract-now request by capturing a
  snapshot of the live page and running ``FieldMapper.extract_now``.
- A ``MutationObserver`` installed as an init script reports DOM changes to
  Python; ``MutationBatcher`` turns bursts into one reconcile, after which the
  overlay markers are redrawn.

Snapshots pair ``documentElement.outerHTML`` with per-element state read in
``querySelectorAll('*')`` order: a stable per-element id (kept in a WeakMap
so it survives across captures), the bounding box, and the live ``value``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from playwright.async_api import Browser, BrowserContext, Page, async_playwright
from playwright.async_api import Error as PlaywrightError

from .boundary import (
    EXTRACT_NOW,
    BaseSurface,
    EventBus,
    ExtractionRequestError,
    NavigationError,
    SurfaceUnavailableError,
)
from .document import MARKER_ATTR, DocumentSnapshot
from .mapper import FieldMapper
from .settings import MapperSettings
from .tracker import Marker, MutationBatcher

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# In-page scripts
# ---------------------------------------------------------------------------

_CAPTURE_JS = """
() => {
    const ids = window.__pagemapperIds || (window.__pagemapperIds = new WeakMap());
    let next = window.__pagemapperNextId || 1;
    const states = [];
    for (const el of document.querySelectorAll('*')) {
        let id = ids.get(el);
        if (id === undefined) { id = next++; ids.set(el, id); }
        const r = el.getBoundingClientRect();
        const value = ('value' in el && typeof el.value === 'string' && el.value) ? el.value : null;
        states.push({id, top: r.top, left: r.left, width: r.width, height: r.height, value});
    }
    window.__pagemapperNextId = next;
    let embedded = null;
    try {
        if (window.__NEXT_DATA__ && typeof window.__NEXT_DATA__ === 'object') {
            embedded = JSON.parse(JSON.stringify(window.__NEXT_DATA__));
        }
    } catch (e) { embedded = null; }
    return {html: document.documentElement.outerHTML, url: location.href, states, embedded};
}
"""

_MUTATION_HOOK_JS = """
(() => {
    if (window.__pagemapperObserver) return;
    const ATTR = '%(attr)s';
    const isMarker = (n) => n.nodeType === 1 && n.hasAttribute(ATTR);
    const start = () => {
        const obs = new MutationObserver((records) => {
            const relevant = records.some((r) => {
                if (r.target.closest && r.target.closest('[' + ATTR + ']')) return false;
                const nodes = [...r.addedNodes, ...r.removedNodes];
                return !(nodes.length && nodes.every(isMarker));
            });
            if (relevant && window.pagemapperMutated) window.pagemapperMutated();
        });
        obs.observe(document.documentElement, {childList: true, subtree: true});
        window.__pagemapperObserver = obs;
    };
    if (document.documentElement) start();
    else document.addEventListener('DOMContentLoaded', start);
})();
""" % {"attr": MARKER_ATTR}

_RENDER_MARKERS_JS = """
(markers) => {
    const ATTR = '%(attr)s';
    const existing = new Map();
    for (const el of document.querySelectorAll('[' + ATTR + ']')) {
        existing.set(el.getAttribute(ATTR), el);
    }
    for (const m of markers) {
        let el = existing.get(m.rowId);
        existing.delete(m.rowId);
        if (!el) {
            el = document.createElement('div');
            el.setAttribute(ATTR, m.rowId);
            el.style.position = 'absolute';
            el.style.pointerEvents = 'none';
            el.style.borderRadius = '6px';
            el.style.zIndex = '2147483646';
            document.documentElement.appendChild(el);
        }
        if (!m.visible || !m.box) { el.style.display = 'none'; continue; }
        el.style.display = 'block';
        el.style.left = `${Math.max(0, window.scrollX + m.box.left - 2)}px`;
        el.style.top = `${Math.max(0, window.scrollY + m.box.top - 2)}px`;
        el.style.width = `${Math.max(0, m.box.width + 4)}px`;
        el.style.height = `${Math.max(0, m.box.height + 4)}px`;
        el.style.border = m.mode === 'editing' ? '2px dashed #ff3b30' : '2px solid #00c853';
    }
    for (const el of existing.values()) el.remove();
}
""" % {"attr": MARKER_ATTR}


class BrowserSurface(BaseSurface):
    """
    Playwright-driven surface for mapping and runs.

    Usage::

        async with BrowserSurface(mapper, settings) as surface:
            runner = RunOrchestrator(surface, settings, surface.surface_id)
            await runner.run(queue)
    """

    def __init__(self, mapper: FieldMapper, settings: Optional[MapperSettings] = None,
                 bus: Optional[EventBus] = None, surface_id: str = "main"):
        super().__init__(bus, surface_id)
        self.mapper = mapper
        self.settings = settings or mapper.settings

        self._playwright = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None

        self._load_task: Optional[asyncio.Task] = None
        self.batcher: Optional[MutationBatcher] = None

    # ------------------------------------------------------------------
    # Browser management
    # ------------------------------------------------------------------

    async def open(self) -> None:
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.settings.headless,
            args=[
                '--disable-gpu',
                '--no-sandbox',
                '--disable-dev-shm-usage',
            ],
        )
        self._context = await self._browser.new_context(
            user_agent=self.settings.user_agent,
            viewport={'width': 1366, 'height': 900},
            locale='en-US',
        )
        await self._context.expose_function("pagemapperMutated", self._on_mutation)
        await self._context.add_init_script(_MUTATION_HOOK_JS)
        self.page = await self._context.new_page()
        self.batcher = MutationBatcher(
            self.mapper.tracker, self.capture, renderer=self.render_markers,
        )
        logger.info(f"[BROWSER] Playwright page ready (headless={self.settings.headless})")

    async def close(self) -> None:
        if self.batcher is not None:
            self.batcher.close()
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
        for closer in (self._context, self._browser):
            if closer is None:
                continue
            try:
                await closer.close()
            except PlaywrightError as e:
                logger.debug(f"[BROWSER] Close error: {e}")
        if self._playwright is not None:
            await self._playwright.stop()
        self.page = self._context = self._browser = self._playwright = None

    def _require_page(self) -> Page:
        if self.page is None or self.page.is_closed():
            raise SurfaceUnavailableError(f"Surface '{self.surface_id}' has no open page")
        return self.page

    # ------------------------------------------------------------------
    # Snapshots + markers
    # ------------------------------------------------------------------

    async def capture(self) -> DocumentSnapshot:
        payload = await self._require_page().evaluate(_CAPTURE_JS)
        return DocumentSnapshot.from_capture(payload)

    async def render_markers(self, markers: List[Marker]) -> None:
        page = self.page
        if page is None or page.is_closed():
            return
        try:
            await page.evaluate(_RENDER_MARKERS_JS, [m.to_dict() for m in markers])
        except PlaywrightError as e:
            logger.debug(f"[BROWSER] Marker render skipped: {e}")

    def _on_mutation(self) -> None:
        if self.batcher is not None:
            self.batcher.notify()

    async def attach(self, url: str) -> DocumentSnapshot:
        """Navigate and wait for load outside a run (used by ``map``)."""
        page = self._require_page()
        await page.goto(url, wait_until="load", timeout=self.settings.nav_timeout_s * 1000)
        snapshot = await self.capture()
        self.mapper.bootstrap(snapshot)
        await self.render_markers(self.mapper.tracker.markers())
        return snapshot

    # ------------------------------------------------------------------
    # Navigation boundary
    # ------------------------------------------------------------------

    async def navigate(self, surface_id: str, url: str) -> int:
        page = self._require_page()
        token = self._next_token()
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
        try:
            await page.goto(url, wait_until="commit", timeout=self.settings.nav_timeout_s * 1000)
        except PlaywrightError as e:
            if page.is_closed():
                raise SurfaceUnavailableError(str(e)) from e
            raise NavigationError(str(e)) from e
        self._load_task = asyncio.get_running_loop().create_task(self._await_load(token, url))
        return token

    async def _await_load(self, token: int, url: str) -> None:
        page = self.page
        try:
            await page.wait_for_load_state("load", timeout=0)
            snapshot = await self.capture()
            self.mapper.bootstrap(snapshot)
            await self.render_markers(self.mapper.tracker.markers())
        except Exception as e:
            # extraction on this page will report the failure
            logger.warning(f"[BROWSER] Load handling failed for {url}: {e}")
        finally:
            # the runner waits on this token, whatever happened above
            if token == self._token:
                self._emit_load(token, page.url if page and not page.is_closed() else url)

    async def send_to_surface(self, surface_id: str, request: Any) -> Dict[str, Any]:
        if self.page is None or self.page.is_closed():
            raise ExtractionRequestError("No responder: page is closed")
        if getattr(request, "type", None) != EXTRACT_NOW:
            raise ExtractionRequestError(f"Unsupported request: {request!r}")
        try:
            snapshot = await self.capture()
            rows = self.mapper.extract_now(snapshot)
        except PlaywrightError as e:
            return {"ok": False, "error": str(e)}
        await self.render_markers(self.mapper.tracker.markers())
        return {"ok": True, "rows": rows}
