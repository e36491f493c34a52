"""
Static Surface
==============
Navigation boundary that fetches pages with ``requests`` instead of a
browser.  Suited to server-rendered sites where fields are present in the
initial HTML (or in the embedded page-state payload).

Snapshots carry no layout, so the text-anchor strategy skips its size filter
and takes the first match in document order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import requests

from .boundary import (
    EXTRACT_NOW,
    BaseSurface,
    EventBus,
    ExtractionRequestError,
    NavigationError,
)
from .document import DocumentSnapshot
from .mapper import FieldMapper
from .settings import MapperSettings

logger = logging.getLogger(__name__)


class StaticSurface(BaseSurface):
    def __init__(self, mapper: FieldMapper, settings: Optional[MapperSettings] = None,
                 bus: Optional[EventBus] = None, surface_id: str = "main",
                 http: Optional[requests.Session] = None):
        super().__init__(bus, surface_id)
        self.mapper = mapper
        self.settings = settings or mapper.settings
        self.http = http or requests.Session()
        self.snapshot: Optional[DocumentSnapshot] = None

    def _fetch(self, url: str) -> requests.Response:
        headers = {
            'User-Agent': self.settings.user_agent,
            'Accept': 'text/html,application/xhtml+xml',
            'Accept-Language': 'en-US,en;q=0.9',
        }
        return self.http.get(url, headers=headers, timeout=self.settings.nav_timeout_s)

    async def attach(self, url: str) -> DocumentSnapshot:
        """Fetch *url* and attach the stored session to it."""
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(None, self._fetch, url)
        except requests.RequestException as e:
            raise NavigationError(str(e)) from e
        if response.status_code >= 400:
            raise NavigationError(f"HTTP {response.status_code}")

        self.snapshot = DocumentSnapshot.from_html(response.text, url=response.url or url)
        self.mapper.bootstrap(self.snapshot)
        return self.snapshot

    async def navigate(self, surface_id: str, url: str) -> int:
        token = self._next_token()
        self.snapshot = None
        snapshot = await self.attach(url)
        asyncio.get_running_loop().call_soon(self._emit_load, token, snapshot.url)
        return token

    async def send_to_surface(self, surface_id: str, request: Any) -> Dict[str, Any]:
        if getattr(request, "type", None) != EXTRACT_NOW:
            raise ExtractionRequestError(f"Unsupported request: {request!r}")
        if self.snapshot is None:
            raise ExtractionRequestError("No responder: no page loaded")
        rows = self.mapper.extract_now(self.snapshot)
        return {"ok": True, "rows": rows}
