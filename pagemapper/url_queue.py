"""
URL Queue Preparation
=====================
Turns raw URL sources into the ordered, deduplicated, filtered queue a run
consumes.

Sources:
    - a URL list / CSV export (first cell of each line)
    - a sitemap (``<loc>`` entries, fetched with ``requests``)
    - URLs given on the command line

Pipeline (``prepare_queue``):
    1. Normalise — absolute against a base URL, http(s) only, fragment removed
    2. Deduplicate — first occurrence wins, order preserved
    3. Include / exclude patterns — substring, or a regex literal ``/.../``
    4. Optional robots.txt gate
    5. Cap at ``max_urls``

A malformed regex literal never raises: it degrades to "match everything"
for that pattern (so a broken exclude pattern excludes everything).
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Iterable, List, Optional, Pattern
from urllib.parse import urldefrag, urljoin, urlparse

import requests
from bs4 import BeautifulSoup

from .robots import RobotsHandler
from .settings import MapperSettings

logger = logging.getLogger(__name__)

_SITEMAP_TIMEOUT_S = 20


# -----------------------------------------------------------------------
# Sources
# -----------------------------------------------------------------------

def parse_url_list(text: str) -> List[str]:
    """
    URLs from a plain list or CSV export.

    Strips a UTF-8 BOM, drops blank lines, and keeps only the first
    comma-separated cell of each line (quotes removed).
    """
    raw = (text or "").replace("\ufeff", "")
    urls = []
    for line in raw.splitlines():
        line = line.strip()
        if not line:
            continue
        cell = line.split(",", 1)[0].strip().strip('"').strip()
        if cell:
            urls.append(cell)
    return urls


def load_sitemap(url: str, *, user_agent: Optional[str] = None,
                 timeout: float = _SITEMAP_TIMEOUT_S) -> List[str]:
    """Fetch a sitemap and return its ``<loc>`` entries in document order."""
    headers = {"User-Agent": user_agent or MapperSettings().user_agent}
    response = requests.get(url, headers=headers, timeout=timeout)
    response.raise_for_status()
    locs = parse_sitemap(response.text)
    logger.info(f"[QUEUE] Sitemap {url}: {len(locs)} <loc> entries")
    return locs


def parse_sitemap(xml: str) -> List[str]:
    soup = BeautifulSoup(xml or "", "xml")
    locs = (loc.get_text().strip() for loc in soup.find_all("loc"))
    return [loc for loc in locs if loc]


# -----------------------------------------------------------------------
# Normalisation
# -----------------------------------------------------------------------

def normalise_url(url: str, base: str = "") -> Optional[str]:
    """Absolute http(s) URL without fragment, or ``None``."""
    url = (url or "").strip()
    if not url:
        return None
    try:
        absolute = urljoin(base, url) if base else url
        absolute, _ = urldefrag(absolute)
        parsed = urlparse(absolute)
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return absolute


def normalise_urls(urls: Iterable[str], base: str = "") -> List[str]:
    """Normalise and deduplicate, keeping first-seen order."""
    seen = set()
    out = []
    for url in urls:
        clean = normalise_url(url, base)
        if clean is None or clean in seen:
            continue
        seen.add(clean)
        out.append(clean)
    return out


# -----------------------------------------------------------------------
# Filtering
# -----------------------------------------------------------------------

@lru_cache(maxsize=64)
def _compile_literal(body: str) -> Optional[Pattern]:
    try:
        return re.compile(body)
    except re.error as exc:
        logger.warning(f"[QUEUE] Invalid regex pattern '/{body}/': {exc} — matching everything")
        return None


def matches_pattern(pattern: str, url: str) -> bool:
    """
    ``/regex/`` literals are searched as regular expressions, anything else
    is a plain substring test.  Both are case-sensitive.  An empty pattern
    matches everything, and so does a regex literal that fails to compile.
    """
    pattern = (pattern or "").strip()
    if not pattern:
        return True
    if len(pattern) >= 2 and pattern.startswith("/") and pattern.endswith("/"):
        rx = _compile_literal(pattern[1:-1])
        return rx is None or rx.search(url) is not None
    return pattern in url


def filter_urls(urls: Iterable[str], include: str = "", exclude: str = "",
                max_urls: Optional[int] = None) -> List[str]:
    exclude = (exclude or "").strip()
    kept = [
        u for u in urls
        if matches_pattern(include, u) and not (exclude and matches_pattern(exclude, u))
    ]
    if max_urls is not None and max_urls >= 0 and len(kept) > max_urls:
        logger.info(f"[QUEUE] Capped {len(kept)} URLs to {max_urls}")
        kept = kept[:max_urls]
    return kept


def prepare_queue(urls: Iterable[str], settings: Optional[MapperSettings] = None,
                  base: str = "", robots: Optional[RobotsHandler] = None) -> List[str]:
    """Full pipeline: normalise → dedupe → include/exclude → robots → cap."""
    settings = settings or MapperSettings()
    urls = list(urls)
    normalised = normalise_urls(urls, base)
    kept = filter_urls(normalised, settings.include_pattern, settings.exclude_pattern)

    if settings.respect_robots:
        robots = robots or RobotsHandler(user_agent=settings.user_agent)
        allowed = [u for u in kept if robots.can_fetch(u)]
        if len(allowed) < len(kept):
            logger.info(f"[QUEUE] robots.txt disallowed {len(kept) - len(allowed)} URLs")
        kept = allowed

    if len(kept) > settings.max_urls:
        logger.info(f"[QUEUE] Capped {len(kept)} URLs to {settings.max_urls}")
        kept = kept[: settings.max_urls]

    logger.info(
        f"[QUEUE] {len(urls)} input → {len(normalised)} unique → {len(kept)} queued"
    )
    return kept
