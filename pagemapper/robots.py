"""
Robots.txt Gate
Optional filter applied to a prepared run queue.

robots.txt is fetched once per origin.  A missing (404/410) or unreachable
robots.txt allows everything on that origin.
"""

import logging
from typing import Dict, Optional
from urllib.parse import urlparse
from urllib.robotparser import RobotFileParser

import requests

logger = logging.getLogger(__name__)


class RobotsHandler:
    """
    Per-origin robots.txt cache with a single question: may this URL be
    visited by our user agent?
    """

    def __init__(self, user_agent: Optional[str] = None, timeout: int = 10):
        self.user_agent = user_agent or "*"
        self.timeout = timeout
        self._cache: Dict[str, Optional[RobotFileParser]] = {}

    @staticmethod
    def _origin(url: str) -> str:
        parsed = urlparse(url)
        return f"{parsed.scheme}://{parsed.netloc}"

    def _parser_for(self, url: str) -> Optional[RobotFileParser]:
        origin = self._origin(url)
        if origin in self._cache:
            return self._cache[origin]

        robots_url = f"{origin}/robots.txt"
        parser: Optional[RobotFileParser] = None
        try:
            response = requests.get(
                robots_url,
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
                allow_redirects=True,
            )
            if response.status_code == 200:
                parser = RobotFileParser()
                parser.set_url(robots_url)
                parser.parse(response.text.splitlines())
                logger.info(f"[ROBOTS] Parsed robots.txt for {origin}")
            elif response.status_code in (404, 410):
                logger.info(f"[ROBOTS] No robots.txt for {origin} (status: {response.status_code})")
            else:
                logger.warning(f"[ROBOTS] Unexpected status {response.status_code} for {robots_url}")
        except requests.RequestException as e:
            logger.warning(f"[ROBOTS] Failed to fetch robots.txt for {origin}: {e}")

        self._cache[origin] = parser
        return parser

    def can_fetch(self, url: str) -> bool:
        parser = self._parser_for(url)
        if parser is None:
            return True
        allowed = parser.can_fetch(self.user_agent, url)
        if not allowed:
            logger.debug(f"[ROBOTS] Disallowed: {url}")
        return allowed
