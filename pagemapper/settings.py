"""
Mapper Settings
===============
Single source of truth for ALL page-mapper defaults and runtime limits.

Every module (selector engine, tracker, orchestrator, queue builder, CLI)
reads from this object.  CLI flags populate it; nothing else carries its
own copy of these numbers.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Canonical defaults — the ONLY place these numbers live
# ---------------------------------------------------------------------------
_DEFAULTS = {
    # Timing
    "hydration_wait_ms": 1200,        # delay after load completes, before extraction
    "inter_url_delay_min_ms": 2000,   # jitter window between pages
    "inter_url_delay_max_ms": 5000,
    "mutation_batch_ms": 90,          # reconcile at most once per window
    "load_timeout_s": None,           # None = wait for load completion indefinitely
    "nav_timeout_s": 30,
    # Selector strategies
    "prefer_structured_data": True,
    "enable_role_match": True,
    "enable_text_anchor": True,
    "min_anchor_size": 8,             # px; smaller text anchors are ignored
    "text_hint_length": 60,
    "max_attr_length": 80,
    "max_path_depth": 6,
    # Runner
    "max_urls": 2000,
    "include_pattern": "",            # substring or regex literal like /jobs/
    "exclude_pattern": "",            # substring or regex literal like /admin/
    "respect_robots": False,
    # Export
    "csv_delimiter": ",",
    "file_prefix": "pagemapper-map",
    # Browser
    "surface": "browser",             # "browser" (Playwright) | "static" (requests)
    "headless": True,
    "user_agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
        "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
    ),
    # Storage
    "state_dir": ".pagemapper",
}


def default_state_dir() -> str:
    """``PAGEMAPPER_STATE_DIR`` when set (read at call time, after ``.env`` is loaded)."""
    return os.getenv("PAGEMAPPER_STATE_DIR") or _DEFAULTS["state_dir"]


@dataclass
class MapperSettings:
    """
    Unified configuration consumed by every page-mapper subsystem.

    Populate via:
      - ``MapperSettings()``                    → all defaults
      - ``MapperSettings(max_urls=50)``         → override one value
      - ``MapperSettings.from_cli_args(ns)``    → from argparse Namespace
    """

    # ---- Timing ----
    hydration_wait_ms: int = _DEFAULTS["hydration_wait_ms"]
    inter_url_delay_min_ms: int = _DEFAULTS["inter_url_delay_min_ms"]
    inter_url_delay_max_ms: int = _DEFAULTS["inter_url_delay_max_ms"]
    mutation_batch_ms: int = _DEFAULTS["mutation_batch_ms"]
    load_timeout_s: Optional[float] = _DEFAULTS["load_timeout_s"]
    nav_timeout_s: float = _DEFAULTS["nav_timeout_s"]

    # ---- Selector strategies ----
    prefer_structured_data: bool = _DEFAULTS["prefer_structured_data"]
    enable_role_match: bool = _DEFAULTS["enable_role_match"]
    enable_text_anchor: bool = _DEFAULTS["enable_text_anchor"]
    min_anchor_size: int = _DEFAULTS["min_anchor_size"]
    text_hint_length: int = _DEFAULTS["text_hint_length"]
    max_attr_length: int = _DEFAULTS["max_attr_length"]
    max_path_depth: int = _DEFAULTS["max_path_depth"]

    # ---- Runner ----
    max_urls: int = _DEFAULTS["max_urls"]
    include_pattern: str = _DEFAULTS["include_pattern"]
    exclude_pattern: str = _DEFAULTS["exclude_pattern"]
    respect_robots: bool = _DEFAULTS["respect_robots"]

    # ---- Export ----
    csv_delimiter: str = _DEFAULTS["csv_delimiter"]
    file_prefix: str = _DEFAULTS["file_prefix"]

    # ---- Browser ----
    surface: str = _DEFAULTS["surface"]
    headless: bool = _DEFAULTS["headless"]
    user_agent: str = _DEFAULTS["user_agent"]

    # ---- Storage ----
    state_dir: str = field(default_factory=default_state_dir)

    def __post_init__(self):
        if self.inter_url_delay_min_ms < 0 or self.inter_url_delay_max_ms < 0:
            logger.warning("[SETTINGS] Negative inter-URL delay clamped to 0")
            self.inter_url_delay_min_ms = max(0, self.inter_url_delay_min_ms)
            self.inter_url_delay_max_ms = max(0, self.inter_url_delay_max_ms)
        if self.inter_url_delay_min_ms > self.inter_url_delay_max_ms:
            logger.warning(
                f"[SETTINGS] Jitter window inverted "
                f"({self.inter_url_delay_min_ms} > {self.inter_url_delay_max_ms}) — swapping"
            )
            self.inter_url_delay_min_ms, self.inter_url_delay_max_ms = (
                self.inter_url_delay_max_ms, self.inter_url_delay_min_ms,
            )
        if self.hydration_wait_ms < 0:
            logger.warning("[SETTINGS] Negative hydration wait clamped to 0")
            self.hydration_wait_ms = 0

    # -----------------------------------------------------------------------
    # Factory helpers
    # -----------------------------------------------------------------------
    @classmethod
    def from_cli_args(cls, args) -> "MapperSettings":
        """Build settings from an argparse Namespace (``__main__.py``).

        Flags the sub-command does not define keep their defaults.
        """
        def pick(name: str):
            value = getattr(args, name, None)
            return _DEFAULTS[name] if value is None else value

        return cls(
            hydration_wait_ms=pick("hydration_wait_ms"),
            inter_url_delay_min_ms=pick("inter_url_delay_min_ms"),
            inter_url_delay_max_ms=pick("inter_url_delay_max_ms"),
            load_timeout_s=getattr(args, "load_timeout_s", None),
            nav_timeout_s=pick("nav_timeout_s"),
            prefer_structured_data=not getattr(args, "no_structured_data", False),
            enable_role_match=not getattr(args, "no_role_match", False),
            enable_text_anchor=not getattr(args, "no_text_anchor", False),
            max_urls=pick("max_urls"),
            include_pattern=pick("include_pattern"),
            exclude_pattern=pick("exclude_pattern"),
            respect_robots=getattr(args, "respect_robots", False),
            csv_delimiter=pick("csv_delimiter"),
            surface=pick("surface"),
            headless=not getattr(args, "headed", False),
            state_dir=getattr(args, "state_dir", None) or default_state_dir(),
        )

    # -----------------------------------------------------------------------
    # Logging helper
    # -----------------------------------------------------------------------
    def log_summary(self, queue_size: int = 0) -> None:
        """Emit a structured summary to the logger."""
        logger.info("=" * 60)
        logger.info("PAGE MAPPER RUN CONFIG")
        logger.info("=" * 60)
        if queue_size:
            logger.info(f"  Queue:            {queue_size} URLs")
        logger.info(f"  Surface:          {self.surface} (headless={self.headless})")
        logger.info(f"  Hydration Wait:   {self.hydration_wait_ms}ms after load")
        logger.info(
            f"  Inter-URL Delay:  {self.inter_url_delay_min_ms}-"
            f"{self.inter_url_delay_max_ms}ms (jittered)"
        )
        if self.load_timeout_s:
            logger.info(f"  Load Timeout:     {self.load_timeout_s}s")
        else:
            logger.info("  Load Timeout:     none")
        logger.info(f"  Max URLs:         {self.max_urls}")
        if self.include_pattern:
            logger.info(f"  Include:          {self.include_pattern}")
        if self.exclude_pattern:
            logger.info(f"  Exclude:          {self.exclude_pattern}")
        if self.respect_robots:
            logger.info("  robots.txt:       respected")
        strategies = ["css", "structural"]
        if self.prefer_structured_data:
            strategies.insert(0, "structured-data")
        if self.enable_role_match:
            strategies.append("role")
        if self.enable_text_anchor:
            strategies.append("text")
        logger.info(f"  Strategies:       {' -> '.join(strategies)}")
        logger.info(f"  State Dir:        {self.state_dir}")
        logger.info("=" * 60)
