#!/usr/bin/env python3
"""
Command-Line Interface for the Page Mapper
==========================================
Map fields once on a sample page, then replay the mapping across a list of
URLs.

    python -m pagemapper map https://shop.example/p/1 --field Title=h1 --field Price=.price
    python -m pagemapper run --sitemap https://shop.example/sitemap.xml --include /p/
    python -m pagemapper export --csv results.csv
    python -m pagemapper show | reset | clear-results

All configuration flows through ``MapperSettings``.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

from dotenv import find_dotenv, load_dotenv

from .boundary import EventBus, NavigationError
from .exporter import export_current_csv, export_json
from .mapper import FieldMapper
from .monitor import RunMonitor
from .orchestrator import RunOrchestrator, RunStartError
from .settings import MapperSettings
from .storage import JsonFileStore, SessionRepository
from .url_queue import load_sitemap, parse_url_list, prepare_queue

logger = logging.getLogger(__name__)

_env_path = Path(__file__).resolve().parent.parent / '.env'


def _load_env() -> None:
    """Load .env (PAGEMAPPER_STATE_DIR etc.) from the working directory, then the checkout."""
    load_dotenv(find_dotenv(usecwd=True))
    if _env_path.exists():
        load_dotenv(_env_path)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _repository(settings: MapperSettings) -> SessionRepository:
    return SessionRepository(JsonFileStore(settings.state_dir))


def _make_surface(settings: MapperSettings, mapper: FieldMapper, bus: Optional[EventBus] = None):
    if settings.surface == "static":
        from .static_surface import StaticSurface
        return StaticSurface(mapper, settings, bus)
    from .browser import BrowserSurface
    return BrowserSurface(mapper, settings, bus)


def _pairs(values: Optional[List[str]], flag: str) -> List[Tuple[str, str]]:
    """Split ``NAME=VALUE`` arguments."""
    out = []
    for raw in values or []:
        name, sep, value = raw.partition("=")
        if not sep or not name.strip() or not value.strip():
            raise SystemExit(f"{flag} expects NAME=VALUE, got {raw!r}")
        out.append((name.strip(), value.strip()))
    return out


def _row_for(mapper: FieldMapper, name: str) -> str:
    """Reuse the row already named *name*, else allocate the next free row id."""
    for spec in mapper.session.fields:
        if spec.field_name == name:
            return spec.row_id
    taken = {spec.row_id for spec in mapper.session.fields}
    n = len(taken) + 1
    while f"row-{n}" in taken:
        n += 1
    return f"row-{n}"


def _collect_urls(args) -> List[str]:
    urls: List[str] = []
    if args.urls:
        text = Path(args.urls).read_text(encoding="utf-8-sig")
        urls.extend(parse_url_list(text))
    if args.sitemap:
        urls.extend(load_sitemap(args.sitemap))
    urls.extend(args.url or [])
    return urls


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def _map(args, settings: MapperSettings) -> int:
    fields = _pairs(args.field, "--field")
    json_paths = _pairs(args.json_path, "--json-path")
    json_keys = _pairs(args.json_keys, "--json-keys")

    mapper = FieldMapper(_repository(settings), settings)
    if args.page_type:
        mapper.set_page_type(args.page_type)

    locked = 0
    async with _make_surface(settings, mapper) as surface:
        snapshot = await surface.attach(args.url)
        for name, css in fields:
            spec = mapper.lock_selector(_row_for(mapper, name), css, snapshot)
            if spec is None:
                continue
            mapper.set_field_name(spec.row_id, name)
            locked += 1
            print(f"  {name:<24} {spec.selector}  →  {spec.content[:60]!r}")
        for name, path in json_paths:
            spec = mapper.lock_structured(_row_for(mapper, name), name, snapshot,
                                          json_path=path.split("."))
            locked += 1
            print(f"  {name:<24} jsonPath {path}  →  {spec.content[:60]!r}")
        for name, keys in json_keys:
            spec = mapper.lock_structured(_row_for(mapper, name), name, snapshot,
                                          json_keys=[k.strip() for k in keys.split(",") if k.strip()])
            locked += 1
            print(f"  {name:<24} jsonKeys {keys}  →  {spec.content[:60]!r}")

    session = mapper.session
    print(f"\nSession {session.id}: {len(session.fields)} fields ({locked} locked now)")
    return 0 if locked else 1


async def _run(args, settings: MapperSettings) -> int:
    queue = prepare_queue(_collect_urls(args), settings)
    if not queue:
        logger.error("No URLs after filtering — nothing to run")
        return 1
    settings.log_summary(queue_size=len(queue))

    repository = _repository(settings)
    mapper = FieldMapper(repository, settings)
    if not mapper.session.fields:
        logger.error("The session has no mapped fields — run 'map' first")
        return 1

    bus = EventBus()
    monitor = RunMonitor(queue_total=len(queue))
    bus.subscribe(monitor.handle)

    async with _make_surface(settings, mapper, bus) as surface:
        runner = RunOrchestrator(surface, settings, surface.surface_id)
        try:
            await runner.run(queue)
        except RunStartError as e:
            logger.error(str(e))
            return 1
        finally:
            if runner.active:
                runner.stop()
                monitor.mark_stopped()

    print("\n" + monitor.format_summary())
    for failure in monitor.failures:
        print(f"  ✗ {failure}")

    if args.csv is not None or args.json is not None:
        _export(repository, settings, args.csv, args.json)
    return 0


def _export(repository: SessionRepository, settings: MapperSettings,
            csv_path: Optional[str], json_path: Optional[str]) -> None:
    exported = []
    if csv_path is not None:
        exported.append(export_current_csv(
            repository, csv_path or None, settings.csv_delimiter, settings.file_prefix,
        ))
    if json_path is not None:
        exported.append(export_json(repository.get(), json_path or None))
    print("\n" + "-" * 40)
    for path in exported:
        print(f"  Exported: {path}")
    print("-" * 40)


def _show(settings: MapperSettings) -> int:
    session = _repository(settings).get()
    print("=" * 65)
    print(f"  Session:   {session.id}")
    print(f"  Page type: {session.page_type.value}")
    print(f"  Page URL:  {session.page_url or '-'}")
    print(f"  Results:   {len(session.results)} rows")
    print("-" * 65)
    for spec in session.fields:
        locator = spec.selector or (
            f"jsonPath {'.'.join(spec.json_path)}" if spec.json_path
            else f"jsonKeys {','.join(spec.json_keys or [])}"
        )
        print(f"  [{spec.row_id}] {spec.field_name or '(unnamed)'}")
        print(f"      locator:  {locator}")
        print(f"      content:  {spec.content[:70]!r}")
        if spec.link:
            print(f"      link:     {spec.link}")
    print("=" * 65)
    return 0


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--state-dir', help='Directory holding the saved session')
    common.add_argument('-v', '--verbose', action='store_true', help='Debug logging')

    browser = argparse.ArgumentParser(add_help=False)
    browser.add_argument('--surface', choices=['browser', 'static'],
                         help='Playwright browser (default) or plain HTTP fetches')
    browser.add_argument('--headed', action='store_true', help='Show the browser window')
    browser.add_argument('--nav-timeout', dest='nav_timeout_s', type=float,
                         help='Navigation timeout in seconds (default: 30)')
    browser.add_argument('--no-structured-data', action='store_true',
                         help='Skip the embedded page-state strategy')
    browser.add_argument('--no-role-match', action='store_true',
                         help='Skip the role/attribute strategy')
    browser.add_argument('--no-text-anchor', action='store_true',
                         help='Skip the text-anchor strategy')

    parser = argparse.ArgumentParser(
        prog='pagemapper',
        description='Map fields on a sample page and replay them across many URLs.',
    )
    sub = parser.add_subparsers(dest='command', required=True)

    p_map = sub.add_parser('map', parents=[common, browser], help='Lock fields on a sample page')
    p_map.add_argument('url', help='Sample page URL')
    p_map.add_argument('--field', action='append', metavar='NAME=CSS',
                       help='Lock NAME on the first element CSS selects (repeatable)')
    p_map.add_argument('--json-path', action='append', metavar='NAME=a.b.c',
                       help='Structured field read from the embedded page state')
    p_map.add_argument('--json-keys', action='append', metavar='NAME=k1,k2',
                       help='Structured presence check over the embedded page state')
    p_map.add_argument('--page-type', choices=['product', 'category'])

    p_run = sub.add_parser('run', parents=[common, browser], help='Replay the mapping over URLs')
    p_run.add_argument('url', nargs='*', help='URLs to visit')
    p_run.add_argument('--urls', help='File with one URL per line (CSV: first column)')
    p_run.add_argument('--sitemap', help='Sitemap URL to read <loc> entries from')
    p_run.add_argument('--include', dest='include_pattern',
                       help='Keep URLs containing this text, or matching /regex/')
    p_run.add_argument('--exclude', dest='exclude_pattern',
                       help='Drop URLs containing this text, or matching /regex/')
    p_run.add_argument('--max-urls', type=int, help='Queue cap (default: 2000)')
    p_run.add_argument('--respect-robots', action='store_true', help='Drop URLs robots.txt disallows')
    p_run.add_argument('--hydration-wait-ms', type=int,
                       help='Delay after load before extracting (default: 1200)')
    p_run.add_argument('--delay-min-ms', dest='inter_url_delay_min_ms', type=int,
                       help='Minimum delay between pages (default: 2000)')
    p_run.add_argument('--delay-max-ms', dest='inter_url_delay_max_ms', type=int,
                       help='Maximum delay between pages (default: 5000)')
    p_run.add_argument('--load-timeout', dest='load_timeout_s', type=float,
                       help='Give up waiting for load after N seconds and extract anyway')
    p_run.add_argument('--csv', nargs='?', const='', help='Export CSV after the run')
    p_run.add_argument('--json', nargs='?', const='', help='Export session JSON after the run')
    p_run.add_argument('--csv-delimiter', help='CSV delimiter (default: ,)')

    sub.add_parser('show', parents=[common], help='Print the saved session')

    p_export = sub.add_parser('export', parents=[common], help='Write results to files')
    p_export.add_argument('--csv', nargs='?', const='', help='CSV output path')
    p_export.add_argument('--json', nargs='?', const='', help='Session JSON output path')
    p_export.add_argument('--csv-delimiter', help='CSV delimiter (default: ,)')

    p_reset = sub.add_parser('reset', parents=[common], help='Start a fresh session')
    p_reset.add_argument('--keep-results', action='store_true', help='Keep accumulated results')

    sub.add_parser('clear-results', parents=[common], help='Drop accumulated results')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    _load_env()
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s | %(levelname)s | %(message)s',
        datefmt='%H:%M:%S'
    )
    settings = MapperSettings.from_cli_args(args)

    try:
        if args.command == 'map':
            return asyncio.run(_map(args, settings))
        if args.command == 'run':
            return asyncio.run(_run(args, settings))
        if args.command == 'show':
            return _show(settings)
        if args.command == 'export':
            csv_path = args.csv
            if csv_path is None and args.json is None:
                csv_path = ''
            _export(_repository(settings), settings, csv_path, args.json)
            return 0
        if args.command == 'reset':
            session = _repository(settings).reset(keep_results=args.keep_results)
            print(f"New session {session.id}")
            return 0
        if args.command == 'clear-results':
            _repository(settings).clear_results()
            return 0
    except NavigationError as e:
        logger.error(f"Could not load page: {e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130
    return 2


if __name__ == '__main__':
    sys.exit(main())
