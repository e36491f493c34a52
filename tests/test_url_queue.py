"""
Tests for url_queue.py: sources, normalisation, include/exclude patterns,
robots gate, and the queue cap.
"""

import pytest
import requests

from pagemapper.robots import RobotsHandler
from pagemapper.settings import MapperSettings
from pagemapper.url_queue import (
    filter_urls,
    matches_pattern,
    normalise_url,
    normalise_urls,
    parse_sitemap,
    parse_url_list,
    prepare_queue,
)


# ====================================================================
# 1. Sources
# ====================================================================

class TestSources:
    def test_plain_list(self):
        text = "https://a.example/1\n\n  https://a.example/2  \n"
        assert parse_url_list(text) == ["https://a.example/1", "https://a.example/2"]

    def test_csv_first_column_and_bom(self):
        """Spreadsheet exports: BOM stripped, first cell kept, quotes removed."""
        text = '\ufeff"https://a.example/1",Kettle,19.99\r\nhttps://a.example/2,Pot\r\n'
        assert parse_url_list(text) == ["https://a.example/1", "https://a.example/2"]

    def test_sitemap_locs(self):
        xml = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>https://a.example/p/1</loc></url>
  <url><loc> https://a.example/p/2 </loc><lastmod>2025-01-01</lastmod></url>
  <url><loc></loc></url>
</urlset>"""
        assert parse_sitemap(xml) == ["https://a.example/p/1", "https://a.example/p/2"]


# ====================================================================
# 2. Normalisation
# ====================================================================

class TestNormalise:
    def test_fragment_removed(self):
        assert normalise_url("https://a.example/p#reviews") == "https://a.example/p"

    def test_relative_against_base(self):
        assert normalise_url("/p/2", "https://a.example/p/1") == "https://a.example/p/2"

    @pytest.mark.parametrize("url", [
        "", "   ", "mailto:x@a.example", "javascript:void(0)", "ftp://a.example/f", "/relative",
    ])
    def test_rejected(self, url):
        assert normalise_url(url) is None

    def test_dedupe_keeps_first_order(self):
        urls = ["https://a.example/2", "https://a.example/1", "https://a.example/2#x"]
        assert normalise_urls(urls) == ["https://a.example/2", "https://a.example/1"]


# ====================================================================
# 3. Patterns
# ====================================================================

URLS = [
    "https://a.example/jobs/1",
    "https://a.example/blog/jobs-news",
    "https://a.example/admin/jobs",
    "https://a.example/shop/2",
]


class TestPatterns:
    """Substring by default, /regex/ literals as regular expressions."""

    def test_empty_matches_all(self):
        assert matches_pattern("", "anything")

    def test_substring(self):
        assert filter_urls(URLS, include="jobs") == URLS[:3]

    def test_regex_literal(self):
        assert filter_urls(URLS, include=r"/\/jobs\/\d+$/") == ["https://a.example/jobs/1"]

    def test_slashes_are_a_regex_literal(self):
        """'/jobs/' is the regex 'jobs', not the substring '/jobs/'."""
        assert filter_urls(URLS, include="/jobs/") == URLS[:3]

    def test_case_sensitive(self):
        assert filter_urls(URLS, include="JOBS") == []

    def test_exclude(self):
        assert filter_urls(URLS, include="jobs", exclude="admin") == URLS[:2]

    def test_malformed_include_matches_everything(self):
        assert filter_urls(URLS, include="/[unclosed/") == URLS

    def test_malformed_exclude_excludes_everything(self):
        assert filter_urls(URLS, exclude="/(oops/") == []

    def test_cap(self):
        assert filter_urls(URLS, max_urls=2) == URLS[:2]


# ====================================================================
# 4. Full pipeline
# ====================================================================

class FakeRobots:
    def __init__(self, disallowed):
        self.disallowed = set(disallowed)

    def can_fetch(self, url):
        return url not in self.disallowed


class TestPrepareQueue:
    def test_pipeline(self):
        raw = URLS + ["https://a.example/jobs/1#top", "not a url"]
        settings = MapperSettings(include_pattern="jobs", exclude_pattern="admin")
        assert prepare_queue(raw, settings) == URLS[:2]

    def test_cap_after_filter(self):
        settings = MapperSettings(include_pattern="jobs", max_urls=1)
        assert prepare_queue(URLS, settings) == ["https://a.example/jobs/1"]

    def test_robots_gate(self):
        settings = MapperSettings(respect_robots=True)
        robots = FakeRobots({"https://a.example/shop/2"})
        assert prepare_queue(URLS, settings, robots=robots) == URLS[:3]

    def test_robots_ignored_by_default(self):
        robots = FakeRobots(URLS)
        assert prepare_queue(URLS, MapperSettings(), robots=robots) == URLS

    def test_everything_filtered(self):
        assert prepare_queue(URLS, MapperSettings(include_pattern="nothing-here")) == []


# ====================================================================
# 5. robots.txt
# ====================================================================

class _Resp:
    def __init__(self, status_code, text=""):
        self.status_code = status_code
        self.text = text


class TestRobotsHandler:
    """One fetch per origin; missing or unreachable robots.txt allows all."""

    def test_disallow_rule(self, monkeypatch):
        calls = []

        def fake_get(url, **kwargs):
            calls.append(url)
            return _Resp(200, "User-agent: *\nDisallow: /admin/\n")

        monkeypatch.setattr(requests, "get", fake_get)
        robots = RobotsHandler(user_agent="pagemapper-test")
        assert robots.can_fetch("https://a.example/jobs/1") is True
        assert robots.can_fetch("https://a.example/admin/jobs") is False
        assert calls == ["https://a.example/robots.txt"]

    def test_missing_allows(self, monkeypatch):
        monkeypatch.setattr(requests, "get", lambda url, **kw: _Resp(404))
        assert RobotsHandler().can_fetch("https://a.example/admin/") is True

    def test_unreachable_allows(self, monkeypatch):
        def fake_get(url, **kwargs):
            raise requests.ConnectionError("refused")

        monkeypatch.setattr(requests, "get", fake_get)
        assert RobotsHandler().can_fetch("https://a.example/admin/") is True
