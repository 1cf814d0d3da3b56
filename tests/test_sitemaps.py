"""Tests for sitemap parsing and discovery."""

import gzip
import aiohttp
import pytest
from aioresponses import aioresponses

from driftnet.models import RobotsTxtRules
from driftnet.sitemaps import fetch_sitemap_urls, is_sitemap_index, parse_sitemap

ORIGIN = "https://example.com"

URLSET = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url>
    <loc> https://example.com/ </loc>
    <lastmod>2024-05-01</lastmod>
    <changefreq>daily</changefreq>
    <priority>0.8</priority>
  </url>
  <url>
    <loc>https://example.com/about</loc>
    <changefreq>sometimes</changefreq>
    <priority>3</priority>
  </url>
  <url><lastmod>2024-01-01</lastmod></url>
</urlset>
"""


def _index(*locs):
    entries = "".join(f"<sitemap><loc>{loc}</loc></sitemap>" for loc in locs)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{entries}</sitemapindex>'
    )


def _urlset(*locs):
    entries = "".join(f"<url><loc>{loc}</loc></url>" for loc in locs)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{entries}</urlset>'
    )


class TestParseSitemap:
    """Test sitemap XML parsing."""

    def test_urlset(self):
        entries = parse_sitemap(URLSET)

        assert [e.loc for e in entries] == ["https://example.com/", "https://example.com/about"]
        assert entries[0].lastmod == "2024-05-01"
        assert entries[0].changefreq == "daily"
        assert entries[0].priority == 0.8

    def test_invalid_optional_fields_are_dropped(self):
        about = parse_sitemap(URLSET)[1]

        assert about.changefreq is None
        assert about.priority is None
        assert about.lastmod is None

    def test_index(self):
        xml = _index("https://example.com/a.xml", "https://example.com/b.xml")

        assert is_sitemap_index(xml)
        assert not is_sitemap_index(URLSET)
        assert [e.loc for e in parse_sitemap(xml)] == [
            "https://example.com/a.xml",
            "https://example.com/b.xml",
        ]

    def test_garbage_yields_nothing(self):
        assert parse_sitemap("this is not xml") == []
        assert parse_sitemap("") == []


@pytest.mark.asyncio
class TestFetchSitemapUrls:
    """Test sitemap discovery over HTTP."""

    async def test_default_location(self):
        with aioresponses() as m:
            m.get(ORIGIN + "/sitemap.xml", body=URLSET)
            async with aiohttp.ClientSession() as session:
                entries = await fetch_sitemap_urls(session, ORIGIN)

        assert len(entries) == 2

    async def test_index_recursion_and_robots_declarations(self):
        robots = RobotsTxtRules(sitemaps=["https://example.com/news.xml"])
        with aioresponses() as m:
            m.get(ORIGIN + "/sitemap.xml", body=_index(ORIGIN + "/pages.xml"))
            m.get(ORIGIN + "/pages.xml", body=_urlset(ORIGIN + "/a", ORIGIN + "/b"))
            m.get(ORIGIN + "/news.xml", body=_urlset(ORIGIN + "/n"))
            async with aiohttp.ClientSession() as session:
                entries = await fetch_sitemap_urls(session, ORIGIN, robots=robots)

        assert [e.loc for e in entries] == [ORIGIN + "/a", ORIGIN + "/b", ORIGIN + "/n"]

    async def test_max_sitemaps_caps_fetches(self):
        nested = [f"{ORIGIN}/part{i}.xml" for i in range(5)]
        with aioresponses() as m:
            m.get(ORIGIN + "/sitemap.xml", body=_index(*nested))
            for i, url in enumerate(nested):
                m.get(url, body=_urlset(f"{ORIGIN}/page{i}"))
            async with aiohttp.ClientSession() as session:
                entries = await fetch_sitemap_urls(session, ORIGIN, max_sitemaps=3)

        # The index itself counts toward the cap
        assert [e.loc for e in entries] == [f"{ORIGIN}/page0", f"{ORIGIN}/page1"]

    async def test_self_referencing_index_is_fetched_once(self):
        with aioresponses() as m:
            m.get(ORIGIN + "/sitemap.xml", body=_index(ORIGIN + "/sitemap.xml"))
            async with aiohttp.ClientSession() as session:
                entries = await fetch_sitemap_urls(session, ORIGIN)

        assert entries == []

    async def test_failures_are_skipped(self):
        robots = RobotsTxtRules(sitemaps=["https://example.com/broken.xml", "https://example.com/ok.xml"])
        with aioresponses() as m:
            m.get(ORIGIN + "/sitemap.xml", status=404)
            m.get(ORIGIN + "/broken.xml", exception=aiohttp.ClientConnectionError("reset"))
            m.get(ORIGIN + "/ok.xml", body=_urlset(ORIGIN + "/ok"))
            async with aiohttp.ClientSession() as session:
                entries = await fetch_sitemap_urls(session, ORIGIN, robots=robots)

        assert [e.loc for e in entries] == [ORIGIN + "/ok"]

    async def test_gzipped_sitemap(self):
        robots = RobotsTxtRules(sitemaps=["https://example.com/pages.xml.gz"])
        body = gzip.compress(_urlset(ORIGIN + "/z").encode())
        with aioresponses() as m:
            m.get(ORIGIN + "/sitemap.xml", status=404)
            m.get(ORIGIN + "/pages.xml.gz", body=body, content_type="application/x-gzip")
            async with aiohttp.ClientSession() as session:
                entries = await fetch_sitemap_urls(session, ORIGIN, robots=robots)

        assert [e.loc for e in entries] == [ORIGIN + "/z"]

    async def test_invalid_utf8_body(self):
        body = _urlset(ORIGIN + "/café").encode("latin-1")
        with aioresponses() as m:
            m.get(ORIGIN + "/sitemap.xml", body=body, content_type="application/xml; charset=utf-8")
            async with aiohttp.ClientSession() as session:
                entries = await fetch_sitemap_urls(session, ORIGIN)

        assert len(entries) == 1
