"""Sitemap discovery and parsing."""

import asyncio
import gzip
from typing import Optional
import aiohttp
from bs4 import BeautifulSoup
import structlog

from driftnet.models import RobotsTxtRules, SitemapEntry

logger = structlog.get_logger()

CHANGE_FREQUENCIES = ("always", "hourly", "daily", "weekly", "monthly", "yearly", "never")


def _text(element, name: str) -> Optional[str]:
    child = element.find(name)
    if child is None:
        return None
    return child.get_text(strip=True) or None


def _parse_priority(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        priority = float(value)
    except ValueError:
        return None
    return priority if 0 <= priority <= 1 else None


def _read(xml: str) -> tuple[bool, list[SitemapEntry]]:
    soup = BeautifulSoup(xml, "xml")

    nested = soup.find_all("sitemap")
    if nested:
        locs = (_text(element, "loc") for element in nested)
        return True, [SitemapEntry(loc=loc) for loc in locs if loc]

    entries = []
    for element in soup.find_all("url"):
        loc = _text(element, "loc")
        if not loc:
            continue
        changefreq = _text(element, "changefreq")
        entries.append(
            SitemapEntry(
                loc=loc,
                lastmod=_text(element, "lastmod"),
                changefreq=changefreq if changefreq in CHANGE_FREQUENCIES else None,
                priority=_parse_priority(_text(element, "priority")),
            )
        )
    return False, entries


def parse_sitemap(xml: str) -> list[SitemapEntry]:
    """
    Parse a ``<urlset>`` sitemap or a ``<sitemapindex>``.

    For an index the entries are the nested sitemap locations. Entries
    without a ``<loc>`` are dropped; an invalid ``changefreq`` or a
    ``priority`` outside [0, 1] is left unset.

    Args:
        xml: Sitemap document

    Returns:
        Entries in document order
    """
    return _read(xml)[1]


def is_sitemap_index(xml: str) -> bool:
    return _read(xml)[0]


async def _fetch_document(session: aiohttp.ClientSession, url: str, timeout: float) -> Optional[str]:
    try:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
            if response.status >= 400:
                logger.debug("sitemap_unavailable", url=url, status=response.status)
                return None
            if url.endswith(".gz"):
                body = await response.read()
                try:
                    return gzip.decompress(body).decode("utf-8", errors="replace")
                except (OSError, EOFError) as e:
                    logger.warning("sitemap_decompress_failed", url=url, error=str(e))
                    return None
            return await response.text(errors="replace")
    except asyncio.TimeoutError:
        logger.debug("sitemap_unavailable", url=url, reason="timeout")
    except aiohttp.ClientError as e:
        logger.debug("sitemap_unavailable", url=url, reason=type(e).__name__, error=str(e))
    return None


async def fetch_sitemap_urls(
    session: aiohttp.ClientSession,
    origin: str,
    robots: Optional[RobotsTxtRules] = None,
    max_sitemaps: int = 10,
    timeout: float = 10.0,
) -> list[SitemapEntry]:
    """
    Collect page entries from ``{origin}/sitemap.xml`` and the ``Sitemap:``
    lines of robots.txt.

    Sitemap indexes are followed recursively. At most ``max_sitemaps``
    documents are fetched, and each document at most once. Failures are
    logged and skipped.

    Args:
        session: aiohttp session to use
        origin: Scheme + host, e.g. ``https://example.com``
        robots: Parsed robots.txt whose sitemap declarations are also read
        max_sitemaps: Cap on fetched sitemap documents
        timeout: Per-document timeout in seconds

    Returns:
        Page entries in discovery order
    """
    candidates = [origin.rstrip("/") + "/sitemap.xml"]
    if robots is not None:
        candidates.extend(robots.sitemaps)

    entries: list[SitemapEntry] = []
    visited: set[str] = set()
    pending = list(dict.fromkeys(candidates))
    while pending and len(visited) < max_sitemaps:
        url = pending.pop(0)
        if url in visited:
            continue
        visited.add(url)

        xml = await _fetch_document(session, url, timeout)
        if xml is None:
            continue
        is_index, found = _read(xml)
        if is_index:
            # Nested sitemaps are fetched before the remaining top-level ones
            pending[:0] = [entry.loc for entry in found]
        else:
            entries.extend(found)

    logger.info("sitemaps_loaded", origin=origin, sitemaps=len(visited), urls=len(entries))
    return entries
