"""robots.txt parsing and allow/deny checks."""

import asyncio
import re
from functools import lru_cache
from typing import Optional
from urllib.parse import urlsplit
import aiohttp
import structlog

from driftnet.models import RobotsGroup, RobotsTxtRules

logger = structlog.get_logger()


def parse_robots_txt(content: str) -> RobotsTxtRules:
    """
    Parse robots.txt content into per-user-agent groups.

    Consecutive ``User-agent`` lines share one group. ``Allow``,
    ``Disallow``, ``Crawl-delay`` and ``Sitemap`` are recognised; other
    directives are ignored.

    Args:
        content: Raw robots.txt text

    Returns:
        Parsed rules
    """
    groups: list[RobotsGroup] = []
    sitemaps: list[str] = []
    current: Optional[RobotsGroup] = None
    collecting_agents = False

    for raw_line in content.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue

        directive, value = line.split(":", 1)
        directive = directive.strip().lower()
        value = value.strip()

        if directive == "user-agent":
            if current is None or not collecting_agents:
                current = RobotsGroup()
                groups.append(current)
            current.user_agents.append(value.lower())
            collecting_agents = True
            continue

        if directive == "sitemap":
            if value:
                sitemaps.append(value)
            continue

        collecting_agents = False
        if current is None:
            continue

        if directive == "allow":
            if value:
                current.allow.append(value)
        elif directive == "disallow":
            # Empty Disallow means allow everything
            if value:
                current.disallow.append(value)
        elif directive == "crawl-delay":
            try:
                delay = float(value)
            except ValueError:
                continue
            if delay >= 0:
                current.crawl_delay = delay

    return RobotsTxtRules(groups=groups, sitemaps=sitemaps)


def _select_group(rules: RobotsTxtRules, user_agent: str) -> Optional[RobotsGroup]:
    """Most specific group: longest agent token found in the UA; ``*`` as fallback."""
    ua = user_agent.lower()
    best: Optional[RobotsGroup] = None
    best_len = -1
    fallback: Optional[RobotsGroup] = None

    for group in rules.groups:
        for agent in group.user_agents:
            if agent == "*":
                if fallback is None:
                    fallback = group
            elif agent in ua and len(agent) > best_len:
                best, best_len = group, len(agent)

    return best or fallback


@lru_cache(maxsize=1024)
def _compile(pattern: str) -> re.Pattern:
    anchored = pattern.endswith("$")
    body = pattern[:-1] if anchored else pattern
    regex = ".*".join(re.escape(part) for part in body.split("*"))
    return re.compile(regex + ("$" if anchored else ""))


def _longest_match(path: str, patterns: list[str]) -> int:
    longest = -1
    for pattern in patterns:
        if _compile(pattern).match(path) and len(pattern) > longest:
            longest = len(pattern)
    return longest


def is_allowed(
    rules: Optional[RobotsTxtRules],
    path: str,
    user_agent: str = "*",
) -> bool:
    """
    Check whether ``path`` may be fetched by ``user_agent``.

    Missing rules (no robots.txt) allow everything. Within the selected
    group the longest matching rule wins and ``Allow`` wins ties.

    Args:
        rules: Parsed robots.txt, or None if unavailable
        path: URL path (full URLs are accepted too)
        user_agent: Crawler user agent

    Returns:
        True if allowed
    """
    if rules is None:
        return True

    if "://" in path:
        parts = urlsplit(path)
        path = parts.path or "/"
        if parts.query:
            path = f"{path}?{parts.query}"
    elif not path.startswith("/"):
        path = "/" + path

    group = _select_group(rules, user_agent)
    if group is None:
        return True

    disallow = _longest_match(path, group.disallow)
    if disallow < 0:
        return True
    return _longest_match(path, group.allow) >= disallow


def get_crawl_delay(rules: Optional[RobotsTxtRules], user_agent: str = "*") -> Optional[float]:
    if rules is None:
        return None
    group = _select_group(rules, user_agent)
    return group.crawl_delay if group else None


async def fetch_robots_txt(
    session: aiohttp.ClientSession,
    origin: str,
    timeout: float = 5.0,
) -> Optional[RobotsTxtRules]:
    """
    Fetch and parse ``{origin}/robots.txt``.

    Absence or any failure is non-fatal and returns None (allow all); the
    reason is logged so a missing file can be told apart from a broken fetch.

    Args:
        session: aiohttp session to use
        origin: Scheme + host, e.g. ``https://example.com``
        timeout: Total timeout in seconds

    Returns:
        Parsed rules or None
    """
    url = origin.rstrip("/") + "/robots.txt"
    try:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
            if response.status >= 400:
                logger.debug("robots_txt_unavailable", url=url, status=response.status)
                return None
            text = await response.text(errors="replace")
    except asyncio.TimeoutError:
        logger.debug("robots_txt_unavailable", url=url, reason="timeout")
        return None
    except aiohttp.ClientError as e:
        logger.debug("robots_txt_unavailable", url=url, reason=type(e).__name__, error=str(e))
        return None

    rules = parse_robots_txt(text)
    logger.info("robots_txt_loaded", url=url, groups=len(rules.groups), sitemaps=len(rules.sitemaps))
    return rules
