"""Filtering of discovered links before they re-enter the queue."""

import re
from enum import Enum
from fnmatch import fnmatch
from typing import Callable, Iterable, Mapping, NamedTuple, Optional, Union
import structlog

from driftnet.errors import InvalidURLError
from driftnet.models import RobotsTxtRules
from driftnet.robots import is_allowed
from driftnet.urls import get_hostname, get_origin, get_registered_domain, normalize_url

logger = structlog.get_logger()

Pattern = Union[str, re.Pattern]


class EnqueueStrategy(str, Enum):
    ALL = "all"
    SAME_HOSTNAME = "same-hostname"
    SAME_DOMAIN = "same-domain"
    SAME_ORIGIN = "same-origin"


class SkipReason(str, Enum):
    INVALID_URL = "invalid-url"
    OUT_OF_DOMAIN = "out-of-domain"
    EXCLUDED_PATTERN = "excluded-pattern"
    NOT_INCLUDED = "not-included"
    ROBOTS_DISALLOWED = "robots-disallowed"
    DUPLICATE = "duplicate"
    TRANSFORMED_OUT = "transformed-out"
    MAX_DEPTH = "max-depth"


class SkippedRequest(NamedTuple):
    url: str
    reason: SkipReason


class EnqueuedRequest(NamedTuple):
    url: str
    depth: int = 0
    label: Optional[str] = None


class EnqueueLinksResult(NamedTuple):
    processed_requests: list[EnqueuedRequest]
    skipped_count: int


def match_pattern(url: str, pattern: Pattern) -> bool:
    """
    Match URL against pattern (supports glob, regex and substring).

    Args:
        url: URL to match
        pattern: Compiled regex, glob string or regex-looking string

    Returns:
        True if pattern matches URL
    """
    if isinstance(pattern, re.Pattern):
        return bool(pattern.search(url))

    # Try glob pattern first (simpler and more common)
    if "*" in pattern or "?" in pattern:
        return fnmatch(url.lower(), pattern.lower())

    # Try regex if pattern looks like regex
    if pattern.startswith("^") or pattern.endswith("$") or "[" in pattern:
        try:
            return bool(re.search(pattern, url))
        except re.error:
            logger.warning("invalid_regex_pattern", pattern=pattern)
            return False

    # Fall back to substring match
    return pattern in url


def matches_any(url: str, patterns: Iterable[Pattern]) -> bool:
    return any(match_pattern(url, pattern) for pattern in patterns)


def matches_strategy(url: str, base_url: str, strategy: EnqueueStrategy) -> bool:
    if strategy == EnqueueStrategy.ALL:
        return True
    if strategy == EnqueueStrategy.SAME_ORIGIN:
        return get_origin(url) == get_origin(base_url)
    if strategy == EnqueueStrategy.SAME_HOSTNAME:
        return get_hostname(url) == get_hostname(base_url)
    return get_registered_domain(get_hostname(url)) == get_registered_domain(get_hostname(base_url))


def enqueue_links(
    urls: Iterable[str],
    base_url: str,
    strategy: Union[EnqueueStrategy, str] = EnqueueStrategy.SAME_HOSTNAME,
    include: Iterable[Pattern] = (),
    exclude: Iterable[Pattern] = (),
    robots_txt: Union[RobotsTxtRules, Mapping[str, RobotsTxtRules], None] = None,
    user_agent: str = "*",
    limit: int = 1000,
    transform_request: Optional[Callable[[EnqueuedRequest], Optional[EnqueuedRequest]]] = None,
    on_skipped_request: Optional[Callable[[SkippedRequest], None]] = None,
) -> EnqueueLinksResult:
    """
    Normalize, scope-check and deduplicate discovered links.

    Checks run in order: URL validity, strategy scope, exclude patterns,
    include patterns, robots.txt, duplicates within the batch, then the
    optional transform. Every rejected URL is reported once through
    ``on_skipped_request``.

    Args:
        urls: Raw discovered URLs (relative URLs are resolved against base_url)
        base_url: URL of the page the links came from
        strategy: Scope policy
        include: If non-empty, a URL must match one of these
        exclude: A URL matching any of these is rejected
        robots_txt: Parsed robots.txt, or a mapping of origin to parsed robots.txt
        user_agent: User agent for robots.txt group selection
        limit: Maximum number of raw URLs considered
        transform_request: Hook that may rewrite or drop (return None) a request
        on_skipped_request: Callback receiving each SkippedRequest

    Returns:
        EnqueueLinksResult with normalized in-scope requests
    """
    strategy = EnqueueStrategy(strategy)
    include = list(include)
    exclude = list(exclude)
    processed: list[EnqueuedRequest] = []
    seen: set[str] = set()
    skipped = 0

    def skip(url: str, reason: SkipReason) -> None:
        nonlocal skipped
        skipped += 1
        logger.debug("link_skipped", url=url, reason=reason.value)
        if on_skipped_request is not None:
            on_skipped_request(SkippedRequest(url=url, reason=reason))

    try:
        base = normalize_url(base_url)
    except InvalidURLError:
        for raw_url in urls:
            skip(str(raw_url), SkipReason.INVALID_URL)
        return EnqueueLinksResult(processed_requests=[], skipped_count=skipped)

    for raw_url in list(urls)[:limit]:
        try:
            url = normalize_url(raw_url, base=base)
        except InvalidURLError:
            skip(str(raw_url), SkipReason.INVALID_URL)
            continue

        if not matches_strategy(url, base, strategy):
            skip(url, SkipReason.OUT_OF_DOMAIN)
            continue

        if exclude and matches_any(url, exclude):
            skip(url, SkipReason.EXCLUDED_PATTERN)
            continue

        if include and not matches_any(url, include):
            skip(url, SkipReason.NOT_INCLUDED)
            continue

        rules = robots_txt.get(get_origin(url)) if isinstance(robots_txt, Mapping) else robots_txt
        if rules is not None and not is_allowed(rules, url, user_agent):
            skip(url, SkipReason.ROBOTS_DISALLOWED)
            continue

        if url in seen:
            skip(url, SkipReason.DUPLICATE)
            continue
        seen.add(url)

        request: Optional[EnqueuedRequest] = EnqueuedRequest(url=url)
        if transform_request is not None:
            request = transform_request(request)
            if request is None:
                skip(url, SkipReason.TRANSFORMED_OUT)
                continue

        processed.append(request)

    return EnqueueLinksResult(processed_requests=processed, skipped_count=skipped)
