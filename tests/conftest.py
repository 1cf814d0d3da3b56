"""Pytest configuration and fixtures."""

import asyncio
import pytest

from driftnet.models import CrawlRequest, CrawlResult, EngineConfig, ScrapedContent


@pytest.fixture
def sample_html():
    """Sample HTML for testing."""
    return """
    <!DOCTYPE html>
    <html>
    <head>
        <title>Test Page</title>
        <meta name="description" content="A test page">
        <meta property="og:title" content="Test OG Title">
    </head>
    <body>
        <h1>Welcome</h1>
        <p>This is a test page with some content.</p>
        <a href="/page1">Page 1</a>
        <a href="/page2">Page 2</a>
        <a href="https://external.com">External</a>
    </body>
    </html>
    """


@pytest.fixture
def sample_url():
    """Sample base URL for testing."""
    return "https://example.com"


class FakeSite:
    """
    Request handler backed by an in-memory link graph.

    ``pages`` maps normalized URLs to the links found on them. ``failures``
    maps a URL to an exception factory raised on every attempt.
    """

    def __init__(self, pages=None, failures=None, delay=0.0):
        self.pages = pages or {}
        self.failures = failures or {}
        self.delay = delay
        self.calls: list[str] = []
        self.running = 0
        self.max_running = 0

    async def handle(self, request: CrawlRequest) -> CrawlResult:
        self.calls.append(request.url)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            failure = self.failures.get(request.url)
            if failure is not None:
                raise failure()
            return CrawlResult(
                url=request.url,
                scraped_content=ScrapedContent(links=self.pages.get(request.url, [])),
            )
        finally:
            self.running -= 1


@pytest.fixture
def make_site():
    """Factory for custom site graphs."""
    return FakeSite


@pytest.fixture
def fake_site():
    """Three-page site: the root links to /a and /b, /a links back to the root."""
    return FakeSite(
        pages={
            "https://example.com/": ["https://example.com/a", "https://example.com/b"],
            "https://example.com/a": ["https://example.com/"],
            "https://example.com/b": [],
        }
    )


@pytest.fixture
def engine_config():
    """Engine config without robots.txt or meaningful rate limiting."""

    def make(**overrides):
        settings = {
            "respect_robots": False,
            "rate_limit_per_domain": 10_000,
            "max_concurrency": 5,
            "scale_interval": 0.05,
        }
        settings.update(overrides)
        return EngineConfig(**settings)

    return make

