"""
Basic crawling example.

This script demonstrates the simplest way to use driftnet.
"""

import asyncio
from driftnet import CrawlerEngine, EngineConfig, HtmlRequestHandler
from driftnet.fetcher import Fetcher


async def main():
    """Simple crawl example."""
    print("Starting basic crawl...")

    config = EngineConfig(max_depth=1, max_requests_per_crawl=20)

    async with Fetcher(user_agent=config.user_agent) as fetcher:
        engine = CrawlerEngine(HtmlRequestHandler(fetcher), config=config, http_session=fetcher.session)
        result = await engine.run(["https://example.com"])

    print(f"\nCrawled {result.stats.completed} pages in {result.duration:.1f}s\n")

    for page in engine.get_results():
        content = page.scraped_content
        print(f"{page.url}")
        print(f"   Title: {(content.title if content else None) or 'No title'}")
        print(f"   Text length: {len((content.text if content else None) or '')} chars")
        print(f"   Links found: {len(content.links) if content else 0}")
        print()


if __name__ == "__main__":
    asyncio.run(main())
