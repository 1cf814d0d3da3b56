"""
Example: plugging your own request handler into the engine.

The engine only needs an async callable that turns a CrawlRequest into a
CrawlResult. Here the handler fetches with aiohttp directly and pulls
product links out of a JSON API.
"""

import asyncio
import aiohttp
from driftnet import CrawlerEngine, CrawlerEvent, EngineConfig, NonRetryableError, TransientFetchError
from driftnet.models import CrawlRequest, CrawlResult, ScrapedContent


async def main():
    config = EngineConfig(
        max_concurrency=5,
        rate_limit_per_domain=30,
        enqueue_strategy="same-origin",
        include=["*/api/products*"],
        respect_robots=False,
    )

    async with aiohttp.ClientSession() as session:

        async def handle(request: CrawlRequest) -> CrawlResult:
            async with session.get(request.url, headers=request.headers) as response:
                if response.status >= 500:
                    raise TransientFetchError(f"HTTP {response.status}", status=response.status)
                if response.status >= 400:
                    raise NonRetryableError(f"HTTP {response.status}", status=response.status)
                data = await response.json()

            links = [item["url"] for item in data.get("items", [])]
            if data.get("next"):
                links.append(data["next"])
            return CrawlResult(
                url=request.url,
                status_code=response.status,
                content_type="application/json",
                scraped_content=ScrapedContent(links=links),
                payload={"count": len(data.get("items", []))},
            )

        engine = CrawlerEngine(handle, config=config)
        engine.on(CrawlerEvent.REQUEST_FAILED, lambda request, error: print(f"failed: {request.url} ({error})"))
        engine.on(CrawlerEvent.REQUEST_RETRIED, lambda request, error: print(f"retrying: {request.url}"))

        result = await engine.run(["https://shop.example.com/api/products?page=1"])

    total = sum(r.payload.get("count", 0) for r in engine.get_results())
    print(f"Collected {total} products from {result.stats.completed} pages")
    for group in result.error_groups:
        print(f"  {group['count']}x {group['error_type']}: {group['message']}")


if __name__ == "__main__":
    asyncio.run(main())
