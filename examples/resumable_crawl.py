"""
Example: durable queue and state snapshots for large crawls.

The queue journal and the progress snapshot live under STATE_DIR (a local
directory or an s3:// prefix, which needs the ``s3`` extra). Interrupt the
script with Ctrl+C and run it again: already-handled URLs are not fetched
again and in-flight URLs are picked up where they were.
"""

import asyncio
from driftnet import (
    CrawlerEngine,
    EngineConfig,
    ErrorSnapshotter,
    ErrorTracker,
    HtmlRequestHandler,
    PersistentRequestQueue,
    StatePersister,
    StorageFactory,
    create_queue_strategy,
)
from driftnet.fetcher import Fetcher

STATE_DIR = "./driftnet-state"
QUEUE_ID = "example-docs"


async def main():
    config = EngineConfig(queue_id=QUEUE_ID, max_depth=3, max_concurrency=20, persist_interval=10)

    queue = PersistentRequestQueue(
        QUEUE_ID,
        strategy=create_queue_strategy("bfs"),
        storage=StorageFactory.from_uri(StorageFactory.join(STATE_DIR, f"{QUEUE_ID}.queue.jsonl")),
    )
    persister = StatePersister(STATE_DIR, interval=config.persist_interval)

    previous = await persister.restore(QUEUE_ID)
    if previous:
        state = previous["state"]
        print(f"Resuming: {state.completed_requests}/{state.total_requests} done, last {state.last_processed_url}")

    async with Fetcher(user_agent=config.user_agent) as fetcher:
        engine = CrawlerEngine(
            HtmlRequestHandler(fetcher),
            config=config,
            queue=queue,
            state_persister=persister,
            error_tracker=ErrorTracker(snapshotter=ErrorSnapshotter(STATE_DIR)),
            http_session=fetcher.session,
        )
        result = await engine.run(["https://docs.example.com/"])

    print(f"Done: {result.stats.completed} completed, {result.stats.failed} failed")


if __name__ == "__main__":
    asyncio.run(main())
