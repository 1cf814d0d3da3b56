"""Tests for the persistent request queue."""

import json
import random
import pytest

from driftnet.errors import InvalidURLError, QueuePersistenceError, QueueStateError
from driftnet.models import CrawlRequest
from driftnet.queue import PersistentRequestQueue
from driftnet.storage import MemoryStorage
from driftnet.strategies import LifoStrategy


class FailingStorage(MemoryStorage):
    """Memory storage whose appends fail once ``broken`` is set."""

    def __init__(self):
        super().__init__()
        self.broken = False

    async def write(self, data: str) -> None:
        if self.broken:
            raise OSError("disk full")
        await super().write(data)


def _assert_conserved(stats):
    assert stats.total == stats.pending + stats.in_flight + stats.completed + stats.failed


@pytest.mark.asyncio
class TestQueueBasics:
    """Test add / fetch / mark transitions."""

    async def test_add_and_fetch(self):
        queue = PersistentRequestQueue("q")
        await queue.add_requests(["https://example.com/a", "https://example.com/b"])

        request = await queue.fetch_next_request()

        assert request.url == "https://example.com/a"
        assert request.unique_key == "https://example.com/a"
        assert request.retry_count == 0
        assert queue.in_flight_count == 1

    async def test_deduplication(self):
        """Equivalent URLs map to one key; re-adding is silently skipped."""
        queue = PersistentRequestQueue("q")

        infos = await queue.add_requests(
            ["https://example.com", "https://example.com/", "https://EXAMPLE.com/#frag"]
        )

        assert [info.was_already_present for info in infos] == [False, True, True]
        stats = await queue.get_stats()
        assert stats.total == 1

    async def test_completed_key_never_readmitted(self):
        queue = PersistentRequestQueue("q")
        await queue.add_request("https://example.com/a")
        request = await queue.fetch_next_request()
        await queue.mark_completed(request.unique_key)

        info = await queue.add_request("https://example.com/a")

        assert info.was_already_present
        assert await queue.is_empty()

    async def test_accepts_dicts_and_requests(self):
        queue = PersistentRequestQueue("q")
        await queue.add_requests(
            [
                {"url": "https://example.com/a", "depth": 2, "label": "detail"},
                CrawlRequest(url="https://example.com/b", unique_key="ignored"),
            ]
        )

        first = await queue.fetch_next_request()
        second = await queue.fetch_next_request()

        assert first.depth == 2
        assert first.label == "detail"
        assert second.unique_key == "https://example.com/b"

    async def test_fetch_empty_returns_none(self):
        queue = PersistentRequestQueue("q")
        assert await queue.fetch_next_request() is None
        assert await queue.is_empty()

    async def test_strategy_controls_order(self):
        queue = PersistentRequestQueue("q", strategy=LifoStrategy())
        await queue.add_requests(["https://example.com/a", "https://example.com/b"])

        request = await queue.fetch_next_request()

        assert request.url == "https://example.com/b"

    async def test_invalid_url_adds_nothing(self):
        queue = PersistentRequestQueue("q")

        with pytest.raises(InvalidURLError):
            await queue.add_requests(["https://example.com/ok", "mailto:someone@example.com"])

        stats = await queue.get_stats()
        assert stats.total == 0

    async def test_mark_unknown_key_raises(self):
        queue = PersistentRequestQueue("q")
        await queue.add_request("https://example.com/a")

        with pytest.raises(QueueStateError):
            await queue.mark_completed("https://example.com/a")
        with pytest.raises(QueueStateError):
            await queue.mark_failed("https://example.com/missing")


@pytest.mark.asyncio
class TestQueueRetries:
    """Test retry admission on failure."""

    async def test_failed_request_is_readmitted(self):
        queue = PersistentRequestQueue("q", max_retries=2)
        await queue.add_request("https://example.com/a")
        request = await queue.fetch_next_request()

        will_retry = await queue.mark_failed(request.unique_key)

        assert will_retry is True
        retried = await queue.fetch_next_request()
        assert retried.unique_key == request.unique_key
        assert retried.retry_count == 1

    async def test_at_most_max_retries_plus_one_attempts(self):
        queue = PersistentRequestQueue("q", max_retries=3)
        await queue.add_request("https://example.com/a")

        attempts = 0
        while True:
            request = await queue.fetch_next_request()
            if request is None:
                break
            attempts += 1
            await queue.mark_failed(request.unique_key)

        assert attempts == 4
        stats = await queue.get_stats()
        assert stats.failed == 1
        assert stats.pending == 0

    async def test_permanent_failure_is_not_retried(self):
        queue = PersistentRequestQueue("q")
        await queue.add_request("https://example.com/a")
        request = await queue.fetch_next_request()

        will_retry = await queue.mark_failed(request.unique_key, permanent=True)

        assert will_retry is False
        assert (await queue.get_stats()).failed == 1

    async def test_no_retry_flag(self):
        queue = PersistentRequestQueue("q")
        await queue.add_request({"url": "https://example.com/a", "no_retry": True})
        request = await queue.fetch_next_request()

        assert await queue.mark_failed(request.unique_key) is False

    async def test_conservation_under_random_operations(self):
        rng = random.Random(7)
        queue = PersistentRequestQueue("q", max_retries=2)
        in_flight: list[str] = []

        for step in range(300):
            op = rng.random()
            if op < 0.35:
                await queue.add_requests(
                    [f"https://example.com/{rng.randint(0, 40)}" for _ in range(rng.randint(1, 3))]
                )
            elif op < 0.65:
                request = await queue.fetch_next_request()
                if request is not None:
                    in_flight.append(request.unique_key)
            elif in_flight:
                key = in_flight.pop(rng.randrange(len(in_flight)))
                if op < 0.85:
                    await queue.mark_completed(key)
                else:
                    await queue.mark_failed(key)

            stats = await queue.get_stats()
            _assert_conserved(stats)
            assert stats.in_flight == len(in_flight)


@pytest.mark.asyncio
class TestQueueJournal:
    """Test durability through the storage journal."""

    async def test_replay_restores_state(self):
        storage = MemoryStorage()
        queue = PersistentRequestQueue("q", storage=storage, flush_interval=1)
        await queue.open()
        await queue.add_requests(["https://example.com/a", "https://example.com/b", "https://example.com/c"])
        done = await queue.fetch_next_request()
        await queue.mark_completed(done.unique_key)
        await queue.fetch_next_request()  # left in flight

        restored = PersistentRequestQueue("q", storage=storage)
        stats = await restored.open()

        assert stats.completed == 1
        assert stats.pending == 2
        assert stats.in_flight == 0
        _assert_conserved(stats)

        info = await restored.add_request("https://example.com/a")
        assert info.was_already_present

    async def test_replay_keeps_retry_count(self):
        storage = MemoryStorage()
        queue = PersistentRequestQueue("q", storage=storage)
        await queue.add_request("https://example.com/a")
        request = await queue.fetch_next_request()
        await queue.mark_failed(request.unique_key)

        restored = PersistentRequestQueue("q", storage=storage)
        await restored.open()
        request = await restored.fetch_next_request()

        assert request.retry_count == 1

    async def test_corrupt_lines_skipped(self):
        storage = MemoryStorage()
        await storage.write(json.dumps({"op": "add", "request": {"url": "https://example.com/a", "unique_key": "https://example.com/a"}}) + "\n")
        await storage.write("{not json\n")
        await storage.write(json.dumps({"op": "bogus", "key": "x"}) + "\n")
        await storage.write(json.dumps({"op": "add", "request": {"url": "https://example.com/b", "unique_key": "https://example.com/b"}}) + "\n")

        queue = PersistentRequestQueue("q", storage=storage)
        stats = await queue.open()

        assert stats.pending == 2

    async def test_journal_failure_raises_and_leaves_state(self):
        storage = FailingStorage()
        queue = PersistentRequestQueue("q", storage=storage)
        await queue.add_request("https://example.com/a")
        storage.broken = True

        with pytest.raises(QueuePersistenceError):
            await queue.add_request("https://example.com/b")
        with pytest.raises(QueuePersistenceError):
            await queue.fetch_next_request()

        stats = await queue.get_stats()
        assert stats.total == 1
        assert stats.pending == 1


@pytest.mark.asyncio
class TestQueueReclaim:
    """Test handing in-flight requests back unprocessed."""

    async def test_reclaimed_request_is_fetched_next(self):
        queue = PersistentRequestQueue("q")
        await queue.add_requests(["https://example.com/a", "https://example.com/b"])

        first = await queue.fetch_next_request()
        await queue.reclaim(first.unique_key)
        again = await queue.fetch_next_request()

        assert again.unique_key == first.unique_key
        assert again.retry_count == 0
        assert queue.in_flight_count == 1

    async def test_reclaim_requires_in_flight(self):
        queue = PersistentRequestQueue("q")
        await queue.add_request("https://example.com/a")

        with pytest.raises(QueueStateError):
            await queue.reclaim("https://example.com/a")

    async def test_reclaim_survives_replay(self):
        storage = MemoryStorage()
        queue = PersistentRequestQueue("q", storage=storage)
        await queue.add_requests(["https://example.com/a", "https://example.com/b"])
        first = await queue.fetch_next_request()
        await queue.reclaim(first.unique_key)

        restored = PersistentRequestQueue("q", storage=storage)
        stats = await restored.open()

        assert stats.pending == 2
        assert stats.in_flight == 0
        assert (await restored.fetch_next_request()).unique_key == first.unique_key

    async def test_pending_hosts(self):
        queue = PersistentRequestQueue("q")
        await queue.add_requests(["https://a.com/1", "https://a.com/2", "https://b.com/1"])

        assert queue.has_pending_outside({"a.com"})
        await queue.fetch_next_request()
        await queue.fetch_next_request()
        b = await queue.fetch_next_request()

        assert b.url == "https://b.com/1"
        assert not queue.has_pending_outside({"a.com"})
        assert not queue.has_pending_outside(set())

    async def test_fifo_order_holds_across_many_fetches(self):
        queue = PersistentRequestQueue("q")
        urls = [f"https://example.com/p{i}" for i in range(2000)]
        await queue.add_requests(urls)

        fetched = []
        while (request := await queue.fetch_next_request()) is not None:
            fetched.append(request.url)
            await queue.mark_completed(request.unique_key)

        assert fetched == urls


@pytest.mark.asyncio
class TestQueueCompaction:
    """Test journal rewriting on close."""

    async def _journal_ops(self, storage):
        text = await storage.read_text()
        return [json.loads(line)["op"] for line in text.splitlines()]

    async def test_close_compacts_journal(self):
        storage = MemoryStorage()
        queue = PersistentRequestQueue("q", storage=storage)
        await queue.add_requests([f"https://example.com/{i}" for i in range(4)])
        done = await queue.fetch_next_request()
        await queue.mark_completed(done.unique_key)
        failing = await queue.fetch_next_request()
        await queue.mark_failed(failing.unique_key)  # retried
        held = await queue.fetch_next_request()
        await queue.close()

        ops = await self._journal_ops(storage)
        assert ops.count("complete") == 1
        assert ops.count("add") == 3
        assert ops.count("fetch") == 1
        assert "retry" not in ops

        restored = PersistentRequestQueue("q", storage=storage)
        stats = await restored.open()
        assert stats.completed == 1
        assert stats.pending == 3
        pending = {r["unique_key"]: r for r in (await restored.snapshot())["pending"]}
        assert pending[failing.unique_key]["retry_count"] == 1
        assert held.unique_key in pending

    async def test_compaction_can_be_disabled(self):
        storage = MemoryStorage()
        queue = PersistentRequestQueue("q", storage=storage, compact_on_close=False)
        await queue.add_request("https://example.com/a")
        request = await queue.fetch_next_request()
        await queue.mark_completed(request.unique_key)
        await queue.close()

        assert await self._journal_ops(storage) == ["add", "fetch", "complete"]

    async def test_compacted_journal_keeps_failed_keys(self):
        storage = MemoryStorage()
        queue = PersistentRequestQueue("q", storage=storage, max_retries=0)
        await queue.add_request("https://example.com/a")
        request = await queue.fetch_next_request()
        await queue.mark_failed(request.unique_key)
        await queue.close()

        assert await self._journal_ops(storage) == ["fail"]
        restored = PersistentRequestQueue("q", storage=storage)
        stats = await restored.open()
        assert stats.failed == 1
        assert (await restored.add_request("https://example.com/a")).was_already_present
