"""Durable, deduplicated request queue."""

import asyncio
import json
from collections import Counter, OrderedDict
from typing import Any, Collection, Iterable, Mapping, Optional, Union
import structlog

from driftnet.errors import QueuePersistenceError, QueueStateError
from driftnet.models import CrawlRequest, QueueOperationInfo, QueueStats
from driftnet.storage import CheckpointStorage
from driftnet.strategies import FifoStrategy, QueueStrategy
from driftnet.urls import get_hostname, normalize_url

logger = structlog.get_logger()

RequestInput = Union[str, CrawlRequest, Mapping[str, Any]]


class PersistentRequestQueue:
    """
    Request queue with pending / in-flight / completed / failed bookkeeping.

    Every state transition is appended to a JSONL journal in ``storage``;
    ``open()`` replays it so the queue survives process restarts. A key is
    in exactly one of the four sets, and a key that was ever added is never
    added again.
    """

    def __init__(
        self,
        queue_id: str,
        strategy: Optional[QueueStrategy] = None,
        storage: Optional[CheckpointStorage] = None,
        max_retries: int = 3,
        flush_interval: int = 10,
        compact_on_close: bool = True,
    ):
        """
        Initialize request queue.

        Args:
            queue_id: Durable identity of this queue
            strategy: Ordering policy (FIFO if None)
            storage: Journal backend; queue is memory-only if None
            max_retries: Default retry budget for new requests
            flush_interval: Number of journal records between flushes
            compact_on_close: Rewrite the journal as one record per key on close
        """
        self.queue_id = queue_id
        self.strategy = strategy or FifoStrategy()
        self.storage = storage
        self.max_retries = max_retries
        self.flush_interval = max(1, flush_interval)
        self.compact_on_close = compact_on_close

        self._pending: OrderedDict[str, CrawlRequest] = OrderedDict()
        self._pending_hosts: Counter = Counter()
        self._in_flight: dict[str, CrawlRequest] = {}
        self._completed: set[str] = set()
        self._failed: set[str] = set()
        self._lock = asyncio.Lock()
        self._unflushed = 0
        self._journal_records = 0
        self._opened = False

    def _was_seen(self, key: str) -> bool:
        return (
            key in self._pending
            or key in self._in_flight
            or key in self._completed
            or key in self._failed
        )

    def _admit(self, request: CrawlRequest, front: bool = False) -> None:
        key = request.unique_key
        self._pending[key] = request
        self._pending_hosts[get_hostname(request.url)] += 1
        self.strategy.push(self._pending, key, front=front)

    def _take(self, key: str) -> Optional[CrawlRequest]:
        request = self._pending.pop(key, None)
        if request is not None:
            host = get_hostname(request.url)
            self._pending_hosts[host] -= 1
            if self._pending_hosts[host] <= 0:
                del self._pending_hosts[host]
        return request

    def _build_request(self, item: RequestInput) -> CrawlRequest:
        if isinstance(item, CrawlRequest):
            return item.model_copy(update={"unique_key": normalize_url(item.url)})
        if isinstance(item, str):
            item = {"url": item}

        data = dict(item)
        data["unique_key"] = normalize_url(data["url"])
        data.setdefault("max_retries", self.max_retries)
        data["retry_count"] = data.get("retry_count") or 0
        return CrawlRequest(**data)

    async def _journal(self, *records: dict) -> None:
        if self.storage is None:
            return
        try:
            for record in records:
                await self.storage.write(json.dumps(record) + "\n")
            self._unflushed += len(records)
            self._journal_records += len(records)
            if self._unflushed >= self.flush_interval:
                await self.storage.flush()
                self._unflushed = 0
        except Exception as e:
            logger.error("queue_journal_error", queue_id=self.queue_id, error=str(e))
            raise QueuePersistenceError(f"Queue {self.queue_id} journal write failed: {e}") from e

    async def open(self) -> QueueStats:
        """
        Replay the journal into memory.

        Requests that were in flight when the journal was last written are
        returned to pending.

        Returns:
            Stats after replay
        """
        async with self._lock:
            if self._opened or self.storage is None:
                self._opened = True
                return self._stats()

            try:
                exists = await self.storage.exists()
                lines = [line async for line in self.storage.read()] if exists else []
            except Exception as e:
                raise QueuePersistenceError(f"Queue {self.queue_id} journal read failed: {e}") from e

            for line in lines:
                line = line.strip()
                if not line:
                    continue
                self._journal_records += 1
                try:
                    self._replay(json.loads(line))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    logger.error("queue_journal_parse_error", error=str(e), line=line[:100])
                    continue

            recovered = len(self._in_flight)
            for request in self._in_flight.values():
                self._admit(request)
            self._in_flight.clear()

            self._opened = True
            logger.info(
                "queue_opened",
                queue_id=self.queue_id,
                recovered_in_flight=recovered,
                **self._stats().model_dump(),
            )
            return self._stats()

    def _replay(self, record: dict) -> None:
        op = record["op"]
        if op == "add":
            request = CrawlRequest(**record["request"])
            if not self._was_seen(request.unique_key):
                self._admit(request)
            return

        key = record["key"]
        if op == "fetch":
            request = self._take(key)
            if request is not None:
                self._in_flight[key] = request
        elif op == "reclaim":
            request = self._in_flight.pop(key, None)
            if request is not None:
                self._admit(request, front=True)
        elif op == "complete":
            self._take(key)
            self._in_flight.pop(key, None)
            self._completed.add(key)
        elif op == "fail":
            self._take(key)
            self._in_flight.pop(key, None)
            self._failed.add(key)
        elif op == "retry":
            request = self._in_flight.pop(key, None) or self._take(key)
            if request is not None:
                self._admit(request.model_copy(update={"retry_count": record["retry_count"]}))
        else:
            raise ValueError(f"unknown journal op {op!r}")

    async def add_request(self, request: RequestInput) -> QueueOperationInfo:
        """Add a single request. See ``add_requests``."""
        results = await self.add_requests([request])
        return results[0]

    async def add_requests(self, requests: Iterable[RequestInput]) -> list[QueueOperationInfo]:
        """
        Add requests, silently dropping any key seen before.

        Args:
            requests: URLs, CrawlRequest objects or dicts with at least ``url``

        Returns:
            One QueueOperationInfo per input, in input order

        Raises:
            InvalidURLError: If any URL can't be normalized (nothing is added)
            QueuePersistenceError: If the journal write fails (nothing is added)
        """
        built = [self._build_request(item) for item in requests]

        async with self._lock:
            results: list[QueueOperationInfo] = []
            new: dict[str, CrawlRequest] = {}
            for request in built:
                key = request.unique_key
                if self._was_seen(key) or key in new:
                    results.append(QueueOperationInfo(unique_key=key, was_already_present=True))
                    continue
                new[key] = request
                results.append(
                    QueueOperationInfo(unique_key=key, was_already_present=False, request=request)
                )

            if new:
                await self._journal(
                    *({"op": "add", "request": r.model_dump(mode="json")} for r in new.values())
                )
                for request in new.values():
                    self._admit(request)
                logger.debug(
                    "requests_queued",
                    queue_id=self.queue_id,
                    added=len(new),
                    pending=len(self._pending),
                )

            return results

    async def fetch_next_request(self) -> Optional[CrawlRequest]:
        """
        Move the next pending request (per strategy) to in-flight.

        Returns:
            The request, or None if nothing is pending
        """
        async with self._lock:
            key = self.strategy.select(self._pending)
            if key is None:
                return None
            await self._journal({"op": "fetch", "key": key})
            request = self._take(key)
            self._in_flight[key] = request
            return request

    async def reclaim(self, unique_key: str) -> None:
        """
        Hand an in-flight request back unprocessed.

        It returns to pending ahead of its equals, with its retry count
        untouched, so it is the next one fetched again.
        """
        async with self._lock:
            request = self._require_in_flight(unique_key)
            await self._journal({"op": "reclaim", "key": unique_key})
            del self._in_flight[unique_key]
            self._admit(request, front=True)

    async def mark_completed(self, unique_key: str) -> None:
        async with self._lock:
            self._require_in_flight(unique_key)
            await self._journal({"op": "complete", "key": unique_key})
            del self._in_flight[unique_key]
            self._completed.add(unique_key)

    async def mark_failed(self, unique_key: str, permanent: bool = False) -> bool:
        """
        Record a failed attempt.

        A request with retries left (and not ``permanent``/``no_retry``) is
        re-admitted to pending with ``retry_count + 1``; otherwise it becomes
        terminally failed. At most ``max_retries + 1`` attempts are made.

        Args:
            unique_key: Key of an in-flight request
            permanent: Skip retry regardless of remaining budget

        Returns:
            True if the request will be retried
        """
        async with self._lock:
            request = self._require_in_flight(unique_key)

            if not permanent and request.can_retry:
                retry_count = request.retry_count + 1
                await self._journal({"op": "retry", "key": unique_key, "retry_count": retry_count})
                del self._in_flight[unique_key]
                self._admit(request.model_copy(update={"retry_count": retry_count}))
                logger.debug("request_readmitted", url=request.url, retry_count=retry_count)
                return True

            await self._journal({"op": "fail", "key": unique_key})
            del self._in_flight[unique_key]
            self._failed.add(unique_key)
            return False

    def _require_in_flight(self, unique_key: str) -> CrawlRequest:
        request = self._in_flight.get(unique_key)
        if request is None:
            raise QueueStateError(f"Request {unique_key!r} is not in flight")
        return request

    async def is_empty(self) -> bool:
        """True iff nothing is pending (in-flight requests may still exist)."""
        return not self._pending

    def has_pending_outside(self, hosts: Collection[str]) -> bool:
        """True if some pending request targets a host not in ``hosts``."""
        return any(host not in hosts for host in self._pending_hosts)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _stats(self) -> QueueStats:
        pending = len(self._pending)
        in_flight = len(self._in_flight)
        completed = len(self._completed)
        failed = len(self._failed)
        return QueueStats(
            total=pending + in_flight + completed + failed,
            completed=completed,
            failed=failed,
            pending=pending,
            in_flight=in_flight,
        )

    async def get_stats(self) -> QueueStats:
        return self._stats()

    async def snapshot(self) -> dict:
        """Serializable view of pending and in-flight requests."""
        async with self._lock:
            return {
                "pending": [r.model_dump(mode="json") for r in self._pending.values()],
                "in_flight": list(self._in_flight),
            }

    def _compacted_records(self) -> list[dict]:
        records = [{"op": "complete", "key": key} for key in sorted(self._completed)]
        records.extend({"op": "fail", "key": key} for key in sorted(self._failed))
        records.extend({"op": "add", "request": r.model_dump(mode="json")} for r in self._pending.values())
        for key, request in self._in_flight.items():
            records.append({"op": "add", "request": request.model_dump(mode="json")})
            records.append({"op": "fetch", "key": key})
        return records

    async def close(self) -> None:
        """
        Flush the journal and release storage.

        With ``compact_on_close`` the journal is then rewritten to the
        records needed to rebuild the current state, so it does not keep
        growing across resumed runs.
        """
        if self.storage is None:
            return
        async with self._lock:
            try:
                await self.storage.flush()
                await self.storage.close()
                records = self._compacted_records()
                if self.compact_on_close and len(records) < self._journal_records:
                    await self.storage.replace("".join(json.dumps(r) + "\n" for r in records))
                    logger.info(
                        "queue_journal_compacted",
                        queue_id=self.queue_id,
                        before=self._journal_records,
                        after=len(records),
                    )
                    self._journal_records = len(records)
            except Exception as e:
                raise QueuePersistenceError(f"Queue {self.queue_id} close failed: {e}") from e
            self._unflushed = 0
        logger.info("queue_closed", queue_id=self.queue_id, **self._stats().model_dump())
