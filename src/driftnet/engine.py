"""Core crawler engine."""

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Mapping, Optional, Protocol, Union
import aiohttp
import structlog

from driftnet.error_tracker import ErrorTracker
from driftnet.errors import (
    InvalidURLError,
    NonRetryableError,
    PersistenceError,
    QueuePersistenceError,
    SeedError,
)
from driftnet.events import CrawlerEvent, CrawlerEventEmitter, Listener
from driftnet.links import SkippedRequest, SkipReason, enqueue_links
from driftnet.models import (
    CrawlError,
    CrawlerState,
    CrawlRequest,
    CrawlResult,
    CrawlRunResult,
    CrawlSession,
    EngineConfig,
    RobotsTxtRules,
    SitemapEntry,
)
from driftnet.pool import AutoscaledPool
from driftnet.queue import PersistentRequestQueue
from driftnet.rate_limiter import DomainRateLimiter
from driftnet.robots import fetch_robots_txt, get_crawl_delay, is_allowed
from driftnet.sessions import SessionPool
from driftnet.sitemaps import fetch_sitemap_urls
from driftnet.state import StatePersister
from driftnet.strategies import create_queue_strategy
from driftnet.urls import get_hostname, get_origin, normalize_url

logger = structlog.get_logger()

THROTTLED_LOOKAHEAD = 10


class RequestHandler(Protocol):
    """Turns one request into a result; raising marks the attempt failed."""

    async def handle(self, request: CrawlRequest) -> CrawlResult: ...


HandlerFn = Callable[[CrawlRequest], Awaitable[CrawlResult]]
SeedInput = Union[str, CrawlRequest, Mapping[str, Any]]


class CrawlerPhase(str, Enum):
    IDLE = "idle"
    SEEDING = "seeding"
    CRAWLING = "crawling"
    PAUSED = "paused"
    FINISHED = "finished"


class CrawlerEngine:
    """
    Orchestrates a crawl: queue, rate limiting, concurrency, retries,
    link discovery and state persistence.

    The page-level work is injected as ``handler``; the engine never
    fetches pages itself (it only fetches robots.txt and sitemaps).
    """

    def __init__(
        self,
        handler: Union[RequestHandler, HandlerFn],
        config: Optional[EngineConfig] = None,
        queue: Optional[PersistentRequestQueue] = None,
        session_pool: Optional[SessionPool] = None,
        state_persister: Optional[StatePersister] = None,
        error_tracker: Optional[ErrorTracker] = None,
        http_session: Optional[aiohttp.ClientSession] = None,
        rate_limiter: Optional[DomainRateLimiter] = None,
    ):
        """
        Initialize crawler engine.

        Args:
            handler: Object with ``async handle(request)``, or an async callable
            config: Engine configuration, uses defaults if None
            queue: Request queue (in-memory queue if None)
            session_pool: Session pool (one built from ``config.user_agent`` if None)
            state_persister: Optional persister for progress snapshots
            error_tracker: Error grouping (fresh tracker if None)
            http_session: aiohttp session used for robots.txt and sitemap fetches
            rate_limiter: Per-domain limiter (built from config if None)
        """
        handle = getattr(handler, "handle", handler)
        if not callable(handle):
            raise TypeError("handler must be an async callable or define handle(request)")
        self._handle: HandlerFn = handle

        self.config = config or EngineConfig()
        self.queue_id = self.config.queue_id or (queue.queue_id if queue else f"crawl-{uuid.uuid4().hex[:12]}")
        self.queue = queue or PersistentRequestQueue(
            self.queue_id,
            strategy=create_queue_strategy(self.config.queue_strategy),
            max_retries=self.config.max_retries,
        )
        self.rate_limiter = rate_limiter or DomainRateLimiter(
            max_per_minute=self.config.rate_limit_per_domain,
            max_concurrent=self.config.max_concurrent_per_domain or self.config.max_concurrency,
        )
        self.session_pool = session_pool or SessionPool(user_agents=[self.config.user_agent])
        self.state_persister = state_persister
        self.error_tracker = error_tracker or ErrorTracker()
        self.events = CrawlerEventEmitter()
        self._http_session = http_session

        self._phase = CrawlerPhase.IDLE
        self._pool: Optional[AutoscaledPool] = None
        self._running = False
        self._stopping = False
        self._robots: dict[str, RobotsTxtRules] = {}
        self._results: list[CrawlResult] = []
        self._errors: list[CrawlError] = []
        self._in_flight = 0
        self._completed_count = 0
        self._failed_count = 0
        self._last_processed_url: Optional[str] = None
        self._started_at: Optional[float] = None

    @property
    def phase(self) -> CrawlerPhase:
        return self._phase

    @property
    def is_running(self) -> bool:
        return self._running

    def _set_phase(self, phase: CrawlerPhase) -> None:
        if phase != self._phase:
            logger.info("crawler_phase", queue_id=self.queue_id, previous=self._phase.value, phase=phase.value)
            self._phase = phase

    def on(self, event: Union[CrawlerEvent, str], listener: Listener) -> "CrawlerEngine":
        self.events.on(event, listener)
        return self

    def get_results(self) -> list[CrawlResult]:
        return list(self._results)

    async def run(self, seed_urls: Iterable[SeedInput]) -> CrawlRunResult:
        """
        Crawl from ``seed_urls`` until the queue drains, the request budget
        is used up, or ``stop()`` is called.

        Args:
            seed_urls: URLs (or request dicts) to start from, at depth 0

        Returns:
            CrawlRunResult with queue stats, duration and collected errors

        Raises:
            SeedError: If the seed list is empty or holds no valid URL
            RuntimeError: If this engine is already running
        """
        if self._running:
            raise RuntimeError("Crawler engine is already running")
        seeds = self._validate_seeds(seed_urls)

        self._running = True
        self._stopping = False
        self._results = []
        self._errors = []
        self._in_flight = 0
        self._completed_count = 0
        self._failed_count = 0
        self._started_at = time.monotonic()

        logger.info(
            "crawl_started",
            queue_id=self.queue_id,
            seeds=len(seeds),
            max_depth=self.config.max_depth,
            max_requests=self.config.max_requests_per_crawl,
            max_concurrency=self.config.max_concurrency,
        )

        try:
            self._set_phase(CrawlerPhase.SEEDING)
            await self.queue.open()
            if self.config.respect_robots:
                await self._load_robots(seeds)
            await self._enqueue_seeds(seeds)
            if self.config.use_sitemaps and not self._stopping:
                await self._enqueue_sitemap_urls(seeds)

            if self._stopping:
                logger.info("crawl_stopped_before_dispatch", queue_id=self.queue_id)
            else:
                self._start_persistence()
                self._pool = AutoscaledPool(
                    task_fn=self._process_request,
                    is_task_ready_fn=self._is_task_ready,
                    is_finished_fn=self._is_finished,
                    min_concurrency=self.config.min_concurrency,
                    max_concurrency=self.config.max_concurrency,
                    scale_interval=self.config.scale_interval,
                )
                self._set_phase(CrawlerPhase.CRAWLING)
                await self._pool.run()
        finally:
            self._stop_persistence()
            self._set_phase(CrawlerPhase.FINISHED)
            await self._persist_state_safely()
            try:
                await self.queue.close()
            except QueuePersistenceError as e:
                self._infrastructure_error(e)
            self._pool = None
            self._running = False

        result = CrawlRunResult(
            stats=await self.queue.get_stats(),
            duration=time.monotonic() - self._started_at,
            errors=list(self._errors),
            error_groups=[g.to_dict() for g in self.error_tracker.get_most_popular_errors(10)],
        )

        logger.info(
            "crawl_completed",
            queue_id=self.queue_id,
            duration=round(result.duration, 3),
            errors=len(result.errors),
            **result.stats.model_dump(),
        )
        self.events.emit(CrawlerEvent.CRAWL_FINISHED, result)
        return result

    def _validate_seeds(self, seed_urls: Iterable[SeedInput]) -> list[dict[str, Any]]:
        if isinstance(seed_urls, (str, bytes)):
            raise SeedError("seed_urls must be a list of URLs, not a single string")
        try:
            items = list(seed_urls)
        except TypeError as e:
            raise SeedError(f"seed_urls must be iterable: {e}") from e
        if not items:
            raise SeedError("seed_urls is empty")

        seeds = []
        for item in items:
            if isinstance(item, CrawlRequest):
                item = item.model_dump(exclude={"unique_key"})
            elif isinstance(item, str):
                item = {"url": item}
            else:
                item = dict(item)

            try:
                normalize_url(item.get("url", ""))
            except (InvalidURLError, TypeError) as e:
                logger.warning("seed_invalid", url=item.get("url"), error=str(e))
                continue
            item["depth"] = 0
            seeds.append(item)

        if not seeds:
            raise SeedError("no valid URL in seed_urls")
        return seeds

    @asynccontextmanager
    async def _client_session(self) -> AsyncIterator[aiohttp.ClientSession]:
        if self._http_session is not None:
            yield self._http_session
            return
        async with aiohttp.ClientSession(headers={"User-Agent": self.config.user_agent}) as session:
            yield session

    async def _load_robots(self, seeds: list[dict[str, Any]]) -> None:
        origins = list(dict.fromkeys(get_origin(s["url"]) for s in seeds))
        missing = [o for o in origins if o not in self._robots]
        if not missing:
            return

        async with self._client_session() as session:
            fetched = await asyncio.gather(
                *(fetch_robots_txt(session, origin, timeout=self.config.robots_timeout) for origin in missing)
            )

        for origin, rules in zip(missing, fetched):
            if rules is None:
                continue
            self._robots[origin] = rules
            delay = get_crawl_delay(rules, self.config.user_agent)
            if delay:
                self.rate_limiter.set_min_interval(get_hostname(origin), delay)

    async def _enqueue_sitemap_urls(self, seeds: list[dict[str, Any]]) -> None:
        origins = list(dict.fromkeys(get_origin(s["url"]) for s in seeds))

        async def discover(session: aiohttp.ClientSession, origin: str) -> list[SitemapEntry]:
            rules = self._robots.get(origin)
            if rules is None and not self.config.respect_robots:
                # Only read for its Sitemap: lines
                rules = await fetch_robots_txt(session, origin, timeout=self.config.robots_timeout)
            return await fetch_sitemap_urls(
                session,
                origin,
                robots=rules,
                max_sitemaps=self.config.max_sitemaps,
                timeout=self.config.robots_timeout,
            )

        async with self._client_session() as session:
            discovered = await asyncio.gather(*(discover(session, origin) for origin in origins))

        for origin, entries in zip(origins, discovered):
            if not entries:
                continue
            found = enqueue_links(
                [entry.loc for entry in entries],
                base_url=origin + "/",
                strategy=self.config.enqueue_strategy,
                include=self.config.include,
                exclude=self.config.exclude,
                robots_txt=self._robots if self.config.respect_robots else None,
                user_agent=self.config.user_agent,
                limit=len(entries),
                on_skipped_request=self._on_skipped,
            )
            if not found.processed_requests:
                continue
            infos = await self.queue.add_requests(
                {"url": r.url, "depth": 0, "label": r.label} for r in found.processed_requests
            )
            added = sum(1 for info in infos if not info.was_already_present)
            logger.info(
                "sitemap_urls_enqueued",
                queue_id=self.queue_id,
                origin=origin,
                added=added,
                found=len(entries),
            )

    async def _enqueue_seeds(self, seeds: list[dict[str, Any]]) -> None:
        allowed = []
        for seed in seeds:
            if not self._robots_allows(seed["url"]):
                self._on_skipped(SkippedRequest(url=seed["url"], reason=SkipReason.ROBOTS_DISALLOWED))
                continue
            allowed.append(seed)

        if allowed:
            infos = await self.queue.add_requests(allowed)
            added = sum(1 for info in infos if not info.was_already_present)
            logger.info("seeds_enqueued", queue_id=self.queue_id, added=added, total=len(allowed))

    def _robots_allows(self, url: str) -> bool:
        if not self.config.respect_robots:
            return True
        return is_allowed(self._robots.get(get_origin(url)), url, self.config.user_agent)

    def _budget_exhausted(self) -> bool:
        budget = self.config.max_requests_per_crawl
        if budget is None:
            return False
        return self._completed_count + self._failed_count + self._in_flight >= budget

    async def _is_task_ready(self) -> bool:
        if self._stopping or self._budget_exhausted():
            return False
        return not await self.queue.is_empty()

    async def _is_finished(self) -> bool:
        if self._in_flight:
            return False
        return self._stopping or self._budget_exhausted() or await self.queue.is_empty()

    async def _next_request(self) -> Optional[CrawlRequest]:
        """
        Dequeue the next request whose domain can be admitted right away.

        Requests for throttled domains are handed back to the queue while
        other domains have pending work, looking at most ``THROTTLED_LOOKAHEAD``
        requests ahead. If every candidate is throttled the first one is kept.
        """
        deferred: list[CrawlRequest] = []
        throttled: set[str] = set()
        chosen: Optional[CrawlRequest] = None
        try:
            while len(deferred) < THROTTLED_LOOKAHEAD:
                request = await self.queue.fetch_next_request()
                if request is None:
                    break
                domain = get_hostname(request.url)
                if domain not in throttled and self.rate_limiter.can_request(domain):
                    chosen = request
                    break
                throttled.add(domain)
                deferred.append(request)
                if not self.queue.has_pending_outside(throttled):
                    break
            if chosen is None and deferred:
                chosen = deferred.pop(0)
        finally:
            # Reversed so the handed-back requests keep their relative order
            for request in reversed(deferred):
                await self.queue.reclaim(request.unique_key)
        if deferred:
            logger.debug("throttled_requests_deferred", count=len(deferred), domains=sorted(throttled))
        return chosen

    async def _process_request(self) -> None:
        if self._stopping or self._budget_exhausted():
            return

        # Reserve the budget slot before the first await
        self._in_flight += 1
        domain: Optional[str] = None
        try:
            try:
                request = await self._next_request()
            except QueuePersistenceError as e:
                self._infrastructure_error(e)
                return
            if request is None:
                return

            domain = get_hostname(request.url)
            await self.rate_limiter.wait_for_slot(domain)
            self.rate_limiter.record_request(domain)

            session = self.session_pool.get_session(domain)
            attempt = self._prepare_attempt(request, session)
            self.events.emit(CrawlerEvent.REQUEST_STARTED, attempt)

            try:
                result = await asyncio.wait_for(self._handle(attempt), timeout=self.config.request_timeout)
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                error = TimeoutError(f"Request handler timed out after {self.config.request_timeout}s")
                await self._handle_failure(request, error, session)
            except Exception as e:
                await self._handle_failure(request, e, session)
            else:
                await self._handle_success(request, result, session)
        finally:
            if domain is not None:
                await self.rate_limiter.release(domain)
            self._in_flight -= 1

    def _prepare_attempt(self, request: CrawlRequest, session: CrawlSession) -> CrawlRequest:
        headers = {**request.headers, "User-Agent": session.user_agent}
        if session.cookies:
            headers["Cookie"] = "; ".join(f"{k}={v}" for k, v in session.cookies.items())
        user_data = dict(request.user_data)
        if session.proxy:
            user_data["proxy"] = session.proxy
        user_data["session_id"] = session.id
        return request.model_copy(update={"headers": headers, "user_data": user_data})

    async def _handle_success(self, request: CrawlRequest, result: CrawlResult, session: CrawlSession) -> None:
        try:
            await self.queue.mark_completed(request.unique_key)
        except QueuePersistenceError as e:
            self._infrastructure_error(e, request)

        if result.request is None:
            result.request = request
        self._completed_count += 1
        self._results.append(result)
        self._last_processed_url = request.url
        self.session_pool.mark_good(session.id)

        links = result.scraped_content.links if result.scraped_content else []
        logger.info(
            "request_completed",
            url=request.url,
            depth=request.depth,
            status=result.status_code,
            links=len(links),
            completed=self._completed_count,
        )
        self.events.emit(CrawlerEvent.REQUEST_COMPLETED, result)

        if links:
            await self._enqueue_discovered(request, result.url or request.url, links)

    async def _enqueue_discovered(self, request: CrawlRequest, base_url: str, links: list[str]) -> None:
        depth = request.depth + 1
        if self.config.max_depth is not None and depth > self.config.max_depth:
            for url in links:
                self._on_skipped(SkippedRequest(url=url, reason=SkipReason.MAX_DEPTH))
            return

        found = enqueue_links(
            links,
            base_url=base_url,
            strategy=self.config.enqueue_strategy,
            include=self.config.include,
            exclude=self.config.exclude,
            robots_txt=self._robots if self.config.respect_robots else None,
            user_agent=self.config.user_agent,
            on_skipped_request=self._on_skipped,
        )
        if not found.processed_requests:
            return

        try:
            infos = await self.queue.add_requests(
                {"url": r.url, "depth": depth, "label": r.label} for r in found.processed_requests
            )
        except QueuePersistenceError as e:
            self._infrastructure_error(e, request)
            return

        for info in infos:
            if info.was_already_present:
                self._on_skipped(SkippedRequest(url=info.unique_key, reason=SkipReason.DUPLICATE))

    async def _handle_failure(self, request: CrawlRequest, error: BaseException, session: CrawlSession) -> None:
        permanent = isinstance(error, (NonRetryableError, InvalidURLError))
        self.session_pool.mark_bad(session.id)
        await self.error_tracker.add(error, {"url": request.url, "request": request.model_dump(mode="json")})

        try:
            will_retry = await self.queue.mark_failed(request.unique_key, permanent=permanent)
        except QueuePersistenceError as e:
            self._infrastructure_error(e, request)
            will_retry = False

        self._errors.append(
            CrawlError(
                url=request.url,
                error=str(error) or type(error).__name__,
                error_type=type(error).__name__,
                retry_count=request.retry_count,
                will_retry=will_retry,
            )
        )

        if will_retry:
            logger.warning(
                "request_retry",
                url=request.url,
                retry_count=request.retry_count + 1,
                error=str(error),
                error_type=type(error).__name__,
            )
            self.events.emit(CrawlerEvent.REQUEST_RETRIED, request, error)
            return

        self._failed_count += 1
        logger.error(
            "request_failed",
            url=request.url,
            retry_count=request.retry_count,
            error=str(error),
            error_type=type(error).__name__,
        )
        self.events.emit(CrawlerEvent.REQUEST_FAILED, request, error)

    def _on_skipped(self, skipped: SkippedRequest) -> None:
        self.events.emit(CrawlerEvent.REQUEST_SKIPPED, skipped)

    def _infrastructure_error(self, error: Exception, request: Optional[CrawlRequest] = None) -> None:
        logger.error(
            "infrastructure_error",
            queue_id=self.queue_id,
            url=request.url if request else None,
            error=str(error),
            error_type=type(error).__name__,
        )
        self.events.emit(CrawlerEvent.INFRASTRUCTURE_ERROR, error, request)

    async def _build_state(self) -> CrawlerState:
        stats = await self.queue.get_stats()
        return CrawlerState(
            queue_id=self.queue_id,
            last_processed_url=self._last_processed_url,
            phase=self._phase.value,
            total_requests=stats.total,
            completed_requests=stats.completed,
            failed_requests=stats.failed,
            timestamp=int(time.time() * 1000),
        )

    async def _persist_state_safely(self) -> None:
        if self.state_persister is None:
            return
        try:
            await self.state_persister.persist(await self._build_state(), await self.queue.get_stats())
        except PersistenceError as e:
            self._infrastructure_error(e)

    def _start_persistence(self) -> None:
        if self.state_persister is None:
            return
        self.state_persister.start_periodic_persist(self._persist_state_safely)
        self.state_persister.register_shutdown_hook(self._on_shutdown_signal)

    def _stop_persistence(self) -> None:
        if self.state_persister is None:
            return
        self.state_persister.stop_periodic_persist()
        self.state_persister.remove_shutdown_hook()

    async def _on_shutdown_signal(self) -> None:
        await self._persist_state_safely()
        await self.stop()

    async def stop(self) -> None:
        """Stop dispatching and wait for in-flight requests to finish."""
        self._stopping = True
        if self._pool is not None:
            logger.info("crawl_stopping", queue_id=self.queue_id, in_flight=self._in_flight)
            await self._pool.stop()

    async def pause(self) -> None:
        if self._pool is not None and self._phase == CrawlerPhase.CRAWLING:
            await self._pool.pause()
            self._set_phase(CrawlerPhase.PAUSED)

    async def resume(self) -> None:
        if self._pool is not None and self._phase == CrawlerPhase.PAUSED:
            await self._pool.resume()
            self._set_phase(CrawlerPhase.CRAWLING)
