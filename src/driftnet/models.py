"""Data models for driftnet."""

from datetime import datetime, timezone
from typing import Any, Optional
from pydantic import BaseModel, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CrawlRequest(BaseModel):
    """One unit of crawl work, identified by its normalized ``unique_key``."""

    url: str
    unique_key: str
    depth: int = Field(default=0, ge=0)
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    no_retry: bool = False
    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    user_data: dict[str, Any] = Field(default_factory=dict)
    label: Optional[str] = None
    priority: int = 0

    @property
    def can_retry(self) -> bool:
        return not self.no_retry and self.retry_count < self.max_retries


class ScrapedContent(BaseModel):
    """Content extracted from a fetched page."""

    title: Optional[str] = None
    text: Optional[str] = None
    links: list[str] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)


class CrawlResult(BaseModel):
    """Output of a successfully handled request."""

    url: str
    status_code: int = 200
    scraped_content: Optional[ScrapedContent] = None
    body: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)
    content_type: str = "text/html"
    request: Optional[CrawlRequest] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    crawled_at: datetime = Field(default_factory=_utcnow)


class QueueStats(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0
    in_flight: int = 0


class QueueOperationInfo(BaseModel):
    unique_key: str
    was_already_present: bool
    request: Optional[CrawlRequest] = None


class CrawlerState(BaseModel):
    """Persisted progress snapshot. Derived from the queue, safe to overwrite."""

    queue_id: str
    last_processed_url: Optional[str] = None
    phase: str
    total_requests: int = 0
    completed_requests: int = 0
    failed_requests: int = 0
    timestamp: int = Field(description="Milliseconds since epoch")


class CrawlError(BaseModel):
    url: str
    error: str
    error_type: str = "Exception"
    retry_count: int = 0
    will_retry: bool = False


class CrawlRunResult(BaseModel):
    stats: QueueStats
    duration: float = Field(description="Run duration in seconds")
    errors: list[CrawlError] = Field(default_factory=list)
    error_groups: list[dict[str, Any]] = Field(default_factory=list)


class RobotsGroup(BaseModel):
    user_agents: list[str] = Field(default_factory=list)
    allow: list[str] = Field(default_factory=list)
    disallow: list[str] = Field(default_factory=list)
    crawl_delay: Optional[float] = None


class RobotsTxtRules(BaseModel):
    groups: list[RobotsGroup] = Field(default_factory=list)
    sitemaps: list[str] = Field(default_factory=list)


class SitemapEntry(BaseModel):
    """One <url> (or nested <sitemap>) entry of a sitemap."""

    loc: str
    lastmod: Optional[str] = None
    changefreq: Optional[str] = None
    priority: Optional[float] = Field(default=None, ge=0, le=1)


class CrawlSession(BaseModel):
    """A rotating crawl identity."""

    id: str
    cookies: dict[str, str] = Field(default_factory=dict)
    user_agent: str
    proxy: Optional[str] = None
    error_score: int = 0
    usage_count: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    is_usable: bool = True


class EngineConfig(BaseModel):
    """Configuration for crawler engine behavior."""

    queue_id: Optional[str] = Field(default=None, description="Durable queue identity")
    min_concurrency: int = Field(default=1, ge=1, description="Lower bound for pool concurrency")
    max_concurrency: int = Field(default=10, ge=1, le=200, description="Upper bound for pool concurrency")
    rate_limit_per_domain: int = Field(default=60, ge=0, description="Max requests per domain per minute")
    max_concurrent_per_domain: Optional[int] = Field(
        default=None, ge=1, description="Max in-flight requests per domain (defaults to max_concurrency)"
    )
    queue_strategy: str = Field(default="fifo", description="fifo, lifo or priority")
    enqueue_strategy: str = Field(default="same-hostname", description="Link scope strategy")
    include: list[str] = Field(default_factory=list, description="URL patterns to include")
    exclude: list[str] = Field(default_factory=list, description="URL patterns to exclude")
    max_depth: Optional[int] = Field(default=None, ge=0, description="Maximum crawl depth")
    max_requests_per_crawl: Optional[int] = Field(default=None, ge=1, description="Request budget")
    max_retries: int = Field(default=3, ge=0, description="Retries per request")
    respect_robots: bool = Field(default=True, description="Respect robots.txt")
    user_agent: str = Field(
        default="driftnet/0.1.0 (+https://github.com/driftnet/driftnet)",
        description="User agent string",
    )
    request_timeout: float = Field(default=30.0, gt=0, description="Handler timeout in seconds")
    robots_timeout: float = Field(default=5.0, gt=0, description="robots.txt fetch timeout in seconds")
    persist_interval: float = Field(default=60.0, gt=0, description="Seconds between state snapshots")
    scale_interval: float = Field(default=0.5, gt=0, description="Seconds between pool scaling ticks")
    use_sitemaps: bool = Field(default=False, description="Seed the crawl with URLs from sitemap.xml")
    max_sitemaps: int = Field(default=10, ge=1, description="Sitemap documents fetched per origin")

    @model_validator(mode="after")
    def _check_concurrency_bounds(self) -> "EngineConfig":
        if self.min_concurrency > self.max_concurrency:
            raise ValueError("min_concurrency must not exceed max_concurrency")
        return self
