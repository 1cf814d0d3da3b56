"""
DRIFTNET - resumable, polite web crawler engine.
"""

__version__ = "0.1.0"

from driftnet.engine import CrawlerEngine, CrawlerPhase, RequestHandler
from driftnet.error_tracker import ErrorSnapshotter, ErrorTracker
from driftnet.errors import (
    DriftnetError,
    InvalidURLError,
    NonRetryableError,
    QueuePersistenceError,
    QueueStateError,
    SeedError,
    StatePersistenceError,
    TransientFetchError,
)
from driftnet.events import CrawlerEvent, CrawlerEventEmitter
from driftnet.handlers import HtmlRequestHandler
from driftnet.links import EnqueueStrategy, SkipReason, enqueue_links
from driftnet.models import CrawlRequest, CrawlResult, CrawlRunResult, EngineConfig, QueueStats
from driftnet.pool import AutoscaledPool
from driftnet.queue import PersistentRequestQueue
from driftnet.rate_limiter import DomainRateLimiter
from driftnet.robots import is_allowed, parse_robots_txt
from driftnet.sessions import SessionPool
from driftnet.state import StatePersister
from driftnet.storage import CheckpointStorage, LocalFileStorage, MemoryStorage, S3Storage, StorageFactory
from driftnet.strategies import create_queue_strategy

__all__ = [
    "AutoscaledPool",
    "CheckpointStorage",
    "CrawlerEngine",
    "CrawlerEvent",
    "CrawlerEventEmitter",
    "CrawlerPhase",
    "CrawlRequest",
    "CrawlResult",
    "CrawlRunResult",
    "DomainRateLimiter",
    "DriftnetError",
    "EngineConfig",
    "EnqueueStrategy",
    "ErrorSnapshotter",
    "ErrorTracker",
    "HtmlRequestHandler",
    "InvalidURLError",
    "LocalFileStorage",
    "MemoryStorage",
    "NonRetryableError",
    "PersistentRequestQueue",
    "QueuePersistenceError",
    "QueueStateError",
    "QueueStats",
    "RequestHandler",
    "S3Storage",
    "SeedError",
    "SessionPool",
    "SkipReason",
    "StatePersister",
    "StatePersistenceError",
    "StorageFactory",
    "TransientFetchError",
    "create_queue_strategy",
    "enqueue_links",
    "is_allowed",
    "parse_robots_txt",
]
