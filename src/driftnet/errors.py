"""Exception types raised by driftnet."""

from typing import Optional


class DriftnetError(Exception):
    """Base class for all driftnet errors."""


class SeedError(DriftnetError, ValueError):
    """Seed list is unusable; raised before a run starts processing."""


class InvalidURLError(DriftnetError, ValueError):
    """URL cannot be parsed or uses an unsupported scheme."""

    def __init__(self, url: str, reason: str = "invalid url"):
        super().__init__(f"{reason}: {url!r}")
        self.url = url
        self.reason = reason


class QueueStateError(DriftnetError):
    """Queue transition requested for a key in the wrong state."""


class PersistenceError(DriftnetError):
    """Durable storage could not be read or written."""


class QueuePersistenceError(PersistenceError):
    pass


class StatePersistenceError(PersistenceError):
    pass


class TransientFetchError(DriftnetError):
    """Retryable fetch failure (timeout, 5xx, connection reset)."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class NonRetryableError(DriftnetError):
    """Failure that must not be retried (4xx, robots, malformed target)."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status
