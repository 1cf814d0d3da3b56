"""Groups similar errors and captures diagnostic snapshots."""

import asyncio
import hashlib
import json
import os
import re
import time
import traceback
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Optional
import structlog

from driftnet.storage import StorageFactory

logger = structlog.get_logger()

_DIGITS = re.compile(r"\d+")
HTML_EXCERPT_LIMIT = 10_000


@dataclass
class ErrorGroup:
    """One bucket of errors sharing a signature."""

    signature: str
    count: int
    first_seen: float
    last_seen: float
    error_type: str
    message: str
    sample_url: Optional[str] = None
    snapshot: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ErrorSnapshotter:
    """Writes one JSON diagnostic record per captured error."""

    def __init__(self, storage_uri: str = "./driftnet-state"):
        """
        Initialize snapshotter.

        Args:
            storage_uri: Base directory or s3:// prefix; records go under ``errors/``
        """
        self.storage_uri = storage_uri

    async def capture(self, context: dict[str, Any], error: BaseException) -> Optional[str]:
        """
        Persist a diagnostic record for ``error``.

        Args:
            context: ``url``, optionally ``request`` (dict) and ``html``
            error: The exception

        Returns:
            Storage reference of the record
        """
        url = context.get("url") or ""
        now = datetime.now(timezone.utc)
        url_hash = hashlib.sha1(url.encode()).hexdigest()[:12]
        ref = StorageFactory.join(self.storage_uri, "errors", f"{url_hash}-{int(now.timestamp() * 1000)}.json")

        html = context.get("html")
        record = {
            "url": url,
            "error_type": type(error).__name__,
            "error_message": str(error),
            "traceback": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
            "request": context.get("request"),
            "html_excerpt": html[:HTML_EXCERPT_LIMIT] if html else None,
            "timestamp": now.isoformat(),
        }

        storage = StorageFactory.from_uri(ref)
        await storage.replace(json.dumps(record, indent=2, default=str))
        await storage.close()
        logger.debug("error_snapshot_saved", ref=ref, url=url)
        return ref


class ErrorTracker:
    """
    Counts errors by signature.

    The signature combines the throwing location, the error code, the
    class name and the message, each part switchable. At most
    ``max_groups`` groups are kept; the least frequent (then least
    recent) group is evicted first.
    """

    def __init__(
        self,
        snapshotter: Optional[ErrorSnapshotter] = None,
        max_groups: int = 100,
        max_snapshots: int = 10,
        show_stack_trace: bool = True,
        show_error_code: bool = True,
        show_error_name: bool = True,
        show_full_message: bool = False,
    ):
        self.snapshotter = snapshotter
        self.max_groups = max(1, max_groups)
        self.max_snapshots = max_snapshots
        self.show_stack_trace = show_stack_trace
        self.show_error_code = show_error_code
        self.show_error_name = show_error_name
        self.show_full_message = show_full_message
        self._groups: dict[str, ErrorGroup] = {}
        self._total = 0
        self._snapshotted: set[str] = set()
        self._lock = asyncio.Lock()

    def signature(self, error: BaseException) -> str:
        parts = []
        if self.show_stack_trace:
            parts.append(_error_location(error))
        if self.show_error_code:
            code = _error_code(error)
            parts.append("" if code is None else str(code))
        if self.show_error_name:
            parts.append(type(error).__name__)
        parts.append(self._normalize_message(str(error)))
        return "|".join(parts)

    def _normalize_message(self, message: str) -> str:
        if not self.show_full_message:
            message = message.split("\n", 1)[0]
        return _DIGITS.sub("_", message).strip()

    async def add(self, error: BaseException, context: Optional[dict[str, Any]] = None) -> ErrorGroup:
        """
        Record one occurrence of ``error``.

        The first occurrence of a new group is snapshotted while fewer than
        ``max_snapshots`` groups hold a snapshot. Snapshot failures are logged.

        Returns:
            The group the error was counted in
        """
        context = context or {}
        signature = self.signature(error)
        now = time.time()

        async with self._lock:
            self._total += 1
            group = self._groups.get(signature)
            if group is not None:
                group.count += 1
                group.last_seen = now
                return group

            group = ErrorGroup(
                signature=signature,
                count=1,
                first_seen=now,
                last_seen=now,
                error_type=type(error).__name__,
                message=self._normalize_message(str(error)),
                sample_url=context.get("url"),
            )
            self._groups[signature] = group
            self._evict()
            take_snapshot = (
                self.snapshotter is not None
                and signature in self._groups
                and len(self._snapshotted) < self.max_snapshots
            )
            if take_snapshot:
                self._snapshotted.add(signature)

        if take_snapshot:
            try:
                group.snapshot = await self.snapshotter.capture(context, error)
            except Exception as e:
                self._snapshotted.discard(signature)
                logger.warning("error_snapshot_failed", signature=signature, error=str(e))

        return group

    def _evict(self) -> None:
        while len(self._groups) > self.max_groups:
            victim = min(self._groups.values(), key=lambda g: (g.count, g.last_seen))
            del self._groups[victim.signature]
            self._snapshotted.discard(victim.signature)
            logger.debug("error_group_evicted", signature=victim.signature, count=victim.count)

    def get_unique_error_count(self) -> int:
        return len(self._groups)

    def get_total_errors(self) -> int:
        return self._total

    def get_most_popular_errors(self, limit: int = 3) -> list[ErrorGroup]:
        return sorted(self._groups.values(), key=lambda g: (-g.count, g.first_seen))[:limit]

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_errors": self._total,
            "unique_errors": len(self._groups),
            "snapshots": len(self._snapshotted),
            "top_errors": [g.to_dict() for g in self.get_most_popular_errors(5)],
        }

    def reset(self) -> None:
        self._groups.clear()
        self._snapshotted.clear()
        self._total = 0


def _error_location(error: BaseException) -> str:
    frames = traceback.extract_tb(error.__traceback__) if error.__traceback__ else []
    for frame in reversed(frames):
        if "site-packages" not in frame.filename:
            return f"{os.path.basename(frame.filename)}:{frame.lineno}"
    return ""


def _error_code(error: BaseException) -> Optional[Any]:
    for attr in ("code", "errno", "status"):
        value = getattr(error, attr, None)
        if value is not None:
            return value
    return None
