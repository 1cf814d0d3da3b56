"""Periodic and shutdown-triggered snapshots of crawl progress."""

import asyncio
import json
import signal
from typing import Any, Awaitable, Callable, Optional
import structlog

from driftnet.errors import StatePersistenceError
from driftnet.models import CrawlerState, QueueStats
from driftnet.storage import CheckpointStorage, StorageFactory

logger = structlog.get_logger()

PersistFn = Callable[[], Awaitable[None]]
SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class StatePersister:
    """
    Writes ``CrawlerState`` snapshots keyed by queue id.

    Snapshots are overwritten in place; they are a projection of the
    queue, not a source of truth.
    """

    def __init__(
        self,
        base_uri: str = "./driftnet-state",
        interval: float = 60.0,
        on_error: Optional[Callable[[Exception], None]] = None,
    ):
        """
        Initialize state persister.

        Args:
            base_uri: Directory or s3:// prefix holding ``<queue_id>.state.json``
            interval: Seconds between periodic snapshots
            on_error: Called with the exception when a periodic persist fails
        """
        self.base_uri = base_uri
        self.interval = interval
        self.on_error = on_error
        self._storages: dict[str, CheckpointStorage] = {}
        self._periodic_task: Optional[asyncio.Task] = None
        self._persist_running = False
        self._skipped_ticks = 0
        self._signal_loop: Optional[asyncio.AbstractEventLoop] = None
        self._shutdown_fn: Optional[PersistFn] = None
        self._shutdown_task: Optional[asyncio.Task] = None

    def _storage(self, queue_id: str) -> CheckpointStorage:
        storage = self._storages.get(queue_id)
        if storage is None:
            uri = StorageFactory.join(self.base_uri, f"{queue_id}.state.json")
            storage = self._storages[queue_id] = StorageFactory.from_uri(uri)
        return storage

    async def persist(self, state: CrawlerState, stats: Optional[QueueStats] = None) -> None:
        """
        Overwrite the snapshot for ``state.queue_id``.

        Raises:
            StatePersistenceError: If the write fails
        """
        record = {
            "state": state.model_dump(mode="json"),
            "queue": stats.model_dump(mode="json") if stats is not None else None,
        }
        try:
            await self._storage(state.queue_id).replace(json.dumps(record, indent=2))
        except Exception as e:
            logger.error("state_persist_failed", queue_id=state.queue_id, error=str(e))
            raise StatePersistenceError(f"Failed to persist state for {state.queue_id}: {e}") from e

        logger.debug(
            "state_persisted",
            queue_id=state.queue_id,
            phase=state.phase,
            completed=state.completed_requests,
            failed=state.failed_requests,
        )

    async def restore(self, queue_id: str) -> Optional[dict[str, Any]]:
        """
        Load the last snapshot for a queue.

        Returns:
            Dict with ``state`` (CrawlerState) and ``queue`` (QueueStats or None),
            or None if no snapshot exists
        """
        try:
            text = await self._storage(queue_id).read_text()
        except Exception as e:
            raise StatePersistenceError(f"Failed to read state for {queue_id}: {e}") from e

        if not text:
            return None

        try:
            data = json.loads(text)
            return {
                "state": CrawlerState(**data["state"]),
                "queue": QueueStats(**data["queue"]) if data.get("queue") else None,
            }
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.error("state_restore_parse_error", queue_id=queue_id, error=str(e))
            return None

    async def cleanup(self, queue_id: str) -> None:
        storage = self._storage(queue_id)
        await storage.delete()
        self._storages.pop(queue_id, None)
        logger.info("state_cleaned_up", queue_id=queue_id)

    def start_periodic_persist(self, persist_fn: PersistFn) -> None:
        """
        Run ``persist_fn`` every ``interval`` seconds until stopped.

        A tick that fires while the previous call is still running is
        skipped, not queued. Failures are logged and reported to
        ``on_error``; the schedule keeps going.
        """
        self.stop_periodic_persist()
        self._periodic_task = asyncio.create_task(self._periodic_loop(persist_fn))
        logger.debug("periodic_persist_started", interval=self.interval)

    async def _periodic_loop(self, persist_fn: PersistFn) -> None:
        in_progress: Optional[asyncio.Task] = None
        try:
            while True:
                await asyncio.sleep(self.interval)
                if self._persist_running:
                    self._skipped_ticks += 1
                    logger.warning("periodic_persist_skipped", reason="previous persist still running")
                    continue
                in_progress = asyncio.create_task(self._guarded(persist_fn))
        finally:
            if in_progress is not None and not in_progress.done():
                in_progress.cancel()

    async def _guarded(self, persist_fn: PersistFn) -> None:
        self._persist_running = True
        try:
            await persist_fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("periodic_persist_failed", error=str(e), error_type=type(e).__name__)
            if self.on_error is not None:
                self.on_error(e)
        finally:
            self._persist_running = False

    @property
    def skipped_ticks(self) -> int:
        return self._skipped_ticks

    def stop_periodic_persist(self) -> None:
        if self._periodic_task is not None:
            self._periodic_task.cancel()
            self._periodic_task = None

    def register_shutdown_hook(self, persist_fn: PersistFn) -> bool:
        """
        Run ``persist_fn`` once when SIGINT or SIGTERM arrives.

        Registering again replaces the callback.

        Returns:
            True if signal handlers were installed on the running loop
        """
        self._shutdown_fn = persist_fn
        if self._signal_loop is not None:
            return True

        loop = asyncio.get_running_loop()
        try:
            for sig in SHUTDOWN_SIGNALS:
                loop.add_signal_handler(sig, self._on_signal, sig)
        except (NotImplementedError, RuntimeError, ValueError) as e:
            # Non-main thread or platform without loop signal support
            logger.warning("shutdown_hook_unavailable", error=str(e))
            return False

        self._signal_loop = loop
        return True

    def _on_signal(self, sig: signal.Signals) -> None:
        if self._shutdown_task is not None or self._shutdown_fn is None:
            return
        logger.warning("shutdown_signal_received", signal=sig.name)
        self.stop_periodic_persist()
        self._shutdown_task = asyncio.ensure_future(self._run_shutdown(self._shutdown_fn))

    async def _run_shutdown(self, persist_fn: PersistFn) -> None:
        try:
            await persist_fn()
        except Exception as e:
            logger.error("shutdown_persist_failed", error=str(e))
            if self.on_error is not None:
                self.on_error(e)

    async def trigger_shutdown(self) -> None:
        """Run the shutdown hook as if a signal arrived, and wait for it."""
        self._on_signal(signal.SIGTERM)
        if self._shutdown_task is not None:
            await self._shutdown_task

    def remove_shutdown_hook(self) -> None:
        if self._signal_loop is not None:
            for sig in SHUTDOWN_SIGNALS:
                self._signal_loop.remove_signal_handler(sig)
        self._signal_loop = None
        self._shutdown_fn = None
        self._shutdown_task = None

    async def close(self) -> None:
        self.stop_periodic_persist()
        for storage in self._storages.values():
            await storage.close()
