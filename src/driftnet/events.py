"""Typed pub/sub for crawler lifecycle events."""

import asyncio
import inspect
from enum import Enum
from typing import Any, Callable, Union
import structlog

logger = structlog.get_logger()


class CrawlerEvent(str, Enum):
    REQUEST_STARTED = "request_started"
    REQUEST_COMPLETED = "request_completed"
    REQUEST_FAILED = "request_failed"
    REQUEST_RETRIED = "request_retried"
    REQUEST_SKIPPED = "request_skipped"
    CRAWL_FINISHED = "crawl_finished"
    INFRASTRUCTURE_ERROR = "infrastructure_error"


Listener = Callable[..., Any]


class CrawlerEventEmitter:
    """
    Synchronous emitter that never lets a listener break the crawl.

    Coroutine listeners are scheduled as tasks and tracked until done.
    """

    def __init__(self):
        self._listeners: dict[CrawlerEvent, list[tuple[Listener, bool]]] = {}
        self._pending: set[asyncio.Task] = set()

    def on(self, event: Union[CrawlerEvent, str], listener: Listener) -> "CrawlerEventEmitter":
        self._listeners.setdefault(CrawlerEvent(event), []).append((listener, False))
        return self

    def once(self, event: Union[CrawlerEvent, str], listener: Listener) -> "CrawlerEventEmitter":
        self._listeners.setdefault(CrawlerEvent(event), []).append((listener, True))
        return self

    def off(self, event: Union[CrawlerEvent, str], listener: Listener) -> "CrawlerEventEmitter":
        event = CrawlerEvent(event)
        self._listeners[event] = [(fn, once) for fn, once in self._listeners.get(event, []) if fn != listener]
        return self

    def listener_count(self, event: Union[CrawlerEvent, str]) -> int:
        return len(self._listeners.get(CrawlerEvent(event), []))

    def emit(self, event: Union[CrawlerEvent, str], *args: Any) -> bool:
        """
        Call every listener of ``event`` in registration order.

        Returns:
            True if the event had listeners
        """
        event = CrawlerEvent(event)
        listeners = self._listeners.get(event, [])
        if not listeners:
            return False

        self._listeners[event] = [(fn, once) for fn, once in listeners if not once]

        for listener, _ in listeners:
            try:
                result = listener(*args)
            except Exception as e:
                logger.error("event_listener_error", event=event.value, error=str(e))
                continue

            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._on_listener_done)

        return True

    def _on_listener_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("event_listener_error", error=str(task.exception()))

    async def wait_idle(self) -> None:
        """Wait for scheduled coroutine listeners to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def remove_all_listeners(self) -> None:
        self._listeners.clear()
