"""Autoscaled concurrency pool driving a run-to-completion loop."""

import asyncio
import math
import time
from collections import deque
from typing import Awaitable, Callable, Optional
import psutil
import structlog

logger = structlog.get_logger()


class SystemStatus:
    """
    Samples event-loop lag and process memory to detect overload.

    A sample is overloaded when the loop woke more than ``max_blocked``
    seconds late, or when the process uses more than ``max_memory_ratio``
    of system memory. The system counts as overloaded when more than
    ``overload_threshold`` of recent samples are.
    """

    def __init__(
        self,
        interval: float = 0.5,
        max_blocked: float = 0.05,
        max_memory_ratio: float = 0.7,
        history: float = 5.0,
        overload_threshold: float = 0.5,
    ):
        self.interval = interval
        self.max_blocked = max_blocked
        self.max_memory_ratio = max_memory_ratio
        self.history = history
        self.overload_threshold = overload_threshold
        self._loop_samples: deque[tuple[float, bool]] = deque()
        self._memory_samples: deque[tuple[float, bool]] = deque()
        self._task: Optional[asyncio.Task] = None
        self._process = psutil.Process()
        self._total_memory = psutil.virtual_memory().total

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._sample_loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _sample_loop(self) -> None:
        last = time.monotonic()
        while True:
            await asyncio.sleep(self.interval)
            now = time.monotonic()
            lag = now - last - self.interval
            last = now
            self._loop_samples.append((now, lag > self.max_blocked))
            self._memory_samples.append((now, self._memory_ratio() > self.max_memory_ratio))
            self._prune(now)

    def _memory_ratio(self) -> float:
        return self._process.memory_info().rss / self._total_memory

    def _prune(self, now: float) -> None:
        cutoff = now - self.history
        for samples in (self._loop_samples, self._memory_samples):
            while samples and samples[0][0] < cutoff:
                samples.popleft()

    def _ratio(self, samples: deque) -> float:
        if not samples:
            return 0.0
        return sum(1 for _, overloaded in samples if overloaded) / len(samples)

    def is_overloaded(self) -> bool:
        return (
            self._ratio(self._loop_samples) > self.overload_threshold
            or self._ratio(self._memory_samples) > self.overload_threshold
        )


class AutoscaledPool:
    """
    Runs ``task_fn`` concurrently until ``is_finished_fn`` reports done.

    Scaling: ``desired_concurrency`` starts at ``min_concurrency``. Every
    ``scale_interval`` seconds:

    - system overloaded, or failed-task share above ``max_error_ratio``:
      shrink by ``ceil(desired * scale_down_step_ratio)``
    - tasks were ready and the pool was saturated
      (``running >= desired * desired_concurrency_ratio``):
      grow by ``ceil(desired * scale_up_step_ratio)``
    - idle tick (nothing ready, nothing dispatched): shrink by one step
    - otherwise unchanged

    The result is clamped to ``[min_concurrency, max_concurrency]``, so under
    steady saturating load it climbs monotonically to the maximum.
    """

    def __init__(
        self,
        task_fn: Callable[[], Awaitable[None]],
        is_task_ready_fn: Optional[Callable[[], Awaitable[bool]]] = None,
        is_finished_fn: Optional[Callable[[], Awaitable[bool]]] = None,
        min_concurrency: int = 1,
        max_concurrency: int = 10,
        scale_interval: float = 0.5,
        scale_up_step_ratio: float = 0.05,
        scale_down_step_ratio: float = 0.05,
        desired_concurrency_ratio: float = 0.9,
        max_error_ratio: float = 0.2,
        poll_interval: float = 0.05,
        system_status: Optional[SystemStatus] = None,
    ):
        if min_concurrency < 1 or max_concurrency < min_concurrency:
            raise ValueError("require 1 <= min_concurrency <= max_concurrency")

        self.task_fn = task_fn
        self.is_task_ready_fn = is_task_ready_fn or _always_true
        self.is_finished_fn = is_finished_fn or _always_false
        self.min_concurrency = min_concurrency
        self.max_concurrency = max_concurrency
        self.scale_interval = scale_interval
        self.scale_up_step_ratio = scale_up_step_ratio
        self.scale_down_step_ratio = scale_down_step_ratio
        self.desired_concurrency_ratio = desired_concurrency_ratio
        self.max_error_ratio = max_error_ratio
        self.poll_interval = poll_interval
        self.system_status = system_status or SystemStatus()

        self._desired = min_concurrency
        self._tasks: set[asyncio.Task] = set()
        self._running = False
        self._stopping = False
        self._paused = False
        self._wake = asyncio.Event()
        self._scale_task: Optional[asyncio.Task] = None

        # Per-tick observations
        self._saw_ready = False
        self._saturated = False
        self._dispatched = 0
        self._finished_ok = 0
        self._finished_err = 0

    @property
    def current_concurrency(self) -> int:
        return len(self._tasks)

    @property
    def desired_concurrency(self) -> int:
        return self._desired

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    async def run(self) -> None:
        """Dispatch tasks until finished or stopped; in-flight tasks are drained."""
        if self._running:
            raise RuntimeError("Pool is already running")

        self._running = True
        self._stopping = False
        self.system_status.start()
        self._scale_task = asyncio.create_task(self._scale_loop())
        logger.info(
            "pool_started",
            min_concurrency=self.min_concurrency,
            max_concurrency=self.max_concurrency,
        )

        try:
            while not self._stopping:
                if not self._tasks and await self.is_finished_fn():
                    break

                if not self._paused:
                    while len(self._tasks) < self._desired and not self._stopping:
                        if not await self.is_task_ready_fn():
                            break
                        self._saw_ready = True
                        self._spawn()
                    if (
                        not self._saturated
                        and len(self._tasks) >= self._desired * self.desired_concurrency_ratio
                        and await self.is_task_ready_fn()
                    ):
                        # Backlog remains while every slot is busy
                        self._saw_ready = True
                        self._saturated = True

                self._wake.clear()
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass

            await self._drain()
        finally:
            self._scale_task.cancel()
            try:
                await self._scale_task
            except asyncio.CancelledError:
                pass
            self._scale_task = None
            await self.system_status.stop()
            self._running = False
            logger.info("pool_finished", desired_concurrency=self._desired)

    def _spawn(self) -> None:
        task = asyncio.create_task(self._run_task())
        self._tasks.add(task)
        self._dispatched += 1
        task.add_done_callback(self._on_task_done)

    async def _run_task(self) -> None:
        try:
            await self.task_fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Tasks own their error handling; the pool only counts and logs
            self._finished_err += 1
            logger.error("pool_task_error", error=str(e), error_type=type(e).__name__)
        else:
            self._finished_ok += 1

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._wake.set()

    async def _drain(self) -> None:
        # A task may call stop() on its own pool; never wait on the caller
        current = asyncio.current_task()
        while True:
            pending = self._tasks - {current}
            if not pending:
                break
            await asyncio.wait(pending)

    async def _scale_loop(self) -> None:
        while True:
            await asyncio.sleep(self.scale_interval)
            self._adjust_concurrency()

    def _adjust_concurrency(self) -> None:
        finished = self._finished_ok + self._finished_err
        error_ratio = self._finished_err / finished if finished else 0.0
        previous = self._desired

        if self.system_status.is_overloaded() or error_ratio > self.max_error_ratio:
            step = math.ceil(self._desired * self.scale_down_step_ratio)
            self._desired = max(self.min_concurrency, self._desired - step)
        elif self._saturated:
            step = math.ceil(self._desired * self.scale_up_step_ratio)
            self._desired = min(self.max_concurrency, self._desired + step)
        elif not self._saw_ready and not self._dispatched and not self._paused:
            step = math.ceil(self._desired * self.scale_down_step_ratio)
            self._desired = max(self.min_concurrency, self._desired - step)

        if self._desired != previous:
            logger.debug(
                "pool_scaled",
                previous=previous,
                desired=self._desired,
                running=len(self._tasks),
                error_ratio=round(error_ratio, 3),
            )
            self._wake.set()

        self._saw_ready = False
        self._saturated = False
        self._dispatched = 0
        self._finished_ok = 0
        self._finished_err = 0

    async def stop(self) -> None:
        """Stop dispatching and wait for in-flight tasks to finish."""
        self._stopping = True
        self._wake.set()
        await self._drain()

    async def pause(self) -> None:
        """Stop dispatching new tasks; running tasks continue."""
        self._paused = True
        logger.info("pool_paused", running=len(self._tasks))

    async def resume(self) -> None:
        self._paused = False
        self._wake.set()
        logger.info("pool_resumed")


async def _always_true() -> bool:
    return True


async def _always_false() -> bool:
    return False
