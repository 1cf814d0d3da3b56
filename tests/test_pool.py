"""Tests for the autoscaled pool."""

import asyncio
import pytest

from driftnet.pool import AutoscaledPool


class StubSystemStatus:
    """SystemStatus stand-in with a fixed overload answer."""

    def __init__(self, overloaded=False):
        self.overloaded = overloaded

    def start(self):
        pass

    async def stop(self):
        pass

    def is_overloaded(self):
        return self.overloaded


class Workload:
    """Counts dispatched tasks and tracks peak concurrency."""

    def __init__(self, total=None, duration=0.01, fail=False):
        self.total = total
        self.duration = duration
        self.fail = fail
        self.started = 0
        self.finished = 0
        self.running = 0
        self.max_running = 0

    async def task(self):
        self.started += 1
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(self.duration)
            if self.fail:
                raise RuntimeError("task failed")
        finally:
            self.running -= 1
            self.finished += 1

    async def is_ready(self):
        return self.total is None or self.started < self.total

    async def is_finished(self):
        return self.total is not None and self.finished >= self.total


def _pool(work, system_status=None, **kwargs):
    return AutoscaledPool(
        task_fn=work.task,
        is_task_ready_fn=work.is_ready,
        is_finished_fn=work.is_finished,
        system_status=system_status or StubSystemStatus(),
        **kwargs,
    )


@pytest.mark.asyncio
class TestAutoscaledPool:
    """Test dispatch, bounds and lifecycle."""

    async def test_runs_all_tasks(self):
        work = Workload(total=20)
        await _pool(work, min_concurrency=2, max_concurrency=4).run()

        assert work.finished == 20

    async def test_concurrency_never_exceeds_max(self):
        work = Workload(total=40, duration=0.02)
        await _pool(work, min_concurrency=4, max_concurrency=4).run()

        assert work.max_running <= 4
        assert work.max_running == 4

    async def test_task_errors_do_not_crash_pool(self):
        work = Workload(total=5, fail=True)
        await _pool(work).run()

        assert work.finished == 5

    async def test_scales_up_monotonically_under_load(self):
        work = Workload(duration=0.02)
        pool = _pool(
            work,
            min_concurrency=1,
            max_concurrency=8,
            scale_interval=0.05,
            scale_up_step_ratio=0.5,
            poll_interval=0.005,
        )
        runner = asyncio.create_task(pool.run())

        samples = []
        for _ in range(200):
            await asyncio.sleep(0.01)
            samples.append(pool.desired_concurrency)
            if pool.desired_concurrency == 8:
                break

        await pool.stop()
        await runner

        assert samples[-1] == 8
        assert all(a <= b for a, b in zip(samples, samples[1:]))

    async def test_overload_scales_down_to_min(self):
        pool = _pool(Workload(), system_status=StubSystemStatus(overloaded=True), min_concurrency=2, max_concurrency=10)
        pool._desired = 10

        pool._adjust_concurrency()
        assert pool.desired_concurrency == 9

        for _ in range(20):
            pool._adjust_concurrency()
        assert pool.desired_concurrency == 2

    async def test_high_error_ratio_scales_down(self):
        pool = _pool(Workload(), min_concurrency=1, max_concurrency=10, max_error_ratio=0.2)
        pool._desired = 5
        pool._finished_ok = 5
        pool._finished_err = 5
        pool._saturated = True

        pool._adjust_concurrency()

        assert pool.desired_concurrency == 4

    async def test_second_run_raises(self):
        work = Workload(duration=0.05)
        pool = _pool(work)
        runner = asyncio.create_task(pool.run())
        await asyncio.sleep(0.01)

        with pytest.raises(RuntimeError):
            await pool.run()

        await pool.stop()
        await runner

    async def test_stop_drains_in_flight(self):
        work = Workload(duration=0.05)
        pool = _pool(work, min_concurrency=3, max_concurrency=3)
        runner = asyncio.create_task(pool.run())
        await asyncio.sleep(0.02)

        await pool.stop()
        await asyncio.wait_for(runner, timeout=1)

        assert work.running == 0
        assert work.started == work.finished
        assert not pool.is_running

    async def test_pause_and_resume(self):
        work = Workload(duration=0.01)
        pool = _pool(work, min_concurrency=2, max_concurrency=2)
        runner = asyncio.create_task(pool.run())
        await asyncio.sleep(0.03)

        await pool.pause()
        await asyncio.sleep(0.03)
        paused_at = work.started
        await asyncio.sleep(0.05)
        assert work.started == paused_at
        assert pool.is_paused

        await pool.resume()
        await asyncio.sleep(0.05)
        assert work.started > paused_at

        await pool.stop()
        await runner

    async def test_invalid_bounds(self):
        with pytest.raises(ValueError):
            _pool(Workload(), min_concurrency=5, max_concurrency=2)
