"""
Scheduler tests against real worker processes.
"""

import asyncio
import time

import numpy as np
import pytest

from adaptive_ocr.context import RunContext
from adaptive_ocr.scheduler import ExecutionScheduler
from adaptive_ocr.worker import OUTCOME_ERROR, OUTCOME_OK, OUTCOME_TIMEOUT, RecognitionTask


def slow_task(index: int, delay: float, timeout: float = 10.0, **options) -> RecognitionTask:
    return RecognitionTask(
        image_id=f"img-{index}",
        pass_name="pass1",
        image=np.full((32, 32), 255, dtype=np.uint8),
        engine_path="tests.fakes:SlowEngine",
        engine_options={"delay": delay, **options},
        timeout=timeout,
    )


def crash_task(index: int, width: int) -> RecognitionTask:
    return RecognitionTask(
        image_id=f"img-{index}",
        pass_name="pass1",
        image=np.full((32, width), 255, dtype=np.uint8),
        engine_path="tests.fakes:CrashOnWidthEngine",
        engine_options={"delay": 0.2, "text": "still here"},
        timeout=10.0,
    )


def max_overlap(intervals) -> int:
    """Largest number of intervals open at the same instant."""
    points = []
    for started, finished in intervals:
        points.append((started, 1))
        points.append((finished, -1))
    # Ends sort before starts at equal timestamps
    points.sort(key=lambda p: (p[0], p[1]))
    current = peak = 0
    for _, delta in points:
        current += delta
        peak = max(peak, current)
    return peak


@pytest.mark.integration
class TestWorkerConcurrency:

    @pytest.mark.asyncio
    async def test_worker_count_bounds_concurrent_calls(self, make_config):
        config = make_config(worker_count=2, group_concurrency=10)
        async with RunContext.open(config) as ctx:
            scheduler = ExecutionScheduler(ctx)
            records = await asyncio.gather(
                *(scheduler.submit_recognition(slow_task(i, 0.2)) for i in range(12))
            )

        assert all(r.outcome == OUTCOME_OK for r in records)
        assert max_overlap([(r.started, r.finished) for r in records]) <= 2

    @pytest.mark.asyncio
    async def test_calls_run_in_worker_processes(self, make_config):
        import os

        async with RunContext.open(make_config(worker_count=2)) as ctx:
            scheduler = ExecutionScheduler(ctx)
            records = await asyncio.gather(
                *(scheduler.submit_recognition(slow_task(i, 0.05)) for i in range(4))
            )

        pids = {r.worker_pid for r in records}
        assert os.getpid() not in pids

    @pytest.mark.asyncio
    async def test_engine_timeout_is_a_tagged_record(self, make_config):
        async with RunContext.open(make_config(worker_count=1)) as ctx:
            scheduler = ExecutionScheduler(ctx)
            record = await scheduler.submit_recognition(slow_task(0, 2.0, timeout=0.1))

        assert record.outcome == OUTCOME_TIMEOUT

    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_stuck_worker_is_bounded_by_outer_timeout(self, make_config):
        config = make_config(worker_count=1, timeout_grace=0.1)
        async with RunContext.open(config) as ctx:
            scheduler = ExecutionScheduler(ctx)
            record = await scheduler.submit_recognition(
                slow_task(0, 1.0, timeout=0.2, ignore_timeout=True)
            )

        assert record.outcome == OUTCOME_TIMEOUT
        assert record.worker_pid == 0
        assert record.duration < 1.0


@pytest.mark.integration
class TestWorkerFailures:
    """A stuck or crashed worker only costs the call it was running."""

    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_stuck_worker_does_not_hold_up_sibling(self, make_config):
        config = make_config(worker_count=1, timeout_grace=0.1)
        ctx = RunContext.open(config)
        async with ctx:
            scheduler = ExecutionScheduler(ctx)
            stuck, sibling = await asyncio.gather(
                scheduler.submit_recognition(
                    slow_task(0, 30.0, timeout=0.2, ignore_timeout=True)
                ),
                scheduler.submit_recognition(slow_task(1, 0.05, timeout=5.0)),
            )
            exiting = time.monotonic()

        assert time.monotonic() - exiting < 5.0
        assert stuck.outcome == OUTCOME_TIMEOUT
        assert sibling.outcome == OUTCOME_OK
        assert ctx.pool_generation == 1

    @pytest.mark.asyncio
    async def test_teardown_does_not_wait_for_running_calls(self, make_config):
        ctx = RunContext.open(make_config(worker_count=1))
        async with ctx:
            scheduler = ExecutionScheduler(ctx)
            call = asyncio.ensure_future(
                scheduler.submit_recognition(slow_task(0, 30.0, ignore_timeout=True))
            )
            await asyncio.sleep(0.5)
            exiting = time.monotonic()

        assert time.monotonic() - exiting < 5.0
        record = await asyncio.wait_for(call, timeout=5.0)
        assert record.outcome == OUTCOME_ERROR

    @pytest.mark.asyncio
    @pytest.mark.parametrize("worker_count", [1, 2])
    async def test_crashed_worker_fails_only_its_call(self, make_config, worker_count):
        config = make_config(worker_count=worker_count)
        tasks = [crash_task(index, width=32) for index in range(4)]
        tasks.insert(1, crash_task(99, width=333))

        async with RunContext.open(config) as ctx:
            scheduler = ExecutionScheduler(ctx)
            records = await asyncio.gather(
                *(scheduler.submit_recognition(task) for task in tasks)
            )

        by_id = {record.image_id: record for record in records}
        crashed = by_id.pop("img-99")
        assert crashed.outcome == OUTCOME_ERROR
        assert "crashed" in crashed.error_message
        assert all(record.outcome == OUTCOME_OK for record in by_id.values())
        assert all(record.text == "still here" for record in by_id.values())
        assert ctx.pool_generation >= 1


@pytest.mark.integration
class TestRunContext:

    @pytest.mark.asyncio
    async def test_pool_is_released_on_exception(self, config):
        ctx = RunContext.open(config)
        with pytest.raises(ValueError):
            async with ctx:
                assert ctx.is_open
                raise ValueError("boom")
        assert not ctx.is_open

    @pytest.mark.asyncio
    async def test_context_is_not_reentrant(self, config):
        async with RunContext.open(config) as ctx:
            with pytest.raises(RuntimeError):
                async with ctx:
                    pass
            with pytest.raises(RuntimeError):
                async with RunContext.open(config):
                    pass
        assert not ctx.is_open

    @pytest.mark.asyncio
    async def test_scheduler_needs_open_context(self, config):
        with pytest.raises(RuntimeError):
            ExecutionScheduler(RunContext(config))
