"""
Run-scoped execution context.

A RunContext is created at the start of a run and destroyed at its end. It
owns the recognition worker pool and the trace sink and is passed explicitly
to every stage; there is no process-wide executor.
"""

import asyncio
import multiprocessing
import time
import uuid
from concurrent.futures import ProcessPoolExecutor
from contextvars import ContextVar
from multiprocessing.process import BaseProcess
from typing import List, Optional, Set

import structlog

from .config import ExecutorConfig
from .logging import bind_run_id, clear_run_context
from .tracing import TraceSink

logger = structlog.get_logger(__name__)

# Guards against nested pools within one task tree
_active_run: ContextVar[Optional[str]] = ContextVar("adaptive_ocr_active_run", default=None)


def terminate_pool(executor: ProcessPoolExecutor) -> List[BaseProcess]:
    """
    Stop a pool without waiting for the calls it is running.

    Worker processes are terminated; calls still pending on the pool fail
    with BrokenProcessPool. Returns the terminated processes so the caller
    can reap them.
    """
    # The executor drops its process table on shutdown, so take it first
    processes = list((getattr(executor, "_processes", None) or {}).values())
    executor.shutdown(wait=False)
    for process in processes:
        if process.is_alive():
            process.terminate()
    return processes


class RunContext:
    """
    Owns the resources of one run.

    Usage::

        async with RunContext.open(config) as ctx:
            ...

    The worker pool is torn down on every exit path, including exceptions
    and cancellation, by terminating its workers rather than waiting for
    them. A context cannot be entered twice, and a second context cannot be
    opened while one is active.
    """

    def __init__(self, config: ExecutorConfig, run_id: Optional[str] = None):
        self.config = config
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.sink: Optional[TraceSink] = None
        self.executor: Optional[ProcessPoolExecutor] = None
        self.pool_generation = 0
        self.started_at: Optional[float] = None
        self._retired: List[BaseProcess] = []
        self._isolated: Set[ProcessPoolExecutor] = set()
        self._token = None
        self.logger = logger.bind(component="RunContext")

    @classmethod
    def open(cls, config: ExecutorConfig, run_id: Optional[str] = None) -> "RunContext":
        return cls(config, run_id)

    @property
    def is_open(self) -> bool:
        return self.executor is not None

    def _new_pool(self, max_workers: int) -> ProcessPoolExecutor:
        mp_context = (
            multiprocessing.get_context(self.config.mp_start_method)
            if self.config.mp_start_method
            else None
        )
        return ProcessPoolExecutor(max_workers=max_workers, mp_context=mp_context)

    def recycle_pool(self, executor: ProcessPoolExecutor, reason: str) -> bool:
        """
        Replace the shared pool after a stuck or crashed worker.

        Only the pool passed in is replaced; if another call already recycled
        it this is a no-op. Runs on the event loop thread without awaiting,
        so the check and the swap cannot interleave with other calls.

        Returns:
            True if this call replaced the pool
        """
        if self.executor is not executor:
            return False
        self._retired.extend(terminate_pool(executor))
        self.executor = self._new_pool(self.config.worker_count)
        self.pool_generation += 1
        self.logger.warning(
            "Worker pool recycled",
            reason=reason,
            generation=self.pool_generation,
        )
        return True

    def isolated_pool(self) -> ProcessPoolExecutor:
        """Single-worker pool for re-running one call away from the shared pool."""
        if not self.is_open:
            raise RuntimeError(f"Run {self.run_id} is closed")
        executor = self._new_pool(1)
        self._isolated.add(executor)
        return executor

    def retire_pool(self, executor: ProcessPoolExecutor) -> None:
        self._isolated.discard(executor)
        self._retired.extend(terminate_pool(executor))

    def _reap(self, processes: List[BaseProcess]) -> int:
        """Join terminated workers; returns how many are still alive."""
        deadline = time.monotonic() + self.config.worker_join_timeout
        for process in processes:
            process.join(max(0.0, deadline - time.monotonic()))
        lingering = [p for p in processes if p.is_alive()]
        for process in lingering:
            process.kill()
        return len(lingering)

    async def __aenter__(self) -> "RunContext":
        if self.is_open:
            raise RuntimeError(f"Run {self.run_id} is already open")
        active = _active_run.get()
        if active is not None:
            raise RuntimeError(f"Cannot open run {self.run_id} inside active run {active}")

        self.sink = TraceSink(self.config.trace_path, run_id=self.run_id)
        self.executor = self._new_pool(self.config.worker_count)
        self._token = _active_run.set(self.run_id)
        self.started_at = time.monotonic()
        bind_run_id(self.run_id)

        self.logger.info(
            "Run started",
            worker_count=self.config.worker_count,
            group_concurrency=self.config.group_concurrency,
            max_concurrent_engine_calls=self.config.max_concurrent_engine_calls,
            engine=self.config.engine,
        )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        try:
            pools = list(self._isolated)
            if self.executor is not None:
                pools.append(self.executor)
            # Closed before any await so that no call can start a new pool
            self.executor = None
            self._isolated.clear()
            # Signals are sent here; waiting for the exits happens off the loop
            for pool in pools:
                self._retired.extend(terminate_pool(pool))
            retired, self._retired = self._retired, []
            if retired:
                lingering = await asyncio.get_running_loop().run_in_executor(
                    None, self._reap, retired
                )
                if lingering:
                    self.logger.warning("Killed workers that ignored termination", count=lingering)
        finally:
            self.executor = None
            if self.sink is not None:
                self.sink.close()
            if self._token is not None:
                _active_run.reset(self._token)
                self._token = None
            self.logger.info(
                "Run finished",
                duration=round(time.monotonic() - (self.started_at or time.monotonic()), 3),
                pool_generation=self.pool_generation,
                error_type=exc_type.__name__ if exc_type else None,
            )
            clear_run_context()
        return False
