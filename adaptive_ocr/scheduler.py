"""
Two-level execution scheduler.

Documents are processed as cooperative tasks bounded by ``group_concurrency``.
Recognition calls are CPU-bound and run in the run-scoped process pool,
bounded by ``worker_count``. A call is only handed to the pool once a worker
slot is free, so its timeout covers execution and not time spent queued.
Stuck and crashed workers are reclaimed by replacing the pool, so one bad
call never holds up or fails the calls of sibling documents.
"""

import asyncio
import time
from concurrent.futures import ProcessPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from typing import List, Sequence

import structlog

from . import tracing
from .context import RunContext
from .logging import log_error_with_context
from .pipeline import Document, failed_result, process_document
from .types import BatchReport, OCRResult
from .worker import (
    OUTCOME_ERROR,
    OUTCOME_TIMEOUT,
    RecognitionRecord,
    RecognitionTask,
    run_recognition,
)

logger = structlog.get_logger(__name__)


class ExecutionScheduler:
    """Bounds document and recognition concurrency for one run."""

    def __init__(self, ctx: RunContext):
        if not ctx.is_open:
            raise RuntimeError("ExecutionScheduler needs an open RunContext")
        self.ctx = ctx
        self.config = ctx.config
        self._group_slots = asyncio.Semaphore(self.config.group_concurrency)
        self._worker_slots = asyncio.Semaphore(self.config.worker_count)
        self.logger = logger.bind(component="ExecutionScheduler")

    async def submit_recognition(self, task: RecognitionTask) -> RecognitionRecord:
        """
        Run one recognition call in the worker pool.

        The call is bounded by its own timeout plus ``timeout_grace``; the
        engine enforces the inner timeout itself. The worker slot is held
        until the worker that ran the call is free again: a call that
        outlives its budget has its worker terminated and the shared pool
        replaced before the slot is released.

        A crashed worker breaks the pool for every call running on it. The
        pool is rebuilt and each affected call is re-run once in a pool of
        its own, so only the call that crashes again is reported as failed.
        Every failure comes back as a record rather than an exception.
        """
        async with self._worker_slots:
            started = time.monotonic()
            executor = self.ctx.executor
            if executor is None:
                return self._parent_record(task, OUTCOME_ERROR, "Run is closed", started)
            try:
                return await self._execute(executor, task)
            except asyncio.TimeoutError:
                self._log_timeout(task)
                self.ctx.recycle_pool(executor, reason="timeout")
                return self._parent_record(
                    task, OUTCOME_TIMEOUT, f"No result within {task.timeout}s", started
                )
            except BrokenProcessPool as e:
                self.logger.warning(
                    "Worker pool broken, re-running call in isolation",
                    image_id=task.image_id,
                    pass_name=task.pass_name,
                    error=str(e),
                )
                if not self.ctx.is_open:
                    return self._parent_record(
                        task, OUTCOME_ERROR, f"Run closed during call: {e}", started
                    )
                self.ctx.recycle_pool(executor, reason="broken")
                return await self._run_isolated(task, started)
            except Exception as e:
                # Pickling and submission failures
                log_error_with_context(
                    self.logger, e, {"image_id": task.image_id, "pass_name": task.pass_name}
                )
                return self._parent_record(
                    task, OUTCOME_ERROR, f"{type(e).__name__}: {e}", started
                )

    async def _execute(
        self, executor: ProcessPoolExecutor, task: RecognitionTask
    ) -> RecognitionRecord:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(executor, run_recognition, task)
        return await asyncio.wait_for(future, timeout=task.timeout + self.config.timeout_grace)

    async def _run_isolated(self, task: RecognitionTask, started: float) -> RecognitionRecord:
        executor = self.ctx.isolated_pool()
        try:
            return await self._execute(executor, task)
        except asyncio.TimeoutError:
            self._log_timeout(task)
            return self._parent_record(
                task, OUTCOME_TIMEOUT, f"No result within {task.timeout}s", started
            )
        except BrokenProcessPool as e:
            log_error_with_context(
                self.logger, e, {"image_id": task.image_id, "pass_name": task.pass_name}
            )
            return self._parent_record(
                task, OUTCOME_ERROR, f"Worker process crashed: {e}", started
            )
        except Exception as e:
            log_error_with_context(
                self.logger, e, {"image_id": task.image_id, "pass_name": task.pass_name}
            )
            return self._parent_record(
                task, OUTCOME_ERROR, f"{type(e).__name__}: {e}", started
            )
        finally:
            self.ctx.retire_pool(executor)

    def _log_timeout(self, task: RecognitionTask) -> None:
        self.logger.warning(
            "Recognition call exceeded its time budget",
            image_id=task.image_id,
            pass_name=task.pass_name,
            timeout=task.timeout,
        )

    def _parent_record(
        self, task: RecognitionTask, outcome: str, message: str, started: float
    ) -> RecognitionRecord:
        return RecognitionRecord(
            image_id=task.image_id,
            pass_name=task.pass_name,
            outcome=outcome,
            error_message=message,
            started=started,
            finished=time.monotonic(),
        )

    async def run_document(self, document: Document) -> List[OCRResult]:
        async with self._group_slots:
            try:
                return await process_document(self.ctx, self, document)
            except Exception as e:
                log_error_with_context(
                    self.logger, e, {"document_id": document.document_id}
                )
                result = failed_result(document.document_id, "internal", str(e))
                self.ctx.sink.emit(
                    tracing.IMAGE_COMPLETED,
                    image_id=result.image_id,
                    status=result.status.value,
                    error_kind=result.error_kind,
                    final_state=result.final_state.value,
                )
                return [result]

    async def run_batch(self, documents: Sequence[Document]) -> BatchReport:
        """
        Process every document and report per-image status.

        Completion order across documents is unspecified; results keep the
        input order. A failing image never affects its siblings.
        """
        started = time.monotonic()
        self.logger.info("Batch started", documents=len(documents))

        per_document = await asyncio.gather(
            *(self.run_document(document) for document in documents)
        )

        report = BatchReport(
            run_id=self.ctx.run_id,
            results=[result for results in per_document for result in results],
            duration=time.monotonic() - started,
        )
        summary = report.summary()
        self.ctx.sink.emit(
            tracing.BATCH_COMPLETED,
            documents=len(documents),
            images=summary["images"],
            completed=summary["completed"],
            degraded=len(report.degraded),
            failed=len(report.failed),
            duration=round(report.duration, 3),
        )
        self.logger.info(
            "Batch completed",
            images=summary["images"],
            degraded=report.degraded,
            failed=report.failed,
        )
        return report
