"""
Multi-pass recognition state machine for a single image.

States run strictly in order::

    INIT -> PASS1 -> [PASS2] -> MERGE -> [REDACTION_PASS] -> POSTPROCESS -> DONE

ERROR is absorbing and reachable from the recognition states. A PASS1
failure ends the image with a FAILED result. A PASS2 failure is not fatal:
the image continues on the PASS1 text and is marked DEGRADED. A
REDACTION_PASS failure ends in ERROR with the text withheld, since the
unredacted text must not be released.
"""

import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import numpy as np
import structlog

from . import tracing
from .config import ExecutorConfig
from .merge import apply_redaction_placeholders, merge_passes
from .postprocess import postprocess_text
from .preprocessing import stipple_recovery_transform
from .redaction import (
    redaction_bands,
    should_run_redaction_pass,
    stack_bands,
    words_in_redactions,
    words_to_page,
)
from .tracing import TraceSink
from .types import ImageStatus, OCRParams, OCRResult, OCRState, PassTiming, ScoredBox
from .worker import (
    MODE_TEXT,
    MODE_WORDS,
    OUTCOME_OK,
    OUTCOME_TIMEOUT,
    RecognitionRecord,
    RecognitionTask,
)

logger = structlog.get_logger(__name__)

SubmitFn = Callable[[RecognitionTask], Awaitable[RecognitionRecord]]


def error_kind_for(outcome: str) -> str:
    return "timeout" if outcome == OUTCOME_TIMEOUT else "engine"


@dataclass
class _ImageRun:
    """Mutable working state of one image while the machine runs."""
    image_id: str
    image: np.ndarray
    params: OCRParams
    redaction_boxes: List[ScoredBox]
    result: OCRResult
    text: str = ""
    history: List[OCRState] = field(default_factory=list)


class IllegalTransitionError(RuntimeError):
    """The state machine attempted a transition its table does not allow."""


class OCROrchestrator:
    """Runs the recognition passes for one image and merges their output."""

    TRANSITIONS = {
        OCRState.INIT: {OCRState.PASS1},
        OCRState.PASS1: {OCRState.PASS2, OCRState.MERGE, OCRState.ERROR},
        OCRState.PASS2: {OCRState.MERGE, OCRState.ERROR},
        OCRState.MERGE: {OCRState.REDACTION_PASS, OCRState.POSTPROCESS},
        OCRState.REDACTION_PASS: {OCRState.POSTPROCESS, OCRState.ERROR},
        OCRState.POSTPROCESS: {OCRState.DONE},
        OCRState.DONE: set(),
        OCRState.ERROR: set(),
    }

    TERMINAL_STATES = {OCRState.DONE, OCRState.ERROR}

    def __init__(
        self,
        config: ExecutorConfig,
        sink: TraceSink,
        submit: SubmitFn,
    ):
        self.config = config
        self.sink = sink
        self.submit = submit
        self.logger = logger.bind(component="OCROrchestrator")

        self._handlers: Dict[OCRState, Callable[[_ImageRun], Awaitable[OCRState]]] = {
            OCRState.INIT: self._init,
            OCRState.PASS1: self._pass1,
            OCRState.PASS2: self._pass2,
            OCRState.MERGE: self._merge,
            OCRState.REDACTION_PASS: self._redaction_pass,
            OCRState.POSTPROCESS: self._postprocess,
        }

    async def run(
        self,
        image_id: str,
        image: np.ndarray,
        params: OCRParams,
        redaction_boxes: Optional[Sequence[ScoredBox]] = None,
    ) -> OCRResult:
        """
        Drive one image through the state machine.

        Args:
            image_id: Identifier used in results and trace events
            image: Prepared grayscale image
            params: Recommended parameters for this image
            redaction_boxes: Validated redaction boxes in ``image`` coordinates

        Returns:
            OCRResult; engine failures are reported in its status, never raised
        """
        run = _ImageRun(
            image_id=image_id,
            image=image,
            params=params,
            redaction_boxes=list(redaction_boxes or []),
            result=OCRResult(image_id=image_id, params=params),
        )

        state = OCRState.INIT
        run.history.append(state)
        while state not in self.TERMINAL_STATES:
            next_state = await self._handlers[state](run)
            self._check_transition(state, next_state)
            state = next_state
            run.history.append(state)

        run.result.final_state = state
        return run.result

    def _check_transition(self, current: OCRState, target: OCRState) -> None:
        if target not in self.TRANSITIONS[current]:
            raise IllegalTransitionError(
                f"Illegal transition {current.value} -> {target.value}"
            )

    async def _init(self, run: _ImageRun) -> OCRState:
        # Decision input is reported before any recognition call is made
        self.sink.emit(
            tracing.DECISION,
            image_id=run.image_id,
            enable_two_pass=run.params.enable_two_pass,
            reason=run.params.reason,
            rules_applied=len(run.params.reasons),
            scale_factor=run.params.scale_factor,
            deskew=run.params.deskew,
            invert=run.params.invert,
            enhance_contrast=run.params.enhance_contrast,
        )
        return OCRState.PASS1

    async def _pass1(self, run: _ImageRun) -> OCRState:
        record = await self._recognize(run, OCRState.PASS1, run.image, MODE_TEXT)
        if not record.ok:
            self._fail(run, record)
            return OCRState.ERROR

        run.result.per_pass_text[OCRState.PASS1.value] = record.text
        return OCRState.PASS2 if run.params.enable_two_pass else OCRState.MERGE

    async def _pass2(self, run: _ImageRun) -> OCRState:
        stippled = stipple_recovery_transform(
            run.image,
            kernel_size=self.config.stipple_dilate_kernel,
            iterations=self.config.stipple_dilate_iterations,
        )
        record = await self._recognize(run, OCRState.PASS2, stippled, MODE_TEXT)
        if record.ok:
            run.result.per_pass_text[OCRState.PASS2.value] = record.text
        else:
            run.result.status = ImageStatus.DEGRADED
            run.result.error_kind = error_kind_for(record.outcome)
            run.result.error_message = record.error_message
            self.logger.warning(
                "Stipple recovery pass failed, continuing with baseline text",
                image_id=run.image_id,
                outcome=record.outcome,
                error=record.error_message,
            )
        return OCRState.MERGE

    async def _merge(self, run: _ImageRun) -> OCRState:
        started = time.monotonic()
        merged = merge_passes(
            run.result.per_pass_text[OCRState.PASS1.value],
            run.result.per_pass_text.get(OCRState.PASS2.value),
        )
        run.text = merged.text
        self._record_local_pass(
            run,
            OCRState.MERGE,
            started,
            lines_from_pass1=merged.lines_from_pass1,
            lines_from_pass2=merged.lines_from_pass2,
        )

        if should_run_redaction_pass(run.redaction_boxes):
            return OCRState.REDACTION_PASS
        return OCRState.POSTPROCESS

    async def _redaction_pass(self, run: _ImageRun) -> OCRState:
        # Only the rows around validated boxes are read
        spans = redaction_bands(
            run.redaction_boxes, run.image.shape[0], self.config.redaction_band_margin
        )
        stacked, bands = stack_bands(run.image, spans, self.config.redaction_band_gap)
        record = await self._recognize(run, OCRState.REDACTION_PASS, stacked, MODE_WORDS)
        if not record.ok:
            self._fail(run, record)
            # Unredacted text is never released
            run.result.per_pass_text.clear()
            run.text = ""
            return OCRState.ERROR

        words, regions = words_to_page(record.words, bands)
        flags = words_in_redactions(words, run.redaction_boxes, self.config.word_overlap_min)
        run.text, inserted = apply_redaction_placeholders(
            run.text, words, flags, self.config.redaction_placeholder, regions=regions
        )
        run.result.redaction_placeholders_inserted = inserted
        self.logger.debug(
            "Redaction placeholders applied",
            image_id=run.image_id,
            bands=len(bands),
            rows_read=stacked.shape[0],
            page_rows=run.image.shape[0],
            words=len(words),
            redacted_words=sum(flags),
            inserted=inserted,
        )
        return OCRState.POSTPROCESS

    async def _postprocess(self, run: _ImageRun) -> OCRState:
        started = time.monotonic()
        run.result.merged_text = postprocess_text(
            run.text, self.config.redaction_placeholder
        )
        self._record_local_pass(run, OCRState.POSTPROCESS, started)
        return OCRState.DONE

    async def _recognize(
        self, run: _ImageRun, state: OCRState, image: np.ndarray, mode: str
    ) -> RecognitionRecord:
        task = RecognitionTask(
            image_id=run.image_id,
            pass_name=state.value,
            image=image,
            engine_path=self.config.engine,
            engine_options=dict(self.config.engine_options),
            timeout=self.config.timeout_for(state.value),
            mode=mode,
        )
        record = await self.submit(task)

        error_kind = None if record.ok else error_kind_for(record.outcome)
        run.result.timings.append(
            PassTiming(
                pass_name=state.value,
                duration=record.duration,
                outcome=record.outcome,
                worker_pid=record.worker_pid or None,
                error_kind=error_kind,
            )
        )
        # Emitted here, from the record the worker returned
        self.sink.emit(
            tracing.PASS,
            image_id=run.image_id,
            pass_name=state.value,
            duration=round(record.duration, 4),
            outcome=record.outcome,
            worker_pid=record.worker_pid or None,
            error_kind=error_kind,
            started=record.started,
            finished=record.finished,
        )
        return record

    def _record_local_pass(
        self, run: _ImageRun, state: OCRState, started: float, **extra
    ) -> None:
        finished = time.monotonic()
        duration = finished - started
        run.result.timings.append(
            PassTiming(pass_name=state.value, duration=duration, outcome=OUTCOME_OK)
        )
        self.sink.emit(
            tracing.PASS,
            image_id=run.image_id,
            pass_name=state.value,
            duration=round(duration, 4),
            outcome=OUTCOME_OK,
            worker_pid=None,
            error_kind=None,
            started=started,
            finished=finished,
            **extra,
        )

    def _fail(self, run: _ImageRun, record: RecognitionRecord) -> None:
        run.result.status = ImageStatus.FAILED
        run.result.error_kind = error_kind_for(record.outcome)
        run.result.error_message = record.error_message
        run.result.merged_text = ""
        self.logger.warning(
            "Recognition failed",
            image_id=run.image_id,
            pass_name=record.pass_name,
            outcome=record.outcome,
            error=record.error_message,
        )
