"""
Per-document processing pipeline.

decode -> profile -> recommend -> prepare -> redaction gate -> orchestrator,
applied to every frame of the document.
"""

import asyncio
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Union

import cv2
import structlog

from . import tracing
from .context import RunContext
from .logging import log_error_with_context
from .orchestrator import OCROrchestrator
from .preprocessing import DecodedFrame, ImagePreprocessor, decode_frames
from .profiler import ImageProfiler
from .recommender import recommend
from .redaction import detect_and_validate
from .types import ImageDecodeError, ImageStatus, OCRResult, OCRState

if TYPE_CHECKING:
    from .scheduler import ExecutionScheduler

logger = structlog.get_logger(__name__)


@dataclass
class Document:
    """Raw input for one document. ``dpi`` overrides embedded metadata."""
    document_id: str
    data: bytes
    dpi: Optional[int] = None

    @classmethod
    def from_path(cls, path: Union[str, Path], dpi: Optional[int] = None) -> "Document":
        path = Path(path)
        return cls(document_id=path.name, data=path.read_bytes(), dpi=dpi)


def frame_image_id(document_id: str, frame: DecodedFrame, frame_count: int) -> str:
    if frame_count == 1:
        return document_id
    return f"{document_id}#{frame.index}"


def failed_result(image_id: str, error_kind: str, message: str) -> OCRResult:
    return OCRResult(
        image_id=image_id,
        status=ImageStatus.FAILED,
        error_kind=error_kind,
        error_message=message,
        final_state=OCRState.ERROR,
    )


def _emit_completed(ctx: RunContext, result: OCRResult) -> None:
    ctx.sink.emit(
        tracing.IMAGE_COMPLETED,
        image_id=result.image_id,
        status=result.status.value,
        error_kind=result.error_kind,
        final_state=result.final_state.value,
        characters=len(result.merged_text),
        redaction_placeholders=result.redaction_placeholders_inserted,
        downscaled=result.downscaled,
    )


async def process_document(
    ctx: RunContext, scheduler: "ExecutionScheduler", document: Document
) -> List[OCRResult]:
    """
    Process every frame of one document.

    A document that cannot be decoded yields a single FAILED result. A frame
    that fails unexpectedly yields a FAILED result for that frame only.
    """
    loop = asyncio.get_running_loop()
    try:
        frames = await loop.run_in_executor(None, decode_frames, document.data, ctx.config)
    except ImageDecodeError as e:
        logger.warning("Document could not be decoded", document_id=document.document_id, error=str(e))
        result = failed_result(document.document_id, "decode", str(e))
        _emit_completed(ctx, result)
        return [result]

    results = []
    for frame in frames:
        image_id = frame_image_id(document.document_id, frame, len(frames))
        try:
            result = await process_frame(ctx, scheduler, image_id, frame, document.dpi)
        except Exception as e:
            # Only this frame fails; earlier and later frames keep their results
            log_error_with_context(logger, e, {"image_id": image_id})
            result = failed_result(image_id, "internal", f"{type(e).__name__}: {e}")
            _emit_completed(ctx, result)
        results.append(result)
    return results


async def process_frame(
    ctx: RunContext,
    scheduler: "ExecutionScheduler",
    image_id: str,
    frame: DecodedFrame,
    dpi: Optional[int] = None,
) -> OCRResult:
    config = ctx.config
    loop = asyncio.get_running_loop()

    try:
        profile = await loop.run_in_executor(
            None, ImageProfiler(config).analyze, frame.image, dpi or frame.dpi or None
        )
    except ImageDecodeError as e:
        logger.warning("Frame could not be profiled", image_id=image_id, error=str(e))
        result = failed_result(image_id, "decode", str(e))
        _emit_completed(ctx, result)
        return result

    params = recommend(profile, config)

    preprocessor = ImagePreprocessor(config, ctx.sink)
    prepared = await loop.run_in_executor(
        None,
        partial(
            preprocessor.prepare,
            frame,
            params,
            profile.detected_dpi,
            skew_angle=profile.skew_angle,
            is_bilevel=profile.is_bilevel,
            image_id=image_id,
        ),
    )

    validated = []
    if config.redaction_enabled:
        # Bars are dark on the page; undo inversion before looking for them
        view = cv2.bitwise_not(prepared.image) if params.invert else prepared.image
        validated = await loop.run_in_executor(
            None, detect_and_validate, view, config, ctx.sink, image_id
        )

    orchestrator = OCROrchestrator(config, ctx.sink, scheduler.submit_recognition)
    result = await orchestrator.run(image_id, prepared.image, params, validated)
    result.profile = profile
    result.downscaled = prepared.downscaled

    _emit_completed(ctx, result)
    logger.info(
        "Image processed",
        image_id=image_id,
        status=result.status.value,
        two_pass=params.enable_two_pass,
        passes=[t.pass_name for t in result.timings],
    )
    return result
