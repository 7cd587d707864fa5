"""
Adaptive OCR stage.

Profiles each page image, decides how aggressively to process it, runs one
to three recognition passes against an external engine in a bounded process
pool, masks validated redaction regions and reports structured trace events.
"""

from .config import ExecutorConfig, load_config
from .context import RunContext
from .engine import RecognitionEngine, TesseractEngine, load_engine
from .merge import apply_redaction_placeholders, line_quality, merge_passes
from .orchestrator import OCROrchestrator
from .pipeline import Document, process_document
from .postprocess import postprocess_text
from .preprocessing import ImagePreprocessor, decode_frames, downscale_to_target_dpi
from .profiler import ImageProfiler
from .recommender import recommend
from .redaction import RedactionDetector, RedactionValidator, detect_and_validate
from .scheduler import ExecutionScheduler
from .tracing import TraceEvent, TraceSink
from .types import (
    BatchReport,
    ConfigValidationError,
    DownscaleError,
    ImageDecodeError,
    ImageProfile,
    ImageStatus,
    OCREngineError,
    OCRError,
    OCRParams,
    OCRResult,
    OCRState,
    OCRTimeoutError,
    RedactionCandidateBox,
    ScoredBox,
    WordBox,
)

__all__ = [
    # Run surface
    "ExecutorConfig",
    "load_config",
    "RunContext",
    "ExecutionScheduler",
    "Document",
    "process_document",
    # Components
    "ImageProfiler",
    "recommend",
    "ImagePreprocessor",
    "decode_frames",
    "downscale_to_target_dpi",
    "RedactionDetector",
    "RedactionValidator",
    "detect_and_validate",
    "OCROrchestrator",
    "merge_passes",
    "line_quality",
    "apply_redaction_placeholders",
    "postprocess_text",
    # Engines
    "RecognitionEngine",
    "TesseractEngine",
    "load_engine",
    # Tracing
    "TraceEvent",
    "TraceSink",
    # Data types
    "ImageProfile",
    "OCRParams",
    "RedactionCandidateBox",
    "ScoredBox",
    "WordBox",
    "OCRResult",
    "BatchReport",
    "ImageStatus",
    "OCRState",
    # Exceptions
    "OCRError",
    "ImageDecodeError",
    "OCREngineError",
    "OCRTimeoutError",
    "DownscaleError",
    "ConfigValidationError",
]

__version__ = "0.1.0"
