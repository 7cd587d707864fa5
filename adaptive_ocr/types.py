"""
Type definitions for adaptive OCR processing.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


DPI_UNKNOWN = 0


class OCRError(Exception):
    """Base exception for OCR processing errors."""

    def __init__(self, message: str, image_id: Optional[str] = None):
        self.image_id = image_id
        super().__init__(message)


class ImageDecodeError(OCRError):
    """Input bytes could not be decoded into an image."""


class OCREngineError(OCRError):
    """The recognition engine failed."""


class OCRTimeoutError(OCREngineError):
    """A recognition call exceeded its time budget."""


class DownscaleError(OCRError):
    """DPI downscaling failed; callers fall back to the unscaled image."""


class ConfigValidationError(ValueError):
    """Run configuration is malformed. Fatal at startup."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        self.errors = errors or []
        super().__init__(message)


class ImageStatus(str, Enum):
    COMPLETED = "completed"
    DEGRADED = "degraded"
    FAILED = "failed"


class OCRState(str, Enum):
    INIT = "init"
    PASS1 = "pass1"
    PASS2 = "pass2"
    MERGE = "merge"
    REDACTION_PASS = "redaction_pass"
    POSTPROCESS = "postprocess"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class ImageProfile:
    """Statistical snapshot of a grayscale page image."""
    otsu_separability: float
    noise_sigma: float
    stroke_width: float
    num_noise_specks: int
    is_bilevel: bool
    skew_angle: float
    detected_dpi: int = DPI_UNKNOWN
    width: int = 0
    height: int = 0
    mean_intensity: float = 255.0

    @property
    def has_known_dpi(self) -> bool:
        return self.detected_dpi > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "otsu_separability": round(self.otsu_separability, 4),
            "noise_sigma": round(self.noise_sigma, 4),
            "stroke_width": round(self.stroke_width, 4),
            "num_noise_specks": self.num_noise_specks,
            "is_bilevel": self.is_bilevel,
            "skew_angle": round(self.skew_angle, 3),
            "detected_dpi": self.detected_dpi,
        }


@dataclass(frozen=True)
class OCRParams:
    """Execution parameters recommended for one image."""
    enable_two_pass: bool
    reason: str
    # Advisory only. Downscaling is driven by detected DPI.
    scale_factor: float = 1.0
    reasons: Tuple[str, ...] = ()
    deskew: bool = False
    invert: bool = False
    enhance_contrast: bool = False


@dataclass(frozen=True)
class RedactionCandidateBox:
    """Dark solid region that may be a redaction bar."""
    x: int
    y: int
    w: int
    h: int
    darkness: float
    solidity: float
    aspect_ratio: float
    area: int

    @property
    def xyxy(self) -> Tuple[int, int, int, int]:
        return (self.x, self.y, self.x + self.w, self.y + self.h)


@dataclass(frozen=True)
class ScoredBox:
    """Candidate box with confidence subscores."""
    candidate: RedactionCandidateBox
    uniformity: float
    edge_density: float
    boundary_contrast: float
    score: float
    validated: bool


@dataclass(frozen=True)
class WordBox:
    """Word-level recognition output with pixel geometry."""
    text: str
    x: int
    y: int
    w: int
    h: int
    confidence: float = -1.0
    line_key: Tuple[int, ...] = ()

    @property
    def xyxy(self) -> Tuple[int, int, int, int]:
        return (self.x, self.y, self.x + self.w, self.y + self.h)

    @property
    def area(self) -> int:
        return max(0, self.w) * max(0, self.h)


@dataclass
class PassTiming:
    """Timing and outcome of one orchestrator pass."""
    pass_name: str
    duration: float
    outcome: str
    worker_pid: Optional[int] = None
    error_kind: Optional[str] = None


@dataclass
class OCRResult:
    """Per-image result of the adaptive OCR stage."""
    image_id: str
    merged_text: str = ""
    per_pass_text: Dict[str, str] = field(default_factory=dict)
    timings: List[PassTiming] = field(default_factory=list)
    redaction_placeholders_inserted: int = 0
    status: ImageStatus = ImageStatus.COMPLETED
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    final_state: OCRState = OCRState.DONE
    params: Optional[OCRParams] = None
    profile: Optional[ImageProfile] = None
    downscaled: bool = False

    @property
    def needs_review(self) -> bool:
        return self.status != ImageStatus.COMPLETED

    @property
    def total_duration(self) -> float:
        return sum(t.duration for t in self.timings)

    def get_summary(self) -> Dict[str, Any]:
        return {
            "image_id": self.image_id,
            "status": self.status.value,
            "error_kind": self.error_kind,
            "final_state": self.final_state.value,
            "passes": [t.pass_name for t in self.timings],
            "characters": len(self.merged_text),
            "redaction_placeholders": self.redaction_placeholders_inserted,
            "two_pass": self.params.enable_two_pass if self.params else None,
            "downscaled": self.downscaled,
            "duration": round(self.total_duration, 3),
        }


@dataclass
class BatchReport:
    """Outcome of one batch run. Failed and degraded images are enumerated."""
    run_id: str
    results: List[OCRResult] = field(default_factory=list)
    duration: float = 0.0

    @property
    def failed(self) -> List[str]:
        return [r.image_id for r in self.results if r.status == ImageStatus.FAILED]

    @property
    def degraded(self) -> List[str]:
        return [r.image_id for r in self.results if r.status == ImageStatus.DEGRADED]

    def get(self, image_id: str) -> Optional[OCRResult]:
        for result in self.results:
            if result.image_id == image_id:
                return result
        return None

    def summary(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "images": len(self.results),
            "completed": len(self.results) - len(self.failed) - len(self.degraded),
            "degraded": self.degraded,
            "failed": self.failed,
            "duration": round(self.duration, 3),
        }
