"""
Run-scoped configuration for the adaptive OCR stage.

Resolved once per run from defaults, environment (``ADAPTIVE_OCR_*``), an
optional YAML file and explicit overrides. Immutable for the life of the run.
"""

from pathlib import Path
from typing import Any, Dict, Optional, Union

import structlog
import yaml
from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .types import ConfigValidationError

logger = structlog.get_logger(__name__)


class ExecutorConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ADAPTIVE_OCR_",
        frozen=True,
        extra="forbid",
    )

    # Concurrency
    worker_count: int = Field(2, ge=1, le=64)
    group_concurrency: int = Field(10, ge=1, le=256)
    mp_start_method: Optional[str] = None
    # Seconds to wait for terminated workers to exit at teardown
    worker_join_timeout: float = Field(5.0, gt=0)

    # Per-pass timeouts (seconds)
    pass1_timeout: float = Field(60.0, gt=0)
    pass2_timeout: float = Field(60.0, gt=0)
    redaction_pass_timeout: float = Field(90.0, gt=0)
    # Extra time the orchestrating side waits beyond the engine's own timeout
    timeout_grace: float = Field(5.0, ge=0)

    # Recognition engine
    engine: str = "adaptive_ocr.engine:TesseractEngine"
    engine_options: Dict[str, Any] = Field(
        default_factory=lambda: {"lang": "eng", "oem": 3, "psm": 6}
    )

    # Two-pass policy
    thin_stroke_max: float = 2.0
    thick_stroke_min: float = 8.0
    clean_min_separability: float = Field(0.7, ge=0.0, le=1.0)
    clean_max_noise_sigma: float = Field(5.0, ge=0.0)
    clean_min_stroke_width: float = Field(2.5, ge=0.0)
    clean_max_speckles: int = Field(200, ge=0)
    high_noise_sigma: float = Field(10.0, ge=0.0)

    # Profiler
    speck_max_area: int = Field(4, ge=1)
    bilevel_pixel_ratio: float = Field(0.98, gt=0.0, le=1.0)
    dpi_aspect_min: float = 1.2
    dpi_aspect_max: float = 1.7

    # Preprocessing
    smooth_bilevel: bool = True
    deskew_min_angle: float = Field(0.5, ge=0.0)
    deskew_max_angle: float = Field(10.0, gt=0.0)
    invert_mean_threshold: float = Field(100.0, ge=0.0, le=255.0)
    contrast_min_separability: float = Field(0.5, ge=0.0, le=1.0)
    pdf_render_dpi: int = Field(300, ge=36, le=1200)

    # DPI downscaling
    downscale_enabled: bool = True
    dpi_downscale_threshold: int = Field(250, gt=0)
    target_dpi: int = Field(200, gt=0)

    # Stipple recovery (PASS2)
    stipple_dilate_kernel: int = Field(2, ge=1, le=9)
    stipple_dilate_iterations: int = Field(1, ge=1, le=5)

    # Redaction detection
    redaction_enabled: bool = True
    min_width: int = Field(50, ge=1)
    min_height: int = Field(8, ge=1)
    min_aspect_ratio: float = Field(2.0, gt=0.0)
    min_area: int = Field(1000, ge=1)
    darkness_threshold: int = Field(20, ge=0, le=255)
    min_solidity: float = Field(0.85, ge=0.0, le=1.0)
    max_width_ratio: float = Field(0.95, gt=0.0, le=1.0)

    # Redaction validation
    redaction_confidence_threshold: float = Field(0.65, ge=0.0, le=1.0)
    uniformity_weight: float = Field(0.4, ge=0.0)
    edge_density_weight: float = Field(0.3, ge=0.0)
    boundary_contrast_weight: float = Field(0.3, ge=0.0)
    uniformity_std_scale: float = Field(40.0, gt=0.0)
    max_edge_density: float = Field(0.15, gt=0.0, le=1.0)
    boundary_contrast_scale: float = Field(128.0, gt=0.0)
    boundary_ring: int = Field(4, ge=1)
    word_overlap_min: float = Field(0.3, gt=0.0, le=1.0)
    redaction_placeholder: str = "[REDACTED]"
    # Rows of context kept above and below each validated box for the word pass
    redaction_band_margin: int = Field(48, ge=0)
    redaction_band_gap: int = Field(16, ge=0)

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"
    trace_path: Optional[Path] = None

    @field_validator("engine")
    @classmethod
    def engine_path_has_class(cls, v: str) -> str:
        module, _, attr = v.partition(":")
        if not module or not attr:
            raise ValueError("engine must be a 'module:Class' path")
        return v

    @field_validator("log_format")
    @classmethod
    def known_log_format(cls, v: str) -> str:
        if v not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return v

    @field_validator("mp_start_method")
    @classmethod
    def known_start_method(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in ("fork", "spawn", "forkserver"):
            raise ValueError("mp_start_method must be fork, spawn or forkserver")
        return v

    @model_validator(mode="after")
    def check_cross_field_thresholds(self) -> "ExecutorConfig":
        if self.thin_stroke_max >= self.thick_stroke_min:
            raise ValueError("thin_stroke_max must be below thick_stroke_min")
        if self.target_dpi >= self.dpi_downscale_threshold:
            raise ValueError("target_dpi must be below dpi_downscale_threshold")
        if self.dpi_aspect_min >= self.dpi_aspect_max:
            raise ValueError("dpi_aspect_min must be below dpi_aspect_max")
        weights = (
            self.uniformity_weight
            + self.edge_density_weight
            + self.boundary_contrast_weight
        )
        if weights <= 0:
            raise ValueError("redaction subscore weights must not all be zero")
        return self

    @property
    def max_concurrent_engine_calls(self) -> int:
        """Worst-case concurrent engine subprocesses; a memory budget knob."""
        return self.group_concurrency * self.worker_count

    def timeout_for(self, pass_name: str) -> float:
        return {
            "pass1": self.pass1_timeout,
            "pass2": self.pass2_timeout,
            "redaction_pass": self.redaction_pass_timeout,
        }[pass_name]

    @classmethod
    def from_yaml(cls, config_path: Path, **overrides: Any) -> "ExecutorConfig":
        """Load configuration from a YAML file; overrides win over file values."""
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigValidationError(f"Cannot read config {config_path}: {e}")

        if not isinstance(data, dict):
            raise ConfigValidationError(
                f"Config {config_path} must contain a mapping at top level"
            )

        # Allow the settings to live under an ``ocr`` section
        if "ocr" in data and isinstance(data["ocr"], dict):
            data = data["ocr"]

        data.update(overrides)
        return _build(data)


def _build(values: Dict[str, Any]) -> ExecutorConfig:
    try:
        return ExecutorConfig(**values)
    except ValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise ConfigValidationError(
            f"Invalid run configuration: {len(errors)} error(s)", errors
        ) from e


def load_config(
    config_path: Optional[Union[str, Path]] = None, **overrides: Any
) -> ExecutorConfig:
    """
    Resolve the run configuration once.

    Raises:
        ConfigValidationError: if any value is malformed
    """
    if config_path is not None:
        config = ExecutorConfig.from_yaml(Path(config_path), **overrides)
    else:
        config = _build(overrides)

    logger.info(
        "Run configuration resolved",
        config_path=str(config_path) if config_path else None,
        worker_count=config.worker_count,
        group_concurrency=config.group_concurrency,
        max_concurrent_engine_calls=config.max_concurrent_engine_calls,
    )
    return config
