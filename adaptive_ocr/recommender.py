"""
Parameter recommendation policy.

``recommend(profile, config)`` is a pure function: the same profile and
configuration always produce the same OCRParams. Two-pass rules are applied in
a fixed order and later rules win:

1. thin strokes force two-pass on
2. thick strokes switch it off
3. a clean document switches it off
4. high noise forces it on, overriding the clean-document rule
"""

from typing import List, Optional, Tuple

from .config import ExecutorConfig
from .types import ImageProfile, OCRParams

DEFAULT_REASON = "default: two-pass enabled"


def is_clean_document(profile: ImageProfile, config: ExecutorConfig) -> bool:
    """All five clean-document conditions hold. Comparisons are strict."""
    return (
        not profile.is_bilevel
        and profile.otsu_separability > config.clean_min_separability
        and profile.noise_sigma < config.clean_max_noise_sigma
        and profile.stroke_width > config.clean_min_stroke_width
        and profile.num_noise_specks < config.clean_max_speckles
    )


def _two_pass_decision(
    profile: ImageProfile, config: ExecutorConfig
) -> Tuple[bool, List[str]]:
    enabled = True
    reasons = [DEFAULT_REASON]

    if profile.stroke_width <= config.thin_stroke_max:
        enabled = True
        reasons.append(
            f"thin strokes: stroke_width={profile.stroke_width:.2f} "
            f"<= {config.thin_stroke_max}"
        )

    if profile.stroke_width > config.thick_stroke_min:
        enabled = False
        reasons.append(
            f"thick strokes: stroke_width={profile.stroke_width:.2f} "
            f"> {config.thick_stroke_min}"
        )

    if is_clean_document(profile, config):
        enabled = False
        reasons.append(
            "clean document: "
            f"separability={profile.otsu_separability:.3f}, "
            f"noise_sigma={profile.noise_sigma:.2f}, "
            f"stroke_width={profile.stroke_width:.2f}, "
            f"specks={profile.num_noise_specks}"
        )

    if profile.noise_sigma > config.high_noise_sigma:
        enabled = True
        reasons.append(
            f"high noise: noise_sigma={profile.noise_sigma:.2f} "
            f"> {config.high_noise_sigma}"
        )

    return enabled, reasons


def advisory_scale_factor(profile: ImageProfile, config: ExecutorConfig) -> float:
    """Scale the downscaler would apply. Reported, never consumed."""
    if profile.detected_dpi > config.dpi_downscale_threshold:
        return round(config.target_dpi / profile.detected_dpi, 4)
    return 1.0


def recommend(
    profile: ImageProfile, config: Optional[ExecutorConfig] = None
) -> OCRParams:
    """Derive OCR execution parameters for one image."""
    config = config or ExecutorConfig()
    enabled, reasons = _two_pass_decision(profile, config)

    skew = abs(profile.skew_angle)
    return OCRParams(
        enable_two_pass=enabled,
        reason=reasons[-1],
        scale_factor=advisory_scale_factor(profile, config),
        reasons=tuple(reasons),
        deskew=config.deskew_min_angle < skew <= config.deskew_max_angle,
        invert=profile.mean_intensity < config.invert_mean_threshold,
        enhance_contrast=profile.otsu_separability < config.contrast_min_separability,
    )
