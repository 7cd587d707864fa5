"""
Statistical image profiling.

Computes the metrics the parameter recommender works from: Otsu separability,
noise, stroke width, speckle count, bilevel detection, skew and DPI.
"""

from typing import Any, Dict, Optional, Tuple, Union

import cv2
import numpy as np
import structlog
from PIL import Image

from .config import ExecutorConfig
from .types import DPI_UNKNOWN, ImageDecodeError, ImageProfile

logger = structlog.get_logger(__name__)

# Paper widths/heights in inches for the DPI width heuristic
PAPER_SIZES = {
    "letter": (8.5, 11.0),
    "a4": (8.27, 11.69),
    "legal": (8.5, 14.0),
}

# Scanner resolutions a width-derived estimate snaps to
COMMON_DPIS = (72, 96, 100, 150, 200, 240, 300, 400, 600, 1200)
DPI_SNAP_TOLERANCE = 0.04


def to_grayscale(image: Union[Image.Image, np.ndarray]) -> np.ndarray:
    """Convert a PIL image or array to a uint8 grayscale array."""
    if isinstance(image, Image.Image):
        if image.mode != "L":
            image = image.convert("L")
        arr = np.asarray(image)
    else:
        arr = np.asarray(image)
        if arr.ndim == 3:
            if arr.shape[2] == 4:
                arr = cv2.cvtColor(arr, cv2.COLOR_RGBA2GRAY)
            else:
                arr = cv2.cvtColor(arr, cv2.COLOR_RGB2GRAY)

    if arr.ndim != 2 or arr.size == 0:
        raise ImageDecodeError(f"Unsupported image shape {arr.shape}")
    if arr.dtype == np.bool_:
        arr = arr.astype(np.uint8) * 255
    elif arr.dtype != np.uint8:
        arr = np.clip(arr, 0, 255).astype(np.uint8)
    return arr


def metadata_dpi(image: Image.Image) -> int:
    """DPI from embedded image metadata, or 0 when absent or implausible."""
    dpi = image.info.get("dpi")
    if not dpi:
        return DPI_UNKNOWN
    try:
        x_dpi = float(dpi[0] if isinstance(dpi, (tuple, list)) else dpi)
    except (TypeError, ValueError):
        return DPI_UNKNOWN
    # PIL reports 72 for many files that carry no real resolution
    if x_dpi <= 1 or x_dpi == 72:
        return DPI_UNKNOWN
    return int(round(x_dpi))


def estimate_dpi_from_size(
    width: int,
    height: int,
    aspect_min: float = 1.2,
    aspect_max: float = 1.7,
) -> int:
    """
    Paper-size-aware DPI estimate from pixel dimensions.

    Only portrait or landscape pages whose aspect ratio falls in the guard band
    are considered. The paper whose aspect ratio is closest wins and the
    resulting width DPI is snapped to a common scanner resolution; anything
    that does not snap returns the unknown sentinel rather than a guess.
    """
    if width <= 0 or height <= 0:
        return DPI_UNKNOWN

    short_px, long_px = sorted((width, height))
    aspect = long_px / short_px
    if not (aspect_min <= aspect <= aspect_max):
        return DPI_UNKNOWN

    best_paper = min(
        PAPER_SIZES.values(),
        key=lambda size: abs(size[1] / size[0] - aspect),
    )
    raw_dpi = short_px / best_paper[0]

    for dpi in COMMON_DPIS:
        if abs(raw_dpi - dpi) / dpi <= DPI_SNAP_TOLERANCE:
            return dpi
    return DPI_UNKNOWN


class ImageProfiler:
    """
    Computes an immutable ImageProfile from pixel data.

    Deterministic: the same pixels (and metadata DPI) always produce the same
    profile.
    """

    def __init__(self, config: Optional[ExecutorConfig] = None):
        self.config = config or ExecutorConfig()
        self.logger = logger.bind(component="ImageProfiler")

    def analyze(
        self,
        image: Union[Image.Image, np.ndarray],
        dpi: Optional[int] = None,
    ) -> ImageProfile:
        """
        Profile one image.

        Args:
            image: PIL image or array (grayscale, RGB or RGBA)
            dpi: DPI already known from container metadata, if any

        Returns:
            ImageProfile

        Raises:
            ImageDecodeError: if the pixel data is unusable
        """
        try:
            gray = to_grayscale(image)
        except ImageDecodeError:
            raise
        except Exception as e:
            raise ImageDecodeError(f"Cannot read pixel data: {e}") from e

        h, w = gray.shape
        threshold, separability = self._otsu_separability(gray)
        ink = self._ink_mask(gray, threshold)
        stroke_width, specks = self._component_stats(ink)

        detected_dpi = self._detect_dpi(image, dpi, w, h)

        profile = ImageProfile(
            otsu_separability=separability,
            noise_sigma=self._noise_sigma(gray),
            stroke_width=stroke_width,
            num_noise_specks=specks,
            is_bilevel=self._is_bilevel(gray),
            skew_angle=self._skew_angle(ink),
            detected_dpi=detected_dpi,
            width=w,
            height=h,
            mean_intensity=float(gray.mean()),
        )

        self.logger.debug("Image profiled", width=w, height=h, **profile.to_dict())
        return profile

    def _otsu_separability(self, gray: np.ndarray) -> Tuple[float, float]:
        """Otsu threshold and the between-class / total variance ratio."""
        hist = np.bincount(gray.ravel(), minlength=256).astype(np.float64)
        total = hist.sum()
        prob = hist / total
        levels = np.arange(256, dtype=np.float64)

        mu_total = float((prob * levels).sum())
        var_total = float((prob * (levels - mu_total) ** 2).sum())
        if var_total <= 1e-12:
            return 128.0, 0.0

        omega = np.cumsum(prob)
        mu = np.cumsum(prob * levels)
        denom = omega * (1.0 - omega)
        with np.errstate(divide="ignore", invalid="ignore"):
            between = np.where(
                denom > 0, (mu_total * omega - mu) ** 2 / denom, 0.0
            )

        threshold = int(np.argmax(between))
        separability = float(between[threshold] / var_total)
        return float(threshold), min(1.0, max(0.0, separability))

    def _ink_mask(self, gray: np.ndarray, threshold: float) -> np.ndarray:
        # Ink is the minority class; dark-on-light is the usual case
        dark = gray <= threshold
        if dark.mean() > 0.5:
            dark = ~dark
        return dark.astype(np.uint8)

    def _noise_sigma(self, gray: np.ndarray) -> float:
        """
        Noise estimate from local variance.

        The median of 3x3 local standard deviations is used so that text edges
        (a minority of windows) do not dominate the estimate.
        """
        img = gray.astype(np.float32)
        mean = cv2.blur(img, (3, 3))
        mean_sq = cv2.blur(img * img, (3, 3))
        local_var = np.maximum(mean_sq - mean * mean, 0.0)
        return float(np.sqrt(np.median(local_var)))

    def _component_stats(self, ink: np.ndarray) -> Tuple[float, int]:
        """Median stroke width over text components, and tiny speck count."""
        count, labels, stats, _ = cv2.connectedComponentsWithStats(ink, connectivity=8)
        if count <= 1:
            return 0.0, 0

        areas = stats[1:, cv2.CC_STAT_AREA]
        speck_max = self.config.speck_max_area
        specks = int(np.count_nonzero(areas <= speck_max))

        text_labels = np.flatnonzero(areas > speck_max) + 1
        if text_labels.size == 0:
            return 1.0, specks

        # A stroke n pixels wide peaks at (n + 1) / 2 in the distance transform
        dist = cv2.distanceTransform(ink, cv2.DIST_L2, 3)
        local_max = cv2.dilate(dist, np.ones((3, 3), np.uint8))
        ridge = (dist > 0) & (dist >= local_max) & np.isin(labels, text_labels)
        values = dist[ridge]
        if values.size == 0:
            return 1.0, specks
        return float(2.0 * np.median(values) - 1.0), specks

    def _is_bilevel(self, gray: np.ndarray) -> bool:
        hist = np.bincount(gray.ravel(), minlength=256)
        top_two = np.sort(hist)[-2:].sum()
        return bool(top_two / gray.size >= self.config.bilevel_pixel_ratio)

    def _skew_angle(self, ink: np.ndarray, max_angle: float = 10.0, step: float = 0.5) -> float:
        """
        Skew estimate from horizontal projection profiles.

        The angle whose rotated projection has the sharpest row profile
        (largest variance of row sums) is the text orientation.
        """
        if ink.sum() < 50:
            return 0.0

        h, w = ink.shape
        scale = min(1.0, 800.0 / max(h, w))
        small = ink * 255
        if scale < 1.0:
            small = cv2.resize(
                small, (max(1, int(w * scale)), max(1, int(h * scale))),
                interpolation=cv2.INTER_AREA,
            )
        sh, sw = small.shape
        center = (sw / 2.0, sh / 2.0)

        best_angle, best_score = 0.0, -1.0
        for angle in np.arange(-max_angle, max_angle + step / 2, step):
            matrix = cv2.getRotationMatrix2D(center, float(angle), 1.0)
            rotated = cv2.warpAffine(small, matrix, (sw, sh), flags=cv2.INTER_NEAREST)
            score = float(np.var(rotated.sum(axis=1, dtype=np.float64)))
            # Ties resolve to the smallest rotation
            if score > best_score or (score == best_score and abs(angle) < abs(best_angle)):
                best_angle, best_score = float(angle), score
        return best_angle

    def _detect_dpi(
        self,
        image: Union[Image.Image, np.ndarray],
        dpi: Optional[int],
        width: int,
        height: int,
    ) -> int:
        if dpi:
            return int(dpi)
        if isinstance(image, Image.Image):
            from_metadata = metadata_dpi(image)
            if from_metadata:
                return from_metadata
        return estimate_dpi_from_size(
            width, height, self.config.dpi_aspect_min, self.config.dpi_aspect_max
        )

    def get_profile_summary(self, profile: ImageProfile) -> Dict[str, Any]:
        """Profile fields plus derived flags, for reporting."""
        summary = profile.to_dict()
        summary["dpi_known"] = profile.has_known_dpi
        summary["dark_background"] = profile.mean_intensity < self.config.invert_mean_threshold
        return summary
