"""
Redaction bar detection and confidence validation.

Detection is a connected-component scan over near-black pixels, gated by
geometry so that bold headers, signature lines and footer bars are rejected.
Validation scores each candidate on interior uniformity, interior edge density
and contrast against its surroundings; only validated boxes justify the
word-level redaction pass.
"""

from dataclasses import dataclass, replace
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np
import structlog

from . import tracing
from .config import ExecutorConfig
from .tracing import TraceSink
from .types import RedactionCandidateBox, ScoredBox, WordBox

logger = structlog.get_logger(__name__)


def _inner_region(x1: int, y1: int, x2: int, y2: int, pad: int) -> Tuple[int, int, int, int]:
    return x1 + pad, y1 + pad, x2 - pad, y2 - pad


def intersection_area(a: Tuple[int, int, int, int], b: Tuple[int, int, int, int]) -> int:
    ax1, ay1, ax2, ay2 = a
    bx1, by1, bx2, by2 = b
    ix1, iy1 = max(ax1, bx1), max(ay1, by1)
    ix2, iy2 = min(ax2, bx2), min(ay2, by2)
    return max(0, ix2 - ix1) * max(0, iy2 - iy1)


class RedactionDetector:
    """Finds solid dark rectangles that look like redaction bars."""

    def __init__(self, config: Optional[ExecutorConfig] = None):
        self.config = config or ExecutorConfig()
        self.logger = logger.bind(component="RedactionDetector")

    def detect(self, gray: np.ndarray) -> List[RedactionCandidateBox]:
        """
        Scan a grayscale image for redaction candidates.

        Returns candidates sorted top-to-bottom, left-to-right.
        """
        cfg = self.config
        img_h, img_w = gray.shape[:2]
        dark = (gray <= cfg.darkness_threshold).astype(np.uint8)
        if not dark.any():
            return []

        count, labels, stats, _ = cv2.connectedComponentsWithStats(dark, connectivity=8)

        candidates = []
        for label in range(1, count):
            x, y, w, h, area = (int(v) for v in stats[label])

            if w < cfg.min_width or h < cfg.min_height:
                continue
            if area < cfg.min_area:
                continue
            aspect_ratio = w / float(h)
            if aspect_ratio < cfg.min_aspect_ratio:
                continue
            # Full-width rules and footer bars
            if w > cfg.max_width_ratio * img_w:
                continue
            solidity = area / float(w * h)
            if solidity < cfg.min_solidity:
                continue

            component = labels[y:y + h, x:x + w] == label
            mean_value = float(gray[y:y + h, x:x + w][component].mean())

            candidates.append(
                RedactionCandidateBox(
                    x=x,
                    y=y,
                    w=w,
                    h=h,
                    darkness=round(1.0 - mean_value / 255.0, 4),
                    solidity=round(solidity, 4),
                    aspect_ratio=round(aspect_ratio, 4),
                    area=area,
                )
            )

        candidates.sort(key=lambda c: (c.y, c.x))
        self.logger.debug(
            "Redaction candidates detected",
            components=count - 1,
            candidates=len(candidates),
        )
        return candidates


class RedactionValidator:
    """
    Confidence-scores redaction candidates.

    The composite score is a weighted mean of the three subscores, each in
    [0, 1]; a box is validated when the composite reaches the configured
    threshold. The candidate list is never modified.
    """

    def __init__(self, config: Optional[ExecutorConfig] = None):
        self.config = config or ExecutorConfig()
        self.logger = logger.bind(component="RedactionValidator")

    def score(self, gray: np.ndarray, box: RedactionCandidateBox) -> ScoredBox:
        cfg = self.config
        uniformity = self._uniformity(gray, box)
        edge_density = self._edge_density_score(gray, box)
        contrast = self._boundary_contrast(gray, box)

        total_weight = (
            cfg.uniformity_weight + cfg.edge_density_weight + cfg.boundary_contrast_weight
        )
        composite = (
            cfg.uniformity_weight * uniformity
            + cfg.edge_density_weight * edge_density
            + cfg.boundary_contrast_weight * contrast
        ) / total_weight

        return ScoredBox(
            candidate=box,
            uniformity=round(uniformity, 4),
            edge_density=round(edge_density, 4),
            boundary_contrast=round(contrast, 4),
            score=round(composite, 4),
            validated=composite >= cfg.redaction_confidence_threshold,
        )

    def validate(
        self, gray: np.ndarray, candidates: Sequence[RedactionCandidateBox]
    ) -> List[ScoredBox]:
        """Score every candidate. Filter with ``validated_boxes``."""
        return [self.score(gray, box) for box in candidates]

    def _uniformity(self, gray: np.ndarray, box: RedactionCandidateBox) -> float:
        roi = gray[box.y:box.y + box.h, box.x:box.x + box.w]
        if roi.size == 0:
            return 0.0
        std = float(roi.std())
        return float(np.clip(1.0 - std / self.config.uniformity_std_scale, 0.0, 1.0))

    def _edge_density_score(self, gray: np.ndarray, box: RedactionCandidateBox, pad: int = 3) -> float:
        x1, y1, x2, y2 = box.xyxy
        xa, ya, xb, yb = _inner_region(x1, y1, x2, y2, pad)
        if xb <= xa or yb <= ya:
            return 0.0
        # Canny needs context; run on a padded crop then measure the interior
        cx1, cy1 = max(0, x1 - pad), max(0, y1 - pad)
        cx2, cy2 = min(gray.shape[1], x2 + pad), min(gray.shape[0], y2 + pad)
        edges = cv2.Canny(gray[cy1:cy2, cx1:cx2], 50, 150)
        interior = edges[ya - cy1:yb - cy1, xa - cx1:xb - cx1]
        if interior.size == 0:
            return 0.0
        density = float(np.mean(interior > 0))
        return float(np.clip(1.0 - density / self.config.max_edge_density, 0.0, 1.0))

    def _boundary_contrast(self, gray: np.ndarray, box: RedactionCandidateBox) -> float:
        ring = self.config.boundary_ring
        img_h, img_w = gray.shape[:2]
        x1, y1, x2, y2 = box.xyxy
        ox1, oy1 = max(0, x1 - ring), max(0, y1 - ring)
        ox2, oy2 = min(img_w, x2 + ring), min(img_h, y2 + ring)

        outer = gray[oy1:oy2, ox1:ox2].astype(np.float64)
        mask = np.ones(outer.shape, dtype=bool)
        mask[y1 - oy1:y2 - oy1, x1 - ox1:x2 - ox1] = False
        if not mask.any():
            return 0.0

        ring_mean = float(outer[mask].mean())
        inner_mean = float(gray[y1:y2, x1:x2].mean())
        return float(
            np.clip((ring_mean - inner_mean) / self.config.boundary_contrast_scale, 0.0, 1.0)
        )


def validated_boxes(scored: Sequence[ScoredBox]) -> List[ScoredBox]:
    """New list holding only the validated boxes."""
    return [box for box in scored if box.validated]


def should_run_redaction_pass(validated: Sequence[ScoredBox]) -> bool:
    """The word-level redaction pass runs iff at least one box validated."""
    return len(validated) > 0


def detect_and_validate(
    gray: np.ndarray,
    config: Optional[ExecutorConfig] = None,
    sink: Optional[TraceSink] = None,
    image_id: Optional[str] = None,
) -> List[ScoredBox]:
    """
    Run detection and validation and report the gate summary.

    Returns:
        Validated boxes only
    """
    config = config or ExecutorConfig()
    candidates = RedactionDetector(config).detect(gray)
    scored = RedactionValidator(config).validate(gray, candidates)
    validated = validated_boxes(scored)

    if sink is not None:
        sink.emit(
            tracing.REDACTION_GATE,
            image_id=image_id,
            candidates_in=len(candidates),
            candidates_validated=len(validated),
            rejected=len(candidates) - len(validated),
            redaction_pass=should_run_redaction_pass(validated),
        )
    return validated


def words_in_redactions(
    words: Sequence[WordBox],
    boxes: Sequence[ScoredBox],
    overlap_min: float = 0.3,
) -> List[bool]:
    """Per word: whether it overlaps any validated box by at least ``overlap_min``."""
    flags = []
    for word in words:
        word_area = word.area
        hit = False
        if word_area > 0:
            for box in boxes:
                if intersection_area(word.xyxy, box.candidate.xyxy) / word_area >= overlap_min:
                    hit = True
                    break
        flags.append(hit)
    return flags


@dataclass(frozen=True)
class RedactionBand:
    """Page rows ``[top, bottom)`` copied to row ``offset`` of the stacked image."""
    top: int
    bottom: int
    offset: int

    @property
    def height(self) -> int:
        return self.bottom - self.top


def redaction_bands(
    boxes: Sequence[ScoredBox], page_height: int, margin: int
) -> List[Tuple[int, int]]:
    """Row ranges covering every box plus ``margin`` rows each side, merged."""
    spans = sorted(
        (
            max(0, box.candidate.y - margin),
            min(page_height, box.candidate.y + box.candidate.h + margin),
        )
        for box in boxes
    )
    merged: List[Tuple[int, int]] = []
    for top, bottom in spans:
        if merged and top <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], bottom))
        else:
            merged.append((top, bottom))
    return merged


def stack_bands(
    gray: np.ndarray, spans: Sequence[Tuple[int, int]], gap: int = 16
) -> Tuple[np.ndarray, List[RedactionBand]]:
    """
    Copy full-width row bands into one compact image, top to bottom.

    Bands are separated by ``gap`` blank rows so that lines from different
    bands are never read as one. Page order is kept, so reading order in the
    stacked image matches reading order on the page.
    """
    bands = []
    offset = 0
    for top, bottom in spans:
        bands.append(RedactionBand(top=top, bottom=bottom, offset=offset))
        offset += (bottom - top) + gap
    height = max(0, offset - gap)

    stacked = np.full((height, gray.shape[1]), 255, dtype=gray.dtype)
    for band in bands:
        stacked[band.offset:band.offset + band.height] = gray[band.top:band.bottom]
    return stacked, bands


def words_to_page(
    words: Sequence[WordBox], bands: Sequence[RedactionBand]
) -> Tuple[List[WordBox], List[int]]:
    """
    Map words read from a stacked image back to page coordinates.

    Returns:
        Tuple of (words in page coordinates, band index per word)
    """
    placed = []
    regions = []
    for word in words:
        center = word.y + word.h // 2
        index = 0
        for i, band in enumerate(bands):
            if band.offset <= center:
                index = i
        band = bands[index]
        placed.append(replace(word, y=word.y - band.offset + band.top))
        regions.append(index)
    return placed, regions
