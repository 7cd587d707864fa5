"""
Image decoding and preprocessing ahead of recognition.

Decodes raw bytes into grayscale frames, applies the steps selected by the
parameter recommender and downscales high-DPI scans to the target DPI.
Downscaling is an optimization only: any failure returns the input unchanged.
"""

import io
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import cv2
import fitz  # PyMuPDF
import numpy as np
import structlog
from PIL import Image, ImageOps, ImageSequence, UnidentifiedImageError

from . import tracing
from .config import ExecutorConfig
from .profiler import metadata_dpi, to_grayscale
from .tracing import TraceSink
from .types import DPI_UNKNOWN, DownscaleError, ImageDecodeError, OCRParams

logger = structlog.get_logger(__name__)

PDF_MAGIC = b"%PDF"


@dataclass
class DecodedFrame:
    """One page of a decoded input, grayscale, orientation applied."""
    index: int
    image: Image.Image
    dpi: int = DPI_UNKNOWN


@dataclass
class PreparedImage:
    """Image ready for recognition."""
    image: np.ndarray
    dpi: int
    downscaled: bool = False
    applied_steps: List[str] = field(default_factory=list)


def decode_frames(data: bytes, config: Optional[ExecutorConfig] = None) -> List[DecodedFrame]:
    """
    Decode input bytes into grayscale frames.

    Raster inputs yield one frame per image frame, each with its own DPI
    metadata. PDF inputs are rendered page by page at ``pdf_render_dpi``.

    Raises:
        ImageDecodeError: if the bytes are not a readable image or PDF
    """
    config = config or ExecutorConfig()
    if not data:
        raise ImageDecodeError("Empty input")

    if data[:4] == PDF_MAGIC:
        return _render_pdf(data, config.pdf_render_dpi)

    try:
        source = Image.open(io.BytesIO(data))
        frames = []
        for index, frame in enumerate(ImageSequence.Iterator(source)):
            dpi = metadata_dpi(frame)
            oriented = ImageOps.exif_transpose(frame)
            gray = oriented.convert("L")
            if dpi:
                gray.info["dpi"] = (dpi, dpi)
            frames.append(DecodedFrame(index=index, image=gray, dpi=dpi))
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as e:
        raise ImageDecodeError(f"Cannot decode image: {e}") from e

    if not frames:
        raise ImageDecodeError("Image contains no frames")
    return frames


def _render_pdf(data: bytes, dpi: int) -> List[DecodedFrame]:
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception as e:
        raise ImageDecodeError(f"Cannot open PDF: {e}") from e

    try:
        frames = []
        matrix = fitz.Matrix(dpi / 72.0, dpi / 72.0)
        for page_index in range(doc.page_count):
            pix = doc[page_index].get_pixmap(matrix=matrix)
            image = Image.open(io.BytesIO(pix.tobytes("png"))).convert("L")
            image.info["dpi"] = (dpi, dpi)
            frames.append(DecodedFrame(index=page_index, image=image, dpi=dpi))
            pix = None
    except Exception as e:
        raise ImageDecodeError(f"Cannot render PDF: {e}") from e
    finally:
        doc.close()

    if not frames:
        raise ImageDecodeError("PDF contains no pages")
    return frames


def stipple_recovery_transform(
    gray: np.ndarray, kernel_size: int = 2, iterations: int = 1
) -> np.ndarray:
    """
    Invert, dilate and invert back.

    Dilating the inverted page grows the (now white) ink so that dot-matrix
    and stippled glyphs join into connected strokes.
    """
    kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (kernel_size, kernel_size))
    inverted = cv2.bitwise_not(gray)
    dilated = cv2.dilate(inverted, kernel, iterations=iterations)
    return cv2.bitwise_not(dilated)


def downscale_to_target_dpi(
    image: Image.Image,
    detected_dpi: int,
    config: Optional[ExecutorConfig] = None,
    sink: Optional[TraceSink] = None,
    image_id: Optional[str] = None,
) -> Tuple[Image.Image, int, bool]:
    """
    Resize a high-DPI image to the target DPI.

    Only images whose DPI is known and strictly above the threshold are
    resized; the result never upscales. The new DPI is written to the image
    metadata. Any failure returns the original image unchanged.

    Returns:
        Tuple of (image, dpi, downscaled)
    """
    config = config or ExecutorConfig()
    width, height = image.size

    def skipped(reason: str) -> Tuple[Image.Image, int, bool]:
        if sink is not None:
            sink.emit(
                tracing.DOWNSCALE,
                image_id=image_id,
                triggered=False,
                reason=reason,
                detected_dpi=detected_dpi,
                target_dpi=config.target_dpi,
                original_width=width,
                original_height=height,
                new_width=width,
                new_height=height,
                pixel_reduction_ratio=0.0,
            )
        return image, detected_dpi, False

    if not config.downscale_enabled:
        return skipped("disabled")
    if detected_dpi <= 0:
        return skipped("dpi_unknown")
    if detected_dpi <= config.dpi_downscale_threshold:
        return skipped("below_threshold")

    start_time = time.monotonic()
    try:
        resized = _resize_to_dpi(image, detected_dpi, config.target_dpi)
    except Exception as e:
        logger.warning(
            "Downscale failed, using original image",
            image_id=image_id,
            detected_dpi=detected_dpi,
            error=str(e),
        )
        if sink is not None:
            sink.emit(
                tracing.DOWNSCALE_ERROR,
                image_id=image_id,
                detected_dpi=detected_dpi,
                error_type=type(e).__name__,
                error=str(e),
            )
        return image, detected_dpi, False

    new_width, new_height = resized.size
    reduction = 1.0 - (new_width * new_height) / float(width * height)
    if sink is not None:
        sink.emit(
            tracing.DOWNSCALE,
            image_id=image_id,
            triggered=True,
            reason="above_threshold",
            detected_dpi=detected_dpi,
            target_dpi=config.target_dpi,
            original_width=width,
            original_height=height,
            new_width=new_width,
            new_height=new_height,
            pixel_reduction_ratio=round(reduction, 4),
            duration=round(time.monotonic() - start_time, 4),
        )
    return resized, config.target_dpi, True


def _resize_to_dpi(image: Image.Image, dpi: int, target_dpi: int) -> Image.Image:
    scale = target_dpi / float(dpi)
    width, height = image.size
    new_size = (max(1, int(round(width * scale))), max(1, int(round(height * scale))))

    if new_size[0] >= width and new_size[1] >= height:
        raise DownscaleError(f"Refusing to upscale {image.size} to {new_size}")

    original_aspect = width / float(height)
    new_aspect = new_size[0] / float(new_size[1])
    if abs(new_aspect - original_aspect) / original_aspect > 0.005:
        raise DownscaleError(
            f"Aspect ratio drift {original_aspect:.4f} -> {new_aspect:.4f}"
        )

    resized = image.resize(new_size, Image.Resampling.LANCZOS)
    resized.info = dict(image.info)
    resized.info["dpi"] = (target_dpi, target_dpi)
    return resized


class ImagePreprocessor:
    """
    Preprocessing pipeline for one page image.

    Applies bilevel smoothing, then the deskew, invert and contrast steps the
    recommender selected, then DPI downscaling.
    """

    def __init__(self, config: Optional[ExecutorConfig] = None, sink: Optional[TraceSink] = None):
        self.config = config or ExecutorConfig()
        self.sink = sink
        self.logger = logger.bind(component="ImagePreprocessor")

    def prepare(
        self,
        frame: DecodedFrame,
        params: OCRParams,
        detected_dpi: int,
        skew_angle: float = 0.0,
        is_bilevel: bool = False,
        image_id: Optional[str] = None,
    ) -> PreparedImage:
        """
        Prepare a decoded frame for recognition.

        Args:
            frame: Decoded grayscale frame
            params: Recommended OCR parameters
            detected_dpi: DPI from the image profile (0 when unknown)
            skew_angle: Skew from the image profile, degrees
            is_bilevel: Whether the profile classified the image as bilevel
            image_id: Identifier used in trace events

        Returns:
            PreparedImage
        """
        applied_steps = []
        gray = to_grayscale(frame.image)

        if is_bilevel and self.config.smooth_bilevel:
            gray = cv2.GaussianBlur(gray, (3, 3), 0)
            applied_steps.append("smooth")

        if params.deskew:
            gray = self._deskew(gray, skew_angle)
            applied_steps.append(f"deskew_{skew_angle:.1f}deg")

        if params.invert:
            gray = cv2.bitwise_not(gray)
            applied_steps.append("invert")

        if params.enhance_contrast:
            gray = self._enhance_contrast(gray)
            applied_steps.append("contrast_enhance")

        image = Image.fromarray(gray)
        if detected_dpi:
            image.info["dpi"] = (detected_dpi, detected_dpi)

        image, dpi, downscaled = downscale_to_target_dpi(
            image, detected_dpi, self.config, self.sink, image_id
        )
        if downscaled:
            applied_steps.append(f"downscale_{dpi}dpi")

        self.logger.debug(
            "Image prepared",
            image_id=image_id,
            applied_steps=applied_steps,
            size=image.size,
        )
        return PreparedImage(
            image=np.asarray(image),
            dpi=dpi,
            downscaled=downscaled,
            applied_steps=applied_steps,
        )

    def _deskew(self, gray: np.ndarray, angle: float) -> np.ndarray:
        h, w = gray.shape
        rotation_matrix = cv2.getRotationMatrix2D((w // 2, h // 2), angle, 1.0)
        return cv2.warpAffine(
            gray,
            rotation_matrix,
            (w, h),
            flags=cv2.INTER_CUBIC,
            borderMode=cv2.BORDER_REPLICATE,
        )

    def _enhance_contrast(self, gray: np.ndarray) -> np.ndarray:
        clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
        return clahe.apply(gray)
