"""
Tests for decoding, preprocessing and DPI downscaling.
"""

import io

import fitz
import numpy as np
import pytest
from PIL import Image

from adaptive_ocr import preprocessing, tracing
from adaptive_ocr.preprocessing import (
    DecodedFrame,
    ImagePreprocessor,
    decode_frames,
    downscale_to_target_dpi,
    stipple_recovery_transform,
)
from adaptive_ocr.types import DownscaleError, ImageDecodeError, OCRParams

from tests.images import png_bytes, text_page


def letter_page(dpi: int) -> Image.Image:
    image = Image.new("L", (2550, 3300), 255)
    image.info["dpi"] = (dpi, dpi)
    return image


class TestDownscale:
    """Test DPI-driven downscaling."""

    def test_300_dpi_letter_page_is_downscaled(self, config, sink):
        resized, dpi, downscaled = downscale_to_target_dpi(
            letter_page(300), 300, config, sink, "page-1"
        )

        assert downscaled is True
        assert dpi == 200
        width, height = resized.size
        assert abs(width - 1700) <= 5
        assert abs(height - 2200) <= 5
        assert abs(width / height - 2550 / 3300) / (2550 / 3300) <= 0.005
        assert resized.info["dpi"] == (200, 200)

        event = sink.events(tracing.DOWNSCALE)[0]
        assert event.payload["triggered"] is True
        assert event.payload["pixel_reduction_ratio"] == pytest.approx(1 - 200 ** 2 / 300 ** 2, abs=0.01)

    def test_threshold_dpi_is_left_unchanged(self, config, sink):
        original = letter_page(250)
        resized, dpi, downscaled = downscale_to_target_dpi(original, 250, config, sink)

        assert resized is original
        assert dpi == 250
        assert downscaled is False
        assert sink.events(tracing.DOWNSCALE)[0].payload["reason"] == "below_threshold"

    def test_unknown_dpi_is_never_guessed(self, config, sink):
        original = letter_page(300)
        resized, dpi, downscaled = downscale_to_target_dpi(original, 0, config, sink)

        assert resized is original
        assert downscaled is False
        assert sink.events(tracing.DOWNSCALE)[0].payload["reason"] == "dpi_unknown"

    def test_downscaling_twice_at_target_is_a_no_op(self, config):
        original = letter_page(200)
        once, dpi_once, first = downscale_to_target_dpi(original, 200, config)
        twice, dpi_twice, second = downscale_to_target_dpi(once, dpi_once, config)

        assert first is False and second is False
        assert twice.size == original.size
        assert dpi_twice == 200

    def test_failure_returns_original_and_emits_error(self, config, sink, monkeypatch):
        def broken_resize(image, dpi, target_dpi):
            raise DownscaleError("resampler exploded")

        monkeypatch.setattr(preprocessing, "_resize_to_dpi", broken_resize)
        original = letter_page(300)
        resized, dpi, downscaled = downscale_to_target_dpi(original, 300, config, sink, "p")

        assert resized is original
        assert dpi == 300
        assert downscaled is False
        errors = sink.events(tracing.DOWNSCALE_ERROR)
        assert len(errors) == 1
        assert errors[0].payload["error_type"] == "DownscaleError"

    def test_disabled_downscaling(self, make_config):
        config = make_config(downscale_enabled=False)
        original = letter_page(300)
        resized, _, downscaled = downscale_to_target_dpi(original, 300, config)
        assert resized is original
        assert downscaled is False


class TestDecodeFrames:
    """Test raster and PDF decoding."""

    def test_png_with_dpi_metadata(self, config):
        frames = decode_frames(png_bytes(text_page(), dpi=300), config)
        assert len(frames) == 1
        assert frames[0].dpi == 300
        assert frames[0].image.mode == "L"

    def test_multi_frame_tiff_keeps_per_frame_dpi(self, config):
        first = Image.fromarray(text_page())
        second = Image.fromarray(text_page(width=400))
        buffer = io.BytesIO()
        first.save(
            buffer,
            format="TIFF",
            save_all=True,
            append_images=[second],
            dpi=(300, 300),
        )

        frames = decode_frames(buffer.getvalue(), config)
        assert [f.index for f in frames] == [0, 1]
        assert frames[0].image.size == (600, 400)
        assert frames[1].image.size == (400, 400)
        assert frames[0].dpi == 300

    def test_pdf_pages_are_rendered_at_configured_dpi(self, make_config):
        doc = fitz.open()
        page = doc.new_page(width=612, height=792)
        page.insert_text((72, 72), "Quarterly report")
        data = doc.tobytes()
        doc.close()

        frames = decode_frames(data, make_config(pdf_render_dpi=100))
        assert len(frames) == 1
        assert frames[0].dpi == 100
        width, height = frames[0].image.size
        assert abs(width - 850) <= 2
        assert abs(height - 1100) <= 2

    def test_empty_input(self, config):
        with pytest.raises(ImageDecodeError):
            decode_frames(b"", config)

    def test_garbage_input(self, config):
        with pytest.raises(ImageDecodeError):
            decode_frames(b"definitely not an image", config)


class TestStippleRecovery:

    def test_dots_grow_into_strokes(self):
        page = np.full((50, 50), 255, dtype=np.uint8)
        page[10:40:2, 10:40:2] = 0

        recovered = stipple_recovery_transform(page, kernel_size=2, iterations=1)
        assert np.count_nonzero(recovered == 0) > np.count_nonzero(page == 0)

    def test_blank_page_is_unchanged(self):
        page = np.full((20, 20), 255, dtype=np.uint8)
        assert np.array_equal(stipple_recovery_transform(page), page)


class TestImagePreprocessor:

    def test_invert_step(self, config, sink):
        frame = DecodedFrame(index=0, image=Image.fromarray(text_page()))
        params = OCRParams(enable_two_pass=False, reason="test", invert=True)
        prepared = ImagePreprocessor(config, sink).prepare(frame, params, detected_dpi=0)

        assert "invert" in prepared.applied_steps
        assert prepared.image.mean() < 128
        assert prepared.downscaled is False

    def test_high_dpi_frame_is_downscaled(self, config, sink):
        frame = DecodedFrame(index=0, image=letter_page(300), dpi=300)
        params = OCRParams(enable_two_pass=False, reason="test")
        prepared = ImagePreprocessor(config, sink).prepare(
            frame, params, detected_dpi=300, image_id="letter"
        )

        assert prepared.downscaled is True
        assert prepared.dpi == 200
        assert prepared.image.shape == (2200, 1700)
        assert "downscale_200dpi" in prepared.applied_steps

    def test_bilevel_images_are_smoothed(self, config):
        frame = DecodedFrame(index=0, image=Image.fromarray(text_page()))
        params = OCRParams(enable_two_pass=False, reason="test")
        prepared = ImagePreprocessor(config).prepare(
            frame, params, detected_dpi=0, is_bilevel=True
        )
        assert prepared.applied_steps[0] == "smooth"
