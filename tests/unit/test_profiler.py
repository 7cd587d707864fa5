"""
Tests for statistical image profiling.
"""

import cv2
import numpy as np
import pytest
from PIL import Image

from adaptive_ocr.profiler import ImageProfiler, estimate_dpi_from_size, metadata_dpi
from adaptive_ocr.types import DPI_UNKNOWN, ImageDecodeError

from tests.images import text_page


class TestSeparabilityAndNoise:
    """Test histogram and noise metrics."""

    def test_bimodal_page_is_highly_separable(self, config, page_image):
        """Dark strokes on a light page split cleanly into two classes."""
        profile = ImageProfiler(config).analyze(page_image)
        assert profile.otsu_separability > 0.9

    def test_uniform_page_has_zero_separability(self, config):
        """A blank page has no second class."""
        blank = np.full((200, 300), 200, dtype=np.uint8)
        profile = ImageProfiler(config).analyze(blank)
        assert profile.otsu_separability == 0.0
        assert profile.noise_sigma < 1e-3
        assert profile.num_noise_specks == 0

    def test_gaussian_noise_raises_noise_sigma(self, config):
        """Added sensor noise is picked up by the local-variance estimate."""
        rng = np.random.default_rng(7)
        clean = np.full((200, 300), 160, dtype=np.float64)
        noisy = np.clip(clean + rng.normal(0, 20, clean.shape), 0, 255).astype(np.uint8)

        profiler = ImageProfiler(config)
        assert profiler.analyze(clean.astype(np.uint8)).noise_sigma < 1.0
        assert profiler.analyze(noisy).noise_sigma > 10.0


class TestComponentAnalysis:
    """Test stroke width and speck counting."""

    def test_stroke_width_of_five_pixel_bars(self, config):
        """Bars five pixels tall measure as five-pixel strokes."""
        page = np.full((300, 400), 255, dtype=np.uint8)
        for y in range(40, 260, 30):
            page[y:y + 5, 50:350] = 0
        profile = ImageProfiler(config).analyze(page)
        assert profile.stroke_width == pytest.approx(5.0, abs=1.0)

    def test_isolated_pixels_are_counted_as_specks(self, config):
        """Single dark pixels far apart are specks, not strokes."""
        page = np.full((300, 400), 255, dtype=np.uint8)
        page[100:105, 20:380] = 0
        for i in range(30):
            page[200 + (i % 3) * 20, 20 + i * 12] = 0
        profile = ImageProfiler(config).analyze(page)
        assert profile.num_noise_specks == 30

    def test_bilevel_detection(self, config, page_image):
        """Pure black-and-white scans are bilevel; noisy grayscale is not."""
        bilevel = np.where(page_image < 128, 0, 255).astype(np.uint8)
        rng = np.random.default_rng(3)
        grayscale = np.clip(
            page_image.astype(np.float64) + rng.normal(0, 15, page_image.shape), 0, 255
        ).astype(np.uint8)

        profiler = ImageProfiler(config)
        assert profiler.analyze(bilevel).is_bilevel is True
        assert profiler.analyze(grayscale).is_bilevel is False


class TestSkew:
    """Test projection-based skew estimation."""

    def test_straight_text_has_no_skew(self, config):
        page = text_page(width=600, height=400)
        profile = ImageProfiler(config).analyze(page)
        assert profile.skew_angle == 0.0

    def test_rotated_lines_are_detected(self, config):
        """A page rotated by 3 degrees reports a skew of about 3 degrees."""
        page = np.full((500, 700), 255, dtype=np.uint8)
        for y in range(60, 460, 25):
            page[y:y + 3, 60:640] = 0
        matrix = cv2.getRotationMatrix2D((350, 250), 3.0, 1.0)
        rotated = cv2.warpAffine(page, matrix, (700, 500), borderValue=255)

        profile = ImageProfiler(config).analyze(rotated)
        assert abs(profile.skew_angle) == pytest.approx(3.0, abs=0.5)


class TestDPIDetection:
    """Test the tiered DPI fallback."""

    def test_letter_page_at_300_dpi(self):
        assert estimate_dpi_from_size(2550, 3300) == 300

    def test_a4_page_at_300_dpi(self):
        assert estimate_dpi_from_size(2480, 3508) == 300

    def test_landscape_orientation(self):
        assert estimate_dpi_from_size(3300, 2550) == 300

    def test_square_image_is_unknown(self):
        """Aspect ratios outside the guard band never produce a guess."""
        assert estimate_dpi_from_size(1000, 1000) == DPI_UNKNOWN

    def test_size_that_does_not_snap_is_unknown(self):
        assert estimate_dpi_from_size(300, 400) == DPI_UNKNOWN

    def test_metadata_dpi(self):
        image = Image.new("L", (10, 10), 255)
        assert metadata_dpi(image) == DPI_UNKNOWN

        image.info["dpi"] = (300, 300)
        assert metadata_dpi(image) == 300

        # 72 is what many writers store when they know nothing
        image.info["dpi"] = (72, 72)
        assert metadata_dpi(image) == DPI_UNKNOWN

    def test_metadata_wins_over_size_heuristic(self, config):
        image = Image.new("L", (2550, 3300), 255)
        image.info["dpi"] = (400, 400)
        assert ImageProfiler(config).analyze(image).detected_dpi == 400

    def test_explicit_dpi_wins_over_metadata(self, config):
        image = Image.new("L", (200, 300), 255)
        image.info["dpi"] = (400, 400)
        assert ImageProfiler(config).analyze(image, dpi=150).detected_dpi == 150


class TestProfilerErrors:

    def test_empty_array_raises_decode_error(self, config):
        with pytest.raises(ImageDecodeError):
            ImageProfiler(config).analyze(np.zeros((0, 0), dtype=np.uint8))

    def test_profile_is_deterministic_and_immutable(self, config, page_image):
        profiler = ImageProfiler(config)
        first = profiler.analyze(page_image)
        second = profiler.analyze(page_image.copy())
        assert first == second

        with pytest.raises(AttributeError):
            first.noise_sigma = 1.0

    def test_rgb_input_is_accepted(self, config, page_image):
        rgb = np.stack([page_image] * 3, axis=2)
        profile = ImageProfiler(config).analyze(rgb)
        assert profile.width == page_image.shape[1]
        assert profile.height == page_image.shape[0]

    def test_profile_summary_adds_derived_flags(self, config, page_image):
        profiler = ImageProfiler(config)
        summary = profiler.get_profile_summary(profiler.analyze(page_image))
        assert summary["dpi_known"] == (summary["detected_dpi"] > 0)
        assert summary["dark_background"] is False
        assert "otsu_separability" in summary
