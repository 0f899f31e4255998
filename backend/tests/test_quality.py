"""
Tests for the structural quality scorer.
"""
import random

import pytest

from ridgelab.errors import InvalidImage
from ridgelab.services.pipeline import process_image
from ridgelab.services.quality import QualityMetrics, score_quality
from ridgelab.services.texture import classify_pixels, synthesize_texture

from helpers import build_image


class TestScoreQuality:
    """Metrics are bounded, deterministic and tied to valley cleanliness."""

    def test_background_clean_after_pipeline(self, fingerprint_image):
        _, metrics = process_image(fingerprint_image, random.Random(3))
        assert metrics.background_cleanness == 1.0

    def test_background_clean_after_synthesis(self, fingerprint_image):
        classes = classify_pixels(fingerprint_image)
        synthesized = synthesize_texture(fingerprint_image, classes, random.Random(4))
        assert score_quality(fingerprint_image, synthesized).background_cleanness == 1.0

    def test_contaminated_valley_lowers_cleanness(self):
        original = build_image(2, 2, [0, 255, 255, 255])
        processed = build_image(2, 2, [0, 255, 250, 255])
        metrics = score_quality(original, processed)
        assert metrics.background_cleanness == pytest.approx(2 / 3, abs=1e-4)

    def test_all_metrics_within_unit_interval(self, fingerprint_image):
        _, metrics = process_image(fingerprint_image, random.Random(9))
        for value in metrics.to_dict().values():
            assert 0.0 <= value <= 1.0

    def test_overall_is_mean_of_components(self, fingerprint_image):
        _, metrics = process_image(fingerprint_image, random.Random(9))
        components = [
            metrics.texture_uniformity,
            metrics.edge_preservation,
            metrics.contrast_ratio,
            metrics.ridge_clarity,
            metrics.background_cleanness,
        ]
        assert metrics.overall_score == pytest.approx(sum(components) / 5, abs=1e-3)

    def test_pure_function_of_images(self, fingerprint_image):
        processed, _ = process_image(fingerprint_image, random.Random(10))
        assert score_quality(fingerprint_image, processed) == score_quality(fingerprint_image, processed)

    def test_blank_print_scores(self):
        white = build_image(4, 4, [255] * 16)
        metrics = score_quality(white, white)
        assert metrics.background_cleanness == 1.0
        assert metrics.ridge_clarity == 0.0
        assert metrics.contrast_ratio == 0.0
        assert metrics.texture_uniformity == 1.0
        assert metrics.overall_score == pytest.approx(0.6)

    def test_high_ridge_variance_reduces_clarity(self):
        original = build_image(4, 1, [0, 0, 0, 0])
        processed = build_image(4, 1, [0, 120, 0, 120])
        assert score_quality(original, processed).ridge_clarity < 1.0

    def test_size_mismatch_is_rejected(self):
        with pytest.raises(InvalidImage):
            score_quality(build_image(2, 2, [0] * 4), build_image(4, 1, [0] * 4))

    def test_metrics_round_trip_through_dict(self, fingerprint_image):
        _, metrics = process_image(fingerprint_image, random.Random(12))
        assert QualityMetrics.from_dict(metrics.to_dict()) == metrics

    def test_edge_preservation_tracks_red_gradient(self):
        original = build_image(3, 3, [0, 0, 255] * 3)
        flattened = build_image(3, 3, [255] * 9)
        assert score_quality(original, original).edge_preservation == 1.0
        assert score_quality(original, flattened).edge_preservation == 0.0

    def test_edge_preservation_is_one_for_flat_original(self):
        flat = build_image(3, 3, [40] * 9)
        noisy = build_image(3, 3, [40, 60, 40, 20, 40, 60, 40, 20, 40])
        assert score_quality(flat, noisy).edge_preservation == 1.0
