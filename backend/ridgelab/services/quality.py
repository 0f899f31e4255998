from __future__ import annotations

import math
import statistics
from dataclasses import asdict, dataclass
from typing import Any

from ridgelab.errors import InvalidImage
from ridgelab.services.texture import PixelClass, RgbaImage, WHITE, classify_pixels

RIDGE_VARIANCE_TARGET_MAX = 400.0
ROW_SPREAD_SCALE = 128.0


@dataclass(frozen=True)
class QualityMetrics:
    texture_uniformity: float
    edge_preservation: float
    contrast_ratio: float
    ridge_clarity: float
    background_cleanness: float
    overall_score: float

    def to_dict(self) -> dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "QualityMetrics":
        return cls(**{key: float(payload[key]) for key in cls.__dataclass_fields__})


def _clamp_unit(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, value))


# (dy, dx, horizontal weight, vertical weight); the centre tap is zero in both
_SOBEL_TAPS = (
    (-1, -1, -1, -1),
    (-1, 0, 0, -2),
    (-1, 1, 1, -1),
    (0, -1, -2, 0),
    (0, 1, 2, 0),
    (1, -1, -1, 1),
    (1, 0, 0, 2),
    (1, 1, 1, 1),
)


def _red_gradient_mean(image: RgbaImage) -> float:
    """Mean Sobel magnitude of the red channel over interior pixels."""
    width, height = image.width, image.height
    if width < 3 or height < 3:
        return 0.0

    data = image.data
    stride = width * 4
    total = 0.0
    for y in range(1, height - 1):
        for x in range(1, width - 1):
            centre = (y * stride) + (x * 4)
            gx = 0
            gy = 0
            for dy, dx, weight_x, weight_y in _SOBEL_TAPS:
                value = data[centre + (dy * stride) + (dx * 4)]
                gx += weight_x * value
                gy += weight_y * value
            total += math.hypot(gx, gy)
    return total / ((width - 2) * (height - 2))


def _background_cleanness(classes: bytes, processed: bytes) -> float:
    valley_total = 0
    clean = 0
    for index, pixel_class in enumerate(classes):
        if pixel_class != PixelClass.VALLEY:
            continue
        valley_total += 1
        offset = index * 4
        if processed[offset] == WHITE and processed[offset + 1] == WHITE and processed[offset + 2] == WHITE:
            clean += 1
    if valley_total == 0:
        return 1.0
    return clean / valley_total


def _ridge_clarity(ridge_values: list[int]) -> float:
    if not ridge_values:
        return 0.0
    variance = statistics.pvariance(ridge_values)
    if variance <= RIDGE_VARIANCE_TARGET_MAX:
        return 1.0
    return RIDGE_VARIANCE_TARGET_MAX / variance


def _texture_uniformity(row_means: list[float]) -> float:
    if len(row_means) < 2:
        return 1.0
    return 1.0 - min(1.0, statistics.pstdev(row_means) / ROW_SPREAD_SCALE)


def _edge_preservation(original: RgbaImage, processed: RgbaImage) -> float:
    before = _red_gradient_mean(original)
    if before <= 1e-8:
        return 1.0
    after = _red_gradient_mean(processed)
    return min(1.0, after / before)


def _contrast_ratio(ridge_values: list[int], valley_values: list[int]) -> float:
    if not ridge_values or not valley_values:
        return 0.0
    return (statistics.fmean(valley_values) - statistics.fmean(ridge_values)) / 255.0


def score_quality(original: RgbaImage, processed: RgbaImage) -> QualityMetrics:
    """Compute structural quality metrics from the source and final images.

    Classes come from the original image so a contaminated output can never
    improve its own background score.
    """
    if (original.width, original.height) != (processed.width, processed.height):
        raise InvalidImage(
            "Original and processed images differ in size.",
            details={
                "original": [original.width, original.height],
                "processed": [processed.width, processed.height],
            },
        )
    if not processed.has_valid_layout:
        raise InvalidImage("Processed image buffer is inconsistent with its dimensions.")

    classes = classify_pixels(original).classes
    width, height = original.width, original.height
    processed_red = processed.channel(0)

    ridge_values: list[int] = []
    valley_values: list[int] = []
    row_means: list[float] = []
    for y in range(height):
        row_total = 0
        row_count = 0
        for index in range(y * width, (y + 1) * width):
            value = processed_red[index]
            if classes[index] == PixelClass.RIDGE:
                ridge_values.append(value)
                row_total += value
                row_count += 1
            else:
                valley_values.append(value)
        if row_count:
            row_means.append(row_total / row_count)

    components = {
        "texture_uniformity": _clamp_unit(_texture_uniformity(row_means)),
        "edge_preservation": _clamp_unit(_edge_preservation(original, processed)),
        "contrast_ratio": _clamp_unit(_contrast_ratio(ridge_values, valley_values)),
        "ridge_clarity": _clamp_unit(_ridge_clarity(ridge_values)),
        "background_cleanness": _clamp_unit(_background_cleanness(classes, processed.data)),
    }
    overall = _clamp_unit(sum(components.values()) / len(components))
    return QualityMetrics(
        **{key: round(value, 4) for key, value in components.items()},
        overall_score=round(overall, 4),
    )
