from __future__ import annotations

import random
from dataclasses import dataclass
from enum import IntEnum
from io import BytesIO

from PIL import Image, UnidentifiedImageError

from ridgelab.errors import InvalidImage, SynthesisError
from ridgelab.settings import settings

RIDGE_THRESHOLD = settings.ridge_threshold
NOISE_HALF_WIDTH = settings.noise_half_width
WHITE = 255
SHARPEN_KERNEL: tuple[tuple[int, int, int], ...] = (
    (0, -1, 0),
    (-1, 5, -1),
    (0, -1, 0),
)


class PixelClass(IntEnum):
    VALLEY = 0
    RIDGE = 1


# red intensity -> PixelClass, used with bytes.translate
_CLASS_TABLE = bytes(PixelClass.RIDGE if value < RIDGE_THRESHOLD else PixelClass.VALLEY for value in range(256))


@dataclass(frozen=True)
class RgbaImage:
    width: int
    height: int
    data: bytes

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    @property
    def has_valid_layout(self) -> bool:
        return self.width >= 1 and self.height >= 1 and len(self.data) == self.pixel_count * 4

    def pixel(self, x: int, y: int) -> tuple[int, int, int, int]:
        offset = ((y * self.width) + x) * 4
        r, g, b, a = self.data[offset : offset + 4]
        return r, g, b, a

    def channel(self, index: int) -> bytes:
        return bytes(self.data[index::4])


@dataclass(frozen=True)
class PixelClassMap:
    width: int
    height: int
    classes: bytes

    def count(self, pixel_class: PixelClass) -> int:
        return self.classes.count(pixel_class)


def decode_image(raw: bytes) -> RgbaImage:
    if not raw:
        raise InvalidImage("Image payload is empty.")
    try:
        with Image.open(BytesIO(raw)) as source:
            source.load()
            rgba = source.convert("RGBA")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise InvalidImage(f"Could not decode image: {exc}") from exc
    width, height = rgba.size
    return RgbaImage(width, height, rgba.tobytes())


def encode_png(image: RgbaImage) -> bytes:
    if not image.has_valid_layout:
        raise SynthesisError("Cannot encode an image with an inconsistent buffer.")
    buffer = BytesIO()
    Image.frombytes("RGBA", (image.width, image.height), bytes(image.data)).save(buffer, format="PNG")
    return buffer.getvalue()


def classify_pixels(image: RgbaImage) -> PixelClassMap:
    """Classify every pixel as ridge or valley from its red channel.

    A pixel is a ridge when its red intensity is below the fixed threshold.
    Neighbouring pixels never influence the result.
    """
    if image.width < 1 or image.height < 1:
        raise InvalidImage(
            "Image must be at least 1x1.",
            details={"width": image.width, "height": image.height},
        )
    expected = image.pixel_count * 4
    if len(image.data) != expected:
        raise InvalidImage(
            "Channel data length does not match width x height x 4.",
            details={"width": image.width, "height": image.height, "expected": expected, "actual": len(image.data)},
        )
    classes = bytes(image.data[0::4]).translate(_CLASS_TABLE)
    return PixelClassMap(image.width, image.height, classes)


def count_contaminated_valleys(image: RgbaImage, classes: PixelClassMap) -> int:
    data = image.data
    contaminated = 0
    for index, pixel_class in enumerate(classes.classes):
        if pixel_class != PixelClass.VALLEY:
            continue
        offset = index * 4
        if data[offset] != WHITE or data[offset + 1] != WHITE or data[offset + 2] != WHITE:
            contaminated += 1
    return contaminated


def synthesize_texture(image: RgbaImage, classes: PixelClassMap, rng: random.Random) -> RgbaImage:
    """Granulate ridge pixels and force valley pixels to pure white.

    Ridge pixels get ``red + U[-20, 20]`` clamped to [0, 255] written to all
    three color channels. Alpha is left untouched.
    """
    if not isinstance(classes, PixelClassMap):
        raise SynthesisError("Texture synthesis requires a classified pixel map.")
    if (
        (classes.width, classes.height) != (image.width, image.height)
        or len(classes.classes) != image.pixel_count
        or len(image.data) != image.pixel_count * 4
    ):
        raise SynthesisError(
            "Pixel map does not match image dimensions.",
            details={
                "image": [image.width, image.height],
                "classes": [classes.width, classes.height],
            },
        )

    source = image.data
    output = bytearray(source)
    for index, pixel_class in enumerate(classes.classes):
        offset = index * 4
        if pixel_class == PixelClass.RIDGE:
            value = source[offset] + rng.randint(-NOISE_HALF_WIDTH, NOISE_HALF_WIDTH)
            value = 0 if value < 0 else (WHITE if value > WHITE else value)
        else:
            value = WHITE
        output[offset] = value
        output[offset + 1] = value
        output[offset + 2] = value

    result = RgbaImage(image.width, image.height, bytes(output))
    contaminated = count_contaminated_valleys(result, classes)
    if contaminated:
        raise SynthesisError(
            "Valley pixels are not pure white after synthesis.",
            details={"contaminated_pixels": contaminated},
        )
    return result


def convolve3x3(image: RgbaImage, kernel: tuple[tuple[int, int, int], ...]) -> RgbaImage:
    """Convolve the color channels with edge replication; alpha is copied."""
    width, height = image.width, image.height
    if not image.has_valid_layout:
        raise SynthesisError(
            "Cannot filter an image with an inconsistent buffer.",
            details={"width": width, "height": height, "actual": len(image.data)},
        )

    taps = [
        (dy, dx, kernel[dy + 1][dx + 1])
        for dy in (-1, 0, 1)
        for dx in (-1, 0, 1)
        if kernel[dy + 1][dx + 1] != 0
    ]
    source = image.data
    output = bytearray(source)
    stride = width * 4
    last_x = width - 1
    last_y = height - 1

    for y in range(height):
        rows = {dy: min(max(y + dy, 0), last_y) * stride for dy in (-1, 0, 1)}
        for x in range(width):
            cols = {dx: min(max(x + dx, 0), last_x) * 4 for dx in (-1, 0, 1)}
            offset = rows[0] + cols[0]
            for channel in range(3):
                total = 0
                for dy, dx, weight in taps:
                    total += weight * source[rows[dy] + cols[dx] + channel]
                output[offset + channel] = 0 if total < 0 else (WHITE if total > WHITE else total)

    return RgbaImage(width, height, bytes(output))


def sharpen(image: RgbaImage) -> RgbaImage:
    return convolve3x3(image, SHARPEN_KERNEL)
