"""In-memory raster image model, allocation limits and scanline conversion."""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional, Sequence, Tuple, Union

Pixel = Tuple[Union[int, float], ...]
Rgba8 = Tuple[int, int, int, int]

# Largest buffer the codecs are willing to handle.
MAX_VECTOR_SIZE = 2**31 - 1 - 32
# Images whose pixel buffer would exceed this many bytes are refused.
ALLOCATION_LIMIT_BYTES = 256 * 1024 * 1024


class ImageError(ValueError):
    """Raised when an image cannot be allocated, decoded, encoded or converted."""


class ImageFormat(Enum):
    """Pixel layouts an image can be stored in."""

    MONO = "mono"
    INDEXED8 = "indexed8"
    GRAYSCALE8 = "grayscale8"
    GRAYSCALE16 = "grayscale16"
    RGB32 = "rgb32"
    ARGB32 = "argb32"
    RGB888 = "rgb888"
    RGBA8888 = "rgba8888"
    RGBA8888_PREMULTIPLIED = "rgba8888_premultiplied"
    RGBX64 = "rgbx64"
    RGBA64 = "rgba64"
    RGBA64_PREMULTIPLIED = "rgba64_premultiplied"
    RGBX32FPX4 = "rgbx32fpx4"
    RGBA32FPX4_PREMULTIPLIED = "rgba32fpx4_premultiplied"

    def channels(self) -> int:
        """Number of values stored per pixel."""
        return _FORMAT_INFO[self][0]

    def has_alpha(self) -> bool:
        """Whether the format carries an alpha channel."""
        return _FORMAT_INFO[self][2]

    def bits_per_channel(self) -> int:
        return _FORMAT_INFO[self][1]

    def bits_per_pixel(self) -> int:
        return self.channels() * self.bits_per_channel()

    def is_premultiplied(self) -> bool:
        return _FORMAT_INFO[self][3]

    def is_float(self) -> bool:
        return _FORMAT_INFO[self][4]

    def max_value(self) -> Union[int, float]:
        """Value of a fully saturated channel."""
        if self.is_float():
            return 1.0
        return (1 << self.bits_per_channel()) - 1


# channels, bits per channel, alpha, premultiplied, float
_FORMAT_INFO = {
    ImageFormat.MONO: (1, 1, False, False, False),
    ImageFormat.INDEXED8: (1, 8, False, False, False),
    ImageFormat.GRAYSCALE8: (1, 8, False, False, False),
    ImageFormat.GRAYSCALE16: (1, 16, False, False, False),
    ImageFormat.RGB32: (4, 8, False, False, False),
    ImageFormat.ARGB32: (4, 8, True, False, False),
    ImageFormat.RGB888: (3, 8, False, False, False),
    ImageFormat.RGBA8888: (4, 8, True, False, False),
    ImageFormat.RGBA8888_PREMULTIPLIED: (4, 8, True, True, False),
    ImageFormat.RGBX64: (4, 16, False, False, False),
    ImageFormat.RGBA64: (4, 16, True, False, False),
    ImageFormat.RGBA64_PREMULTIPLIED: (4, 16, True, True, False),
    ImageFormat.RGBX32FPX4: (4, 32, False, False, True),
    ImageFormat.RGBA32FPX4_PREMULTIPLIED: (4, 32, True, True, True),
}

_MONO_DEFAULT_TABLE: Tuple[Rgba8, Rgba8] = ((0, 0, 0, 255), (255, 255, 255, 255))


class ColorSpace(Enum):
    """Colour spaces an image can be tagged with."""

    SRGB = "srgb"
    SRGB_LINEAR = "srgb_linear"
    CUSTOM = "custom"


class Image:
    """A raster image stored as rows of per-pixel channel tuples."""

    def __init__(self, width: int, height: int, format: ImageFormat) -> None:
        if width < 0 or height < 0:
            raise ImageError(f"invalid image size {width}x{height}")
        self.width = width
        self.height = height
        self.format = format
        self.color_table: list[Rgba8] = []
        self.color_space: Optional[ColorSpace] = None
        self.icc_profile: Optional[bytes] = None
        self.text: dict[str, str] = {}
        self.dots_per_meter_x = 3780
        self.dots_per_meter_y = 3780
        zero = self._normalize(0 if format.channels() == 1 else (0,) * format.channels())
        self._rows = [[zero] * width for _ in range(height)]

    def __repr__(self) -> str:
        return f"Image({self.width}x{self.height}, {self.format.name})"

    def _normalize(self, value: Union[int, float, Sequence]) -> Pixel:
        channels = self.format.channels()
        if isinstance(value, (int, float)):
            value = (value,)
        pixel = tuple(value)
        if len(pixel) != channels:
            raise ImageError(
                f"{self.format.name} pixels have {channels} channels, got {len(pixel)}"
            )
        return pixel

    def _check_row(self, y: int) -> None:
        if not 0 <= y < self.height:
            raise IndexError(f"row {y} outside image of height {self.height}")

    def pixel(self, x: int, y: int) -> Pixel:
        self._check_row(y)
        if not 0 <= x < self.width:
            raise IndexError(f"column {x} outside image of width {self.width}")
        return self._rows[y][x]

    def set_pixel(self, x: int, y: int, value) -> None:
        self._check_row(y)
        if not 0 <= x < self.width:
            raise IndexError(f"column {x} outside image of width {self.width}")
        self._rows[y][x] = self._normalize(value)

    def row(self, y: int) -> list[Pixel]:
        """A copy of row ``y``."""
        self._check_row(y)
        return list(self._rows[y])

    def set_row(self, y: int, values: Iterable) -> None:
        self._check_row(y)
        row = [self._normalize(v) for v in values]
        if len(row) != self.width:
            raise ImageError(f"row has {len(row)} pixels, image width is {self.width}")
        self._rows[y] = row

    def has_alpha(self) -> bool:
        return self.format.has_alpha()

    def is_gray(self) -> bool:
        """True when every colour the image can show has equal red, green and blue."""
        if self.format in (ImageFormat.INDEXED8, ImageFormat.MONO):
            table = self.color_table or (
                list(_MONO_DEFAULT_TABLE) if self.format is ImageFormat.MONO else []
            )
            return all(r == g == b for r, g, b, _ in table)
        if self.format.channels() == 1:
            return True
        return all(p[0] == p[1] == p[2] for row in self._rows for p in row)

    def fill(self, value) -> None:
        pixel = self._normalize(value)
        self._rows = [[pixel] * self.width for _ in range(self.height)]

    def rgba8_row(self, y: int) -> list[Rgba8]:
        """Row ``y`` as unpremultiplied 8-bit (r, g, b, a) tuples."""
        return [
            tuple(round(c * 255) for c in _decode_pixel(self, p))  # type: ignore[misc]
            for p in self.row(y)
        ]


def allocate_image(width: int, height: int, format: ImageFormat) -> Image:
    """Create an image, refusing empty sizes and buffers over the allocation limit."""
    if width <= 0 or height <= 0:
        raise ImageError(f"invalid image size {width}x{height}")
    size = (width * format.bits_per_pixel() + 7) // 8 * height
    if size > ALLOCATION_LIMIT_BYTES:
        raise ImageError(f"image of {width}x{height} exceeds the allocation limit")
    return Image(width, height, format)


def _palette_entry(image: Image, index: int) -> Rgba8:
    table = image.color_table
    if not table and image.format is ImageFormat.MONO:
        table = list(_MONO_DEFAULT_TABLE)
    if 0 <= index < len(table):
        return table[index]
    return (0, 0, 0, 255)


def _decode_pixel(image: Image, pixel: Pixel) -> Tuple[float, float, float, float]:
    """Convert a stored pixel to unpremultiplied (r, g, b, a) in 0..1."""
    fmt = image.format
    if fmt in (ImageFormat.INDEXED8, ImageFormat.MONO):
        r, g, b, a = _palette_entry(image, int(pixel[0]))
        return r / 255, g / 255, b / 255, a / 255
    top = fmt.max_value()
    if fmt.channels() == 1:
        v = pixel[0] / top
        return v, v, v, 1.0
    r, g, b = (pixel[0] / top, pixel[1] / top, pixel[2] / top)
    a = pixel[3] / top if fmt.has_alpha() else 1.0
    if fmt.is_premultiplied():
        if a > 0:
            r, g, b = (min(r / a, 1.0), min(g / a, 1.0), min(b / a, 1.0))
        else:
            r = g = b = 0.0
    return r, g, b, a


def _clamp(v: float) -> float:
    return 0.0 if v < 0.0 else 1.0 if v > 1.0 else v


def _encode_pixel(fmt: ImageFormat, rgba: Sequence[float]) -> Pixel:
    """Convert unpremultiplied (r, g, b, a) in 0..1 to a pixel of ``fmt``."""
    if fmt in (ImageFormat.INDEXED8, ImageFormat.MONO):
        raise ImageError(f"cannot convert pixels to {fmt.name}")
    r, g, b, a = (_clamp(c) for c in rgba)
    top = fmt.max_value()

    def quant(v: float):
        return v * top if fmt.is_float() else round(v * top)

    if fmt.channels() == 1:
        return (quant((r * 11 + g * 16 + b * 5) / 32),)
    if fmt.is_premultiplied():
        r, g, b = r * a, g * a, b * a
    values = [r, g, b]
    if fmt.channels() == 4:
        values.append(a if fmt.has_alpha() else 1.0)
    return tuple(quant(v) for v in values)


def _srgb_to_linear(c: float) -> float:
    return c / 12.92 if c <= 0.04045 else ((c + 0.055) / 1.055) ** 2.4


def _linear_to_srgb(c: float) -> float:
    return 12.92 * c if c <= 0.0031308 else 1.055 * c ** (1 / 2.4) - 0.055


def _transform(
    rgba: Tuple[float, float, float, float], source: ColorSpace, target: ColorSpace
) -> Tuple[float, float, float, float]:
    # Custom (ICC) spaces have no conversion engine here; their values pass through.
    if source is target or ColorSpace.CUSTOM in (source, target):
        return rgba
    curve = _srgb_to_linear if target is ColorSpace.SRGB_LINEAR else _linear_to_srgb
    r, g, b, a = rgba
    return curve(r), curve(g), curve(b), a


def needs_color_space_conversion(
    image: Image,
    target_color_space: Optional[ColorSpace],
    default_color_space: Optional[ColorSpace],
) -> bool:
    """Whether pixels of ``image`` must change colour space to reach the target."""
    if image.format.bits_per_pixel() < 24:
        return False
    source = image.color_space or default_color_space
    if source is None or target_color_space is None:
        return False
    if ColorSpace.CUSTOM in (source, target_color_space):
        return True
    return source is not target_color_space


class ScanLineConverter:
    """Produces scanlines of an image in a fixed target format and colour space."""

    def __init__(self, target_format: ImageFormat) -> None:
        self.target_format = target_format
        self.target_color_space: Optional[ColorSpace] = None
        self.default_source_color_space: Optional[ColorSpace] = None

    def converted_scanline(self, image: Image, y: int) -> list[Pixel]:
        conversion = needs_color_space_conversion(
            image, self.target_color_space, self.default_source_color_space
        )
        row = image.row(y)
        if image.format is self.target_format and not conversion:
            return row
        source = image.color_space or self.default_source_color_space
        converted = []
        for pixel in row:
            rgba = _decode_pixel(image, pixel)
            if conversion:
                rgba = _transform(rgba, source, self.target_color_space)
            converted.append(_encode_pixel(self.target_format, rgba))
        return converted