"""Reading of Photoshop (PSD/PSB) files.

Only the merged image is decoded.  RGB and greyscale data are kept in their
native precision.  CMYK and multichannel images are converted to RGB without
colour management, and LAB images are converted to sRGB.  Duotone images are
read as greyscale, with the duotone options kept as text.
"""

from __future__ import annotations

import io
import math
import struct
from enum import Enum
from itertools import accumulate
from typing import BinaryIO, Optional, Sequence, Tuple, Union

from .image import MAX_VECTOR_SIZE, ColorSpace, Image, ImageError, ImageFormat, allocate_image
from .psd_sections import (
    HEADER_SIZE,
    RESOURCE_ICC_PROFILE,
    RESOURCE_RESOLUTION_INFO,
    RESOURCE_TRANSPARENCY_INDEX,
    RESOURCE_VERSION_INFO,
    RESOURCE_XMP_METADATA,
    ColorMode,
    PsdHeader,
    packbits_decompress,
    read_color_mode_data,
    read_image_resources,
    read_layer_and_mask_section,
)

XMP_KEY = "XML:com.adobe.xmp"
DUOTONE_KEY = "PSDDuotoneOptions"

Number = Union[int, float]


class _Premul(Enum):
    PS2P = "ps2p"  # Photoshop premultiplied to premultiplied (RGB)
    PS2A = "ps2a"  # Photoshop premultiplied to straight alpha (RGB, CMYK, LAB L*)
    PSLAB2A = "pslab2a"  # Photoshop premultiplied to straight alpha (LAB a* and b*)


def image_format(header: PsdHeader, alpha: bool) -> Optional[ImageFormat]:
    """The image format a header decodes to, or None when it cannot be decoded."""
    channels = header.channel_count
    depth = header.depth
    mode = header.color_mode
    if channels == 0:
        return None
    if mode == ColorMode.RGB:
        opaque = channels < 4 or not alpha
        if depth == 32:
            return ImageFormat.RGBX32FPX4 if opaque else ImageFormat.RGBA32FPX4_PREMULTIPLIED
        if depth == 16:
            return ImageFormat.RGBX64 if opaque else ImageFormat.RGBA64_PREMULTIPLIED
        return ImageFormat.RGB888 if opaque else ImageFormat.RGBA8888_PREMULTIPLIED
    if mode in (ColorMode.MULTICHANNEL, ColorMode.CMYK):
        opaque = channels < 5 or not alpha
        if depth == 16:
            return ImageFormat.RGBX64 if opaque else ImageFormat.RGBA64
        if depth == 8:
            return ImageFormat.RGB888 if opaque else ImageFormat.RGBA8888
        return None
    if mode == ColorMode.LABCOLOR:
        opaque = channels < 4 or not alpha
        if depth == 16:
            return ImageFormat.RGBX64 if opaque else ImageFormat.RGBA64
        if depth == 8:
            return ImageFormat.RGB888 if opaque else ImageFormat.RGBA8888
        return None
    if mode in (ColorMode.GRAYSCALE, ColorMode.DUOTONE):
        return ImageFormat.GRAYSCALE8 if depth == 8 else ImageFormat.GRAYSCALE16
    if mode == ColorMode.INDEXED:
        return ImageFormat.INDEXED8 if depth == 8 else None
    if mode == ColorMode.BITMAP:
        return ImageFormat.MONO if depth == 1 else None
    return None


def cmyk_to_rgb(values: Sequence[int], max_value: int, alpha: bool) -> Tuple[int, int, int, int]:
    """Convert one pixel of Photoshop CMYK (ink-inverted) samples to (r, g, b, a).

    Three samples are read as CMY.  A fifth sample is the alpha when ``alpha``
    is true; otherwise the result is opaque.
    """
    if len(values) < 3:
        raise ImageError("not a valid CMY/CMYK pixel")
    top = float(max_value)
    inv = 1.0 / top
    c = 1 - values[0] * inv
    m = 1 - values[1] * inv
    y = 1 - values[2] * inv
    k = 1 - values[3] * inv if len(values) > 3 else 0.0

    def channel(v: float) -> int:
        return int(min(top - (v * (1 - k) + k) * top + 0.5, top))

    a = values[4] if len(values) >= 5 and alpha else max_value
    return channel(c), channel(m), channel(y), a


def _finv(v: float) -> float:
    return v * v * v if v > 6.0 / 29.0 else (v - 16.0 / 116.0) / 7.787


def _gamma(linear: float) -> float:
    return 1.055 * math.pow(linear, 1.0 / 2.4) - 0.055 if linear > 0.0031308 else 12.92 * linear


def lab_to_rgb(values: Sequence[int], max_value: int, alpha: bool) -> Tuple[int, int, int, int]:
    """Convert one pixel of LAB samples to sRGB (r, g, b, a) using the D65 white point.

    A fourth sample is the alpha when ``alpha`` is true; otherwise the result is opaque.
    """
    if len(values) < 3:
        raise ImageError("not a valid LAB pixel")
    top = float(max_value)
    inv = 1.0 / top
    lum = values[0] * inv * 100.0
    a_star = values[1] * inv * 255.0 - 128.0
    b_star = values[2] * inv * 255.0 - 128.0

    y = (lum + 16.0) * (1.0 / 116.0)
    x = a_star * (1.0 / 500.0) + y
    z = y - b_star * (1.0 / 200.0)
    x = _finv(x) * 0.9504
    y = _finv(y) * 1.0000
    z = _finv(z) * 1.0888

    r = _gamma(3.24071 * x - 1.53726 * y - 0.498571 * z)
    g = _gamma(-0.969258 * x + 1.87599 * y + 0.0415557 * z)
    b = _gamma(0.0556352 * x - 0.203996 * y + 1.05707 * z)

    def channel(v: float) -> int:
        return int(max(min(v * top + 0.5, top), 0.0))

    a = values[3] if len(values) >= 4 and alpha else max_value
    return channel(r), channel(g), channel(b), a


def can_read(data: bytes, sequential: bool = False) -> bool:
    """Whether ``data`` starts with a supported header.

    Images that need random access (colour conversion or alpha) are refused
    when the source is ``sequential``.
    """
    if len(data) < HEADER_SIZE:
        return False
    header = PsdHeader.parse(data)
    if sequential:
        if header.color_mode in (ColorMode.CMYK, ColorMode.LABCOLOR, ColorMode.MULTICHANNEL):
            return False
        if header.color_mode == ColorMode.RGB and header.channel_count > 3:
            return False
    return header.is_supported()


def probe(data: bytes) -> Optional[Tuple[int, int]]:
    """Width and height from a valid header, or None."""
    if len(data) < HEADER_SIZE:
        return None
    header = PsdHeader.parse(data)
    if not header.is_valid():
        return None
    return header.width, header.height


def read_psd(stream: BinaryIO) -> Image:
    """Decode the merged image of a PSD or PSB file from a binary stream."""
    head = stream.read(HEADER_SIZE)
    if len(head) < HEADER_SIZE:
        raise ImageError("PSD header is truncated")
    header = PsdHeader.parse(head)
    body = stream.read()
    if not body or not header.is_valid():
        raise ImageError("not a valid PSD file")
    if not header.is_supported():
        raise ImageError("unsupported PSD file")
    return _load(io.BytesIO(body), header)


def _has_merged_data(resources: dict[int, bytes]) -> bool:
    data = resources.get(RESOURCE_VERSION_INFO)
    if data is None:
        return True
    return len(data) > 4 and data[4] != 0


def _apply_transparency_index(image: Image, resources: dict[int, bytes]) -> None:
    data = resources.get(RESOURCE_TRANSPARENCY_INDEX)
    if data is None:
        return
    (index,) = struct.unpack(">H", data[:2].ljust(2, b"\x00"))
    if index < len(image.color_table):
        r, g, b, _ = image.color_table[index]
        image.color_table[index] = (r, g, b, 0)


def _apply_resolution(image: Image, resources: dict[int, bytes]) -> None:
    data = resources.get(RESOURCE_RESOLUTION_INFO)
    if data is None:
        return
    hres, _display, vres = struct.unpack(">i4si", data[:12].ljust(12, b"\x00"))
    if hres <= 0 or vres <= 0:
        return
    image.dots_per_meter_x = int(_fixed(hres) * 1000 / 25.4)
    image.dots_per_meter_y = int(_fixed(vres) * 1000 / 25.4)


def _fixed(value: int) -> float:
    return float(value >> 16) + (value & 0xFFFF) / 65536.0


def _cdiv(n: int, d: int) -> int:
    """Integer division truncating toward zero."""
    q = abs(n) // abs(d)
    return q if (n >= 0) == (d > 0) else -q


def _premul_convert(pixels: list, ac: int, conv: _Premul, depth: int) -> None:
    """Undo Photoshop's premultiplication of the first ``ac`` channels in place."""
    is_float = depth == 32
    top = 1 if is_float else (1 << depth) - 1
    mask = None if is_float else (1 << depth) - 1
    for px in pixels:
        a = px[ac]
        for c in range(ac):
            v = px[c]
            if conv is _Premul.PS2P:
                nv = v + a - top
            elif conv is _Premul.PS2A or c == 0:
                if a <= 0:
                    continue
                nv = _cdiv((v + a - top) * top + a // 2, a)
            else:
                if a <= 0:
                    continue
                nv = _cdiv((v + _cdiv(a - top + 1, 2)) * top + a // 2, a)
            px[c] = nv if mask is None else nv & mask


class _StrideReader:
    """Reads one channel scanline, reusing its buffer as the format requires."""

    def __init__(self, stream: BinaryIO, raw_count: int, compression: int) -> None:
        self.stream = stream
        self.buffer = bytearray(raw_count)
        self.compression = compression

    def read(self, compressed_size: int) -> bytes:
        if self.compression:
            if compressed_size > MAX_VECTOR_SIZE:
                raise ImageError("PSD compressed scanline too large")
            data = self.stream.read(compressed_size)
            if len(data) != compressed_size:
                raise ImageError("PSD compressed scanline is truncated")
            decoded = packbits_decompress(data, len(self.buffer))
            self.buffer[: len(decoded)] = decoded
        else:
            data = self.stream.read(len(self.buffer))
            if len(data) != len(self.buffer):
                raise ImageError("PSD scanline is truncated")
            self.buffer[:] = data
        return bytes(self.buffer)


def _decode_stride(raw: bytes, width: int, depth: int) -> Optional[list]:
    if depth == 8:
        return list(raw[:width])
    if depth == 16:
        return list(struct.unpack_from(f">{width}H", raw))
    if depth == 32:
        return list(struct.unpack_from(f">{width}f", raw))
    return None


def _raw_bytes_row(data: bytes, fmt: ImageFormat, width: int) -> list:
    """Interpret bytes laid into a scanline's memory as pixels of ``fmt``."""
    size = width * fmt.bits_per_pixel() // 8
    data = data[:size].ljust(size, b"\x00")
    flat: Sequence[int] = data
    if fmt.bits_per_channel() == 16:
        flat = struct.unpack(f"<{size // 2}H", data)
    n = fmt.channels()
    if n == 1:
        return list(flat)
    return [tuple(flat[i : i + n]) for i in range(0, len(flat), n)]


def _fill_pixel(fmt: ImageFormat) -> tuple:
    channels = fmt.channels()
    if channels == 1:
        return (0,)
    if channels == 3:
        return (0, 0, 0)
    return (0, 0, 0, fmt.max_value())


def _load(buf: BinaryIO, header: PsdHeader) -> Image:
    is_psb = header.is_psb
    color_data = read_color_mode_data(buf)
    resources = read_image_resources(buf)
    if not _has_merged_data(resources):
        raise ImageError("PSD file has no merged image data")
    layers = read_layer_and_mask_section(buf, is_psb)

    raw = buf.read(2)
    if len(raw) < 2:
        raise ImageError("PSD compression field is truncated")
    compression = int.from_bytes(raw, "big")
    if compression > 1:
        raise ImageError(f"unknown PSD compression type {compression}")

    mode = header.color_mode
    alpha = mode == ColorMode.RGB
    if not layers.is_null():
        alpha = layers.has_alpha()

    fmt = image_format(header, alpha)
    if fmt is None:
        raise ImageError(
            f"unsupported PSD image: color mode {mode}, depth {header.depth}, "
            f"channels {header.channel_count}"
        )

    width, height, depth = header.width, header.height, header.depth
    channel_count = header.channel_count
    image = allocate_image(width, height, fmt)
    fill = _fill_pixel(fmt)
    image.fill(fill)
    if color_data.palette:
        image.color_table = list(color_data.palette)
        _apply_transparency_index(image, resources)

    img_channels = fmt.channels()
    raw_count = (width * depth + 7) // 8
    if height > MAX_VECTOR_SIZE // channel_count // 4:
        raise ImageError("PSD height or channel count too large")

    total = height * channel_count
    if compression:
        code = "I" if is_psb else "H"
        table = buf.read(total * struct.calcsize(code))
        if len(table) != total * struct.calcsize(code):
            raise ImageError("PSD scanline size table is truncated")
        strides = list(struct.unpack(f">{total}{code}", table))
    else:
        strides = [raw_count] * total
    positions = list(accumulate(strides[:-1], initial=buf.tell()))

    reader = _StrideReader(buf, raw_count, compression)
    random_access = mode in (ColorMode.CMYK, ColorMode.LABCOLOR, ColorMode.MULTICHANNEL) or (
        mode != ColorMode.INDEXED and image.has_alpha()
    )

    if random_access:
        _read_random_access(image, header, reader, strides, positions, alpha, fill)
    else:
        _read_linear(image, header, reader, strides, fill)

    _apply_resolution(image, resources)
    if mode == ColorMode.LABCOLOR:
        image.color_space = ColorSpace.SRGB
    else:
        profile = resources.get(RESOURCE_ICC_PROFILE)
        if profile:
            image.icc_profile = profile
            image.color_space = ColorSpace.CUSTOM

    xmp = resources.get(RESOURCE_XMP_METADATA)
    if xmp:
        text = xmp.decode("utf-8", errors="replace")
        if text:
            image.text[XMP_KEY] = text

    if color_data.duotone:
        image.text[DUOTONE_KEY] = color_data.duotone.hex()
    return image


def _read_random_access(
    image: Image,
    header: PsdHeader,
    reader: _StrideReader,
    strides: list[int],
    positions: list[int],
    alpha: bool,
    fill: tuple,
) -> None:
    width, height, depth = header.width, header.height, header.depth
    mode = header.color_mode
    img_channels = image.format.channels()
    top = (1 << depth) - 1 if depth != 32 else 1
    for y in range(height):
        planes = []
        for c in range(header.channel_count):
            n = c * height + y
            reader.stream.seek(positions[n])
            values = _decode_stride(reader.read(strides[n]), width, depth)
            if values is None:
                raise ImageError(f"unsupported PSD depth {depth}")
            planes.append(values)
        pixels = [list(px) for px in zip(*planes)]

        if image.has_alpha():
            if mode == ColorMode.CMYK and depth in (8, 16):
                _premul_convert(pixels, 4, _Premul.PS2A, depth)
            elif mode == ColorMode.LABCOLOR and depth in (8, 16):
                _premul_convert(pixels, 3, _Premul.PSLAB2A, depth)
            elif mode == ColorMode.RGB:
                _premul_convert(pixels, 3, _Premul.PS2P, depth)

        if mode in (ColorMode.CMYK, ColorMode.MULTICHANNEL):
            row = [cmyk_to_rgb(px, top, alpha)[:img_channels] for px in pixels]
        elif mode == ColorMode.LABCOLOR:
            row = [lab_to_rgb(px, top, alpha)[:img_channels] for px in pixels]
        elif mode == ColorMode.RGB:
            copied = min(img_channels, header.channel_count)
            row = [tuple(px[:copied]) + fill[copied:] for px in pixels]
        else:
            continue
        image.set_row(y, row)


def _read_linear(
    image: Image, header: PsdHeader, reader: _StrideReader, strides: list[int], fill: tuple
) -> None:
    width, height, depth = header.width, header.height, header.depth
    mode = header.color_mode
    fmt = image.format
    img_channels = fmt.channels()
    channel_num = min(header.channel_count, img_channels)

    planes: list[list[Optional[list]]] = [[None] * height for _ in range(img_channels)]
    raw_rows: list[Optional[list]] = [None] * height
    for c in range(channel_num):
        for y in range(height):
            stride = reader.read(strides[c * height + y])
            if depth == 1:
                inverted = bytes(b ^ 0xFF for b in stride)
                if fmt is ImageFormat.MONO:
                    planes[c][y] = [(inverted[x >> 3] >> (7 - (x & 7))) & 1 for x in range(width)]
                else:
                    raw_rows[y] = _raw_bytes_row(inverted, fmt, width)
            elif depth in (8, 16) or (depth == 32 and mode == ColorMode.RGB):
                planes[c][y] = _decode_stride(stride, width, depth)
            elif depth == 32 and mode == ColorMode.GRAYSCALE:
                planes[c][y] = [
                    int(max(0.0, min(v * 65535 + 0.5, 65535.0)))
                    for v in _decode_stride(stride, width, depth)
                ]

    for y in range(height):
        if raw_rows[y] is not None:
            image.set_row(y, raw_rows[y])
            continue
        columns = [
            planes[c][y] if planes[c][y] is not None else [fill[c]] * width
            for c in range(img_channels)
        ]
        if all(planes[c][y] is None for c in range(img_channels)):
            continue
        image.set_row(y, list(zip(*columns)))