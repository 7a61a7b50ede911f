"""Reading of Sun Raster (RAS) files.

Supported are 1, 8, 24 and 32 bit images of the standard (BGR), byte encoded
(run-length compressed BGR) and RGB types, optionally with an RGB colour map.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import BinaryIO, Optional, Tuple

from .image import MAX_VECTOR_SIZE, Image, ImageError, ImageFormat, allocate_image

RAS_MAGIC = 0x59A66A95
HEADER_SIZE = 32
_RLE_FLAG = 0x80
_RLE_CHUNK = 32768

_HEADER = struct.Struct(">8I")


class RasType(IntEnum):
    OLD = 0x0
    STANDARD = 0x1
    BYTE_ENCODED = 0x2
    RGB_FORMAT = 0x3
    TIFF_FORMAT = 0x4
    IFF_FORMAT = 0x5
    EXPERIMENTAL = 0xFFFF


class RasColorMapType(IntEnum):
    NONE = 0x0
    RGB = 0x1
    RAW = 0x2


@dataclass
class RasHeader:
    """The 32-byte Sun Raster header: eight big-endian 32-bit fields."""

    magic: int
    width: int
    height: int
    depth: int
    length: int
    type: int
    color_map_type: int
    color_map_length: int

    @classmethod
    def parse(cls, data: bytes) -> "RasHeader":
        if len(data) < HEADER_SIZE:
            raise ImageError("RAS header is truncated")
        return cls(*_HEADER.unpack_from(data))

    def is_supported(self) -> bool:
        if self.magic != RAS_MAGIC:
            return False
        if self.depth not in (1, 8, 24, 32):
            return False
        if self.width == 0 or self.height == 0:
            return False
        return self.type in (RasType.STANDARD, RasType.RGB_FORMAT, RasType.BYTE_ENCODED)

    def image_format(self) -> ImageFormat:
        if self.color_map_type == RasColorMapType.RGB:
            return ImageFormat.INDEXED8
        if self.depth == 8 and self.color_map_type == RasColorMapType.NONE:
            return ImageFormat.GRAYSCALE8
        if self.depth == 1:
            return ImageFormat.MONO
        return ImageFormat.RGB32

    @property
    def line_size(self) -> int:
        """Bytes per scanline in the file, padded to a multiple of 16 bits."""
        size = (self.width * self.depth + 7) // 8
        return size + (size & 1)


class RleLineDecoder:
    """Reads scanlines, undoing the byte run-length encoding when the header asks for it."""

    def __init__(self, stream: BinaryIO, header: RasHeader) -> None:
        self._stream = stream
        self._header = header
        self._rle = bytearray()
        self._unc = bytearray()

    def read_line(self, size: int) -> bytes:
        """Return ``size`` bytes of pixel data, or fewer when the data runs out."""
        if self._header.type != RasType.BYTE_ENCODED:
            return self._stream.read(size)

        previous = 0
        while len(self._unc) < size:
            self._rle += self._stream.read(min(_RLE_CHUNK, size))
            if len(self._rle) == previous:
                break  # no progress: data exhausted or corrupted
            self._decode_buffer()
            previous = len(self._rle)

        if len(self._unc) < size:
            return b""
        line = bytes(self._unc[:size])
        del self._unc[:size]
        return line

    def _decode_buffer(self) -> None:
        data = self._rle
        end = len(data)
        ptr = 0
        while ptr < end:
            flag = data[ptr]
            ptr += 1
            if flag != _RLE_FLAG:
                self._unc.append(flag)
                continue
            if ptr >= end:
                ptr -= 1
                break
            count = data[ptr]
            ptr += 1
            if count == 0:
                self._unc.append(_RLE_FLAG)
                continue
            if ptr >= end:
                ptr -= 2
                break
            value = data[ptr]
            ptr += 1
            self._unc += bytes((value,)) * (count + 1)
        del data[:ptr]


def can_read(data: bytes) -> bool:
    """Whether ``data`` starts with a supported RAS header."""
    if len(data) < HEADER_SIZE:
        return False
    return RasHeader.parse(data).is_supported()


def probe(data: bytes) -> Optional[Tuple[int, int, ImageFormat]]:
    """Width, height and image format from a header, or None if unsupported."""
    if not can_read(data):
        return None
    header = RasHeader.parse(data)
    return header.width, header.height, header.image_format()


def _qt_bytes_per_line(width: int, fmt: ImageFormat) -> int:
    return (width * fmt.bits_per_pixel() + 31) // 32 * 4


def _byte_row(line: bytes, width: int, copied: int):
    return [line[x] if x < copied else 0 for x in range(width)]


def _convert_line(header: RasHeader, fmt: ImageFormat, line: bytes):
    width = header.width
    cmap = header.color_map_type
    copied = min(_qt_bytes_per_line(width, fmt), len(line))

    if cmap == RasColorMapType.NONE and header.depth in (1, 8):
        inverted = bytes(b ^ 0xFF for b in line)
        if fmt is ImageFormat.MONO:
            return [(inverted[x >> 3] >> (7 - (x & 7))) & 1 for x in range(width)]
        return _byte_row(inverted, width, copied)

    if cmap == RasColorMapType.RGB and header.depth in (1, 8):
        return _byte_row(line, width, copied)

    if cmap == RasColorMapType.NONE and header.depth == 24:
        if header.type == RasType.RGB_FORMAT:
            return [(line[3 * x], line[3 * x + 1], line[3 * x + 2], 255) for x in range(width)]
        return [(line[3 * x + 2], line[3 * x + 1], line[3 * x], 255) for x in range(width)]

    if cmap == RasColorMapType.NONE and header.depth == 32:
        if header.type == RasType.RGB_FORMAT:
            return [
                (line[4 * x + 1], line[4 * x + 2], line[4 * x + 3], 255) for x in range(width)
            ]
        return [(line[4 * x + 3], line[4 * x + 2], line[4 * x + 1], 255) for x in range(width)]

    raise ImageError(
        f"unsupported RAS format: color map type {cmap}, type {header.type}, depth {header.depth}"
    )


def read_ras(stream: BinaryIO) -> Image:
    """Decode a Sun Raster image from a binary stream."""
    head = stream.read(HEADER_SIZE)
    if len(head) < HEADER_SIZE:
        raise ImageError("RAS header is truncated")
    header = RasHeader.parse(head)
    if header.color_map_length > MAX_VECTOR_SIZE:
        raise ImageError("RAS color map length too large")
    if not header.is_supported():
        raise ImageError("unsupported RAS header")

    line_size = header.line_size
    if line_size > MAX_VECTOR_SIZE:
        raise ImageError(f"unsupported RAS line size {line_size}")

    fmt = header.image_format()
    image = allocate_image(header.width, header.height, fmt)

    if header.color_map_type == RasColorMapType.RGB:
        palette = stream.read(header.color_map_length)
        if len(palette) < header.color_map_length:
            raise ImageError("RAS color map is truncated")
        n = header.color_map_length // 3
        table = [(palette[i], palette[i + n], palette[i + 2 * n], 255) for i in range(n)]
        table += [(255, 255, 255, 255)] * (256 - len(table))
        image.color_table = table

    decoder = RleLineDecoder(stream, header)
    for y in range(header.height):
        line = decoder.read_line(line_size)
        if len(line) != line_size:
            raise ImageError(f"unable to read RAS line {y}: the data seems corrupted")
        image.set_row(y, _convert_line(header, fmt, line))
    return image