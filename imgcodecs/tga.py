"""Reading and writing of Truevision TGA files.

Reading covers uncompressed and run-length encoded indexed, grey and true
colour images (types 1, 2, 3, 9, 10 and 11) with 24-bit colour maps of at
most 256 entries and pixel sizes of 8, 16, 24 and 32 bits.  Writing produces
uncompressed true colour images with a top-left origin.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import BinaryIO

from .image import Image, ImageError, ImageFormat, allocate_image

HEADER_SIZE = 18
MAX_PALETTE_SIZE = 768

ORIGIN_MASK = 0x30
ORIGIN_RIGHT = 0x10
ORIGIN_UPPER = 0x20
ALPHA_BITS_8 = 0x08

# Identification, colour map type and image type of written files, followed
# by an empty colour map specification and zero origin.
_WRITE_MAGIC = bytes([0, 0, 2, 0, 0, 0, 0, 0, 0, 0, 0, 0])

_HEADER = struct.Struct("<BBBHHBHHHHBB")


class TgaType(IntEnum):
    INDEXED = 1
    RGB = 2
    GREY = 3
    RLE_INDEXED = 9
    RLE_RGB = 10
    RLE_GREY = 11


@dataclass
class TgaHeader:
    """The 18-byte TGA file header."""

    id_length: int
    colormap_type: int
    image_type: int
    colormap_index: int
    colormap_length: int
    colormap_size: int
    x_origin: int
    y_origin: int
    width: int
    height: int
    pixel_size: int
    flags: int

    @classmethod
    def parse(cls, data: bytes) -> "TgaHeader":
        if len(data) < HEADER_SIZE:
            raise ImageError("TGA header is truncated")
        return cls(*_HEADER.unpack_from(data))

    def is_supported(self) -> bool:
        if self.image_type not in TgaType._value2member_map_:
            return False
        if self.image_type in (TgaType.INDEXED, TgaType.RLE_INDEXED):
            if self.colormap_length > 256 or self.colormap_size != 24 or self.colormap_type != 1:
                return False
        else:
            if self.colormap_type != 0:
                return False
        if self.width == 0 or self.height == 0:
            return False
        return self.pixel_size in (8, 16, 24, 32)

    @property
    def rle(self) -> bool:
        return self.image_type in (TgaType.RLE_INDEXED, TgaType.RLE_RGB, TgaType.RLE_GREY)

    @property
    def paletted(self) -> bool:
        return self.image_type in (TgaType.INDEXED, TgaType.RLE_INDEXED)

    @property
    def grey(self) -> bool:
        return self.image_type in (TgaType.GREY, TgaType.RLE_GREY)

    @property
    def alpha_bits(self) -> int:
        return self.flags & 0x0F


def can_read(data: bytes) -> bool:
    """Whether ``data`` starts with a supported TGA header."""
    if len(data) < HEADER_SIZE:
        return False
    return TgaHeader.parse(data).is_supported()


class _Cursor:
    """Sequential reader over an in-memory buffer, padding short reads with zeros."""

    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    def at_end(self) -> bool:
        return self.pos >= len(self.data)

    def read(self, size: int) -> bytes:
        chunk = self.data[self.pos : self.pos + size]
        self.pos += len(chunk)
        return chunk

    def read_padded(self, size: int) -> bytes:
        return self.read(size).ljust(size, b"\x00")


def _decode_rle(cursor: _Cursor, size: int, pixel_size: int) -> bytes:
    out = bytearray()
    remaining = size
    while remaining > 0:
        if cursor.at_end():
            raise ImageError("TGA run-length data is truncated")
        packet = cursor.read(1)[0]
        count = (packet & 0x7F) + 1
        remaining -= count * pixel_size
        if remaining < 0:
            raise ImageError("TGA run-length packet overflows the image")
        if packet & 0x80:
            out += cursor.read_padded(pixel_size) * count
        else:
            out += cursor.read_padded(count * pixel_size)
    return bytes(out)


def _rows(header: TgaHeader, buffer: bytes, palette: bytes, argb: bool):
    """Yield decoded rows in file order; ``None`` marks a row left untouched."""
    src = 0
    width = header.width
    for _ in range(header.height):
        row = []
        if header.paletted:
            for idx in buffer[src : src + width]:
                row.append((palette[3 * idx + 2], palette[3 * idx + 1], palette[3 * idx], 255))
            src += width
        elif header.grey:
            row = [(v, v, v, 255) for v in buffer[src : src + width]]
            src += width
        elif header.pixel_size == 16:
            for _x in range(width):
                v = buffer[src] | buffer[src + 1] << 8
                b, g, r = v & 0x1F, (v >> 5) & 0x1F, (v >> 10) & 0x1F
                row.append(((r << 3) | (r >> 2), (g << 3) | (g >> 2), (b << 3) | (b >> 2), 255))
                src += 2
        elif header.pixel_size == 24:
            for _x in range(width):
                row.append((buffer[src + 2], buffer[src + 1], buffer[src], 255))
                src += 3
        elif header.pixel_size == 32:
            shift = 8 - header.alpha_bits
            for _x in range(width):
                alpha = (buffer[src + 3] << shift) & 0xFF if argb else 255
                row.append((buffer[src + 2], buffer[src + 1], buffer[src], alpha))
                src += 4
        else:
            yield None
            continue
        yield row


def read_tga(stream: BinaryIO) -> Image:
    """Decode a TGA image from a binary stream."""
    head = stream.read(HEADER_SIZE)
    if len(head) < HEADER_SIZE:
        raise ImageError("TGA header is truncated")
    header = TgaHeader.parse(head)
    stream.read(header.id_length)
    data = stream.read()
    if not data:
        raise ImageError("TGA file has no image data")
    if not header.is_supported():
        raise ImageError("unsupported TGA header")

    argb = header.pixel_size == 32 and header.alpha_bits != 0
    if argb and header.alpha_bits > 8:
        raise ImageError("TGA alpha depth above 8 bits")
    image = allocate_image(
        header.width, header.height, ImageFormat.ARGB32 if argb else ImageFormat.RGB32
    )
    image.fill((0, 0, 0, 255))

    pixel_size = header.pixel_size // 8
    size = header.width * header.height * pixel_size
    cursor = _Cursor(data)

    palette = b""
    if header.paletted:
        palette_size = 3 * header.colormap_length
        if palette_size > MAX_PALETTE_SIZE:
            raise ImageError("TGA palette too large")
        palette = cursor.read(palette_size).ljust(MAX_PALETTE_SIZE, b"\x00")

    if header.rle:
        buffer = _decode_rle(cursor, size, pixel_size)
    else:
        buffer = cursor.read_padded(size)

    if header.flags & ORIGIN_UPPER:
        targets = range(header.height)
    else:
        targets = range(header.height - 1, -1, -1)
    for y, row in zip(targets, _rows(header, buffer, palette, argb)):
        if row is not None:
            image.set_row(y, row)
    return image


def write_tga(stream: BinaryIO, image: Image) -> None:
    """Encode ``image`` as an uncompressed true colour TGA into a binary stream."""
    if image.width == 0 or image.height == 0:
        raise ImageError("cannot write an empty image")
    if image.width > 0xFFFF or image.height > 0xFFFF:
        raise ImageError("image too large for TGA")
    has_alpha = image.has_alpha()
    flags = ORIGIN_UPPER | ALPHA_BITS_8 if has_alpha else ORIGIN_UPPER
    out = bytearray(_WRITE_MAGIC)
    out += struct.pack("<HHBB", image.width, image.height, 32 if has_alpha else 24, flags)
    for y in range(image.height):
        for r, g, b, a in image.rgba8_row(y):
            out += bytes((b, g, r, a)) if has_alpha else bytes((b, g, r))
    stream.write(bytes(out))