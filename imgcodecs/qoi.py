"""Reading and writing of QOI ("Quite OK Image") files."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import BinaryIO, Optional, Tuple

from .image import (
    MAX_VECTOR_SIZE,
    ColorSpace,
    Image,
    ImageError,
    ImageFormat,
    ScanLineConverter,
    allocate_image,
)

OP_INDEX = 0x00
OP_DIFF = 0x40
OP_LUMA = 0x80
OP_RUN = 0xC0
OP_RGB = 0xFE
OP_RGBA = 0xFF
MASK_2 = 0xC0

QOI_MAGIC = int.from_bytes(b"qoif", "big")
HEADER_SIZE = 14
END_MARKER = b"\x00" * 7 + b"\x01"
MAX_SIZE = 300000

_HEADER = struct.Struct(">IIIBB")


@dataclass
class QoiHeader:
    """The 14-byte QOI file header."""

    magic: int
    width: int
    height: int
    channels: int
    colorspace: int

    @classmethod
    def parse(cls, data: bytes) -> "QoiHeader":
        if len(data) < HEADER_SIZE:
            raise ImageError("QOI header is truncated")
        return cls(*_HEADER.unpack_from(data))

    def is_supported(self) -> bool:
        if self.magic != QOI_MAGIC:
            return False
        if self.width == 0 or self.height == 0 or self.channels < 3 or self.colorspace > 1:
            return False
        return self.width <= MAX_SIZE and self.height <= MAX_SIZE

    def to_bytes(self) -> bytes:
        return _HEADER.pack(self.magic, self.width, self.height, self.channels, self.colorspace)

    def image_format(self) -> ImageFormat:
        return ImageFormat.RGB32 if self.channels == 3 else ImageFormat.ARGB32


def _hash(px: Tuple[int, int, int, int]) -> int:
    r, g, b, a = px
    return (r * 3 + g * 5 + b * 7 + a * 11) & 0x3F


def _signed(v: int) -> int:
    return ((v + 128) & 0xFF) - 128


def can_read(data: bytes) -> bool:
    """Whether ``data`` starts with a supported QOI header."""
    if len(data) < HEADER_SIZE:
        return False
    return QoiHeader.parse(data).is_supported()


def probe(data: bytes) -> Optional[Tuple[int, int, ImageFormat]]:
    """Width, height and image format from a header, or None if unsupported."""
    if not can_read(data):
        return None
    header = QoiHeader.parse(data)
    return header.width, header.height, header.image_format()


def read_qoi(stream: BinaryIO) -> Image:
    """Decode a QOI image from a binary stream."""
    head = stream.read(HEADER_SIZE)
    if len(head) < HEADER_SIZE:
        raise ImageError("QOI header is truncated")
    header = QoiHeader.parse(head)
    if not header.is_supported():
        raise ImageError("unsupported QOI header")
    if max(1024, header.width * header.channels * 3 // 2) > MAX_VECTOR_SIZE:
        raise ImageError("QOI row too large")

    image = allocate_image(header.width, header.height, header.image_format())
    image.color_space = ColorSpace.SRGB_LINEAR if header.colorspace else ColorSpace.SRGB

    data = stream.read()
    chunks_len = len(data) - len(END_MARKER)
    index = [(0, 0, 0, 0)] * 64
    r, g, b, a = 0, 0, 0, 255
    alpha = header.channels == 4
    run = 0
    p = 0
    for y in range(header.height):
        if len(data) - p < len(END_MARKER):
            raise ImageError("QOI data is truncated")
        row = []
        for _ in range(header.width):
            if run > 0:
                run -= 1
            elif p < chunks_len:
                b1 = data[p]
                p += 1
                if b1 == OP_RGB:
                    r, g, b = data[p : p + 3]
                    p += 3
                elif b1 == OP_RGBA:
                    r, g, b, a = data[p : p + 4]
                    p += 4
                else:
                    tag = b1 & MASK_2
                    if tag == OP_INDEX:
                        r, g, b, a = index[b1]
                    elif tag == OP_DIFF:
                        r = (r + ((b1 >> 4) & 0x03) - 2) & 0xFF
                        g = (g + ((b1 >> 2) & 0x03) - 2) & 0xFF
                        b = (b + (b1 & 0x03) - 2) & 0xFF
                    elif tag == OP_LUMA:
                        b2 = data[p]
                        p += 1
                        vg = (b1 & 0x3F) - 32
                        r = (r + vg - 8 + ((b2 >> 4) & 0x0F)) & 0xFF
                        g = (g + vg) & 0xFF
                        b = (b + vg - 8 + (b2 & 0x0F)) & 0xFF
                    else:
                        run = b1 & 0x3F
                index[_hash((r, g, b, a))] = (r, g, b, a)
            row.append((r, g, b, a if alpha else 255))
        image.set_row(y, row)

    # Trailing data after the end marker is tolerated.
    if not data[p:].startswith(END_MARKER):
        raise ImageError("QOI end-of-stream marker missing")
    return image


def write_qoi(stream: BinaryIO, image: Image) -> None:
    """Encode ``image`` as QOI into a binary stream."""
    if image.width == 0 or image.height == 0:
        raise ImageError("cannot write an empty image")
    channels = 4 if image.has_alpha() else 3
    linear = image.color_space is ColorSpace.SRGB_LINEAR
    header = QoiHeader(QOI_MAGIC, image.width, image.height, channels, 1 if linear else 0)
    if not header.is_supported():
        raise ImageError("image cannot be stored as QOI")
    stream.write(header.to_bytes())

    converter = ScanLineConverter(ImageFormat.RGB888 if channels == 3 else ImageFormat.RGBA8888)
    converter.target_color_space = ColorSpace.SRGB_LINEAR if linear else ColorSpace.SRGB

    index = [(0, 0, 0, 0)] * 64
    prev = (0, 0, 0, 255)
    run = 0
    last_x, last_y = image.width - 1, image.height - 1
    for y in range(image.height):
        out = bytearray()
        for x, pixel in enumerate(converter.converted_scanline(image, y)):
            px = tuple(pixel) if channels == 4 else (pixel[0], pixel[1], pixel[2], 255)
            if px == prev:
                run += 1
                if run == 62 or (x == last_x and y == last_y):
                    out.append(OP_RUN | (run - 1))
                    run = 0
            else:
                if run > 0:
                    out.append(OP_RUN | (run - 1))
                    run = 0
                pos = _hash(px)
                if index[pos] == px:
                    out.append(OP_INDEX | pos)
                else:
                    index[pos] = px
                    if px[3] == prev[3]:
                        vr = _signed(px[0] - prev[0])
                        vg = _signed(px[1] - prev[1])
                        vb = _signed(px[2] - prev[2])
                        vg_r = _signed(vr - vg)
                        vg_b = _signed(vb - vg)
                        if -3 < vr < 2 and -3 < vg < 2 and -3 < vb < 2:
                            out.append(OP_DIFF | (vr + 2) << 4 | (vg + 2) << 2 | (vb + 2))
                        elif -9 < vg_r < 8 and -33 < vg < 32 and -9 < vg_b < 8:
                            out.append(OP_LUMA | (vg + 32))
                            out.append((vg_r + 8) << 4 | (vg_b + 8))
                        else:
                            out.append(OP_RGB)
                            out.extend(px[:3])
                    else:
                        out.append(OP_RGBA)
                        out.extend(px)
            prev = px
        stream.write(bytes(out))
    stream.write(END_MARKER)