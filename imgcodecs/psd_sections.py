"""Header and section parsing for Photoshop (PSD/PSB) files.

Covers the file header, the colour mode data, the image resources and the
layer and mask information section, plus the PackBits decompressor used by
the image data.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import BinaryIO

from .image import ImageError, Rgba8

HEADER_SIZE = 26
PSD_SIGNATURE = 0x38425053  # '8BPS'
MAX_SIZE = 300000
MAX_CHANNELS = 57
PALETTE_SIZE = 768

SIGNATURE_8BIM = 0x3842494D  # '8BIM'
SIGNATURE_8B64 = 0x38423634  # '8B64'
SIGNATURE_MESA = 0x4D655361  # 'MeSa'

RESOURCE_RESOLUTION_INFO = 0x03ED
RESOURCE_ICC_PROFILE = 0x040F
RESOURCE_TRANSPARENCY_INDEX = 0x0417
RESOURCE_VERSION_INFO = 0x0421
RESOURCE_XMP_METADATA = 0x0424

LAYER_MT16 = 0x4D743136  # 'Mt16'
LAYER_MT32 = 0x4D743332  # 'Mt32'
LAYER_MTRN = 0x4D74726E  # 'Mtrn'

_HEADER = struct.Struct(">IH6sHIIHH")


class ColorMode(IntEnum):
    BITMAP = 0
    GRAYSCALE = 1
    INDEXED = 2
    RGB = 3
    CMYK = 4
    MULTICHANNEL = 7
    DUOTONE = 8
    LABCOLOR = 9


@dataclass
class PsdHeader:
    """The 26-byte PSD/PSB file header."""

    signature: int
    version: int
    reserved: bytes
    channel_count: int
    height: int
    width: int
    depth: int
    color_mode: int

    @classmethod
    def parse(cls, data: bytes) -> "PsdHeader":
        if len(data) < HEADER_SIZE:
            raise ImageError("PSD header is truncated")
        return cls(*_HEADER.unpack_from(data))

    @property
    def is_psb(self) -> bool:
        return self.version == 2

    def is_valid(self) -> bool:
        """Whether the header follows the format specification."""
        if self.signature != PSD_SIGNATURE:
            return False
        if self.version not in (1, 2):
            return False
        if self.depth not in (1, 8, 16, 32):
            return False
        if self.color_mode not in ColorMode._value2member_map_:
            return False
        # The specification says 1 to 56, but Photoshop allows one more.
        if not 1 <= self.channel_count <= MAX_CHANNELS:
            return False
        return self.width <= MAX_SIZE and self.height <= MAX_SIZE

    def is_supported(self) -> bool:
        """Whether the header describes an image this package can decode."""
        if not self.is_valid():
            return False
        return not (self.color_mode == ColorMode.MULTICHANNEL and self.channel_count < 3)


@dataclass
class ColorModeData:
    """Colour mode data: duotone options or the palette of an indexed image."""

    duotone: bytes = b""
    palette: list[Rgba8] = field(default_factory=list)


@dataclass
class LayerAndMaskSection:
    """Sizes recorded in the layer and mask information section.

    ``additional_layers`` maps each additional layer key to its
    (signature, size) pair.
    """

    size: int = -1
    layer_info_size: int = -1
    layer_count: int = 0
    global_mask_size: int = -1
    additional_layers: dict[int, tuple[int, int]] = field(default_factory=dict)

    def is_null(self) -> bool:
        return self.size <= 0

    def has_alpha(self) -> bool:
        """Whether the section hints that the merged image carries transparency."""
        return self.layer_count < 0 or any(
            key in self.additional_layers for key in (LAYER_MT16, LAYER_MT32, LAYER_MTRN)
        )

    def at_end(self, is_psb: bool) -> bool:
        """Whether the parts read so far cover the whole section."""
        current = 0
        if self.layer_info_size > -1:
            current += self.layer_info_size + 4
            if is_psb:
                current += 4
        if self.global_mask_size > -1:
            current += self.global_mask_size + 4
        for signature, size in self.additional_layers.values():
            current += 12 + size
            if signature == SIGNATURE_8B64:
                current += 4
        return self.size <= current


class _Reader:
    """Big-endian reader that remembers whether any read ran past the end."""

    def __init__(self, stream: BinaryIO) -> None:
        self.stream = stream
        self.ok = True

    def read(self, size: int) -> bytes:
        data = self.stream.read(size) if size > 0 else b""
        if len(data) < size:
            self.ok = False
        return data

    def unpack(self, fmt: str) -> int:
        layout = struct.Struct(fmt)
        data = self.read(layout.size)
        if len(data) < layout.size:
            return 0
        return layout.unpack(data)[0]

    def read_size(self, psb: bool) -> int:
        value = self.unpack(">q" if psb else ">I")
        return value if self.ok else -1

    def skip(self, size: int) -> bool:
        if size < 0:
            return False
        while size > 0:
            chunk = self.stream.read(min(size, 1 << 20))
            if not chunk:
                self.ok = False
                return False
            size -= len(chunk)
        return True


def fixed_point_to_float(value: int) -> float:
    """Convert a signed 16.16 fixed point number to a float."""
    return float(value >> 16) + (value & 0xFFFF) / 65536.0


def packbits_decompress(data: bytes, size: int) -> bytes:
    """Decode PackBits data, producing at most ``size`` bytes.

    Decoding stops early when the next packet would not fit in ``size``.
    Raises ImageError when a literal packet runs past the input.
    """
    out = bytearray()
    ip = 0
    end = len(data)
    while len(out) < size and ip < end:
        available = size - len(out)
        n = data[ip] - 256 if data[ip] > 127 else data[ip]
        ip += 1
        if n == -128:
            continue
        if n >= 0:
            count = n + 1
            if available < count:
                break
            if ip + count > end:
                raise ImageError("PackBits literal runs past the input")
            out += data[ip : ip + count]
            ip += count
        elif ip < end:
            count = 1 - n
            if available < count:
                break
            out += bytes((data[ip],)) * count
            ip += 1
        else:
            break
    return bytes(out)


def read_pascal_string(stream: BinaryIO, align: int = 1) -> tuple[str, int]:
    """Read a Pascal string padded to a multiple of ``align`` bytes.

    Returns the string and the number of stream bytes consumed.
    """
    head = stream.read(1)
    if not head:
        raise ImageError("Pascal string is truncated")
    consumed = 1
    text = ""
    if head[0] > 0:
        raw = stream.read(head[0])
        consumed += len(raw)
        text = raw.decode("latin-1")
    if align > 1:
        pad = consumed % align
        if pad:
            consumed += len(stream.read(align - pad))
    return text, consumed


def read_color_mode_data(stream: BinaryIO) -> ColorModeData:
    """Read the colour mode data section."""
    reader = _Reader(stream)
    size = reader.unpack(">i")
    if not reader.ok:
        raise ImageError("PSD colour mode data length is truncated")
    if size != PALETTE_SIZE:
        # Duotone options, or the toning options some float images carry.
        data = stream.read(size) if size > 0 else b""
        if len(data) != size:
            raise ImageError("PSD colour mode data is truncated")
        return ColorModeData(duotone=data)
    raw = stream.read(size).ljust(size, b"\x00")
    n = size // 3
    palette = [(raw[i], raw[n + i], raw[2 * n + i], 255) for i in range(n)]
    return ColorModeData(palette=palette)


def read_image_resources(stream: BinaryIO) -> dict[int, bytes]:
    """Read the image resources section as a mapping of resource id to data."""
    reader = _Reader(stream)
    remaining = reader.unpack(">i")
    resources: dict[int, bytes] = {}
    while remaining > 0:
        signature = reader.unpack(">I")
        remaining -= 4
        if signature not in (SIGNATURE_8BIM, SIGNATURE_MESA):
            raise ImageError("invalid image resource block signature")
        resource_id = reader.unpack(">H")
        remaining -= 2
        _name, consumed = read_pascal_string(stream, 2)
        remaining -= consumed
        data_size = reader.unpack(">I")
        remaining -= 4
        data = stream.read(data_size)
        remaining -= len(data)
        if len(data) != data_size:
            raise ImageError("image resource block is truncated")
        if data_size % 2:
            remaining -= len(stream.read(1))
        resources[resource_id] = data
    return resources


def _read_additional_layer(reader: _Reader) -> tuple[int, int, int] | None:
    signature = reader.unpack(">I")
    if signature not in (SIGNATURE_8BIM, SIGNATURE_8B64):
        return None
    key = reader.unpack(">I")
    if not reader.ok:
        return None
    size = reader.read_size(signature == SIGNATURE_8B64)
    if size < 0 or not reader.skip(size):
        return None
    return signature, key, size


def read_layer_and_mask_section(stream: BinaryIO, is_psb: bool) -> LayerAndMaskSection:
    """Inspect the layer and mask section, then leave the stream just past it."""
    start = stream.tell()
    reader = _Reader(stream)
    section = LayerAndMaskSection()
    section.size = reader.read_size(is_psb)

    if reader.ok and not section.at_end(is_psb):
        section.layer_info_size = reader.read_size(is_psb)
        if section.layer_info_size > 0:
            section.layer_count = reader.unpack(">h")
            reader.skip(section.layer_info_size - 2)

    if reader.ok and not section.at_end(is_psb):
        section.global_mask_size = reader.read_size(False)
        if section.global_mask_size > 0:
            reader.skip(section.global_mask_size)

    if reader.ok:
        while not section.at_end(is_psb):
            layer = _read_additional_layer(reader)
            if layer is None:
                break
            signature, key, size = layer
            section.additional_layers[key] = (signature, size)

    parsed_ok = reader.ok
    stream.seek(start)
    skipper = _Reader(stream)
    length = skipper.read_size(is_psb)
    if not parsed_ok or length < 0 or not skipper.skip(length):
        raise ImageError("PSD layer and mask section is truncated")
    return section