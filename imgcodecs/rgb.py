"""Reading and writing of SGI image files (rgb, rgba, bw, sgi).

Reading covers verbatim and run-length encoded images with two or three
dimensions and the normal colour map mode.  Samples of 16 bits keep only their
most significant byte, and channels past the fourth are read but dropped.
Writing produces 8-bit images, verbatim or run-length encoded, whichever is
smaller.
"""

from __future__ import annotations

import struct
from typing import BinaryIO, Sequence

from .image import Image, ImageError, ImageFormat, allocate_image

SGI_MAGIC = 0x01DA
HEADER_SIZE = 512
COLORMAP_NORMAL = 0
_MAX_RUN = 126
_INT_MAX = 2**31 - 1
_U32 = 0xFFFFFFFF

_HEADER = struct.Struct(">HBBHHHHIII")
_NAME_SIZE = 80
_TAIL_PADDING = 404


def compact_row(values: Sequence[int]) -> bytes:
    """Run-length encode one row of 8-bit samples, ending with a zero byte."""
    out = bytearray()
    src = 0
    end = len(values)
    while src < end:
        t = src
        literal = 0
        while t + 2 < end and not (values[t] == values[t + 1] == values[t + 2]):
            t += 1
            literal += 1

        while literal:
            count = min(literal, _MAX_RUN)
            literal -= count
            out.append(0x80 | count)
            out += bytes(values[src : src + count])
            src += count

        if src == end:
            break

        pattern = values[src]
        src += 1
        repeat = 1
        while src < end and values[src] == pattern:
            src += 1
            repeat += 1

        while repeat:
            count = min(repeat, _MAX_RUN)
            repeat -= count
            out += bytes((count, pattern))
    out.append(0)
    return bytes(out)


def decode_row(
    data: bytes, offset: int, width: int, rle: bool, bytes_per_channel: int
) -> tuple[list[int], int]:
    """Decode ``width`` samples starting at ``offset``.

    Returns the samples and the offset just past what was consumed.  With two
    bytes per channel only the most significant byte of each sample is kept.
    """
    end = len(data)
    pos = offset
    values: list[int] = []

    if not rle:
        for _ in range(width):
            if pos >= end:
                raise ImageError("SGI scanline is truncated")
            values.append(data[pos])
            pos += bytes_per_channel
        return values, pos

    while len(values) < width:
        if bytes_per_channel == 2:
            pos += 1
        if pos >= end:
            raise ImageError("SGI run-length data is truncated")
        count = data[pos] & 0x7F
        if not count:
            break
        copy = data[pos] & 0x80
        pos += 1
        if copy:
            while len(values) < width and pos < end and count:
                count -= 1
                values.append(data[pos])
                pos += bytes_per_channel
        else:
            value = data[pos] if pos < end else 0
            values.extend([value] * min(count, width - len(values)))
            pos += bytes_per_channel

    if len(values) != width:
        raise ImageError("SGI scanline is incomplete")
    return values, pos


def can_read(data: bytes) -> bool:
    """Whether ``data`` starts like an SGI image."""
    return (
        len(data) >= 4
        and data.startswith(b"\x01\xda")
        and data[2] in (0, 1)
        and data[3] in (1, 2)
    )


def _read_u32(buffer: bytes, pos: int) -> tuple[int, int]:
    chunk = buffer[pos : pos + 4]
    value = int.from_bytes(chunk, "big") if len(chunk) == 4 else 0
    return value, pos + len(chunk)


def read_sgi(stream: BinaryIO) -> Image:
    """Decode an SGI image from a binary stream."""
    head = stream.read(HEADER_SIZE)
    if len(head) < HEADER_SIZE:
        raise ImageError("SGI header is truncated")
    magic, rle, bpc, dim, xsize, ysize, zsize, _pixmin, _pixmax, _dummy = _HEADER.unpack_from(
        head
    )
    if magic != SGI_MAGIC:
        raise ImageError("not an SGI image")
    if rle > 1:
        raise ImageError(f"unknown SGI storage type {rle}")
    if bpc not in (1, 2):
        raise ImageError(f"unsupported SGI bytes per channel {bpc}")
    if not 1 <= dim <= 3:
        raise ImageError(f"invalid SGI dimension count {dim}")
    (colormap,) = struct.unpack_from(">I", head, _HEADER.size + _NAME_SIZE)
    if colormap != COLORMAP_NORMAL:
        raise ImageError("only the normal SGI colour map mode is supported")
    if dim == 1:
        raise ImageError("one-dimensional SGI images are not supported")

    rest = stream.read()
    if not rest:
        raise ImageError("SGI file has no image data")

    image = allocate_image(xsize, ysize, ImageFormat.RGB32)
    if zsize == 0:
        raise ImageError("SGI image has no channels")
    if zsize in (2, 4):
        image = allocate_image(xsize, ysize, ImageFormat.ARGB32)
    elif zsize > 4 and ysize > _INT_MAX // zsize:
        raise ImageError("SGI image has too many rows")

    numrows = ysize * zsize
    starts: list[int] = []
    pos = 0
    if rle:
        table_size = HEADER_SIZE + numrows * 2 * 4
        while pos < len(rest) and len(starts) < numrows:
            value, pos = _read_u32(rest, pos)
            starts.append((value - table_size) & _U32)
        starts += [0] * (numrows - len(starts))
        lengths = []
        for _ in range(numrows):
            value, pos = _read_u32(rest, pos)
            lengths.append(value)
    data = rest[pos:]

    if rle:
        for start, length in zip(starts, lengths):
            if (start + length) & _U32 > len(data):
                raise ImageError("SGI image is corrupt")

    start_iter = iter(starts)
    offset = 0

    def next_plane() -> list[list[int]]:
        nonlocal offset
        rows = []
        for _ in range(ysize):
            if rle:
                offset = next(start_iter)
            values, offset = decode_row(data, offset, xsize, bool(rle), bpc)
            rows.append(values)
        rows.reverse()
        return rows

    red = green = blue = next_plane()
    alpha = None
    if zsize >= 3:
        green = next_plane()
        blue = next_plane()
    if zsize == 2 or zsize >= 4:
        alpha = next_plane()

    keep_alpha = image.has_alpha() and alpha is not None
    for y in range(ysize):
        alphas = alpha[y] if keep_alpha else [255] * xsize
        image.set_row(y, list(zip(red[y], green[y], blue[y], alphas)))
    return image


def write_sgi(stream: BinaryIO, image: Image) -> None:
    """Encode ``image`` as an 8-bit SGI image into a binary stream."""
    if image.width == 0 or image.height == 0:
        raise ImageError("cannot write an empty image")
    width, height = image.width, image.height
    if width > 0xFFFF or height > 0xFFFF:
        raise ImageError("image too large for SGI")

    if image.is_gray():
        dim, zsize = 2, 1
    else:
        dim, zsize = 3, 3
    has_alpha = image.has_alpha()
    if has_alpha:
        dim, zsize = 3, zsize + 1

    if zsize == 1:
        channels = [0]
    elif zsize == 2:
        channels = [0, 3]
    elif zsize == 3:
        channels = [0, 1, 2]
    else:
        channels = [0, 1, 2, 3]

    pixels = [image.rgba8_row(y) for y in range(height)]
    planes = [
        [[pixel[channel] for pixel in pixels[y]] for y in reversed(range(height))]
        for channel in channels
    ]
    samples = [value for plane in planes for row in plane for value in row]
    pixmin, pixmax = min(samples), max(samples)

    numrows = height * zsize
    base = HEADER_SIZE + numrows * 2 * 4
    unique: dict[bytes, int] = {}
    offsets: list[int] = []
    row_index: list[int] = []
    next_offset = base
    for plane in planes:
        for row in plane:
            encoded = compact_row(row)
            index = unique.get(encoded)
            if index is None:
                index = len(unique)
                unique[encoded] = index
                offsets.append(next_offset)
                next_offset += len(encoded)
            row_index.append(index)
    encoded_rows = list(unique)

    verbatim_size = numrows * width
    rle_size = numrows * 2 * 4 + sum(len(r) for r in encoded_rows)
    use_rle = verbatim_size > rle_size

    out = bytearray(
        _HEADER.pack(
            SGI_MAGIC, 1 if use_rle else 0, 1, dim, width, height, zsize, pixmin, pixmax, 0
        )
    )
    out += bytes(_NAME_SIZE)
    out += struct.pack(">I", COLORMAP_NORMAL)
    out += bytes(_TAIL_PADDING)

    if use_rle:
        for index in row_index:
            out += struct.pack(">I", offsets[index])
        for index in row_index:
            out += struct.pack(">I", len(encoded_rows[index]))
        for encoded in encoded_rows:
            out += encoded
    else:
        for plane in planes:
            for row in plane:
                out += bytes(row)
    stream.write(bytes(out))