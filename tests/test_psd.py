import io
import struct

import pytest
from hypothesis import given
from hypothesis import strategies as st

from imgcodecs.image import ColorSpace, ImageError, ImageFormat
from imgcodecs.psd import (
    DUOTONE_KEY,
    XMP_KEY,
    can_read,
    cmyk_to_rgb,
    image_format,
    lab_to_rgb,
    probe,
    read_psd,
)
from imgcodecs.psd_sections import PSD_SIGNATURE, ColorMode, PsdHeader

RGB = ColorMode.RGB
GRAY = ColorMode.GRAYSCALE


def _header_bytes(width, height, depth, mode, channels, version=1):
    return b"8BPS" + struct.pack(">H6sHIIHH", version, bytes(6), channels, height, width, depth, mode)


def _resource(rid, data):
    block = b"8BIM" + struct.pack(">H", rid) + b"\x00\x00" + struct.pack(">I", len(data)) + data
    if len(data) % 2:
        block += b"\x00"
    return block


def _psd(width, height, depth, mode, channels, data, *, version=1, compression=0,
         color_data=b"", resources=b"", layers=b""):
    out = _header_bytes(width, height, depth, mode, channels, version)
    out += struct.pack(">I", len(color_data)) + color_data
    out += struct.pack(">I", len(resources)) + resources
    out += struct.pack(">Q" if version == 2 else ">I", len(layers)) + layers
    out += struct.pack(">H", compression) + data
    return io.BytesIO(out)


def _header(mode, depth, channels):
    return PsdHeader(PSD_SIGNATURE, 1, bytes(6), channels, 1, 1, depth, mode)


def test_rgb_8bit_planar_data():
    data = bytes([10, 20]) + bytes([30, 40]) + bytes([50, 60])
    image = read_psd(_psd(2, 1, 8, RGB, 3, data))
    assert image.format is ImageFormat.RGB888
    assert image.row(0) == [(10, 30, 50), (20, 40, 60)]


def test_rgba_8bit_opaque_alpha_keeps_values():
    data = bytes([10]) + bytes([30]) + bytes([50]) + bytes([255])
    image = read_psd(_psd(1, 1, 8, RGB, 4, data))
    assert image.format is ImageFormat.RGBA8888_PREMULTIPLIED
    assert image.pixel(0, 0) == (10, 30, 50, 255)


def test_rle_grayscale():
    row0 = bytes([0xFD, 9])
    row1 = bytes([0x03, 1, 2, 3, 4])
    data = struct.pack(">HH", len(row0), len(row1)) + row0 + row1
    image = read_psd(_psd(4, 2, 8, GRAY, 1, data, compression=1))
    assert image.format is ImageFormat.GRAYSCALE8
    assert image.row(0) == [(9,)] * 4
    assert image.row(1) == [(1,), (2,), (3,), (4,)]


def test_rle_psb_uses_32bit_counts():
    row0 = bytes([0xFD, 9])
    data = struct.pack(">I", len(row0)) + row0
    image = read_psd(_psd(4, 1, 8, GRAY, 1, data, version=2, compression=1))
    assert image.row(0) == [(9,)] * 4


def test_grayscale_16bit():
    data = struct.pack(">HH", 1000, 65535)
    image = read_psd(_psd(2, 1, 16, GRAY, 1, data))
    assert image.format is ImageFormat.GRAYSCALE16
    assert image.row(0) == [(1000,), (65535,)]


def test_grayscale_32bit_float_maps_to_16bit():
    data = struct.pack(">ff", 0.0, 1.0)
    image = read_psd(_psd(2, 1, 32, GRAY, 1, data))
    assert image.format is ImageFormat.GRAYSCALE16
    assert image.row(0) == [(0,), (65535,)]


def test_indexed_with_transparency_index():
    reds, greens, blues = bytearray(256), bytearray(256), bytearray(256)
    reds[5], greens[5], blues[5] = 1, 2, 3
    palette = bytes(reds + greens + blues)
    resources = _resource(0x0417, struct.pack(">H", 5))
    image = read_psd(_psd(1, 1, 8, ColorMode.INDEXED, 1, bytes([5]),
                          color_data=palette, resources=resources))
    assert image.format is ImageFormat.INDEXED8
    assert image.pixel(0, 0) == (5,)
    assert image.color_table[5] == (1, 2, 3, 0)
    assert image.color_table[4][3] == 255


def test_bitmap_set_bits_are_black():
    image = read_psd(_psd(3, 1, 1, ColorMode.BITMAP, 1, bytes([0b10100000])))
    assert image.format is ImageFormat.MONO
    assert image.rgba8_row(0) == [(0, 0, 0, 255), (255, 255, 255, 255), (0, 0, 0, 255)]


def test_cmyk_without_ink_is_white():
    image = read_psd(_psd(1, 1, 8, ColorMode.CMYK, 4, bytes([255] * 4)))
    assert image.format is ImageFormat.RGB888
    assert image.pixel(0, 0) == (255, 255, 255)


def test_cmyk_full_ink_is_black():
    image = read_psd(_psd(1, 1, 8, ColorMode.CMYK, 4, bytes(4)))
    assert image.pixel(0, 0) == (0, 0, 0)


def test_cmyk_with_alpha_from_layer_section():
    layers = struct.pack(">Ih", 2, -1)
    image = read_psd(_psd(1, 1, 8, ColorMode.CMYK, 5, bytes([255] * 5), layers=layers))
    assert image.format is ImageFormat.RGBA8888
    assert image.pixel(0, 0) == (255, 255, 255, 255)


def test_lab_black_and_colorspace():
    image = read_psd(_psd(1, 1, 8, ColorMode.LABCOLOR, 3, bytes([0, 128, 128])))
    assert image.pixel(0, 0) == (0, 0, 0)
    assert image.color_space is ColorSpace.SRGB


def test_resolution_resource():
    fixed = 72 << 16
    res = struct.pack(">iHHiHH", fixed, 1, 1, fixed, 1, 1)
    image = read_psd(_psd(1, 1, 8, GRAY, 1, bytes([0]), resources=_resource(0x03ED, res)))
    assert image.dots_per_meter_x == 2834
    assert image.dots_per_meter_y == image.dots_per_meter_x


def test_xmp_icc_and_duotone_metadata():
    resources = _resource(0x0424, b"<x/>") + _resource(0x040F, b"icc!")
    image = read_psd(_psd(1, 1, 8, ColorMode.DUOTONE, 1, bytes([7]),
                          color_data=b"\x01\x02", resources=resources))
    assert image.text[XMP_KEY] == "<x/>"
    assert image.text[DUOTONE_KEY] == "0102"
    assert image.icc_profile == b"icc!"
    assert image.color_space is ColorSpace.CUSTOM


def test_unknown_compression_raises():
    with pytest.raises(ImageError):
        read_psd(_psd(1, 1, 8, GRAY, 1, bytes([0]), compression=2))


def test_missing_merged_data_raises():
    resources = _resource(0x0421, b"\x00\x00\x00\x01\x00")
    with pytest.raises(ImageError):
        read_psd(_psd(1, 1, 8, GRAY, 1, bytes([0]), resources=resources))


def test_truncated_pixel_data_raises():
    with pytest.raises(ImageError):
        read_psd(_psd(4, 2, 8, GRAY, 1, bytes([1, 2])))


def test_bad_signature_and_short_header_raise():
    stream = _psd(1, 1, 8, GRAY, 1, bytes([0]))
    data = b"XXXX" + stream.getvalue()[4:]
    with pytest.raises(ImageError):
        read_psd(io.BytesIO(data))
    with pytest.raises(ImageError):
        read_psd(io.BytesIO(b"8BPS"))


def test_indexed_16bit_is_unsupported():
    with pytest.raises(ImageError):
        read_psd(_psd(1, 1, 16, ColorMode.INDEXED, 1, bytes(2)))


@pytest.mark.parametrize(
    "mode, depth, channels, alpha, expected",
    [
        (RGB, 8, 3, True, ImageFormat.RGB888),
        (RGB, 8, 4, True, ImageFormat.RGBA8888_PREMULTIPLIED),
        (RGB, 16, 4, False, ImageFormat.RGBX64),
        (RGB, 32, 4, True, ImageFormat.RGBA32FPX4_PREMULTIPLIED),
        (ColorMode.CMYK, 8, 5, True, ImageFormat.RGBA8888),
        (ColorMode.CMYK, 32, 4, False, None),
        (ColorMode.INDEXED, 16, 1, False, None),
        (ColorMode.BITMAP, 1, 1, False, ImageFormat.MONO),
        (ColorMode.DUOTONE, 16, 1, False, ImageFormat.GRAYSCALE16),
    ],
)
def test_image_format(mode, depth, channels, alpha, expected):
    assert image_format(_header(mode, depth, channels), alpha) is expected


def test_cmyk_to_rgb_values():
    assert cmyk_to_rgb((255, 255, 255, 255), 255, False) == (255, 255, 255, 255)
    assert cmyk_to_rgb((0, 0, 0, 0), 255, False) == (0, 0, 0, 255)
    assert cmyk_to_rgb((255, 255, 255, 255, 77), 255, True)[3] == 77
    assert cmyk_to_rgb((255, 255, 255, 255, 77), 255, False)[3] == 255


def test_cmyk_to_rgb_needs_three_channels():
    with pytest.raises(ImageError):
        cmyk_to_rgb((1, 2), 255, False)


@given(st.lists(st.integers(0, 65535), min_size=3, max_size=5))
def test_cmyk_to_rgb_in_range(values):
    result = cmyk_to_rgb(values, 65535, True)
    assert len(result) == 4
    assert all(0 <= v <= 65535 for v in result)


def test_lab_to_rgb_black_and_white():
    assert lab_to_rgb((0, 128, 128), 255, False) == (0, 0, 0, 255)
    white = lab_to_rgb((255, 128, 128), 255, False)
    assert all(v >= 250 for v in white[:3])
    assert lab_to_rgb((255, 128, 128, 40), 255, True)[3] == 40


def test_lab_to_rgb_needs_three_channels():
    with pytest.raises(ImageError):
        lab_to_rgb((1,), 255, False)


@given(st.lists(st.integers(0, 255), min_size=3, max_size=4))
def test_lab_to_rgb_in_range(values):
    result = lab_to_rgb(values, 255, True)
    assert all(0 <= v <= 255 for v in result)


def test_can_read():
    assert can_read(_header_bytes(1, 1, 8, RGB, 3))
    assert can_read(_header_bytes(1, 1, 8, ColorMode.CMYK, 4))
    assert not can_read(_header_bytes(1, 1, 8, ColorMode.CMYK, 4), sequential=True)
    assert not can_read(_header_bytes(1, 1, 8, RGB, 4), sequential=True)
    assert not can_read(_header_bytes(1, 1, 8, ColorMode.MULTICHANNEL, 2))
    assert not can_read(b"8BPS")


def test_probe():
    assert probe(_header_bytes(7, 3, 8, RGB, 3)) == (7, 3)
    assert probe(_header_bytes(7, 3, 5, RGB, 3)) is None
    assert probe(b"8BPS") is None