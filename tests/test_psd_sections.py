import io
import struct

import pytest
from hypothesis import given, strategies as st

from imgcodecs.image import ImageError
from imgcodecs.psd_sections import (
    LAYER_MTRN,
    RESOURCE_ICC_PROFILE,
    RESOURCE_RESOLUTION_INFO,
    ColorMode,
    LayerAndMaskSection,
    PsdHeader,
    fixed_point_to_float,
    packbits_decompress,
    read_color_mode_data,
    read_image_resources,
    read_layer_and_mask_section,
    read_pascal_string,
)


def header_bytes(version=1, channels=3, height=10, width=20, depth=8, mode=ColorMode.RGB):
    return b"8BPS" + struct.pack(">H6sHIIHH", version, bytes(6), channels, height, width, depth, mode)


def test_header_parse_fields():
    header = PsdHeader.parse(header_bytes())
    assert (header.width, header.height, header.depth) == (20, 10, 8)
    assert header.color_mode == ColorMode.RGB
    assert header.is_valid() and header.is_supported()
    assert not header.is_psb


def test_header_truncated_raises():
    with pytest.raises(ImageError):
        PsdHeader.parse(header_bytes()[:20])


@pytest.mark.parametrize(
    "kwargs",
    [
        {"version": 3},
        {"depth": 4},
        {"mode": 5},
        {"channels": 0},
        {"channels": 58},
        {"width": 300001},
    ],
)
def test_header_invalid(kwargs):
    header = PsdHeader.parse(header_bytes(**kwargs))
    assert not header.is_valid()
    assert not header.is_supported()


def test_multichannel_needs_three_channels():
    header = PsdHeader.parse(header_bytes(channels=2, mode=ColorMode.MULTICHANNEL))
    assert header.is_valid()
    assert not header.is_supported()


def test_fixed_point_resolution():
    assert fixed_point_to_float(72 << 16) == 72.0
    assert fixed_point_to_float(0x8000) == 0.5


def test_packbits_documented_example():
    packed = bytes.fromhex("FEAA02800 02AFDAA0380002A22F7AA".replace(" ", ""))
    expected = bytes.fromhex("AAAAAA80002AAAAAAAAA80002A22AAAAAAAAAAAAAAAAAAAA")
    assert packbits_decompress(packed, len(expected)) == expected


def test_packbits_skips_noop_and_respects_size():
    assert packbits_decompress(b"\x80\x01ab", 2) == b"ab"
    # a packet that does not fit stops decoding
    assert packbits_decompress(b"\x00x\xfdz", 3) == b"x"


def test_packbits_truncated_literal_raises():
    with pytest.raises(ImageError):
        packbits_decompress(b"\x05ab", 10)


@given(st.binary(max_size=400))
def test_packbits_literal_round_trip(data):
    packed = b"".join(
        bytes((len(data[i : i + 128]) - 1,)) + data[i : i + 128] for i in range(0, len(data), 128)
    )
    assert packbits_decompress(packed, len(data)) == data


def test_pascal_string_alignment():
    assert read_pascal_string(io.BytesIO(b"\x03abcZ"), 2) == ("abc", 4)
    assert read_pascal_string(io.BytesIO(b"\x00\x00"), 2) == ("", 2)
    assert read_pascal_string(io.BytesIO(b"\x00\x00"), 1) == ("", 1)


def test_pascal_string_empty_stream_raises():
    with pytest.raises(ImageError):
        read_pascal_string(io.BytesIO(b""), 2)


def test_color_mode_data_empty():
    data = read_color_mode_data(io.BytesIO(struct.pack(">i", 0)))
    assert data.duotone == b"" and data.palette == []


def test_color_mode_data_palette_is_planar():
    reds, greens, blues = bytes(range(256)), bytes(256), bytes([255] * 256)
    stream = io.BytesIO(struct.pack(">i", 768) + reds + greens + blues)
    data = read_color_mode_data(stream)
    assert len(data.palette) == 256
    assert data.palette[7] == (7, 0, 255, 255)
    assert stream.tell() == 772


def test_color_mode_data_duotone_and_truncation():
    data = read_color_mode_data(io.BytesIO(struct.pack(">i", 4) + b"hdrt"))
    assert data.duotone == b"hdrt"
    with pytest.raises(ImageError):
        read_color_mode_data(io.BytesIO(struct.pack(">i", 10) + b"abc"))


def resource_block(resource_id, data, signature=b"8BIM"):
    block = signature + struct.pack(">H", resource_id) + b"\x00\x00" + struct.pack(">I", len(data)) + data
    return block + (b"\x00" if len(data) % 2 else b"")


def test_image_resources_round_trip():
    body = resource_block(RESOURCE_ICC_PROFILE, b"abc") + resource_block(
        RESOURCE_RESOLUTION_INFO, b"12345678", b"MeSa"
    )
    stream = io.BytesIO(struct.pack(">i", len(body)) + body + b"rest")
    resources = read_image_resources(stream)
    assert resources == {RESOURCE_ICC_PROFILE: b"abc", RESOURCE_RESOLUTION_INFO: b"12345678"}
    assert stream.read() == b"rest"


def test_image_resources_bad_signature_raises():
    body = resource_block(1, b"ab", b"XXXX")
    with pytest.raises(ImageError):
        read_image_resources(io.BytesIO(struct.pack(">i", len(body)) + body))


def test_image_resources_truncated_data_raises():
    body = resource_block(1, b"abcdef")[:-3]
    with pytest.raises(ImageError):
        read_image_resources(io.BytesIO(struct.pack(">i", 20) + body))


def test_layer_section_empty():
    stream = io.BytesIO(struct.pack(">I", 0) + b"after")
    section = read_layer_and_mask_section(stream, False)
    assert section.is_null()
    assert not section.has_alpha()
    assert stream.read() == b"after"


def test_layer_section_negative_layer_count_means_alpha():
    body = struct.pack(">I", 4) + struct.pack(">h", -1) + b"\x00\x00" + struct.pack(">I", 0)
    stream = io.BytesIO(struct.pack(">I", len(body)) + body + b"XY")
    section = read_layer_and_mask_section(stream, False)
    assert section.layer_count == -1
    assert section.has_alpha()
    assert section.global_mask_size == 0
    assert stream.read() == b"XY"


def test_layer_section_additional_layer():
    body = struct.pack(">II", 0, 0) + b"8BIMMtrn" + struct.pack(">I", 0)
    stream = io.BytesIO(struct.pack(">I", len(body)) + body)
    section = read_layer_and_mask_section(stream, False)
    assert LAYER_MTRN in section.additional_layers
    assert section.has_alpha()
    assert section.at_end(False)
    assert stream.tell() == 4 + len(body)


def test_layer_section_psb_sizes():
    body = struct.pack(">qI", 0, 0)
    stream = io.BytesIO(struct.pack(">q", len(body)) + body + b"Z")
    section = read_layer_and_mask_section(stream, True)
    assert section.layer_info_size == 0
    assert section.at_end(True)
    assert stream.read() == b"Z"


def test_layer_section_truncated_raises():
    with pytest.raises(ImageError):
        read_layer_and_mask_section(io.BytesIO(struct.pack(">I", 100) + b"\x00\x00"), False)


def test_at_end_counts_parts():
    section = LayerAndMaskSection(size=20, layer_info_size=4)
    assert not section.at_end(False)
    assert section.at_end(True) is False
    section.global_mask_size = 8
    assert section.at_end(False)