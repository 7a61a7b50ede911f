# imgcodecs

Pure-Python decoders and encoders for several raster image formats. The
package uses only the standard library.

| Format | Module | Read | Write |
|---|---|---|---|
| QOI (Quite OK Image) | `imgcodecs.qoi` | `read_qoi` | `write_qoi` |
| Truevision TGA | `imgcodecs.tga` | `read_tga` | `write_tga` |
| Sun Raster | `imgcodecs.ras` | `read_ras` | – |
| SGI (rgb, rgba, bw, sgi) | `imgcodecs.rgb` | `read_sgi` | `write_sgi` |
| Photoshop (psd, psb) | `imgcodecs.psd` | `read_psd` | – |

## Installation

```
pip install imgcodecs
```

## Usage

Every reader takes a binary stream and returns an `imgcodecs.image.Image`.
Every writer takes a binary stream and an `Image`. A failed read or write
raises `imgcodecs.image.ImageError`, a subclass of `ValueError`.

```python
from imgcodecs.qoi import read_qoi, write_qoi

with open("picture.qoi", "rb") as fh:
    image = read_qoi(fh)

print(image.width, image.height, image.format)
print(image.pixel(0, 0))

with open("copy.qoi", "wb") as fh:
    write_qoi(fh, image)
```

### Checking data before decoding

Each module has a `can_read(data)` that takes the leading bytes of a file and
says whether they start a header the module can decode. Some modules also
have `probe(data)`, which reads only the header:

- `qoi.probe` and `ras.probe` return `(width, height, ImageFormat)` or `None`.
- `psd.probe` returns `(width, height)` or `None`.

`psd.can_read(data, sequential=True)` additionally refuses CMYK, LAB and
multichannel files and RGB files with more than three channels, since those
need to seek within the image data.

```python
from imgcodecs import qoi

with open("picture.qoi", "rb") as fh:
    head = fh.read(64)

if qoi.can_read(head):
    print(qoi.probe(head))
```

## The image model

`imgcodecs.image.Image` holds `width`, `height` and a `format`
(`ImageFormat`), plus:

- `pixel(x, y)` / `set_pixel(x, y, value)`, `row(y)` / `set_row(y, values)`
  and `fill(value)`; a pixel is a tuple with one value per channel
  (`ImageFormat.channels()`).
- `rgba8_row(y)`: a row as unpremultiplied 8-bit `(r, g, b, a)` tuples,
  whatever the stored format.
- `has_alpha()` and `is_gray()`.
- `color_table` for indexed and mono images, `color_space` (`ColorSpace.SRGB`,
  `SRGB_LINEAR` or `CUSTOM`), `icc_profile`, `text` (a dict of metadata
  strings) and `dots_per_meter_x` / `dots_per_meter_y`.

`allocate_image(width, height, format)` refuses empty sizes and pixel buffers
larger than 256 MiB. `ScanLineConverter` converts rows to a target format and,
between sRGB and linear sRGB, a target colour space.

## Format notes

- **QOI**: images are read as `RGB32` or `ARGB32`. `write_qoi` writes four
  channels when the image has alpha and marks the file linear when the image's
  colour space is `SRGB_LINEAR`.
- **TGA**: reads uncompressed and run-length encoded indexed, grey and true
  colour images (types 1, 2, 3, 9, 10, 11) with 24-bit colour maps of at most
  256 entries. `write_tga` writes uncompressed 24-bit, or 32-bit with alpha,
  images with a top-left origin.
- **Sun Raster**: reads 1, 8, 24 and 32 bit images of the standard, byte
  encoded (run-length) and RGB types, optionally with an RGB colour map.
- **SGI**: reads verbatim and run-length encoded images with two or three
  dimensions; 16-bit samples keep their most significant byte. `write_sgi`
  writes 8-bit data, verbatim or run-length encoded, whichever is smaller, and
  stores grey images as a single channel. `compact_row` and `decode_row`
  expose the row encoding.
- **Photoshop**: only the merged (flattened) image is decoded. RGB and
  greyscale keep their native precision; CMYK and multichannel images are
  converted to RGB without colour management (`cmyk_to_rgb`), LAB images to
  sRGB (`lab_to_rgb`). Duotone images are read as greyscale with the duotone
  options stored as hex in `image.text["PSDDuotoneOptions"]`; XMP metadata
  goes to `image.text["XML:com.adobe.xmp"]`. Indexed images keep their colour
  table. An embedded ICC profile is kept in `icc_profile` and the colour space
  set to `CUSTOM`, but pixels are not converted through it. Section parsing and
  PackBits decoding live in `imgcodecs.psd_sections`.

## What the package does not do

- There is no command-line tool and no function that picks a format from the
  data; call the module for the format you expect.
- Sun Raster and Photoshop files can only be read, not written.
- Photoshop layers are not decoded, and no ICC colour management is performed.

## Running the tests

```
pip install -e ".[test]"
pytest
```