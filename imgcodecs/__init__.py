"""Pure-Python readers and writers for QOI, TGA, Sun Raster, SGI and Photoshop images."""

__version__ = "0.1.0"