[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "imgcodecs"
version = "0.1.0"
description = "Pure-Python readers and writers for QOI, TGA, Sun Raster, SGI and Photoshop images"
requires-python = ">=3.10"
dependencies = []
keywords = ["image", "codec", "qoi", "tga", "sun raster", "sgi", "psd", "photoshop"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Graphics :: Graphics Conversion",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest", "hypothesis"]

[tool.hatch.build.targets.wheel]
packages = ["imgcodecs"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
