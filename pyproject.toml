[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "devtree"
version = "1.6.1"
description = "Build, read and write flattened device tree blobs and their in-memory trees"
requires-python = ">=3.10"
dependencies = []
keywords = ["device tree", "dtb", "fdt", "flattened device tree", "embedded", "firmware"]
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
    "Topic :: Software Development :: Embedded Systems",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["devtree"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
