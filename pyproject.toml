[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fpgaprog"
version = "0.1.0"
description = "JTAG probe drivers, DFU protocol structures and helpers for FPGA programming"
requires-python = ">=3.10"
dependencies = []
keywords = ["fpga", "jtag", "dfu", "cmsis-dap", "anlogic", "dirtyjtag"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["fpgaprog"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
