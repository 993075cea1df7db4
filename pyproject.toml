[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "espbrew"
version = "0.1.0"
description = "Firmware image tooling for ESP32-family chips: ELF conversion, image building, flash_args parsing and virtual flash devices"
requires-python = ">=3.10"
dependencies = []
keywords = ["esp32", "firmware", "flash", "elf", "bootloader", "embedded"]
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
packages = ["espbrew"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
