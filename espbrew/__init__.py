"""Firmware image tooling for ESP32-family chips: ELF conversion, image building, bootloaders, flash_args and virtual flash devices."""

__version__ = "0.1.0"

__all__ = [
    "bootloaders",
    "bootsource",
    "chips",
    "convert",
    "detect",
    "elf",
    "flashargs",
    "flasher",
    "image",
    "virtual",
]