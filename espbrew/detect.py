"""Firmware file type detection from magic bytes."""

from __future__ import annotations

from enum import Enum


class FileType(Enum):
    """Kind of firmware file."""

    UNKNOWN = "Unknown"
    ELF = "ELF"
    ESP32_BINARY = "ESP32 Binary"
    RAW_BINARY = "Raw Binary"

    def __str__(self) -> str:
        return self.value


class ELFNotSupportedError(Exception):
    """Raised where an ELF file is given but a flat binary is required."""

    def __init__(
        self,
        message: str = (
            "ELF files require conversion. "
            "Use 'espflash save-image' or build a .bin file first"
        ),
    ) -> None:
        super().__init__(message)


_ELF_MAGIC = b"\x7fELF"
_ESP_IMAGE_MAGICS = (0xE9, 0xEA)


def detect_file_type(data: bytes) -> FileType:
    """Identify the firmware file type from its first bytes."""
    if len(data) < 4:
        return FileType.UNKNOWN
    if bytes(data[:4]) == _ELF_MAGIC:
        return FileType.ELF
    # 0xEA is the ESP8266 image magic; it is treated as the same family.
    if data[0] in _ESP_IMAGE_MAGICS:
        return FileType.ESP32_BINARY
    return FileType.RAW_BINARY