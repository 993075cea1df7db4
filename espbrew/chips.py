"""Chip identifiers and their flash layout constants."""

from __future__ import annotations

from enum import Enum

BOOTLOADER_OFFSET_ESP8266 = 0x0
BOOTLOADER_OFFSET_ESP32 = 0x1000
BOOTLOADER_OFFSET_ESP32S2 = 0x1000
BOOTLOADER_OFFSET_ESP32S3 = 0x0
BOOTLOADER_OFFSET_ESP32C2 = 0x0
BOOTLOADER_OFFSET_ESP32C3 = 0x0
BOOTLOADER_OFFSET_ESP32C5 = 0x2000
BOOTLOADER_OFFSET_ESP32C6 = 0x0
BOOTLOADER_OFFSET_ESP32H2 = 0x0
BOOTLOADER_OFFSET_ESP32P4_REV1 = 0x2000

PRESET_OFFSET_PARTITIONS = 0x8000
PRESET_OFFSET_APP = 0x10000

_BOOTLOADER_OFFSETS = {
    "ESP8266": BOOTLOADER_OFFSET_ESP8266,
    "ESP32": BOOTLOADER_OFFSET_ESP32,
    "ESP32-S2": BOOTLOADER_OFFSET_ESP32S2,
    "ESP32-S3": BOOTLOADER_OFFSET_ESP32S3,
    "ESP32-C2": BOOTLOADER_OFFSET_ESP32C2,
    "ESP32-C3": BOOTLOADER_OFFSET_ESP32C3,
    "ESP32-C5": BOOTLOADER_OFFSET_ESP32C5,
    "ESP32-C6": BOOTLOADER_OFFSET_ESP32C6,
    "ESP32-H2": BOOTLOADER_OFFSET_ESP32H2,
    "ESP32-P4-Rev1": BOOTLOADER_OFFSET_ESP32P4_REV1,
}


class Chip(Enum):
    """A supported chip family; the value is its short lower-case name."""

    ESP32 = "esp32"
    ESP32S2 = "esp32s2"
    ESP32S3 = "esp32s3"
    ESP32C3 = "esp32c3"
    ESP32C6 = "esp32c6"
    ESP32H2 = "esp32h2"
    ESP32C2 = "esp32c2"
    ESP32C5 = "esp32c5"
    ESP32C61 = "esp32c61"
    ESP32P4 = "esp32p4"

    def __str__(self) -> str:
        return self.value

    @property
    def esp_chip_id(self) -> int:
        """Chip id written into the extended header of an application image."""
        return _ESP_CHIP_IDS[self]


_ESP_CHIP_IDS = {
    Chip.ESP32: 0x0000,
    Chip.ESP32S2: 0x0002,
    Chip.ESP32C3: 0x0005,
    Chip.ESP32S3: 0x0009,
    Chip.ESP32C2: 0x000C,
    Chip.ESP32C6: 0x000D,
    Chip.ESP32H2: 0x0010,
    Chip.ESP32P4: 0x0012,
    Chip.ESP32C61: 0x0014,
    Chip.ESP32C5: 0x0017,
}


def bootloader_offset(chip_name: str) -> int | None:
    """Return the bootloader flash offset for a chip name, or None if unknown."""
    return _BOOTLOADER_OFFSETS.get(chip_name)