"""Conversion of ELF firmware into a multi-part flash image and its parsing."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass

from espbrew.bootloaders import BootloaderError
from espbrew.bootsource import XtalFrequency, get_bootloader
from espbrew.chips import Chip
from espbrew.elf import InvalidELFError, parse_elf
from espbrew.image import ImageBuilder, Segment, default_partition_table, flash_size_from_mb

logger = logging.getLogger(__name__)

_PART_HEADER = struct.Struct(">II")
_MB = 1024 * 1024


class MultiPartImageError(ValueError):
    """Raised when a multi-part image is truncated."""


@dataclass
class FlashPart:
    """Bytes to be written at a flash offset."""

    offset: int
    data: bytes


def convert_elf_to_esp_image(elf_data: bytes, chip: Chip) -> bytes:
    """Convert an ELF file into bootloader, partition table and app parts.

    Each part is stored as a big-endian offset and length followed by its bytes.
    Without a bootloader the result holds only the partition table and app.
    """
    elf_data = bytes(elf_data)
    if len(elf_data) < 28:
        raise InvalidELFError("ELF file too short")
    (entry_point,) = struct.unpack_from("<I", elf_data, 24)
    logger.info("ELF entry point %#010x", entry_point)

    rom_segments, ram_segments = parse_elf(elf_data, chip)
    logger.info(
        "ELF segments extracted: %d ROM, %d RAM", len(rom_segments), len(ram_segments)
    )

    builder = ImageBuilder(chip)
    builder.entry = entry_point

    flash_size = 16 * _MB if chip == Chip.ESP32S3 else 4 * _MB
    builder.flash_size = flash_size_from_mb(flash_size // _MB)

    try:
        bootloader = get_bootloader(chip, XtalFrequency.MHZ_40)
    except BootloaderError as exc:
        logger.warning("No bootloader available, building app-only image: %s", exc)
    else:
        builder.bootloader = bootloader
        logger.info("Using bootloader of %d bytes", len(bootloader))

    builder.partition_table = default_partition_table(chip, flash_size)

    for segment in (*rom_segments, *ram_segments):
        builder.add_segment(segment.addr, segment.data)
    builder.ram_segments = [Segment(segment.addr, segment.data) for segment in ram_segments]

    parts = builder.build_full_image()
    logger.info("Image parts built: %d", len(parts))

    result = bytearray()
    for part in parts:
        logger.info(
            "Including image part %s: %d bytes at %#x", part.name, len(part.data), part.offset
        )
        result += _PART_HEADER.pack(part.offset & 0xFFFFFFFF, len(part.data) & 0xFFFFFFFF)
        result += part.data
    return bytes(result)


def parse_multipart_image(data: bytes) -> list[FlashPart]:
    """Split a multi-part image into its parts."""
    data = bytes(data)
    parts: list[FlashPart] = []
    position = 0
    while position < len(data):
        if position + _PART_HEADER.size > len(data):
            raise MultiPartImageError(
                f"invalid multipart image: incomplete header at offset {position}"
            )
        offset, length = _PART_HEADER.unpack_from(data, position)
        position += _PART_HEADER.size
        if position + length > len(data):
            raise MultiPartImageError(
                f"invalid multipart image: incomplete data at offset {position}"
            )
        parts.append(FlashPart(offset=offset, data=data[position:position + length]))
        position += length
    return parts