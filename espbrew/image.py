"""Construction of application images and flash layouts in the ESP-IDF format."""

from __future__ import annotations

import functools
import hashlib
import logging
import operator
import struct
from dataclasses import dataclass
from enum import IntEnum

from espbrew.chips import Chip

logger = logging.getLogger(__name__)

ESP_MAGIC = 0xE9
ESP_CHECKSUM_MAGIC = 0xEF
IROM_ALIGN = 0x10000
SEG_HEADER_LEN = 8
WP_PIN_DISABLED = 0xEE
FLASH_BASE = 0x10000

DROM_START, DROM_END = 0x3C000000, 0x3E000000
IROM_START, IROM_END = 0x42000000, 0x42800000
IRAM_START, IRAM_END = 0x40370000, 0x403E0000
DRAM_START, DRAM_END = 0x3FC88000, 0x3FD00000

_PARTITION_TABLE_OFFSET = 0x8000
_APP_OFFSET = 0x10000
_MAX_CHIP_REV_FULL = 0x63
_FLASH_PAGE_GUARD = 0x24
_HEADER = struct.Struct("<BBBBIBBBBHBHH4sB")
_SEGMENT_HEADER = struct.Struct("<II")
_PARTITION_ENTRY = struct.Struct("<HBBII16sI")
_PARTITION_MAGIC = 0x50AA


class FlashMode(IntEnum):
    """Flash read mode."""

    QIO = 0x00
    QOUT = 0x01
    DIO = 0x02
    DOUT = 0x03
    FAST_READ = 0x04
    SLOW_READ = 0x05


class FlashSize(IntEnum):
    """Flash size code stored in the image header."""

    SIZE_1MB = 0x00
    SIZE_2MB = 0x01
    SIZE_4MB = 0x02
    SIZE_8MB = 0x03
    SIZE_16MB = 0x04
    SIZE_32MB = 0x05
    SIZE_64MB = 0x06
    SIZE_128MB = 0x07


class FlashFreq(IntEnum):
    """Flash frequency code stored in the image header."""

    FREQ_40MHZ = 0x0
    FREQ_26MHZ = 0x1
    FREQ_20MHZ = 0x2
    FREQ_80MHZ = 0xF


_SIZES_BY_MB = {
    1: FlashSize.SIZE_1MB,
    2: FlashSize.SIZE_2MB,
    4: FlashSize.SIZE_4MB,
    8: FlashSize.SIZE_8MB,
    16: FlashSize.SIZE_16MB,
    32: FlashSize.SIZE_32MB,
    64: FlashSize.SIZE_64MB,
    128: FlashSize.SIZE_128MB,
}


def flash_size_from_mb(mb: int) -> FlashSize:
    """Return the size code for a flash of ``mb`` megabytes; unknown sizes give 4MB."""
    size = _SIZES_BY_MB.get(mb)
    if size is None:
        logger.warning("Unknown flash size %d MB, defaulting to 4MB", mb)
        return FlashSize.SIZE_4MB
    return size


@dataclass
class Segment:
    """A block of bytes loaded at a memory address."""

    addr: int
    data: bytes


@dataclass
class ImagePart:
    """One part of a flash layout: bootloader, partition table or application."""

    name: str
    offset: int
    data: bytes


def _in_irom(addr: int) -> bool:
    return IROM_START <= addr < IROM_END


def _in_drom(addr: int) -> bool:
    return DROM_START <= addr < DROM_END


def _merge_rom_segments(segments: list[Segment]) -> list[Segment]:
    """Join ROM segments that overlap, touch, or lie within word padding of each other."""
    if not segments:
        return []
    ordered = sorted(segments, key=lambda segment: segment.addr)
    merged: list[Segment] = []
    addr, data = ordered[0].addr, bytearray(ordered[0].data)
    for following in ordered[1:]:
        end = addr + len(data)
        if following.addr <= end:
            following_end = following.addr + len(following.data)
            if following_end > end:
                data.extend(bytes(following_end - end))
        elif end + (4 - end % 4) % 4 >= following.addr:
            data.extend(bytes(following.addr - end))
        else:
            merged.append(Segment(addr, bytes(data)))
            addr, data = following.addr, bytearray(following.data)
    merged.append(Segment(addr, bytes(data)))
    return merged


def _merge_adjacent_exact(segments: list[Segment]) -> list[Segment]:
    """Join only segments whose addresses follow each other exactly."""
    if not segments:
        return []
    merged: list[Segment] = []
    addr, data = segments[0].addr, bytearray(segments[0].data)
    for following in segments[1:]:
        if following.addr == addr + len(data):
            data.extend(following.data)
        else:
            merged.append(Segment(addr, bytes(data)))
            addr, data = following.addr, bytearray(following.data)
    merged.append(Segment(addr, bytes(data)))
    return merged


def _pad_to_word(segments: list[Segment]) -> list[Segment]:
    return [
        Segment(segment.addr, bytes(segment.data) + bytes((4 - len(segment.data) % 4) % 4))
        for segment in segments
    ]


def _save_segment(buf: bytearray, segment: Segment, checksum: int) -> int:
    padding = (4 - len(segment.data) % 4) % 4
    buf += _SEGMENT_HEADER.pack(segment.addr, len(segment.data) + padding)
    buf += segment.data
    buf += bytes(padding)
    return functools.reduce(operator.xor, segment.data, checksum)


def _save_flash_segment(buf: bytearray, segment: Segment, checksum: int, page_size: int) -> int:
    # Keep segment ends clear of the first bytes of an MMU page.
    remainder = (len(buf) + SEG_HEADER_LEN + len(segment.data)) % page_size
    data = bytes(segment.data)
    if remainder < _FLASH_PAGE_GUARD:
        data += bytes(_FLASH_PAGE_GUARD - remainder)
    return _save_segment(buf, Segment(segment.addr, data), checksum)


class ImageBuilder:
    """Builds application images and full flash layouts for one chip."""

    def __init__(self, chip: Chip) -> None:
        self.chip = chip
        self.flash_mode: int = FlashMode.DIO
        self.flash_size: int = FlashSize.SIZE_4MB
        self.flash_freq: int = FlashFreq.FREQ_40MHZ
        self.entry = 0
        self.mmu_page_size = IROM_ALIGN
        self.bootloader = b""
        self.partition_table = b""
        self.segments: list[Segment] = []
        self.rom_segments: list[Segment] = []
        self.ram_segments: list[Segment] = []

    def add_segment(self, addr: int, data: bytes) -> None:
        """Add a code or data segment to the application image."""
        self.segments.append(Segment(addr, bytes(data)))

    @property
    def bootloader_offset(self) -> int:
        return 0x1000 if self.chip in (Chip.ESP32, Chip.ESP32S2) else 0x0

    @property
    def app_offset(self) -> int:
        return _APP_OFFSET

    def _header(self) -> bytes:
        return _HEADER.pack(
            ESP_MAGIC,
            0,
            int(self.flash_mode) & 0xFF,
            ((int(self.flash_size) << 4) | int(self.flash_freq)) & 0xFF,
            self.entry & 0xFFFFFFFF,
            WP_PIN_DISABLED,
            0,
            0,
            0,
            self.chip.esp_chip_id,
            0,
            0,
            _MAX_CHIP_REV_FULL,
            bytes(4),
            1,
        )

    def build_app_image(self) -> bytes:
        """Return the application image: header, segments, checksum and SHA-256 digest."""
        source = self.segments or self.rom_segments
        rom = [s for s in source if _in_irom(s.addr) or _in_drom(s.addr)]
        ram = [s for s in source if not (_in_irom(s.addr) or _in_drom(s.addr))]

        rom_padded = _pad_to_word(_merge_rom_segments(rom))
        remaining_ram = _merge_adjacent_exact(sorted(ram, key=lambda s: s.addr))

        page = self.mmu_page_size
        buf = bytearray(self._header())
        checksum = ESP_CHECKSUM_MAGIC
        count = 0

        drom = [s for s in rom_padded if _in_drom(s.addr)]
        irom = [s for s in rom_padded if not _in_drom(s.addr)]

        for segment in drom:
            checksum = _save_flash_segment(buf, segment, checksum, page)
            count += 1

        if irom:
            alignment = (irom[0].addr - SEG_HEADER_LEN) % page
            current_page = len(buf) // page
            target = current_page * page + alignment
            if target < len(buf):
                target = (current_page + 1) * page + alignment

            # RAM segments fill the gap in front of IROM where they can.
            while remaining_ram and len(buf) + SEG_HEADER_LEN < target:
                first = remaining_ram[0]
                if target - (len(buf) + SEG_HEADER_LEN + len(first.data)) >= 0:
                    checksum = _save_segment(buf, first, checksum)
                    count += 1
                    remaining_ram.pop(0)
                else:
                    split = target - (len(buf) + SEG_HEADER_LEN)
                    checksum = _save_segment(buf, Segment(first.addr, first.data[:split]), checksum)
                    count += 1
                    remaining_ram[0] = Segment(first.addr + split, first.data[split:])
                    break

            while len(buf) + SEG_HEADER_LEN < target:
                pad_len = target - (len(buf) + SEG_HEADER_LEN)
                buf += _SEGMENT_HEADER.pack(0, pad_len)
                buf += bytes(pad_len)
                # The checksum takes the low byte of each padding index; whole
                # runs of 256 cancel out.
                checksum = functools.reduce(operator.xor, range(pad_len % 256), checksum)
                count += 1

            for segment in irom:
                checksum = _save_flash_segment(buf, segment, checksum, page)
                count += 1

        for segment in remaining_ram:
            checksum = _save_segment(buf, segment, checksum)
            count += 1

        buf += bytes(15 - len(buf) % 16)
        buf.append(checksum)
        buf[1] = count & 0xFF
        logger.debug("Image built with %d segments, checksum %#04x", count, checksum)
        buf += hashlib.sha256(buf).digest()
        return bytes(buf)

    def build_full_image(self) -> list[ImagePart]:
        """Return the bootloader, partition table and application parts that are present."""
        parts: list[ImagePart] = []
        if self.bootloader:
            parts.append(ImagePart("bootloader", self.bootloader_offset, bytes(self.bootloader)))
        if self.partition_table:
            parts.append(
                ImagePart("partition_table", _PARTITION_TABLE_OFFSET, bytes(self.partition_table))
            )
        parts.append(ImagePart("app", self.app_offset, self.build_app_image()))
        return parts


def _partition_entry(label: str, p_type: int, subtype: int, offset: int, size: int) -> bytes:
    return _PARTITION_ENTRY.pack(
        _PARTITION_MAGIC, p_type, subtype, offset, size, label.encode()[:16], 0
    )


def default_partition_table(chip: Chip, flash_size: int) -> bytes:
    """Return a partition table with nvs, phy_init and a factory app sized for the flash."""
    app_addr = 0x10000
    app_size = 0x100000 if chip in (Chip.ESP32S2, Chip.ESP32S3) else 0x300000
    if app_addr + app_size > flash_size:
        app_size = (flash_size - app_addr) & 0xFFFFFFFF

    table = bytearray()
    table += _partition_entry("nvs", 0x01, 0x02, 0x9000, 0x6000)
    table += _partition_entry("phy_init", 0x01, 0x01, 0xF000, 0x1000)
    table += _partition_entry("factory", 0x00, 0x00, app_addr, app_size)
    table += b"\xff" * (-len(table) % 32)
    return bytes(table)


def compute_checksum(data: bytes) -> int:
    """Return the image checksum of ``data``: 0xEF XOR every byte."""
    return functools.reduce(operator.xor, data, ESP_CHECKSUM_MAGIC)


def compute_sha256(data: bytes) -> str:
    """Return the hex SHA-256 digest of ``data``."""
    return hashlib.sha256(data).hexdigest()