"""Extraction of loadable sections and segments from 32-bit little-endian ELF files."""

from __future__ import annotations

import struct
from dataclasses import dataclass, replace

from espbrew.chips import Chip

_MIN_ELF_SIZE = 64
_ELF_MAGIC = b"\x7fELF"
_SECTION_HEADER_SIZE = 40
_NAME_LIMIT = 32
_PROGBITS = 1
_INIT_ARRAY = 14
_LOADABLE_TYPES = (_PROGBITS, _INIT_ARRAY)


class InvalidELFError(ValueError):
    """Raised when data is not a usable ELF file."""


class NoSegmentsError(ValueError):
    """Raised when an ELF file holds no loadable segments."""


@dataclass(frozen=True)
class _FlashRange:
    irom: tuple[int, int]
    drom: tuple[int, int]
    iram: tuple[int, int]

    def contains_flash(self, addr: int) -> bool:
        """Tell whether ``addr`` lies in IROM or DROM; IRAM is not flash."""
        return any(start <= addr < end for start, end in (self.irom, self.drom))


_RISCV_RANGE = _FlashRange(
    irom=(0x42000000, 0x42800000),
    drom=(0x3C000000, 0x3C800000),
    iram=(0x40380000, 0x403A0000),
)

_FLASH_RANGES = {
    Chip.ESP32: _FlashRange(
        irom=(0x400D0000, 0x40400000),
        drom=(0x3F400000, 0x3F800000),
        iram=(0x40080000, 0x400A0000),
    ),
    Chip.ESP32S2: _FlashRange(
        irom=(0x40080000, 0x41800000),
        drom=(0x3F000000, 0x3F3F0000),
        iram=(0x40020000, 0x40040000),
    ),
    Chip.ESP32S3: _FlashRange(
        irom=(0x42000000, 0x44000000),
        drom=(0x3C000000, 0x3E000000),
        iram=(0x40370000, 0x403E0000),
    ),
    Chip.ESP32C3: _RISCV_RANGE,
    Chip.ESP32C6: _RISCV_RANGE,
    Chip.ESP32H2: _RISCV_RANGE,
}


@dataclass
class ELFSection:
    """A section as described by an ELF section header."""

    name: str
    addr: int
    data: bytes
    type: int
    flags: int
    size: int
    offset: int


@dataclass
class ELFSegment:
    """A block of bytes to be placed at a virtual address."""

    addr: int
    data: bytes
    is_rom: bool = False
    is_ram: bool = False


def _read_name(data: bytes, strtab_offset: int, name_index: int) -> str:
    if strtab_offset == 0:
        return ""
    start = strtab_offset + name_index
    if start + _NAME_LIMIT >= len(data):
        return ""
    raw = data[start:start + _NAME_LIMIT]
    return raw.split(b"\0", 1)[0].decode("latin-1")


def parse_elf_sections(data: bytes) -> list[ELFSection]:
    """Return every section of an ELF file that has content in the file."""
    data = bytes(data)
    if len(data) < _MIN_ELF_SIZE or data[:4] != _ELF_MAGIC:
        raise InvalidELFError("invalid ELF file")
    if data[4] != 1:
        raise InvalidELFError("only 32-bit ELF files supported")
    if data[5] != 1:
        raise InvalidELFError("only little-endian ELF files supported")

    (sh_offset,) = struct.unpack_from("<I", data, 32)
    sh_entsize, sh_num, sh_strndx = struct.unpack_from("<HHH", data, 46)

    strtab_offset = 0
    if sh_strndx < sh_num:
        header = sh_offset + sh_strndx * sh_entsize
        if header + _SECTION_HEADER_SIZE <= len(data):
            (strtab_offset,) = struct.unpack_from("<I", data, header + 16)

    sections: list[ELFSection] = []
    for index in range(sh_num):
        header = sh_offset + index * sh_entsize
        if header + _SECTION_HEADER_SIZE > len(data):
            break
        name_index, sh_type, flags, addr, offset, size = struct.unpack_from("<6I", data, header)
        if size == 0 or offset == 0 or offset >= len(data):
            continue
        end = offset + size
        sections.append(
            ELFSection(
                name=_read_name(data, strtab_offset, name_index),
                addr=addr,
                data=data[offset:end] if end <= len(data) else b"",
                type=sh_type,
                flags=flags,
                size=size,
                offset=offset,
            )
        )
    return sections


def _loadable(sections: list[ELFSection]):
    for section in sections:
        if section.data and section.type in _LOADABLE_TYPES:
            yield section


def get_rom_segments(sections: list[ELFSection], chip: Chip) -> list[ELFSegment]:
    """Return the loadable sections that live in the chip's flash-mapped ranges."""
    ranges = _FLASH_RANGES.get(chip)
    if ranges is None:
        return []
    return [
        ELFSegment(addr=section.addr, data=section.data, is_rom=True)
        for section in _loadable(sections)
        if ranges.contains_flash(section.addr)
    ]


def get_ram_segments(sections: list[ELFSection], chip: Chip) -> list[ELFSegment]:
    """Return the loadable sections with a non-zero address outside flash ranges."""
    ranges = _FLASH_RANGES.get(chip)
    if ranges is None:
        return []
    return [
        ELFSegment(addr=section.addr, data=section.data, is_ram=True)
        for section in _loadable(sections)
        if not ranges.contains_flash(section.addr) and section.addr > 0
    ]


def merge_segments(segments: list[ELFSegment]) -> list[ELFSegment]:
    """Sort segments by address and join those that touch or overlap."""
    if not segments:
        return []
    ordered = sorted(segments, key=lambda segment: segment.addr)
    merged: list[ELFSegment] = []
    current = replace(ordered[0], data=bytes(ordered[0].data))
    for following in ordered[1:]:
        end = current.addr + len(current.data)
        if following.addr <= end:
            following_end = following.addr + len(following.data)
            if following_end > end:
                current.data += bytes(following.data[end - following.addr:])
        else:
            merged.append(current)
            current = replace(following, data=bytes(following.data))
    merged.append(current)
    return merged


def parse_elf(data: bytes, chip: Chip) -> tuple[list[ELFSegment], list[ELFSegment]]:
    """Return the ROM segments (merged) and RAM segments (kept apart) of an ELF file."""
    sections = parse_elf_sections(data)
    rom_segments = merge_segments(get_rom_segments(sections, chip))
    ram_segments = get_ram_segments(sections, chip)
    if not rom_segments and not ram_segments:
        raise NoSegmentsError("no loadable segments found")
    return rom_segments, ram_segments