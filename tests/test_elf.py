import struct

import pytest

from espbrew.chips import Chip
from espbrew.elf import (
    ELFSegment,
    InvalidELFError,
    NoSegmentsError,
    get_ram_segments,
    get_rom_segments,
    merge_segments,
    parse_elf,
    parse_elf_sections,
)

PROGBITS = 1
NOBITS = 8
INIT_ARRAY = 14


def build_elf(sections, *, elf_class=1, endianness=1):
    """Build a small ELF image; sections are (name, type, addr, payload)."""
    names = bytearray(b"\0")
    name_offsets = []
    for name, _, _, _ in sections:
        name_offsets.append(len(names))
        names += name.encode() + b"\0"
    shstrtab_name = len(names)
    names += b".shstrtab\0"

    body = bytearray(64)
    body[0:4] = b"\x7fELF"
    body[4] = elf_class
    body[5] = endianness
    strtab_offset = len(body)
    body += names

    placements = []
    for _, _, _, payload in sections:
        while len(body) % 4:
            body.append(0)
        placements.append(len(body))
        body += payload
    while len(body) % 4:
        body.append(0)

    headers = bytearray(40)
    for (_, sh_type, addr, payload), name_off, data_off in zip(sections, name_offsets, placements):
        headers += struct.pack("<10I", name_off, sh_type, 0, addr, data_off, len(payload), 0, 0, 4, 0)
    headers += struct.pack("<10I", shstrtab_name, 3, 0, 0, strtab_offset, len(names), 0, 0, 1, 0)

    shoff = len(body)
    body += headers
    count = len(sections) + 2
    struct.pack_into("<I", body, 32, shoff)
    struct.pack_into("<HHH", body, 46, 40, count, count - 1)
    return bytes(body)


SAMPLE = [
    (".flash.rodata", PROGBITS, 0x3C000020, bytes(range(16))),
    (".text", PROGBITS, 0x42000000, b"\xaa" * 8),
    (".data", PROGBITS, 0x3FC88000, b"\x11\x22\x33\x44"),
    (".bss", NOBITS, 0x3FC89000, b"\x00" * 4),
]


def test_sections_round_trip_names_and_data():
    sections = parse_elf_sections(build_elf(SAMPLE))
    by_name = {section.name: section for section in sections}
    for name, sh_type, addr, payload in SAMPLE:
        assert by_name[name].addr == addr
        assert by_name[name].data == payload
        assert by_name[name].type == sh_type
        assert by_name[name].size == len(payload)
    assert ".shstrtab" in by_name


def test_section_data_matches_file_at_offset():
    elf = build_elf(SAMPLE)
    for section in parse_elf_sections(elf):
        assert elf[section.offset:section.offset + section.size] == section.data


def test_section_beyond_file_has_no_data():
    elf = bytearray(build_elf(SAMPLE))
    (shoff,) = struct.unpack_from("<I", elf, 32)
    struct.pack_into("<I", elf, shoff + 40 + 20, 0x100000)
    first = parse_elf_sections(bytes(elf))[0]
    assert first.name == ".flash.rodata"
    assert first.size == 0x100000
    assert first.data == b""


def test_short_input_is_invalid():
    with pytest.raises(InvalidELFError):
        parse_elf_sections(b"\x7fELF" + bytes(10))


def test_bad_magic_is_invalid():
    elf = bytearray(build_elf(SAMPLE))
    elf[1] = ord("X")
    with pytest.raises(InvalidELFError):
        parse_elf_sections(bytes(elf))


def test_64_bit_is_rejected():
    with pytest.raises(InvalidELFError, match="32-bit"):
        parse_elf_sections(build_elf(SAMPLE, elf_class=2))


def test_big_endian_is_rejected():
    with pytest.raises(InvalidELFError, match="little-endian"):
        parse_elf_sections(build_elf(SAMPLE, endianness=2))


def test_rom_and_ram_split_for_esp32s3():
    sections = parse_elf_sections(build_elf(SAMPLE))
    rom = get_rom_segments(sections, Chip.ESP32S3)
    ram = get_ram_segments(sections, Chip.ESP32S3)
    assert [segment.addr for segment in rom] == [0x3C000020, 0x42000000]
    assert all(segment.is_rom and not segment.is_ram for segment in rom)
    assert [segment.addr for segment in ram] == [0x3FC88000]
    assert ram[0].is_ram and not ram[0].is_rom
    assert ram[0].data == b"\x11\x22\x33\x44"


def test_init_array_sections_are_loadable():
    sections = parse_elf_sections(build_elf([(".init_array", INIT_ARRAY, 0x3C000100, b"\x01\x02\x03\x04")]))
    rom = get_rom_segments(sections, Chip.ESP32S3)
    assert [segment.data for segment in rom] == [b"\x01\x02\x03\x04"]


def test_chip_without_ranges_yields_nothing():
    sections = parse_elf_sections(build_elf(SAMPLE))
    assert get_rom_segments(sections, Chip.ESP32C2) == []
    assert get_ram_segments(sections, Chip.ESP32C2) == []


def test_merge_adjacent_segments():
    merged = merge_segments([
        ELFSegment(addr=0x1004, data=b"\x05\x06\x07\x08", is_rom=True),
        ELFSegment(addr=0x1000, data=b"\x01\x02\x03\x04", is_rom=True),
    ])
    assert len(merged) == 1
    assert merged[0].addr == 0x1000
    assert merged[0].data == b"\x01\x02\x03\x04\x05\x06\x07\x08"


def test_merge_keeps_gapped_segments_sorted():
    merged = merge_segments([
        ELFSegment(addr=0x2000, data=b"\xbb"),
        ELFSegment(addr=0x1000, data=b"\xaa"),
    ])
    assert [(segment.addr, segment.data) for segment in merged] == [(0x1000, b"\xaa"), (0x2000, b"\xbb")]


def test_merge_contained_segment_is_absorbed():
    merged = merge_segments([
        ELFSegment(addr=0x1000, data=b"\x01\x02\x03\x04"),
        ELFSegment(addr=0x1001, data=b"\xff"),
    ])
    assert len(merged) == 1
    assert merged[0].data == b"\x01\x02\x03\x04"


def test_merge_empty():
    assert merge_segments([]) == []


def test_merge_does_not_modify_inputs():
    first = ELFSegment(addr=0x1000, data=b"\x01")
    merge_segments([first, ELFSegment(addr=0x1001, data=b"\x02")])
    assert first.data == b"\x01"


def test_parse_elf_merges_rom_only():
    elf = build_elf([
        (".a", PROGBITS, 0x42000000, b"\x01\x02\x03\x04"),
        (".b", PROGBITS, 0x42000004, b"\x05\x06\x07\x08"),
        (".c", PROGBITS, 0x3FC88000, b"\x09\x0a\x0b\x0c"),
        (".d", PROGBITS, 0x3FC88004, b"\x0d\x0e\x0f\x10"),
    ])
    rom, ram = parse_elf(elf, Chip.ESP32S3)
    assert len(rom) == 1
    assert rom[0].data == bytes(range(1, 9))
    assert [segment.addr for segment in ram] == [0x3FC88000, 0x3FC88004]


def test_parse_elf_without_loadable_sections():
    elf = build_elf([(".bss", NOBITS, 0x3FC89000, b"\x00" * 4)])
    with pytest.raises(NoSegmentsError):
        parse_elf(elf, Chip.ESP32S3)