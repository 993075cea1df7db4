"""Parsing of build-system flash_args files and build path lookup."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field

_HEX_OFFSET = re.compile(r"0x([0-9a-fA-F]+)")
_DEC_OFFSET = re.compile(r"[0-9]+")
_U64_LIMIT = 1 << 64

_SETTING_FLAGS = {
    "--flash-mode": "flash_mode",
    "--flash-freq": "flash_freq",
    "--flash-size": "flash_size",
}


@dataclass
class FlashFile:
    """A file to be written at a flash offset."""

    offset: int
    path: str


@dataclass
class FlashArgs:
    """Parsed contents of a flash_args file."""

    flash_mode: str = ""
    flash_freq: str = ""
    flash_size: str = ""
    files: list[FlashFile] = field(default_factory=list)


def _parse_offset(text: str) -> int | None:
    for pattern, base in ((_HEX_OFFSET, 16), (_DEC_OFFSET, 10)):
        match = pattern.match(text)
        if match:
            value = int(match.group(match.lastindex or 0), base)
            if value < _U64_LIMIT:
                return value & 0xFFFFFFFF
    return None


def _lines(data: bytes | str) -> list[str]:
    text = data.decode("utf-8", errors="replace") if isinstance(data, (bytes, bytearray)) else data
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def parse_flash_args(data: bytes | str) -> FlashArgs:
    """Parse flash_args content.

    The first line holds ``--flash-mode``, ``--flash-freq`` and ``--flash-size``;
    every later line is ``<offset> <filename>``. Lines whose offset cannot be
    read are skipped.
    """
    args = FlashArgs()
    for line_number, raw in enumerate(_lines(data), start=1):
        parts = raw.split()
        if not parts:
            continue
        if line_number == 1:
            tokens = iter(parts)
            for token in tokens:
                attribute = _SETTING_FLAGS.get(token)
                if attribute is None:
                    continue
                value = next(tokens, None)
                if value is not None:
                    setattr(args, attribute, value)
        elif len(parts) >= 2:
            offset = _parse_offset(parts[0])
            if offset is not None:
                args.files.append(FlashFile(offset=offset, path=parts[1]))
    return args


def find_flash_args(build_dir: str | os.PathLike[str]) -> str:
    """Return the path of the first flash_args found in the usual build locations."""
    candidates = [
        os.path.join(build_dir, "flash_args"),
        os.path.join(build_dir, "build", "flash_args"),
        "flash_args",
        os.path.join("build", "flash_args"),
    ]
    for candidate in candidates:
        if os.path.exists(candidate):
            return candidate
    raise FileNotFoundError(f"flash_args not found under {os.fspath(build_dir)!r}")


def resolve_build_path(build_dir: str | os.PathLike[str], filename: str) -> str:
    """Find a file in the build directory, its bootloader directory or as given.

    Falls back to ``filename`` unchanged when none of them exists.
    """
    candidates = [
        os.path.join(build_dir, filename),
        os.path.join(build_dir, "bootloader", filename),
        filename,
    ]
    for candidate in candidates:
        if os.path.exists(candidate):
            return candidate
    return filename