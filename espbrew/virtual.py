"""Virtual flash devices backed by files in the user's home directory."""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

VIRTUAL_FLASH_SIZE = 16 * 1024 * 1024
_ERASED = 0xFF
_WOKWI_PREFIX = "wokwi-"
_DEFAULT_CHIP = "esp32s3"


class VirtualDeviceError(Exception):
    """Raised when a virtual device operation fails."""


def is_virtual_path(port: str) -> bool:
    """Tell whether a port name refers to a virtual device."""
    return port == ":virtual:" or (len(port) > len(_WOKWI_PREFIX) and port.startswith(_WOKWI_PREFIX))


def chip_from_virtual_path(port: str) -> str:
    """Return the chip named in a virtual path, e.g. ``wokwi-esp32s3`` -> ``esp32s3``."""
    if len(port) > len(_WOKWI_PREFIX) and port.startswith(_WOKWI_PREFIX):
        return port[len(_WOKWI_PREFIX):]
    return _DEFAULT_CHIP


class VirtualDevice:
    """A flash memory image kept in memory and persisted to a file on every change."""

    def __init__(self, path: Path, memory: bytearray) -> None:
        self._lock = threading.Lock()
        self._path = path
        self._memory = memory
        self._active = True

    @property
    def path(self) -> str:
        return str(self._path)

    @property
    def size(self) -> int:
        return VIRTUAL_FLASH_SIZE

    def _check_active(self) -> None:
        if not self._active:
            raise VirtualDeviceError("device not active")

    def _persist(self) -> None:
        try:
            self._path.write_bytes(self._memory)
        except OSError as exc:
            raise VirtualDeviceError(f"persist virtual device: {exc}") from exc

    def read(self, addr: int, size: int) -> bytes:
        """Return ``size`` bytes starting at ``addr``."""
        with self._lock:
            self._check_active()
            if addr < 0 or size < 0 or addr + size > VIRTUAL_FLASH_SIZE:
                raise VirtualDeviceError(
                    f"read beyond flash size: {addr:#x} + {size:#x} > {VIRTUAL_FLASH_SIZE:#x}"
                )
            return bytes(self._memory[addr:addr + size])

    def write(self, addr: int, data: bytes) -> None:
        """Write ``data`` at ``addr`` and persist the image."""
        with self._lock:
            self._check_active()
            if addr < 0 or addr + len(data) > VIRTUAL_FLASH_SIZE:
                raise VirtualDeviceError(
                    f"write beyond flash size: {addr:#x} + {len(data):#x} > {VIRTUAL_FLASH_SIZE:#x}"
                )
            self._memory[addr:addr + len(data)] = data
            self._persist()

    def erase_region(self, addr: int, size: int) -> None:
        """Set a region to 0xFF, clipped to the end of flash, and persist the image."""
        with self._lock:
            self._check_active()
            end = min(addr + size, VIRTUAL_FLASH_SIZE)
            if 0 <= addr < end:
                self._memory[addr:end] = bytes([_ERASED]) * (end - addr)
            self._persist()

    def dump(self) -> bytes:
        """Return a copy of the whole flash contents."""
        with self._lock:
            return bytes(self._memory)

    def close(self) -> None:
        """Deactivate the device; further reads and writes fail."""
        with self._lock:
            self._active = False

    def __enter__(self) -> VirtualDevice:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def open_device(device_id: str, home: str | os.PathLike[str] | None = None) -> VirtualDevice:
    """Open the virtual device ``device_id``, creating an erased one if needed.

    The backing file lives in ``<home>/.espbrew/virtual``; ``home`` defaults to
    the ``HOME`` environment variable.
    """
    base = Path(os.environ.get("HOME", "") if home is None else home)
    directory = base / ".espbrew" / "virtual"
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise VirtualDeviceError(f"create virtual directory: {exc}") from exc

    path = directory / f"{device_id}.bin"
    try:
        data = bytearray(path.read_bytes())
    except FileNotFoundError:
        data = bytearray([_ERASED]) * VIRTUAL_FLASH_SIZE
        try:
            path.write_bytes(data)
        except OSError as exc:
            raise VirtualDeviceError(f"initialize virtual device: {exc}") from exc
        logger.info("Created new virtual flash device at %s", path)
    except OSError as exc:
        raise VirtualDeviceError(f"read virtual device: {exc}") from exc

    if len(data) != VIRTUAL_FLASH_SIZE:
        logger.warning(
            "Virtual device size mismatch (%d, expected %d), resizing",
            len(data),
            VIRTUAL_FLASH_SIZE,
        )
        resized = bytearray([_ERASED]) * VIRTUAL_FLASH_SIZE
        keep = min(len(data), VIRTUAL_FLASH_SIZE)
        resized[:keep] = data[:keep]
        data = resized

    return VirtualDevice(path, data)