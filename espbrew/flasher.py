"""Writing and erasing firmware on serial-attached or virtual flash devices."""

from __future__ import annotations

import contextlib
import dataclasses
import logging
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from espbrew.chips import Chip
from espbrew.convert import FlashPart, convert_elf_to_esp_image, parse_multipart_image
from espbrew.detect import FileType, detect_file_type
from espbrew.virtual import (
    VirtualDevice,
    VirtualDeviceError,
    chip_from_virtual_path,
    is_virtual_path,
    open_device,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]
ProgressFunc = Callable[[int, int], None]

_DEFAULT_CHIP = Chip.ESP32S3
_APP_OFFSET = 0x10000
_ESP_IMAGE_MAGIC = 0xE9
_MIN_APP_IMAGE = 100
_FULL_ERASE_REPORTED_SIZE = 4 * 1024 * 1024
_PREVIEW_LEN = 32

_VIRTUAL_CHIPS = {
    "esp32s3": Chip.ESP32S3,
    "esp32": Chip.ESP32,
    "esp32c3": Chip.ESP32C3,
}


class FlasherError(Exception):
    """Raised when flashing, reading or erasing a device fails."""


class FlashSession(Protocol):
    """An open connection to a chip in its serial bootloader."""

    chip_name: str

    def flash_image(self, data: bytes, offset: int, progress: ProgressFunc | None) -> None: ...

    def flash_images(self, parts: Sequence[FlashPart], progress: ProgressFunc | None) -> None: ...

    def erase_flash(self) -> None: ...

    def erase_region(self, address: int, size: int) -> None: ...

    def read_flash(self, address: int, size: int) -> bytes: ...

    def reset(self) -> None: ...

    def close(self) -> None: ...


Connector = Callable[[str, "FlasherOptions"], FlashSession]


@dataclass
class FlasherOptions:
    """Serial link settings."""

    baud_rate: int = 115200
    flash_baud_rate: int = 460800
    compress: bool = True


@dataclass
class FlashRequest:
    """Firmware to write to a port."""

    port: str
    firmware: bytes
    offset: int = 0
    progress: ProgressCallback | None = None
    chip: Chip | None = None


@dataclass
class FlashResult:
    """Outcome of a flash operation."""

    success: bool = False
    bytes: int = 0
    error: Exception | None = None


@dataclass
class EraseRequest:
    """A whole-chip or region erase."""

    port: str
    address: int = 0
    size: int = 0
    erase_all: bool = False
    progress: ProgressCallback | None = None
    chip: Chip | None = None


@dataclass
class EraseResult:
    """Outcome of an erase operation."""

    success: bool = False
    bytes: int = 0
    error: Exception | None = None


@dataclass
class ReadFlashRequest:
    """A region of flash to read."""

    port: str
    address: int
    size: int
    chip: Chip | None = None


def _report(progress: ProgressCallback | None, percent: int) -> None:
    if progress is not None:
        progress(percent)


def _virtual_device_id(port: str) -> str:
    return "default" if port == ":virtual:" else port


def _log_part(index: int, part: FlashPart, action: str) -> None:
    non_zero = sum(1 for value in part.data if value)
    logger.info(
        "%s part %d: %d bytes (%d non-zero) at %#x, preview %s",
        action,
        index,
        len(part.data),
        non_zero,
        part.offset,
        bytes(part.data[:_PREVIEW_LEN]).hex(),
    )


def _convert_elf(firmware: bytes, chip: Chip) -> list[FlashPart]:
    logger.info("ELF file detected, converting to ESP-IDF binary format")
    try:
        image = convert_elf_to_esp_image(firmware, chip)
    except Exception as exc:
        raise FlasherError(f"ELF conversion: {exc}") from exc
    logger.info("ELF converted: %d bytes -> %d bytes", len(firmware), len(image))
    try:
        return parse_multipart_image(image)
    except Exception as exc:
        raise FlasherError(f"parse multipart: {exc}") from exc


class Flasher:
    """Flashes, reads and erases devices; virtual ports are served from files.

    Physical ports are reached through ``connector``, a callable that opens a
    :class:`FlashSession` for a port with the given options.
    """

    def __init__(self, options: FlasherOptions | None = None) -> None:
        self.options = options if options is not None else FlasherOptions()
        self.connector: Connector | None = None

    @contextlib.contextmanager
    def _session(
        self, port: str, options: FlasherOptions, prefix: str = ""
    ) -> Iterator[FlashSession]:
        if self.connector is None:
            raise FlasherError(f"{prefix}no serial connector configured for {port}")
        try:
            session = self.connector(port, options)
        except FlasherError:
            raise
        except Exception as exc:
            logger.error("Failed to connect to %s: %s", port, exc)
            raise FlasherError(f"{prefix}{exc}") from exc
        try:
            logger.info("Detected chip %s on %s", session.chip_name, port)
            yield session
        finally:
            session.close()

    def flash(self, request: FlashRequest) -> FlashResult:
        """Write the request's firmware; ELF files are converted first."""
        if is_virtual_path(request.port):
            return self._flash_virtual(request)

        firmware = bytes(request.firmware)
        if detect_file_type(firmware) == FileType.ELF:
            chip = request.chip
            if chip is None:
                chip = _DEFAULT_CHIP
                logger.info("Chip not specified, defaulting to ESP32-S3")
            parts = _convert_elf(firmware, chip)
            options = dataclasses.replace(self.options, compress=False)
            total = 0
            with self._session(request.port, options) as session:
                for index, part in enumerate(parts, start=1):
                    _log_part(index, part, "Flashing")
                    is_app = (
                        part.offset == _APP_OFFSET
                        and len(part.data) > _MIN_APP_IMAGE
                        and part.data[0] == _ESP_IMAGE_MAGIC
                    )
                    try:
                        if is_app:
                            session.flash_image(part.data, part.offset, None)
                        else:
                            session.flash_images([part], None)
                    except Exception as exc:
                        logger.error("Flash part failed: %s", exc)
                        raise FlasherError(str(exc)) from exc
                    total += len(part.data)
                session.reset()
            logger.info("Flash complete")
            return FlashResult(success=True, bytes=total)

        progress_func: ProgressFunc | None = None
        if request.progress is not None:
            callback = request.progress

            def progress_func(current: int, total: int) -> None:
                callback(current * 100 // total if total > 0 else 0)

        with self._session(request.port, self.options) as session:
            logger.info("Starting flash of %d bytes", len(firmware))
            try:
                session.flash_image(firmware, request.offset, progress_func)
            except Exception as exc:
                logger.error("Flash write failed: %s", exc)
                raise FlasherError(str(exc)) from exc
            session.reset()
        logger.info("Flash complete")
        return FlashResult(success=True, bytes=len(firmware))

    def _open_virtual(self, port: str) -> VirtualDevice:
        try:
            return open_device(_virtual_device_id(port))
        except VirtualDeviceError as exc:
            logger.error("Failed to open virtual device: %s", exc)
            raise FlasherError(str(exc)) from exc

    def _flash_virtual(self, request: FlashRequest) -> FlashResult:
        chip_name = chip_from_virtual_path(request.port)
        logger.info("Using virtual flash device %s (%s)", request.port, chip_name)
        firmware = bytes(request.firmware)
        with self._open_virtual(request.port) as device:
            if detect_file_type(firmware) == FileType.ELF:
                chip = request.chip or _VIRTUAL_CHIPS.get(chip_name, _DEFAULT_CHIP)
                parts = _convert_elf(firmware, chip)
            else:
                parts = [FlashPart(offset=request.offset, data=firmware)]

            total = 0
            for index, part in enumerate(parts, start=1):
                _log_part(index, part, "Writing to virtual device")
                try:
                    device.write(part.offset, part.data)
                except VirtualDeviceError as exc:
                    logger.error("Virtual device write failed: %s", exc)
                    raise FlasherError(str(exc)) from exc
                total += len(part.data)
                _report(request.progress, index * 100 // len(parts))
            logger.info("Virtual flash complete: %d bytes to %s", total, device.path)
        return FlashResult(success=True, bytes=total)

    def read_flash(self, request: ReadFlashRequest) -> bytes:
        """Read a region of the device's flash."""
        logger.info(
            "Reading flash on %s: %#x bytes at %#x", request.port, request.size, request.address
        )
        with self._session(request.port, self.options, prefix="connect: ") as session:
            try:
                data = session.read_flash(request.address, request.size)
            except Exception as exc:
                raise FlasherError(f"read flash: {exc}") from exc
        logger.info("Flash read completed: %d bytes", len(data))
        return bytes(data)

    def erase_flash(self, request: EraseRequest) -> EraseResult:
        """Erase the whole flash or one region of it."""
        logger.info(
            "Erasing flash on %s: address %#x size %#x erase_all %s",
            request.port,
            request.address,
            request.size,
            request.erase_all,
        )
        if is_virtual_path(request.port):
            return self._erase_virtual(request)

        with self._session(request.port, self.options, prefix="connect: ") as session:
            _report(request.progress, 10)
            if request.erase_all:
                try:
                    session.erase_flash()
                except Exception as exc:
                    raise FlasherError(f"erase flash: {exc}") from exc
                erased = _FULL_ERASE_REPORTED_SIZE
            else:
                try:
                    session.erase_region(request.address, request.size)
                except Exception as exc:
                    raise FlasherError(f"erase region: {exc}") from exc
                erased = request.size
            _report(request.progress, 100)
        logger.info("Flash erase completed")
        return EraseResult(success=True, bytes=erased)

    def _erase_virtual(self, request: EraseRequest) -> EraseResult:
        logger.info(
            "Using virtual flash device %s (%s) for erase",
            request.port,
            chip_from_virtual_path(request.port),
        )
        with self._open_virtual(request.port) as device:
            _report(request.progress, 10)
            if request.erase_all:
                erased = device.size
                try:
                    device.write(0, bytes(erased))
                except VirtualDeviceError as exc:
                    raise FlasherError(f"virtual erase: {exc}") from exc
            else:
                erased = request.size
                try:
                    device.write(request.address, bytes(request.size))
                except VirtualDeviceError as exc:
                    raise FlasherError(f"virtual erase region: {exc}") from exc
            _report(request.progress, 100)
        logger.info("Virtual flash erase completed")
        return EraseResult(success=True, bytes=erased)