"""Process-wide access to bootloader binaries through a shared manager."""

from __future__ import annotations

import logging
import os
import threading
from enum import IntEnum

from espbrew.bootloaders import BootloaderError, BootloaderManager
from espbrew.chips import Chip

logger = logging.getLogger(__name__)


class XtalFrequency(IntEnum):
    """Crystal oscillator frequency in MHz."""

    MHZ_26 = 26
    MHZ_40 = 40
    MHZ_32 = 32
    MHZ_48 = 48


_manager: BootloaderManager | None = None
_manager_lock = threading.Lock()


def get_bootloader_manager() -> BootloaderManager:
    """Return the shared bootloader manager, creating it on first use."""
    global _manager
    with _manager_lock:
        if _manager is None:
            _manager = BootloaderManager()
        return _manager


def get_bootloader(chip: Chip, xtal_freq: XtalFrequency = XtalFrequency.MHZ_40) -> bytes:
    """Return the bootloader for ``chip``, downloading and caching it if needed.

    The crystal frequency is accepted for callers that know it; the bootloaders
    served are the same for every frequency.
    """
    try:
        manager = get_bootloader_manager()
    except BootloaderError as exc:
        raise BootloaderError(f"init bootloader manager: {exc}") from exc
    data, _info = manager.get_bootloader(chip)
    return data


def set_custom_bootloader_path(chip: Chip, path: str | os.PathLike[str]) -> None:
    """Make the shared manager use the file at ``path`` as the bootloader for ``chip``."""
    try:
        manager = get_bootloader_manager()
    except BootloaderError as exc:
        logger.warning("Cannot set custom bootloader path: %s", exc)
        return
    manager.set_custom_path(chip, path)