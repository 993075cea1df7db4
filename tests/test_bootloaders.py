import json
import urllib.error
from unittest import mock

import pytest

from espbrew.bootloaders import (
    BootloaderError,
    BootloaderInfo,
    BootloaderManager,
    compute_sha256,
)
from espbrew.chips import Chip

FAKE_BOOTLOADER = b"\xe9" + bytes(range(1, 200)) * 60


class FakeResponse:
    def __init__(self, body, status=200):
        self.body = body
        self.status = status

    def read(self):
        return self.body

    def __enter__(self):
        return self

    def __exit__(self, *args):
        return False


def fake_urlopen(url, timeout=None):
    return FakeResponse(FAKE_BOOTLOADER)


def test_download_bootloader_is_cached(tmp_path):
    manager = BootloaderManager(cache_dir=tmp_path)
    with mock.patch("urllib.request.urlopen", side_effect=fake_urlopen) as opener:
        data, info = manager.get_bootloader(Chip.ESP32S3)
    url = opener.call_args.args[0]
    assert url.endswith("/v3.0.0/espflash/resources/bootloaders/esp32s3-bootloader.bin")
    assert len(data) > 0
    assert data[0] == 0xE9
    assert (tmp_path / "esp32s3-bootloader.bin").read_bytes() == data
    assert info.source == "downloaded"
    assert info.version == "v3.0.0"
    assert info.size == len(data)


def test_download_all_bootloaders(tmp_path):
    manager = BootloaderManager(cache_dir=tmp_path)
    with mock.patch("urllib.request.urlopen", side_effect=fake_urlopen):
        for chip in (Chip.ESP32, Chip.ESP32S2, Chip.ESP32S3, Chip.ESP32C3, Chip.ESP32C6):
            data, info = manager.get_bootloader(chip)
            assert len(data) >= 10000
            assert data[0] == 0xE9
            assert info.chip == chip.value


def test_bootloader_cache_hit(tmp_path):
    manager = BootloaderManager(cache_dir=tmp_path)
    with mock.patch("urllib.request.urlopen", side_effect=fake_urlopen) as opener:
        data1, info1 = manager.get_bootloader(Chip.ESP32S3)
        data2, info2 = manager.get_bootloader(Chip.ESP32S3)
    assert info1.source == "downloaded"
    assert info2.source == "cached"
    assert len(data1) == len(data2)
    assert info2.version == "v3.0.0"
    assert opener.call_count == 1


def test_custom_version_in_url(tmp_path):
    manager = BootloaderManager(cache_dir=tmp_path, version="v9.9.9")
    with mock.patch("urllib.request.urlopen", side_effect=fake_urlopen) as opener:
        data, info = manager.get_bootloader(Chip.ESP32P4)
    assert opener.call_args.args[0].endswith("/v9.9.9/espflash/resources/bootloaders/esp32p4-v0-bootloader.bin")
    assert data == FAKE_BOOTLOADER
    assert info.version == "v9.9.9"
    assert info.name == "esp32p4-v0-bootloader.bin"


def test_http_error_raises(tmp_path):
    manager = BootloaderManager(cache_dir=tmp_path)
    error = urllib.error.HTTPError("http://localhost/x", 404, "Not Found", None, None)
    with mock.patch("urllib.request.urlopen", side_effect=error):
        with pytest.raises(BootloaderError, match="404"):
            manager.get_bootloader(Chip.ESP32)
    assert not (tmp_path / "esp32-bootloader.bin").exists()


def test_empty_cached_file_triggers_download(tmp_path):
    (tmp_path / "esp32c3-bootloader.bin").write_bytes(b"")
    manager = BootloaderManager(cache_dir=tmp_path)
    with mock.patch("urllib.request.urlopen", side_effect=fake_urlopen):
        data, info = manager.get_bootloader(Chip.ESP32C3)
    assert info.source == "downloaded"
    assert data == FAKE_BOOTLOADER


def test_cached_file_with_metadata(tmp_path):
    (tmp_path / "esp32c6-bootloader.bin").write_bytes(b"\xe9\x01\x02")
    (tmp_path / "esp32c6-bootloader.bin.json").write_text(
        json.dumps({"version": "v1.2.3", "last_updated": "yesterday"})
    )
    manager = BootloaderManager(cache_dir=tmp_path)
    data, info = manager.get_bootloader(Chip.ESP32C6)
    assert data == b"\xe9\x01\x02"
    assert info.source == "cached"
    assert info.version == "v1.2.3"
    assert info.last_updated == "yesterday"
    assert info.size == 3


def test_custom_path_takes_precedence(tmp_path):
    custom = tmp_path / "mine.bin"
    custom.write_bytes(b"\xe9custom")
    (tmp_path / "cache").mkdir()
    (tmp_path / "cache" / "esp32s3-bootloader.bin").write_bytes(b"\xe9cached")
    manager = BootloaderManager(cache_dir=tmp_path / "cache")
    manager.set_custom_path(Chip.ESP32S3, custom)
    data, info = manager.get_bootloader(Chip.ESP32S3)
    assert data == b"\xe9custom"
    assert info.source == "custom"
    assert info.name == "mine.bin"
    assert info.chip == "esp32s3"

    manager.clear_custom_path(Chip.ESP32S3)
    data, info = manager.get_bootloader(Chip.ESP32S3)
    assert data == b"\xe9cached"
    assert info.source == "cached"


def test_missing_custom_path_raises(tmp_path):
    manager = BootloaderManager(cache_dir=tmp_path)
    manager.set_custom_path(Chip.ESP32, tmp_path / "absent.bin")
    with pytest.raises(BootloaderError, match="custom"):
        manager.get_bootloader(Chip.ESP32)


def test_get_info_after_download(tmp_path):
    manager = BootloaderManager(cache_dir=tmp_path)
    with mock.patch("urllib.request.urlopen", side_effect=fake_urlopen):
        manager.get_bootloader(Chip.ESP32H2)
    info = manager.get_info(Chip.ESP32H2)
    assert info == BootloaderInfo(
        name="esp32h2-bootloader.bin",
        chip="esp32h2",
        version="v3.0.0",
        size=len(FAKE_BOOTLOADER),
        source="downloaded",
    )


def test_get_info_missing_metadata(tmp_path):
    manager = BootloaderManager(cache_dir=tmp_path)
    with pytest.raises(BootloaderError, match="metadata not found"):
        manager.get_info(Chip.ESP32)


def test_get_info_corrupt_metadata(tmp_path):
    (tmp_path / "esp32-bootloader.bin.json").write_text("not json")
    manager = BootloaderManager(cache_dir=tmp_path)
    with pytest.raises(BootloaderError, match="parse metadata"):
        manager.get_info(Chip.ESP32)


def test_clear_cache_keeps_directories(tmp_path):
    (tmp_path / "a.bin").write_bytes(b"1")
    (tmp_path / "a.bin.json").write_text("{}")
    (tmp_path / "sub").mkdir()
    manager = BootloaderManager(cache_dir=tmp_path)
    manager.clear_cache()
    assert sorted(entry.name for entry in tmp_path.iterdir()) == ["sub"]


def test_cache_dir_is_created(tmp_path):
    target = tmp_path / "nested" / "cache"
    manager = BootloaderManager(cache_dir=target)
    assert target.is_dir()
    assert manager.cache_path == str(target)


def test_compute_sha256_of_empty_input():
    assert compute_sha256(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_info_json_round_trip():
    info = BootloaderInfo(name="x.bin", chip="esp32", version="v3.0.0", size=5, source="cached")
    assert BootloaderInfo.from_json(info.to_json()) == info