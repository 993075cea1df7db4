# espbrew

Tools for preparing firmware for ESP32-family chips and writing it to
virtual flash devices, in plain Python with no third-party dependencies.

## What it does

- **Chips** – `espbrew.chips.Chip` lists the supported chip families;
  `bootloader_offset("ESP32-S3")` gives the bootloader flash offset for a
  chip name, or `None` for an unknown one.
- **File detection** – `espbrew.detect.detect_file_type` tells ELF files,
  ESP application binaries (magic `0xE9` or `0xEA`) and raw binaries apart,
  returning a `FileType`.
- **ELF parsing** – `espbrew.elf.parse_elf_sections` reads the sections of a
  32-bit little-endian ELF file; `parse_elf` splits it into merged flash (ROM)
  segments and separate RAM segments for a given `Chip`, raising
  `InvalidELFError` or `NoSegmentsError`.
- **Image building** – `espbrew.image.ImageBuilder` lays segments out in the
  ESP application image format, with IROM alignment, checksum and SHA-256
  digest (`build_app_image`), and returns bootloader, partition table and
  application parts (`build_full_image`). `default_partition_table` writes a
  table with nvs, phy_init and factory entries.
- **Bootloaders** – `espbrew.bootloaders.BootloaderManager` finds a
  bootloader binary for a chip: from a path set with `set_custom_path`, from
  a cache directory (by default `~/.espbrew/bootloaders`), or by download
  over HTTP, which is then cached along with JSON metadata.
  `espbrew.bootsource.get_bootloader` uses one shared manager.
- **ELF conversion** – `espbrew.convert.convert_elf_to_esp_image` combines
  bootloader, partition table and application into a multi-part blob, each
  part prefixed by a big-endian offset and length; `parse_multipart_image`
  splits it into `FlashPart`s. When no bootloader can be found or
  downloaded, the blob holds only the partition table and application.
- **flash_args** – `espbrew.flashargs.parse_flash_args` reads the
  `flash_args` file of an ESP-IDF build into a `FlashArgs`;
  `find_flash_args` (raises `FileNotFoundError`) and `resolve_build_path`
  locate files in a build directory.
- **Virtual devices** – `espbrew.virtual.open_device` opens a 16 MB flash
  image kept in `<HOME>/.espbrew/virtual/<id>.bin`, created erased (0xFF)
  if missing. A `VirtualDevice` supports `read`, `write`, `erase_region` and
  `dump`, and is a context manager.
- **Flashing** – `espbrew.flasher.Flasher` writes firmware (`flash`) or
  erases flash (`erase_flash`) on ports such as `:virtual:` or
  `wokwi-esp32s3`, converting ELF files first. Failures raise
  `FlasherError`.

## Installing

```
pip install .
```

## Example

```python
from espbrew.chips import Chip
from espbrew.convert import convert_elf_to_esp_image, parse_multipart_image

with open("firmware.elf", "rb") as fh:
    blob = convert_elf_to_esp_image(fh.read(), Chip.ESP32S3)

for part in parse_multipart_image(blob):
    print(hex(part.offset), len(part.data))
```

Writing to a virtual device:

```python
from espbrew.flasher import Flasher, FlashRequest

flasher = Flasher(None)
result = flasher.flash(FlashRequest(port=":virtual:", firmware=b"\xe9" + bytes(63), offset=0x10000))
print(result.bytes)
```

## What it does not do

- It does not speak the serial bootloader protocol. For a physical port,
  `Flasher` calls its `connector` attribute, a callable you supply that
  opens a session (`flash_image`, `flash_images`, `erase_flash`,
  `erase_region`, `read_flash`, `reset`, `close`) for a port. Without one,
  flashing, reading or erasing a physical port raises `FlasherError`.
- It has no command-line program and no serial monitor.

## Running the tests

```
pip install .[test]
pytest
```