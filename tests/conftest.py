# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

import os

import pytest

from mkdisk.config import MIB, ImageSpec, StagingManifest
from mkdisk.image_backend import ImageBackend

FIXED_MTIME = 1700000000  # 2023-11-14 22:13:20 UTC, even seconds survive FAT's 2 s resolution

SOURCE_FILES = {
    "boot/limine/limine.cfg": b"timeout: 3\n\n/Utopia\n    protocol: limine\n    kernel_path: boot():/kernel.bin\n",
    "boot/limine/limine-bios.sys": bytes(range(256)) * 64,
    "kernel.bin": b"\x7fELF" + bytes(5000),
    "EFI/BOOT/BOOTX64.EFI": b"MZ" + bytes(3000),
    "EFI/BOOT/a very long file name for the lfn path.txt": b"long names survive\n",
    "empty.txt": b"",
}


class BytesDevice:
    """In-memory block device for exercising the FAT32 code directly."""

    def __init__(self, size):
        self.size = size
        self.data = bytearray(size)
        self.offset = 0
        self.node = "mem0"

    def read(self, offset, length):
        assert 0 <= offset and offset + length <= self.size
        return bytes(self.data[offset:offset + length])

    def write(self, offset, data):
        assert 0 <= offset and offset + len(data) <= self.size
        self.data[offset:offset + len(data)] = data


def make_tree(root, files, mtime=FIXED_MTIME):
    for rel, content in files.items():
        path = os.path.join(root, *rel.split("/"))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(content)
        os.utime(path, (mtime, mtime))
    # Directories after files, deepest first
    dirs = []
    for dirpath, _, _ in os.walk(root):
        dirs.append(dirpath)
    for dirpath in sorted(dirs, key=len, reverse=True):
        os.utime(dirpath, (mtime, mtime))
    return root


@pytest.fixture
def source_tree(tmp_path):
    return make_tree(str(tmp_path / "disk"), SOURCE_FILES)


@pytest.fixture
def manifest():
    return StagingManifest()


@pytest.fixture
def spec(tmp_path, out_dir):
    return ImageSpec(path=str(out_dir / "disk.img"), size=64 * MIB, partition_offset=1 * MIB)


@pytest.fixture
def out_dir(tmp_path):
    os.makedirs(tmp_path / "out", exist_ok=True)
    return tmp_path / "out"


@pytest.fixture(autouse=True)
def release_device_slots():
    yield
    # A test that deliberately leaks a device must not affect the next one
    for device in list(ImageBackend._slots.values()):
        if device.attached:
            device._file.close()
            device.attached = False
    ImageBackend._slots.clear()
