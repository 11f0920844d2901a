# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""Build configuration: image geometry and the staging manifest."""

import os
from dataclasses import dataclass, field
from typing import Optional

SECTOR_SIZE = 512
MIB = 1024 * 1024

# Workspace layout used when no paths are given on the command line
DEFAULT_SOURCE = os.path.join("target", "disk")
DEFAULT_OUTPUT = os.path.join("target", "disk.img")

DEFAULT_IMAGE_SIZE = 64 * MIB
DEFAULT_PARTITION_OFFSET = 1 * MIB
DEFAULT_LABEL = "BOOT"
DEFAULT_VOLUME_ID = 0x4D4B4449     # "MKDI"
DEFAULT_DISK_SIGNATURE = 0x4D4B4449

DEFAULT_BOOT_DIR = "boot/limine"
DEFAULT_KERNEL = "kernel.bin"


@dataclass
class ImageSpec:
    """Geometry and identity of the disk image to build."""

    path: str
    size: int = DEFAULT_IMAGE_SIZE
    partition_offset: int = DEFAULT_PARTITION_OFFSET
    partition_type: str = "boot, primary"
    fs_type: str = "fat32"
    label: str = DEFAULT_LABEL
    volume_id: int = DEFAULT_VOLUME_ID
    disk_signature: int = DEFAULT_DISK_SIGNATURE

    @property
    def total_sectors(self) -> int:
        return self.size // SECTOR_SIZE

    @property
    def partition_start_lba(self) -> int:
        return self.partition_offset // SECTOR_SIZE

    @property
    def partition_sectors(self) -> int:
        # The single partition always spans to the end of the device
        return self.total_sectors - self.partition_start_lba

    @property
    def partition_size(self) -> int:
        return self.partition_sectors * SECTOR_SIZE

    def with_path(self, path):
        """Return a copy of this spec targeting another backing file."""
        return ImageSpec(path, self.size, self.partition_offset, self.partition_type,
                         self.fs_type, self.label, self.volume_id, self.disk_signature)


@dataclass
class StagingManifest:
    """Artifacts that must be present in the source and in the staged volume.

    Paths are relative to the tree root and use '/' separators.
    """

    boot_dir: str = DEFAULT_BOOT_DIR
    kernel: str = DEFAULT_KERNEL
    bootloader: Optional[str] = None
    extra: list = field(default_factory=list)

    def required(self):
        """Return (relative path, is_directory) pairs in a stable order."""
        items = [(self.boot_dir, True), (self.kernel, False)]
        if self.bootloader:
            items.append((self.bootloader, False))
        for rel in self.extra:
            items.append((rel, None))
        return items

    def missing_in(self, root):
        """List required paths that are absent (or of the wrong kind) under root."""
        missing = []
        for rel, is_dir in self.required():
            path = os.path.join(root, *rel.strip("/").split("/"))
            if is_dir is None:
                ok = os.path.exists(path)
            elif is_dir:
                ok = os.path.isdir(path)
            else:
                ok = os.path.isfile(path)
            if not ok:
                missing.append(rel)
        return missing
