# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""
image_backend.py - In-process backend, no privileges or host tools needed

  partition  MBR written directly into sector 0
  bind       partition window over the backing file, taken from a fixed
             table of device slots (like the host's loop devices)
  format     FAT32 structures written through the window
  mount      volume contents materialised into the mount point
  unmount    mount point contents written back as a fresh FAT32 tree,
             then the mount point is emptied again
  verify     required paths looked up on the written volume
"""

import os
import shutil

from .backend import Backend, BlockDevice, MountHandle
from .config import SECTOR_SIZE
from .errors import BindError, FormatError, MountError, PartitionError, VerificationError
from .fat32 import Fat32Volume
from .mbr import read_partition_table, write_mbr

DEVICE_SLOTS = 8


class PartitionDevice(BlockDevice):
    """Bounded read/write view of one partition of a backing file."""

    def __init__(self, slot, backing_path, offset, size):
        super().__init__(backing_path, f"image{slot}p1", offset, size)
        self.slot = slot
        self._file = open(backing_path, "r+b")

    def _check(self, offset, length):
        if offset < 0 or offset + length > self.size:
            raise OSError(f"access beyond end of {self.node}: {offset}+{length} > {self.size}")
        if not self.attached:
            raise OSError(f"{self.node} is detached")

    def read(self, offset, length) -> bytes:
        self._check(offset, length)
        self._file.seek(self.offset + offset)
        return self._file.read(length)

    def write(self, offset, data):
        self._check(offset, len(data))
        self._file.seek(self.offset + offset)
        self._file.write(data)

    def close(self):
        self._file.flush()
        os.fsync(self._file.fileno())
        self._file.close()


class ImageBackend(Backend):
    name = "image"

    # Shared by every instance in the process, like the host's loop devices
    _slots = {}

    @classmethod
    def bound_paths(cls):
        return sorted(dev.backing_path for dev in cls._slots.values())

    def partition(self, path, spec):
        write_mbr(path, spec)

    def bind(self, path, spec):
        key = os.path.realpath(path)
        for dev in self._slots.values():
            if os.path.realpath(dev.backing_path) == key:
                raise BindError(f"{path} is already bound to {dev.node}")

        free = [slot for slot in range(DEVICE_SLOTS) if slot not in self._slots]
        if not free:
            raise BindError(f"no free device slots (all {DEVICE_SLOTS} in use)")

        try:
            entries = read_partition_table(path)
        except (OSError, PartitionError) as e:
            raise BindError(f"cannot read partition table of {path}: {e}") from e
        if not entries:
            raise BindError(f"{path} has no partitions to expose")
        part = entries[0]

        try:
            device = PartitionDevice(free[0], path, part.offset, part.size)
        except OSError as e:
            raise BindError(f"cannot open {path}: {e.strerror or e}") from e
        self._slots[free[0]] = device
        print(f"  Using device: {device.node} (offset {part.offset}, {part.size // SECTOR_SIZE} sectors)")
        return device

    def format(self, device, spec):
        try:
            Fat32Volume.format(device, spec.label, spec.volume_id,
                               hidden_sectors=device.offset // SECTOR_SIZE)
        except OSError as e:
            raise FormatError(f"writing FAT32 to {device.node} failed: {e}") from e

    def mount(self, device, mount_point):
        if not device.attached:
            raise MountError(f"{device.node} is not attached")
        if os.listdir(mount_point):
            raise MountError(f"mount point {mount_point} is not empty")
        volume = Fat32Volume.open(device)
        try:
            volume.extract(mount_point)
        except OSError as e:
            _empty_dir(mount_point)
            raise MountError(f"cannot mount {device.node} on {mount_point}: {e}") from e
        return MountHandle(device, mount_point)

    def unmount(self, handle):
        """Write the mount point back to the volume and empty it.

        The mount is released even when the write-back fails; the error still
        propagates.
        """
        if not handle.mounted:
            raise MountError(f"{handle.mount_point} is not mounted")
        try:
            volume = Fat32Volume.open(handle.device)
            volume.reset()
            volume.store_tree(handle.mount_point)
            volume.flush()
        finally:
            _empty_dir(handle.mount_point)
            handle.mounted = False

    def verify(self, device, manifest):
        volume = Fat32Volume.open(device)
        missing = []
        for rel, is_dir in manifest.required():
            entry = volume.lookup(rel)
            if entry is None or (is_dir is not None and entry.is_dir != is_dir):
                missing.append(rel)
        if missing:
            raise VerificationError(f"not present on {device.node} after write-back: {', '.join(missing)}",
                                    missing=missing)

    def detach(self, device):
        if not device.attached or self._slots.get(device.slot) is not device:
            raise BindError(f"{device.node} is not attached")
        try:
            device.close()
        finally:
            device.attached = False
            del self._slots[device.slot]


def _empty_dir(path):
    for name in os.listdir(path):
        child = os.path.join(path, name)
        if os.path.isdir(child) and not os.path.islink(child):
            shutil.rmtree(child)
        else:
            os.unlink(child)
