# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""
host_backend.py - Backend driving the host's disk tools

Runs the same sequence as a shell build would:

    parted -s IMG mklabel msdos
    parted -s IMG mkpart primary fat32 1MiB 100%
    parted -s IMG set 1 boot on
    losetup -f --show -P IMG
    mkfs.fat -F 32 LOOPp1
    mount LOOPp1 MNT ... umount MNT
    losetup -d LOOP

Device and mount operations go through sudo unless already running as root.
"""

import os
import shutil
import subprocess

from .backend import Backend, BlockDevice, MountHandle
from .config import MIB, SECTOR_SIZE
from .errors import BindError, ConfigError, FormatError, MountError, PartitionError
from .fat32 import sectors_per_cluster_for
from .mbr import check_geometry

# tool -> package that provides it
REQUIRED_TOOLS = {
    "parted": "parted",
    "losetup": "util-linux",
    "mkfs.fat": "dosfstools",
    "mount": "mount",
    "umount": "mount",
}


class LoopDevice(BlockDevice):
    """A loop device with partition scanning; the partition node is LOOPp1."""

    def __init__(self, loop, backing_path, offset, size):
        super().__init__(backing_path, f"{loop}p1", offset, size)
        self.loop = loop


class HostBackend(Backend):
    name = "host"

    def __init__(self, sudo=None, runner=subprocess.run):
        if sudo is None:
            sudo = os.geteuid() != 0
        self.sudo = sudo
        self.runner = runner

    def _run(self, cmd, error, admin=True):
        """Run a tool, raising `error` with its stderr on a non-zero exit."""
        argv = (["sudo"] if admin and self.sudo else []) + [str(c) for c in cmd]
        try:
            result = self.runner(argv, capture_output=True, text=True)
        except OSError as e:
            raise error(f"cannot run {argv[0]}: {e.strerror or e}") from e
        if result.returncode != 0:
            raise error(f"{' '.join(argv)} failed (exit {result.returncode})", detail=result.stderr)
        return result.stdout

    def check(self):
        tools = list(REQUIRED_TOOLS)
        if self.sudo:
            tools.append("sudo")
        missing = [tool for tool in tools if shutil.which(tool) is None]
        if missing:
            hints = ", ".join(f"{tool} (package {REQUIRED_TOOLS.get(tool, tool)})" for tool in missing)
            raise ConfigError(f"required host tools not found: {hints}")

    def partition(self, path, spec):
        check_geometry(spec)
        start = f"{spec.partition_offset // MIB}MiB"
        self._run(["parted", "-s", path, "mklabel", "msdos"], PartitionError, admin=False)
        self._run(["parted", "-s", path, "mkpart", "primary", "fat32", start, "100%"], PartitionError, admin=False)
        self._run(["parted", "-s", path, "set", "1", "boot", "on"], PartitionError, admin=False)
        print(f"  parted: msdos label, partition 1 fat32 {start}-100%, boot on")

    def bind(self, path, spec):
        out = self._run(["losetup", "-f", "--show", "-P", path], BindError)
        loop = out.strip()
        if not loop:
            raise BindError("losetup did not return a loop device")
        print(f"  Using loop device: {loop}")
        return LoopDevice(loop, path, spec.partition_offset, spec.partition_size)

    def format(self, device, spec):
        spc = sectors_per_cluster_for(device.size // SECTOR_SIZE)
        self._run(["mkfs.fat", "-F", "32", "-s", str(spc), "-n", spec.label.upper()[:11],
                   "-i", f"{spec.volume_id & 0xFFFFFFFF:08X}", device.node], FormatError)
        print(f"  mkfs.fat: FAT32 on {device.node}, {spc} sec/cluster")

    def mount(self, device, mount_point):
        options = f"uid={os.getuid()},gid={os.getgid()},tz=UTC"
        self._run(["mount", "-o", options, device.node, mount_point], MountError)
        return MountHandle(device, mount_point)

    def unmount(self, handle):
        self._run(["umount", handle.mount_point], MountError)
        handle.mounted = False

    def detach(self, device):
        self._run(["losetup", "-d", device.loop], BindError)
        device.attached = False
