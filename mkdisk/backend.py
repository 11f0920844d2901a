# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""
backend.py - Capability interface between the build stages and the host

A backend knows how to partition a backing file, bind it to a block device,
format that device, and mount/unmount it. The build state machine only ever
talks to these methods, so the concrete tools can be swapped without touching
the ordering or the cleanup guarantees.
"""

from .errors import ConfigError


class BlockDevice:
    """Ownership token for a backing file bound as an addressable device.

    `node` names the partition sub-device (e.g. /dev/loop0p1). Released
    exactly once through Backend.detach().
    """

    def __init__(self, backing_path, node, offset, size):
        self.backing_path = backing_path
        self.node = node
        self.offset = offset
        self.size = size
        self.attached = True

    def __repr__(self):
        state = "attached" if self.attached else "detached"
        return f"<BlockDevice {self.node} ({self.backing_path}) {state}>"


class MountHandle:
    """A filesystem attached at a mount point directory."""

    def __init__(self, device, mount_point):
        self.device = device
        self.mount_point = mount_point
        self.mounted = True

    def __repr__(self):
        state = "mounted" if self.mounted else "unmounted"
        return f"<MountHandle {self.device.node} on {self.mount_point} {state}>"


class Backend:
    """Base class; subclasses implement every stage operation."""

    name = None

    def check(self):
        """Raise ConfigError if the backend cannot run on this host."""

    def partition(self, path, spec):
        raise NotImplementedError

    def bind(self, path, spec) -> BlockDevice:
        raise NotImplementedError

    def format(self, device, spec):
        raise NotImplementedError

    def mount(self, device, mount_point) -> MountHandle:
        raise NotImplementedError

    def unmount(self, handle):
        raise NotImplementedError

    def verify(self, device, manifest):
        """Raise VerificationError if a required path is missing from the unmounted volume.

        The default trusts the mounted filesystem, which was already checked
        through the mount point.
        """

    def detach(self, device):
        raise NotImplementedError


def get_backend(name, **options):
    """Instantiate a backend by its command line name."""
    from .host_backend import HostBackend
    from .image_backend import ImageBackend

    backends = {cls.name: cls for cls in (ImageBackend, HostBackend)}
    if name not in backends:
        raise ConfigError(f"unknown backend '{name}' (choose from {', '.join(sorted(backends))})")
    return backends[name](**options)
