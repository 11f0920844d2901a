# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""
build.py - Image build state machine

    UNALLOCATED -> ALLOCATED -> PARTITIONED -> FORMATTED -> STAGED
                -> RELEASED -> DONE

Any failure moves to FAILING, which releases whatever was acquired (mount,
mount point, bound device, partial image) newest first, and ends in FAILED.

The image is assembled at "<output>.partial" and only renamed to the output
path once the device is released, so a failed build never leaves a file that
looks finished.
"""

import enum
import os
import subprocess

from .allocate import allocate_image
from .config import MIB
from .errors import AllocationError, BootloaderError, ConfigError
from .stager import check_source, stage_content
from .teardown import Teardown

PARTIAL_SUFFIX = ".partial"


class BuildState(enum.Enum):
    UNALLOCATED = "unallocated"
    ALLOCATED = "allocated"
    PARTITIONED = "partitioned"
    FORMATTED = "formatted"
    STAGED = "staged"
    RELEASED = "released"
    DONE = "done"
    FAILING = "failing"
    FAILED = "failed"


class ImageBuild:
    """One build invocation. Not reusable: call run() once."""

    def __init__(self, spec, source, manifest, backend, bootloader_tool=None, clobber=True):
        self.spec = spec
        self.source = source
        self.manifest = manifest
        self.backend = backend
        self.bootloader_tool = bootloader_tool
        self.clobber = clobber

        self.state = BuildState.UNALLOCATED
        self.history = [BuildState.UNALLOCATED]
        self.error = None
        self.staged = []
        self.work_path = spec.path + PARTIAL_SUFFIX

    def _enter(self, state):
        self.state = state
        self.history.append(state)

    def _failing(self, exc):
        if self.state not in (BuildState.FAILING, BuildState.FAILED):
            self._enter(BuildState.FAILING)

    def run(self):
        if self.state is not BuildState.UNALLOCATED:
            raise RuntimeError("an ImageBuild can only run once")
        try:
            self._run()
        except BaseException as e:
            self._failing(e)
            self.error = e
            self._enter(BuildState.FAILED)
            raise
        return self.spec.path

    def _run(self):
        spec = self.spec
        backend = self.backend

        print(f"Creating disk image: {spec.path} ({spec.size // MIB} MiB)")
        print(f"Source directory: {self.source}")

        if not self.clobber and os.path.exists(spec.path):
            raise ConfigError(f"{spec.path} already exists (drop --no-clobber to overwrite it)")
        backend.check()
        check_source(self.source, self.manifest)
        work = spec.with_path(self.work_path)

        with Teardown(on_unwind=self._failing) as image_scope:
            published = []
            image_scope.register(f"partial image {self.work_path}",
                                 lambda: self._discard_partial(published),
                                 is_released=lambda: bool(published) or not os.path.exists(self.work_path))

            allocate_image(self.work_path, spec.size)
            self._enter(BuildState.ALLOCATED)

            backend.partition(self.work_path, work)
            self._enter(BuildState.PARTITIONED)

            with Teardown(on_unwind=self._failing) as device_scope:
                device = backend.bind(self.work_path, work)
                device_scope.register(f"device {device.node}", lambda: self._detach(device),
                                      is_released=lambda: not device.attached)

                backend.format(device, work)
                self._enter(BuildState.FORMATTED)

                self.staged = stage_content(backend, device, self.source, self.manifest)
                self._enter(BuildState.STAGED)

            self._enter(BuildState.RELEASED)

            if self.bootloader_tool:
                self._install_bootloader()

            try:
                os.replace(self.work_path, spec.path)
            except OSError as e:
                raise AllocationError(f"cannot move finished image to {spec.path}: {e.strerror or e}") from e
            published.append(spec.path)

        self._enter(BuildState.DONE)
        print(f"\nDisk image with FAT32 filesystem created: {spec.path} ({spec.size // MIB} MiB)")

    def _detach(self, device):
        self.backend.detach(device)
        print(f"  Released device {device.node}")

    def _discard_partial(self, published):
        if not published and os.path.exists(self.work_path):
            os.unlink(self.work_path)
            print(f"  Removed incomplete image {self.work_path}")

    def _install_bootloader(self):
        """Run `<tool> bios-install <image>` on the released image."""
        cmd = [self.bootloader_tool, "bios-install", self.work_path]
        print(f"  Installing bootloader: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise BootloaderError(f"cannot run {self.bootloader_tool}: {e.strerror or e}") from e
        if result.returncode != 0:
            raise BootloaderError(f"{' '.join(cmd)} failed (exit {result.returncode})",
                                  detail=result.stderr)


def build_image(spec, source, manifest, backend, **options):
    """Build the image described by `spec` and return the finished ImageBuild.

    Raises a MkdiskError subclass naming the failed stage; by then every
    acquired resource has been released.
    """
    build = ImageBuild(spec, source, manifest, backend, **options)
    build.run()
    return build

