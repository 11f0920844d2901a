# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""Error taxonomy for the image build.

Every error names the build stage it belongs to, so the CLI can print a
single "ERROR: <stage>: <cause>" line.
"""


class MkdiskError(Exception):
    """Base class for all build failures."""

    stage = "build"

    def __init__(self, message, *, detail=None):
        super().__init__(message)
        self.detail = detail
        self.leaks = []

    def describe(self) -> str:
        text = f"{self.stage}: {self}"
        if self.detail:
            text += f"\n{self.detail.rstrip()}"
        return text


class ConfigError(MkdiskError):
    stage = "configure"


class AllocationError(MkdiskError):
    stage = "allocate"


class PartitionError(MkdiskError):
    stage = "partition"


class BindError(MkdiskError):
    stage = "bind"


class FormatError(MkdiskError):
    stage = "format"


class MountError(MkdiskError):
    stage = "mount"


class CopyError(MkdiskError):
    stage = "copy"


class VerificationError(MkdiskError):
    stage = "verify"

    def __init__(self, message, *, missing=(), detail=None):
        super().__init__(message, detail=detail)
        self.missing = list(missing)


class PreconditionError(VerificationError):
    """A required artifact is absent from the source tree before copy."""

    stage = "precondition"


class BootloaderError(MkdiskError):
    stage = "bootloader"


class ResourceLeakError(MkdiskError):
    """A bound device or mount could not be released during teardown."""

    stage = "teardown"

    def __init__(self, message, *, resource=None, detail=None):
        super().__init__(message, detail=detail)
        self.resource = resource
