# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""mkdisk - bootable MBR/FAT32 disk images from a build output directory."""

from .build import BuildState, ImageBuild, build_image
from .config import ImageSpec, StagingManifest
from .errors import (AllocationError, BindError, BootloaderError, ConfigError, CopyError, FormatError,
                     MkdiskError, MountError, PartitionError, PreconditionError, ResourceLeakError,
                     VerificationError)

__version__ = "0.1.0"
