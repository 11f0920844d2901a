# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""Image allocator: zero-filled backing file of an exact size."""

import contextlib
import errno
import os

from .config import MIB
from .errors import AllocationError

BLOCK_SIZE = MIB


def allocate_image(path, size: int):
    """Create (or truncate) `path` and fill it with `size` zero bytes.

    Equivalent to `dd if=/dev/zero of=path bs=1M count=size/1M`. Any existing
    file at `path` is destroyed.
    """
    if size <= 0 or size % MIB != 0:
        raise AllocationError(f"image size must be a positive multiple of 1 MiB, got {size} bytes")

    parent = os.path.dirname(os.path.abspath(path))
    if not os.path.isdir(parent):
        raise AllocationError(f"directory '{parent}' does not exist")

    zeros = bytes(BLOCK_SIZE)
    try:
        with open(path, "wb") as f:
            for _ in range(size // BLOCK_SIZE):
                f.write(zeros)
            f.flush()
            os.fsync(f.fileno())
    except OSError as e:
        # Leave nothing half-written behind
        with contextlib.suppress(OSError):
            os.unlink(path)
        if e.errno in (errno.ENOSPC, errno.EDQUOT):
            raise AllocationError(f"not enough free space for {size // MIB} MiB image at '{path}'") from e
        raise AllocationError(f"cannot create '{path}': {e.strerror or e}") from e

    print(f"  Allocated {path} ({size // MIB} MiB, zero-filled)")
