# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""Content stager: mount, copy the build output, verify, unmount."""

import os
import shutil
import tempfile

from .errors import CopyError, MountError, PreconditionError, VerificationError
from .teardown import Teardown


def check_source(source, manifest):
    """Fail early if the build output is missing something the image needs."""
    if not os.path.isdir(source):
        raise PreconditionError(f"source directory '{source}' does not exist")
    missing = manifest.missing_in(source)
    if missing:
        raise PreconditionError(f"required artifacts missing from {source}: {', '.join(missing)}",
                                missing=missing)


def _raise(error):
    raise error


def copy_tree(source, dest):
    """Copy everything under `source` into the existing directory `dest`.

    Relative paths and file/directory mtimes are kept; permissions and
    ownership are not (FAT has neither). Symlinks are followed.
    """
    copied = []
    try:
        for root, dirnames, filenames in os.walk(source, onerror=_raise, followlinks=True):
            dirnames.sort()
            rel = os.path.relpath(root, source)
            target = dest if rel == os.curdir else os.path.join(dest, rel)
            if rel != os.curdir:
                os.mkdir(target)
                copied.append((root, target))
            for name in sorted(filenames):
                src = os.path.join(root, name)
                dst = os.path.join(target, name)
                shutil.copyfile(src, dst)
                st = os.stat(src)
                os.utime(dst, ns=(st.st_atime_ns, st.st_mtime_ns))
        # Directory mtimes last, deepest first, so copying into them doesn't bump them
        for root, target in reversed(copied):
            st = os.stat(root)
            os.utime(target, ns=(st.st_atime_ns, st.st_mtime_ns))
    except OSError as e:
        where = e.filename or source
        raise CopyError(f"copying {where} failed: {e.strerror or e}") from e


def list_tree(root):
    """Return (relative path, is_dir, size) for everything under root, sorted."""
    items = []
    for path, dirnames, filenames in os.walk(root):
        dirnames.sort()
        rel_dir = os.path.relpath(path, root)
        for name in dirnames:
            rel = name if rel_dir == os.curdir else f"{rel_dir}/{name}"
            items.append((rel.replace(os.sep, "/"), True, 0))
        for name in sorted(filenames):
            rel = name if rel_dir == os.curdir else f"{rel_dir}/{name}"
            items.append((rel.replace(os.sep, "/"), False, os.path.getsize(os.path.join(path, name))))
    return sorted(items)


def print_listing(items):
    print("  Disk contents:")
    for rel, is_dir, size in items:
        if is_dir:
            print(f"    Dir:  {rel}/")
        else:
            print(f"    File: {rel} ({size} bytes)")


def verify_staged(dest, manifest):
    missing = manifest.missing_in(dest)
    if missing:
        raise VerificationError(f"not present on the volume after copy: {', '.join(missing)}",
                                missing=missing)


def stage_content(backend, device, source, manifest):
    """Mount the formatted volume, copy `source` onto it, unmount and verify.

    The manifest is checked twice: in the mount point after the copy, and on
    the volume after unmount through backend.verify().

    The mount point is a fresh temporary directory. It is unmounted before it
    is removed, and both happen before this function returns, whatever the
    outcome.
    """
    check_source(source, manifest)

    with Teardown() as scope:
        try:
            mount_point = tempfile.mkdtemp(prefix="mkdisk-mnt-")
        except OSError as e:
            raise MountError(f"cannot create a mount point: {e.strerror or e}") from e
        mounts = []

        def remove_mount_point():
            if any(handle.mounted for handle in mounts):
                raise MountError(f"{mount_point} is still mounted, leaving it in place")
            os.rmdir(mount_point)

        scope.register(f"mount point {mount_point}", remove_mount_point,
                       is_released=lambda: not os.path.isdir(mount_point))

        try:
            handle = backend.mount(device, mount_point)
        except OSError as e:
            raise MountError(f"cannot mount {device.node} on {mount_point}: {e}") from e
        mounts.append(handle)
        print(f"  Mounted {device.node} on {mount_point}")

        def unmount():
            if not handle.mounted:
                return
            try:
                backend.unmount(handle)
            except OSError as e:
                raise MountError(f"unmounting {mount_point} failed: {e}") from e

        scope.register(f"mount of {device.node} on {mount_point}", unmount,
                       is_released=lambda: not handle.mounted)

        print(f"  Copying files from {source}...")
        copy_tree(source, mount_point)
        items = list_tree(mount_point)
        print_listing(items)
        verify_staged(mount_point, manifest)

        # Check what actually reached the volume, not just the mount point
        unmount()
        backend.verify(device, manifest)
        print(f"  Verified: {', '.join(rel for rel, _ in manifest.required())}")

    return items
