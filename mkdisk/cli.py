# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""
mkdisk - Create a bootable FAT32 disk image from a build output directory

Usage:
    python3 -m mkdisk --source target/disk --output target/disk.img [--image-size 64]
    python3 -m mkdisk --inspect target/disk.img
"""

import argparse
import os
import signal
import sys

from .backend import get_backend
from .build import build_image
from .config import (DEFAULT_BOOT_DIR, DEFAULT_DISK_SIGNATURE, DEFAULT_KERNEL, DEFAULT_LABEL,
                     DEFAULT_OUTPUT, DEFAULT_SOURCE, DEFAULT_VOLUME_ID, MIB, ImageSpec,
                     StagingManifest)
from .errors import MkdiskError
from .fat32 import Fat32Volume
from .image_backend import ImageBackend
from .mbr import read_partition_table


def _int_auto(text):
    return int(text, 0)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="mkdisk", description="Create a bootable FAT32 disk image")
    parser.add_argument("--source", default=DEFAULT_SOURCE,
                        help=f"Build output directory to stage (default: {DEFAULT_SOURCE})")
    parser.add_argument("--output", default=DEFAULT_OUTPUT,
                        help=f"Output disk image path (default: {DEFAULT_OUTPUT})")
    parser.add_argument("--image-size", type=int, default=64, help="Image size in MiB (default: 64)")
    parser.add_argument("--partition-start", type=int, default=1,
                        help="Start of the boot partition in MiB (default: 1)")
    parser.add_argument("--label", default=DEFAULT_LABEL, help="FAT32 volume label")
    parser.add_argument("--volume-id", type=_int_auto, default=DEFAULT_VOLUME_ID,
                        help="FAT32 volume serial number")
    parser.add_argument("--disk-signature", type=_int_auto, default=DEFAULT_DISK_SIGNATURE,
                        help="MBR disk signature")
    parser.add_argument("--backend", choices=["image", "host"], default="image",
                        help="image: write everything in-process (default); "
                             "host: use parted, losetup, mkfs.fat and mount")
    parser.add_argument("--no-sudo", action="store_true",
                        help="Host backend: run device tools without sudo")
    parser.add_argument("--boot-dir", default=DEFAULT_BOOT_DIR,
                        help=f"Required boot configuration directory (default: {DEFAULT_BOOT_DIR})")
    parser.add_argument("--kernel", default=DEFAULT_KERNEL,
                        help=f"Required kernel image (default: {DEFAULT_KERNEL})")
    parser.add_argument("--bootloader", default=None,
                        help="Required bootloader binary, e.g. boot/limine/limine-bios.sys")
    parser.add_argument("--require", action="append", default=[], metavar="PATH",
                        help="Additional required path in the source tree (repeatable)")
    parser.add_argument("--no-clobber", action="store_true",
                        help="Refuse to overwrite an existing output image")
    parser.add_argument("--limine-install", default=None, metavar="TOOL",
                        help="Run 'TOOL bios-install IMAGE' before publishing the image")
    parser.add_argument("--inspect", default=None, metavar="IMAGE",
                        help="Print the partition table and files of an existing image and exit")
    return parser.parse_args(argv)


def inspect_image(path):
    """Print the partition table and the FAT32 file listing of an image."""
    size = os.path.getsize(path)
    print(f"Image: {path} ({size // MIB} MiB)")
    entries = read_partition_table(path)
    for entry in entries:
        print(f"  MBR: partition {entry.index}: type=0x{entry.type:02X} "
              f"boot={'yes' if entry.bootable else 'no'} "
              f"LBA {entry.start_lba}-{entry.start_lba + entry.sector_count - 1} ({entry.size // MIB} MiB)")

    backend = ImageBackend()
    device = backend.bind(path, None)
    try:
        volume = Fat32Volume.open(device)
        layout = volume.layout
        print(f"  FAT32: label '{volume.label}', volume id {volume.volume_id:08X}, "
              f"{layout.cluster_count} clusters of {layout.cluster_size} bytes, "
              f"{volume.free_clusters()} free")
        for rel, entry in volume.walk():
            if entry.is_dir:
                print(f"    Dir:  {rel}/")
            else:
                print(f"    File: {rel} ({entry.size} bytes)")
    finally:
        backend.detach(device)


def _terminate(signum, frame):
    # Same teardown path as Ctrl-C
    raise KeyboardInterrupt


def main(argv=None):
    args = parse_args(argv)
    previous = signal.signal(signal.SIGTERM, _terminate)
    try:
        return _run(args)
    finally:
        signal.signal(signal.SIGTERM, previous)


def _run(args):
    try:
        if args.inspect:
            inspect_image(args.inspect)
            return 0

        spec = ImageSpec(
            path=args.output,
            size=args.image_size * MIB,
            partition_offset=args.partition_start * MIB,
            label=args.label,
            volume_id=args.volume_id,
            disk_signature=args.disk_signature,
        )
        manifest = StagingManifest(boot_dir=args.boot_dir, kernel=args.kernel,
                                   bootloader=args.bootloader, extra=args.require)
        options = {"sudo": False} if args.backend == "host" and args.no_sudo else {}
        backend = get_backend(args.backend, **options)

        build_image(spec, args.source, manifest, backend,
                    bootloader_tool=args.limine_install, clobber=not args.no_clobber)
    except MkdiskError as e:
        print(f"ERROR: {e.describe()}", file=sys.stderr)
        for leak in e.leaks:
            print(f"ERROR: {leak.describe()}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("ERROR: interrupted", file=sys.stderr)
        return 130

    print(f"Image location: {spec.path}")
    if not args.limine_install:
        print("")
        print("Install the Limine boot sector with:")
        print(f"  limine bios-install {spec.path}")
    print("")
    print("To test with QEMU:")
    print(f"  qemu-system-x86_64 -m 512M -drive format=raw,file={spec.path} -serial stdio")
    return 0
