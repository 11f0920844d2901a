# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

import os

from mkdisk.cli import main, parse_args
from mkdisk.config import DEFAULT_BOOT_DIR, DEFAULT_KERNEL, MIB


def test_defaults():
    args = parse_args([])
    assert args.source == os.path.join("target", "disk")
    assert args.output == os.path.join("target", "disk.img")
    assert args.image_size == 64
    assert args.partition_start == 1
    assert args.backend == "image"
    assert (args.boot_dir, args.kernel) == (DEFAULT_BOOT_DIR, DEFAULT_KERNEL)


def test_build_and_inspect(source_tree, out_dir, capsys):
    output = str(out_dir / "disk.img")
    assert main(["--source", source_tree, "--output", output, "--volume-id", "0xDEADBEEF"]) == 0

    out = capsys.readouterr().out
    assert f"Disk image with FAT32 filesystem created: {output} (64 MiB)" in out
    assert f"limine bios-install {output}" in out
    assert "qemu-system-x86_64" in out
    assert os.path.getsize(output) == 64 * MIB

    assert main(["--inspect", output]) == 0
    out = capsys.readouterr().out
    assert "MBR: partition 1: type=0x0C boot=yes LBA 2048-131071 (63 MiB)" in out
    assert "volume id DEADBEEF" in out
    assert "    File: boot/limine/limine.cfg (" in out
    assert "    File: kernel.bin (5004 bytes)" in out


def test_missing_artifact_exit_code(tmp_path, out_dir, capsys):
    source = tmp_path / "disk"
    (source / "boot" / "limine").mkdir(parents=True)
    output = str(out_dir / "disk.img")

    assert main(["--source", str(source), "--output", output]) == 1

    err = capsys.readouterr().err
    assert err.startswith("ERROR: precondition: ")
    assert "kernel.bin" in err
    assert not os.path.exists(output)


def test_too_small_image(source_tree, out_dir, capsys):
    output = str(out_dir / "disk.img")
    assert main(["--source", source_tree, "--output", output, "--image-size", "16"]) == 1
    assert "ERROR: format: " in capsys.readouterr().err
    assert os.listdir(out_dir) == []


def test_no_clobber(source_tree, out_dir, capsys):
    output = out_dir / "disk.img"
    output.write_bytes(b"old")
    assert main(["--source", source_tree, "--output", str(output), "--no-clobber"]) == 1
    assert "ERROR: configure: " in capsys.readouterr().err
    assert output.read_bytes() == b"old"


def test_inspect_missing_image(tmp_path, capsys):
    assert main(["--inspect", str(tmp_path / "missing.img")]) == 1
    assert capsys.readouterr().err.startswith("ERROR: ")
