# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

import os

import pytest

from conftest import FIXED_MTIME, BytesDevice, make_tree
from mkdisk.config import MIB, SECTOR_SIZE
from mkdisk.errors import CopyError, FormatError, MountError
from mkdisk.fat32 import (ROOT_CLUSTER, Fat32Layout, Fat32Volume, fat_timestamp, fat_to_mtime,
                          generate_short_name, lfn_checksum, lfn_entry_count, make_83_name,
                          needs_lfn, sectors_per_cluster_for)

SMALL_VOLUME = 33 * MIB     # smallest partition size that still holds 65525 clusters


@pytest.fixture
def device():
    return BytesDevice(SMALL_VOLUME)


@pytest.fixture
def volume(device):
    return Fat32Volume.format(device, "TESTVOL", 0xCAFEF00D, hidden_sectors=2048)


@pytest.mark.parametrize("sectors, spc", [
    (66600, 1),
    (129024, 1),
    (532480, 1),
    (532481, 8),
    (16777216, 8),
    (20000000, 16),
    (40000000, 32),
    (80000000, 64),
])
def test_cluster_size_policy(sectors, spc):
    assert sectors_per_cluster_for(sectors) == spc


def test_too_small_for_fat32():
    with pytest.raises(FormatError, match="below the FAT32 minimum"):
        sectors_per_cluster_for(32 * MIB // SECTOR_SIZE)


def test_layout_of_63_mib_partition():
    layout = Fat32Layout(129024)

    assert layout.sectors_per_cluster == 1
    assert layout.fat_size == 1000
    assert layout.first_data_sector == 32 + 2 * 1000
    assert layout.cluster_count == 126992


def test_forced_cluster_size_can_be_too_large():
    with pytest.raises(FormatError, match="clusters is below"):
        Fat32Layout(129024, sectors_per_cluster=8)


def test_timestamps_are_utc_with_two_second_resolution():
    t, d = fat_timestamp(FIXED_MTIME + 1)
    assert fat_to_mtime(t, d) == FIXED_MTIME
    assert d >> 9 == 2023 - 1980


def test_timestamps_clamp_to_fat_range():
    assert fat_to_mtime(*fat_timestamp(0)) == fat_to_mtime(0, (1 << 5) | 1)
    t, d = fat_timestamp(2 ** 33)
    assert 1980 + (d >> 9) == 2107


@pytest.mark.parametrize("name, expected", [
    ("KERNEL.BIN", False),
    ("README", False),
    ("kernel.bin", True),
    ("limine.cfg", True),
    ("BOOTX64.EFI", False),
    ("LONGFILENAME.TXT", True),
    (".hidden", True),
    ("A.B.C", True),
    ("MY FILE", True),
])
def test_needs_lfn(name, expected):
    assert needs_lfn(name) is expected


def test_short_names_get_unique_tails():
    taken = set()
    first = generate_short_name("longfilename1.txt", taken)
    taken.add(first)
    second = generate_short_name("longfilename2.txt", taken)

    assert first == b"LONGFI~1TXT"
    assert second == b"LONGFI~2TXT"


def test_lfn_helpers():
    assert make_83_name("KERNEL.BIN") == b"KERNEL  BIN"
    assert lfn_entry_count("KERNEL.BIN") == 0
    assert lfn_entry_count("limine.cfg") == 1
    assert lfn_entry_count("a" * 27) == 3
    assert lfn_checksum(b"KERNEL  BIN") == 0xDA


def test_formatted_volume_is_empty(device, volume):
    assert list(volume.walk()) == []

    reopened = Fat32Volume.open(device)
    assert reopened.label == "TESTVOL"
    assert reopened.volume_id == 0xCAFEF00D
    assert reopened.layout.cluster_count == volume.layout.cluster_count
    # Only the root directory cluster is in use
    assert reopened.free_clusters() == volume.layout.cluster_count - 1

    boot = device.read(0, SECTOR_SIZE)
    assert boot[510:512] == b"\x55\xaa"
    assert device.read(6 * SECTOR_SIZE, SECTOR_SIZE) == boot


def test_store_and_read_back_tree(tmp_path, device, volume):
    files = {
        "kernel.bin": b"\x7fELF" + bytes(3000),
        "README": b"plain 8.3 name\n",
        "boot/limine/limine.cfg": b"timeout: 0\n",
        "boot/limine/limine-bios.sys": os.urandom(70000),
        "EFI/BOOT/BOOTX64.EFI": b"MZ",
        "docs/a rather long name with spaces.txt": b"x" * 513,
        "empty": b"",
    }
    src = make_tree(str(tmp_path / "src"), files)

    volume.store_tree(src)
    volume.flush()

    reopened = Fat32Volume.open(device)
    paths = {rel for rel, _ in reopened.walk()}
    assert paths == {"boot", "boot/limine", "docs", "EFI", "EFI/BOOT", *files}

    for rel, content in files.items():
        entry = reopened.lookup(rel)
        assert entry is not None and not entry.is_dir
        assert entry.size == len(content)
        assert entry.mtime == FIXED_MTIME
        assert reopened.read_file(entry) == content

    assert reopened.lookup("BOOT/LIMINE").is_dir
    assert reopened.lookup("boot/missing") is None
    assert reopened.lookup("kernel.bin/child") is None


def test_walk_yields_parents_first(tmp_path, device, volume):
    src = make_tree(str(tmp_path / "src"), {"a/b/c/deep.txt": b"1", "z.txt": b"2"})
    volume.store_tree(src)

    order = [rel for rel, _ in volume.walk()]
    for rel in order:
        if "/" in rel:
            assert order.index(rel.rsplit("/", 1)[0]) < order.index(rel)


def test_large_directory_spans_clusters(tmp_path, device, volume):
    # 40 long names need well over one 512-byte cluster of entries
    files = {f"subdir/file number {i:03d}.data": bytes([i]) for i in range(40)}
    src = make_tree(str(tmp_path / "src"), files)
    volume.store_tree(src)

    subdir = volume.lookup("subdir")
    assert len(volume.chain(subdir.cluster)) > 1
    assert sorted(e.name for e in volume.read_dir(subdir.cluster)) == sorted(
        name.split("/", 1)[1] for name in files)


def test_extract_restores_files_and_mtimes(tmp_path, device, volume):
    src = make_tree(str(tmp_path / "src"), {"boot/limine/limine.cfg": b"cfg", "kernel.bin": b"k"})
    volume.store_tree(src)

    out = tmp_path / "out"
    out.mkdir()
    volume.extract(str(out))

    assert (out / "boot" / "limine" / "limine.cfg").read_bytes() == b"cfg"
    assert (out / "kernel.bin").read_bytes() == b"k"
    assert os.stat(out / "kernel.bin").st_mtime == FIXED_MTIME
    assert os.stat(out / "boot").st_mtime == FIXED_MTIME


def test_case_insensitive_collision(tmp_path, volume):
    src = make_tree(str(tmp_path / "src"), {"Kernel.bin": b"1", "KERNEL.BIN": b"2"})
    with pytest.raises(CopyError, match="case-insensitive"):
        volume.store_tree(src)


def test_volume_full(volume):
    with pytest.raises(CopyError, match="full"):
        volume._allocate(volume.layout.cluster_count)


def test_open_rejects_unformatted_device():
    with pytest.raises(MountError, match="no FAT32"):
        Fat32Volume.open(BytesDevice(MIB))


def test_reset_empties_volume(tmp_path, device, volume):
    src = make_tree(str(tmp_path / "src"), {"kernel.bin": b"x" * 10000})
    volume.store_tree(src)
    volume.reset()
    volume.flush()

    reopened = Fat32Volume.open(device)
    assert list(reopened.walk()) == []
    assert reopened.free_clusters() == reopened.layout.cluster_count - 1


def _short_names(volume, cluster=ROOT_CLUSTER):
    names = []
    data = volume._read_clusters(volume.chain(cluster))
    for pos in range(0, len(data), 32):
        raw = data[pos:pos + 32]
        if raw[0] == 0x00:
            break
        if raw[11] in (0x0F, 0x08) or raw[0] == 0xE5:
            continue
        names.append(bytes(raw[0:11]))
    return names


def test_alias_avoids_later_plain_name(tmp_path, volume):
    # LONGFI~1.TXT sorts after LONGFILENAME.TXT but owns the first alias
    src = make_tree(str(tmp_path / "src"), {"LONGFILENAME.TXT": b"long", "LONGFI~1.TXT": b"plain"})
    volume.store_tree(src)

    names = _short_names(volume)
    assert sorted(names) == [b"LONGFI~1TXT", b"LONGFI~2TXT"]
    assert volume.read_file(volume.lookup("LONGFI~1.TXT")) == b"plain"
    assert volume.read_file(volume.lookup("LONGFILENAME.TXT")) == b"long"


@pytest.mark.parametrize("name", ["NOTES.", "trailing ", "A:B", "q?.txt", 'say"hi"', "a|b", "tab\there"])
def test_names_fat_cannot_hold(tmp_path, volume, name):
    src = make_tree(str(tmp_path / "src"), {name: b"x"})
    with pytest.raises(CopyError, match="not allowed on FAT"):
        volume.store_tree(src)

