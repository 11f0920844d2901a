# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""
mbr.py - Legacy MBR partition table

Layout of sector 0:
    0..439      Boot code (left zeroed; installed later by the bootloader tool)
    440..443    Disk signature
    446..509    Four 16-byte partition entries
    510..511    Boot signature 0x55AA
"""

import struct
from dataclasses import dataclass

from .config import MIB, SECTOR_SIZE
from .errors import PartitionError

MBR_DISK_SIGNATURE_OFFSET = 440
MBR_PARTITION_TABLE_OFFSET = 446
MBR_PARTITION_ENTRY_SIZE = 16
MBR_PARTITION_COUNT = 4

PART_TYPE_EMPTY = 0x00
PART_TYPE_FAT32_LBA = 0x0C
BOOT_FLAG_ACTIVE = 0x80

# Classic translation geometry used for the CHS fields
CHS_HEADS = 255
CHS_SECTORS = 63
MAX_LBA = 0xFFFFFFFF


@dataclass
class PartitionEntry:
    index: int
    bootable: bool
    type: int
    start_lba: int
    sector_count: int

    @property
    def offset(self) -> int:
        return self.start_lba * SECTOR_SIZE

    @property
    def size(self) -> int:
        return self.sector_count * SECTOR_SIZE


def lba_to_chs(lba: int) -> bytes:
    """Encode an LBA as the 3-byte CHS tuple, saturating at 1023/254/63."""
    cylinder = lba // (CHS_HEADS * CHS_SECTORS)
    if cylinder > 1023:
        return b'\xFE\xFF\xFF'
    head = (lba // CHS_SECTORS) % CHS_HEADS
    sector = (lba % CHS_SECTORS) + 1
    return bytes([head, ((cylinder >> 2) & 0xC0) | sector, cylinder & 0xFF])


def check_geometry(spec):
    """Validate that the single boot partition fits the image."""
    if spec.size % SECTOR_SIZE != 0:
        raise PartitionError(f"image size {spec.size} is not a multiple of the sector size")
    if spec.partition_offset <= 0 or spec.partition_offset % MIB != 0:
        raise PartitionError(f"partition start {spec.partition_offset} is not aligned to a 1 MiB boundary")
    if spec.partition_offset >= spec.size:
        raise PartitionError(f"partition start at {spec.partition_offset // MIB} MiB leaves no room "
                             f"in a {spec.size // MIB} MiB image")
    if spec.total_sectors - 1 > MAX_LBA:
        raise PartitionError(f"{spec.size // MIB} MiB exceeds the 2 TiB addressable by an MBR")


def build_mbr(spec) -> bytearray:
    """Build sector 0 with one bootable FAT32 partition spanning to the end of the device."""
    check_geometry(spec)

    start = spec.partition_start_lba
    count = spec.partition_sectors
    last = start + count - 1

    mbr = bytearray(SECTOR_SIZE)
    struct.pack_into('<I', mbr, MBR_DISK_SIGNATURE_OFFSET, spec.disk_signature & 0xFFFFFFFF)

    off = MBR_PARTITION_TABLE_OFFSET
    mbr[off] = BOOT_FLAG_ACTIVE
    mbr[off + 1:off + 4] = lba_to_chs(start)
    mbr[off + 4] = PART_TYPE_FAT32_LBA
    mbr[off + 5:off + 8] = lba_to_chs(last)
    struct.pack_into('<I', mbr, off + 8, start)
    struct.pack_into('<I', mbr, off + 12, count)

    mbr[510] = 0x55
    mbr[511] = 0xAA
    return mbr


def write_mbr(path, spec):
    """Write the partition table into the first sector of the backing file.

    Nothing past sector 0 is read or written.
    """
    mbr = build_mbr(spec)
    try:
        with open(path, "r+b") as f:
            f.seek(0)
            f.write(mbr)
    except OSError as e:
        raise PartitionError(f"cannot write partition table to '{path}': {e.strerror or e}") from e

    entry = parse_mbr(mbr)[0]
    print(f"  MBR: partition 1: type=0x{entry.type:02X} boot={'yes' if entry.bootable else 'no'} "
          f"LBA {entry.start_lba}-{entry.start_lba + entry.sector_count - 1} "
          f"({entry.size // MIB} MiB)")


def parse_mbr(sector) -> list:
    """Decode the used partition entries of an MBR sector."""
    if len(sector) < SECTOR_SIZE or sector[510] != 0x55 or sector[511] != 0xAA:
        raise PartitionError("no MBR boot signature found")

    entries = []
    for i in range(MBR_PARTITION_COUNT):
        off = MBR_PARTITION_TABLE_OFFSET + i * MBR_PARTITION_ENTRY_SIZE
        ptype = sector[off + 4]
        if ptype == PART_TYPE_EMPTY:
            continue
        start, count = struct.unpack_from('<II', sector, off + 8)
        entries.append(PartitionEntry(i + 1, sector[off] == BOOT_FLAG_ACTIVE, ptype, start, count))
    return entries


def read_partition_table(path) -> list:
    with open(path, "rb") as f:
        sector = f.read(SECTOR_SIZE)
    return parse_mbr(sector)
