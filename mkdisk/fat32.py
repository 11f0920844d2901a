# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""
fat32.py - FAT32 volume writer and reader

Volume layout (sectors relative to the partition start):
    0           Boot sector (BPB)
    1           FSInfo
    6, 7        Backup boot sector and FSInfo
    32          FAT #1, followed by FAT #2
    data        Cluster 2 onwards; cluster 2 holds the root directory

A volume is written in one pass: reset() returns it to the freshly formatted
state and store_tree() lays out a host directory tree with contiguous cluster
runs. The reader side (walk, read_file, extract) only understands what a
regular FAT32 driver produces: 8.3 entries, VFAT long names and the NT
lowercase flags.

The device passed in is anything with read(offset, length), write(offset, data)
and a size attribute, offsets relative to the partition start.
"""

import calendar
import os
import struct
import time
from dataclasses import dataclass

from .config import SECTOR_SIZE
from .errors import CopyError, FormatError, MountError

RESERVED_SECTORS = 32
NUM_FATS = 2
FSINFO_SECTOR = 1
BACKUP_BOOT_SECTOR = 6
ROOT_CLUSTER = 2

FAT32_MIN_CLUSTERS = 65525
FAT32_MAX_CLUSTERS = 0x0FFFFFF5
# Smallest partition the cluster size table accepts (about 32.5 MiB)
FAT32_MIN_SECTORS = 66600

FAT_ENTRY_MASK = 0x0FFFFFFF
FAT_EOC = 0x0FFFFFFF
FAT_MEDIA = 0x0FFFFFF8
MEDIA_DESCRIPTOR = 0xF8

FSINFO_LEAD_SIG = 0x41615252
FSINFO_STRUC_SIG = 0x61417272

ATTR_READ_ONLY = 0x01
ATTR_HIDDEN = 0x02
ATTR_SYSTEM = 0x04
ATTR_VOLUME_ID = 0x08
ATTR_DIRECTORY = 0x10
ATTR_ARCHIVE = 0x20
ATTR_LONG_NAME = 0x0F

# NT reserved byte: 8.3 name stored uppercase but displayed lowercase
NT_LOWER_BASE = 0x08
NT_LOWER_EXT = 0x10

DIR_ENTRY_SIZE = 32
LFN_CHARS_PER_ENTRY = 13
LFN_MAX_LENGTH = 255
FAT_ILLEGAL_CHARS = '"*/:<>?\\|'
MAX_FILE_SIZE = 0xFFFFFFFF

# (partition sectors upper bound, sectors per cluster); larger volumes get 64
CLUSTER_SIZE_POLICY = [
    (532480, 1),        # up to 260 MiB: 512 B clusters
    (16777216, 8),      # up to 8 GiB: 4 KiB
    (33554432, 16),     # up to 16 GiB: 8 KiB
    (67108864, 32),     # up to 32 GiB: 16 KiB
]

ZERO_CHUNK = 1024 * 1024


def sectors_per_cluster_for(total_sectors: int) -> int:
    """Pick the cluster size for a FAT32 volume from its capacity."""
    if total_sectors < FAT32_MIN_SECTORS:
        raise FormatError(f"partition of {total_sectors * SECTOR_SIZE // 1024} KiB is below the FAT32 "
                          f"minimum of {FAT32_MIN_SECTORS * SECTOR_SIZE // 1024} KiB")
    for limit, spc in CLUSTER_SIZE_POLICY:
        if total_sectors <= limit:
            return spc
    return 64


# =====================================================================
# Timestamps
# =====================================================================

def fat_timestamp(mtime):
    """Convert a POSIX mtime to FAT (time, date) words, UTC, clamped to 1980..2107."""
    tm = time.gmtime(int(mtime))
    if tm.tm_year < 1980:
        return 0, (1 << 5) | 1
    if tm.tm_year > 2107:
        return (23 << 11) | (59 << 5) | 29, (127 << 9) | (12 << 5) | 31
    t = (tm.tm_hour << 11) | (tm.tm_min << 5) | (min(tm.tm_sec, 59) // 2)
    d = ((tm.tm_year - 1980) << 9) | (tm.tm_mon << 5) | tm.tm_mday
    return t, d


def fat_to_mtime(t, d):
    if d == 0:
        return 0
    year = 1980 + (d >> 9)
    month = max(1, (d >> 5) & 0x0F)
    day = max(1, d & 0x1F)
    return calendar.timegm((year, month, day, t >> 11, (t >> 5) & 0x3F, (t & 0x1F) * 2, 0, 0, 0))


# =====================================================================
# VFAT long filename helpers
# =====================================================================

def lfn_checksum(name83: bytes) -> int:
    """Compute the VFAT LFN checksum from an 8.3 name (11 bytes)."""
    s = 0
    for b in name83:
        s = (((s & 1) << 7) + (s >> 1) + b) & 0xFF
    return s


def needs_lfn(filename: str) -> bool:
    """Check if a filename needs LFN entries (doesn't fit an uppercase 8.3 name)."""
    if len(filename) > 12 or len(filename) == 0:
        return True
    if filename.startswith('.'):
        return True
    if filename.count('.') > 1:
        return True
    if '.' in filename:
        base, ext = filename.rsplit('.', 1)
    else:
        base, ext = filename, ''
    if len(base) > 8 or len(ext) > 3 or not base:
        return True
    for c in filename:
        if c in ' +,;=[]' or ord(c) > 0x7E or ord(c) < 0x20:
            return True
    return filename != filename.upper()


def check_fat_name(filename: str):
    """Raise CopyError for a name a FAT directory cannot hold unchanged."""
    bad = sorted({c for c in filename if c in FAT_ILLEGAL_CHARS or ord(c) < 0x20})
    if bad:
        raise CopyError(f"file name not allowed on FAT: {filename!r} (contains {''.join(bad)!r})")
    if filename.endswith(('.', ' ')):
        raise CopyError(f"file name not allowed on FAT: {filename!r} (trailing dot or space is dropped)")
    if len(_utf16_units(filename)) > LFN_MAX_LENGTH:
        raise CopyError(f"file name too long for FAT: {filename}")


def make_83_name(filename: str) -> bytes:
    """Convert a filename to FAT 8.3 format (11 bytes, space-padded, uppercase)."""
    name = filename.upper()
    if '.' in name:
        base, ext = name.rsplit('.', 1)
    else:
        base, ext = name, ''
    return (base[:8].ljust(8) + ext[:3].ljust(3)).encode('ascii')


def _short_chars(text):
    out = []
    for c in text:
        if c in ' .+,;=[]':
            continue
        out.append(c if 0x20 < ord(c) < 0x7F else '_')
    return ''.join(out)


def generate_short_name(filename: str, taken) -> bytes:
    """Generate an 8.3 alias with a numeric tail that is unique within `taken`."""
    name = filename.upper()
    if '.' in name.lstrip('.'):
        base, ext = name.rsplit('.', 1)
    else:
        base, ext = name, ''
    base = _short_chars(base)[:6] or '_'
    ext = _short_chars(ext)[:3].ljust(3)

    counter = 1
    while True:
        tail = f'~{counter}'
        candidate = (base[:8 - len(tail)] + tail).ljust(8) + ext
        encoded = candidate.encode('ascii')
        if encoded not in taken:
            return encoded
        counter += 1


def _utf16_units(filename):
    raw = filename.encode('utf-16-le', 'surrogatepass')
    return list(struct.unpack(f'<{len(raw) // 2}H', raw))


def lfn_entry_count(filename: str) -> int:
    if not needs_lfn(filename):
        return 0
    return (len(_utf16_units(filename)) + LFN_CHARS_PER_ENTRY - 1) // LFN_CHARS_PER_ENTRY


def make_lfn_entries(filename: str, name83: bytes) -> list:
    """Create LFN directory entries. Returns list of 32-byte entries in disk order."""
    chk = lfn_checksum(name83)
    units = _utf16_units(filename)
    num_entries = (len(units) + LFN_CHARS_PER_ENTRY - 1) // LFN_CHARS_PER_ENTRY

    entries = []
    for seq in range(1, num_entries + 1):
        entry = bytearray(DIR_ENTRY_SIZE)
        entry[0] = seq | (0x40 if seq == num_entries else 0)
        entry[11] = ATTR_LONG_NAME
        entry[13] = chk

        start = (seq - 1) * LFN_CHARS_PER_ENTRY
        chars = []
        for j in range(LFN_CHARS_PER_ENTRY):
            idx = start + j
            if idx < len(units):
                chars.append(units[idx])
            elif idx == len(units):
                chars.append(0x0000)
            else:
                chars.append(0xFFFF)

        struct.pack_into('<5H', entry, 1, *chars[0:5])
        struct.pack_into('<6H', entry, 14, *chars[5:11])
        struct.pack_into('<2H', entry, 28, *chars[11:13])
        entries.append(bytes(entry))

    # Last entry (0x40) comes first on disk
    entries.reverse()
    return entries


def _lfn_chars(entry):
    units = list(struct.unpack_from('<5H', entry, 1))
    units += struct.unpack_from('<6H', entry, 14)
    units += struct.unpack_from('<2H', entry, 28)
    return units


def make_dir_entry(name83, attr, cluster, size, mtime, nt_flags=0) -> bytes:
    entry = bytearray(DIR_ENTRY_SIZE)
    entry[0:11] = name83
    entry[11] = attr
    entry[12] = nt_flags
    t, d = fat_timestamp(mtime)
    struct.pack_into('<HHH', entry, 14, t, d, d)    # create time, create date, access date
    struct.pack_into('<H', entry, 20, (cluster >> 16) & 0xFFFF)
    struct.pack_into('<HH', entry, 22, t, d)        # write time, write date
    struct.pack_into('<H', entry, 26, cluster & 0xFFFF)
    struct.pack_into('<I', entry, 28, size)
    return bytes(entry)


def _decode_83(name83, nt_flags):
    base = name83[:8].decode('ascii', 'replace').rstrip()
    ext = name83[8:].decode('ascii', 'replace').rstrip()
    if base.startswith('\x05'):
        base = '\xe5' + base[1:]
    if nt_flags & NT_LOWER_BASE:
        base = base.lower()
    if nt_flags & NT_LOWER_EXT:
        ext = ext.lower()
    return f"{base}.{ext}" if ext else base


@dataclass
class DirEntry:
    name: str
    is_dir: bool
    cluster: int
    size: int
    mtime: int


# =====================================================================
# Layout
# =====================================================================

class Fat32Layout:
    """On-disk geometry of a FAT32 volume."""

    def __init__(self, total_sectors, sectors_per_cluster=None, fat_size=None,
                 reserved_sectors=RESERVED_SECTORS, num_fats=NUM_FATS):
        if sectors_per_cluster is None:
            sectors_per_cluster = sectors_per_cluster_for(total_sectors)

        self.total_sectors = total_sectors
        self.sectors_per_cluster = sectors_per_cluster
        self.reserved_sectors = reserved_sectors
        self.num_fats = num_fats

        if fat_size is None:
            # FAT size formula from the Microsoft FAT specification
            tmp1 = total_sectors - reserved_sectors
            tmp2 = (256 * sectors_per_cluster + num_fats) // 2
            fat_size = (tmp1 + tmp2 - 1) // tmp2
        self.fat_size = fat_size

        self.first_data_sector = reserved_sectors + num_fats * fat_size
        if self.first_data_sector >= total_sectors:
            raise FormatError(f"{total_sectors} sectors leave no room for FAT32 data clusters")
        self.cluster_count = (total_sectors - self.first_data_sector) // sectors_per_cluster

        if self.cluster_count < FAT32_MIN_CLUSTERS:
            raise FormatError(f"{self.cluster_count} clusters is below the FAT32 minimum of {FAT32_MIN_CLUSTERS}")
        if self.cluster_count > FAT32_MAX_CLUSTERS:
            raise FormatError(f"{self.cluster_count} clusters exceeds the FAT32 maximum")
        if (self.cluster_count + 2) * 4 > fat_size * SECTOR_SIZE:
            raise FormatError("FAT is too small for the cluster count")

    @property
    def cluster_size(self) -> int:
        return self.sectors_per_cluster * SECTOR_SIZE

    @property
    def fat_offset(self) -> int:
        return self.reserved_sectors * SECTOR_SIZE


# =====================================================================
# Volume
# =====================================================================

class Fat32Volume:
    """A FAT32 filesystem on a block device."""

    def __init__(self, device, layout, label, volume_id):
        self.device = device
        self.layout = layout
        self.label = label
        self.volume_id = volume_id
        self.fat = []
        self.next_free = ROOT_CLUSTER + 1

    # -- formatting ---------------------------------------------------

    @classmethod
    def format(cls, device, label="NO NAME", volume_id=0, hidden_sectors=0, sectors_per_cluster=None):
        """Write an empty FAT32 filesystem over the whole device."""
        total_sectors = device.size // SECTOR_SIZE
        layout = Fat32Layout(total_sectors, sectors_per_cluster)
        vol = cls(device, layout, label, volume_id)

        print(f"  FAT32: {layout.cluster_count} clusters, {layout.sectors_per_cluster} sec/cluster, "
              f"FAT size={layout.fat_size} sectors")
        print(f"  FAT32: first_fat={layout.reserved_sectors}, data={layout.first_data_sector}, "
              f"root cluster={ROOT_CLUSTER}")

        vol._zero(0, layout.first_data_sector * SECTOR_SIZE)
        boot = vol._build_boot_sector(hidden_sectors)
        device.write(0, boot)
        device.write(BACKUP_BOOT_SECTOR * SECTOR_SIZE, boot)

        vol.reset()
        vol.flush()
        return vol

    def _zero(self, offset, length):
        end = offset + length
        while offset < end:
            n = min(ZERO_CHUNK, end - offset)
            self.device.write(offset, bytes(n))
            offset += n

    def _label_bytes(self):
        return self.label.upper().encode('ascii', 'replace')[:11].ljust(11)

    def _build_boot_sector(self, hidden_sectors):
        """Build the FAT32 BPB (BIOS Parameter Block)."""
        layout = self.layout
        bpb = bytearray(SECTOR_SIZE)

        bpb[0:3] = b'\xEB\x58\x90'      # jmp short 0x5A; nop
        bpb[3:11] = b'MKDISK  '

        struct.pack_into('<H', bpb, 11, SECTOR_SIZE)
        struct.pack_into('<B', bpb, 13, layout.sectors_per_cluster)
        struct.pack_into('<H', bpb, 14, layout.reserved_sectors)
        struct.pack_into('<B', bpb, 16, layout.num_fats)
        struct.pack_into('<H', bpb, 17, 0)                      # root entry count (0 on FAT32)
        struct.pack_into('<H', bpb, 19, 0)                      # total sectors 16
        struct.pack_into('<B', bpb, 21, MEDIA_DESCRIPTOR)
        struct.pack_into('<H', bpb, 22, 0)                      # FAT size 16
        struct.pack_into('<H', bpb, 24, 63)                     # sectors per track
        struct.pack_into('<H', bpb, 26, 255)                    # number of heads
        struct.pack_into('<I', bpb, 28, hidden_sectors)
        struct.pack_into('<I', bpb, 32, layout.total_sectors)

        # FAT32 extended BPB
        struct.pack_into('<I', bpb, 36, layout.fat_size)
        struct.pack_into('<H', bpb, 40, 0)                      # ext flags: FATs mirrored
        struct.pack_into('<H', bpb, 42, 0)                      # FS version 0.0
        struct.pack_into('<I', bpb, 44, ROOT_CLUSTER)
        struct.pack_into('<H', bpb, 48, FSINFO_SECTOR)
        struct.pack_into('<H', bpb, 50, BACKUP_BOOT_SECTOR)
        struct.pack_into('<B', bpb, 64, 0x80)                   # drive number
        struct.pack_into('<B', bpb, 66, 0x29)                   # extended boot signature
        struct.pack_into('<I', bpb, 67, self.volume_id & 0xFFFFFFFF)
        bpb[71:82] = self._label_bytes()
        bpb[82:90] = b'FAT32   '

        bpb[510] = 0x55
        bpb[511] = 0xAA
        return bpb

    # -- opening ------------------------------------------------------

    @classmethod
    def open(cls, device):
        """Read the BPB and the first FAT of an existing volume."""
        boot = device.read(0, SECTOR_SIZE)
        if boot[510:512] != b'\x55\xAA' or boot[82:90] != b'FAT32   ':
            raise MountError("no FAT32 filesystem found on device")

        bytes_per_sector, spc, reserved, num_fats = struct.unpack_from('<HBHB', boot, 11)
        if bytes_per_sector != SECTOR_SIZE:
            raise MountError(f"unsupported sector size {bytes_per_sector}")
        total_sectors = struct.unpack_from('<I', boot, 32)[0]
        fat_size = struct.unpack_from('<I', boot, 36)[0]
        root_cluster = struct.unpack_from('<I', boot, 44)[0]
        volume_id = struct.unpack_from('<I', boot, 67)[0]
        label = boot[71:82].decode('ascii', 'replace').rstrip()
        if root_cluster != ROOT_CLUSTER:
            raise MountError(f"unsupported root directory cluster {root_cluster}")

        try:
            layout = Fat32Layout(total_sectors, spc, fat_size, reserved, num_fats)
        except FormatError as e:
            raise MountError(f"corrupt FAT32 geometry: {e}") from e

        vol = cls(device, layout, label, volume_id)
        count = layout.cluster_count + 2
        raw = device.read(layout.fat_offset, count * 4)
        vol.fat = [v & FAT_ENTRY_MASK for v in struct.unpack_from(f'<{count}I', raw)]
        vol.next_free = vol._scan_free(ROOT_CLUSTER + 1)
        return vol

    # -- FAT and clusters ---------------------------------------------

    def reset(self):
        """Return the volume to the freshly formatted state (empty root)."""
        self.fat = [0] * (self.layout.cluster_count + 2)
        self.fat[0] = FAT_MEDIA
        self.fat[1] = FAT_EOC
        self.fat[ROOT_CLUSTER] = FAT_EOC
        self.next_free = ROOT_CLUSTER + 1
        self._write_clusters([ROOT_CLUSTER], b'')

    def _scan_free(self, start):
        for cluster in range(start, len(self.fat)):
            if self.fat[cluster] == 0:
                return cluster
        return len(self.fat)

    def free_clusters(self) -> int:
        return sum(1 for v in self.fat[2:] if v == 0)

    def _allocate(self, count):
        """Allocate a chain of `count` clusters and return it as a list."""
        chain = []
        cluster = self.next_free
        while len(chain) < count:
            cluster = self._scan_free(cluster)
            if cluster >= len(self.fat):
                raise CopyError(f"FAT32 volume is full ({count * self.layout.cluster_size} bytes requested)")
            chain.append(cluster)
            cluster += 1
        for current, nxt in zip(chain, chain[1:]):
            self.fat[current] = nxt
        if chain:
            self.fat[chain[-1]] = FAT_EOC
            self.next_free = chain[-1] + 1
        return chain

    def _extend(self, chain, count):
        extra = self._allocate(count)
        self.fat[chain[-1]] = extra[0]
        return chain + extra

    def chain(self, first):
        """Follow the FAT from `first` and return the cluster list."""
        clusters = []
        cluster = first
        while 2 <= cluster < len(self.fat):
            if len(clusters) > self.layout.cluster_count:
                raise MountError(f"cluster chain starting at {first} loops")
            clusters.append(cluster)
            cluster = self.fat[cluster]
        return clusters

    def _cluster_offset(self, cluster):
        sector = self.layout.first_data_sector + (cluster - 2) * self.layout.sectors_per_cluster
        return sector * SECTOR_SIZE

    @staticmethod
    def _runs(clusters):
        """Group a cluster list into (first, count) runs of consecutive clusters."""
        runs = []
        for cluster in clusters:
            if runs and runs[-1][0] + runs[-1][1] == cluster:
                runs[-1][1] += 1
            else:
                runs.append([cluster, 1])
        return runs

    def _write_clusters(self, clusters, data):
        """Write data over a cluster list, zero-padding to the end of the last cluster."""
        cs = self.layout.cluster_size
        data = bytes(data).ljust(len(clusters) * cs, b'\x00')
        pos = 0
        for first, count in self._runs(clusters):
            length = count * cs
            self.device.write(self._cluster_offset(first), data[pos:pos + length])
            pos += length

    def _read_clusters(self, clusters):
        cs = self.layout.cluster_size
        parts = []
        for first, count in self._runs(clusters):
            parts.append(self.device.read(self._cluster_offset(first), count * cs))
        return b''.join(parts)

    def flush(self):
        """Write both FAT copies and the FSInfo sectors."""
        layout = self.layout
        raw = struct.pack(f'<{len(self.fat)}I', *self.fat)
        for i in range(layout.num_fats):
            self.device.write(layout.fat_offset + i * layout.fat_size * SECTOR_SIZE, raw)

        fsinfo = bytearray(SECTOR_SIZE)
        struct.pack_into('<I', fsinfo, 0, FSINFO_LEAD_SIG)
        struct.pack_into('<I', fsinfo, 484, FSINFO_STRUC_SIG)
        struct.pack_into('<I', fsinfo, 488, self.free_clusters())
        struct.pack_into('<I', fsinfo, 492, self.next_free if self.next_free < len(self.fat) else 0xFFFFFFFF)
        fsinfo[510] = 0x55
        fsinfo[511] = 0xAA
        self.device.write(FSINFO_SECTOR * SECTOR_SIZE, fsinfo)
        self.device.write((BACKUP_BOOT_SECTOR + 1) * SECTOR_SIZE, fsinfo)

    # -- writing a tree -----------------------------------------------

    def _dir_bytes(self, names, is_root):
        # Root holds the volume label, subdirectories hold '.' and '..'
        count = 1 if is_root else 2
        for name in names:
            count += 1 + lfn_entry_count(name)
        return count * DIR_ENTRY_SIZE

    def _clusters_for(self, nbytes):
        cs = self.layout.cluster_size
        return max(1, (nbytes + cs - 1) // cs)

    def store_tree(self, host_root):
        """Write the host directory tree at `host_root` into the (empty) root directory."""
        names = sorted(os.listdir(host_root))
        needed = self._clusters_for(self._dir_bytes(names, True))
        root_chain = self.chain(ROOT_CLUSTER)
        if needed > len(root_chain):
            root_chain = self._extend(root_chain, needed - len(root_chain))
        # The label entry gets the FAT epoch so identical trees give identical volumes
        self._store_dir(host_root, names, root_chain, 0, 0)

    def _store_dir(self, host_dir, names, chain, parent_cluster, dir_mtime):
        is_root = parent_cluster == 0 and chain[0] == ROOT_CLUSTER
        data = bytearray()
        if is_root:
            data += make_dir_entry(self._label_bytes(), ATTR_VOLUME_ID, 0, 0, dir_mtime)
        else:
            data += make_dir_entry(b'.          ', ATTR_DIRECTORY, chain[0], 0, dir_mtime)
            data += make_dir_entry(b'..         ', ATTR_DIRECTORY, parent_cluster, 0, dir_mtime)

        # Plain 8.3 names are fixed, generated aliases must avoid all of them
        taken = {make_83_name(name) for name in names if not needs_lfn(name)}
        folded = {}
        subdirs = []
        for name in names:
            path = os.path.join(host_dir, name)
            key = name.upper()
            if key in folded:
                raise CopyError(f"'{name}' and '{folded[key]}' collide on a case-insensitive FAT volume")
            folded[key] = name
            check_fat_name(name)

            st = os.stat(path)
            if os.path.isdir(path):
                child_names = sorted(os.listdir(path))
                child_chain = self._allocate(self._clusters_for(self._dir_bytes(child_names, False)))
                first, size, attr = child_chain[0], 0, ATTR_DIRECTORY
                subdirs.append((path, child_names, child_chain, st.st_mtime))
            elif os.path.isfile(path):
                if st.st_size > MAX_FILE_SIZE:
                    raise CopyError(f"{path} is larger than the 4 GiB FAT32 file size limit")
                with open(path, 'rb') as f:
                    content = f.read()
                size, attr = len(content), ATTR_ARCHIVE
                first = 0
                if content:
                    clusters = self._allocate(self._clusters_for(size))
                    self._write_clusters(clusters, content)
                    first = clusters[0]
            else:
                raise CopyError(f"unsupported file type: {path}")

            data += self._name_entries(name, taken, attr, first, size, st.st_mtime)

        self._write_clusters(chain, data)

        for path, child_names, child_chain, mtime in subdirs:
            self._store_dir(path, child_names, child_chain, 0 if is_root else chain[0], mtime)

    def _name_entries(self, name, taken, attr, cluster, size, mtime):
        if needs_lfn(name):
            name83 = generate_short_name(name, taken)
            prefix = b''.join(make_lfn_entries(name, name83))
        else:
            name83 = make_83_name(name)
            prefix = b''
        taken.add(name83)
        return prefix + make_dir_entry(name83, attr, cluster, size, mtime)

    # -- reading ------------------------------------------------------

    def read_dir(self, cluster=ROOT_CLUSTER):
        """Return the DirEntry list of a directory, skipping '.', '..' and the label."""
        data = self._read_clusters(self.chain(cluster))
        entries = []
        lfn = {}
        lfn_sum = None
        for pos in range(0, len(data), DIR_ENTRY_SIZE):
            raw = data[pos:pos + DIR_ENTRY_SIZE]
            if raw[0] == 0x00:
                break
            if raw[0] == 0xE5:
                lfn, lfn_sum = {}, None
                continue
            attr = raw[11]
            if attr == ATTR_LONG_NAME:
                lfn[raw[0] & 0x1F] = _lfn_chars(raw)
                lfn_sum = raw[13]
                continue
            if attr & ATTR_VOLUME_ID:
                lfn, lfn_sum = {}, None
                continue

            name83 = bytes(raw[0:11])
            if name83 in (b'.          ', b'..         '):
                lfn, lfn_sum = {}, None
                continue

            name = None
            if lfn and lfn_sum == lfn_checksum(name83):
                units = []
                for seq in sorted(lfn):
                    units.extend(lfn[seq])
                if 0 in units:
                    units = units[:units.index(0)]
                units = [u for u in units if u != 0xFFFF]
                name = struct.pack(f'<{len(units)}H', *units).decode('utf-16-le', 'surrogatepass')
            if not name:
                name = _decode_83(name83, raw[12])
            lfn, lfn_sum = {}, None

            hi, = struct.unpack_from('<H', raw, 20)
            t, d, lo, size = struct.unpack_from('<HHHI', raw, 22)
            entries.append(DirEntry(name, bool(attr & ATTR_DIRECTORY), (hi << 16) | lo, size,
                                    fat_to_mtime(t, d)))
        return entries

    def walk(self):
        """Yield (relative path, DirEntry) for the whole tree, parents before children."""
        pending = [("", ROOT_CLUSTER)]
        while pending:
            prefix, cluster = pending.pop(0)
            for entry in self.read_dir(cluster):
                rel = f"{prefix}{entry.name}"
                yield rel, entry
                if entry.is_dir and entry.cluster >= 2:
                    pending.append((rel + "/", entry.cluster))

    def lookup(self, path):
        """Find the entry for a '/'-separated path (case-insensitive), or None."""
        cluster = ROOT_CLUSTER
        found = None
        for part in [p for p in path.split('/') if p]:
            if found is not None and not found.is_dir:
                return None
            match = [e for e in self.read_dir(cluster) if e.name.upper() == part.upper()]
            if not match:
                return None
            found = match[0]
            cluster = found.cluster
        return found

    def read_file(self, entry) -> bytes:
        if entry.size == 0:
            return b''
        return self._read_clusters(self.chain(entry.cluster))[:entry.size]

    def extract(self, host_root):
        """Materialise the whole volume under `host_root`, keeping mtimes."""
        dirs = []
        for rel, entry in self.walk():
            path = os.path.join(host_root, *rel.split('/'))
            if entry.is_dir:
                os.makedirs(path, exist_ok=True)
                dirs.append((path, entry.mtime))
            else:
                with open(path, 'wb') as f:
                    f.write(self.read_file(entry))
                os.utime(path, (entry.mtime, entry.mtime))
        # Deepest first, so children don't bump their parent's mtime afterwards
        for path, mtime in reversed(dirs):
            os.utime(path, (mtime, mtime))
