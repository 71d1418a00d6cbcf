import enum
import logging
import struct
from collections import namedtuple
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from Boot import FatBootSector
from Cluster import FIRST_DATA_CLUSTER, Geometry
from Disk import DiskImage
from Errors import UnsupportedFatTypeError
from MBR import FS_FAT12, FS_FAT16, FS_FAT32

logger = logging.getLogger(__name__)

# --- FAT16 Specific Constants ---

FAT16_ENTRY_SIZE = 2 # 2 bytes per cluster entry
FAT16_EOF = 0xFFF8
FAT16_BAD = 0xFFF7

# --- FAT32 Specific Constants ---

FAT32_ENTRY_SIZE = 4 # 4 bytes (32 bits) per cluster entry
FAT32_MASK = 0x0FFFFFFF # The highest 4 bits are reserved
FAT32_EOF = 0x0FFFFFF8
FAT32_BAD = 0x0FFFFFF7

MAX_DIFF_SAMPLES = 10


class EntryKind(enum.Enum):
    FREE = 'free'
    NEXT = 'next'
    EOF = 'eof'
    BAD = 'bad'


FatEntry = namedtuple('FatEntry', ['kind', 'value'])


class AllocationTable:
    """
    One copy of the FAT decoded into a tuple of entries indexed by cluster.
    Subclasses fix the entry width and the sentinel values.

    The FAT is usually sized in whole sectors and so holds entries past the
    last cluster of the volume. `max_cluster` caps lookups at the last cluster
    that exists in the data region.
    """
    fat_type = ''
    entry_size = 0
    eof = 0
    bad = 0
    mask = 0xFFFFFFFF

    def __init__(self, entries, max_cluster: Optional[int] = None):
        self.entries = tuple(entries)
        self.max_cluster = len(self.entries) - 1 if max_cluster is None else min(max_cluster, len(self.entries) - 1)

    @classmethod
    def from_bytes(cls, fat_data: bytes, max_cluster: Optional[int] = None):
        count = len(fat_data) // cls.entry_size
        fmt = '<%d%s' % (count, 'H' if cls.entry_size == 2 else 'I')
        return cls(struct.unpack_from(fmt, fat_data), max_cluster)

    def __len__(self):
        return len(self.entries)

    def raw(self, cluster: int) -> int:
        return self.entries[cluster]

    def resolve(self, cluster: int) -> Optional[FatEntry]:
        """
        Looks up the successor of `cluster`.

        :return: None if the cluster is outside the volume, else a FatEntry.
        """
        if cluster < 0 or cluster > self.max_cluster:
            return None
        value = self.entries[cluster] & self.mask
        if value == 0:
            return FatEntry(EntryKind.FREE, value)
        if value >= self.eof:
            return FatEntry(EntryKind.EOF, value)
        if value == self.bad:
            return FatEntry(EntryKind.BAD, value)
        return FatEntry(EntryKind.NEXT, value)


class Fat16Table(AllocationTable):
    fat_type = FS_FAT16
    entry_size = FAT16_ENTRY_SIZE
    eof = FAT16_EOF
    bad = FAT16_BAD
    mask = 0xFFFF


class Fat32Table(AllocationTable):
    fat_type = FS_FAT32
    entry_size = FAT32_ENTRY_SIZE
    eof = FAT32_EOF
    bad = FAT32_BAD
    mask = FAT32_MASK


def build_allocation_table(fat_data: bytes, fat_type: str, max_cluster: Optional[int] = None) -> AllocationTable:
    """
    :param max_cluster: Last cluster of the volume (FatBootSector.max_cluster);
                        defaults to the last entry of the FAT.
    """
    if fat_type == FS_FAT32:
        return Fat32Table.from_bytes(fat_data, max_cluster)
    if fat_type == FS_FAT16:
        return Fat16Table.from_bytes(fat_data, max_cluster)
    if fat_type == FS_FAT12:
        # 12-bit entries are packed two per three bytes; chains are not walked for FAT12
        raise UnsupportedFatTypeError("Cluster chain resolution is not supported for FAT12.")
    raise ValueError(f"Unknown FAT type: {fat_type}")


def describe_entry(table: AllocationTable, value: int) -> str:
    """
    Interprets the value of a FAT entry for display.
    """
    masked_value = value & table.mask
    width = table.entry_size * 2

    if masked_value == 0:
        return f"FREE (0x{value:0{width}X})"
    elif masked_value >= table.eof:
        return f"END OF FILE/CHAIN (0x{value:0{width}X})"
    elif masked_value == table.bad:
        return f"BAD CLUSTER (0x{value:0{width}X})"
    else:
        return f"NEXT CLUSTER: {masked_value} (0x{value:0{width}X})"


# --- FAT copies ---

@dataclass
class FatDiff:
    total: int = 0
    samples: List[Tuple[int, int]] = field(default_factory=list)

    @property
    def identical(self) -> bool:
        return self.total == 0


@dataclass
class FatCopies:
    fat1: bytes
    fat2: Optional[bytes]
    fat1_offset: int
    fat2_offset: Optional[int]
    diff: Optional[FatDiff]


def diff_fats(fat1: bytes, fat2: bytes, fat1_base: int = 0, fat2_base: Optional[int] = None,
              limit: int = MAX_DIFF_SAMPLES) -> FatDiff:
    """
    Byte-wise comparison of two FAT copies.

    :param fat1_base: Absolute offset of FAT1, added to every reported offset.
    :param fat2_base: Absolute offset of FAT2; defaults to directly after FAT1.
    :param limit: Number of differing offsets to keep as samples.
    """
    if fat2_base is None:
        fat2_base = fat1_base + len(fat1)

    result = FatDiff()
    if fat1 == fat2:
        return result

    for i, (a, b) in enumerate(zip(fat1, fat2)):
        if a != b:
            result.total += 1
            if len(result.samples) < limit:
                result.samples.append((fat1_base + i, fat2_base + i))

    # Bytes present in only one copy count as discrepancies too
    tail = abs(len(fat1) - len(fat2))
    for i in range(min(len(fat1), len(fat2)), min(len(fat1), len(fat2)) + tail):
        result.total += 1
        if len(result.samples) < limit:
            result.samples.append((fat1_base + i, fat2_base + i))
    return result


def load_fats(image: DiskImage, boot: FatBootSector, geometry: Geometry) -> FatCopies:
    """
    Copies the primary and secondary FATs into memory and diffs them.
    The primary copy is authoritative for chain walking.
    """
    bps = geometry.bytes_per_sector
    fat_size_in_bytes = boot.fat_size_sectors * bps
    fat1_offset = geometry.partition_offset + boot.reserved_area_size * bps

    fat1 = image.read(fat1_offset, fat_size_in_bytes)
    if boot.number_of_fats < 2:
        logger.info("Only one FAT present; skipping FAT1/FAT2 comparison.")
        return FatCopies(fat1, None, fat1_offset, None, None)

    fat2_offset = fat1_offset + fat_size_in_bytes
    fat2 = image.read(fat2_offset, fat_size_in_bytes)

    diff = diff_fats(fat1, fat2, fat1_offset, fat2_offset)
    for fat1_at, fat2_at in diff.samples:
        logger.warning("Detected discrepancy between FAT1 and FAT2. FAT1: 0x%X, FAT2: 0x%X", fat1_at, fat2_at)
    if diff.total > len(diff.samples):
        logger.warning("More than %d discrepancies between FAT1 and FAT2 detected; "
                       "individual discrepancies are no longer reported.", MAX_DIFF_SAMPLES)
    if diff.total:
        logger.warning("Total # of discrepancies identified between FAT1 and FAT2: %d", diff.total)

    return FatCopies(fat1, fat2, fat1_offset, fat2_offset, diff)


# --- FAT trace logic ---

@dataclass(frozen=True)
class ClusterChain:
    start: int
    clusters: Tuple[int, ...]
    terminated_by: str

    @property
    def length(self) -> int:
        return len(self.clusters)

    @property
    def last_cluster(self) -> Optional[int]:
        return self.clusters[-1] if self.clusters else None

    def __iter__(self):
        return iter(self.clusters)

    def __len__(self):
        return len(self.clusters)


def resolve_chain(table: AllocationTable, start_cluster: int) -> ClusterChain:
    """
    Traces the cluster chain for a given starting cluster.

    Every visited cluster is appended in order until an EOF entry is read.
    Bad, free and out-of-range entries and revisited clusters end the chain
    early, so the walk always terminates.
    """
    if start_cluster < FIRST_DATA_CLUSTER:
        return ClusterChain(start_cluster, (), 'empty')

    chain = []
    seen = set()
    current_cluster = start_cluster

    while True:
        if current_cluster in seen:
            logger.warning("Cluster chain starting at %d loops back to cluster %d.", start_cluster, current_cluster)
            terminated_by = 'cycle'
            break

        entry = table.resolve(current_cluster)
        if entry is None:
            logger.warning("Cluster chain starting at %d points outside the FAT (cluster %d).",
                           start_cluster, current_cluster)
            terminated_by = 'out_of_range'
            break

        chain.append(current_cluster)
        seen.add(current_cluster)

        if entry.kind is EntryKind.EOF:
            terminated_by = 'eof'
            break
        if entry.kind is EntryKind.NEXT and entry.value >= FIRST_DATA_CLUSTER:
            current_cluster = entry.value
            continue

        if entry.kind is EntryKind.BAD:
            terminated_by = 'bad'
        elif entry.kind is EntryKind.FREE:
            terminated_by = 'free'
        else:
            terminated_by = 'out_of_range'
        logger.warning("Cluster chain starting at %d ends on a %s entry (0x%X) at cluster %d.",
                       start_cluster, terminated_by, entry.value, current_cluster)
        break

    return ClusterChain(start_cluster, tuple(chain), terminated_by)
