import logging
import struct
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional, Set, Tuple

from Boot import FatBootSector
from Cluster import FIRST_DATA_CLUSTER, ClusterReader, Geometry, RegionReader
from Disk import DiskImage
from FAT import AllocationTable, resolve_chain
from Slack import HiddenDataScanner

logger = logging.getLogger(__name__)

# --- Constants for Directory Entry Parsing ---

DIR_ENTRY_SIZE = 32 # Each directory entry is 32 bytes

# Byte offsets within the 32-byte directory entry
OFS_NAME = 0x00           # 8 bytes
OFS_EXT = 0x08            # 3 bytes
OFS_ATTRIBUTES = 0x0B     # 1 byte
OFS_CREATED_TENTHS = 0x0D # 1 byte
OFS_TIME_CREATED = 0x0E   # 2 bytes
OFS_DATE_CREATED = 0x10   # 2 bytes
OFS_DATE_ACCESSED = 0x12  # 2 bytes
OFS_MSB_CLUSTER = 0x14    # 2 bytes (FAT32 only, zero on FAT12/16)
OFS_TIME_MOD = 0x16       # 2 bytes
OFS_DATE_MOD = 0x18       # 2 bytes
OFS_LSB_CLUSTER = 0x1A    # 2 bytes
OFS_SIZE = 0x1C           # 4 bytes

# name, attr, tenths, ctime, cdate, adate, cluster hi, wtime, wdate, cluster lo, size
DIR_ENTRY_FORMAT = '<11sBxBHHHHHHHI'

# Allocation status (first byte of the name)
STATUS_END = 0x00
STATUS_UNALLOCATED = 0xE5
STATUS_KANJI_E5 = 0x05 # first character really is 0xE5

ATTR_READ_ONLY = 0x01
ATTR_HIDDEN = 0x02
ATTR_SYSTEM = 0x04
ATTR_VOLUME_LABEL = 0x08
ATTR_DIRECTORY = 0x10
ATTR_ARCHIVE = 0x20
ATTR_LONG_NAME = 0x0F

ATTR_NAMES = (
    (ATTR_READ_ONLY, 'READONLY'),
    (ATTR_HIDDEN, 'HIDDEN'),
    (ATTR_SYSTEM, 'SYSTEM'),
    (ATTR_VOLUME_LABEL, 'VOLUME'),
    (ATTR_DIRECTORY, 'DIRECTORY'),
    (ATTR_ARCHIVE, 'ARCHIVE'),
)

DOT_NAME = b'.          '
DOTDOT_NAME = b'..         '

DEFAULT_MAX_DEPTH = 32


# --- Field decoding ---

def decode_fat_name(name_bytes: bytes, ext_bytes: bytes) -> str:
    """Decodes the 8.3 FAT filename, handling the 0x05 escape and padding."""
    if name_bytes[:1] == bytes([STATUS_KANJI_E5]):
        name_bytes = b'\xE5' + name_bytes[1:]

    name = name_bytes.rstrip(b' ').decode('cp437', errors='replace')
    ext = ext_bytes.rstrip(b' ').decode('cp437', errors='replace')

    if ext:
        return f"{name}.{ext}"
    return name


def describe_attributes(attributes: int) -> str:
    if attributes == ATTR_LONG_NAME:
        return 'LFN'
    names = [name for flag, name in ATTR_NAMES if attributes & flag]
    return '|'.join(names) if names else 'FILE'


def decode_fat_datetime(date: int, time: int = 0, tenths: int = 0) -> Optional[datetime]:
    """
    Converts packed FAT date/time fields to a datetime.

    Date: bits 15-9 year since 1980, 8-5 month, 4-0 day.
    Time: bits 15-11 hours, 10-5 minutes, 4-0 seconds / 2.
    Tenths: 10 ms units (0-199) added to the time.
    Returns None if the fields do not form a valid date.
    """
    try:
        value = datetime(((date >> 9) & 0x7F) + 1980, (date >> 5) & 0xF, date & 0x1F,
                         (time >> 11) & 0x1F, (time >> 5) & 0x3F, (time & 0x1F) * 2)
    except ValueError:
        return None
    return value + timedelta(milliseconds=tenths * 10)


@dataclass
class DirectoryEntry:
    name: str
    raw_name: bytes
    attributes: int
    created_time_tenths: int = 0
    created_time: int = 0
    created_date: int = 0
    accessed_date: int = 0
    written_time: int = 0
    written_date: int = 0
    cluster: int = 0
    file_size: int = 0
    offset: int = 0
    last_cluster: Optional[int] = None
    is_directory: bool = False

    # Arena links (indices into DirectoryTree.nodes)
    index: Optional[int] = None
    parent: Optional[int] = None
    first_child: Optional[int] = None
    next_sibling: Optional[int] = None
    prev_sibling: Optional[int] = None

    @property
    def is_volume_label(self) -> bool:
        return bool(self.attributes & ATTR_VOLUME_LABEL) and not self.is_directory

    @property
    def created(self) -> Optional[datetime]:
        return decode_fat_datetime(self.created_date, self.created_time, self.created_time_tenths)

    @property
    def accessed(self) -> Optional[datetime]:
        return decode_fat_datetime(self.accessed_date)

    @property
    def written(self) -> Optional[datetime]:
        return decode_fat_datetime(self.written_date, self.written_time)


def parse_dir_entry(entry_data: bytes, offset: int = 0) -> DirectoryEntry:
    """Decodes one 32-byte short file name record."""
    (raw_name, attributes, tenths, ctime, cdate, adate,
     cluster_hi, wtime, wdate, cluster_lo, file_size) = struct.unpack(DIR_ENTRY_FORMAT, entry_data)

    return DirectoryEntry(
        name=decode_fat_name(raw_name[0:8], raw_name[8:11]),
        raw_name=raw_name,
        attributes=attributes,
        created_time_tenths=tenths,
        created_time=ctime,
        created_date=cdate,
        accessed_date=adate,
        written_time=wtime,
        written_date=wdate,
        cluster=cluster_lo | (cluster_hi << 16),
        file_size=file_size,
        offset=offset,
        is_directory=bool(attributes & ATTR_DIRECTORY),
    )


def is_skipped_entry(entry_data: bytes) -> bool:
    """Blank, unallocated and self/parent ('.', '..') records add nothing to the tree."""
    status = entry_data[OFS_NAME]
    if status == STATUS_END or status == STATUS_UNALLOCATED:
        return True
    return entry_data[OFS_NAME:OFS_NAME + 11] in (DOT_NAME, DOTDOT_NAME)


# --- Directory tree ---

class DirectoryTree:
    """
    Arena of directory entries. Node 0 is the synthetic root; nodes refer to
    each other by index and a child is always allocated after its parent.
    """

    def __init__(self, root: DirectoryEntry):
        self.nodes: List[DirectoryEntry] = []
        self._last_child: Dict[int, int] = {}
        root.is_directory = True
        root.index = 0
        self.nodes.append(root)

    @property
    def root(self) -> DirectoryEntry:
        return self.nodes[0]

    def __len__(self):
        return len(self.nodes)

    def __getitem__(self, index: int) -> DirectoryEntry:
        return self.nodes[index]

    def __iter__(self):
        return iter(self.nodes)

    def add(self, entry: DirectoryEntry, parent: int) -> int:
        index = len(self.nodes)
        entry.index = index
        entry.parent = parent

        previous = self._last_child.get(parent)
        if previous is None:
            self.nodes[parent].first_child = index
        else:
            self.nodes[previous].next_sibling = index
            entry.prev_sibling = previous
        self._last_child[parent] = index

        self.nodes.append(entry)
        return index

    def children(self, index: int = 0) -> Iterator[DirectoryEntry]:
        child = self.nodes[index].first_child
        while child is not None:
            yield self.nodes[child]
            child = self.nodes[child].next_sibling

    def walk(self, index: int = 0, depth: int = 0) -> Iterator[Tuple[int, DirectoryEntry]]:
        """Pre-order traversal yielding (depth, entry); the root itself is not yielded."""
        for child in self.children(index):
            yield depth, child
            if child.is_directory:
                yield from self.walk(child.index, depth + 1)

    def path(self, index: int) -> str:
        parts = []
        node = self.nodes[index]
        while node.parent is not None:
            parts.append(node.name)
            node = self.nodes[node.parent]
        return '/' + '/'.join(reversed(parts))

    def find(self, path: str) -> Optional[DirectoryEntry]:
        node = self.root
        for part in [p for p in path.split('/') if p]:
            node = next((c for c in self.children(node.index) if c.name.upper() == part.upper()), None)
            if node is None:
                return None
        return node


# --- Recursive directory parsing ---

@dataclass
class DirectoryWalker:
    image: DiskImage
    geometry: Geometry
    table: AllocationTable
    scanner: Optional[HiddenDataScanner] = None
    max_depth: int = DEFAULT_MAX_DEPTH
    cycles: List[int] = field(default_factory=list)
    # First clusters of every directory entered during the walk
    visited: Set[int] = field(default_factory=set)

    def walk_lfn_entries(self, reader, position: int) -> Optional[int]:
        """
        Skips Long File Name slots starting at `position`.

        :return: Position of the Short File Name record that owns them, or
                 None if the directory ends first.
        """
        while position + DIR_ENTRY_SIZE <= reader.size:
            attributes = reader.read(position + OFS_ATTRIBUTES, 1)
            if not attributes:
                return None
            if attributes[0] != ATTR_LONG_NAME:
                return position
            position += DIR_ENTRY_SIZE
        return None

    def walk_directory(self, tree: DirectoryTree, parent: int, reader, depth: int, ancestors: frozenset):
        """
        Reads every entry of one directory into the tree, recursing into
        subdirectories before continuing with the next sibling.
        """
        position = 0
        while position < reader.size:
            sfn_position = self.walk_lfn_entries(reader, position)
            if sfn_position is None:
                break
            entry_data = reader.read(sfn_position, DIR_ENTRY_SIZE)
            position = sfn_position + DIR_ENTRY_SIZE
            if len(entry_data) < DIR_ENTRY_SIZE or is_skipped_entry(entry_data):
                continue

            entry = parse_dir_entry(entry_data, reader.offset_of(sfn_position))
            chain = resolve_chain(self.table, entry.cluster)
            entry.last_cluster = chain.last_cluster
            index = tree.add(entry, parent)

            if entry.is_directory:
                self._descend(tree, index, chain, depth, ancestors)
            elif self.scanner is not None:
                self.scanner.scan_file_slack(self.geometry, tree.path(index), entry.file_size, entry.last_cluster)

    def _descend(self, tree: DirectoryTree, index: int, chain, depth: int, ancestors: frozenset):
        entry = tree[index]
        if entry.cluster < FIRST_DATA_CLUSTER:
            logger.warning("Directory %s has invalid first cluster %d; not descending.",
                           tree.path(index), entry.cluster)
            return
        if chain.length == 0:
            logger.warning("Directory %s starts at cluster %d, outside the volume; not descending.",
                           tree.path(index), entry.cluster)
            return
        if entry.cluster in ancestors:
            logger.warning("Directory %s reuses ancestor cluster %d; not descending.",
                           tree.path(index), entry.cluster)
            self.cycles.append(index)
            return
        if entry.cluster in self.visited:
            logger.warning("Directory %s reuses cluster %d of a directory already read; not descending.",
                           tree.path(index), entry.cluster)
            self.cycles.append(index)
            return
        if depth >= self.max_depth:
            logger.warning("Directory %s exceeds the maximum depth of %d; not descending.",
                           tree.path(index), self.max_depth)
            return

        logger.debug("Descending into %s (cluster %d, %d clusters)", tree.path(index), entry.cluster, chain.length)
        self.visited.add(entry.cluster)
        reader = ClusterReader(self.image, self.geometry, chain)
        self.walk_directory(tree, index, reader, depth + 1, ancestors | {entry.cluster})


def walk_file_system(image: DiskImage, boot: FatBootSector, geometry: Geometry, table: AllocationTable,
                     scanner: Optional[HiddenDataScanner] = None,
                     max_depth: int = DEFAULT_MAX_DEPTH) -> DirectoryTree:
    """
    Recursively reads a FAT16 or FAT32 directory structure into memory,
    starting from the root directory.
    """
    walker = DirectoryWalker(image, geometry, table, scanner, max_depth)

    if boot.is_fat32:
        chain = resolve_chain(table, boot.root_dir_cluster)
        root = DirectoryEntry(name='', raw_name=b'', attributes=ATTR_DIRECTORY,
                              cluster=boot.root_dir_cluster, last_cluster=chain.last_cluster)
        reader = ClusterReader(image, geometry, chain)
        ancestors = frozenset([boot.root_dir_cluster])
        walker.visited.add(boot.root_dir_cluster)
    else:
        root = DirectoryEntry(name='', raw_name=b'', attributes=ATTR_DIRECTORY)
        reader = RegionReader(image, geometry.root_dir_offset, geometry.root_dir_bytes)
        ancestors = frozenset()

    tree = DirectoryTree(root)
    walker.walk_directory(tree, 0, reader, 0, ancestors)
    logger.info("Read %d directory entries.", len(tree) - 1)
    return tree
