import logging
import struct
from dataclasses import dataclass
from typing import Tuple

from Disk import DiskImage
from Errors import FatalFormatError, FileSystemMismatchError

logger = logging.getLogger(__name__)

# --- MBR Constants and Definitions ---
MBR_SIZE = 512
PARTITION_TABLE_OFFSET = 0x1BE  # 446 in decimal
PARTITION_ENTRY_SIZE = 16
PARTITION_ENTRY_COUNT = 4
SIGNATURE_OFFSET = 0x1FE        # 510 in decimal
SIGNATURE = b'\x55\xAA'

# Format string for a single 16-byte MBR Partition Entry:
# < : little-endian
# B  : 1 byte (Boot Indicator)
# 3s : 3-byte string (CHS Start, unused)
# B  : 1 byte (Type ID)
# 3s : 3-byte string (CHS End, unused)
# I  : 4 bytes (LBA Start Address)
# I  : 4 bytes (Sector Count)
PARTITION_ENTRY_FORMAT = '<B3sB3sII'

# --- File system jump signatures (first 3 bytes of a boot sector) ---
FS_SIGNATURE_OFFSET = 0
FS_SIGNATURE_SIZE = 3
NTFS_SIG = b'\xEB\x52\x90'
FAT32_SIG = b'\xEB\x58\x90'
FAT16_SIG = b'\xEB\x3C\x90'
FAT12_SIG = b'\xEB\x3F\x90'

FS_FAT12 = 'fat12'
FS_FAT16 = 'fat16'
FS_FAT32 = 'fat32'
FS_NTFS = 'ntfs'
FS_RAW = 'raw'
FS_TYPES = (FS_FAT12, FS_FAT16, FS_FAT32, FS_NTFS, FS_RAW)
FAT_TYPES = (FS_FAT12, FS_FAT16, FS_FAT32)

FS_SIGNATURES = {
    NTFS_SIG: FS_NTFS,
    FAT32_SIG: FS_FAT32,
    FAT16_SIG: FS_FAT16,
    FAT12_SIG: FS_FAT12,
}

EXTENDED_TYPES = (0x05, 0x0F, 0x85)

PARTITION_TYPES = {
    0x00: 'EMPTY',
    0x01: 'FAT12',
    0x02: 'XENIX ROOT',
    0x03: 'XENIX USR',
    0x04: 'FAT16 (CHS)',
    0x05: 'EXTENDED (CHS)',
    0x06: 'FAT16B (CHS)',
    0x07: 'NTFS',
    0x08: 'IBM AIX',
    0x09: 'IBM AIX',
    0x0A: 'IBM OS/2',
    0x0B: 'FAT32 (CHS)',
    0x0C: 'FAT32 (LBA)',
    0x0E: 'FAT16 (LBA)',
    0x0F: 'EXTENDED (LBA)',
    0x10: 'Hidden IBM OS/2',
    0x11: 'Hidden NTFS',
    0x14: 'Hidden FAT16',
    0x16: 'Hidden FAT16',
    0x1B: 'Hidden FAT32',
    0x1C: 'Hidden FAT32',
    0x1E: 'Hidden FAT16',
    0x2A: 'MBR Dynamic',
    0x82: 'Linux Swap',
    0x83: 'Linux',
    0x84: 'Hibernation',
    0x85: 'EXTENDED (Linux)',
    0x86: 'NTFS Vol Set',
    0x87: 'NTFS Vol Set',
    0xA0: 'Hibernation',
    0xA1: 'Hibernation',
    0xA5: 'FreeBSD',
    0xA6: 'OpenBSD',
    0xA8: 'MacOS X',
    0xA9: 'NetBSD',
    0xAB: 'MacOS X Boot',
}


@dataclass(frozen=True)
class PartitionEntry:
    index: int
    boot_indicator: bool
    partition_type: int
    starting_sector: int
    sector_count: int

    @property
    def end_sector(self) -> int:
        return self.starting_sector + self.sector_count

    @property
    def is_empty(self) -> bool:
        return self.partition_type == 0x00 and self.sector_count == 0

    @property
    def is_extended(self) -> bool:
        return self.partition_type in EXTENDED_TYPES

    @property
    def type_description(self) -> str:
        return PARTITION_TYPES.get(self.partition_type, '????')


@dataclass(frozen=True)
class MbrTable:
    entries: Tuple[PartitionEntry, ...]
    signature_valid: bool

    @property
    def has_extended(self) -> bool:
        return any(e.is_extended for e in self.entries)

    def used_entries(self):
        """Non-empty entries ordered by starting sector."""
        return sorted((e for e in self.entries if not e.is_empty), key=lambda e: e.starting_sector)


# --- Core Functions ---

def detect_file_system(sector: bytes) -> str:
    """
    Maps the 3-byte jump signature at offset 0 to a file system type.
    Anything unrecognised is assumed to be a full disk image with an MBR.
    """
    signature = sector[FS_SIGNATURE_OFFSET:FS_SIGNATURE_OFFSET + FS_SIGNATURE_SIZE]
    return FS_SIGNATURES.get(signature, FS_RAW)


def verify_disk_image(image: DiskImage, declared_fs: str) -> str:
    """
    Checks the 55 AA signature and the file system signature of the image.

    :param image: Open disk image.
    :param declared_fs: File system type the user expects (fat12/fat16/fat32/ntfs/raw).
    :return: The detected file system type, which equals declared_fs.
    """
    sector = image.read_sector(0)

    signature = sector[SIGNATURE_OFFSET:SIGNATURE_OFFSET + 2]
    if signature != SIGNATURE:
        raise FatalFormatError(
            f"{image.file_path} does not appear to be a valid partition or MBR disk image "
            f"(signature {signature.hex().upper()} instead of 55AA)."
        )

    detected = detect_file_system(sector)
    logger.info("Detected file system signature: %s", detected)
    if detected != declared_fs.lower():
        raise FileSystemMismatchError(declared_fs, detected)
    return detected


def parse_mbr(mbr_data: bytes) -> MbrTable:
    """
    Parses the 512 bytes of MBR data and extracts all four partition slots.
    """
    if len(mbr_data) != MBR_SIZE:
        raise ValueError(f"MBR data must be exactly {MBR_SIZE} bytes.")

    signature = mbr_data[SIGNATURE_OFFSET:SIGNATURE_OFFSET + 2]
    if signature != SIGNATURE:
        raise FatalFormatError(f"MBR signature is INVALID ({signature.hex().upper()} instead of 55AA).")

    entries = []
    for i in range(PARTITION_ENTRY_COUNT):
        offset = PARTITION_TABLE_OFFSET + i * PARTITION_ENTRY_SIZE
        entry_data = mbr_data[offset:offset + PARTITION_ENTRY_SIZE]

        (flag, _chs_start, type_id, _chs_end, start_lba, size_sectors) = \
            struct.unpack(PARTITION_ENTRY_FORMAT, entry_data)

        entries.append(PartitionEntry(
            index=i,
            boot_indicator=flag != 0,
            partition_type=type_id,
            starting_sector=start_lba,
            sector_count=size_sectors,
        ))

    table = MbrTable(entries=tuple(entries), signature_valid=True)

    # Extended partitions are flagged only; the EBR chain is not followed.
    for entry in table.entries:
        if entry.is_extended:
            logger.info("Extended partition found in slot %d (type 0x%02X); EBR chain not traversed.",
                        entry.index, entry.partition_type)
    return table


def read_mbr(image: DiskImage) -> MbrTable:
    """Reads and parses the MBR at the start of the image."""
    return parse_mbr(image.read_sector(0))
