import logging
import struct
from dataclasses import dataclass, field
from typing import List

from Cluster import FIRST_DATA_CLUSTER, Geometry
from Disk import DiskImage
from Errors import FatalFormatError
from MBR import FS_FAT12, FS_FAT16, FS_FAT32

logger = logging.getLogger(__name__)

# --- Constants for FAT Boot Sector Parsing ---

BOOT_SECTOR_SIZE = 512
SIGNATURE_OFFSET = 0x1FE

# Common FAT fields (offsets are relative to the start of the partition).
# All fields are read using Little-Endian ('<').

OFS_OEM_NAME = 0x03              # 8 bytes
OFS_SECTOR_SIZE = 0x0B           # Bytes Per Sector (2 bytes)
OFS_CLUSTER_SIZE = 0x0D          # Sectors Per Cluster (1 byte)
OFS_RESERVED_COUNT = 0x0E        # Reserved Sector Count (2 bytes)
OFS_NUM_FATS = 0x10              # Number of FATs (1 byte)
OFS_ROOT_ENTRIES = 0x11          # Max files in Root Directory (2 bytes), 0 on FAT32
OFS_TOTAL_SECTORS_SMALL = 0x13   # 16-bit sector count, 0 if the 32-bit field is used
OFS_MEDIA_TYPE = 0x15            # Media descriptor (1 byte)
OFS_FAT_SIZE = 0x16              # FAT Size in sectors (2 bytes), 0 on FAT32
OFS_SECTORS_PER_TRACK = 0x18     # 2 bytes
OFS_HEADS = 0x1A                 # 2 bytes
OFS_HIDDEN_SECTORS = 0x1C        # Sectors before the partition (4 bytes)
OFS_TOTAL_SECTORS_LARGE = 0x20   # 32-bit sector count (4 bytes)

# FAT12/16 extended BPB
OFS_DRIVE_NUMBER = 0x24          # 1 byte
OFS_EXT_BOOT_SIG = 0x26          # 1 byte
OFS_VOLUME_SERIAL = 0x27         # 4 bytes
OFS_VOLUME_LABEL = 0x2B          # 11 bytes
OFS_FS_TYPE_LABEL = 0x36         # 8 bytes

# FAT32 extended BPB
OFS_FAT32_SIZE = 0x24            # FAT Size in sectors (4 bytes)
OFS_FAT_MODE = 0x28              # Ext flags (2 bytes)
OFS_FAT32_VERSION = 0x2A         # 2 bytes
OFS_ROOT_DIR_CLUSTER = 0x2C      # 4 bytes
OFS_FSINFO_SECTOR = 0x30         # 2 bytes
OFS_BACKUP_BOOT_SECTOR = 0x32    # 2 bytes
OFS_FAT32_DRIVE_NUMBER = 0x40    # 1 byte
OFS_FAT32_EXT_BOOT_SIG = 0x42    # 1 byte
OFS_FAT32_VOLUME_SERIAL = 0x43   # 4 bytes
OFS_FAT32_VOLUME_LABEL = 0x47    # 11 bytes
OFS_FAT32_FS_TYPE_LABEL = 0x52   # 8 bytes

FMT_BYTE = '<B'   # B: unsigned char (1 byte)
FMT_SHORT = '<H'  # H: unsigned short (2 bytes)
FMT_INT = '<I'    # I: unsigned int (4 bytes)

DIR_ENTRY_SIZE = 32

# --- Validation limits ---

VALID_BYTES_PER_SECTOR = (512, 1024, 2048, 4096)
MAX_CLUSTER_BYTES = 32768

MEDIA_REMOVABLE = 0xF0
MEDIA_FIXED = 0xF8
MEDIA_TYPES = {
    MEDIA_FIXED: 'Fixed',
    MEDIA_REMOVABLE: 'Removable',
}

# Cluster count cutovers from Carrier, File System Forensic Analysis, p. 229
FAT12_MAX_CLUSTERS = 4085
FAT16_MAX_CLUSTERS = 65525


@dataclass
class FatBootSector:
    oem_name: str
    bytes_per_sector: int
    sectors_per_cluster: int
    reserved_area_size: int
    number_of_fats: int
    max_files_in_root: int
    sector_count_16b: int
    media_type: int
    fat_size_in_sectors: int
    sectors_per_track: int
    head_number: int
    sectors_before_partition: int
    sector_count_32b: int
    bios_drive_number: int
    extended_boot_sig: int
    volume_serial: int
    volume_label: str
    fs_type_label: str
    fs_signature: int

    fat_type: str = ''

    # Only populated on FAT32
    fat32_size_in_sectors: int = 0
    fat_mode: int = 0
    fat32_version: int = 0
    root_dir_cluster: int = 0
    fsinfo_sector_addr: int = 0
    backup_boot_sector_addr: int = 0
    fat32_bios_drive_number: int = 0
    fat32_extended_boot_sig: int = 0
    fat32_volume_serial: int = 0
    fat32_volume_label: str = ''
    fat32_fs_type_label: str = ''

    warnings: List[str] = field(default_factory=list)

    @property
    def is_fat12(self) -> bool:
        return self.fat_type == FS_FAT12

    @property
    def is_fat16(self) -> bool:
        return self.fat_type == FS_FAT16

    @property
    def is_fat32(self) -> bool:
        return self.fat_type == FS_FAT32

    @property
    def sector_count(self) -> int:
        # The 32-bit field wins when both are populated
        return self.sector_count_32b if self.sector_count_32b else self.sector_count_16b

    @property
    def fat_size_sectors(self) -> int:
        return self.fat32_size_in_sectors if self.is_fat32 else self.fat_size_in_sectors

    @property
    def root_dir_sectors(self) -> int:
        return (self.max_files_in_root * DIR_ENTRY_SIZE + self.bytes_per_sector - 1) // self.bytes_per_sector

    @property
    def cluster_count(self) -> int:
        return count_clusters(self)

    @property
    def max_cluster(self) -> int:
        """Highest cluster number that maps into the data region."""
        return self.cluster_count + FIRST_DATA_CLUSTER - 1

    @property
    def media_description(self) -> str:
        return MEDIA_TYPES.get(self.media_type, 'Unknown')

    @property
    def effective_volume_serial(self) -> int:
        return self.fat32_volume_serial if self.is_fat32 else self.volume_serial

    @property
    def effective_volume_label(self) -> str:
        return self.fat32_volume_label if self.is_fat32 else self.volume_label

    @property
    def effective_fs_type_label(self) -> str:
        return self.fat32_fs_type_label if self.is_fat32 else self.fs_type_label

    def warn(self, message: str):
        self.warnings.append(message)
        logger.warning(message)


def _unpack(boot_data: bytes, fmt: str, offset: int) -> int:
    return struct.unpack_from(fmt, boot_data, offset)[0]


def _text(boot_data: bytes, offset: int, length: int) -> str:
    return boot_data[offset:offset + length].rstrip(b' \x00').decode('ascii', errors='replace')


# --- FAT type classification ---

def count_clusters(boot: FatBootSector) -> int:
    """
    Number of data clusters, per the Carrier formula. The 16-bit FAT size is
    used when set, otherwise the FAT32 one.
    """
    root_dir_sectors = boot.root_dir_sectors
    fat_size = boot.fat_size_in_sectors or boot.fat32_size_in_sectors
    data_sectors = (boot.sector_count
                    - boot.reserved_area_size
                    - (boot.number_of_fats * fat_size)
                    - root_dir_sectors)
    return max(data_sectors, 0) // boot.sectors_per_cluster


def classify_cluster_count(cluster_count: int) -> str:
    if cluster_count < FAT12_MAX_CLUSTERS:
        return FS_FAT12
    if cluster_count < FAT16_MAX_CLUSTERS:
        return FS_FAT16
    return FS_FAT32


def calc_fat_type(boot: FatBootSector) -> str:
    """
    Determines FAT12, FAT16 or FAT32 from the number of data clusters.
    The type is never taken from the fs-type label, which is informational.
    """
    return classify_cluster_count(count_clusters(boot))


# --- Validation ---

def validate_fat_boot_sector(boot: FatBootSector):
    """
    Runs sanity checks on the decoded boot sector. Raises FatalFormatError on
    values that would make every later offset meaningless, and records
    warnings for suspicious but usable values.
    """
    if boot.bytes_per_sector not in VALID_BYTES_PER_SECTOR:
        raise FatalFormatError(
            f"Detected bytes per sector of: {boot.bytes_per_sector} which is invalid. "
            "Must be 512, 1024, 2048, or 4096. The disk image or file system might be corrupted."
        )

    spc = boot.sectors_per_cluster
    if spc == 0 or spc & (spc - 1):
        raise FatalFormatError(
            f"Detected sectors per cluster of: {spc} which is invalid. It must be a power of 2. "
            "The disk image or file system might be corrupted."
        )
    if spc * boot.bytes_per_sector > MAX_CLUSTER_BYTES:
        raise FatalFormatError(
            f"Detected cluster size of: {spc * boot.bytes_per_sector} bytes which is invalid. "
            f"It must not exceed {MAX_CLUSTER_BYTES}. The disk image or file system might be corrupted."
        )

    if boot.number_of_fats < 1:
        raise FatalFormatError("No FATs found. The disk image or file system might be corrupted.")

    if boot.max_files_in_root and not boot.fat_size_in_sectors:
        boot.warn("Conflicting indicators for FAT12/16 and FAT32. "
                  "The disk image or file system might be corrupted, proceed with caution.")

    if boot.media_type not in MEDIA_TYPES:
        boot.warn(f"Media type 0x{boot.media_type:02X} (removable/fixed) could not be detected. "
                  "The disk image or file system might be corrupted, proceed with caution.")

    if boot.sector_count_16b and boot.sector_count_32b:
        boot.warn("Conflicting sector counts (both 16 bit and 32 bit fields contained values). "
                  "Continuing with the 32 bit sector count.")


# --- Decoding ---

def parse_fat_boot_sector(boot_data: bytes) -> FatBootSector:
    """
    Parses the 512 bytes of a FAT boot sector, validates it, classifies the
    FAT type and, for FAT32, decodes the extended fields.
    """
    if len(boot_data) != BOOT_SECTOR_SIZE:
        raise ValueError(f"Boot sector data must be exactly {BOOT_SECTOR_SIZE} bytes.")

    boot = FatBootSector(
        oem_name=_text(boot_data, OFS_OEM_NAME, 8),
        bytes_per_sector=_unpack(boot_data, FMT_SHORT, OFS_SECTOR_SIZE),
        sectors_per_cluster=_unpack(boot_data, FMT_BYTE, OFS_CLUSTER_SIZE),
        reserved_area_size=_unpack(boot_data, FMT_SHORT, OFS_RESERVED_COUNT),
        number_of_fats=_unpack(boot_data, FMT_BYTE, OFS_NUM_FATS),
        max_files_in_root=_unpack(boot_data, FMT_SHORT, OFS_ROOT_ENTRIES),
        sector_count_16b=_unpack(boot_data, FMT_SHORT, OFS_TOTAL_SECTORS_SMALL),
        media_type=_unpack(boot_data, FMT_BYTE, OFS_MEDIA_TYPE),
        fat_size_in_sectors=_unpack(boot_data, FMT_SHORT, OFS_FAT_SIZE),
        sectors_per_track=_unpack(boot_data, FMT_SHORT, OFS_SECTORS_PER_TRACK),
        head_number=_unpack(boot_data, FMT_SHORT, OFS_HEADS),
        sectors_before_partition=_unpack(boot_data, FMT_INT, OFS_HIDDEN_SECTORS),
        sector_count_32b=_unpack(boot_data, FMT_INT, OFS_TOTAL_SECTORS_LARGE),
        bios_drive_number=_unpack(boot_data, FMT_BYTE, OFS_DRIVE_NUMBER),
        extended_boot_sig=_unpack(boot_data, FMT_BYTE, OFS_EXT_BOOT_SIG),
        volume_serial=_unpack(boot_data, FMT_INT, OFS_VOLUME_SERIAL),
        volume_label=_text(boot_data, OFS_VOLUME_LABEL, 11),
        fs_type_label=_text(boot_data, OFS_FS_TYPE_LABEL, 8),
        fs_signature=struct.unpack_from('>H', boot_data, SIGNATURE_OFFSET)[0],
    )

    validate_fat_boot_sector(boot)
    if not boot.fat_size_in_sectors:
        boot.fat32_size_in_sectors = _unpack(boot_data, FMT_INT, OFS_FAT32_SIZE)
    boot.fat_type = calc_fat_type(boot)
    logger.info("Classified volume as %s (%d clusters)", boot.fat_type, boot.cluster_count)

    if boot.is_fat32:
        boot.fat32_size_in_sectors = _unpack(boot_data, FMT_INT, OFS_FAT32_SIZE)
        boot.fat_mode = _unpack(boot_data, FMT_SHORT, OFS_FAT_MODE)
        boot.fat32_version = _unpack(boot_data, FMT_SHORT, OFS_FAT32_VERSION)
        boot.root_dir_cluster = _unpack(boot_data, FMT_INT, OFS_ROOT_DIR_CLUSTER)
        boot.fsinfo_sector_addr = _unpack(boot_data, FMT_SHORT, OFS_FSINFO_SECTOR)
        boot.backup_boot_sector_addr = _unpack(boot_data, FMT_SHORT, OFS_BACKUP_BOOT_SECTOR)
        boot.fat32_bios_drive_number = _unpack(boot_data, FMT_BYTE, OFS_FAT32_DRIVE_NUMBER)
        boot.fat32_extended_boot_sig = _unpack(boot_data, FMT_BYTE, OFS_FAT32_EXT_BOOT_SIG)
        boot.fat32_volume_serial = _unpack(boot_data, FMT_INT, OFS_FAT32_VOLUME_SERIAL)
        boot.fat32_volume_label = _text(boot_data, OFS_FAT32_VOLUME_LABEL, 11)
        boot.fat32_fs_type_label = _text(boot_data, OFS_FAT32_FS_TYPE_LABEL, 8)

    label = boot.effective_fs_type_label.strip().lower()
    if label.startswith('fat1') or label.startswith('fat3'):
        if label != boot.fat_type:
            boot.warn(f"File system label '{boot.effective_fs_type_label}' disagrees with the "
                      f"cluster count classification ({boot.fat_type}).")
    return boot


def read_fat_boot_sector(image: DiskImage, partition_offset: int = 0) -> FatBootSector:
    """
    Reads the boot sector from the disk image at the start of the partition.

    :param image: Open disk image.
    :param partition_offset: Byte offset of the partition (0 for single partition images).
    """
    logger.debug("Reading boot sector at byte offset: %d", partition_offset)
    return parse_fat_boot_sector(image.read(partition_offset, BOOT_SECTOR_SIZE))


def build_geometry(boot: FatBootSector, partition_offset: int = 0) -> Geometry:
    """Computes the volume layout once the boot sector has been classified."""
    bps = boot.bytes_per_sector
    reserved_and_fats = (boot.reserved_area_size * bps) + (boot.fat_size_sectors * bps * boot.number_of_fats)
    root_dir_bytes = 0 if boot.is_fat32 else boot.root_dir_sectors * bps
    return Geometry(
        bytes_per_sector=bps,
        sectors_per_cluster=boot.sectors_per_cluster,
        reserved_and_fats=reserved_and_fats,
        root_dir_bytes=root_dir_bytes,
        partition_offset=partition_offset,
    )
