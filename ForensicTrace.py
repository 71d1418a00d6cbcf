import argparse
import logging
import sys
from dataclasses import dataclass, field
from typing import List, Optional

from Boot import FatBootSector, build_geometry, read_fat_boot_sector
from Cluster import Geometry
from Directory import DEFAULT_MAX_DEPTH, DirectoryTree, describe_attributes, walk_file_system
from Disk import DiskImage
from Errors import ForensicError, UnsupportedFatTypeError
from FAT import AllocationTable, FatCopies, build_allocation_table, describe_entry, load_fats
from MBR import FAT_TYPES, FS_NTFS, FS_RAW, FS_TYPES, MbrTable, read_mbr, verify_disk_image
from Slack import HiddenDataScanner

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

FAT_TABLE_ROW = 8 # entries per row of the verbose FAT dump


@dataclass
class InspectOptions:
    image_path: str
    fs_type: str
    verbose: bool = False
    scan_hidden: bool = False
    max_depth: int = DEFAULT_MAX_DEPTH


@dataclass
class InspectionResult:
    image_path: str
    fs_type: str
    mbr: Optional[MbrTable] = None
    boot: Optional[FatBootSector] = None
    geometry: Optional[Geometry] = None
    fats: Optional[FatCopies] = None
    table: Optional[AllocationTable] = None
    tree: Optional[DirectoryTree] = None
    scanner: Optional[HiddenDataScanner] = None
    notes: List[str] = field(default_factory=list)

    @property
    def hidden_data_found(self) -> bool:
        return self.scanner is not None and self.scanner.found


# --- Pipeline ---

def inspect_image(options: InspectOptions) -> InspectionResult:
    """
    Runs the whole read-only pass over an image: signature check, MBR or
    boot sector decoding, FAT loading and diffing, directory walking and the
    optional hidden data scan.
    """
    with DiskImage(options.image_path) as image:
        fs_type = verify_disk_image(image, options.fs_type)
        result = InspectionResult(options.image_path, fs_type)
        scanner = HiddenDataScanner(image) if options.scan_hidden else None
        result.scanner = scanner

        if fs_type == FS_RAW:
            result.mbr = read_mbr(image)
            if result.mbr.has_extended:
                result.notes.append("Extended partition detected; logical partitions were not traversed.")
            if scanner is not None:
                scanner.scan_partition_gaps(result.mbr)

        elif fs_type == FS_NTFS:
            result.notes.append("NTFS detected; NTFS structures are not decoded.")

        elif fs_type in FAT_TYPES:
            boot = read_fat_boot_sector(image, 0)
            result.boot = boot
            if boot.fat_type != fs_type:
                note = (f"Boot sector signature suggests {fs_type} but the cluster count "
                        f"classifies the volume as {boot.fat_type}.")
                logger.warning(note)
                result.notes.append(note)
            result.geometry = build_geometry(boot, 0)
            result.fats = load_fats(image, boot, result.geometry)

            try:
                result.table = build_allocation_table(result.fats.fat1, boot.fat_type, boot.max_cluster)
            except UnsupportedFatTypeError as e:
                result.notes.append(str(e))
            else:
                result.tree = walk_file_system(image, boot, result.geometry, result.table,
                                               scanner, options.max_depth)
    return result


# --- Report rendering ---

def print_mbr_info(mbr: MbrTable):
    print("\n" + "=" * 80)
    print("         MBR PARSING RESULTS")
    print("=" * 80)
    print(f"{'ENTRY#':<8} {'BOOT':<4} {'START':>12} {'END':>12} {'BLOCKS':>12}   {'ID':<4}   {'TYPE':<25}")
    for p in mbr.entries:
        print(f"{p.index:<8} {'Y' if p.boot_indicator else 'N':<4} {p.starting_sector:>12} "
              f"{p.end_sector:>12} {p.sector_count:>12}   0x{p.partition_type:02x}   {p.type_description:<25}")
    print("=" * 80)


def print_fat_boot_sector_info(boot: FatBootSector, geometry: Geometry):
    print("\nFAT File System Information\n")
    print(f"File System Type: {boot.fat_type.upper()}")
    print(f"Media Type: {boot.media_description}")
    print(f"OEM Name: {boot.oem_name}")
    print(f"Volume Serial: 0x{boot.effective_volume_serial:x}")
    print(f"Volume Label: {boot.effective_volume_label}")
    print(f"File System Label: {boot.effective_fs_type_label}")
    print(f"Bytes per sector: {boot.bytes_per_sector}")
    print(f"Sectors per cluster: {boot.sectors_per_cluster}")
    print(f"Size of Reserved Area (in sectors): {boot.reserved_area_size}")
    print(f"Number of FATs: {boot.number_of_fats}")
    print(f"Number of sectors: {boot.sector_count}")
    print(f"Sectors before start of partition: {boot.sectors_before_partition}")
    print(f"FAT size in sectors: {boot.fat_size_sectors}")
    if boot.is_fat32:
        print(f"Root Dir Cluster: {boot.root_dir_cluster}")
    else:
        print(f"Maximum number of files in Root Dir: {boot.max_files_in_root}")
    print(f"Data Region Starts At: 0x{geometry.data_region_offset:X}")
    for warning in boot.warnings:
        print(f"Warning! {warning}")


def print_fat_diff(fats: FatCopies):
    if fats.diff is None:
        return
    if fats.diff.identical:
        print("\nFAT1 and FAT2 are identical.")
        return
    for fat1_at, fat2_at in fats.diff.samples:
        print(f"Detected discrepancy between FAT1 and FAT2 at the following offsets. "
              f"FAT1: 0x{fat1_at:x}, FAT2: 0x{fat2_at:x}")
    print(f"Total # of discrepancies identified between FAT1 and FAT2: {fats.diff.total}")


def print_full_fat_table(table: AllocationTable):
    """
    Prints FAT 1 eight entries per row, collapsing runs of all-zero rows.
    """
    width = table.entry_size * 2
    print("\n" + "=" * 70)
    print(f"             FAT 1 ({table.fat_type.upper()})")
    print("=" * 70)

    entries = table.entries
    in_empty_block = False
    for i in range(0, len(entries), FAT_TABLE_ROW):
        row = entries[i:i + FAT_TABLE_ROW]
        if not any(row):
            in_empty_block = True
            continue
        if in_empty_block:
            print("<Block of Empty/Zero FAT Entries>")
            in_empty_block = False
        print(f" 0x{i:08x} |" + "".join(f" 0x{value:0{width}x} |" for value in row))
    if in_empty_block:
        print("<Block of Empty/Zero FAT Entries>")
    print(f" 0x{len(entries):08x} | End of FAT")
    print("=" * 70)

    # The first entries carry the media descriptor and the first chains, which is
    # where an analyst usually starts
    for cluster in range(2, min(len(entries), 2 + FAT_TABLE_ROW * 2)):
        print(f" {cluster:^6} | {describe_entry(table, entries[cluster])}")


def _format_timestamp(value, fmt='%Y-%m-%d %H:%M:%S') -> str:
    return value.strftime(fmt) if value else ""


def print_directory_tree(tree: DirectoryTree):
    print("\n" + "=" * 140)
    print("      DIRECTORY TREE")
    print("=" * 140)
    print(f"{'Name':<40} | {'Attributes':<18} | {'Start Cluster':>13} | {'Size (Bytes)':>12} | "
          f"{'Created':<19} | {'Accessed':<10} | {'Written'}")
    print("-" * 140)
    for depth, entry in tree.walk():
        name = "  " * depth + entry.name + ("/" if entry.is_directory else "")
        print(f"{name:<40} | {describe_attributes(entry.attributes):<18} | {entry.cluster:>13} | "
              f"{entry.file_size:>12,} | {_format_timestamp(entry.created):<19} | "
              f"{_format_timestamp(entry.accessed, '%Y-%m-%d'):<10} | {_format_timestamp(entry.written)}")
    print("=" * 140)


def print_hidden_data(result: InspectionResult):
    scanner = result.scanner
    for finding in scanner.findings:
        if finding.cluster is not None:
            print(f"Possible hidden data found in {finding.label} at offset 0x{finding.first_nonzero:x} "
                  f"/ cluster: 0x{finding.cluster:x}")
        else:
            print(f"Data potentially hidden in the {finding.label} (first nonzero byte at 0x{finding.first_nonzero:x}).")

    if scanner.found:
        print("\nHidden data was located on this disk image.")
    elif result.mbr is not None:
        print("No data was hidden in the space between the partitions of this disk image.")
    elif result.tree is not None:
        print("Completed reading file system. No data was located in the slack regions of allocated clusters.")


def print_report(result: InspectionResult, verbose: bool = False):
    print(f"Disk image: {result.image_path} ({result.fs_type})")
    if result.mbr is not None:
        print_mbr_info(result.mbr)
    if result.boot is not None:
        print_fat_boot_sector_info(result.boot, result.geometry)
    if result.fats is not None:
        print_fat_diff(result.fats)
    if verbose and result.table is not None:
        print_full_fat_table(result.table)
    if result.tree is not None:
        print_directory_tree(result.tree)
    for note in result.notes:
        print(f"Note: {note}")
    if result.scanner is not None:
        print_hidden_data(result)


# --- MAIN EXECUTION ---

def parse_args(argv=None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Read-only FAT/MBR disk image inspector and slack space scanner.")
    ap.add_argument("-i", "--image", required=True, help="path to the disk image")
    ap.add_argument("-f", "--fs-type", required=True, type=str.lower, choices=FS_TYPES,
                    help="file system type; use raw for full disk images that include the MBR")
    ap.add_argument("-v", "--verbose", action="store_true", help="print the full FAT table")
    ap.add_argument("-H", "--hidden", action="store_true", help="search for hidden data")
    ap.add_argument("--max-depth", type=int, default=DEFAULT_MAX_DEPTH,
                    help="maximum directory nesting to follow (default: %(default)s)")
    ap.add_argument("--log-level", default="WARNING",
                    choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="logging level (default: %(default)s)")
    return ap.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    options = InspectOptions(
        image_path=args.image,
        fs_type=args.fs_type,
        verbose=args.verbose,
        scan_hidden=args.hidden,
        max_depth=args.max_depth,
    )
    try:
        result = inspect_image(options)
    except ForensicError as e:
        print(f"Aborting... {e}", file=sys.stderr)
        return 1

    print_report(result, verbose=options.verbose)
    return 0


if __name__ == "__main__":
    sys.exit(main())
