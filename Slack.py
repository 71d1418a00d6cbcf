import logging
from dataclasses import dataclass, field
from typing import List, Optional

from Cluster import FIRST_DATA_CLUSTER, Geometry, cluster_to_offset
from Disk import DiskImage, SECTOR_SIZE
from MBR import MBR_SIZE, MbrTable

logger = logging.getLogger(__name__)

SCAN_CHUNK_SIZE = 1024 * 1024

KIND_PARTITION_GAP = 'partition_gap'
KIND_FILE_SLACK = 'file_slack'


@dataclass(frozen=True)
class SlackFinding:
    kind: str
    label: str
    start: int
    end: int
    first_nonzero: int
    cluster: Optional[int] = None


def first_nonzero_byte(image: DiskImage, start: int, end: int) -> Optional[int]:
    """
    Returns the absolute offset of the first nonzero byte in [start, end), or
    None if the whole range is zero.
    """
    position = start
    while position < end:
        length = min(SCAN_CHUNK_SIZE, end - position)
        chunk = image.read(position, length)
        stripped = chunk.lstrip(b'\x00')
        if stripped:
            return position + (length - len(stripped))
        position += length
    return None


@dataclass
class HiddenDataScanner:
    """
    Looks for nonzero bytes in space that should be unused. Findings are
    reported, never fatal; `found` stays set for the rest of the run once
    anything is located.
    """
    image: DiskImage
    findings: List[SlackFinding] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return bool(self.findings)

    def _scan(self, kind: str, label: str, start: int, end: int, cluster: Optional[int] = None) -> Optional[SlackFinding]:
        if end <= start:
            return None
        hit = first_nonzero_byte(self.image, start, end)
        if hit is None:
            return None
        finding = SlackFinding(kind, label, start, end, hit, cluster)
        self.findings.append(finding)
        logger.warning("Possible hidden data in %s (0x%X-0x%X, first nonzero byte at 0x%X)", label, start, end, hit)
        return finding

    def scan_partition_gaps(self, mbr: MbrTable, sector_size: int = SECTOR_SIZE) -> List[SlackFinding]:
        """
        Checks the space before the first partition and between consecutive
        partitions for hidden data.

        Each gap starts at the furthest partition end seen so far, so a
        partition nested inside another leaves no gap behind it.
        """
        found = []
        partitions = mbr.used_entries()
        if not partitions:
            return found

        first = partitions[0]
        finding = self._scan(KIND_PARTITION_GAP, f"space before partition entry {first.index}",
                             MBR_SIZE, first.starting_sector * sector_size)
        if finding:
            found.append(finding)

        furthest = first
        for following in partitions[1:]:
            finding = self._scan(KIND_PARTITION_GAP,
                                 f"space between partition entries {furthest.index} and {following.index}",
                                 furthest.end_sector * sector_size, following.starting_sector * sector_size)
            if finding:
                found.append(finding)
            if following.end_sector > furthest.end_sector:
                furthest = following
        return found

    def scan_file_slack(self, geometry: Geometry, name: str, file_size: int,
                        last_cluster: Optional[int]) -> Optional[SlackFinding]:
        """
        Checks the unused tail of a file's last cluster.

        A file whose size is an exact multiple of the cluster size has no
        tail, so nothing is scanned even if the cluster holds other bytes.
        """
        if last_cluster is None or last_cluster < FIRST_DATA_CLUSTER:
            return None

        bytes_per_cluster = geometry.bytes_per_cluster
        slack_start = file_size % bytes_per_cluster
        if slack_start == 0:
            slack_start = bytes_per_cluster

        cluster_start = cluster_to_offset(geometry, last_cluster)
        return self._scan(KIND_FILE_SLACK, f"the slack space of {name}",
                          cluster_start + slack_start, cluster_start + bytes_per_cluster, last_cluster)
