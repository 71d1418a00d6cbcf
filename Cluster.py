import logging
from dataclasses import dataclass
from typing import List, Tuple

from Disk import DiskImage

logger = logging.getLogger(__name__)

FIRST_DATA_CLUSTER = 2 # Clusters 0 and 1 are reserved FAT entries, not data


@dataclass(frozen=True)
class Geometry:
    """
    Sector/cluster layout of one FAT volume, built once from the boot sector.

    reserved_and_fats is the size in bytes of the reserved area plus every FAT
    copy. root_dir_bytes is the fixed FAT12/16 root directory region (always 0
    on FAT32) and partition_offset is where the volume starts in the image.
    """
    bytes_per_sector: int
    sectors_per_cluster: int
    reserved_and_fats: int
    root_dir_bytes: int = 0
    partition_offset: int = 0

    @property
    def bytes_per_cluster(self) -> int:
        return self.bytes_per_sector * self.sectors_per_cluster

    @property
    def root_dir_offset(self) -> int:
        """Absolute offset of the fixed FAT12/16 root directory."""
        return self.partition_offset + self.reserved_and_fats

    @property
    def data_region_offset(self) -> int:
        return self.partition_offset + self.reserved_and_fats + self.root_dir_bytes


def cluster_to_offset(geometry: Geometry, cluster: int) -> int:
    """
    Converts a data cluster number to the absolute byte offset of its first byte.

    :param geometry: Volume geometry.
    :param cluster: Cluster number, must be >= 2.
    """
    if cluster < FIRST_DATA_CLUSTER:
        raise ValueError(f"Cluster {cluster} is reserved and has no data region address.")
    return (cluster - FIRST_DATA_CLUSTER) * geometry.bytes_per_cluster + geometry.data_region_offset


class ClusterReader:
    """
    Reads a logical byte range out of a cluster chain.

    Logical offset 0 is the first byte of the first cluster in the chain; a
    read may start mid-cluster and cross any number of cluster boundaries.
    """

    def __init__(self, image: DiskImage, geometry: Geometry, clusters):
        self.image = image
        self.geometry = geometry
        self.clusters = list(clusters)

    @property
    def size(self) -> int:
        return len(self.clusters) * self.geometry.bytes_per_cluster

    def segments(self, offset: int, length: int) -> List[Tuple[int, int, int]]:
        """
        Splits a logical read into physical segments.

        :return: List of (cluster, physical_offset, segment_length) in logical order.
        """
        bytes_per_cluster = self.geometry.bytes_per_cluster
        index, in_cluster = divmod(offset, bytes_per_cluster)
        remaining = length
        result = []

        while remaining > 0 and index < len(self.clusters):
            cluster = self.clusters[index]
            # Only the first segment can start mid-cluster
            segment_length = min(remaining, bytes_per_cluster - in_cluster)
            result.append((cluster, cluster_to_offset(self.geometry, cluster) + in_cluster, segment_length))
            remaining -= segment_length
            in_cluster = 0
            index += 1
        return result

    def read(self, offset: int, length: int) -> bytes:
        """
        Reads up to `length` bytes at logical `offset`. The result is shorter
        than requested only when the chain runs out first.
        """
        return b''.join(self.image.read(physical, segment_length)
                        for _, physical, segment_length in self.segments(offset, length))

    def offset_of(self, offset: int) -> int:
        """Absolute image offset of a logical offset inside the chain."""
        index, in_cluster = divmod(offset, self.geometry.bytes_per_cluster)
        return cluster_to_offset(self.geometry, self.clusters[index]) + in_cluster


class RegionReader:
    """Same interface as ClusterReader over one contiguous byte range (FAT12/16 root directory)."""

    def __init__(self, image: DiskImage, start: int, size: int):
        self.image = image
        self.start = start
        self.size = size

    def read(self, offset: int, length: int) -> bytes:
        length = max(0, min(length, self.size - offset))
        return self.image.read(self.start + offset, length)

    def offset_of(self, offset: int) -> int:
        return self.start + offset
