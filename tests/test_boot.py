import pytest

from Boot import (FatBootSector, build_geometry, calc_fat_type, classify_cluster_count, count_clusters,
                  parse_fat_boot_sector, read_fat_boot_sector, validate_fat_boot_sector)
from Cluster import cluster_to_offset
from Disk import DiskImage
from Errors import FatalFormatError


def make_boot(**overrides):
    fields = dict(
        oem_name='MSWIN4.1', bytes_per_sector=512, sectors_per_cluster=1, reserved_area_size=1,
        number_of_fats=2, max_files_in_root=512, sector_count_16b=0, media_type=0xF8,
        fat_size_in_sectors=16, sectors_per_track=63, head_number=255, sectors_before_partition=0,
        sector_count_32b=0, bios_drive_number=0x80, extended_boot_sig=0x29, volume_serial=0,
        volume_label='', fs_type_label='', fs_signature=0x55AA,
    )
    fields.update(overrides)
    return FatBootSector(**fields)


# reserved (1) + FATs (2 * 16) + root dir (512 * 32 / 512 = 32)
OVERHEAD_SECTORS = 1 + 32 + 32


class TestClassification:
    @pytest.mark.parametrize("clusters, expected", [
        (0, 'fat12'),
        (4084, 'fat12'),
        (4085, 'fat16'),
        (65524, 'fat16'),
        (65525, 'fat32'),
        (1000000, 'fat32'),
    ])
    def test_boundaries(self, clusters, expected):
        assert classify_cluster_count(clusters) == expected

    @pytest.mark.parametrize("clusters, expected", [
        (4084, 'fat12'),
        (4085, 'fat16'),
        (65524, 'fat16'),
        (65525, 'fat32'),
    ])
    def test_calc_fat_type_from_fields(self, clusters, expected):
        boot = make_boot(sector_count_32b=OVERHEAD_SECTORS + clusters)
        assert count_clusters(boot) == clusters
        assert calc_fat_type(boot) == expected

    @pytest.mark.parametrize("spc", [1, 2, 4, 8, 16, 32, 64])
    def test_sectors_per_cluster_divides(self, spc):
        boot = make_boot(sectors_per_cluster=spc, sector_count_32b=OVERHEAD_SECTORS + 4085 * spc)
        assert calc_fat_type(boot) == 'fat16'
        boot = make_boot(sectors_per_cluster=spc, sector_count_32b=OVERHEAD_SECTORS + 4085 * spc - 1)
        assert calc_fat_type(boot) == 'fat12'

    def test_32bit_sector_count_wins(self):
        boot = make_boot(sector_count_16b=OVERHEAD_SECTORS + 100, sector_count_32b=OVERHEAD_SECTORS + 70000)
        assert boot.sector_count == OVERHEAD_SECTORS + 70000
        assert calc_fat_type(boot) == 'fat32'

    def test_16bit_sector_count_used_when_32bit_zero(self):
        boot = make_boot(sector_count_16b=OVERHEAD_SECTORS + 5000)
        assert count_clusters(boot) == 5000

    def test_negative_data_region_clamps(self):
        boot = make_boot(sector_count_16b=10)
        assert count_clusters(boot) == 0
        assert calc_fat_type(boot) == 'fat12'


class TestValidation:
    @pytest.mark.parametrize("bps", [0, 256, 500, 8192])
    def test_bytes_per_sector_must_be_legal(self, bps):
        with pytest.raises(FatalFormatError):
            validate_fat_boot_sector(make_boot(bytes_per_sector=bps))

    @pytest.mark.parametrize("spc", [0, 3, 6, 12])
    def test_sectors_per_cluster_power_of_two(self, spc):
        with pytest.raises(FatalFormatError):
            validate_fat_boot_sector(make_boot(sectors_per_cluster=spc))

    def test_cluster_larger_than_32k(self):
        with pytest.raises(FatalFormatError):
            validate_fat_boot_sector(make_boot(bytes_per_sector=512, sectors_per_cluster=128))
        validate_fat_boot_sector(make_boot(bytes_per_sector=512, sectors_per_cluster=64))

    def test_zero_fats(self):
        with pytest.raises(FatalFormatError):
            validate_fat_boot_sector(make_boot(number_of_fats=0))

    def test_clean_boot_sector_has_no_warnings(self):
        boot = make_boot(sector_count_16b=10000)
        validate_fat_boot_sector(boot)
        assert boot.warnings == []

    def test_warnings_are_not_fatal(self, caplog):
        boot = make_boot(media_type=0x12, sector_count_16b=100, sector_count_32b=200, fat_size_in_sectors=0)
        validate_fat_boot_sector(boot)

        assert len(boot.warnings) == 3
        assert any('Conflicting indicators' in w for w in boot.warnings)
        assert any('Media type' in w for w in boot.warnings)
        assert any('32 bit sector count' in w for w in boot.warnings)
        assert 'Media type' in caplog.text


class TestParseBootSector:
    def test_fat32_fields(self, fat32_builder):
        boot = parse_fat_boot_sector(bytes(fat32_builder.boot_sector()))

        assert boot.is_fat32 and not boot.is_fat16 and not boot.is_fat12
        assert boot.oem_name == 'MSWIN4.1'
        assert boot.bytes_per_sector == 512
        assert boot.sectors_per_cluster == 1
        assert boot.reserved_area_size == 32
        assert boot.number_of_fats == 2
        assert boot.fat_size_in_sectors == 0
        assert boot.fat32_size_in_sectors == 550
        assert boot.fat_size_sectors == 550
        assert boot.root_dir_cluster == 2
        assert boot.fsinfo_sector_addr == 1
        assert boot.backup_boot_sector_addr == 6
        assert boot.fat32_volume_serial == 0x1234ABCD
        assert boot.effective_volume_label == 'FORENSICS'
        assert boot.effective_fs_type_label == 'FAT32'
        assert boot.media_description == 'Fixed'
        assert boot.fs_signature == 0x55AA
        assert boot.warnings == []

    def test_fat32_cluster_count_uses_fat32_size(self, fat32_builder):
        boot = parse_fat_boot_sector(bytes(fat32_builder.boot_sector()))
        # (70000 - 32 - 2 * 550) / 1
        assert boot.cluster_count == 68868
        assert boot.max_cluster == 68869

    def test_fat16_fields(self, fat16_builder):
        boot = parse_fat_boot_sector(bytes(fat16_builder.boot_sector()))

        assert boot.is_fat16
        assert boot.fat_size_sectors == 20
        assert boot.max_files_in_root == 512
        assert boot.root_dir_sectors == 32
        assert boot.volume_serial == 0x5678EF01
        assert boot.root_dir_cluster == 0
        assert boot.fat32_volume_label == ''

    def test_label_disagreeing_with_cluster_count_warns(self, fat16_builder):
        fat16_builder.boot_patches[0x36] = b'FAT12   '
        boot = parse_fat_boot_sector(bytes(fat16_builder.boot_sector()))
        assert boot.is_fat16
        assert any('disagrees' in w for w in boot.warnings)

    def test_invalid_bytes_per_sector_in_image(self, fat32_builder):
        fat32_builder.boot_patches[0x0B] = b'\x00\x03'
        with pytest.raises(FatalFormatError):
            parse_fat_boot_sector(bytes(fat32_builder.boot_sector()))

    def test_read_at_partition_offset(self, fat16_builder, write_image):
        path = write_image({4096: bytes(fat16_builder.boot_sector())})
        with DiskImage(path) as image:
            boot = read_fat_boot_sector(image, 4096)
        assert boot.is_fat16


class TestGeometry:
    def test_fat32_geometry(self, fat32_builder):
        boot = parse_fat_boot_sector(bytes(fat32_builder.boot_sector()))
        geometry = build_geometry(boot)

        assert geometry.bytes_per_sector == 512
        assert geometry.sectors_per_cluster == 1
        assert geometry.reserved_and_fats == 32 * 512 + 550 * 512 * 2
        assert geometry.root_dir_bytes == 0
        assert cluster_to_offset(geometry, 2) == geometry.reserved_and_fats

    def test_fat16_geometry_includes_root_region(self, fat16_builder):
        boot = parse_fat_boot_sector(bytes(fat16_builder.boot_sector()))
        geometry = build_geometry(boot)

        assert geometry.reserved_and_fats == 4 * 512 + 20 * 512 * 2
        assert geometry.root_dir_bytes == 32 * 512
        assert geometry.root_dir_offset == geometry.reserved_and_fats
        assert cluster_to_offset(geometry, 2) == fat16_builder.data_offset

    def test_partition_offset_shifts_everything(self, fat32_builder):
        boot = parse_fat_boot_sector(bytes(fat32_builder.boot_sector()))
        geometry = build_geometry(boot, partition_offset=1048576)
        assert cluster_to_offset(geometry, 2) == 1048576 + geometry.reserved_and_fats
