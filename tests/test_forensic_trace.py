import pytest

from fatimage import make_dir_entry, make_mbr
from Errors import FileSystemMismatchError
from ForensicTrace import InspectOptions, inspect_image, main, parse_args


@pytest.fixture
def fat32_image(fat32_builder, tmp_path):
    fat32_builder.write_directory([2], [
        make_dir_entry('README.TXT', cluster=3, size=10),
        make_dir_entry('DOCS', attributes=0x10, cluster=4),
    ])
    fat32_builder.write_cluster(3, b'0123456789' + b'\x00' * 40 + b'leftover')
    fat32_builder.set_chain([3])
    fat32_builder.write_directory([4], [make_dir_entry('A.TXT', cluster=5, size=512)])
    fat32_builder.write_data([5], b'a' * 512)
    return fat32_builder.build(tmp_path / 'fat32.img')


class TestInspectImage:
    def test_fat32_with_hidden_data_scan(self, fat32_image):
        result = inspect_image(InspectOptions(fat32_image, 'fat32', scan_hidden=True))

        assert result.fs_type == 'fat32'
        assert result.mbr is None
        assert result.boot.is_fat32
        assert result.geometry.bytes_per_cluster == 512
        assert result.fats.diff.identical
        assert result.tree.find('/DOCS/A.TXT') is not None
        assert result.hidden_data_found
        assert [f.label for f in result.scanner.findings] == ['the slack space of /README.TXT']

    def test_scan_disabled_by_default(self, fat32_image):
        result = inspect_image(InspectOptions(fat32_image, 'fat32'))
        assert result.scanner is None
        assert not result.hidden_data_found
        assert len(result.tree) == 4

    def test_raw_image(self, write_image):
        mbr = make_mbr([(0x80, 0x0C, 64, 100), (0x00, 0x0F, 200, 50)])
        path = write_image({0: mbr, 180 * 512: b'\x01'}, size=300 * 512)

        result = inspect_image(InspectOptions(path, 'raw', scan_hidden=True))

        assert result.fs_type == 'raw'
        assert result.boot is None
        assert result.tree is None
        assert result.mbr.has_extended
        assert any('Extended partition' in note for note in result.notes)
        assert len(result.scanner.findings) == 1
        assert result.scanner.findings[0].first_nonzero == 180 * 512

    def test_fat12_reports_boot_sector_only(self, fat12_builder, tmp_path):
        path = fat12_builder.build(tmp_path / 'floppy.img')

        result = inspect_image(InspectOptions(path, 'fat12'))

        assert result.boot.fat_type == 'fat12'
        assert result.fats is not None
        assert result.table is None
        assert result.tree is None
        assert any('FAT12' in note for note in result.notes)

    def test_ntfs_is_noted(self, write_image):
        sector = bytearray(512)
        sector[0:3] = b'\xEB\x52\x90'
        sector[0x1FE:0x200] = b'\x55\xAA'
        result = inspect_image(InspectOptions(write_image(bytes(sector)), 'ntfs'))
        assert result.boot is None
        assert any('NTFS' in note for note in result.notes)

    @pytest.mark.parametrize("cluster", [69000, 70300])
    def test_entries_outside_volume_do_not_abort(self, fat32_builder, tmp_path, cluster):
        fat32_builder.write_directory([2], [
            make_dir_entry('EVIL', attributes=0x10, cluster=cluster),
            make_dir_entry('EVIL.BIN', cluster=cluster, size=5),
            make_dir_entry('GOOD.TXT', cluster=3, size=4),
        ])
        fat32_builder.write_cluster(3, b'good' + b'\x00' * 8 + b'x')
        fat32_builder.set_chain([3])
        path = fat32_builder.build(tmp_path / 'fat32.img')

        result = inspect_image(InspectOptions(path, 'fat32', scan_hidden=True))

        assert result.table.max_cluster == result.boot.max_cluster == 68869
        assert result.tree.find('/EVIL').first_child is None
        assert result.tree.find('/EVIL.BIN').last_cluster is None
        assert [f.label for f in result.scanner.findings] == ['the slack space of /GOOD.TXT']

    def test_signature_and_cluster_count_disagree(self, fat32_builder, tmp_path):
        fat32_builder.layout['jump'] = b'\xEB\x3C\x90'
        fat32_builder.write_directory([2], [make_dir_entry('A.TXT')])
        path = fat32_builder.build(tmp_path / 'fat32.img')

        result = inspect_image(InspectOptions(path, 'fat16'))

        assert result.fs_type == 'fat16'
        assert result.boot.fat_type == 'fat32'
        assert result.boot.warnings == []
        assert any('classifies the volume as fat32' in note for note in result.notes)
        assert result.tree.find('/A.TXT') is not None

    def test_declared_type_mismatch_raises(self, fat32_image):
        with pytest.raises(FileSystemMismatchError):
            inspect_image(InspectOptions(fat32_image, 'fat16'))


class TestCommandLine:
    def test_parse_args(self):
        args = parse_args(['-i', 'disk.img', '-f', 'FAT32', '-H', '--max-depth', '4'])
        assert args.image == 'disk.img'
        assert args.fs_type == 'fat32'
        assert args.hidden
        assert not args.verbose
        assert args.max_depth == 4

    def test_unknown_fs_type_rejected(self):
        with pytest.raises(SystemExit):
            parse_args(['-i', 'disk.img', '-f', 'ext4'])

    def test_report(self, fat32_image, capsys):
        assert main(['-i', fat32_image, '-f', 'fat32', '-H']) == 0

        out = capsys.readouterr().out
        assert 'File System Type: FAT32' in out
        assert 'FAT1 and FAT2 are identical.' in out
        assert 'README.TXT' in out
        assert '  A.TXT' in out
        assert '| Created             | Accessed   | Written' in out
        assert '| 2022-03-02 10:30:20 | 2022-03-02 | 2022-03-02 10:30:20' in out
        assert 'Possible hidden data found in the slack space of /README.TXT' in out
        assert 'Hidden data was located on this disk image.' in out
        assert 'End of FAT' not in out

    def test_verbose_prints_fat(self, fat32_image, capsys):
        assert main(['-i', fat32_image, '-f', 'fat32', '-v']) == 0
        out = capsys.readouterr().out
        assert 'End of FAT' in out
        assert '<Block of Empty/Zero FAT Entries>' in out
        assert 'NEXT CLUSTER' not in out
        assert 'END OF FILE' in out

    def test_mismatch_aborts(self, fat32_image, capsys):
        assert main(['-i', fat32_image, '-f', 'fat16']) == 1
        captured = capsys.readouterr()
        assert captured.err.startswith('Aborting...')
        assert captured.out == ''

    def test_missing_image_aborts(self, tmp_path, capsys):
        assert main(['-i', str(tmp_path / 'nope.img'), '-f', 'raw']) == 1
        assert 'Aborting...' in capsys.readouterr().err
