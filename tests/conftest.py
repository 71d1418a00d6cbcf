import pytest

from fatimage import FatImageBuilder


@pytest.fixture
def fat32_builder():
    return FatImageBuilder('fat32')


@pytest.fixture
def fat16_builder():
    return FatImageBuilder('fat16')


@pytest.fixture
def fat12_builder():
    return FatImageBuilder('fat12')


@pytest.fixture
def write_image(tmp_path):
    """Writes raw bytes (optionally at given offsets) to a file and returns its path."""
    def _write(chunks, size=None, name='disk.img'):
        path = tmp_path / name
        if isinstance(chunks, (bytes, bytearray)):
            chunks = {0: chunks}
        with open(path, 'wb') as f:
            if size is not None:
                f.truncate(size)
            for offset, data in chunks.items():
                f.seek(offset)
                f.write(data)
        return str(path)
    return _write
