import logging
import os

from Errors import FatalIOError

logger = logging.getLogger(__name__)

# --- Constants for raw image access ---

SECTOR_SIZE = 512 # Sector size assumed before any boot sector has been decoded


class DiskImage:
    """
    Read-only, offset-addressed access to a raw disk or partition image.

    Every read is a positioned read; a read that fails or returns fewer bytes
    than requested raises FatalIOError, since nothing downstream can make
    progress without the bytes it asked for.
    """

    def __init__(self, file_path: str):
        self.file_path = file_path
        try:
            self._f = open(file_path, 'rb')
        except OSError as e:
            raise FatalIOError(f"Could not read/access the file located at: {file_path} ({e})") from e
        self.size = os.fstat(self._f.fileno()).st_size
        logger.debug("Opened %s (%d bytes)", file_path, self.size)

    def read(self, offset: int, length: int) -> bytes:
        """
        Reads `length` bytes starting at absolute byte `offset`.

        :param offset: Byte offset from the start of the image.
        :param length: Number of bytes to read.
        :return: Exactly `length` bytes.
        """
        if length == 0:
            return b''
        if offset < 0 or length < 0:
            raise FatalIOError(f"Invalid read of {length} bytes at offset {offset}.")
        try:
            self._f.seek(offset)
            data = self._f.read(length)
        except (OSError, ValueError) as e:
            raise FatalIOError(f"Unable to read disk image at offset 0x{offset:X}: {e}") from e

        if len(data) != length:
            raise FatalIOError(
                f"Image ended prematurely: wanted {length} bytes at offset 0x{offset:X}, got {len(data)}."
            )
        return data

    def read_sector(self, lba: int, count: int = 1, sector_size: int = SECTOR_SIZE) -> bytes:
        """Reads one or more sectors starting at the given LBA."""
        return self.read(lba * sector_size, count * sector_size)

    def close(self):
        if not self._f.closed:
            self._f.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
