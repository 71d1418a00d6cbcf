class ForensicError(Exception):
    """Base class for every error that aborts an inspection run."""


class FatalIOError(ForensicError):
    """A positioned read against the disk image failed or came back short."""


class FatalFormatError(ForensicError):
    """On-disk structures are invalid enough that continuing would misread the image."""


class FileSystemMismatchError(FatalFormatError):
    """The declared file system type does not match the detected signature."""

    def __init__(self, declared: str, detected: str):
        self.declared = declared
        self.detected = detected
        super().__init__(
            f"Detected file system '{detected}' does not match the declared type '{declared}'."
        )


class UnsupportedFatTypeError(ForensicError):
    """Raised for operations that are not implemented for a FAT variant (FAT12 chains)."""
