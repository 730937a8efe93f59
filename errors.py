class ArchiveError(Exception):
    """Base class for every error raised by the archive engine.

    Plain :class:`OSError` (open/read/write/seek/truncate failures) is not
    wrapped and propagates as-is.
    """


class MetadataError(ArchiveError):
    """A member file cannot be inspected or described by a ustar header."""


class IdentityLookupError(ArchiveError):
    """The owner or group name of a member file cannot be resolved."""


class NameTooLongError(ArchiveError, ValueError):
    """A member name does not fit the ustar name/prefix fields."""


class TruncatedArchiveError(ArchiveError, EOFError):
    """The archive ends in the middle of a block or of an entry's content."""


class ChecksumMismatch(ArchiveError, ValueError):
    """A header's stored checksum does not match its contents."""


class EntryNotFoundError(ArchiveError, LookupError):
    """One or more names requested for update are absent from the archive.

    :ivar names: Names that were not found, in request order.
    :type names: List[str]
    """

    def __init__(self, names):
        self.names = list(names)
        super().__init__(
            "Not present in archive: " + ", ".join(self.names)
        )


class UnsafePathError(ArchiveError, ValueError):
    """An entry name would be extracted outside the destination directory."""
