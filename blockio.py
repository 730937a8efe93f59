import logging
import os
from typing import BinaryIO, Optional

from errors import TruncatedArchiveError
from tarheader import BLOCK_SIZE, END_BLOCK

logger = logging.getLogger(__name__)

END_MARKER_BLOCKS = 2  #: Zero blocks terminating an archive
END_MARKER_SIZE = END_MARKER_BLOCKS * BLOCK_SIZE


def blocks_for(size: int) -> int:
    """Number of blocks needed to hold ``size`` content bytes."""
    return (size + BLOCK_SIZE - 1) // BLOCK_SIZE


class BlockStream:
    """Block-granular reader/writer over an archive file.

    Every read and write moves exactly one 512-byte block.

    :ivar fileobj: Underlying binary file object.
    :type fileobj: BinaryIO
    """

    def __init__(self, fileobj: BinaryIO):
        """Wrap an already opened binary file.

        :param fileobj: File opened in binary mode.
        :type fileobj: BinaryIO
        :returns: None
        :rtype: None
        """
        self.fileobj = fileobj

    @classmethod
    def open(cls, path: str, mode: str = "rb") -> "BlockStream":
        """Open ``path`` in binary ``mode`` and wrap it.

        :param path: Archive file path.
        :type path: str
        :param mode: Binary open mode (``"rb"``, ``"wb"``, ``"ab"``...).
        :type mode: str
        :returns: A new stream owning the file.
        :rtype: BlockStream
        """
        return cls(open(path, mode))

    def __enter__(self) -> "BlockStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.fileobj.close()

    def read_block(self) -> Optional[bytes]:
        """Read the next block.

        :returns: Exactly 512 bytes, or ``None`` at a clean end of file.
        :rtype: Optional[bytes]
        :raises TruncatedArchiveError: If fewer than 512 bytes remain.
        """
        block = self.fileobj.read(BLOCK_SIZE)
        if not block:
            return None
        if len(block) != BLOCK_SIZE:
            raise TruncatedArchiveError(
                f"Short read of {len(block)} bytes at offset "
                f"{self.fileobj.tell() - len(block)}"
            )
        return block

    def write_block(self, block: bytes) -> None:
        """Write one full block.

        :param block: Exactly 512 bytes.
        :type block: bytes
        :returns: None
        :rtype: None
        :raises ValueError: If ``block`` is not 512 bytes long.
        """
        if len(block) != BLOCK_SIZE:
            raise ValueError(
                f"Block must be {BLOCK_SIZE} bytes, got {len(block)}"
            )
        self.fileobj.write(block)

    def write_padded(self, data: bytes) -> None:
        """Write up to one block of ``data``, zero-padded to the boundary."""
        self.write_block(data + bytes(BLOCK_SIZE - len(data)))

    def write_end_marker(self) -> None:
        for _ in range(END_MARKER_BLOCKS):
            self.write_block(END_BLOCK)

    def seek_blocks(self, n: int, whence: int = os.SEEK_SET) -> int:
        """Move the stream position by whole blocks.

        :param n: Block count, relative to ``whence``.
        :type n: int
        :param whence: ``os.SEEK_SET``, ``os.SEEK_CUR`` or ``os.SEEK_END``.
        :type whence: int
        :returns: New absolute byte offset.
        :rtype: int
        """
        return self.fileobj.seek(n * BLOCK_SIZE, whence)

    def tell(self) -> int:
        return self.fileobj.tell()

    def tell_blocks(self) -> int:
        return self.fileobj.tell() // BLOCK_SIZE

    def size(self) -> int:
        """Current physical length of the underlying file in bytes."""
        self.fileobj.flush()
        return os.fstat(self.fileobj.fileno()).st_size


def truncate_trailing(path: str, n_bytes: int) -> int:
    """Shrink the file at ``path`` by ``n_bytes`` from its end.

    A file shorter than ``n_bytes`` is truncated to zero length.

    :param path: File to shrink.
    :type path: str
    :param n_bytes: Number of bytes to remove.
    :type n_bytes: int
    :returns: New file length.
    :rtype: int
    :raises OSError: If the file cannot be stat'ed or truncated.
    """
    size = os.stat(path).st_size
    new_size = max(size - n_bytes, 0)
    os.truncate(path, new_size)
    logger.debug("Truncated %s from %d to %d bytes", path, size, new_size)
    return new_size
