import enum
import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional

from blockio import BlockStream, blocks_for
from errors import TruncatedArchiveError
from tarheader import BLOCK_SIZE, TarHeader, decode_header, is_end_marker

logger = logging.getLogger(__name__)


class ScanState(enum.Enum):
    SCANNING = "scanning"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ScanEntry:
    """Location of one entry inside an archive.

    :ivar name: Full member name (prefix re-attached).
    :type name: str
    :ivar size: Exact content length in bytes.
    :type size: int
    :ivar offset: Block index of the first content block.
    :type offset: int
    :ivar header: Decoded header record.
    :type header: TarHeader
    """

    name: str
    size: int
    offset: int
    header: TarHeader


class ArchiveScanner:
    """Walk the entries of an archive without reading their content.

    Iteration is lazy and single-use: once the scanner reaches ``DONE`` or
    ``FAILED`` it yields nothing more. A lone zero block does not end the
    scan; only two consecutive zero blocks (or a clean end of file at a
    header boundary) do.

    :ivar stream: Stream positioned at the first header.
    :type stream: BlockStream
    :ivar state: Current scan state.
    :type state: ScanState
    :ivar end_offset: Byte offset where the logical archive ends, known
        once ``state`` is ``DONE``.
    :type end_offset: Optional[int]
    """

    def __init__(self, stream: BlockStream, verify: bool = True):
        """Create a scanner over ``stream``.

        :param stream: Block stream opened for reading.
        :type stream: BlockStream
        :param verify: Verify header checksums while scanning.
        :type verify: bool
        :returns: None
        :rtype: None
        """
        self.stream = stream
        self.verify = verify
        self.state = ScanState.SCANNING
        self.end_offset: Optional[int] = None
        self._next_header = stream.tell_blocks()
        self._physical_size = stream.size()

    def __iter__(self) -> Iterator[ScanEntry]:
        while self.state is ScanState.SCANNING:
            try:
                entry = self._step()
            except Exception:
                self.state = ScanState.FAILED
                raise
            if entry is not None:
                yield entry

    def _step(self) -> Optional[ScanEntry]:
        """Advance by one header (or one stray zero block).

        :returns: The next entry, or ``None`` when nothing was yielded
            this step (end reached or a zero block skipped).
        :rtype: Optional[ScanEntry]
        """
        self.stream.seek_blocks(self._next_header)
        start = self.stream.tell()
        block = self.stream.read_block()
        if block is None:
            if start:
                logger.warning(
                    "Archive has no end marker, stopping at offset %d", start
                )
            self._finish(start)
            return None

        if is_end_marker(block):
            peek = self.stream.read_block()
            if peek is None or is_end_marker(peek):
                self._finish(start)
                return None
            # A single zero block: resume right after it.
            logger.warning("Skipping stray zero block at offset %d", start)
            self._next_header += 1
            return None

        header = decode_header(block, verify=self.verify)
        offset = self._next_header + 1
        self._next_header = offset + blocks_for(header.size)
        if self._next_header * BLOCK_SIZE > self._physical_size:
            raise TruncatedArchiveError(
                f"Content of {header.full_name} runs past the end of "
                "the archive"
            )
        logger.debug(
            "Found %s (%d bytes) at block %d",
            header.full_name, header.size, offset,
        )
        return ScanEntry(header.full_name, header.size, offset, header)

    def _finish(self, end_offset: int) -> None:
        self.end_offset = end_offset
        self.state = ScanState.DONE


def scan_archive(
    archive_path: str, verify: bool = True
) -> Iterator[ScanEntry]:
    """Yield the entries of the archive at ``archive_path``.

    The archive file is closed when the generator is exhausted or closed.

    :param archive_path: Archive file path.
    :type archive_path: str
    :param verify: Verify header checksums.
    :type verify: bool
    :returns: Iterator of entries in archive order.
    :rtype: Iterator[ScanEntry]
    """
    with BlockStream.open(archive_path, "rb") as stream:
        yield from ArchiveScanner(stream, verify=verify)


def list_names(archive_path: str, verify: bool = True) -> List[str]:
    """Names of all entries in archive order, duplicates included."""
    return [entry.name for entry in scan_archive(archive_path, verify)]


def find_end_offset(archive_path: str, verify: bool = True) -> int:
    """Byte offset of the end marker (or of the end of data) in an archive.

    :param archive_path: Archive file path.
    :type archive_path: str
    :param verify: Verify header checksums.
    :type verify: bool
    :returns: Offset at which new entries should be written.
    :rtype: int
    """
    with BlockStream.open(archive_path, "rb") as stream:
        scanner = ArchiveScanner(stream, verify=verify)
        for _ in scanner:
            pass
        return scanner.end_offset if scanner.end_offset is not None else 0

