import logging
import os
from typing import Callable, Iterable, List, Optional, Set

from blockio import END_MARKER_SIZE, BlockStream, truncate_trailing
from errors import (
    ArchiveError,
    EntryNotFoundError,
    MetadataError,
    TruncatedArchiveError,
    UnsafePathError,
)
from scanner import ArchiveScanner, ScanEntry, find_end_offset, scan_archive
from tarheader import BLOCK_SIZE, REGTYPE, TarHeader, encode_header

logger = logging.getLogger(__name__)

#: ``on_progress(name, done, total)`` called as member bytes are copied
ProgressCallback = Callable[[str, int, int], None]


def _safe_join(base: str, arc_path: str) -> str:
    """Join an archive member name to a base directory safely.

    A leading ``/`` is dropped so absolute member names land inside
    ``base``.

    :param base: Destination base directory.
    :type base: str
    :param arc_path: Member name as stored in the archive.
    :type arc_path: str
    :returns: Absolute path within ``base``.
    :rtype: str
    :raises UnsafePathError: If the joined path would escape ``base``.
    """
    base_abs = os.path.abspath(base)
    candidate = os.path.abspath(os.path.join(base_abs, arc_path.lstrip("/")))
    if (
        candidate == base_abs
        or os.path.commonpath([candidate, base_abs]) != base_abs
    ):
        raise UnsafePathError(f"Unsafe path in archive: {arc_path}")
    return candidate


class Archiver:
    """Create, append to, update, list and extract a ustar archive.

    Each operation opens the archive itself and closes it before returning;
    the object only remembers the path and the options.

    :ivar archive_path: Path of the archive file.
    :type archive_path: str
    :ivar verify_checksums: Reject headers whose checksum does not match.
    :type verify_checksums: bool
    :ivar preserve_metadata: Restore permission bits and mtime on extract.
    :type preserve_metadata: bool
    """

    def __init__(
        self,
        archive_path: str,
        verify_checksums: bool = True,
        preserve_metadata: bool = True,
    ):
        """Bind the archiver to ``archive_path``.

        :param archive_path: Path of the archive file.
        :type archive_path: str
        :param verify_checksums: Reject headers with a bad checksum.
        :type verify_checksums: bool
        :param preserve_metadata: Restore mode and mtime when extracting.
        :type preserve_metadata: bool
        :returns: None
        :rtype: None
        """
        self.archive_path = archive_path
        self.verify_checksums = verify_checksums
        self.preserve_metadata = preserve_metadata

    def create(
        self,
        members: Iterable[str],
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        """Write a new archive holding ``members``, replacing any old one.

        On failure the partially written archive is left on disk.

        :param members: Paths of regular files, stored in this order.
        :type members: Iterable[str]
        :param on_progress: Optional ``on_progress(name, done, total)``.
        :type on_progress: Optional[Callable[[str, int, int], None]]
        :returns: None
        :rtype: None
        :raises ArchiveError: If a member cannot be described.
        :raises OSError: If reading a member or writing the archive fails.
        """
        with BlockStream.open(self.archive_path, "wb") as stream:
            self._write_members(stream, members, on_progress)
            stream.write_end_marker()
        logger.debug("Created %s", self.archive_path)

    def append(
        self,
        members: Iterable[str],
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        """Add ``members`` after the existing entries of the archive.

        The old end marker is cut off and a fresh one written after the new
        entries. Archives padded beyond the two-block marker by other tools
        have the extra padding removed too.

        :param members: Paths of regular files, stored in this order.
        :type members: Iterable[str]
        :param on_progress: Optional ``on_progress(name, done, total)``.
        :type on_progress: Optional[Callable[[str, int, int], None]]
        :returns: None
        :rtype: None
        :raises ArchiveError: If the archive is malformed or a member cannot
            be described.
        :raises OSError: If the archive or a member cannot be accessed.
        """
        end = find_end_offset(self.archive_path, self.verify_checksums)
        trailing = os.stat(self.archive_path).st_size - end
        if trailing != END_MARKER_SIZE:
            logger.warning(
                "%s has %d trailing bytes after its last entry, expected %d",
                self.archive_path, trailing, END_MARKER_SIZE,
            )
        truncate_trailing(self.archive_path, trailing)

        with BlockStream.open(self.archive_path, "ab") as stream:
            self._write_members(stream, members, on_progress)
            stream.write_end_marker()
        logger.debug("Appended to %s", self.archive_path)

    def list(self) -> List[str]:
        """Names of all entries in archive order, duplicates included.

        :returns: Ordered entry names.
        :rtype: List[str]
        """
        return [entry.name for entry in self._scan()]

    def names(self) -> Set[str]:
        """Set of distinct entry names, gathered in a single pass."""
        return {entry.name for entry in self._scan()}

    def file_exists_in_archive(self, name: str) -> bool:
        """Return True if an entry called exactly ``name`` exists.

        Scanning stops at the first match.

        :param name: Member name to look for.
        :type name: str
        :returns: Whether the archive holds an entry with that name.
        :rtype: bool
        """
        for entry in self._scan():
            if entry.name == name:
                return True
        return False

    def update(
        self,
        members: Iterable[str],
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        """Append new versions of members that are already archived.

        Nothing is written unless every member is already present.

        :param members: Paths of regular files to re-archive.
        :type members: Iterable[str]
        :param on_progress: Optional ``on_progress(name, done, total)``.
        :type on_progress: Optional[Callable[[str, int, int], None]]
        :returns: None
        :rtype: None
        :raises EntryNotFoundError: If any member is not in the archive.
        """
        members = list(members)
        present = self.names()
        missing = [name for name in members if name not in present]
        if missing:
            raise EntryNotFoundError(missing)
        self.append(members, on_progress)

    def extract_all(
        self,
        destination: str = ".",
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[str]:
        """Write every entry of the archive below ``destination``.

        Entries are processed in archive order and an existing output file
        is removed before it is written, so the last entry with a given
        name wins even when an earlier version was read-only.
        Parent directories must already exist.

        :param destination: Directory to extract into.
        :type destination: str
        :param on_progress: Optional ``on_progress(name, done, total)``.
        :type on_progress: Optional[Callable[[str, int, int], None]]
        :returns: Names of the extracted entries, in archive order.
        :rtype: List[str]
        :raises UnsafePathError: If an entry name escapes ``destination``.
        :raises TruncatedArchiveError: If entry content is cut short.
        :raises OSError: If an output file cannot be written.
        """
        extracted = []
        with BlockStream.open(self.archive_path, "rb") as stream:
            scanner = ArchiveScanner(stream, verify=self.verify_checksums)
            for entry in scanner:
                if self._extract_entry(
                    stream, entry, destination, on_progress
                ):
                    extracted.append(entry.name)
        return extracted

    def _scan(self):
        return scan_archive(self.archive_path, self.verify_checksums)

    def _write_members(
        self,
        stream: BlockStream,
        members: Iterable[str],
        on_progress: Optional[ProgressCallback],
    ) -> None:
        for path in members:
            self._write_member(stream, path, on_progress)

    def _write_member(
        self,
        stream: BlockStream,
        path: str,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        """Write the header and padded content of one member file.

        :param stream: Archive stream positioned where the entry goes.
        :type stream: BlockStream
        :param path: Member file path, also used as the entry name.
        :type path: str
        :param on_progress: Optional progress callback.
        :type on_progress: Optional[Callable[[str, int, int], None]]
        :returns: None
        :rtype: None
        :raises MetadataError: If the file shrinks while being copied.
        """
        stage = "reading metadata"
        try:
            header = encode_header(path)
            stage = "writing header"
            stream.write_block(header.to_bytes())
            stage = "copying content"
            done = 0
            with open(path, "rb") as src:
                while done < header.size:
                    chunk = src.read(min(BLOCK_SIZE, header.size - done))
                    if not chunk:
                        raise MetadataError(
                            f"{path}: file shrank while being archived"
                        )
                    stream.write_padded(chunk)
                    done += len(chunk)
                    if on_progress is not None:
                        on_progress(path, done, header.size)
        except (ArchiveError, OSError):
            logger.error(
                "Failed to add %s to %s while %s",
                path, self.archive_path, stage,
            )
            raise
        if on_progress is not None and header.size == 0:
            on_progress(path, 0, 0)
        logger.debug("Added %s (%d bytes)", path, header.size)

    def _extract_entry(
        self,
        stream: BlockStream,
        entry: ScanEntry,
        destination: str,
        on_progress: Optional[ProgressCallback],
    ) -> bool:
        """Copy the content of ``entry`` to its output file.

        :returns: False if the entry was skipped as a non-regular file.
        :rtype: bool
        """
        if entry.header.typeflag != REGTYPE:
            logger.warning(
                "Skipping %s: unsupported entry type %r",
                entry.name, entry.header.typeflag,
            )
            return False

        target = _safe_join(destination, entry.name)
        # A read-only earlier version must not block a later one.
        try:
            os.unlink(target)
        except FileNotFoundError:
            pass
        stream.seek_blocks(entry.offset)
        done = 0
        with open(target, "wb") as out:
            while done < entry.size:
                block = stream.read_block()
                if block is None:
                    raise TruncatedArchiveError(
                        f"Content of {entry.name} is cut short"
                    )
                chunk = block[:entry.size - done]
                out.write(chunk)
                done += len(chunk)
                if on_progress is not None:
                    on_progress(entry.name, done, entry.size)
        if self.preserve_metadata:
            self._restore_metadata(target, entry.header)
        logger.debug("Extracted %s to %s", entry.name, target)
        return True

    @staticmethod
    def _restore_metadata(path: str, header: TarHeader) -> None:
        try:
            os.chmod(path, header.mode)
            os.utime(path, (header.mtime, header.mtime))
        except PermissionError as e:
            logger.warning("Could not restore metadata of %s: %s", path, e)
