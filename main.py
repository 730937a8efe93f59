import argparse
import logging
import os
import stat as _stat
import sys

from typing import List, Optional
from archiver import Archiver
from errors import ArchiveError
from scanner import scan_archive

WRITE_COMMANDS = {
    "create": "create", "c": "create",
    "append": "append", "a": "append",
    "update": "update", "u": "update",
}


def get_parser():
    """Create and configure the CLI argument parser.

    :returns: Configured argument parser.
    :rtype: argparse.ArgumentParser
    """
    parser = argparse.ArgumentParser(
        description="Minimal tar-compatible (ustar) archiver"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )
    subparsers = parser.add_subparsers(
        title="subcommands", dest="cmd", required=True
    )

    create = subparsers.add_parser(
        "create", aliases=["c"], help="Create a new archive"
    )
    append = subparsers.add_parser(
        "append", aliases=["a"], help="Append files to an existing archive"
    )
    update = subparsers.add_parser(
        "update",
        aliases=["u"],
        help="Append new versions of files already in the archive",
    )
    for sub in (create, append, update):
        sub.add_argument("-f", "--file", required=True, help="Archive path")
        sub.add_argument("members", nargs="+", help="Regular files to add")
        sub.add_argument(
            "-P",
            "--no-progress",
            action="store_true",
            help="Hide per-file and overall progress",
        )

    listing = subparsers.add_parser(
        "list", aliases=["t"], help="List the entries of an archive"
    )
    listing.add_argument("-f", "--file", required=True, help="Archive path")

    extract = subparsers.add_parser(
        "extract", aliases=["x"], help="Extract every entry of an archive"
    )
    extract.add_argument("-f", "--file", required=True, help="Archive path")
    extract.add_argument(
        "-C",
        "--directory",
        default=".",
        help="Destination directory (default: current)",
    )
    extract.add_argument(
        "-P",
        "--no-progress",
        action="store_true",
        help="Hide per-file and overall progress",
    )

    return parser


def _check_members(members: List[str]) -> int:
    """Make sure every member is an existing regular file.

    :param members: Paths given on the command line.
    :type members: List[str]
    :returns: Total size of the members in bytes.
    :rtype: int
    :raises FileNotFoundError: If any of the members does not exist.
    :raises ValueError: If a member is not a regular file.
    """
    total = 0
    for member in members:
        if not os.path.exists(member):
            raise FileNotFoundError(f"Member not found: {member}")
        st = os.stat(member)
        if not _stat.S_ISREG(st.st_mode):
            raise ValueError(f"Not a regular file: {member}")
        total += st.st_size
    return total


def _print_progress(line: str) -> None:
    """Render and flush a single progress line in-place (carriage return).

    :param line: The textual progress line to display.
    :type line: str
    :returns: None
    :rtype: None
    """
    sys.stdout.write("\r" + line)
    sys.stdout.flush()


def _fmt_pct(done: int, total: int) -> str:
    """Format a completion percentage string like ``12.34%``.

    :param done: Units completed.
    :type done: int
    :param total: Total units to complete.
    :type total: int
    :returns: Percentage.
    :rtype: str
    """
    if total <= 0:
        return "0%"
    pct = 100.0 * (done / float(total))
    return f"{pct:6.2f}%"


def _fmt_bytes(n: int) -> str:
    """Format an archived byte count, e.g. ``1.50 KiB``.

    A ustar member is at most 8 GiB, so GiB is the largest unit used.

    :param n: Number of bytes.
    :type n: int
    :returns: Human-readable string.
    :rtype: str
    """
    value = float(n)
    for unit in ("B", "KiB", "MiB"):
        if value < 1024:
            return f"{value:.2f} {unit}"
        value /= 1024
    return f"{value:.2f} GiB"


class PerFileProgress:
    """Callable progress reporter passed to :class:`Archiver` operations.

    Renders a single-line progress with per-file and overall percentages.

    :ivar label: Action label (e.g., "Archiving" or "Extracting").
    :type label: str
    :ivar overall_base: Overall bytes of members already finished.
    :type overall_base: int
    :ivar overall_total: Total bytes across all members for the operation.
    :type overall_total: int
    """

    def __init__(self, label: str, overall_total: int) -> None:
        """Initialize progress reporter for a whole operation.

        :param label: Action label (e.g., ``"Archiving"``).
        :type label: str
        :param overall_total: Total bytes across all members.
        :type overall_total: int
        :returns: None
        :rtype: None
        """
        self.label = label
        self.overall_base = 0
        self.overall_total = int(overall_total)
        self._last_reported = None

    def __call__(self, arc_path: str, done: int, total: int) -> None:
        """Update the progress display for the current member.

        :param arc_path: Name of the member being copied.
        :type arc_path: str
        :param done: Bytes processed for the current member.
        :type done: int
        :param total: Total bytes for the current member.
        :type total: int
        :returns: None
        :rtype: None
        """
        if total <= 0:
            return
        percent_bucket = int((done * 100) / total)
        key = (arc_path, self.overall_base, percent_bucket)
        if key == self._last_reported:
            return
        self._last_reported = key
        cur_overall = self.overall_base + done
        line = (
            f"{self.label} {arc_path}  {_fmt_pct(done, total)}"
            f"  | Overall {_fmt_pct(cur_overall, self.overall_total)}"
        )
        _print_progress(line)
        if done >= total:
            self.overall_base += total


def write_archive(
    cmd: str, archive_path: str, members: List[str], hide_progress: bool
) -> int:
    """Create, append to or update an archive.

    :param cmd: One of ``"create"``, ``"append"``, ``"update"``.
    :type cmd: str
    :param archive_path: Archive file path.
    :type archive_path: str
    :param members: Regular files to store, in order.
    :type members: List[str]
    :param hide_progress: Whether to hide per-file and overall progress.
    :type hide_progress: bool
    :returns: Process exit status.
    :rtype: int
    """
    try:
        total_bytes = _check_members(members)
    except (FileNotFoundError, ValueError) as e:
        print(f"[!] {e}")
        return 1

    on_prog = None
    if not hide_progress and total_bytes > 0:
        on_prog = PerFileProgress("Archiving", total_bytes)
    archiver = Archiver(archive_path)
    try:
        getattr(archiver, cmd)(members, on_progress=on_prog)
    except (ArchiveError, OSError) as e:
        print(f"\n[!] Failed to {cmd} archive {archive_path}: {e}")
        return 1
    if on_prog is not None:
        sys.stdout.write("\n")
        sys.stdout.flush()
    print(f"Archived {len(members)} file(s), {_fmt_bytes(total_bytes)}")
    return 0


def list_archive(archive_path: str) -> int:
    """Print the name of every entry, one per line, in archive order.

    :param archive_path: Archive file path.
    :type archive_path: str
    :returns: Process exit status.
    :rtype: int
    """
    try:
        names = Archiver(archive_path).list()
    except (ArchiveError, OSError) as e:
        print(f"[!] Failed to list archive {archive_path}: {e}")
        return 1
    for name in names:
        print(name)
    return 0


def extract_archive(
    archive_path: str, dest_dir: str, hide_progress: bool
) -> int:
    """Extract every entry of an archive into ``dest_dir``.

    :param archive_path: Path to the archive file to extract.
    :type archive_path: str
    :param dest_dir: Destination directory.
    :type dest_dir: str
    :param hide_progress: Whether to hide per-file and overall progress.
    :type hide_progress: bool
    :returns: Process exit status.
    :rtype: int
    """
    if not os.path.isfile(archive_path):
        print(f"[!] Archive file not found: {archive_path}")
        return 1
    try:
        on_prog = None
        if not hide_progress:
            total = sum(entry.size for entry in scan_archive(archive_path))
            if total > 0:
                on_prog = PerFileProgress("Extracting", total)
        extracted = Archiver(archive_path).extract_all(
            dest_dir, on_progress=on_prog
        )
    except (ArchiveError, OSError) as e:
        print(f"\n[!] Failed to extract archive {archive_path}: {e}")
        return 1
    if on_prog is not None:
        sys.stdout.write("\n")
        sys.stdout.flush()
    print(f"Extracted {len(extracted)} entries")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the CLI tool.

    :param argv: Arguments, defaults to ``sys.argv[1:]``.
    :type argv: Optional[List[str]]
    :returns: Process exit status.
    :rtype: int
    """
    parser = get_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s - %(message)s",
    )

    if args.cmd in WRITE_COMMANDS:
        return write_archive(
            WRITE_COMMANDS[args.cmd],
            args.file,
            args.members,
            getattr(args, "no_progress", False),
        )
    elif args.cmd in ["list", "t"]:
        return list_archive(args.file)
    elif args.cmd in ["extract", "x"]:
        return extract_archive(
            args.file, args.directory, getattr(args, "no_progress", False)
        )
    return 1


if __name__ == "__main__":
    sys.exit(main())
