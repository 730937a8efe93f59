import grp
import logging
import os
import pwd
import stat as _stat
import struct
from dataclasses import dataclass
from typing import Optional, Tuple

from errors import (
    ArchiveError,
    ChecksumMismatch,
    IdentityLookupError,
    MetadataError,
    NameTooLongError,
)

logger = logging.getLogger(__name__)

BLOCK_SIZE = 512  #: Size of a header record and of every archive block
MAGIC = b"ustar"  #: Format identifier stored at offset 257
VERSION = b"00"  #: Format version, stored without a terminator
USTAR_MAGIC = MAGIC + b"\0" + VERSION
REGTYPE = b"0"  #: Typeflag of a regular file, the only type written

NAME_SIZE = 100
PREFIX_SIZE = 155
UNAME_SIZE = 32

#: ustar layout: name, mode, uid, gid, size, mtime, chksum, typeflag,
#: linkname, magic, version, uname, gname, devmajor, devminor, prefix, pad
HEADER_STRUCT = struct.Struct(
    "100s8s8s8s12s12s8s1s100s6s2s32s32s8s8s155s12s"
)

CHKSUM_OFFSET = 148
CHKSUM_SIZE = 8

END_BLOCK = bytes(BLOCK_SIZE)


def _octal(value: int, size: int) -> bytes:
    """Encode ``value`` as zero-padded octal ASCII followed by a NUL.

    :param value: Non-negative integer to encode.
    :type value: int
    :param size: Width of the field in bytes, terminator included.
    :type size: int
    :returns: Field contents, exactly ``size`` bytes long.
    :rtype: bytes
    :raises ValueError: If ``value`` does not fit in ``size - 1`` digits.
    """
    digits = size - 1
    if value < 0 or value >= 8 ** digits:
        raise ValueError(f"{value} does not fit in {digits} octal digits")
    return ("%0*o" % (digits, value)).encode("ascii") + b"\0"


def _parse_octal(field: bytes, what: str) -> int:
    """Decode a NUL/space terminated octal ASCII field.

    :param field: Raw field bytes.
    :type field: bytes
    :param what: Field name used in the error message.
    :type what: str
    :returns: Decoded value, 0 for an empty field.
    :rtype: int
    :raises ArchiveError: If the field holds something other than octal digits.
    """
    stripped = field.split(b"\0", 1)[0].strip()
    if not stripped:
        return 0
    try:
        return int(stripped, 8)
    except ValueError:
        raise ArchiveError(
            f"Invalid octal value in header field {what}: {stripped!r}"
        ) from None


def _cstr(field: bytes) -> bytes:
    return field.split(b"\0", 1)[0]


def compute_checksum(block: bytes) -> int:
    """Unsigned byte sum of ``block`` with the checksum field read as spaces.

    :param block: A 512-byte header record.
    :type block: bytes
    :returns: Checksum value.
    :rtype: int
    """
    return (
        sum(block[:CHKSUM_OFFSET])
        + CHKSUM_SIZE * ord(" ")
        + sum(block[CHKSUM_OFFSET + CHKSUM_SIZE:BLOCK_SIZE])
    )


def _signed_checksum(block: bytes) -> int:
    # Some historic tars summed signed chars.
    head = struct.unpack_from("148b", block, 0)
    tail = struct.unpack_from("356b", block, CHKSUM_OFFSET + CHKSUM_SIZE)
    return sum(head) + CHKSUM_SIZE * ord(" ") + sum(tail)


def is_end_marker(block: bytes) -> bool:
    """Return True iff ``block`` is a full block of zero bytes."""
    return len(block) == BLOCK_SIZE and block == END_BLOCK


def split_name(name: str) -> Tuple[str, str]:
    """Split ``name`` into ustar ``(prefix, name)`` fields.

    Names of up to 100 bytes are stored whole. Longer names are cut at a
    ``/`` so that the head fits the 155-byte prefix field and the tail the
    100-byte name field.

    :param name: Member name as it should appear in the archive.
    :type name: str
    :returns: ``(prefix, name)``; ``prefix`` is empty for short names.
    :rtype: Tuple[str, str]
    :raises NameTooLongError: If no ``/`` gives a split that fits.
    """
    if len(os.fsencode(name)) <= NAME_SIZE:
        return "", name
    components = name.split("/")
    for i in range(1, len(components)):
        prefix = "/".join(components[:i])
        tail = "/".join(components[i:])
        if (
            tail
            and len(os.fsencode(prefix)) <= PREFIX_SIZE
            and len(os.fsencode(tail)) <= NAME_SIZE
        ):
            return prefix, tail
    raise NameTooLongError(f"Name too long for ustar header: {name}")


@dataclass
class TarHeader:
    """In-memory form of a 512-byte ustar header record.

    :ivar name: Name field (tail of the member name when ``prefix`` is set).
    :type name: str
    :ivar mode: Permission bits.
    :type mode: int
    :ivar uid: Numeric owner ID.
    :type uid: int
    :ivar gid: Numeric group ID.
    :type gid: int
    :ivar size: Exact, unpadded content length in bytes.
    :type size: int
    :ivar mtime: Modification time, seconds since the epoch.
    :type mtime: int
    :ivar typeflag: Entry type, ``b"0"`` for regular files.
    :type typeflag: bytes
    :ivar uname: Owner name.
    :type uname: str
    :ivar gname: Group name.
    :type gname: str
    :ivar prefix: Leading directories of long names, empty otherwise.
    :type prefix: str
    :ivar checksum: Stored checksum, set by :meth:`to_bytes` and on decode.
    :type checksum: Optional[int]
    """

    name: str
    mode: int = 0o644
    uid: int = 0
    gid: int = 0
    size: int = 0
    mtime: int = 0
    typeflag: bytes = REGTYPE
    linkname: str = ""
    uname: str = ""
    gname: str = ""
    devmajor: int = 0
    devminor: int = 0
    prefix: str = ""
    magic: bytes = MAGIC
    checksum: Optional[int] = None

    @property
    def full_name(self) -> str:
        """Member name with the prefix field re-attached."""
        if self.prefix:
            return f"{self.prefix}/{self.name}"
        return self.name

    def to_bytes(self) -> bytes:
        """Serialize to a 512-byte record, computing the checksum last.

        :returns: The header record.
        :rtype: bytes
        :raises NameTooLongError: If ``name`` or ``prefix`` overflow
            their fields.
        :raises ValueError: If a numeric field does not fit its width.
        """
        name = os.fsencode(self.name)
        prefix = os.fsencode(self.prefix)
        if len(name) > NAME_SIZE or len(prefix) > PREFIX_SIZE:
            raise NameTooLongError(
                f"Name too long for ustar header: {self.full_name}"
            )
        fields = [
            name,
            _octal(self.mode, 8),
            _octal(self.uid, 8),
            _octal(self.gid, 8),
            _octal(self.size, 12),
            _octal(self.mtime, 12),
            b" " * CHKSUM_SIZE,
            self.typeflag,
            os.fsencode(self.linkname),
            self.magic,
            VERSION,
            self.uname.encode("utf-8")[:UNAME_SIZE],
            self.gname.encode("utf-8")[:UNAME_SIZE],
            _octal(self.devmajor, 8),
            _octal(self.devminor, 8),
            prefix,
            b"",
        ]
        block = bytearray(HEADER_STRUCT.pack(*fields))
        self.checksum = compute_checksum(block)
        block[CHKSUM_OFFSET:CHKSUM_OFFSET + CHKSUM_SIZE] = _octal(
            self.checksum, CHKSUM_SIZE
        )
        return bytes(block)


def encode_header(file_path: str, arcname: Optional[str] = None) -> TarHeader:
    """Build the header record describing the regular file ``file_path``.

    :param file_path: Path of the member file on disk.
    :type file_path: str
    :param arcname: Name to store in the archive, defaults to ``file_path``.
    :type arcname: Optional[str]
    :returns: Header with every field filled in and the checksum computed.
    :rtype: TarHeader
    :raises MetadataError: If the file cannot be stat'ed, is not a regular
        file, or has a size/mtime/ID too large for the ustar fields.
    :raises IdentityLookupError: If the owner or group name is unknown.
    :raises NameTooLongError: If ``arcname`` cannot be split to fit.
    """
    if arcname is None:
        arcname = file_path
    try:
        st = os.stat(file_path)
    except OSError as e:
        raise MetadataError(f"Failed to stat file {file_path}: {e}") from e
    if not _stat.S_ISREG(st.st_mode):
        raise MetadataError(f"Not a regular file: {file_path}")

    try:
        uname = pwd.getpwuid(st.st_uid).pw_name
    except KeyError:
        raise IdentityLookupError(
            f"Failed to look up owner name of file {file_path}"
        ) from None
    try:
        gname = grp.getgrgid(st.st_gid).gr_name
    except KeyError:
        raise IdentityLookupError(
            f"Failed to look up group name of file {file_path}"
        ) from None

    prefix, name = split_name(arcname)
    header = TarHeader(
        name=name,
        prefix=prefix,
        mode=_stat.S_IMODE(st.st_mode),
        uid=st.st_uid,
        gid=st.st_gid,
        size=st.st_size,
        mtime=int(st.st_mtime),
        uname=uname,
        gname=gname,
    )
    try:
        header.to_bytes()
    except ValueError as e:
        raise MetadataError(f"Cannot describe {file_path}: {e}") from e
    logger.debug("Encoded header for %s (%d bytes)", arcname, header.size)
    return header


def decode_header(block: bytes, verify: bool = True) -> TarHeader:
    """Parse a 512-byte header record.

    Old-style (pre-POSIX) headers without the ``ustar`` magic are accepted;
    their prefix field is ignored.

    :param block: Raw header record.
    :type block: bytes
    :param verify: Check the stored checksum against the record contents.
    :type verify: bool
    :returns: Decoded header.
    :rtype: TarHeader
    :raises ValueError: If ``block`` is not exactly 512 bytes long.
    :raises ChecksumMismatch: If ``verify`` is set and the checksum is wrong.
    """
    if len(block) != BLOCK_SIZE:
        raise ValueError(f"Header record must be {BLOCK_SIZE} bytes")
    (
        name, mode, uid, gid, size, mtime, chksum, typeflag, linkname,
        magic, version, uname, gname, devmajor, devminor, prefix, _pad,
    ) = HEADER_STRUCT.unpack(block)

    stored = _parse_octal(chksum, "chksum")
    if verify and stored not in (
        compute_checksum(block), _signed_checksum(block)
    ):
        raise ChecksumMismatch(
            f"Header checksum mismatch for {_cstr(name)!r}: "
            f"stored {stored:o}, computed {compute_checksum(block):o}"
        )

    # GNU headers ("ustar  \0") keep atime/ctime where ustar has the prefix.
    is_ustar = magic + version == USTAR_MAGIC
    return TarHeader(
        name=os.fsdecode(_cstr(name)),
        mode=_parse_octal(mode, "mode"),
        uid=_parse_octal(uid, "uid"),
        gid=_parse_octal(gid, "gid"),
        size=_parse_octal(size, "size"),
        mtime=_parse_octal(mtime, "mtime"),
        typeflag=typeflag if typeflag != b"\0" else REGTYPE,
        linkname=os.fsdecode(_cstr(linkname)),
        uname=_cstr(uname).decode("utf-8", errors="replace"),
        gname=_cstr(gname).decode("utf-8", errors="replace"),
        devmajor=_parse_octal(devmajor, "devmajor") if is_ustar else 0,
        devminor=_parse_octal(devminor, "devminor") if is_ustar else 0,
        prefix=os.fsdecode(_cstr(prefix)) if is_ustar else "",
        magic=magic,
        checksum=stored,
    )
