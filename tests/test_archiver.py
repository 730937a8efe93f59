import os
import tarfile
from pathlib import Path

import pytest

from archiver import Archiver, _safe_join
from errors import (
    EntryNotFoundError,
    MetadataError,
    UnsafePathError,
)
from tarheader import BLOCK_SIZE


@pytest.fixture()
def archive(tmp_path):
    return Archiver(str(tmp_path / "test.tar"))


def test_create_extract_roundtrip(members, archive, dest, workdir,
                                  collect_files_fn):
    archive.create(members)
    extracted = archive.extract_all(str(dest))

    assert extracted == members
    assert collect_files_fn(dest) == collect_files_fn(workdir)


def test_create_layout(members, archive):
    archive.create(members)
    data = Path(archive.archive_path).read_bytes()
    # a.txt, b.bin, c.dat (3 content blocks), empty, end marker
    assert len(data) == BLOCK_SIZE * (2 + 2 + 4 + 1 + 2)
    assert len(data) % BLOCK_SIZE == 0
    assert data[-2 * BLOCK_SIZE:] == bytes(2 * BLOCK_SIZE)
    assert data[BLOCK_SIZE:BLOCK_SIZE + 13] == b"Hello World!\n"
    assert data[BLOCK_SIZE + 13:2 * BLOCK_SIZE] == bytes(BLOCK_SIZE - 13)


def test_extract_restores_mode_and_mtime(workdir, archive, dest):
    path = workdir / "script.sh"
    path.write_bytes(b"#!/bin/sh\n")
    os.chmod(path, 0o750)
    os.utime(path, (1_600_000_000, 1_600_000_000))

    archive.create(["script.sh"])
    archive.extract_all(str(dest))

    st = os.stat(dest / "script.sh")
    assert st.st_mode & 0o7777 == 0o750
    assert int(st.st_mtime) == 1_600_000_000


def test_list_is_idempotent(members, archive):
    archive.create(members)
    assert archive.list() == archive.list() == members


def test_append_then_list(members, archive):
    archive.create(members[:2])
    archive.append(members[2:3])
    assert archive.list() == members[:3]
    data = Path(archive.archive_path).read_bytes()
    assert data[-2 * BLOCK_SIZE:] == bytes(2 * BLOCK_SIZE)


def test_duplicate_name_last_version_wins(workdir, archive, dest):
    (workdir / "a").write_text("v1")
    archive.create(["a"])
    (workdir / "a").write_text("v2")
    archive.append(["a"])

    assert archive.list() == ["a", "a"]
    archive.extract_all(str(dest))
    assert (dest / "a").read_text() == "v2"


@pytest.mark.skipif(
    os.geteuid() == 0, reason="root ignores file permission bits"
)
def test_read_only_duplicate_last_version_wins(workdir, archive, dest):
    member = workdir / "a"
    member.write_text("v1")
    os.chmod(member, 0o444)
    archive.create(["a"])
    os.chmod(member, 0o644)
    member.write_text("v2")
    os.chmod(member, 0o444)
    archive.append(["a"])

    archive.extract_all(str(dest))
    assert (dest / "a").read_text() == "v2"
    assert os.stat(dest / "a").st_mode & 0o7777 == 0o444


def test_extract_replaces_read_only_target(workdir, archive, dest):
    (workdir / "a").write_text("fresh")
    archive.create(["a"])
    stale = dest / "a"
    stale.write_text("stale contents")
    os.chmod(stale, 0o444)

    archive.extract_all(str(dest))
    assert stale.read_text() == "fresh"


def test_longer_older_version_is_fully_replaced(workdir, archive, dest):
    (workdir / "a").write_bytes(b"old " * 500)
    archive.create(["a"])
    (workdir / "a").write_bytes(b"new")
    archive.update(["a"])
    archive.extract_all(str(dest))
    assert (dest / "a").read_bytes() == b"new"


def test_update_rejects_new_entry(members, archive, workdir):
    archive.create(members[:2])
    before = Path(archive.archive_path).read_bytes()
    (workdir / "x").write_text("never archived")

    with pytest.raises(EntryNotFoundError) as excinfo:
        archive.update([members[0], "x"])

    assert excinfo.value.names == ["x"]
    assert Path(archive.archive_path).read_bytes() == before
    assert archive.list() == members[:2]


def test_update_existing_entries(members, archive):
    archive.create(members)
    archive.update([members[1], members[0]])
    assert archive.list() == members + [members[1], members[0]]


def test_file_exists_in_archive(members, archive):
    archive.create(members[:2])
    assert archive.file_exists_in_archive("a.txt")
    assert archive.file_exists_in_archive("b.bin")
    assert not archive.file_exists_in_archive("c.dat")
    assert not archive.file_exists_in_archive("a.tx")
    assert archive.names() == {"a.txt", "b.bin"}


def test_create_failure_leaves_partial_archive(members, archive):
    with pytest.raises(MetadataError):
        archive.create([members[0], "missing.txt", members[1]])
    # the first entry made it, the end marker did not
    assert archive.list() == [members[0]]
    assert os.path.getsize(archive.archive_path) == 2 * BLOCK_SIZE


def test_create_overwrites_existing_archive(members, archive):
    archive.create(members)
    archive.create(members[:1])
    assert archive.list() == members[:1]


def test_progress_callback(members, archive, dest, progress_recorder):
    on_prog, calls = progress_recorder
    archive.create(members, on_progress=on_prog)
    assert ("a.txt", 13, 13) in calls
    assert ("c.dat", 1200, 1200) in calls
    assert ("empty", 0, 0) in calls

    calls.clear()
    archive.extract_all(str(dest), on_progress=on_prog)
    assert calls[-1] == ("c.dat", 1200, 1200)


def test_long_member_name_roundtrip(workdir, archive, dest):
    parts = ["directory-level-%02d" % i for i in range(7)]
    (workdir.joinpath(*parts)).mkdir(parents=True)
    name = "/".join(parts + ["file.txt"])
    assert len(name) > 100
    (workdir / name).write_text("deep")

    archive.create([name])
    assert archive.list() == [name]
    (dest.joinpath(*parts)).mkdir(parents=True)
    archive.extract_all(str(dest))
    assert (dest / name).read_text() == "deep"


def test_extract_does_not_create_parent_dirs(workdir, archive, dest):
    (workdir / "sub").mkdir()
    (workdir / "sub" / "f").write_text("x")
    archive.create(["sub/f"])
    with pytest.raises(FileNotFoundError):
        archive.extract_all(str(dest))


def test_extract_rejects_escaping_names(tmp_path, dest, entry_bytes_fn):
    path = tmp_path / "evil.tar"
    path.write_bytes(entry_bytes_fn("../evil", b"x") + bytes(1024))
    with pytest.raises(UnsafePathError):
        Archiver(str(path)).extract_all(str(dest))
    assert not (tmp_path / "evil").exists()


def test_safe_join_strips_leading_slash(tmp_path):
    base = str(tmp_path)
    assert _safe_join(base, "/abs/name") == os.path.join(base, "abs", "name")
    with pytest.raises(UnsafePathError):
        _safe_join(base, "a/../../b")


def test_archive_readable_by_tarfile(members, archive, workdir):
    archive.create(members)
    with tarfile.open(archive.archive_path) as tf:
        assert tf.getnames() == members
        for name in members:
            assert tf.extractfile(name).read() == (workdir / name).read_bytes()


def test_append_to_tarfile_archive(members, archive, workdir):
    with tarfile.open(archive.archive_path, "w",
                      format=tarfile.USTAR_FORMAT) as tf:
        tf.add("a.txt")
    # tarfile pads archives to a 10 KiB record
    assert os.path.getsize(archive.archive_path) > 4 * BLOCK_SIZE

    archive.append(["b.bin"])
    assert archive.list() == ["a.txt", "b.bin"]
    with tarfile.open(archive.archive_path) as tf:
        assert tf.getnames() == ["a.txt", "b.bin"]
