import grp
import pwd
import sys
from pathlib import Path
from types import SimpleNamespace
import importlib
import pytest

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


@pytest.fixture()
def m():
    """Lazily import the main module for tests to avoid module-level import."""
    return importlib.import_module("main")


@pytest.fixture()
def no_progress(monkeypatch, m):
    """Suppress progress rendering in main module during tests."""
    calls = []

    def _stub(line: str):
        calls.append(line)

    monkeypatch.setattr(m, "_print_progress", _stub)
    return calls


@pytest.fixture()
def progress_recorder():
    """Provide a reusable progress callback and its call log."""
    calls = []

    def cb(name, done, total):
        calls.append((name, done, total))

    return cb, calls


@pytest.fixture(autouse=True)
def known_identity(monkeypatch):
    """Give unnamed uids/gids (common in CI containers) a stand-in name."""
    real_getpwuid = pwd.getpwuid
    real_getgrgid = grp.getgrgid

    def getpwuid(uid):
        try:
            return real_getpwuid(uid)
        except KeyError:
            return SimpleNamespace(pw_name="ci")

    def getgrgid(gid):
        try:
            return real_getgrgid(gid)
        except KeyError:
            return SimpleNamespace(gr_name="ci")

    monkeypatch.setattr(pwd, "getpwuid", getpwuid)
    monkeypatch.setattr(grp, "getgrgid", getgrgid)


@pytest.fixture()
def workdir(tmp_path: Path, monkeypatch):
    """Run the test from an empty source directory holding member files.

    Members are archived under relative names, so extraction into another
    directory reproduces them there.
    """
    src = tmp_path / "src"
    src.mkdir()
    monkeypatch.chdir(src)
    return src


@pytest.fixture()
def members(workdir: Path):
    """Create a few member files of awkward sizes in ``workdir``.

    Files:
        a.txt      13 bytes
        b.bin      exactly one block
        c.dat      two blocks and a bit
        empty      0 bytes
    """
    (workdir / "a.txt").write_text("Hello World!\n", encoding="utf-8")
    (workdir / "b.bin").write_bytes(bytes(range(256)) * 2)
    (workdir / "c.dat").write_bytes(b"xyz" * 400)
    (workdir / "empty").write_bytes(b"")
    return ["a.txt", "b.bin", "c.dat", "empty"]


@pytest.fixture()
def dest(tmp_path: Path):
    out = tmp_path / "out"
    out.mkdir()
    return out


def collect_files(base: Path):
    """Return mapping of relative path -> bytes for all regular files."""
    result = {}
    for p in base.rglob("*"):
        if p.is_file():
            result[p.relative_to(base).as_posix()] = p.read_bytes()
    return result


@pytest.fixture()
def collect_files_fn():
    """
    Fixture that provides the collect_files helper without importing conftest.
    """
    return collect_files


def entry_bytes(name: str, data: bytes) -> bytes:
    """Serialize one archive entry (header + zero-padded content)."""
    from tarheader import BLOCK_SIZE, TarHeader

    header = TarHeader(name=name, size=len(data), uname="u", gname="g")
    padding = -len(data) % BLOCK_SIZE
    return header.to_bytes() + data + bytes(padding)


@pytest.fixture()
def entry_bytes_fn():
    """Fixture that provides the entry_bytes helper."""
    return entry_bytes
