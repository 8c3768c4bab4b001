"""Shared fixtures: an in-memory remote provider and a populated local tree."""

from __future__ import annotations

import errno
import io
from pathlib import Path, PurePosixPath
from typing import Callable

import pytest

from termxfer.filetransfer import FileTransfer
from termxfer.fs import (
    FsDirectory,
    FsEntry,
    FsFile,
    ProviderError,
    ProviderErrorKind,
    UnixPex,
)
from termxfer.host import Localhost

ROOT = PurePosixPath("/")


class _MemoryWriter:
    def __init__(self, owner: "MemoryFileTransfer", path: PurePosixPath) -> None:
        self._owner = owner
        self.path = path
        self.written = 0
        self.closed = False

    def write(self, data) -> int:
        limit = self._owner.fail_write_after.get(self.path)
        if limit is not None and self.written + len(data) > limit:
            raise OSError(errno.EIO, "remote write failed")
        self._owner.files[self.path] += bytes(data)
        self.written += len(data)
        if self._owner.on_write:
            self._owner.on_write(self.path, self.written)
        return len(data)

    def close(self) -> None:
        self.closed = True


class _MemoryReader(io.BytesIO):
    def __init__(self, owner: "MemoryFileTransfer", path: PurePosixPath, data: bytes) -> None:
        super().__init__(data)
        self._owner = owner
        self.path = path
        self.read_total = 0

    def readinto(self, buffer) -> int:
        limit = self._owner.fail_read_after.get(self.path)
        if limit is not None and self.read_total >= limit:
            raise OSError(errno.EIO, "remote read failed")
        count = super().readinto(buffer)
        self.read_total += count
        if self._owner.on_read:
            self._owner.on_read(self.path, self.read_total)
        return count


class MemoryFileTransfer(FileTransfer):
    """Remote provider backed by dictionaries, with failure injection."""

    def __init__(self) -> None:
        self.files: dict[PurePosixPath, bytes] = {}
        self.modes: dict[PurePosixPath, UnixPex] = {}
        self.dirs: set[PurePosixPath] = {ROOT}
        self.links: set[PurePosixPath] = set()
        self.wrkdir = ROOT
        self.connected = False
        self.banner: str | None = "Welcome"
        self.connect_error: Exception | None = None
        self.fail_mkdir: set[PurePosixPath] = set()
        self.fail_list: set[PurePosixPath] = set()
        self.fail_open: set[PurePosixPath] = set()
        self.fail_write_after: dict[PurePosixPath, int] = {}
        self.fail_read_after: dict[PurePosixPath, int] = {}
        self.on_write: Callable[[PurePosixPath, int], None] | None = None
        self.on_read: Callable[[PurePosixPath, int], None] | None = None
        self.finalized: list[PurePosixPath] = []

    # helpers ----------------------------------------------------------

    def add_dir(self, path: str, mode: int | None = None) -> FsDirectory:
        p = PurePosixPath(path)
        for parent in reversed(p.parents):
            self.dirs.add(parent)
        self.dirs.add(p)
        if mode is not None:
            self.modes[p] = UnixPex.from_mode(mode)
        return self.stat(p)  # type: ignore[return-value]

    def add_file(self, path: str, data: bytes, mode: int | None = None) -> FsFile:
        p = PurePosixPath(path)
        self.add_dir(str(p.parent))
        self.files[p] = data
        if mode is not None:
            self.modes[p] = UnixPex.from_mode(mode)
        return self.stat(p)  # type: ignore[return-value]

    # contract ---------------------------------------------------------

    def connect(self) -> str | None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True
        return self.banner

    def disconnect(self) -> None:
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    def pwd(self) -> PurePosixPath:
        return self.wrkdir

    def change_dir(self, path: PurePosixPath) -> PurePosixPath:
        target = path if path.is_absolute() else self.wrkdir / path
        if target not in self.dirs:
            raise ProviderError(ProviderErrorKind.NO_SUCH_FILE_OR_DIRECTORY, str(target))
        self.wrkdir = target
        return target

    def list_dir(self, path: PurePosixPath) -> list[FsEntry]:
        path = PurePosixPath(path)
        if path in self.fail_list:
            raise ProviderError(ProviderErrorKind.PERMISSION_DENIED, f"cannot list {path}")
        if path not in self.dirs:
            raise ProviderError(ProviderErrorKind.NO_SUCH_FILE_OR_DIRECTORY, str(path))
        children = [d for d in self.dirs if d != path and d.parent == path]
        children += [f for f in self.files if f.parent == path]
        return sorted((self.stat(c) for c in children), key=lambda e: e.name)

    def stat(self, path: PurePosixPath) -> FsEntry:
        path = PurePosixPath(path)
        if path in self.dirs:
            return FsDirectory(path, path.name or "/", self.modes.get(path), path in self.links)
        if path in self.files:
            return FsFile(path, path.name, len(self.files[path]), self.modes.get(path))
        raise ProviderError(ProviderErrorKind.NO_SUCH_FILE_OR_DIRECTORY, str(path))

    def mkdir(self, path: PurePosixPath) -> None:
        path = PurePosixPath(path)
        if path in self.fail_mkdir:
            raise ProviderError(ProviderErrorKind.PERMISSION_DENIED, f"cannot create {path}")
        if path in self.dirs:
            raise ProviderError(ProviderErrorKind.DIRECTORY_ALREADY_EXISTS, str(path))
        if path.parent not in self.dirs:
            raise ProviderError(ProviderErrorKind.NO_SUCH_FILE_OR_DIRECTORY, str(path.parent))
        self.dirs.add(path)

    def remove(self, entry: FsEntry) -> None:
        path = PurePosixPath(entry.abs_path)
        if isinstance(entry, FsDirectory):
            self.files = {f: d for f, d in self.files.items() if path not in f.parents}
            self.dirs = {d for d in self.dirs if d != path and path not in d.parents}
        elif path in self.files:
            del self.files[path]
        else:
            raise ProviderError(ProviderErrorKind.NO_SUCH_FILE_OR_DIRECTORY, str(path))

    def send_file(self, local: FsFile, remote_path: PurePosixPath):
        remote_path = PurePosixPath(remote_path)
        if remote_path in self.fail_open or remote_path.parent not in self.dirs:
            raise ProviderError(ProviderErrorKind.PERMISSION_DENIED, f"cannot open {remote_path}")
        self.files[remote_path] = b""
        return _MemoryWriter(self, remote_path)

    def recv_file(self, remote: FsFile):
        path = PurePosixPath(remote.abs_path)
        if path in self.fail_open or path not in self.files:
            raise ProviderError(ProviderErrorKind.NO_SUCH_FILE_OR_DIRECTORY, str(path))
        return _MemoryReader(self, path, self.files[path])

    def on_sent(self, writable) -> None:
        writable.close()
        self.finalized.append(writable.path)

    def on_recv(self, readable) -> None:
        readable.close()
        self.finalized.append(readable.path)


@pytest.fixture()
def remote() -> MemoryFileTransfer:
    """Return an empty in-memory remote filesystem."""
    return MemoryFileTransfer()


@pytest.fixture()
def local_root(tmp_path: Path) -> Path:
    """Return a local directory that transfers read from or write into."""
    root = tmp_path / "local"
    root.mkdir()
    return root


@pytest.fixture()
def host(local_root: Path) -> Localhost:
    return Localhost(local_root)


@pytest.fixture()
def sample_tree(local_root: Path) -> Path:
    """Create ``project/`` with a.txt (10 B), b.txt (20 B) and sub/c.txt (5 B)."""
    project = local_root / "project"
    (project / "sub").mkdir(parents=True)
    (project / "a.txt").write_bytes(b"a" * 10)
    (project / "b.txt").write_bytes(b"b" * 20)
    (project / "sub" / "c.txt").write_bytes(b"c" * 5)
    return project
