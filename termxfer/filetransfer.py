"""Remote filesystem providers.

:class:`FileTransfer` is the capability contract the transfer engine is
written against.  :class:`SftpFileTransfer` implements it on top of an
:class:`~termxfer.connection.SSHConnection`.
"""

from __future__ import annotations

import contextlib
import logging
import stat as _stat
from abc import ABC, abstractmethod
from pathlib import PurePosixPath
from typing import BinaryIO, Iterator

import paramiko

from termxfer.connection import ConnectionError, SSHConnection
from termxfer.fs import (
    FsDirectory,
    FsEntry,
    FsFile,
    ProviderError,
    ProviderErrorKind,
    entry_from_stat,
)
from termxfer.utils.path_helpers import (
    resolve_remote_path,
    to_remote_path,
    validate_remote_path,
)

logger = logging.getLogger(__name__)


class FileTransfer(ABC):
    """Remote filesystem capability contract.

    Every method raises :class:`~termxfer.fs.ProviderError` on failure.
    Streams returned by :meth:`send_file` / :meth:`recv_file` must be handed
    back to :meth:`on_sent` / :meth:`on_recv` once the copy is over, for
    protocols that need an explicit close or commit step.
    """

    @abstractmethod
    def connect(self) -> str | None:
        """Connect and return the server welcome banner, if any."""

    @abstractmethod
    def disconnect(self) -> None: ...

    @abstractmethod
    def is_connected(self) -> bool: ...

    @abstractmethod
    def pwd(self) -> PurePosixPath: ...

    @abstractmethod
    def change_dir(self, path: PurePosixPath) -> PurePosixPath:
        """Change the remote working directory and return the new path."""

    @abstractmethod
    def list_dir(self, path: PurePosixPath) -> list[FsEntry]: ...

    @abstractmethod
    def stat(self, path: PurePosixPath) -> FsEntry: ...

    @abstractmethod
    def mkdir(self, path: PurePosixPath) -> None:
        """Create *path*; raises ``DIRECTORY_ALREADY_EXISTS`` if it exists."""

    @abstractmethod
    def remove(self, entry: FsEntry) -> None: ...

    @abstractmethod
    def send_file(self, local: FsFile, remote_path: PurePosixPath) -> BinaryIO:
        """Open a writable stream for *remote_path*."""

    @abstractmethod
    def recv_file(self, remote: FsFile) -> BinaryIO:
        """Open a readable stream for *remote*."""

    def on_sent(self, writable: BinaryIO) -> None:
        """Finalize a stream returned by :meth:`send_file`."""
        writable.close()

    def on_recv(self, readable: BinaryIO) -> None:
        """Finalize a stream returned by :meth:`recv_file`."""
        readable.close()


# ---------------------------------------------------------------------------
# SFTP
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def _sftp_errors(context: str) -> Iterator[None]:
    """Translate paramiko and socket failures into :class:`ProviderError`."""
    try:
        yield
    except ProviderError:
        raise
    except ConnectionError as exc:
        raise ProviderError(ProviderErrorKind.NOT_CONNECTED, str(exc)) from exc
    except paramiko.SSHException as exc:
        raise ProviderError(ProviderErrorKind.CONNECTION_ERROR, f"{context}: {exc}") from exc
    except OSError as exc:
        raise ProviderError.from_os_error(exc, context) from exc


class _SftpStream:
    """File-like wrapper over ``paramiko.SFTPFile``.

    Mid-stream protocol failures surface as :class:`OSError`, the same type
    local file objects raise, so the copy loop can classify them by side.
    """

    def __init__(self, handle: paramiko.SFTPFile, path: PurePosixPath) -> None:
        self._handle = handle
        self.path = path

    def read(self, size: int = -1) -> bytes:
        try:
            return self._handle.read(size if size >= 0 else None)
        except paramiko.SSHException as exc:
            raise OSError(str(exc)) from exc

    def readinto(self, buffer) -> int:
        data = self.read(len(buffer))
        buffer[: len(data)] = data
        return len(data)

    def write(self, data) -> int:
        try:
            self._handle.write(bytes(data))
        except paramiko.SSHException as exc:
            raise OSError(str(exc)) from exc
        return len(data)

    def close(self) -> None:
        self._handle.close()


class SftpFileTransfer(FileTransfer):
    """SFTP backend built on paramiko's ``SFTPClient``."""

    def __init__(self, connection: SSHConnection) -> None:
        self._connection = connection

    @property
    def _sftp(self) -> paramiko.SFTPClient:
        return self._connection.get_sftp()

    def _checked(self, path: PurePosixPath | str) -> str:
        """Validate *path* and make it absolute, collapsing ``..`` components."""
        path = to_remote_path(path)
        if not validate_remote_path(path):
            raise ProviderError(ProviderErrorKind.IO_ERROR, f"Invalid remote path: {str(path)!r}")
        if not path.is_absolute() or ".." in path.parts:
            path = resolve_remote_path(path, self.pwd())
        return str(path)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def connect(self) -> str | None:
        """Open the SSH session and start in the server's default directory.

        Connection exceptions from :meth:`SSHConnection.connect` propagate
        unchanged; they are fatal to the session.
        """
        self._connection.connect()
        with _sftp_errors("Could not resolve home directory"):
            self._sftp.chdir(self._sftp.normalize("."))
        return self._connection.banner

    def disconnect(self) -> None:
        self._connection.disconnect()

    def is_connected(self) -> bool:
        try:
            self._connection.get_sftp()
        except ConnectionError:
            return False
        return True

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def pwd(self) -> PurePosixPath:
        with _sftp_errors("Could not get working directory"):
            return PurePosixPath(self._sftp.getcwd() or self._sftp.normalize("."))

    def change_dir(self, path: PurePosixPath) -> PurePosixPath:
        target = self._checked(path)
        with _sftp_errors(f"Could not change directory to {target}"):
            self._sftp.chdir(target)
            return PurePosixPath(self._sftp.getcwd())

    def list_dir(self, path: PurePosixPath) -> list[FsEntry]:
        target = self._checked(path)
        with _sftp_errors(f"Could not list {target}"):
            attrs = self._sftp.listdir_attr(target)
        entries = [self._to_entry(PurePosixPath(target), attr) for attr in attrs]
        logger.debug("Listed %d entries in %s", len(entries), target)
        return sorted(entries, key=lambda e: e.name)

    def _to_entry(self, parent: PurePosixPath, attr: paramiko.SFTPAttributes) -> FsEntry:
        path = parent / attr.filename
        mode, size = attr.st_mode, attr.st_size
        symlink = mode is not None and _stat.S_ISLNK(mode)
        if symlink:
            # Classify symlinks by their target
            try:
                target = self._sftp.stat(str(path))
                mode, size = target.st_mode, target.st_size
            except OSError as exc:
                logger.debug("Dangling symlink %s: %s", path, exc)
        return entry_from_stat(path, mode, size, symlink=symlink)

    def stat(self, path: PurePosixPath) -> FsEntry:
        target = self._checked(path)
        with _sftp_errors(f"Could not stat {target}"):
            attr = self._sftp.stat(target)
            link = self._sftp.lstat(target)
        symlink = link.st_mode is not None and _stat.S_ISLNK(link.st_mode)
        return entry_from_stat(PurePosixPath(target), attr.st_mode, attr.st_size, symlink=symlink)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def mkdir(self, path: PurePosixPath) -> None:
        target = self._checked(path)
        # SFTP servers report an existing directory as a generic failure
        try:
            existing = self.stat(PurePosixPath(target))
        except ProviderError:
            existing = None
        if isinstance(existing, FsDirectory):
            raise ProviderError(
                ProviderErrorKind.DIRECTORY_ALREADY_EXISTS,
                f"Directory already exists: {target}",
            )
        with _sftp_errors(f"Could not create {target}"):
            self._sftp.mkdir(target)

    def remove(self, entry: FsEntry) -> None:
        target = self._checked(entry.abs_path)
        if isinstance(entry, FsDirectory) and not entry.symlink:
            for child in self.list_dir(PurePosixPath(target)):
                self.remove(child)
            with _sftp_errors(f"Could not remove {target}"):
                self._sftp.rmdir(target)
        else:
            with _sftp_errors(f"Could not remove {target}"):
                self._sftp.remove(target)
        logger.debug("Removed remote %s", target)

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    def send_file(self, local: FsFile, remote_path: PurePosixPath) -> BinaryIO:
        target = self._checked(remote_path)
        with _sftp_errors(f"Could not open {target} for writing"):
            handle = self._sftp.open(target, "wb")
        # Up to 100 write requests in flight; close() still waits for all ACKs
        handle.set_pipelined(True)
        return _SftpStream(handle, PurePosixPath(target))  # type: ignore[return-value]

    def recv_file(self, remote: FsFile) -> BinaryIO:
        target = self._checked(remote.abs_path)
        with _sftp_errors(f"Could not open {target} for reading"):
            handle = self._sftp.open(target, "rb")
        if remote.size > 0:
            handle.prefetch(remote.size)
        return _SftpStream(handle, PurePosixPath(target))  # type: ignore[return-value]

    def on_sent(self, writable: BinaryIO) -> None:
        with _sftp_errors("Could not finalize upload"):
            writable.close()

    def on_recv(self, readable: BinaryIO) -> None:
        with _sftp_errors("Could not finalize download"):
            readable.close()
