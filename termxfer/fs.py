"""Filesystem entry snapshots and provider errors.

Entries are immutable snapshots produced by a provider's listing or stat
call.  They are never live references into a tree: the transfer engine
consumes them as-is and does not re-validate them mid-transfer.
"""

from __future__ import annotations

import errno
import stat as _stat
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import PurePath
from typing import NamedTuple, Optional, Union


class UnixPex(NamedTuple):
    """Unix permission triple; each member is a 0-7 rwx bitmask."""

    owner: int
    group: int
    others: int

    @classmethod
    def from_mode(cls, mode: int) -> "UnixPex":
        """Build from the permission bits of an ``st_mode`` value."""
        return cls((mode >> 6) & 0o7, (mode >> 3) & 0o7, mode & 0o7)

    def to_mode(self) -> int:
        return (self.owner << 6) | (self.group << 3) | self.others

    def __str__(self) -> str:
        return f"{self.to_mode():03o}"


@dataclass(frozen=True)
class FsFile:
    """A regular file as seen by a provider at scan time."""

    abs_path: PurePath
    name: str
    size: int
    unix_pex: Optional[UnixPex] = None

    @property
    def is_dir(self) -> bool:
        return False


@dataclass(frozen=True)
class FsDirectory:
    """A directory as seen by a provider at scan time.

    ``symlink`` is set when the entry was reached through a symbolic link;
    transfer walks do not descend into such directories.
    """

    abs_path: PurePath
    name: str
    unix_pex: Optional[UnixPex] = None
    symlink: bool = False

    @property
    def is_dir(self) -> bool:
        return True


FsEntry = Union[FsFile, FsDirectory]


def entry_from_stat(
    path: PurePath,
    st_mode: int | None,
    st_size: int | None,
    symlink: bool = False,
) -> FsEntry:
    """Build an :data:`FsEntry` from raw ``stat`` fields of the link target."""
    name = path.name or str(path)
    pex = UnixPex.from_mode(st_mode) if st_mode is not None else None
    if st_mode is not None and _stat.S_ISDIR(st_mode):
        return FsDirectory(abs_path=path, name=name, unix_pex=pex, symlink=symlink)
    return FsFile(abs_path=path, name=name, size=st_size or 0, unix_pex=pex)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ProviderErrorKind(Enum):
    """Machine-checkable classification of a provider failure."""

    DIRECTORY_ALREADY_EXISTS = auto()
    NO_SUCH_FILE_OR_DIRECTORY = auto()
    PERMISSION_DENIED = auto()
    IO_ERROR = auto()
    UNSUPPORTED_FEATURE = auto()
    NOT_CONNECTED = auto()
    CONNECTION_ERROR = auto()


_ERRNO_KINDS = {
    errno.EEXIST: ProviderErrorKind.DIRECTORY_ALREADY_EXISTS,
    errno.ENOENT: ProviderErrorKind.NO_SUCH_FILE_OR_DIRECTORY,
    errno.EACCES: ProviderErrorKind.PERMISSION_DENIED,
    errno.EPERM: ProviderErrorKind.PERMISSION_DENIED,
}


class ProviderError(Exception):
    """Raised by local and remote providers.

    Carries a :class:`ProviderErrorKind` so callers can branch on the
    failure (e.g. "directory already exists") without inspecting the
    backend's own exception types.
    """

    def __init__(self, kind: ProviderErrorKind, message: str = "") -> None:
        super().__init__(message or kind.name.replace("_", " ").lower())
        self.kind = kind

    @classmethod
    def from_os_error(cls, exc: OSError, context: str = "") -> "ProviderError":
        """Classify *exc* by errno, prefixing the message with *context*."""
        kind = _ERRNO_KINDS.get(exc.errno, ProviderErrorKind.IO_ERROR)
        detail = exc.strerror or str(exc)
        message = f"{context}: {detail}" if context else detail
        err = cls(kind, message)
        err.__cause__ = exc
        return err
