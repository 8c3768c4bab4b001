"""Local filesystem provider.

:class:`Localhost` exposes the local disk through the same small set of
operations the transfer engine expects from any provider.  All failures are
raised as :class:`~termxfer.fs.ProviderError`.
"""

from __future__ import annotations

import logging
import os
import shutil
import sys
from pathlib import Path
from typing import BinaryIO

from termxfer.fs import (
    FsDirectory,
    FsEntry,
    ProviderError,
    ProviderErrorKind,
    UnixPex,
    entry_from_stat,
)

logger = logging.getLogger(__name__)


class Localhost:
    """Local filesystem with its own working directory.

    The working directory is tracked on the instance; the process-wide
    ``os.getcwd()`` is never changed.
    """

    def __init__(self, wrkdir: str | os.PathLike[str]) -> None:
        """Initialise at *wrkdir*.

        Raises:
            ProviderError: If *wrkdir* does not exist or is not a directory.
        """
        path = Path(wrkdir).expanduser()
        if not path.is_dir():
            raise ProviderError(
                ProviderErrorKind.NO_SUCH_FILE_OR_DIRECTORY,
                f"Not a directory: {path}",
            )
        self._wrkdir = path.resolve()

    def _to_abs(self, path: str | os.PathLike[str]) -> Path:
        path = Path(path).expanduser()
        return path if path.is_absolute() else self._wrkdir / path

    # ------------------------------------------------------------------
    # Working directory
    # ------------------------------------------------------------------

    def pwd(self) -> Path:
        return self._wrkdir

    def change_wrkdir(self, path: str | os.PathLike[str]) -> Path:
        """Change the working directory and return the new absolute path."""
        target = self._to_abs(path)
        if not target.is_dir():
            raise ProviderError(
                ProviderErrorKind.NO_SUCH_FILE_OR_DIRECTORY,
                f"No such directory: {target}",
            )
        self._wrkdir = target.resolve()
        logger.debug("Local working directory → %s", self._wrkdir)
        return self._wrkdir

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def scan_dir(self, path: str | os.PathLike[str]) -> list[FsEntry]:
        """Return the entries of *path*, sorted by name."""
        target = self._to_abs(path)
        try:
            names = sorted(os.listdir(target))
        except OSError as exc:
            raise ProviderError.from_os_error(exc, f"Could not scan {target}") from exc

        entries: list[FsEntry] = []
        for name in names:
            try:
                entries.append(self.stat(target / name))
            except ProviderError as exc:
                # Dangling symlinks and races with deletion are skipped
                logger.warning("Skipping %s: %s", target / name, exc)
        return entries

    def stat(self, path: str | os.PathLike[str]) -> FsEntry:
        target = self._to_abs(path)
        try:
            st = os.stat(target)
        except OSError as exc:
            raise ProviderError.from_os_error(exc, f"Could not stat {target}") from exc
        return entry_from_stat(target, st.st_mode, st.st_size, symlink=os.path.islink(target))

    def exists(self, path: str | os.PathLike[str]) -> bool:
        return self._to_abs(path).exists()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def mkdir(self, path: str | os.PathLike[str], recursive: bool = False) -> None:
        """Create a directory.

        With *recursive*, missing parents are created and an existing
        directory is accepted.  Otherwise an existing path raises
        ``DIRECTORY_ALREADY_EXISTS``.
        """
        target = self._to_abs(path)
        try:
            if recursive:
                target.mkdir(parents=True, exist_ok=True)
            else:
                target.mkdir()
        except FileExistsError as exc:
            raise ProviderError(
                ProviderErrorKind.DIRECTORY_ALREADY_EXISTS,
                f"Directory already exists: {target}",
            ) from exc
        except OSError as exc:
            raise ProviderError.from_os_error(exc, f"Could not create {target}") from exc

    def remove(self, entry: FsEntry) -> None:
        """Remove a file, or a directory with all of its contents."""
        path = self._to_abs(entry.abs_path)
        try:
            if isinstance(entry, FsDirectory) and not entry.symlink:
                shutil.rmtree(path)
            else:
                path.unlink()
        except OSError as exc:
            raise ProviderError.from_os_error(exc, f"Could not remove {path}") from exc
        logger.debug("Removed %s", path)

    def chmod(self, path: str | os.PathLike[str], pex: UnixPex) -> None:
        """Apply the permission triple *pex* to *path* (POSIX only)."""
        target = self._to_abs(path)
        if sys.platform == "win32":
            raise ProviderError(
                ProviderErrorKind.UNSUPPORTED_FEATURE,
                "File modes are not supported on this platform",
            )
        try:
            os.chmod(target, pex.to_mode())
        except OSError as exc:
            raise ProviderError.from_os_error(exc, f"Could not chmod {target}") from exc

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    def open_file_read(self, path: str | os.PathLike[str]) -> BinaryIO:
        target = self._to_abs(path)
        try:
            return open(target, "rb")
        except OSError as exc:
            raise ProviderError.from_os_error(exc, f"Could not open {target}") from exc

    def open_file_write(self, path: str | os.PathLike[str]) -> BinaryIO:
        """Open *path* for writing, truncating any existing file."""
        target = self._to_abs(path)
        try:
            return open(target, "wb")
        except OSError as exc:
            raise ProviderError.from_os_error(exc, f"Could not open {target}") from exc
