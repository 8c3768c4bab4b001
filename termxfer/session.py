"""File transfer session controller.

Owns the local and remote providers and the :class:`TransferEngine`, keeps
the explorer state of both sides and turns user intents ("send these
entries", "download this file") into engine calls.  Everything the user should
read ends up in the session log; failures also go to the alert queue.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePath, PurePosixPath
from typing import Callable

from termxfer.config import ConfigManager
from termxfer.filetransfer import FileTransfer
from termxfer.fs import FsEntry, FsFile, ProviderError
from termxfer.host import Localhost
from termxfer.progress import TransferStates
from termxfer.transfer import (
    ProgressCallback,
    SingleFile,
    TransferDirection,
    TransferEngine,
    TransferError,
    TransferPayload,
)
from termxfer.utils.path_helpers import to_remote_path

logger = logging.getLogger(__name__)

_DIRSTACK_SIZE = 16


@dataclass
class LogRecord:
    """One line of the session log."""

    level: int
    message: str
    time: datetime = field(default_factory=datetime.now)

    @property
    def level_name(self) -> str:
        return logging.getLevelName(self.level)

    def __str__(self) -> str:
        return f"{self.time:%H:%M:%S} [{self.level_name}] {self.message}"


class FileExplorer:
    """Working directory, listing and back-stack of one side of the session."""

    def __init__(self, wrkdir: PurePath, show_hidden: bool = False) -> None:
        self.wrkdir = wrkdir
        self.show_hidden = show_hidden
        self.files: list[FsEntry] = []
        self._dirstack: deque[PurePath] = deque(maxlen=_DIRSTACK_SIZE)

    def set_files(self, files: list[FsEntry]) -> None:
        if not self.show_hidden:
            files = [f for f in files if not f.name.startswith(".")]
        # Directories first, then by name
        self.files = sorted(files, key=lambda f: (not f.is_dir, f.name.lower()))

    def pushd(self, path: PurePath) -> None:
        self._dirstack.append(path)

    def popd(self) -> PurePath | None:
        return self._dirstack.pop() if self._dirstack else None

    def __len__(self) -> int:
        return len(self.files)


class SessionController:
    """Glue between user intents and the transfer engine.

    Args:
        host: Local filesystem provider.
        client: Remote filesystem provider.
        config: Settings source; defaults are used when omitted.
        address: Human-readable remote address, used in log messages.
        entry_directory: Remote directory to enter right after connecting.
        poll_input: Forwarded to the engine; called during long copies.
        on_progress: Forwarded to the engine; called to redraw progress.
        on_alert: Called with ``(level, message)`` for every alert.
    """

    def __init__(
        self,
        host: Localhost,
        client: FileTransfer,
        config: ConfigManager | None = None,
        address: str = "",
        entry_directory: PurePosixPath | str | None = None,
        poll_input: Callable[[], None] | None = None,
        on_progress: ProgressCallback | None = None,
        on_alert: Callable[[int, str], None] | None = None,
    ) -> None:
        self.host = host
        self.client = client
        self.address = address
        self.entry_directory = to_remote_path(entry_directory) if entry_directory else None
        self.on_alert = on_alert

        def setting(key: str, default):
            return config.get(key, default) if config else default

        show_hidden = bool(setting("show_hidden_files", False))
        self.local = FileExplorer(host.pwd(), show_hidden)
        self.remote = FileExplorer(PurePosixPath("/"), show_hidden)
        self.log_records: deque[LogRecord] = deque(maxlen=int(setting("log_max_entries", 256)))
        self.alerts: deque[LogRecord] = deque()
        self.fatal_error: Exception | None = None
        self._cache_dir: Path | None = None

        self.transfer = TransferStates()
        self.engine = TransferEngine(
            host,
            client,
            states=self.transfer,
            buffer_size=config.get_int("transfer_buffer_size") if config else 64 * 1024,
            poll_interval=config.get_float("input_poll_interval") if config else 0.5,
            poll_input=poll_input,
            on_progress=on_progress,
            on_log=self._record,
            on_alert=self._alert,
            on_entry_complete=self._on_entry_complete,
        )

    # ------------------------------------------------------------------
    # Log and alerts
    # ------------------------------------------------------------------

    def _record(self, level: int, message: str) -> None:
        # Newest first, like the log panel renders it
        self.log_records.appendleft(LogRecord(level, message))

    def _alert(self, level: int, message: str) -> None:
        self.alerts.append(LogRecord(level, message))
        if self.on_alert:
            try:
                self.on_alert(level, message)
            except Exception:
                logger.exception("Exception in on_alert callback")

    def log(self, level: int, message: str) -> None:
        logger.log(level, message)
        self._record(level, message)

    def log_and_alert(self, level: int, message: str) -> None:
        self.log(level, message)
        self._alert(level, message)

    def take_alerts(self) -> list[LogRecord]:
        """Return and clear the pending alerts."""
        pending = list(self.alerts)
        self.alerts.clear()
        return pending

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(self) -> bool:
        """Connect to the remote and load both listings.

        A failure is fatal to the session: it is stored in
        :attr:`fatal_error`, alerted, and ``False`` is returned.
        """
        try:
            banner = self.client.connect()
        except Exception as exc:
            self.fatal_error = exc
            self.log_and_alert(logging.CRITICAL, f"Could not connect to {self.address}: {exc}")
            return False

        self.fatal_error = None
        if banner:
            self.log(logging.INFO, f"Established connection with '{self.address}': \"{banner}\"")
        else:
            self.log(logging.INFO, f"Established connection with '{self.address}'")
        if self.entry_directory is not None:
            self.remote_changedir(self.entry_directory, push=False)
        self.reload_remote_dir()
        self.reload_local_dir()
        return True

    def disconnect(self) -> None:
        self.log(logging.INFO, f"Disconnecting from {self.address}…")
        try:
            self.client.disconnect()
        finally:
            if self._cache_dir is not None:
                shutil.rmtree(self._cache_dir, ignore_errors=True)
                self._cache_dir = None

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    def reload_remote_dir(self) -> None:
        try:
            wrkdir = self.client.pwd()
        except ProviderError as exc:
            logger.warning("Could not get remote working directory: %s", exc)
            return
        self._remote_scan(wrkdir)
        self.remote.wrkdir = wrkdir

    def reload_local_dir(self) -> None:
        wrkdir = self.host.pwd()
        self._local_scan(wrkdir)
        self.local.wrkdir = wrkdir

    def _local_scan(self, path: Path) -> None:
        try:
            self.local.set_files(self.host.scan_dir(path))
        except ProviderError as exc:
            self.log_and_alert(logging.ERROR, f"Could not scan current directory: {exc}")

    def _remote_scan(self, path: PurePosixPath) -> None:
        try:
            self.remote.set_files(self.client.list_dir(path))
        except ProviderError as exc:
            self.log_and_alert(logging.ERROR, f"Could not scan current directory: {exc}")

    def _on_entry_complete(self, direction: TransferDirection) -> None:
        if direction == TransferDirection.UPLOAD:
            self.reload_remote_dir()
        else:
            self.reload_local_dir()

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def local_changedir(self, path: PurePath | str, push: bool = True) -> bool:
        prev_dir = self.local.wrkdir
        try:
            new_dir = self.host.change_wrkdir(path)
        except ProviderError as exc:
            self.log_and_alert(logging.ERROR, f"Could not change working directory: {exc}")
            return False
        self.log(logging.INFO, f"Changed directory on local: {new_dir}")
        self.reload_local_dir()
        if push:
            self.local.pushd(prev_dir)
        return True

    def remote_changedir(self, path: PurePath | str, push: bool = True) -> bool:
        prev_dir = self.remote.wrkdir
        try:
            new_dir = self.client.change_dir(to_remote_path(path))
        except ProviderError as exc:
            self.log_and_alert(logging.ERROR, f"Could not change working directory: {exc}")
            return False
        self.log(logging.INFO, f"Changed directory on remote: {new_dir}")
        self.reload_remote_dir()
        if push:
            self.remote.pushd(prev_dir)
        return True

    def local_go_back(self) -> bool:
        prev = self.local.popd()
        return prev is not None and self.local_changedir(prev, push=False)

    def remote_go_back(self) -> bool:
        prev = self.remote.popd()
        return prev is not None and self.remote_changedir(prev, push=False)

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def abort_transfer(self) -> None:
        """Request cancellation of the active transfer.

        Safe to call from a signal handler: it only sets a flag.
        """
        self.engine.abort()

    def filetransfer_send(
        self,
        payload: TransferPayload,
        remote_dir: PurePosixPath | str | None = None,
        dst_name: str | None = None,
    ) -> bool:
        """Send *payload* into *remote_dir* (default: remote working directory).

        Returns ``True`` on success.  Failures have already been logged and
        alerted by the engine.
        """
        dest = to_remote_path(remote_dir) if remote_dir is not None else self.remote.wrkdir
        try:
            self.engine.send(payload, dest, dst_name)
        except TransferError as exc:
            logger.debug("Upload to %s failed: %s", dest, exc)
            return False
        return True

    def filetransfer_recv(
        self,
        payload: TransferPayload,
        local_dir: PurePath | str | None = None,
        dst_name: str | None = None,
    ) -> bool:
        """Receive *payload* into *local_dir* (default: local working directory)."""
        dest = Path(local_dir) if local_dir is not None else Path(self.local.wrkdir)
        try:
            self.engine.recv(payload, dest, dst_name)
        except TransferError as exc:
            logger.debug("Download to %s failed: %s", dest, exc)
            return False
        return True

    def download_file_as_temp(self, file: FsFile) -> Path:
        """Download *file* into the session cache directory and return its path.

        Raises:
            TransferError: The download failed or was aborted.
        """
        if self._cache_dir is None:
            self._cache_dir = Path(tempfile.mkdtemp(prefix="termxfer-"))
        try:
            self.engine.recv(SingleFile(file), self._cache_dir)
        except TransferError as exc:
            self.log(
                logging.ERROR,
                f"Could not download {file.abs_path} to temporary file: {exc}",
            )
            raise
        return self._cache_dir / file.name
