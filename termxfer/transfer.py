"""File transfer engine.

Moves files and directory trees between the local host and a remote
:class:`~termxfer.filetransfer.FileTransfer` with:

- Recursive, depth-first walks that size the whole payload up front
- Chunked streaming through one reused buffer per file
- Dual progress accounting (current file and whole payload)
- Cooperative cancellation polled at a bounded cadence
- Removal of partially written files after an abort or a write-side error
"""

from __future__ import annotations

import logging
import os
import sys
import time
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path, PurePath, PurePosixPath
from typing import BinaryIO, Callable, Sequence, Union

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
from termxfer.progress import TransferStates
from termxfer.utils.path_helpers import fmt_millis, human_readable_size, to_remote_path

logger = logging.getLogger(__name__)

BUFFER_SIZE = 64 * 1024          # bytes per read/write call
INPUT_POLL_INTERVAL = 0.5        # seconds between input polls during a copy

LogCallback = Callable[[int, str], None]
ProgressCallback = Callable[[str, TransferStates], None]

# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class TransferDirection(Enum):
    """Direction of a transfer."""

    UPLOAD = auto()
    DOWNLOAD = auto()


@dataclass(frozen=True)
class SingleFile:
    """One file with a known size."""

    file: FsFile


@dataclass(frozen=True)
class SingleEntry:
    """One file or directory, expanded during the walk."""

    entry: FsEntry


@dataclass(frozen=True)
class Batch:
    """Several entries processed in order; the rename hint never applies."""

    entries: Sequence[FsEntry]


TransferPayload = Union[SingleFile, SingleEntry, Batch]


def _is_dir_link(entry: FsEntry) -> bool:
    """Directories reached through a symlink are never descended into."""
    return isinstance(entry, FsDirectory) and entry.symlink


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TransferError(Exception):
    """Base class for failures of a single file transfer.

    The concrete subclass tells the caller which side failed, which decides
    whether a partially written destination has to be removed.
    """

    prefix = "File transfer error"

    def __init__(self, cause: BaseException | None = None) -> None:
        super().__init__(f"{self.prefix}: {cause}" if cause is not None else self.prefix)
        self.cause = cause


class TransferAborted(TransferError):
    """The user cancelled the transfer."""

    prefix = "File transfer aborted"


class CouldNotRewind(TransferError):
    prefix = "Failed to seek file"


class LocalIoError(TransferError):
    prefix = "I/O error on localhost"


class RemoteIoError(TransferError):
    prefix = "I/O error on remote"


class HostError(TransferError):
    """The local provider refused to open the file."""

    prefix = "Localhost error"


class ProtocolError(TransferError):
    """The remote provider refused to open the stream."""

    prefix = "File transfer error"


# ---------------------------------------------------------------------------
# TransferEngine
# ---------------------------------------------------------------------------


class TransferEngine:
    """Sends and receives payloads between a :class:`Localhost` and a remote.

    One engine is created per session and reused; its :class:`TransferStates`
    is reset at the start of every :meth:`send` / :meth:`recv`.  Everything
    runs on the caller's thread: ``poll_input`` gives the caller a chance to
    process input (and call :meth:`abort`) and ``on_progress`` to redraw.
    """

    def __init__(
        self,
        host: Localhost,
        client: FileTransfer,
        states: TransferStates | None = None,
        buffer_size: int = BUFFER_SIZE,
        poll_interval: float = INPUT_POLL_INTERVAL,
        poll_input: Callable[[], None] | None = None,
        on_progress: ProgressCallback | None = None,
        on_log: LogCallback | None = None,
        on_alert: LogCallback | None = None,
        on_entry_complete: Callable[[TransferDirection], None] | None = None,
    ) -> None:
        """Initialise the engine.

        Args:
            host: Local filesystem provider.
            client: Remote filesystem provider.
            states: Shared progress/abort state; a fresh one if omitted.
            buffer_size: Bytes moved per read/write call.
            poll_interval: Maximum seconds between ``poll_input`` calls
                while a file is streaming.
            poll_input: Called at least once per file and then every
                ``poll_interval`` seconds.
            on_progress: Called with ``(label, states)`` whenever the rounded
                full or partial percentage changes.
            on_log: Called with ``(logging level, message)`` for every event.
            on_alert: Called with ``(logging level, message)`` for events the
                user must see.
            on_entry_complete: Called after each entry so the caller can
                reload the affected directory listing.
        """
        if buffer_size <= 0:
            raise ValueError("buffer_size must be positive")
        self.host = host
        self.client = client
        self.states = states or TransferStates()
        self.buffer_size = buffer_size
        self.poll_interval = poll_interval
        self.poll_input = poll_input
        self.on_progress = on_progress
        self.on_log = on_log
        self.on_alert = on_alert
        self.on_entry_complete = on_entry_complete
        self._last_drawn: tuple[int, int] | None = None

    # ------------------------------------------------------------------
    # Read-only progress accessors
    # ------------------------------------------------------------------

    @property
    def full_progress(self) -> float:
        return self.states.full.calc_progress()

    @property
    def partial_progress(self) -> float:
        return self.states.partial.calc_progress()

    @property
    def bytes_per_second(self) -> int:
        """Throughput of the file currently streaming."""
        return self.states.partial.calc_bytes_per_second()

    def abort(self) -> None:
        """Request cancellation; observed at the next poll point."""
        self.states.abort()

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    def send(
        self,
        payload: TransferPayload,
        dest_dir: PurePath | str,
        rename: str | None = None,
    ) -> None:
        """Send *payload* from the local host into remote *dest_dir*.

        *rename* only applies to the top-level entry of a single-file or
        single-entry payload.

        Raises:
            TransferError: The single file of a :class:`SingleFile` payload
                failed, or the transfer was aborted.  Failures of files
                inside a directory or batch are reported through the log and
                alert callbacks and do not raise.
        """
        dest_dir = to_remote_path(dest_dir)
        self.states.reset()
        self._last_drawn = None

        if isinstance(payload, SingleFile):
            self.states.full.init(payload.file.size)
            label = str(payload.file.abs_path)
            try:
                self._send_file(payload.file, dest_dir / (rename or payload.file.name))
            finally:
                self._entry_complete(TransferDirection.UPLOAD)
        elif isinstance(payload, SingleEntry):
            self.states.full.init(self._local_size(payload.entry))
            label = str(payload.entry.abs_path)
            self._send_recurse(payload.entry, dest_dir, rename)
        else:
            self.states.full.init(sum(self._local_size(e) for e in payload.entries))
            label = f"{len(payload.entries)} entries"
            for entry in payload.entries:
                if self.states.aborted():
                    break
                self._send_recurse(entry, dest_dir, None)

        if self.states.aborted():
            self._log_and_alert(logging.WARNING, f'Upload aborted for "{label}"!')
            raise TransferAborted()

    def _send_recurse(
        self, entry: FsEntry, dest_dir: PurePosixPath, rename: str | None
    ) -> None:
        remote_path = dest_dir / (rename or entry.name)
        try:
            if isinstance(entry, FsFile):
                try:
                    self._send_file(entry, remote_path)
                except TransferError:
                    pass  # Already reported; siblings still run
                return

            try:
                self.client.mkdir(remote_path)
                self._log(logging.INFO, f'Created directory "{remote_path}"')
            except ProviderError as exc:
                if exc.kind != ProviderErrorKind.DIRECTORY_ALREADY_EXISTS:
                    self._log_and_alert(
                        logging.ERROR,
                        f'Failed to create directory "{remote_path}": {exc}',
                    )
                    return
                self._log(logging.INFO, f'Directory "{remote_path}" already exists on remote')

            try:
                children = self.host.scan_dir(entry.abs_path)
            except ProviderError as exc:
                self._log_and_alert(
                    logging.ERROR, f'Could not scan directory "{entry.abs_path}": {exc}'
                )
                return
            for child in children:
                if self.states.aborted():
                    break
                if _is_dir_link(child):
                    self._log(
                        logging.WARNING,
                        f'Skipped symbolic link to directory "{child.abs_path}"',
                    )
                    continue
                self._send_recurse(child, remote_path, None)
        finally:
            self._entry_complete(TransferDirection.UPLOAD)

    def _send_file(self, local: FsFile, remote_path: PurePosixPath) -> None:
        """Send one file, removing the remote copy if it was left incomplete."""
        try:
            self._send_one(local, remote_path)
        except TransferError as err:
            self._log_and_alert(logging.ERROR, f"Failed to upload file {local.name}: {err}")
            if isinstance(err, (TransferAborted, RemoteIoError)):
                self._remove_partial(self.client, remote_path)
            raise

    def _send_one(self, local: FsFile, remote_path: PurePosixPath) -> None:
        try:
            reader = self.host.open_file_read(local.abs_path)
        except ProviderError as exc:
            raise HostError(exc) from exc

        with reader:
            try:
                writer = self.client.send_file(local, remote_path)
            except ProviderError as exc:
                raise ProtocolError(exc) from exc
            try:
                try:
                    file_size = reader.seek(0, os.SEEK_END)
                    reader.seek(0)
                except OSError as exc:
                    raise CouldNotRewind(exc) from exc
                self.states.partial.init(file_size)
                self._copy(
                    reader,
                    writer,
                    file_size,
                    read_error=LocalIoError,
                    write_error=RemoteIoError,
                    label=f'Uploading "{local.name}"…',
                )
            finally:
                self._finalize(self.client.on_sent, writer)

        self._log_saved(local.abs_path, remote_path)

    # ------------------------------------------------------------------
    # Receive
    # ------------------------------------------------------------------

    def recv(
        self,
        payload: TransferPayload,
        local_dir: PurePath | str,
        rename: str | None = None,
    ) -> None:
        """Receive *payload* from the remote into local *local_dir*.

        Mirror of :meth:`send`, with the same *rename* and error semantics.
        """
        local_dir = Path(local_dir)
        self.states.reset()
        self._last_drawn = None

        if isinstance(payload, SingleFile):
            self.states.full.init(payload.file.size)
            label = str(payload.file.abs_path)
            try:
                self._recv_file(payload.file, local_dir / (rename or payload.file.name))
            finally:
                self._entry_complete(TransferDirection.DOWNLOAD)
        elif isinstance(payload, SingleEntry):
            self.states.full.init(self._remote_size(payload.entry))
            label = str(payload.entry.abs_path)
            self._recv_recurse(payload.entry, local_dir, rename)
        else:
            self.states.full.init(sum(self._remote_size(e) for e in payload.entries))
            label = f"{len(payload.entries)} entries"
            for entry in payload.entries:
                if self.states.aborted():
                    break
                self._recv_recurse(entry, local_dir, None)

        if self.states.aborted():
            self._log_and_alert(logging.WARNING, f'Download aborted for "{label}"!')
            raise TransferAborted()

    def _recv_recurse(self, entry: FsEntry, local_dir: Path, rename: str | None) -> None:
        local_path = local_dir / (rename or entry.name)
        try:
            if isinstance(entry, FsFile):
                try:
                    self._recv_file(entry, local_path)
                except TransferError:
                    pass
                return

            try:
                self.host.mkdir(local_path, recursive=True)
            except ProviderError as exc:
                self._log_and_alert(
                    logging.ERROR, f'Failed to create directory "{local_path}": {exc}'
                )
                return
            self._log(logging.INFO, f'Created directory "{local_path}"')

            try:
                children = self.client.list_dir(entry.abs_path)
            except ProviderError as exc:
                self._log_and_alert(
                    logging.ERROR, f'Could not scan directory "{entry.abs_path}": {exc}'
                )
                children = []
            for child in children:
                if self.states.aborted():
                    break
                if _is_dir_link(child):
                    self._log(
                        logging.WARNING,
                        f'Skipped symbolic link to directory "{child.abs_path}"',
                    )
                    continue
                self._recv_recurse(child, local_path, None)
            # Applied last so a read-only source mode cannot block the children
            self._apply_mode(local_path, entry.unix_pex)
        finally:
            self._entry_complete(TransferDirection.DOWNLOAD)

    def _recv_file(self, remote: FsFile, local_path: Path) -> None:
        """Receive one file, removing the local copy if it was left incomplete."""
        try:
            self._recv_one(remote, local_path)
        except TransferError as err:
            self._log_and_alert(logging.ERROR, f"Could not download file {remote.name}: {err}")
            if isinstance(err, (TransferAborted, LocalIoError)):
                self._remove_partial(self.host, local_path)
            raise

    def _recv_one(self, remote: FsFile, local_path: Path) -> None:
        try:
            reader = self.client.recv_file(remote)
        except ProviderError as exc:
            raise ProtocolError(exc) from exc

        try:
            try:
                writer = self.host.open_file_write(local_path)
            except ProviderError as exc:
                raise HostError(exc) from exc
            with writer:
                self.states.partial.init(remote.size)
                self._copy(
                    reader,
                    writer,
                    remote.size,
                    read_error=RemoteIoError,
                    write_error=LocalIoError,
                    label=f'Downloading "{remote.name}"…',
                )
        finally:
            self._finalize(self.client.on_recv, reader)

        self._apply_mode(local_path, remote.unix_pex)
        self._log_saved(remote.abs_path, local_path)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def _copy(
        self,
        reader: BinaryIO,
        writer: BinaryIO,
        size: int,
        read_error: type[TransferError],
        write_error: type[TransferError],
        label: str,
    ) -> None:
        """Stream *size* bytes from *reader* to *writer*.

        Input is polled before the first chunk and then at most every
        ``poll_interval`` seconds; the abort flag is checked before every
        chunk.  Read failures raise *read_error*, write failures
        *write_error*.

        Raises:
            TransferAborted: The abort flag was observed.
        """
        buffer = bytearray(self.buffer_size)
        view = memoryview(buffer)
        full = self.states.full
        remaining = size

        self._poll_input()
        last_poll = time.monotonic()
        while remaining > 0 and not self.states.aborted():
            now = time.monotonic()
            if now - last_poll >= self.poll_interval:
                self._poll_input()
                last_poll = now
                if self.states.aborted():
                    break

            try:
                bytes_read = reader.readinto(view[: min(self.buffer_size, remaining)])
            except OSError as exc:
                raise read_error(exc) from exc
            if not bytes_read:
                logger.warning("Source ended %d bytes early (%s)", remaining, label)
                break

            written = 0
            while written < bytes_read:
                try:
                    count = writer.write(view[written:bytes_read])
                except OSError as exc:
                    raise write_error(exc) from exc
                if count == 0:
                    raise write_error(OSError("write returned 0 bytes"))
                # Writers that return None wrote everything they were given
                written = bytes_read if count is None else written + count

            remaining -= bytes_read
            self.states.partial.update_progress(bytes_read)
            full.update_progress(min(bytes_read, max(0, full.total - full.transferred)))
            self._draw(label)

        if self.states.aborted():
            raise TransferAborted()

    def _finalize(self, finalizer: Callable[[BinaryIO], None], stream: BinaryIO) -> None:
        try:
            finalizer(stream)
        except (ProviderError, OSError) as exc:
            self._log(logging.WARNING, f'Could not finalize remote stream: "{exc}"')

    # ------------------------------------------------------------------
    # Sizing
    # ------------------------------------------------------------------

    def _local_size(self, entry: FsEntry) -> int:
        if isinstance(entry, FsFile):
            return entry.size
        try:
            children = self.host.scan_dir(entry.abs_path)
        except ProviderError as exc:
            self._log(logging.ERROR, f"Could not list directory {entry.abs_path}: {exc}")
            return 0
        return sum(self._local_size(c) for c in children if not _is_dir_link(c))

    def _remote_size(self, entry: FsEntry) -> int:
        if isinstance(entry, FsFile):
            return entry.size
        try:
            children = self.client.list_dir(entry.abs_path)
        except ProviderError as exc:
            self._log(logging.ERROR, f"Could not list directory {entry.abs_path}: {exc}")
            return 0
        return sum(self._remote_size(c) for c in children if not _is_dir_link(c))

    # ------------------------------------------------------------------
    # Cleanup and metadata
    # ------------------------------------------------------------------

    def _remove_partial(self, provider: Localhost | FileTransfer, path: PurePath) -> None:
        """Stat *path* on *provider* and remove it if it exists."""
        try:
            entry = provider.stat(path)
        except ProviderError as exc:
            if exc.kind == ProviderErrorKind.NO_SUCH_FILE_OR_DIRECTORY:
                logger.debug("Nothing to clean up at %s", path)
                return
            self._log(logging.ERROR, f"Could not remove created file {path}: {exc}")
            return
        try:
            provider.remove(entry)
        except ProviderError as exc:
            self._log(logging.ERROR, f"Could not remove created file {path}: {exc}")
            return
        logger.info("Removed incomplete file %s", path)

    def _apply_mode(self, path: Path, pex: UnixPex | None) -> None:
        if pex is None or sys.platform == "win32":
            return
        try:
            self.host.chmod(path, pex)
        except ProviderError as exc:
            self._log(logging.ERROR, f'Could not apply file mode {pex} to "{path}": {exc}')

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _log_saved(self, source: PurePath, dest: PurePath) -> None:
        partial = self.states.partial
        self._log(
            logging.INFO,
            f'Saved file "{source}" to "{dest}" '
            f"(took {fmt_millis(partial.elapsed())} seconds; "
            f"at {human_readable_size(partial.calc_bytes_per_second())}/s)",
        )

    def _log(self, level: int, message: str) -> None:
        logger.log(level, message)
        if self.on_log:
            try:
                self.on_log(level, message)
            except Exception:
                logger.exception("Exception in on_log callback")

    def _log_and_alert(self, level: int, message: str) -> None:
        self._log(level, message)
        if self.on_alert:
            try:
                self.on_alert(level, message)
            except Exception:
                logger.exception("Exception in on_alert callback")

    def _poll_input(self) -> None:
        if self.poll_input:
            try:
                self.poll_input()
            except Exception:
                logger.exception("Exception in poll_input callback")

    def _draw(self, label: str) -> None:
        """Notify ``on_progress`` only when a rounded percentage changed."""
        current = (
            self.states.full.calc_progress_percentage(),
            self.states.partial.calc_progress_percentage(),
        )
        if current == self._last_drawn:
            return
        self._last_drawn = current
        if self.on_progress:
            try:
                self.on_progress(label, self.states)
            except Exception:
                logger.exception("Exception in on_progress callback")

    def _entry_complete(self, direction: TransferDirection) -> None:
        if self.on_entry_complete:
            try:
                self.on_entry_complete(direction)
            except Exception:
                logger.exception("Exception in on_entry_complete callback")
