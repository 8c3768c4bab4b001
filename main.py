"""termxfer — entry point.

Configures logging, connects to the remote host, runs one transfer command
and reports progress as two bars (whole payload and current file).  Ctrl+C aborts the running
transfer; a second Ctrl+C exits.
"""

from __future__ import annotations

import argparse
import getpass
import logging
import signal
import sys
from pathlib import PurePosixPath

import keyring.errors
from rich.console import Console
from rich.progress import (
    BarColumn,
    FileSizeColumn,
    Progress,
    TaskID,
    TextColumn,
    TotalFileSizeColumn,
    TransferSpeedColumn,
)

from termxfer import __version__
from termxfer.config import ConfigManager
from termxfer.connection import (
    ConnectionParams,
    SSHConnection,
    UnknownHostError,
    accept_host_key,
)
from termxfer.filetransfer import SftpFileTransfer
from termxfer.fs import FsEntry, FsFile, ProviderError
from termxfer.host import Localhost
from termxfer.progress import TransferStates
from termxfer.session import SessionController
from termxfer.transfer import Batch, SingleEntry, SingleFile, TransferPayload
from termxfer.utils.path_helpers import human_readable_size, normalize_local_path

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"

EXIT_OK = 0
EXIT_TRANSFER_FAILED = 1
EXIT_CONNECTION_FAILED = 2

log = logging.getLogger("termxfer")


def _configure_logging(verbose: bool, log_file: str | None) -> None:
    """Set up root logging to stderr, or to *log_file* when given."""
    handler_kwargs: dict = {"filename": log_file} if log_file else {"stream": sys.stderr}
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        **handler_kwargs,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)


class ProgressDisplay:
    """Total and current-file progress bars, drawn with rich on stderr."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console(stderr=True)
        self._progress: Progress | None = None
        self._total_task: TaskID | None = None
        self._file_task: TaskID | None = None

    def _start(self) -> Progress:
        progress = Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>3.0f}%"),
            FileSizeColumn(),
            TextColumn("/"),
            TotalFileSizeColumn(),
            TransferSpeedColumn(),
            console=self.console,
        )
        self._total_task = progress.add_task("Total", total=None)
        self._file_task = progress.add_task("", total=None)
        progress.start()
        self._progress = progress
        return progress

    def update(self, label: str, states: TransferStates) -> None:
        progress = self._progress or self._start()
        progress.update(
            self._total_task, total=states.full.total, completed=states.full.transferred
        )
        progress.update(
            self._file_task,
            description=label,
            total=states.partial.total,
            completed=states.partial.transferred,
        )

    def print(self, level: int, message: str) -> None:
        style = "bold red" if level >= logging.ERROR else "yellow"
        self.console.print(f"{logging.getLevelName(level)}: {message}", style=style, markup=False)

    def finish(self) -> None:
        if self._progress is not None:
            self._progress.stop()
            self._progress = None


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="termxfer",
        description="Transfer files and directory trees over SFTP.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("host", help="remote host, optionally as user@host")
    parser.add_argument("-p", "--port", type=int, default=22)
    parser.add_argument("-u", "--user", help="remote username")
    parser.add_argument("-i", "--identity", help="private key file")
    parser.add_argument("-P", "--ask-password", action="store_true", help="prompt for a password")
    parser.add_argument(
        "--save-password",
        action="store_true",
        help="store the prompted password in the OS keyring",
    )
    parser.add_argument("-C", "--remote-dir", help="remote directory to start in")
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("--log-file", help="write logs to this file instead of stderr")

    commands = parser.add_subparsers(dest="command", required=True)

    ls = commands.add_parser("ls", help="list a remote directory")
    ls.add_argument("path", nargs="?", help="remote directory (default: working directory)")

    put = commands.add_parser("put", help="send local files or directories")
    put.add_argument("paths", nargs="+")
    put.add_argument("-d", "--dest", help="remote destination directory")
    put.add_argument("--rename", help="name for the single entry being sent")

    get = commands.add_parser("get", help="receive remote files or directories")
    get.add_argument("paths", nargs="+")
    get.add_argument("-d", "--dest", help="local destination directory")
    get.add_argument("--rename", help="name for the single entry being received")
    return parser


def _payload(entries: list[FsEntry]) -> TransferPayload:
    if len(entries) > 1:
        return Batch(entries)
    entry = entries[0]
    # A lone file must fail loudly; inside a walk its error would only be logged
    return SingleFile(entry) if isinstance(entry, FsFile) else SingleEntry(entry)


def _install_interrupt_handler(session: SessionController) -> None:
    """First Ctrl+C aborts the active transfer; the second one exits."""

    def _handler(signum, frame) -> None:
        if session.transfer.aborted():
            signal.default_int_handler(signum, frame)
        session.abort_transfer()

    signal.signal(signal.SIGINT, _handler)


def _connect(session: SessionController, console: Console) -> bool:
    if session.connect():
        return True
    exc = session.fatal_error
    if isinstance(exc, UnknownHostError) and exc.key is not None:
        console.print(str(exc), markup=False)
        answer = console.input("Trust this host and continue? [y/N] ", markup=False)
        if answer.strip().lower() == "y":
            accept_host_key(exc.hostname, exc.key)
            return session.connect()
    return False


def _save_password(connection: SSHConnection, password: str | None) -> bool:
    """Store the prompted password in the keyring; warn instead of failing."""
    if not password:
        log.warning("--save-password has no effect without -P/--ask-password")
        return False
    try:
        connection.credentials.save(password)
    except keyring.errors.KeyringError as exc:
        log.warning("Could not save password to the keyring: %s", exc)
        return False
    return True


def _cmd_ls(session: SessionController, args: argparse.Namespace) -> int:
    if args.path and not session.remote_changedir(args.path, push=False):
        return EXIT_TRANSFER_FAILED
    print(session.remote.wrkdir)
    for entry in session.remote.files:
        if entry.is_dir:
            print(f"d {'':>10}  {entry.name}/")
        else:
            print(f"- {human_readable_size(entry.size):>10}  {entry.name}")
    return EXIT_OK


def _cmd_put(session: SessionController, args: argparse.Namespace) -> int:
    entries = []
    for path in args.paths:
        try:
            entries.append(session.host.stat(normalize_local_path(path)))
        except ProviderError as exc:
            session.log_and_alert(logging.ERROR, str(exc))
    if not entries:
        return EXIT_TRANSFER_FAILED
    dest = PurePosixPath(args.dest) if args.dest else None
    ok = session.filetransfer_send(_payload(entries), dest, args.rename)
    return EXIT_OK if ok else EXIT_TRANSFER_FAILED


def _cmd_get(session: SessionController, args: argparse.Namespace) -> int:
    entries = []
    for path in args.paths:
        remote_path = PurePosixPath(path)
        if not remote_path.is_absolute():
            remote_path = session.remote.wrkdir / remote_path
        try:
            entries.append(session.client.stat(remote_path))
        except ProviderError as exc:
            session.log_and_alert(logging.ERROR, str(exc))
    if not entries:
        return EXIT_TRANSFER_FAILED
    dest = normalize_local_path(args.dest or ".")
    ok = session.filetransfer_recv(_payload(entries), dest, args.rename)
    return EXIT_OK if ok else EXIT_TRANSFER_FAILED


_COMMANDS = {"ls": _cmd_ls, "put": _cmd_put, "get": _cmd_get}


def main(argv: list[str] | None = None) -> int:
    """Bootstrap and run termxfer."""
    args = _build_parser().parse_args(argv)
    _configure_logging(args.verbose, args.log_file)
    config = ConfigManager()

    username, _, hostname = args.host.rpartition("@")
    username = args.user or username or None
    password = getpass.getpass(f"Password for {args.host}: ") if args.ask_password else None

    params = ConnectionParams(
        host=hostname,
        port=args.port,
        username=username,
        key_path=args.identity,
        timeout=config.get_float("ssh_timeout"),
        keepalive_interval=config.get_int("keepalive_interval"),
        reconnect_retries=config.get_int("reconnect_retries"),
        reconnect_base_delay=config.get_float("reconnect_base_delay"),
    )
    connection = SSHConnection(params, password=password)
    try:
        host = Localhost(config.get("local_start_path") or ".")
    except ProviderError as exc:
        log.warning("%s — starting in the current directory", exc)
        host = Localhost(".")

    progress = ProgressDisplay()

    session = SessionController(
        host,
        SftpFileTransfer(connection),
        config=config,
        address=f"{hostname}:{args.port}",
        entry_directory=args.remote_dir or config.get("remote_start_path"),
        on_progress=progress.update,
        on_alert=progress.print,
    )

    if not _connect(session, progress.console):
        return EXIT_CONNECTION_FAILED
    if args.save_password:
        _save_password(connection, password)

    _install_interrupt_handler(session)
    try:
        return _COMMANDS[args.command](session, args)
    finally:
        progress.finish()
        session.disconnect()


if __name__ == "__main__":
    sys.exit(main())
