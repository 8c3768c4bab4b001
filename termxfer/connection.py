"""SSH session underneath the SFTP provider.

:class:`SSHConnection` opens one paramiko ``SSHClient`` plus its SFTP
channel, watches the transport from a daemon thread and re-dials with
exponential backoff when the link drops.  Unknown host keys are surfaced as
:class:`UnknownHostError` so the front end can ask the user before trusting
them.  Saved passwords live in the OS keyring via :class:`CredentialStore`.
"""

from __future__ import annotations

import logging
import socket
import threading
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Iterator, Optional

import keyring
import keyring.errors
import paramiko

logger = logging.getLogger(__name__)

StateChangeCallback = Callable[["ConnectionState", Optional[str]], None]

KNOWN_HOSTS = Path.home() / ".ssh" / "known_hosts"
_WATCHDOG_PERIOD = 5  # seconds between transport liveness checks
_WINDOW_SIZE = 16 * 1024 * 1024


class UnknownHostError(Exception):
    """The server presented a host key that is not trusted yet.

    ``key`` is ``None`` when the key is known but does not match, in which
    case it must not be offered for acceptance.
    """

    def __init__(
        self,
        message: str,
        hostname: str = "",
        key_type: str = "",
        fingerprint: str = "",
        key: paramiko.PKey | None = None,
    ) -> None:
        super().__init__(message)
        self.hostname = hostname
        self.key_type = key_type
        self.fingerprint = fingerprint
        self.key = key


class ConnectionError(Exception):  # noqa: A001
    """An SFTP channel was requested while the session is down."""


class _RejectUnknownHost(paramiko.MissingHostKeyPolicy):
    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        fingerprint = ":".join(f"{b:02x}" for b in key.get_fingerprint())
        raise UnknownHostError(
            f"The authenticity of host '{hostname}' can't be established.\n"
            f"{key.get_name()} key fingerprint (MD5) is {fingerprint}.",
            hostname=hostname,
            key_type=key.get_name(),
            fingerprint=fingerprint,
            key=key,
        )


def accept_host_key(hostname: str, key: paramiko.PKey, known_hosts: Path | None = None) -> None:
    """Trust *key* for *hostname* by appending it to the known-hosts file."""
    path = known_hosts or KNOWN_HOSTS
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    keys = paramiko.HostKeys(str(path)) if path.exists() else paramiko.HostKeys()
    keys.add(hostname, key.get_name(), key)
    keys.save(str(path))
    logger.info("Added %s key for %s to %s", key.get_name(), hostname, path)


class CredentialStore:
    """Passwords for ``user@host:port`` accounts, kept in the OS keyring."""

    service = "termxfer"

    def __init__(self, account: str) -> None:
        self.account = account

    def load(self) -> str | None:
        try:
            return keyring.get_password(self.service, self.account)
        except keyring.errors.KeyringError as exc:
            logger.warning("Keyring unavailable: %s", exc)
            return None

    def save(self, password: str) -> None:
        keyring.set_password(self.service, self.account, password)
        logger.debug("Saved password for %s", self.account)

    def forget(self) -> None:
        try:
            keyring.delete_password(self.service, self.account)
        except keyring.errors.PasswordDeleteError:
            logger.debug("No saved password for %s", self.account)


class ConnectionState(Enum):
    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    RECONNECTING = auto()
    ERROR = auto()


@dataclass
class ConnectionParams:
    """Where and how to log in.  Built once per CLI invocation."""

    host: str
    port: int = 22
    username: str | None = None
    key_path: str | None = None
    timeout: float = 15.0
    keepalive_interval: int = 30
    reconnect_retries: int = 3
    reconnect_base_delay: float = 2.0

    @property
    def account(self) -> str:
        return f"{self.username or ''}@{self.host}:{self.port}"

    def backoff_delays(self) -> Iterator[float]:
        """Yield the wait before each reconnect attempt, doubling every time."""
        delay = self.reconnect_base_delay
        for _ in range(self.reconnect_retries):
            yield delay
            delay *= 2


def _close_quietly(client: paramiko.SSHClient) -> None:
    try:
        client.close()
    except (OSError, paramiko.SSHException) as exc:
        logger.debug("Error while closing SSH client: %s", exc)


class SSHConnection:
    """One SSH login with an SFTP channel on top.

    State changes happen under ``_lock``; listeners are told afterwards,
    outside it.  The watchdog thread only reads the
    transport; transfers run on the caller's thread and borrow the channel
    through :meth:`get_sftp`.
    """

    def __init__(
        self,
        params: ConnectionParams,
        password: str | None = None,
        on_state_change: StateChangeCallback | None = None,
    ) -> None:
        """Prepare the connection; nothing is dialled until :meth:`connect`.

        Without an explicit *password* the keyring is consulted, then the
        SSH agent and key files.
        """
        self.params = params
        self.credentials = CredentialStore(params.account)
        self._password = password
        self._on_state_change = on_state_change

        self._client: paramiko.SSHClient | None = None
        self._sftp: paramiko.SFTPClient | None = None
        self._banner: str | None = None
        self._state = ConnectionState.DISCONNECTED
        self._lock = threading.Lock()
        self._closing = threading.Event()
        self._watchdog: threading.Thread | None = None

    @property
    def host(self) -> str:
        return self.params.host

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def banner(self) -> str | None:
        """Text the server sent before authentication, if any."""
        return self._banner

    def _transition(self, state: ConnectionState, message: str | None = None) -> None:
        with self._lock:
            self._state = state
        self._notify(state, message)

    def _notify(self, state: ConnectionState, message: str | None = None) -> None:
        # Must be called without _lock held; listeners may read the state
        logger.debug("%s: %s%s", self.host, state.name, f" ({message})" if message else "")
        if self._on_state_change:
            try:
                self._on_state_change(state, message)
            except Exception:
                logger.exception("Exception in on_state_change callback")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Log in and open the SFTP channel.

        Raises:
            UnknownHostError: The host key is not trusted.
            paramiko.AuthenticationException: Credentials were rejected.
            OSError: The host could not be reached.
        """
        with self._lock:
            if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
                return
            self._state = ConnectionState.CONNECTING
        self._notify(ConnectionState.CONNECTING)
        try:
            self._dial()
        except Exception as exc:
            self._transition(ConnectionState.ERROR, str(exc))
            raise

    def _dial(self) -> None:
        params = self.params
        logger.info("Connecting to %s", params.account)

        client = paramiko.SSHClient()
        if KNOWN_HOSTS.exists():
            client.load_host_keys(str(KNOWN_HOSTS))
        client.set_missing_host_key_policy(_RejectUnknownHost())

        options: dict = {
            "hostname": params.host,
            "port": params.port,
            "username": params.username,
            "timeout": params.timeout,
            "allow_agent": True,
            "look_for_keys": params.key_path is None,
        }
        password = self._password or self.credentials.load()
        if password:
            options["password"] = password
        if params.key_path:
            options["key_filename"] = params.key_path

        try:
            client.connect(**options)
        except paramiko.BadHostKeyException as exc:
            _close_quietly(client)
            raise UnknownHostError(
                f"Host key for {params.host} does not match known_hosts",
                hostname=params.host,
            ) from exc
        except (UnknownHostError, paramiko.SSHException, socket.timeout, OSError):
            _close_quietly(client)
            raise

        transport = client.get_transport()
        if transport is not None:
            transport.set_keepalive(params.keepalive_interval)
            transport.default_window_size = _WINDOW_SIZE
            banner = transport.get_banner()
            if isinstance(banner, bytes):
                banner = banner.decode("utf-8", errors="replace")
            self._banner = banner.strip() if banner else None

        sftp = client.open_sftp()
        with self._lock:
            self._client, self._sftp = client, sftp
            self._closing.clear()
            self._state = ConnectionState.CONNECTED
        self._notify(ConnectionState.CONNECTED)

        self._watchdog = threading.Thread(
            target=self._watch, name=f"watchdog-{params.host}", daemon=True
        )
        self._watchdog.start()

    def disconnect(self) -> None:
        with self._lock:
            self._closing.set()
            if self._sftp is not None:
                try:
                    self._sftp.close()
                except (OSError, paramiko.SSHException) as exc:
                    logger.debug("Error while closing SFTP channel: %s", exc)
            if self._client is not None:
                _close_quietly(self._client)
            self._client = self._sftp = None
            self._state = ConnectionState.DISCONNECTED
        self._notify(ConnectionState.DISCONNECTED)

        watchdog, self._watchdog = self._watchdog, None
        if watchdog is not None and watchdog is not threading.current_thread():
            watchdog.join(timeout=_WATCHDOG_PERIOD + 1)
        logger.info("Disconnected from %s", self.host)

    # ------------------------------------------------------------------
    # Watchdog
    # ------------------------------------------------------------------

    def _watch(self) -> None:
        while not self._closing.wait(timeout=_WATCHDOG_PERIOD):
            with self._lock:
                if self._state != ConnectionState.CONNECTED:
                    return
                transport = self._client.get_transport() if self._client else None
                if transport is not None and transport.is_active():
                    continue
            logger.warning("Lost connection to %s", self.host)
            self._redial()
            return

    def _redial(self) -> None:
        self._transition(ConnectionState.RECONNECTING)

        for attempt, delay in enumerate(self.params.backoff_delays(), start=1):
            if self._closing.wait(timeout=delay):
                return
            try:
                self._dial()
            except Exception as exc:
                logger.warning("Reconnect attempt %d to %s failed: %s", attempt, self.host, exc)
                continue
            logger.info("Reconnected to %s (attempt %d)", self.host, attempt)
            return

        self._transition(
            ConnectionState.ERROR,
            f"Gave up reconnecting to {self.host} after {self.params.reconnect_retries} attempts",
        )

    # ------------------------------------------------------------------
    # Channel access
    # ------------------------------------------------------------------

    def get_sftp(self) -> paramiko.SFTPClient:
        """Return the live SFTP channel.

        Raises:
            ConnectionError: The session is not connected.
        """
        with self._lock:
            if self._state != ConnectionState.CONNECTED or self._sftp is None:
                raise ConnectionError(f"Not connected to {self.host} ({self._state.name})")
            return self._sftp
