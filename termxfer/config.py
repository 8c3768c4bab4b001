"""User settings for termxfer.

Settings live in ``~/.termxfer/config.json``.  Unknown keys are preserved,
missing keys fall back to :data:`DEFAULT_CONFIG`.  Passwords are never stored
here; see :class:`termxfer.connection.CredentialStore`.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

_Number = TypeVar("_Number", int, float)

DEFAULT_CONFIG: dict[str, Any] = {
    # Engine
    "transfer_buffer_size": 65536,
    "input_poll_interval": 0.5,
    # SSH
    "ssh_timeout": 15,
    "keepalive_interval": 30,
    "reconnect_retries": 3,
    "reconnect_base_delay": 2,
    # Session
    "local_start_path": str(Path.home()),
    "remote_start_path": None,
    "log_max_entries": 256,
    "show_hidden_files": False,
}


class ConfigManager:
    """Reads and writes the settings file.

    Every write goes to a sibling ``.tmp`` file first and is then renamed
    over the real one.  An unreadable file is replaced by the defaults.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        self._dir = base_dir or Path.home() / ".termxfer"
        self._dir.mkdir(parents=True, exist_ok=True)
        self._file = self._dir / "config.json"
        self._values = self._read()

    @property
    def path(self) -> Path:
        return self._file

    def _read(self) -> dict[str, Any]:
        values = dict(DEFAULT_CONFIG)
        if not self._file.exists():
            logger.debug("Writing default settings to %s", self._file)
            self._write(values)
            return values
        try:
            stored = json.loads(self._file.read_text(encoding="utf-8"))
            if not isinstance(stored, dict):
                raise ValueError(f"expected an object, got {type(stored).__name__}")
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable %s (%s); restoring defaults", self._file, exc)
            self._write(values)
            return values
        values.update(stored)
        return values

    def _write(self, values: dict[str, Any]) -> None:
        staging = self._file.with_suffix(".tmp")
        try:
            staging.write_text(json.dumps(values, indent=2), encoding="utf-8")
            staging.replace(self._file)
        except OSError as exc:
            logger.error("Could not save settings to %s: %s", self._file, exc)
            raise

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def _positive(self, key: str, cast: Callable[[Any], _Number]) -> _Number:
        value = self._values.get(key)
        # bool is an int subclass and is never a meaningful size or delay
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
            return cast(value)
        logger.warning("Setting %s=%r is not a positive number; using %r", key, value, DEFAULT_CONFIG[key])
        return cast(DEFAULT_CONFIG[key])

    def get_int(self, key: str) -> int:
        """Return *key* as a positive int, or its default if the stored value is unusable."""
        return self._positive(key, int)

    def get_float(self, key: str) -> float:
        """Return *key* as a positive float, or its default if the stored value is unusable."""
        return self._positive(key, float)

    def set(self, key: str, value: Any) -> None:
        """Store *value* under *key* and save the file."""
        self._values[key] = value
        self._write(self._values)
        logger.debug("Setting %s = %r", key, value)

    def get_all(self) -> dict[str, Any]:
        return dict(self._values)
