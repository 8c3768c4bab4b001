"""Path coercion and human-readable formatting."""

from __future__ import annotations

import logging
import os
import posixpath
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)

_UNITS = ("KB", "MB", "GB", "TB", "PB")


def human_readable_size(size_bytes: int | float) -> str:
    """Format a byte count as ``"512 B"``, ``"4.2 MB"`` and so on (1024-based)."""
    if size_bytes < 1024:
        return f"{max(0, int(size_bytes))} B"
    value = float(size_bytes)
    for unit in _UNITS:
        value /= 1024.0
        if value < 1024.0 or unit == _UNITS[-1]:
            return f"{value:.1f} {unit}"
    raise AssertionError("unreachable")


def fmt_millis(seconds: float) -> str:
    """Format a duration as ``<seconds>.<millis>`` (e.g. ``"3.042"``)."""
    millis = max(0, int(round(seconds * 1000)))
    return f"{millis // 1000}.{millis % 1000:03d}"


def validate_remote_path(path: str | PurePosixPath) -> bool:
    """Return False for remote paths containing NUL bytes."""
    text = str(path)
    if "\x00" in text:
        logger.warning("Refusing unsafe remote path %r", text)
        return False
    return True


def to_remote_path(path: str | os.PathLike[str]) -> PurePosixPath:
    """Coerce *path* to a POSIX path suitable for the remote host."""
    if isinstance(path, PurePosixPath):
        return path
    return PurePosixPath(str(path).replace("\\", "/"))


def resolve_remote_path(path: str | os.PathLike[str], wrkdir: PurePosixPath) -> PurePosixPath:
    """Join *path* onto *wrkdir* and collapse ``.`` and ``..`` components."""
    joined = wrkdir / to_remote_path(path)
    return PurePosixPath(posixpath.normpath(str(joined)))


def normalize_local_path(path: str | os.PathLike[str]) -> Path:
    """Expand ``~`` and resolve *path* against the process working directory."""
    return Path(path).expanduser().resolve()
