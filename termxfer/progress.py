"""Byte accounting for an active transfer.

Two counters are tracked per invocation: ``full`` spans the whole payload and
``partial`` spans the file currently streaming.  Nothing here performs I/O.
"""

from __future__ import annotations

import time

# Floor applied to the elapsed time so near-instant transfers never divide by zero.
_MIN_ELAPSED = 0.001


class ProgressStates:
    """Transferred/total counter with a monotonic start time."""

    def __init__(self) -> None:
        self.total: int = 0
        self.transferred: int = 0
        self._started: float = time.monotonic()

    def init(self, total_bytes: int) -> None:
        """Reset to zero transferred, record *total_bytes* and restart the clock."""
        self.total = max(0, total_bytes)
        self.transferred = 0
        self._started = time.monotonic()

    def update_progress(self, delta_bytes: int) -> None:
        """Add *delta_bytes* to the transferred count.

        No upper clamp is applied; callers never report more than ``total``.
        """
        self.transferred += delta_bytes

    def calc_progress(self) -> float:
        """Fraction transferred (0.0 – 1.0); an empty transfer counts as complete."""
        if self.total == 0:
            return 1.0
        return min(1.0, self.transferred / self.total)

    def calc_progress_percentage(self) -> int:
        return int(self.calc_progress() * 100)

    def calc_bytes_per_second(self) -> int:
        """Average throughput since :meth:`init`, always finite and >= 0."""
        elapsed = max(_MIN_ELAPSED, time.monotonic() - self._started)
        return max(0, int(self.transferred / elapsed))

    def started(self) -> float:
        """Monotonic timestamp recorded by the last :meth:`init`."""
        return self._started

    def elapsed(self) -> float:
        return time.monotonic() - self._started

    def __repr__(self) -> str:
        return f"ProgressStates({self.transferred}/{self.total})"


class TransferStates:
    """Progress counters plus the cooperative cancellation flag.

    One instance lives for the whole session and is reset before each
    payload.  ``aborted`` is written by input handling and read by the copy
    loop at its poll points; both run on the same thread.
    """

    def __init__(self) -> None:
        self.full = ProgressStates()
        self.partial = ProgressStates()
        self._aborted = False

    def reset(self) -> None:
        self.full = ProgressStates()
        self.partial = ProgressStates()
        self._aborted = False

    def abort(self) -> None:
        """Request cancellation of the running transfer."""
        self._aborted = True

    def aborted(self) -> bool:
        return self._aborted
