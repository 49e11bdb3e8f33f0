"""
Deadline tracking for blocking waits.

Every wait in the transfer engine (handshake, block read, acknowledgement)
is bounded by a Deadline measured on the monotonic clock.
"""

import time
from typing import Optional


class Deadline:
    """Tracks elapsed time against a configured duration"""

    def __init__(self, duration: float):
        """
        Initialize the deadline

        Args:
            duration: Allowed duration in seconds
        """
        if duration < 0:
            raise ValueError(f"Deadline duration must be non-negative, got {duration}")
        self.duration = duration
        self._start_time: Optional[float] = None

    def start(self) -> 'Deadline':
        """Capture the reference instant (restarts a running deadline)"""
        self._start_time = time.monotonic()
        return self

    def elapsed(self) -> float:
        """Get seconds elapsed since start()"""
        if self._start_time is None:
            return 0.0
        return time.monotonic() - self._start_time

    def remaining(self) -> float:
        """
        Get the time left before the deadline

        Returns:
            Seconds remaining, 0.0 once the duration has elapsed
        """
        if self._start_time is None:
            return self.duration
        return max(0.0, self.duration - self.elapsed())

    def expired(self) -> bool:
        """Check whether the configured duration has elapsed"""
        return self._start_time is not None and self.remaining() <= 0.0

    def __repr__(self) -> str:
        return f"Deadline(duration={self.duration}, remaining={self.remaining():.3f})"
