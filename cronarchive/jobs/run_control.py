"""Run control: stop conditions and limits."""
import time
from typing import Optional
from dataclasses import dataclass, field


@dataclass
class RunControl:
    """Controls run stopping conditions."""

    stop_after_minutes: Optional[float] = None
    max_consecutive_errors: Optional[int] = None

    # Internal state
    start_time: float = field(default_factory=time.time)
    consecutive_errors: int = 0

    def time_exceeded(self) -> tuple[bool, Optional[str]]:
        """Check the time budget. Returns (exceeded, reason)."""
        elapsed_minutes = (time.time() - self.start_time) / 60
        if self.stop_after_minutes is not None and elapsed_minutes >= self.stop_after_minutes:
            return True, f"Reached stop_after_minutes={self.stop_after_minutes}"
        return False, None

    def too_many_errors(self) -> tuple[bool, Optional[str]]:
        """Check the consecutive error ceiling. Returns (reached, reason)."""
        if self.max_consecutive_errors and self.consecutive_errors >= self.max_consecutive_errors:
            return True, f"Reached max_consecutive_errors={self.max_consecutive_errors}"
        return False, None

    def record_error(self) -> None:
        """Record a failed archive request."""
        self.consecutive_errors += 1

    def record_success(self) -> None:
        """Record a successful archive request."""
        self.consecutive_errors = 0
