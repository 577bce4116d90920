"""Wall-clock timing for build phases and units."""

import time
from typing import Optional


class TimingContext:
    """Context manager that records wall-clock duration into a dict.

    Usage:
        timings = {}
        with TimingContext(timings, "root") as t:
            run_root_build()
        # timings["root"] == t.elapsed == 41.207
    """

    def __init__(self, timings: dict[str, float], key: str) -> None:
        self.timings = timings
        self.key = key
        self._start: Optional[float] = None
        self.elapsed: float = 0.0

    def __enter__(self) -> "TimingContext":
        self._start = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._start is not None:
            self.elapsed = round(time.monotonic() - self._start, 3)
            self.timings[self.key] = self.elapsed
        return None


def format_duration(seconds: float) -> str:
    """Format seconds as human-readable duration.

    Examples:
        0.5 -> "0.5s"
        65.3 -> "1m 5.3s"
        3661.0 -> "1h 1m 1.0s"
    """
    if seconds < 60:
        return f"{seconds:.1f}s"

    minutes = int(seconds // 60)
    remaining = seconds % 60

    if minutes < 60:
        return f"{minutes}m {remaining:.1f}s"

    hours = minutes // 60
    minutes = minutes % 60
    return f"{hours}h {minutes}m {remaining:.1f}s"


def format_timings(timings: dict[str, float]) -> list[tuple[str, str]]:
    """Rows of (phase, duration) for a timings dict, with a trailing total."""
    rows = [(name, format_duration(seconds)) for name, seconds in timings.items()]
    if rows:
        rows.append(("total", format_duration(sum(timings.values()))))
    return rows
