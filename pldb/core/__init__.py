"""
pldb.core - Foundation layer for the pldb CLI.

Exports logging, subprocess helpers and timing utilities.
"""

from pldb.core.utils import (
    # Logging
    log,
    Logger,
    # Constants
    STATE_DIR_NAME,
    # Git utilities
    get_git_remote_url,
    github_slug,
    # Runtime utilities
    run_cmd,
    run_cmd_with_dry_run,
    tail_lines,
)
from pldb.core.timing import TimingContext, format_duration, format_timings

__all__ = [
    # Logging
    "log",
    "Logger",
    # Constants
    "STATE_DIR_NAME",
    # Git utilities
    "get_git_remote_url",
    "github_slug",
    # Runtime utilities
    "run_cmd",
    "run_cmd_with_dry_run",
    "tail_lines",
    # Timing
    "TimingContext",
    "format_duration",
    "format_timings",
]
