"""
Shared utilities for the pldb CLI.
"""

from __future__ import annotations

import re
import subprocess
import sys
from pathlib import Path
from typing import Optional

# =============================================================================
# Constants
# =============================================================================

# State directory kept inside the workspace root
STATE_DIR_NAME = ".pldb"


# =============================================================================
# Logging
# =============================================================================


class Logger:
    """Simple colored logger with --no-color support."""

    COLORS = {
        "reset": "\033[0m",
        "red": "\033[91m",
        "green": "\033[92m",
        "yellow": "\033[93m",
        "cyan": "\033[96m",
        "bold": "\033[1m",
        "dim": "\033[2m",
    }

    def __init__(self, use_color: Optional[bool] = None):
        if use_color is None:
            self._use_color = sys.stdout.isatty()
        else:
            self._use_color = use_color

    def set_color(self, use_color: bool) -> None:
        """Set whether to use color output."""
        self._use_color = use_color

    def _color(self, text: str, color: str) -> str:
        if not self._use_color:
            return text
        return f"{self.COLORS.get(color, '')}{text}{self.COLORS['reset']}"

    def header(self, message: str) -> None:
        """Print a section header."""
        print(f"\n{self._color('===', 'cyan')} {self._color(message, 'bold')} {self._color('===', 'cyan')}")

    def info(self, message: str) -> None:
        """Print an info message."""
        print(f"  {message}")

    def success(self, message: str) -> None:
        """Print a success message."""
        print(f"  {self._color('[OK]', 'green')} {message}")

    def warning(self, message: str) -> None:
        """Print a warning message."""
        print(f"  {self._color('[WARN]', 'yellow')} {message}")

    def error(self, message: str) -> None:
        """Print an error message."""
        print(f"  {self._color('[ERROR]', 'red')} {message}")

    def dim(self, message: str) -> None:
        """Print a dim/secondary message."""
        print(f"  {self._color(message, 'dim')}")

    def table_row(self, col1: str, col2: str, col1_width: int = 30) -> None:
        """Print a table row with two columns."""
        print(f"  {col1:<{col1_width}} {col2}")


# Global logger instance
log = Logger()


# =============================================================================
# Git Utilities
# =============================================================================


def get_git_remote_url(directory: Path, remote: str = "origin") -> Optional[str]:
    """Get the URL of a git remote, or None outside a checkout."""
    try:
        result = subprocess.run(
            ["git", "remote", "get-url", remote],
            cwd=directory,
            capture_output=True,
            text=True,
            check=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None
    url = result.stdout.strip()
    return url or None


def github_slug(url: str) -> Optional[str]:
    """Reduce an HTTPS or SSH GitHub remote URL to ``owner/repo``.

    Examples:
        https://github.com/kaby76/pldb.git -> kaby76/pldb
        git@github.com:kaby76/pldb.git     -> kaby76/pldb
    """
    match = re.match(
        r"^(?:https://github\.com/|git@github\.com:)([^/]+/[^/]+?)(?:\.git)?/?$",
        url.strip(),
    )
    if not match:
        return None
    return match.group(1)


# =============================================================================
# Runtime Utilities
# =============================================================================


def run_cmd(
    cmd: list[str],
    cwd: Optional[Path] = None,
    capture: bool = False,
    check: bool = True,
    input: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """Run a command with proper error handling.

    Captured output is decoded as UTF-8 with undecodable bytes replaced, so
    a tool printing Latin-1 still yields a string.
    """
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=check,
            input=input,
        )
        return result
    except subprocess.CalledProcessError as e:
        if capture:
            log.error(f"Command failed: {' '.join(cmd)}")
            if e.stdout:
                log.error(f"stdout: {e.stdout}")
            if e.stderr:
                log.error(f"stderr: {e.stderr}")
        raise


def run_cmd_with_dry_run(
    cmd: list[str],
    cwd: Optional[Path] = None,
    capture: bool = False,
    check: bool = True,
    dry_run: bool = False,
) -> subprocess.CompletedProcess:
    """Run a command with proper error handling and dry-run support."""
    if dry_run:
        log.info(f"[DRY-RUN] Would run: {' '.join(cmd)}" + (f" in {cwd}" if cwd else ""))
        return subprocess.CompletedProcess(cmd, 0, "", "")

    return run_cmd(cmd, cwd=cwd, capture=capture, check=check)


def tail_lines(text: str, count: int = 20) -> list[str]:
    """Return the last ``count`` non-empty lines of a block of output."""
    lines = [line for line in text.splitlines() if line.strip()]
    return lines[-count:]
