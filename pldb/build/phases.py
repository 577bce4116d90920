"""
Build phases for the PLDB site.

Individual build operations that can be orchestrated together.
"""

from __future__ import annotations

import json
import signal
import socket
import subprocess
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from pldb.build.config import BuildUnit, WorkspaceRoot
from pldb.build.errors import (
    BuildInterrupted,
    ExternalToolMissing,
    FatalPrecondition,
    UnitFailure,
)
from pldb.core.timing import TimingContext, format_duration
from pldb.core.utils import log, run_cmd_with_dry_run, tail_lines


# =============================================================================
# Results
# =============================================================================


class BuildStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class BuildResult:
    """Outcome of one generator invocation."""

    unit: str
    status: BuildStatus
    output: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is not BuildStatus.FAILED


# =============================================================================
# Generator Invocation
# =============================================================================


def invoke_generator(
    cmd: list[str],
    cwd: Path,
    capture: bool = False,
    dry_run: bool = False,
) -> subprocess.CompletedProcess:
    """Run a generator command in a directory without raising on failure.

    Raises:
        ExternalToolMissing: If the executable itself cannot be found.
    """
    try:
        return run_cmd_with_dry_run(cmd, cwd=cwd, capture=capture, check=False, dry_run=dry_run)
    except FileNotFoundError as e:
        raise ExternalToolMissing(
            cmd[0], f"install {cmd[0]} and run `npm install` in {cwd}"
        ) from e


def _combined_output(result: subprocess.CompletedProcess) -> str:
    return (result.stdout or "") + (result.stderr or "")


def build_unit(unit: BuildUnit, cmd: list[str], dry_run: bool = False) -> BuildResult:
    """Build one subfolder.

    Raises:
        UnitFailure: If the generator exits non-zero.
        ExternalToolMissing: If the generator is not installed.
    """
    if not unit.exists():
        return BuildResult(unit=unit.name, status=BuildStatus.SKIPPED)

    timings: dict[str, float] = {}
    with TimingContext(timings, unit.name) as timer:
        result = invoke_generator(cmd, cwd=unit.path, capture=True, dry_run=dry_run)

    output = _combined_output(result)
    if result.returncode != 0:
        raise UnitFailure(unit.name, result.returncode, output, duration=timer.elapsed)
    return BuildResult(
        unit=unit.name,
        status=BuildStatus.SUCCESS,
        output=output,
        duration=timer.elapsed,
    )


def run_build(
    units: list[BuildUnit],
    cmd: list[str],
    dry_run: bool = False,
) -> list[BuildResult]:
    """Build each unit in declared order, isolating per-unit failures.

    A failing unit is recorded and the next one still runs. A missing
    generator is not a unit failure and propagates.
    """
    results: list[BuildResult] = []

    for unit in units:
        if not unit.exists():
            log.dim(f"{unit.name}/ not present, skipping")
            results.append(BuildResult(unit=unit.name, status=BuildStatus.SKIPPED))
            continue

        log.info(f"Building {unit.name}/...")
        try:
            result = build_unit(unit, cmd, dry_run=dry_run)
        except UnitFailure as e:
            log.warning(f"{unit.name}/ build had errors (continuing...)")
            for line in tail_lines(e.output):
                log.dim(f"    {line}")
            results.append(
                BuildResult(
                    unit=unit.name,
                    status=BuildStatus.FAILED,
                    output=e.output,
                    duration=e.duration,
                )
            )
            continue

        log.success(f"{unit.name}/ built in {format_duration(result.duration)}")
        results.append(result)

    return results


# =============================================================================
# Root Stage
# =============================================================================


def build_parsers_file(workspace: WorkspaceRoot, cmd: list[str], dry_run: bool = False) -> None:
    """Regenerate the combined parsers file the generator loads."""
    result = invoke_generator(cmd, cwd=workspace.path, dry_run=dry_run)
    if result.returncode != 0:
        raise FatalPrecondition(
            f"Building parsers file failed (exit {result.returncode}): {' '.join(cmd)}"
        )


def build_root(workspace: WorkspaceRoot, cmd: list[str], dry_run: bool = False) -> None:
    """Build the root folder. Output streams straight to the terminal."""
    result = invoke_generator(cmd, cwd=workspace.path, dry_run=dry_run)
    if result.returncode != 0:
        raise FatalPrecondition(
            f"Root build failed (exit {result.returncode}); subfolders were not built"
        )


# =============================================================================
# Bridging Step
# =============================================================================


def load_measures(workspace: WorkspaceRoot) -> Union[dict[str, Any], list[Any]]:
    """Read the measures artifact the root build leaves behind.

    Only existence and parseability are checked; the schema belongs to
    the generator.
    """
    path = workspace.measures_path
    if not path.exists():
        raise FatalPrecondition(
            f"{path.name} not found at {path}\n"
            f"  Fix: The root build must succeed before feature pages can be generated"
        )
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise FatalPrecondition(f"{path.name} is not valid JSON: {e}") from e
    if not isinstance(data, (dict, list)):
        raise FatalPrecondition(f"{path.name} must hold a JSON object or array")
    return data


def generate_feature_pages(
    workspace: WorkspaceRoot,
    cmd: list[str],
    dry_run: bool = False,
) -> None:
    """Emit the generated feature pages from the root's measures."""
    if dry_run:
        log.info(f"[DRY-RUN] Would read {workspace.measures_path}")
    else:
        measures = load_measures(workspace)
        log.dim(f"Loaded {len(measures)} measures from {workspace.measures_path.name}")

    result = invoke_generator(cmd, cwd=workspace.path, dry_run=dry_run)
    if result.returncode != 0:
        raise FatalPrecondition(
            f"Feature page generation failed (exit {result.returncode}); subfolders were not built"
        )


# =============================================================================
# Server Management
# =============================================================================


def port_in_use(port: int, host: str = "") -> bool:
    """Return True if something already holds ``port``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        if sys.platform != "win32":
            # Same option the server sets, so TIME_WAIT sockets do not count
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind((host, port))
        except OSError:
            return True
    return False


def port_accepting(port: int, host: str = "127.0.0.1") -> bool:
    """Return True if a connection to ``port`` succeeds."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.settimeout(0.5)
        return s.connect_ex((host, port)) == 0


def wait_for_port(
    port: int,
    proc: Optional[subprocess.Popen] = None,
    timeout: float = 10.0,
    interval: float = 0.1,
) -> bool:
    """Wait until ``port`` accepts connections.

    Returns False on timeout or if ``proc`` exits before the port opens.
    """
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if proc is not None and proc.poll() is not None:
            return False
        if port_accepting(port):
            return True
        time.sleep(interval)
    return False


def start_http_server(directory: Path, port: int, bind: str = "0.0.0.0") -> subprocess.Popen:
    """Start a static file server for ``directory`` in its own process."""
    return subprocess.Popen(
        [
            sys.executable, "-m", "http.server",
            "--bind", bind,
            "--directory", str(directory),
            str(port),
        ],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )


def stop_process(proc: subprocess.Popen, timeout: float = 5.0) -> None:
    """Terminate a child process and reap it, killing it if it lingers."""
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def raise_interrupted(signum, frame):
    """SIGTERM handler: unwind like Ctrl+C so owned servers get stopped."""
    raise BuildInterrupted()


@contextmanager
def sigterm_as_interrupt() -> Iterator[None]:
    """Turn SIGTERM into BuildInterrupted for the duration of the block.

    Signal handlers can only be set from the main thread; elsewhere this
    is a no-op.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = signal.signal(signal.SIGTERM, raise_interrupted)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous if previous is not None else signal.SIG_DFL)


def serve_directory(directory: Path, port: int) -> int:
    """Serve ``directory`` in the foreground until Ctrl+C or SIGTERM."""
    if port_in_use(port):
        raise FatalPrecondition(f"Port {port} is already in use")

    with sigterm_as_interrupt():
        proc = start_http_server(directory, port)
        try:
            if not wait_for_port(port, proc):
                raise FatalPrecondition(
                    f"Static server for {directory} did not come up on port {port}"
                )
            log.success(f"Serving {directory} at http://localhost:{port}")
            log.info("Press Ctrl+C to stop")
            return proc.wait()
        except KeyboardInterrupt:
            log.info("")
            log.header("Shutting down server")
            return 0
        finally:
            stop_process(proc)
