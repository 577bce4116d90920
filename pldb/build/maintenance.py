"""
Maintenance window for PLDB builds.

Keeps the public port answering with a "rebuilding" page while the site is
built, then hands the port over to the real content server.

States:
    IDLE -> PLACEHOLDER_UP -> BUILD_RUNNING -> REAL_CONTENT_UP -> IDLE

A fatal build failure leaves the placeholder serving (detached) and records
it under .pldb/ so the next window can adopt it instead of fighting it for
the port.
"""

from __future__ import annotations

import json
import os
import secrets
import shutil
import signal
import sys
import tempfile
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from subprocess import Popen
from typing import Callable, Optional, TypeVar

from pldb.build.config import WorkspaceRoot
from pldb.build.errors import FatalPrecondition
from pldb.build.phases import (
    port_accepting,
    port_in_use,
    sigterm_as_interrupt,
    start_http_server,
    stop_process,
    wait_for_port,
)
from pldb.core.utils import log

T = TypeVar("T")

PLACEHOLDER_STATE_FILE = "placeholder.json"
# Served by the placeholder so a later run can tell it from a foreign server
PLACEHOLDER_TOKEN_FILE = "pldb-placeholder-token.txt"


# =============================================================================
# Placeholder Page
# =============================================================================

MAINTENANCE_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>PLDB - __TITLE__</title>
  <style>
    body {
      font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
      display: flex;
      justify-content: center;
      align-items: center;
      min-height: 100vh;
      margin: 0;
      background-color: #f5f5f5;
      color: #333;
    }
    .container { text-align: center; padding: 2rem; }
    h1 { font-size: 2rem; margin-bottom: 0.5rem; }
    p { font-size: 1.2rem; color: #666; }
    .spinner {
      margin: 2rem auto;
      width: 40px;
      height: 40px;
      border: 4px solid #ddd;
      border-top-color: #333;
      border-radius: 50%;
      animation: spin 1s linear infinite;
    }
    @keyframes spin { to { transform: rotate(360deg); } }
  </style>
  <meta http-equiv="refresh" content="10">
</head>
<body>
  <div class="container">
    <h1>PLDB</h1>
    <div class="spinner"></div>
    <p>__MESSAGE__</p>
  </div>
</body>
</html>
"""


def render_maintenance_page(
    title: str = "Building...",
    message: str = "Site is rebuilding. This page will refresh automatically.",
) -> str:
    """Render the auto-refreshing placeholder page."""
    return MAINTENANCE_PAGE.replace("__TITLE__", title).replace("__MESSAGE__", message)


def write_maintenance_page(directory: Path) -> Path:
    """Write index.html for the placeholder into ``directory``."""
    page = directory / "index.html"
    page.write_text(render_maintenance_page(), encoding="utf-8")
    return page


# =============================================================================
# Server Handle
# =============================================================================


def _pid_alive(pid: int) -> bool:
    if sys.platform == "win32":
        # os.kill(pid, 0) terminates the process on Windows
        return False
    try:
        os.kill(pid, 0)
    except OSError:
        return False
    return True


def _serves_token(port: int, token: str, timeout: float = 2.0) -> bool:
    """Return True if the server on ``port`` is the placeholder holding ``token``."""
    if not token:
        return False
    url = f"http://127.0.0.1:{port}/{PLACEHOLDER_TOKEN_FILE}"
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:
            return response.read().decode("utf-8", errors="replace").strip() == token
    except (urllib.error.URLError, OSError):
        return False


@dataclass
class ServerHandle:
    """The placeholder server process, owned by one maintenance window."""

    port: int
    directory: Path
    pid: int
    started_at: float
    token: str = ""
    process: Optional[Popen] = None

    def alive(self) -> bool:
        if self.process is not None:
            return self.process.poll() is None
        return _pid_alive(self.pid)

    def verified(self) -> bool:
        """True if the recorded process is alive and still serves our token."""
        return self.alive() and _serves_token(self.port, self.token)

    def stop(self, timeout: float = 5.0) -> None:
        """Terminate the server, wait for the port to free, drop its files."""
        if self.process is not None:
            stop_process(self.process, timeout=timeout)
        elif self.verified():
            os.kill(self.pid, signal.SIGTERM)
        else:
            # Not ours any more; never signal a reused pid
            return

        deadline = time.monotonic() + timeout
        while port_accepting(self.port) and time.monotonic() < deadline:
            time.sleep(0.05)

        shutil.rmtree(self.directory, ignore_errors=True)

    def detach(self, state_path: Path) -> None:
        """Give up ownership and leave the server running.

        The handle is recorded at ``state_path`` so a later window can
        adopt it.
        """
        state_path.parent.mkdir(parents=True, exist_ok=True)
        state_path.write_text(
            json.dumps(
                {
                    "pid": self.pid,
                    "port": self.port,
                    "directory": str(self.directory),
                    "started_at": self.started_at,
                    "token": self.token,
                },
                indent=2,
            )
        )
        # Dropping the Popen keeps the child running after we exit
        self.process = None


def _read_placeholder_record(state_path: Path) -> Optional[ServerHandle]:
    try:
        data = json.loads(state_path.read_text())
        return ServerHandle(
            port=int(data["port"]),
            directory=Path(data["directory"]),
            pid=int(data["pid"]),
            started_at=float(data["started_at"]),
            token=str(data.get("token", "")),
        )
    except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError):
        log.warning(f"Ignoring unreadable placeholder record {state_path}")
        return None


def _adopt_placeholder(state_path: Path, port: int) -> Optional[ServerHandle]:
    """Reclaim a placeholder an earlier window left serving on ``port``.

    A record is only trusted when its server answers with the token written
    at startup. A recorded placeholder on another port is stopped.
    """
    if not state_path.exists():
        return None

    handle = _read_placeholder_record(state_path)
    try:
        if handle is None or not handle.verified():
            return None
        if handle.port != port:
            log.info(
                f"Stopping placeholder left on port {handle.port} (PID {handle.pid})"
            )
            handle.stop()
            return None
        return handle
    finally:
        state_path.unlink(missing_ok=True)


def start_placeholder(workspace: WorkspaceRoot, port: int) -> ServerHandle:
    """Bring up the placeholder on ``port`` (Idle -> PlaceholderUp).

    Raises:
        FatalPrecondition: If the port is taken or the server does not start.
    """
    state_path = workspace.state_dir / PLACEHOLDER_STATE_FILE
    adopted = _adopt_placeholder(state_path, port)
    if adopted is not None:
        log.info(f"Reusing placeholder from earlier run (PID {adopted.pid})")
        return adopted

    if port_in_use(port):
        raise FatalPrecondition(
            f"Port {port} is already in use\n"
            f"  Fix: Stop whatever is serving on {port} or pass --port"
        )

    directory = Path(tempfile.mkdtemp(prefix="pldb-maintenance-"))
    write_maintenance_page(directory)
    token = secrets.token_hex(16)
    (directory / PLACEHOLDER_TOKEN_FILE).write_text(token, encoding="utf-8")
    proc = start_http_server(directory, port)

    if not wait_for_port(port, proc):
        stop_process(proc)
        shutil.rmtree(directory, ignore_errors=True)
        raise FatalPrecondition(f"Placeholder server could not bind port {port}")

    log.success(f"Placeholder serving on http://localhost:{port} (PID {proc.pid})")
    return ServerHandle(
        port=port,
        directory=directory,
        pid=proc.pid,
        started_at=time.time(),
        token=token,
        process=proc,
    )


# =============================================================================
# Maintenance Window
# =============================================================================


class WindowState(str, Enum):
    IDLE = "idle"
    PLACEHOLDER_UP = "placeholder_up"
    BUILD_RUNNING = "build_running"
    REAL_CONTENT_UP = "real_content_up"


class MaintenanceWindow:
    """Serves the placeholder for the duration of one build."""

    def __init__(
        self,
        workspace: WorkspaceRoot,
        port: int,
        keep_on_failure: bool = True,
    ):
        self.workspace = workspace
        self.port = port
        self.keep_on_failure = keep_on_failure
        self.state = WindowState.IDLE
        self.handle: Optional[ServerHandle] = None

    @property
    def state_path(self) -> Path:
        return self.workspace.state_dir / PLACEHOLDER_STATE_FILE

    def run(self, build_fn: Callable[[], T], on_ready: Optional[Callable[[], None]] = None) -> T:
        """Run ``build_fn`` behind the placeholder and hand the port over.

        SIGTERM stays mapped to BuildInterrupted until ``on_ready`` returns,
        so the placeholder is stopped however the process is told to quit.
        """
        with sigterm_as_interrupt():
            self.handle = start_placeholder(self.workspace, self.port)
            self.state = WindowState.PLACEHOLDER_UP

            try:
                self.state = WindowState.BUILD_RUNNING
                result = build_fn()
                self.handle.stop()
            except FatalPrecondition:
                if self.keep_on_failure:
                    self.handle.detach(self.state_path)
                    log.warning(
                        f"Build failed; placeholder left serving on port {self.port} "
                        f"(PID {self.handle.pid})"
                    )
                else:
                    self.handle.stop()
                self.handle = None
                self.state = WindowState.IDLE
                raise
            except BaseException:
                # Interrupts and unexpected errors must not leak the bound port
                self.handle.stop()
                self.handle = None
                self.state = WindowState.IDLE
                raise

            self.handle = None
            self.state = WindowState.REAL_CONTENT_UP
            log.success(f"Placeholder stopped; port {self.port} is free for the site")
            if on_ready is not None:
                on_ready()
            self.state = WindowState.IDLE
            return result


def with_maintenance_window(
    build_fn: Callable[[], T],
    workspace: WorkspaceRoot,
    port: int,
    on_ready: Optional[Callable[[], None]] = None,
    keep_on_failure: bool = True,
) -> T:
    """Run ``build_fn`` while a placeholder page holds ``port``."""
    window = MaintenanceWindow(workspace, port, keep_on_failure=keep_on_failure)
    return window.run(build_fn, on_ready=on_ready)
