"""
Tests for the maintenance window: placeholder lifecycle and port handoff.

These bind real ports and fetch over HTTP, so every test cleans up the
placeholder it starts.
"""

from __future__ import annotations

import json
import os
import signal
import socket
import subprocess
import sys
import time
import urllib.request
from pathlib import Path

import pytest

import pldb
from pldb.build import orchestrator
from pldb.build.config import WorkspaceRoot
from pldb.build.errors import BuildInterrupted, FatalPrecondition
from pldb.build.maintenance import (
    PLACEHOLDER_STATE_FILE,
    MaintenanceWindow,
    ServerHandle,
    WindowState,
    render_maintenance_page,
    start_placeholder,
    with_maintenance_window,
)
from pldb.build.phases import (
    port_accepting,
    port_in_use,
    raise_interrupted,
    start_http_server,
    stop_process,
    wait_for_port,
)

PACKAGE_ROOT = Path(pldb.__file__).resolve().parent.parent


def fetch(port: int) -> str:
    with urllib.request.urlopen(f"http://127.0.0.1:{port}/", timeout=5) as response:
        return response.read().decode("utf-8")


def wait_port_closed(port: int, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not port_accepting(port):
            return True
        time.sleep(0.05)
    return False


# =============================================================================
# Page
# =============================================================================


@pytest.mark.evergreen
class TestMaintenancePage:
    def test_page_refreshes_itself(self) -> None:
        page = render_maintenance_page()
        assert '<meta http-equiv="refresh" content="10">' in page
        assert "<title>PLDB - Building...</title>" in page

    def test_custom_message(self) -> None:
        page = render_maintenance_page(title="Maintenance", message="Down for maintenance.")
        assert "<title>PLDB - Maintenance</title>" in page
        assert "<p>Down for maintenance.</p>" in page


# =============================================================================
# Window Lifecycle
# =============================================================================


@pytest.mark.evergreen
class TestMaintenanceWindow:
    """Placeholder up during the build, gone before the site takes the port."""

    def test_placeholder_serves_during_build(self, tmp_path: Path, free_port: int) -> None:
        seen: list[str] = []

        def build() -> str:
            seen.append(fetch(free_port))
            return "done"

        result = with_maintenance_window(build, WorkspaceRoot(tmp_path), free_port)

        assert result == "done"
        assert "Site is rebuilding" in seen[0]

    def test_port_released_before_ready_signal(self, tmp_path: Path, free_port: int) -> None:
        accepting_at_ready: list[bool] = []

        with_maintenance_window(
            lambda: None,
            WorkspaceRoot(tmp_path),
            free_port,
            on_ready=lambda: accepting_at_ready.append(port_accepting(free_port)),
        )

        assert accepting_at_ready == [False]
        assert not port_in_use(free_port)

    def test_placeholder_directory_removed(self, tmp_path: Path, free_port: int) -> None:
        window = MaintenanceWindow(WorkspaceRoot(tmp_path), free_port)
        directories: list[Path] = []

        window.run(lambda: directories.append(window.handle.directory))

        assert directories and not directories[0].exists()
        assert window.state is WindowState.IDLE
        assert window.handle is None

    def test_state_is_build_running_inside_build(self, tmp_path: Path, free_port: int) -> None:
        window = MaintenanceWindow(WorkspaceRoot(tmp_path), free_port)
        states: list[WindowState] = []

        window.run(lambda: states.append(window.state))

        assert states == [WindowState.BUILD_RUNNING]

    def test_busy_port_fails_before_build(self, tmp_path: Path, free_port: int) -> None:
        calls: list[str] = []
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("", free_port))
            blocker.listen()

            with pytest.raises(FatalPrecondition, match=f"Port {free_port} is already in use"):
                with_maintenance_window(
                    lambda: calls.append("build"), WorkspaceRoot(tmp_path), free_port
                )

        assert calls == []

    def test_two_windows_in_succession(self, tmp_path: Path, free_port: int) -> None:
        workspace = WorkspaceRoot(tmp_path)
        pages: list[str] = []

        for _ in range(2):
            with_maintenance_window(lambda: pages.append(fetch(free_port)), workspace, free_port)
            assert wait_port_closed(free_port)

        assert len(pages) == 2
        assert all("Site is rebuilding" in page for page in pages)

    def test_interrupt_stops_placeholder(self, tmp_path: Path, free_port: int) -> None:
        def build() -> None:
            raise KeyboardInterrupt()

        with pytest.raises(KeyboardInterrupt):
            with_maintenance_window(build, WorkspaceRoot(tmp_path), free_port)

        assert wait_port_closed(free_port)
        assert not (tmp_path / ".pldb" / PLACEHOLDER_STATE_FILE).exists()

    @pytest.mark.skipif(sys.platform == "win32", reason="SIGTERM cannot be caught on Windows")
    def test_sigterm_stops_placeholder(self, tmp_path: Path, free_port: int) -> None:
        previous = signal.getsignal(signal.SIGTERM)

        def build() -> None:
            os.kill(os.getpid(), signal.SIGTERM)
            time.sleep(5)

        with pytest.raises(BuildInterrupted):
            with_maintenance_window(build, WorkspaceRoot(tmp_path), free_port)

        assert wait_port_closed(free_port)
        assert signal.getsignal(signal.SIGTERM) == previous

    def test_sigterm_handled_until_port_handed_over(self, tmp_path: Path, free_port: int) -> None:
        previous = signal.getsignal(signal.SIGTERM)
        at_ready: list = []

        with_maintenance_window(
            lambda: None,
            WorkspaceRoot(tmp_path),
            free_port,
            on_ready=lambda: at_ready.append(signal.getsignal(signal.SIGTERM)),
        )

        assert at_ready == [raise_interrupted]
        assert signal.getsignal(signal.SIGTERM) == previous

    def test_unexpected_error_stops_placeholder(self, tmp_path: Path, free_port: int) -> None:
        def build() -> None:
            raise ValueError("generator crashed")

        with pytest.raises(ValueError):
            with_maintenance_window(build, WorkspaceRoot(tmp_path), free_port)

        assert wait_port_closed(free_port)


@pytest.mark.evergreen
class TestFatalFailureKeepsPlaceholder:
    """A fatal build leaves the placeholder up; the next window adopts it."""

    def test_placeholder_survives_and_is_adopted(self, tmp_path: Path, free_port: int) -> None:
        workspace = WorkspaceRoot(tmp_path)
        state_path = tmp_path / ".pldb" / PLACEHOLDER_STATE_FILE

        def failing_build() -> None:
            raise FatalPrecondition("Root build failed")

        with pytest.raises(FatalPrecondition):
            with_maintenance_window(failing_build, workspace, free_port)

        assert "Site is rebuilding" in fetch(free_port)
        assert state_path.exists()

        with_maintenance_window(lambda: fetch(free_port), workspace, free_port)

        assert wait_port_closed(free_port)
        assert not state_path.exists()

    def test_release_on_failure_when_not_keeping(self, tmp_path: Path, free_port: int) -> None:
        def failing_build() -> None:
            raise FatalPrecondition("Root build failed")

        with pytest.raises(FatalPrecondition):
            with_maintenance_window(
                failing_build, WorkspaceRoot(tmp_path), free_port, keep_on_failure=False
            )

        assert wait_port_closed(free_port)

    def test_stale_record_is_ignored(self, tmp_path: Path, free_port: int) -> None:
        state_dir = tmp_path / ".pldb"
        state_dir.mkdir()
        (state_dir / PLACEHOLDER_STATE_FILE).write_text(
            '{"pid": 999999, "port": %d, "directory": "/nonexistent", "started_at": 0}' % free_port
        )

        handle = start_placeholder(WorkspaceRoot(tmp_path), free_port)
        try:
            assert handle.process is not None
            assert "Site is rebuilding" in fetch(free_port)
        finally:
            handle.stop()

        assert not (state_dir / PLACEHOLDER_STATE_FILE).exists()

    @pytest.mark.skipif(sys.platform == "win32", reason="pid liveness is not checked on Windows")
    def test_foreign_server_with_live_recorded_pid_is_not_adopted(
        self, tmp_path: Path, free_port: int
    ) -> None:
        foreign_dir = tmp_path / "foreign"
        foreign_dir.mkdir()
        foreign = start_http_server(foreign_dir, free_port)
        bystander = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
        state_dir = tmp_path / ".pldb"
        state_dir.mkdir()
        (state_dir / PLACEHOLDER_STATE_FILE).write_text(
            json.dumps(
                {
                    "pid": bystander.pid,
                    "port": free_port,
                    "directory": str(foreign_dir),
                    "started_at": 0,
                    "token": "recorded-by-someone-else",
                }
            )
        )
        calls: list[str] = []

        try:
            assert wait_for_port(free_port, foreign)

            with pytest.raises(FatalPrecondition, match=f"Port {free_port} is already in use"):
                with_maintenance_window(
                    lambda: calls.append("build"), WorkspaceRoot(tmp_path), free_port
                )

            assert calls == []
            assert bystander.poll() is None
            assert foreign.poll() is None
            assert foreign_dir.exists()
        finally:
            stop_process(bystander)
            stop_process(foreign)

    @pytest.mark.skipif(sys.platform == "win32", reason="pid liveness is not checked on Windows")
    def test_stop_never_signals_an_unverified_pid(self, tmp_path: Path, free_port: int) -> None:
        bystander = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
        try:
            handle = ServerHandle(
                port=free_port,
                directory=tmp_path / "gone",
                pid=bystander.pid,
                started_at=0.0,
                token="stale",
            )

            handle.stop(timeout=0.5)

            assert bystander.poll() is None
        finally:
            stop_process(bystander)

    def test_placeholder_left_on_another_port_is_stopped(
        self, tmp_path: Path, free_port: int, other_free_port: int
    ) -> None:
        workspace = WorkspaceRoot(tmp_path)
        state_path = tmp_path / ".pldb" / PLACEHOLDER_STATE_FILE

        def failing_build() -> None:
            raise FatalPrecondition("Root build failed")

        with pytest.raises(FatalPrecondition):
            with_maintenance_window(failing_build, workspace, free_port)
        assert port_accepting(free_port)

        with_maintenance_window(lambda: None, workspace, other_free_port)

        assert wait_port_closed(free_port)
        assert wait_port_closed(other_free_port)
        assert not state_path.exists()

        pages: list[str] = []
        with_maintenance_window(lambda: pages.append(fetch(free_port)), workspace, free_port)
        assert "Site is rebuilding" in pages[0]


# =============================================================================
# Foreground Serving
# =============================================================================


@pytest.mark.evergreen
class TestServeDirectory:
    """The foreground server never outlives the process that started it."""

    @pytest.mark.skipif(sys.platform == "win32", reason="SIGTERM cannot be caught on Windows")
    def test_sigterm_stops_child_server(self, tmp_path: Path, free_port: int) -> None:
        (tmp_path / "index.html").write_text("site")
        code = (
            "import sys\n"
            "from pathlib import Path\n"
            "from pldb.build.phases import serve_directory\n"
            f"sys.exit(serve_directory(Path({str(tmp_path)!r}), {free_port}))\n"
        )
        env = dict(os.environ)
        env["PYTHONPATH"] = os.pathsep.join(
            p for p in (str(PACKAGE_ROOT), env.get("PYTHONPATH", "")) if p
        )
        parent = subprocess.Popen(
            [sys.executable, "-c", code],
            env=env,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )

        try:
            assert wait_for_port(free_port, parent)
            assert fetch(free_port) == "site"

            parent.send_signal(signal.SIGTERM)

            assert parent.wait(timeout=10) == 0
        finally:
            if parent.poll() is None:
                parent.kill()
                parent.wait()

        assert wait_port_closed(free_port)


# =============================================================================
# CLI --serve
# =============================================================================


@pytest.mark.evergreen
class TestServeCommand:
    """--serve wraps the build and only then serves the workspace."""

    def test_serve_after_build(self, fake_site, free_port: int, monkeypatch) -> None:
        fake_site.add_folder("a")
        (fake_site.root / "pldb.yaml").write_text(fake_site.yaml_config(["a"]))
        served: list[tuple[Path, int, bool]] = []

        def fake_serve(directory: Path, port: int) -> int:
            served.append((directory, port, port_accepting(port)))
            return 0

        monkeypatch.setattr(orchestrator, "serve_directory", fake_serve)

        code = orchestrator.main([str(fake_site.root), "--serve", "--port", str(free_port)])

        assert code == 0
        assert served == [(fake_site.root.resolve(), free_port, False)]

    def test_root_failure_does_not_serve(self, fake_site, free_port: int, monkeypatch) -> None:
        fake_site.fail("site")
        (fake_site.root / "pldb.yaml").write_text(fake_site.yaml_config([]))
        served: list[int] = []
        monkeypatch.setattr(orchestrator, "serve_directory", lambda d, p: served.append(p))

        code = orchestrator.main(
            [str(fake_site.root), "--serve", "--port", str(free_port)]
        )

        try:
            assert code == 1
            assert served == []
            assert "Site is rebuilding" in fetch(free_port)
        finally:
            # Reclaim and stop the placeholder the failed build left behind
            handle = start_placeholder(WorkspaceRoot(fake_site.root.resolve()), free_port)
            handle.stop()

        assert wait_port_closed(free_port)
