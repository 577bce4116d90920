"""
Shared pytest fixtures for pldb tests.

Provides a throwaway site workspace and a fake generator so builds can run
real subprocesses without node or scroll installed.

Test Tier Markers:
  @pytest.mark.evergreen - Tests that always run, never skip (production tests)
  @pytest.mark.dev       - Development/WIP tests, toggle-able
"""

from __future__ import annotations

import socket
import sys
from pathlib import Path
from typing import Any

import pytest

from pldb.build.config import BuildConfig, WorkspaceRoot
from pldb.core.utils import log


# =============================================================================
# Fake Generator
# =============================================================================

# Appends the unit name to the calls log, fails when a FAIL-<name> marker is
# present in the working directory (printing Latin-1 bytes first when a
# LATIN1-<name> marker is there too), and writes measures.json for the root.
FAKE_GENERATOR = """\
import json
import pathlib
import sys

cwd = pathlib.Path.cwd()
name = sys.argv[2] if len(sys.argv) > 2 else cwd.name
with open(sys.argv[1], "a") as f:
    f.write(name + "\\n")
if (cwd / ("FAIL-" + name)).exists():
    sys.stdout.flush()
    if (cwd / ("LATIN1-" + name)).exists():
        sys.stdout.buffer.write(b"caf\\xe9 parse error\\n")
        sys.stdout.buffer.flush()
    print("generator failed in " + name)
    print("error: bad front matter", file=sys.stderr)
    sys.exit(3)
if len(sys.argv) == 2 and (cwd / "ROOT").exists():
    (cwd / "measures.json").write_text(json.dumps({"pldb": {"rows": 1}}))
print("built " + name)
"""

ROOT_NAME = "site"


class FakeSite:
    """A site checkout in tmp_path wired to the fake generator."""

    def __init__(self, base: Path):
        self.root = base / ROOT_NAME
        self.root.mkdir()
        (self.root / "ROOT").write_text("")
        self.script = base / "fake_generator.py"
        self.script.write_text(FAKE_GENERATOR)
        self.calls_log = base / "calls.log"

    def add_folder(self, name: str) -> Path:
        path = self.root / name
        path.mkdir()
        return path

    def fail(self, name: str, latin1: bool = False) -> None:
        """Make the generator fail for ``name`` (root is ``site``)."""
        directory = self.root if name in (ROOT_NAME, "parsers", "feature-pages") else self.root / name
        (directory / f"FAIL-{name}").write_text("")
        if latin1:
            (directory / f"LATIN1-{name}").write_text("")

    def calls(self) -> list[str]:
        if not self.calls_log.exists():
            return []
        return self.calls_log.read_text().split()

    def command(self, *extra: str) -> list[str]:
        return [sys.executable, str(self.script), str(self.calls_log), *extra]

    def yaml_config(self, subfolders: list[str]) -> str:
        """Render a pldb.yaml pointing every step at the fake generator."""
        def as_yaml_list(cmd: list[str]) -> str:
            return "[" + ", ".join(f"'{c}'" for c in cmd) + "]"

        return (
            "subfolders: [" + ", ".join(subfolders) + "]\n"
            f"generator: {as_yaml_list(self.command())}\n"
            f"parsers_command: {as_yaml_list(self.command('parsers'))}\n"
            f"feature_pages_command: {as_yaml_list(self.command('feature-pages'))}\n"
        )

    def config(self, subfolders: list[str], **kwargs: Any) -> BuildConfig:
        return BuildConfig(
            workspace=WorkspaceRoot(self.root),
            subfolders=subfolders,
            generator=self.command(),
            parsers_command=self.command("parsers"),
            feature_pages_command=self.command("feature-pages"),
            **kwargs,
        )


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for test tiers."""
    config.addinivalue_line(
        "markers",
        "evergreen: tests that always run, never skip (production tests)"
    )
    config.addinivalue_line(
        "markers",
        "dev: development/WIP tests, toggle-able for active development"
    )


@pytest.fixture(autouse=True)
def _plain_logging() -> None:
    """Keep captured output free of ANSI colors."""
    log.set_color(False)


@pytest.fixture
def fake_site(tmp_path: Path) -> FakeSite:
    """A site root with the fake generator; add folders per test."""
    return FakeSite(tmp_path)


def find_free_port() -> int:
    """Find an available port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('', 0))
        return s.getsockname()[1]


@pytest.fixture
def free_port() -> int:
    return find_free_port()


@pytest.fixture
def other_free_port(free_port: int) -> int:
    """A second free port, distinct from ``free_port``."""
    port = find_free_port()
    while port == free_port:
        port = find_free_port()
    return port
