"""
Error taxonomy for site builds.

FatalPrecondition stops the run. UnitFailure is recorded and the run goes on.
"""

from __future__ import annotations


class FatalPrecondition(RuntimeError):
    """Root build, bridging step or placeholder port failed. Nothing later may run."""


class ExternalToolMissing(FatalPrecondition):
    """A required executable (generator, gh, ssh) is not installed."""

    def __init__(self, tool: str, hint: str = ""):
        self.tool = tool
        message = f"Required tool not found: {tool}"
        if hint:
            message += f"\n  Fix: {hint}"
        super().__init__(message)


class UnitFailure(RuntimeError):
    """A single subfolder's generator exited non-zero."""

    def __init__(self, unit: str, returncode: int, output: str = "", duration: float = 0.0):
        self.unit = unit
        self.returncode = returncode
        self.output = output
        self.duration = duration
        super().__init__(f"{unit}/ build exited with status {returncode}")


class BuildInterrupted(KeyboardInterrupt):
    """SIGTERM arrived while a maintenance window or a foreground server was up."""
