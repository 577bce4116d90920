"""
Build orchestrator for the PLDB site.

Runs the root build, the feature pages bridging step and every declared
subfolder, optionally behind a maintenance window.
"""

from __future__ import annotations

import argparse
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from pldb.build.config import BuildConfig, load_build_config
from pldb.build.errors import FatalPrecondition
from pldb.build.maintenance import with_maintenance_window
from pldb.build.phases import (
    BuildResult,
    BuildStatus,
    build_parsers_file,
    build_root,
    generate_feature_pages,
    run_build,
    serve_directory,
)
from pldb.core.timing import TimingContext, format_duration, format_timings
from pldb.core.utils import log

ROOT_STAGE = "root"
BRIDGING_STAGE = "feature-pages"


# =============================================================================
# Report
# =============================================================================


@dataclass
class BuildReport:
    """Per-unit results of one build run, in execution order."""

    results: list[BuildResult] = field(default_factory=list)
    timings: dict[str, float] = field(default_factory=dict)
    aborted: bool = False

    @property
    def failures(self) -> list[str]:
        return [r.unit for r in self.results if r.status is BuildStatus.FAILED]

    @property
    def succeeded(self) -> list[str]:
        return [r.unit for r in self.results if r.status is BuildStatus.SUCCESS]

    @property
    def skipped(self) -> list[str]:
        return [r.unit for r in self.results if r.status is BuildStatus.SKIPPED]

    @property
    def statuses(self) -> dict[str, BuildStatus]:
        return {r.unit: r.status for r in self.results}

    @property
    def exit_code(self) -> int:
        # Subfolder failures are warnings; only an aborted run is an error
        return 1 if self.aborted else 0


# =============================================================================
# Build Orchestrator
# =============================================================================


class BuildOrchestrator:
    """Orchestrates the PLDB site build."""

    def __init__(self, config: BuildConfig):
        self.config = config
        self.report = BuildReport()

    def _run_stage(self, name: str, step: Callable[[], None]) -> None:
        """Run a stage whose failure ends the build."""
        with TimingContext(self.report.timings, name) as timer:
            try:
                step()
            except FatalPrecondition as e:
                self.report.results.append(
                    BuildResult(unit=name, status=BuildStatus.FAILED, output=str(e))
                )
                self.report.aborted = True
                raise
        self.report.results.append(
            BuildResult(unit=name, status=BuildStatus.SUCCESS, duration=timer.elapsed)
        )

    def build_root(self) -> None:
        """Regenerate the parsers file, then build the root folder."""
        workspace = self.config.workspace

        if self.config.parsers_command:
            log.header("Building parsers file")
            build_parsers_file(workspace, self.config.parsers_command, self.config.dry_run)

        log.header("Building root folder")
        build_root(workspace, self.config.generator_command(), self.config.dry_run)
        log.success("Root folder built")

    def generate_feature_pages(self) -> None:
        """Emit feature pages from the root's measures."""
        if not self.config.feature_pages_command:
            log.info("No feature pages command configured, skipping")
            return

        log.header("Generating feature pages")
        generate_feature_pages(
            self.config.workspace,
            self.config.feature_pages_command,
            self.config.dry_run,
        )
        log.success("Feature pages generated")

    def build_subfolders(self) -> None:
        """Build each declared subfolder; failures are recorded, not raised."""
        log.header("Building subfolders")
        units = self.config.units()
        with TimingContext(self.report.timings, "subfolders"):
            self.report.results.extend(
                run_build(units, self.config.generator_command(), self.config.dry_run)
            )

    def _print_summary(self, started: float) -> None:
        elapsed = time.monotonic() - started
        log.header("BUILD COMPLETE")
        log.info(f"Total time: {format_duration(elapsed)}")

        if self.config.verbose:
            for phase, duration in format_timings(self.report.timings):
                log.table_row(phase, duration, col1_width=16)

        if self.report.skipped:
            log.dim(f"Not present: {', '.join(self.report.skipped)}")

        failures = self.report.failures
        if failures:
            log.warning(f"{len(failures)} subfolder(s) had errors: {', '.join(failures)}")
        else:
            log.success("All subfolders built")

    def run(self) -> BuildReport:
        """Run the whole build. Returns the report unless a fatal stage failed."""
        started = time.monotonic()
        log.header(f"PLDB Build: {self.config.workspace.path}")

        # Reject a bad declared order before spending time on the root build
        self.config.units()

        self._run_stage(ROOT_STAGE, self.build_root)
        self._run_stage(BRIDGING_STAGE, self.generate_feature_pages)
        self.build_subfolders()

        self._print_summary(started)
        return self.report


# =============================================================================
# CLI
# =============================================================================


def add_build_arguments(parser: argparse.ArgumentParser) -> None:
    """Arguments shared by build.py and `pldb build`."""
    parser.add_argument(
        "root",
        nargs="?",
        default=".",
        help="Site root directory (default: current directory)",
    )

    parser.add_argument(
        "--serve", "-s",
        action="store_true",
        help="Serve a maintenance page during the build, then the built site",
    )

    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to serve on (default: 3000, or placeholder_port in pldb.yaml)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without executing",
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show per-phase timings and tracebacks",
    )


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="PLDB Build Orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python build.py                  # Build the site in the current directory
    python build.py --serve          # Build behind a maintenance page, then serve
    python build.py --dry-run        # Show what would be done
        """,
    )
    add_build_arguments(parser)
    return parser.parse_args(argv)


def cmd_build(args: argparse.Namespace) -> int:
    """Execute the build command."""
    try:
        config = load_build_config(
            Path(args.root),
            serve=args.serve,
            port=args.port,
            verbose=args.verbose,
            dry_run=args.dry_run,
        )
        orchestrator = BuildOrchestrator(config)

        if not config.serve:
            orchestrator.run()
            log.info("")
            log.info("To start a local server, run: python build.py --serve")
            return 0

        log.header("Setting up maintenance page before build")
        with_maintenance_window(
            orchestrator.run,
            config.workspace,
            config.port,
            on_ready=lambda: log.info("Build complete - handing port to the real site"),
        )
        if config.dry_run:
            log.info(f"[DRY-RUN] Would serve {config.workspace.path} on port {config.port}")
            return 0
        serve_directory(config.workspace.path, config.port)
        return 0

    except KeyboardInterrupt:
        log.warning("Build interrupted")
        return 130
    except Exception as e:
        log.error(str(e))
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    return cmd_build(parse_args(argv))


if __name__ == "__main__":
    sys.exit(main())
