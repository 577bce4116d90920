"""
pldb.build - Build orchestration for the PLDB site.

Runs the static-site generator over the root and each content folder in
declared order, optionally behind a maintenance page.
"""

from pldb.build.config import (
    SUBFOLDERS,
    ORDER_CONSTRAINTS,
    DEFAULT_PORT,
    WorkspaceRoot,
    BuildUnit,
    BuildConfig,
    declare_units,
    validate_build_order,
    load_build_config,
)
from pldb.build.errors import (
    FatalPrecondition,
    ExternalToolMissing,
    UnitFailure,
    BuildInterrupted,
)
from pldb.build.phases import BuildStatus, BuildResult, run_build
from pldb.build.maintenance import (
    ServerHandle,
    MaintenanceWindow,
    with_maintenance_window,
)
from pldb.build.orchestrator import (
    BuildReport,
    BuildOrchestrator,
    parse_args,
    main,
)

__all__ = [
    # Constants
    "SUBFOLDERS",
    "ORDER_CONSTRAINTS",
    "DEFAULT_PORT",
    # Data classes
    "WorkspaceRoot",
    "BuildUnit",
    "BuildConfig",
    "BuildStatus",
    "BuildResult",
    "BuildReport",
    "ServerHandle",
    # Errors
    "FatalPrecondition",
    "ExternalToolMissing",
    "UnitFailure",
    "BuildInterrupted",
    # Functions
    "declare_units",
    "validate_build_order",
    "load_build_config",
    "run_build",
    "with_maintenance_window",
    # Orchestrator
    "MaintenanceWindow",
    "BuildOrchestrator",
    "parse_args",
    "main",
]
