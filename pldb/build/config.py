"""
Build configuration for the PLDB site.

Constants, dataclasses, the declared build order and its validation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from pldb.build.errors import FatalPrecondition
from pldb.core.utils import STATE_DIR_NAME

__all__ = [
    "SUBFOLDERS",
    "ORDER_CONSTRAINTS",
    "DEFAULT_PORT",
    "CONFIG_FILENAME",
    "MEASURES_FILENAME",
    "WorkspaceRoot",
    "BuildUnit",
    "BuildConfig",
    "declare_units",
    "validate_build_order",
    "load_build_config",
]

# =============================================================================
# Constants
# =============================================================================

# Build order matters: creators must be before lists
SUBFOLDERS = ["blog", "books", "concepts", "creators", "features", "lists", "pages"]

# (before, after) pairs the declared sequence has to respect
ORDER_CONSTRAINTS: list[tuple[str, str]] = [("creators", "lists")]

# Port the placeholder and the real site are served on
DEFAULT_PORT = 3000

# Optional per-checkout overrides
CONFIG_FILENAME = "pldb.yaml"

# Derived data written by the root build and read by the feature pages step
MEASURES_FILENAME = "measures.json"

SCROLL_CLI = Path("node_modules") / "scroll-cli" / "scroll.js"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class WorkspaceRoot:
    """The site checkout every build step runs relative to."""

    path: Path

    def unit_dir(self, name: str) -> Path:
        return self.path / name

    @property
    def measures_path(self) -> Path:
        return self.path / MEASURES_FILENAME

    @property
    def scroll_cli(self) -> Path:
        return self.path / SCROLL_CLI

    @property
    def state_dir(self) -> Path:
        return self.path / STATE_DIR_NAME

    @property
    def config_path(self) -> Path:
        return self.path / CONFIG_FILENAME


@dataclass(frozen=True)
class BuildUnit:
    """One content folder built by its own generator invocation."""

    name: str
    path: Path
    ordinal: int

    def exists(self) -> bool:
        return self.path.is_dir()


@dataclass
class BuildConfig:
    """Configuration for a build run."""

    workspace: WorkspaceRoot
    subfolders: list[str] = field(default_factory=lambda: list(SUBFOLDERS))
    order_constraints: list[tuple[str, str]] = field(
        default_factory=lambda: list(ORDER_CONSTRAINTS)
    )
    # None means scroll-cli from the workspace's node_modules
    generator: Optional[list[str]] = None
    parsers_command: Optional[list[str]] = field(
        default_factory=lambda: ["node", "cli.js", "buildParsersFile"]
    )
    feature_pages_command: Optional[list[str]] = field(
        default_factory=lambda: [
            "node",
            "-e",
            "require('./Computer.js').Tables.writeAllFeaturePages()",
        ]
    )
    serve: bool = False
    port: int = DEFAULT_PORT
    verbose: bool = False
    dry_run: bool = False

    def generator_command(self) -> list[str]:
        if self.generator:
            return list(self.generator)
        return ["node", str(self.workspace.scroll_cli), "build"]

    def units(self) -> list[BuildUnit]:
        return declare_units(self.workspace, self.subfolders, self.order_constraints)


# =============================================================================
# Build Order
# =============================================================================


def validate_build_order(
    names: list[str],
    constraints: list[tuple[str, str]],
) -> None:
    """Check a declared sequence against its ordering constraints.

    Only checks; the sequence is never reordered. Constraints naming a
    folder that is not declared are ignored.

    Raises:
        FatalPrecondition: On duplicate names or a violated constraint.
    """
    seen: set[str] = set()
    duplicates: list[str] = []
    for name in names:
        if name in seen:
            duplicates.append(name)
        seen.add(name)
    if duplicates:
        raise FatalPrecondition(
            f"Build order declares {', '.join(sorted(set(duplicates)))} more than once"
        )

    position = {name: i for i, name in enumerate(names)}
    for before, after in constraints:
        if before in position and after in position and position[before] > position[after]:
            raise FatalPrecondition(
                f"Build order must build {before}/ before {after}/ "
                f"(declared: {', '.join(names)})"
            )


def declare_units(
    workspace: WorkspaceRoot,
    names: list[str],
    constraints: Optional[list[tuple[str, str]]] = None,
) -> list[BuildUnit]:
    """Turn a declared folder sequence into ordered BuildUnits."""
    validate_build_order(names, constraints if constraints is not None else ORDER_CONSTRAINTS)
    return [
        BuildUnit(name=name, path=workspace.unit_dir(name), ordinal=i)
        for i, name in enumerate(names)
    ]


# =============================================================================
# Loading
# =============================================================================


def _read_config_file(path: Path) -> dict[str, Any]:
    """Read pldb.yaml. A missing file means no overrides."""
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise FatalPrecondition(f"{path.name} is not valid YAML: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise FatalPrecondition(f"{path.name} must contain a mapping at top level")
    return data


def _as_command(value: Any, key: str) -> Optional[list[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.split()
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    raise FatalPrecondition(f"{CONFIG_FILENAME}: '{key}' must be a string or list of strings")


def load_build_config(root: Path, **overrides: Any) -> BuildConfig:
    """Build a BuildConfig from defaults, pldb.yaml, then CLI overrides.

    Overrides whose value is None are ignored so unset flags keep the
    file's value.
    """
    workspace = WorkspaceRoot(root.resolve())
    data = _read_config_file(workspace.config_path)
    config = BuildConfig(workspace=workspace)

    if "subfolders" in data:
        subfolders = data["subfolders"]
        if not isinstance(subfolders, list) or not all(isinstance(s, str) for s in subfolders):
            raise FatalPrecondition(f"{CONFIG_FILENAME}: 'subfolders' must be a list of names")
        config.subfolders = list(subfolders)

    if "order_constraints" in data:
        pairs = data["order_constraints"] or []
        try:
            config.order_constraints = [(str(a), str(b)) for a, b in pairs]
        except (TypeError, ValueError) as e:
            raise FatalPrecondition(
                f"{CONFIG_FILENAME}: 'order_constraints' must be a list of [before, after] pairs"
            ) from e

    for key in ("generator", "parsers_command", "feature_pages_command"):
        if key in data:
            setattr(config, key, _as_command(data[key], key))

    if "placeholder_port" in data:
        config.port = int(data["placeholder_port"])

    for key, value in overrides.items():
        if value is not None:
            setattr(config, key, value)

    validate_build_order(config.subfolders, config.order_constraints)
    return config
