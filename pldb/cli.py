"""
Main CLI for the pldb tool.

Provides a unified interface for building, previewing and deploying the site.
"""

from __future__ import annotations

import argparse
import sys
from typing import Optional

from pldb.core.utils import log


# =============================================================================
# Version
# =============================================================================

__version__ = "0.1.0"


# =============================================================================
# Argument Parsing
# =============================================================================


def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser with all subcommands."""
    from pldb.build.orchestrator import add_build_arguments
    from pldb.commands.deploy import add_deploy_arguments
    from pldb.commands.preview import add_preview_arguments

    parser = argparse.ArgumentParser(
        prog="pldb",
        description="PLDB site build and deployment CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  build       Build the site (root, feature pages, subfolders)
  preview     Download a pre-built site and serve it locally
  deploy      Provision a server and install the latest release

Examples:
  pldb build                         # Build the site in the current directory
  pldb build --serve                 # Maintenance page during build, then serve
  pldb preview --pr 9                # Serve the site artifact of PR #9
  pldb deploy 159.65.99.188 https://github.com/kaby76/pldb.git
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        metavar="<command>",
    )

    # --- build ---
    build_parser = subparsers.add_parser(
        "build",
        help="Build the site in dependency order",
    )
    add_build_arguments(build_parser)

    # --- preview ---
    preview_parser = subparsers.add_parser(
        "preview",
        help="Serve a pre-built site artifact locally",
    )
    add_preview_arguments(preview_parser)

    # --- deploy ---
    deploy_parser = subparsers.add_parser(
        "deploy",
        help="Provision a remote host and install the latest release",
    )
    add_deploy_arguments(deploy_parser)

    return parser


# =============================================================================
# Main Entry Point
# =============================================================================


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.no_color:
        log.set_color(False)

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "build":
        from pldb.build.orchestrator import cmd_build
        return cmd_build(args)

    if args.command == "preview":
        from pldb.commands.preview import cmd_preview
        return cmd_preview(args)

    if args.command == "deploy":
        from pldb.commands.deploy import cmd_deploy
        return cmd_deploy(args)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
