"""
pldb - PLDB site build and deployment CLI.

Usage:
    python -m pldb <command> [options]

Commands:
    build       Build the site in dependency order (--serve for a maintenance window)
    preview     Download a pre-built site artifact and serve it locally
    deploy      Provision a remote host and install the latest release
"""

from .cli import __version__, main

__all__ = ["__version__", "main"]
