#!/usr/bin/env python3
"""PLDB Build Orchestrator - Entry Point.

Usage: python build.py [--serve] [root]
"""
import sys

# Run from a plain checkout without installing
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent))

from pldb.build import main

if __name__ == "__main__":
    sys.exit(main())
