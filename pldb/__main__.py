"""
Entry point for running pldb as a module: python -m pldb
"""

import sys
from .cli import main

if __name__ == "__main__":
    sys.exit(main())
