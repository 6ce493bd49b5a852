"""
Entry point for: python3 -m src.reconciler

Runs the house screen reconciler service.
"""

import sys

from .service import main

if __name__ == "__main__":
    sys.exit(main())
