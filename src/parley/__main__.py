"""
Parley - Allow running as ``python -m parley``.

Created by orpheus497
"""

import sys

from .main import main

if __name__ == "__main__":
    sys.exit(main())
