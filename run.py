#!/usr/bin/env python3
"""
Launcher for RelayGuard without installing the package.

Usage:
    python run.py
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent / "src"))

from relayguard import main

if __name__ == "__main__":
    main()
