#!/usr/bin/env python3
"""
bufguard CLI entry point for `python -m bufguard`.

Usage:
    python -m bufguard scan src/
    python -m bufguard rules --rules rules/
"""

import sys
from bufguard.cli import main

if __name__ == "__main__":
    sys.exit(main())
