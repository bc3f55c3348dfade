#!/usr/bin/env python3
"""
statnorm - Module entry point

Usage:
    python -m statnorm --help
    python -m statnorm info model.safetensors
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
