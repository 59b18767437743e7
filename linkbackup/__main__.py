#!/usr/bin/env python3
"""
Command-line interface entry point for the linkbackup package.

This module allows the package to be executed as a script using:
python -m linkbackup
"""

import sys
from .cli import main


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        # Interrupted passes never persisted their manifest; rerunning is safe.
        print("\nOperation cancelled by user")
        sys.exit(1)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)
