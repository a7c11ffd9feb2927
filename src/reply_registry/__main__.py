#!/usr/bin/env python3
"""
Reply Registry - entry point for python -m reply_registry
"""

from reply_registry.cli import main

if __name__ == "__main__":
    main()
