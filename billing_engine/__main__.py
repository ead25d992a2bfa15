"""
Main entry point for running billing_engine as a module.

Usage:
    python -m billing_engine [options]

This is equivalent to running:
    python -m billing_engine.engine [options]
"""
import sys
from .engine import main

if __name__ == "__main__":
    sys.exit(main())
