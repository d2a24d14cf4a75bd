"""
Entry point for running recall as a module.

Usage:
    python -m recall.delivery study spanish-101
    python -m recall.delivery stats
    python -m recall.delivery --help
"""
from .cli import main

if __name__ == "__main__":
    main()
