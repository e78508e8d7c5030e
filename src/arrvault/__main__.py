"""
Entry point for running arrvault as a module.

Usage:
    python -m arrvault [command] [options]
"""

from arrvault.cli import main

if __name__ == "__main__":
    main()
