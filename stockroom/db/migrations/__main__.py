"""Entry point for running migrations as a module.

Usage:
    python -m stockroom.db.migrations up
    python -m stockroom.db.migrations status
"""

from .cli import main

if __name__ == "__main__":
    main()
