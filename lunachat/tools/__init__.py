"""
Command-line tools for LunaChat administration.

- migrate: Upgrade stored tables to the current schema version

Invariants:
    - Tools work offline (the server must not be running)
"""

from .migrate import MigrateCLI

__all__ = ["MigrateCLI"]
