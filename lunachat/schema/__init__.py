"""
Schema versioning for the forum tables.

This package provides:
- Migrator: upgrades stored rows table by table, version by version
- MIGRATIONS: the registered pipeline for every table
- ensure_current: the server's startup check

Invariants:
    - Stored versions only move forward
    - The server never serves a table whose version is behind

How to change safely:
    - Add a step to steps.py and bump CURRENT_VERSIONS in the same change
    - Run lunachat-migrate status before and after deploying
"""

from .migrator import (
    MigrationContext,
    MigrationReport,
    MigrationStep,
    Migrator,
    TableMigration,
    ensure_current,
)
from .steps import MIGRATIONS

__all__ = [
    "MIGRATIONS",
    "MigrationContext",
    "MigrationReport",
    "MigrationStep",
    "Migrator",
    "TableMigration",
    "ensure_current",
]
