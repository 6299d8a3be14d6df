"""
Migration CLI for LunaChat.

Commands:
- run: Upgrade every table to the version the running code writes
- status: Show stored and current version of every table

Usage:
    lunachat-migrate run
    lunachat-migrate run --dry-run
    lunachat-migrate status --db ./db

Invariants:
    - Any failure exits non-zero and leaves versions of unfinished tables
      untouched
    - The server must be stopped while migrating

How to change safely:
    - Keep output stable; operators grep it
    - New commands go next to the existing ones, never replace them
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from ..errors import ForumError
from ..schema import MIGRATIONS, Migrator
from ..schema.migrator import MigrationReport
from ..state import DEFAULT_PATH, Database, ForumState
from ..state.table import CURRENT_VERSIONS

logger = logging.getLogger(__name__)


class MigrateCLI:
    """Migration commands over one database directory.

    Example:
        >>> cli = MigrateCLI("db")
        >>> reports = asyncio.run(cli.run(dry_run=True))
    """

    def __init__(self, path: str | Path = DEFAULT_PATH) -> None:
        self.path = Path(path)

    async def run(self, dry_run: bool = False) -> list[MigrationReport]:
        """Migrate all tables.

        Raises:
            ForumError: If any table fails to migrate
        """
        with Database(self.path) as db:
            state = ForumState.from_database(db)
            return await Migrator(state, MIGRATIONS).run(dry_run=dry_run)

    def status(self) -> list[tuple[str, int | None, int]]:
        """Return (table, stored version, current version) per table."""
        with Database(self.path) as db:
            state = ForumState.from_database(db)
            return [
                (table.name, state.versions.get(table), current)
                for table, current in CURRENT_VERSIONS.items()
            ]


def format_report(report: MigrationReport, dry_run: bool = False) -> str:
    table = report.table.name
    if report.from_version is None:
        action = "Would set" if dry_run else "Set"
        return f"{action} {table} to version {report.to_version} (new table)"
    if not report.changed:
        return f"{table} is up to date at version {report.to_version}"
    action = "Would migrate" if dry_run else "Migrated"
    steps = ", ".join(report.steps)
    return (
        f"{action} {table} from version {report.from_version} to {report.to_version} "
        f"using {steps} ({report.rows} row(s))"
    )


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the migration tool."""
    parser = argparse.ArgumentParser(description="LunaChat database migration tool")
    parser.set_defaults(db=DEFAULT_PATH, verbose=False, dry_run=False)
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--db", default=DEFAULT_PATH, help="Database directory (default: db)")
    common.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser(
        "run", parents=[common], help="Migrate every table to the current version"
    )
    run_parser.add_argument("--dry-run", action="store_true", help="Don't make changes")

    subparsers.add_parser("status", parents=[common], help="Show stored and current table versions")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    cli = MigrateCLI(args.db)
    command = args.command or "run"

    try:
        if command == "status":
            print(f"{'TABLE':<14} {'STORED':>6} {'CURRENT':>7}")
            for table, stored, current in cli.status():
                shown = "-" if stored is None else str(stored)
                marker = "  (outdated)" if stored is not None and stored < current else ""
                print(f"{table:<14} {shown:>6} {current:>7}{marker}")
            sys.exit(0)

        dry_run = args.dry_run
        reports = asyncio.run(cli.run(dry_run=dry_run))
        for report in reports:
            print(format_report(report, dry_run=dry_run))
    except ForumError as e:
        logger.error("Migration failed", extra={"code": e.code, "details": e.details}, exc_info=True)
        print(f"Migration failed: {e.message}", file=sys.stderr)
        sys.exit(1)

    sys.exit(0)


if __name__ == "__main__":
    main()
