"""
Offline table migrator.

Each table has a declarative pipeline of MigrationSteps. A step upgrades
every row of the table from `from_version` to `from_version + 1`: rows are
decoded with the old record codec, transformed, re-encoded with the new
codec and written back in place under the same key.

Algorithm for one table:
    1. No stored version: store max_version (fresh install, table assumed
       empty) and flush.
    2. While version < max_version: apply the step for that version to
       every row, flush the table, store version + 1, flush versions.
    3. Advance the allocator past the table's highest key.

Invariants:
    - Running the migrator twice is a no-op after the first run
    - The stored version always names the layout of every row once its
      step has finished, so a failed run resumes at the failing step
    - Any error aborts; rows written before the error stay written
    - Transforms see a snapshot of their table taken before the pass

How to change safely:
    - Never edit a released step; add a new one and bump CURRENT_VERSIONS
    - Keep old record codecs in steps.py for as long as a step reads them
    - The migrator assumes no concurrent writer: stop the server first
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from ..errors import ForumError, MigrationError, SchemaOutdatedError
from ..state import ForumState
from ..state.codec import Codec
from ..state.engine import Keyspace
from ..state.keys import TableType

logger = logging.getLogger(__name__)


@dataclass
class MigrationContext:
    """What a transform may look at while migrating one table.

    Attributes:
        state: Store handles over the database being migrated
        table: Table being migrated
        rows: The table's rows as decoded at the start of the pass,
            in key order
    """

    state: ForumState
    table: TableType
    rows: list[tuple[bytes, Any]]
    _positions: dict[bytes, int] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        self._positions = {raw_key: i for i, (raw_key, _) in enumerate(self.rows)}

    def neighbours(self, raw_key: bytes) -> tuple[Any | None, Any | None]:
        """Rows immediately before and after `raw_key` in key order."""
        i = self._positions[raw_key]
        before = self.rows[i - 1][1] if i > 0 else None
        after = self.rows[i + 1][1] if i + 1 < len(self.rows) else None
        return before, after

    def lookup(self, raw_key: bytes) -> Any | None:
        i = self._positions.get(raw_key)
        return None if i is None else self.rows[i][1]


Transform = Callable[[MigrationContext, Any], Any]


@dataclass(frozen=True)
class MigrationStep:
    """Upgrade one table from `from_version` to `from_version + 1`."""

    from_version: int
    from_codec: Codec[Any]
    to_codec: Codec[Any]
    transform: Transform

    @property
    def name(self) -> str:
        return getattr(self.transform, "__name__", repr(self.transform))


@dataclass(frozen=True)
class TableMigration:
    """Migration pipeline of one table.

    Attributes:
        table: Table the pipeline applies to
        keyspace: Keyspace holding the table's rows
        max_version: Version the pipeline ends at
        steps: Steps in any order, one per from_version
        key_table: Allocator counter to keep ahead of the table's keys
    """

    table: TableType
    keyspace: str
    max_version: int
    steps: tuple[MigrationStep, ...] = ()
    key_table: TableType | None = None

    def step_for(self, version: int) -> MigrationStep:
        for step in self.steps:
            if step.from_version == version:
                return step
        raise MigrationError(
            f"No migration registered for {self.table.name} from version {version}",
            table=self.table.name,
        )


@dataclass
class MigrationReport:
    """Outcome of migrating one table."""

    table: TableType
    from_version: int | None
    to_version: int
    rows: int = 0
    steps: list[str] = field(default_factory=list)
    applied: bool = True

    @property
    def changed(self) -> bool:
        return self.from_version != self.to_version


class Migrator:
    """Runs table migrations against one ForumState.

    Example:
        >>> migrator = Migrator(state, MIGRATIONS)
        >>> reports = await migrator.run()
    """

    def __init__(self, state: ForumState, migrations: Sequence[TableMigration]) -> None:
        self.state = state
        self.migrations = tuple(migrations)

    async def run(self, dry_run: bool = False, only_empty: bool = False) -> list[MigrationReport]:
        """Migrate every registered table in registration order.

        Args:
            dry_run: Report what would change without writing anything
            only_empty: Skip tables that hold rows

        Raises:
            MigrationError: If a step is missing or a transform fails
        """
        reports = []
        for migration in self.migrations:
            keyspace = self.state.db.open_keyspace(migration.keyspace)
            if only_empty and not keyspace.is_empty():
                continue
            reports.append(await self.migrate_table(migration, keyspace, dry_run=dry_run))
        return reports

    async def migrate_table(
        self,
        migration: TableMigration,
        keyspace: Keyspace,
        dry_run: bool = False,
    ) -> MigrationReport:
        versions = self.state.versions
        table = migration.table
        stored = versions.get(table)

        if stored is None:
            report = MigrationReport(table, None, migration.max_version, applied=not dry_run)
            if not dry_run:
                versions.insert(table, migration.max_version)
                await versions.flush()
                logger.info(
                    "Set version of new table",
                    extra={"table": table.name, "version": migration.max_version},
                )
            return report

        report = MigrationReport(table, stored, stored, applied=not dry_run)
        version = stored
        while version < migration.max_version:
            step = migration.step_for(version)
            report.steps.append(step.name)
            if dry_run:
                report.rows = len(keyspace)
            else:
                report.rows = await self._apply_step(migration, keyspace, step)
                await keyspace.flush()
                versions.insert(table, version + 1)
                await versions.flush()
            version += 1
            report.to_version = version

        if dry_run or not report.changed:
            return report

        if migration.key_table is not None:
            self._advance_allocator(migration.key_table, keyspace)
            await keyspace.flush()
        logger.info(
            "Migrated table",
            extra={"table": table.name, "from": stored, "to": version, "rows": report.rows},
        )
        return report

    async def _apply_step(
        self,
        migration: TableMigration,
        keyspace: Keyspace,
        step: MigrationStep,
    ) -> int:
        table = migration.table
        logger.info(
            "Migrating table",
            extra={
                "table": table.name,
                "from": step.from_version,
                "to": step.from_version + 1,
                "step": step.name,
            },
        )
        rows = [(raw_key, step.from_codec.decode(raw)) for raw_key, raw in keyspace.iter()]
        ctx = MigrationContext(self.state, table, rows)
        for raw_key, old in rows:
            try:
                new = step.transform(ctx, old)
                keyspace.insert(raw_key, step.to_codec.encode(new))
            except MigrationError:
                raise
            except ForumError as e:
                raise MigrationError(
                    f"Failed to migrate {table.name} row {raw_key.hex()}: {e.message}",
                    table=table.name,
                ) from e
            logger.debug(
                "Migrated row",
                extra={"table": table.name, "key": raw_key.hex(), "step": step.name},
            )
        return len(rows)

    def _advance_allocator(self, key_table: TableType, keyspace: Keyspace) -> None:
        last = next(keyspace.iter(reverse=True), None)
        if last is not None:
            self.state.highest_keys.advance_to(key_table, int.from_bytes(last[0], "big"))


async def ensure_current(state: ForumState, migrations: Sequence[TableMigration]) -> None:
    """Bring empty tables up to date and refuse to start on stale data.

    A table whose stored version is behind and which holds no rows is
    upgraded on the spot. A behind table with rows needs the offline
    migrator.

    Raises:
        SchemaOutdatedError: If any non-empty table is behind
    """
    migrator = Migrator(state, [m for m in migrations if m.table in state.versions.outdated()])
    reports = await migrator.run(only_empty=True)
    for report in reports:
        logger.info(
            "Upgraded empty table",
            extra={
                "table": report.table.name,
                "from": report.from_version,
                "to": report.to_version,
            },
        )
    outdated = state.versions.outdated()
    if outdated:
        raise SchemaOutdatedError({table.name: versions for table, versions in outdated.items()})
