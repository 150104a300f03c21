"""Migration executor - applies and rolls back units against a database.

A unit is applied iff its version has a row in the tracking table. The
row is written or deleted in the same transaction as the unit's
statements, so the schema and its bookkeeping never diverge: a failing
statement reverts both and the batch stops.

Batches hold an advisory lock from before the first unit to after the
last, which keeps two processes from migrating the same database at once.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from driftkit.errors import (
    IrreversibleMigrationError,
    LockContentionError,
    MigrationStateError,
    MissingMigrationError,
    StatementError,
    TargetNotFoundError,
)
from driftkit.migrations.script import DOWN, UP, Migration
from driftkit.pool import ConnectionPool

logger = logging.getLogger(__name__)

DEFAULT_VERSION_TABLE = "schema_migrations"
DEFAULT_LOCK_ID = 1234567890
"""Advisory lock key reserved for migrations."""


class MigrationStatus(str, Enum):
    """Status of a unit.

    ``FAILED`` is only ever reported on the result of the attempt that
    failed; it is never stored.
    """

    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"


@dataclass
class MigrationRecord:
    """A row of the tracking table."""

    version: str
    name: str
    applied_at: datetime | None = None


@dataclass
class MigrationStatusEntry:
    """Derived status of a known unit."""

    version: str
    name: str
    status: MigrationStatus
    applied_at: datetime | None = None


@dataclass
class MigrationResult:
    """Outcome of one apply or rollback."""

    version: str
    name: str
    direction: str
    status: MigrationStatus
    dry_run: bool = False
    statements: list[str] = field(default_factory=list)
    manual_steps: list[str] = field(default_factory=list)
    duration: float = 0.0
    error: str | None = None


def _by_version(units: Iterable[Migration]) -> dict[str, Migration]:
    by_version: dict[str, Migration] = {}
    for unit in units:
        if unit.version in by_version:
            raise ValueError(f"Duplicate migration version {unit.version}")
        by_version[unit.version] = unit
    return by_version


class MigrationExecutor:
    """Apply and roll back migration units.

    Example:
        executor = MigrationExecutor(pool)
        await executor.apply_all(directory.load_all())
        await executor.rollback_to("20240101120000", directory.load_all())
    """

    poll_interval: float = 0.1
    """Seconds between lock attempts when ``lock_timeout`` is set."""

    def __init__(
        self,
        pool: ConnectionPool,
        *,
        table: str = DEFAULT_VERSION_TABLE,
        lock_id: int = DEFAULT_LOCK_ID,
        lock_timeout: float | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            pool: Database connection
            table: Name of the tracking table
            lock_id: Advisory lock key
            lock_timeout: Seconds to wait for the lock before giving up
                (None waits forever)
        """
        self.pool = pool
        self.table = table
        self.lock_id = lock_id
        self.lock_timeout = lock_timeout
        self._dialect = "postgresql" if pool.is_postgres() else "sqlite"

    # ------------------------------------------------------------------
    # Tracking table
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the tracking table if it doesn't exist."""
        table = self.table
        if self._dialect == "postgresql":
            sql = f"""
                CREATE TABLE IF NOT EXISTS "{table}" (
                    version VARCHAR(255) NOT NULL PRIMARY KEY,
                    name VARCHAR(255) NOT NULL,
                    applied_at TIMESTAMPTZ NOT NULL
                )
            """
        else:  # sqlite
            sql = f"""
                CREATE TABLE IF NOT EXISTS "{table}" (
                    version TEXT NOT NULL PRIMARY KEY,
                    name TEXT NOT NULL,
                    applied_at TEXT NOT NULL
                )
            """
        await self.pool.execute(sql)

    async def _table_exists(self) -> bool:
        if self._dialect == "postgresql":
            result = await self.pool.execute("SELECT to_regclass($1) IS NOT NULL AS present", [self.table])
            return bool(result.scalar())
        result = await self.pool.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?", [self.table]
        )
        return result.first() is not None

    async def _read_records(self, create: bool = False) -> list[MigrationRecord]:
        if create:
            await self.initialize()
        elif not await self._table_exists():
            return []
        result = await self.pool.execute(
            f'SELECT version, name, applied_at FROM "{self.table}" ORDER BY version'
        )
        return [
            MigrationRecord(
                version=row["version"],
                name=row["name"],
                applied_at=self.pool.from_timestamp(row["applied_at"]),
            )
            for row in result.all()
        ]

    async def _is_applied(self, version: str) -> bool:
        p = self.pool.placeholder
        result = await self.pool.execute(
            f'SELECT version FROM "{self.table}" WHERE version = {p(1)}', [version]
        )
        return result.first() is not None

    async def get_applied_migrations(self) -> list[MigrationRecord]:
        """Get applied migrations, ordered by version ascending."""
        return await self._read_records()

    async def get_current_version(self) -> str | None:
        """Get the newest applied version, or None if nothing is applied."""
        records = await self._read_records()
        return records[-1].version if records else None

    async def get_status(self, units: Iterable[Migration]) -> list[MigrationStatusEntry]:
        """Derive the status of every known unit, ordered by version."""
        applied = {r.version: r for r in await self._read_records()}
        entries = []
        for unit in sorted(units, key=lambda u: u.version):
            record = applied.get(unit.version)
            entries.append(
                MigrationStatusEntry(
                    version=unit.version,
                    name=unit.name,
                    status=MigrationStatus.APPLIED if record else MigrationStatus.PENDING,
                    applied_at=record.applied_at if record else None,
                )
            )
        return entries

    async def validate(self, units: Iterable[Migration]) -> None:
        """Check that every applied version has a unit.

        Raises:
            MissingMigrationError: If applied versions have no unit
        """
        known = {u.version for u in units}
        missing = [r.version for r in await self._read_records() if r.version not in known]
        if missing:
            raise MissingMigrationError(missing)

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    async def try_lock(self) -> bool:
        """Take the migration lock if it is free."""
        acquired = await self.pool.try_advisory_lock(self.lock_id)
        if acquired:
            logger.info("Acquired migration lock %s", self.lock_id)
        return acquired

    async def lock(self, wait: bool = True) -> None:
        """Take the migration lock.

        Args:
            wait: Block until the lock is free. When False, fail
                immediately if another process holds it.

        Raises:
            LockContentionError: If the lock is held and ``wait`` is False,
                or ``lock_timeout`` elapsed while waiting
        """
        if not wait:
            if not await self.try_lock():
                raise LockContentionError(self.lock_id)
            return

        if self.lock_timeout is None:
            logger.debug("Waiting for migration lock %s", self.lock_id)
            await self.pool.advisory_lock(self.lock_id)
            logger.info("Acquired migration lock %s", self.lock_id)
            return

        deadline = time.monotonic() + self.lock_timeout
        while not await self.try_lock():
            if time.monotonic() >= deadline:
                raise LockContentionError(
                    self.lock_id,
                    f"Timed out after {self.lock_timeout}s waiting for migration lock {self.lock_id}",
                )
            await asyncio.sleep(self.poll_interval)

    async def unlock(self) -> bool:
        """Release the migration lock.

        Returns:
            False if the lock was not held by this connection
        """
        released = await self.pool.advisory_unlock(self.lock_id)
        if released:
            logger.info("Released migration lock %s", self.lock_id)
        else:
            logger.warning("Migration lock %s was not held", self.lock_id)
        return released

    @asynccontextmanager
    async def locked(self, wait: bool = True) -> AsyncIterator[MigrationExecutor]:
        """Hold the migration lock for the duration of the block.

        The lock is released on every exit path, including errors and
        task cancellation.
        """
        await self.lock(wait)
        try:
            yield self
        finally:
            await self.unlock()

    # ------------------------------------------------------------------
    # Single units
    # ------------------------------------------------------------------

    async def apply(self, unit: Migration, dry_run: bool = False) -> MigrationResult:
        """Apply a unit's up statements and record it.

        Raises:
            MigrationStateError: If the unit is already applied
            IrreversibleMigrationError: If the up statements contain manual steps
            StatementError: If a statement fails; nothing is changed
        """
        return await self._run(unit, UP, dry_run)

    async def rollback(self, unit: Migration, dry_run: bool = False) -> MigrationResult:
        """Run a unit's down statements and delete its record.

        Raises:
            MigrationStateError: If the unit is not applied
            IrreversibleMigrationError: If the down statements contain manual steps
            StatementError: If a statement fails; the record is kept
        """
        return await self._run(unit, DOWN, dry_run)

    async def _run(self, unit: Migration, direction: str, dry_run: bool) -> MigrationResult:
        statements = unit.statements(direction)
        manual_steps = unit.manual_steps(direction)
        done = MigrationStatus.APPLIED if direction == UP else MigrationStatus.PENDING

        if dry_run:
            logger.warning(
                "Dry run: %s of %s_%s not executed (%d statements)",
                direction, unit.version, unit.name, len(statements),
            )
            for step in manual_steps:
                logger.warning("Dry run: %s_%s needs manual step: %s", unit.version, unit.name, step)
            return MigrationResult(
                version=unit.version,
                name=unit.name,
                direction=direction,
                status=done,
                dry_run=True,
                statements=statements,
                manual_steps=manual_steps,
            )

        if manual_steps:
            raise IrreversibleMigrationError(unit.version, direction, manual_steps)

        await self.initialize()
        started = time.perf_counter()
        p = self.pool.placeholder

        async with self.pool.transaction():
            applied = await self._is_applied(unit.version)
            if direction == UP and applied:
                raise MigrationStateError(f"Migration {unit.version} is already applied")
            if direction == DOWN and not applied:
                raise MigrationStateError(f"Migration {unit.version} is not applied")

            for index, statement in enumerate(statements):
                logger.debug(
                    "%s %s [%d/%d]: %s", direction, unit.version, index + 1, len(statements), statement
                )
                try:
                    await self.pool.execute(statement)
                except self.pool.errors as e:
                    result = MigrationResult(
                        version=unit.version,
                        name=unit.name,
                        direction=direction,
                        status=MigrationStatus.FAILED,
                        statements=statements,
                        duration=time.perf_counter() - started,
                        error=str(e),
                    )
                    raise StatementError(unit.version, direction, index, statement, str(e), result) from e

            if direction == UP:
                await self.pool.execute(
                    f'INSERT INTO "{self.table}" (version, name, applied_at) VALUES ({p(1)}, {p(2)}, {p(3)})',
                    [unit.version, unit.name, self.pool.to_timestamp(datetime.now(UTC))],
                )
            else:
                await self.pool.execute(
                    f'DELETE FROM "{self.table}" WHERE version = {p(1)}', [unit.version]
                )

        duration = time.perf_counter() - started
        verb = "Applied" if direction == UP else "Rolled back"
        logger.info("%s migration %s_%s in %.3fs", verb, unit.version, unit.name, duration)
        return MigrationResult(
            version=unit.version,
            name=unit.name,
            direction=direction,
            status=done,
            statements=statements,
            duration=duration,
        )

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def apply_all(
        self,
        units: Iterable[Migration],
        dry_run: bool = False,
        wait: bool = True,
    ) -> list[MigrationResult]:
        """Apply every pending unit in ascending version order.

        Stops at the first failure; the error propagates after the lock
        has been released. Dry runs take no lock and change nothing.
        """
        by_version = _by_version(units)

        async def run() -> list[MigrationResult]:
            applied = {r.version for r in await self._read_records(create=not dry_run)}
            pending = [by_version[v] for v in sorted(by_version) if v not in applied]
            if not pending:
                logger.info("No pending migrations")
            return [await self._run(unit, UP, dry_run) for unit in pending]

        if dry_run:
            return await run()
        async with self.locked(wait):
            return await run()

    async def rollback_to(
        self,
        target: str,
        units: Iterable[Migration],
        dry_run: bool = False,
        wait: bool = True,
    ) -> list[MigrationResult]:
        """Roll back every applied version newer than ``target``, newest first.

        Raises:
            TargetNotFoundError: If ``target`` is not a known unit, is newer
                than every applied version, or an applied version to roll
                back has no unit. Nothing is changed in that case.
        """
        by_version = _by_version(units)
        if target not in by_version:
            raise TargetNotFoundError(f"Unknown migration version {target}")

        async def run() -> list[MigrationResult]:
            applied = [r.version for r in await self._read_records(create=not dry_run)]
            if not applied or target > applied[-1]:
                raise TargetNotFoundError(f"Migration {target} is not applied")
            newer = [v for v in reversed(applied) if v > target]
            missing = [v for v in newer if v not in by_version]
            if missing:
                raise TargetNotFoundError(f"No migration found for applied versions: {', '.join(missing)}")
            return [await self._run(by_version[v], DOWN, dry_run) for v in newer]

        if dry_run:
            return await run()
        async with self.locked(wait):
            return await run()

    async def rollback_last(
        self,
        units: Iterable[Migration],
        count: int = 1,
        dry_run: bool = False,
        wait: bool = True,
    ) -> list[MigrationResult]:
        """Roll back the ``count`` most recently applied versions.

        Raises:
            MissingMigrationError: If one of them has no unit
        """
        if count < 1:
            raise ValueError("count must be at least 1")
        by_version = _by_version(units)

        async def run() -> list[MigrationResult]:
            applied = [r.version for r in await self._read_records(create=not dry_run)]
            newest = list(reversed(applied))[:count]
            missing = [v for v in newest if v not in by_version]
            if missing:
                raise MissingMigrationError(missing)
            return [await self._run(by_version[v], DOWN, dry_run) for v in newest]

        if dry_run:
            return await run()
        async with self.locked(wait):
            return await run()
