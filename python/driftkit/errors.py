"""Exceptions raised by driftkit."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from driftkit.migrations.runner import MigrationResult


class DriftkitError(Exception):
    """Base class for all driftkit errors."""


class ConnectivityError(DriftkitError):
    """The database could not be reached."""


class LockContentionError(DriftkitError):
    """Another process holds the migration lock."""

    def __init__(self, lock_id: int, message: str | None = None) -> None:
        self.lock_id = lock_id
        super().__init__(message or f"Migration lock {lock_id} is held by another process")


class StatementError(DriftkitError):
    """A migration statement failed and its transaction was reverted.

    The driver exception is chained as ``__cause__`` and its message is
    included verbatim.
    """

    def __init__(
        self,
        version: str,
        direction: str,
        index: int,
        statement: str,
        message: str,
        result: MigrationResult | None = None,
    ) -> None:
        self.version = version
        self.direction = direction
        self.index = index
        self.statement = statement
        self.message = message
        self.result = result
        super().__init__(
            f"{direction} of migration {version} failed at statement {index + 1}: {message}"
        )


class MigrationStateError(DriftkitError):
    """The migration is not in a state that allows the requested operation."""


class IrreversibleMigrationError(DriftkitError):
    """The migration contains manual-action placeholders for this direction."""

    def __init__(self, version: str, direction: str, steps: list[str]) -> None:
        self.version = version
        self.direction = direction
        self.steps = steps
        listed = "\n  ".join(steps)
        super().__init__(
            f"Migration {version} needs manual completion before {direction}:\n  {listed}"
        )


class TargetNotFoundError(DriftkitError, LookupError):
    """A rollback target is unknown or not applied."""


class MissingMigrationError(DriftkitError):
    """Applied versions exist in the tracking table without a migration unit."""

    def __init__(self, versions: list[str]) -> None:
        self.versions = versions
        super().__init__(f"Missing migration files for applied versions: {', '.join(versions)}")
