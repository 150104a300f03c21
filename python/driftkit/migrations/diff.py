"""Structural diff between two schema snapshots.

This module compares a desired ``Snapshot`` against an actual one and
reports what has to change to make the actual schema match the desired
schema. The comparison is exact:

- SQL types, nullability and default expressions are compared byte for
  byte (``"integer"`` and ``"int4"`` are different types).
- Indexes, foreign keys and constraints are matched by name only. Give a
  changed index a new name to have it dropped and recreated. A column
  declared unique stands for the unique constraint with the default name.
- Renames are never detected; a renamed column is a drop plus an add.
- Enum types are compared by name; of their labels only additions count.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from driftkit.schema import (
    Column,
    Constraint,
    ConstraintKind,
    EnumType,
    ForeignKey,
    Index,
    PrimaryKey,
    Snapshot,
    Table,
    unique_constraint_name,
)


class _PrimaryKeyRemoved:
    """Marker for a primary key that exists in the database but not in the desired schema."""

    _instance: _PrimaryKeyRemoved | None = None

    def __new__(cls) -> _PrimaryKeyRemoved:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "PRIMARY_KEY_REMOVED"

    def __bool__(self) -> bool:
        return True


PRIMARY_KEY_REMOVED = _PrimaryKeyRemoved()


@dataclass
class ColumnChange:
    """A column present on both sides whose definition differs."""

    name: str
    old: Column
    new: Column
    type_changed: bool = False
    null_changed: bool = False
    default_changed: bool = False

    def has_changes(self) -> bool:
        return self.type_changed or self.null_changed or self.default_changed


@dataclass
class TableDiff:
    """Changes to a single table present on both sides."""

    table_name: str
    columns_added: list[Column] = field(default_factory=list)
    columns_dropped: list[str] = field(default_factory=list)
    columns_modified: list[ColumnChange] = field(default_factory=list)
    indexes_added: list[Index] = field(default_factory=list)
    indexes_dropped: list[str] = field(default_factory=list)
    foreign_keys_added: list[ForeignKey] = field(default_factory=list)
    foreign_keys_dropped: list[str] = field(default_factory=list)
    constraints_added: list[Constraint] = field(default_factory=list)
    constraints_dropped: list[str] = field(default_factory=list)
    primary_key_changed: PrimaryKey | _PrimaryKeyRemoved | None = None
    """The desired primary key, ``PRIMARY_KEY_REMOVED``, or None if unchanged."""

    previous: Table | None = None
    """The actual-side table, used to reconstruct inverse statements."""

    def has_changes(self) -> bool:
        return bool(
            self.columns_added
            or self.columns_dropped
            or self.columns_modified
            or self.indexes_added
            or self.indexes_dropped
            or self.foreign_keys_added
            or self.foreign_keys_dropped
            or self.constraints_added
            or self.constraints_dropped
            or self.primary_key_changed is not None
        )


@dataclass
class EnumTypeChange:
    """An enum type present on both sides that gained values.

    PostgreSQL can only add labels to an enum, so labels missing from the
    desired type are not reported.
    """

    name: str
    old_values: tuple[str, ...]
    added_values: list[str] = field(default_factory=list)


@dataclass
class SchemaDiff:
    """Changes between two snapshots."""

    tables_added: list[Table] = field(default_factory=list)
    tables_dropped: list[str] = field(default_factory=list)
    tables_modified: list[TableDiff] = field(default_factory=list)
    dropped_tables: dict[str, Table] = field(default_factory=dict)
    """Actual-side definitions of dropped tables, keyed by name."""

    enum_types_added: list[EnumType] = field(default_factory=list)
    enum_types_dropped: list[str] = field(default_factory=list)
    enum_types_modified: list[EnumTypeChange] = field(default_factory=list)
    dropped_enum_types: dict[str, EnumType] = field(default_factory=dict)

    def has_changes(self) -> bool:
        return bool(
            self.tables_added
            or self.tables_dropped
            or self.tables_modified
            or self.enum_types_added
            or self.enum_types_dropped
            or self.enum_types_modified
        )

    def table(self, name: str) -> TableDiff | None:
        """Get the diff of a modified table by name."""
        for table_diff in self.tables_modified:
            if table_diff.table_name == name:
                return table_diff
        return None


class Differ:
    """Compare a desired snapshot against an actual snapshot.

    The differ holds no state; ``compare`` is a pure function of its
    arguments and never raises for well-formed snapshots.

    Example:
        diff = Differ().compare(desired, actual)
        if diff.has_changes():
            plan = generate_migration(diff)
    """

    def compare(self, desired: Snapshot, actual: Snapshot) -> SchemaDiff:
        diff = SchemaDiff()

        for table_name, table in desired.items():
            if table_name not in actual:
                diff.tables_added.append(table)

        for table_name, table in actual.items():
            if table_name not in desired:
                diff.tables_dropped.append(table_name)
                diff.dropped_tables[table_name] = table

        for table_name, table in desired.items():
            if table_name not in actual:
                continue
            table_diff = self.compare_table(table, actual[table_name])
            if table_diff.has_changes():
                diff.tables_modified.append(table_diff)

        self._compare_enum_types(desired, actual, diff)
        return diff

    def compare_table(self, desired: Table, actual: Table) -> TableDiff:
        """Compare two versions of the same table."""
        diff = TableDiff(table_name=desired.name, previous=actual)

        self._compare_columns(desired, actual, diff)
        self._compare_primary_key(desired, actual, diff)

        diff.indexes_added, diff.indexes_dropped = _by_name(desired.indexes, actual.indexes)
        diff.foreign_keys_added, diff.foreign_keys_dropped = _by_name(
            desired.foreign_keys, actual.foreign_keys
        )
        added, dropped = _by_name(desired.constraints, actual.constraints)
        diff.constraints_added = [c for c in added if not _implied_by_column(c, actual)]
        diff.constraints_dropped = [
            name for name in dropped if not _implied_by_column(actual.constraints[name], desired)
        ]
        return diff

    def compare_column(self, desired: Column, actual: Column) -> ColumnChange:
        """Compare two versions of the same column."""
        return ColumnChange(
            name=desired.name,
            old=actual,
            new=desired,
            type_changed=desired.sql_type != actual.sql_type,
            null_changed=desired.nullable != actual.nullable,
            default_changed=desired.default != actual.default,
        )

    def _compare_columns(self, desired: Table, actual: Table, diff: TableDiff) -> None:
        actual_columns = {c.name: c for c in actual.columns}
        desired_names = {c.name for c in desired.columns}

        for column in desired.columns:
            existing = actual_columns.get(column.name)
            if existing is None:
                diff.columns_added.append(column)
                continue
            change = self.compare_column(column, existing)
            if change.has_changes():
                diff.columns_modified.append(change)

        diff.columns_dropped = [c.name for c in actual.columns if c.name not in desired_names]

    def _compare_enum_types(self, desired: Snapshot, actual: Snapshot, diff: SchemaDiff) -> None:
        for name, enum_type in desired.enum_types.items():
            existing = actual.enum_types.get(name)
            if existing is None:
                diff.enum_types_added.append(enum_type)
                continue
            added = [value for value in enum_type.values if value not in existing.values]
            if added:
                diff.enum_types_modified.append(EnumTypeChange(name, existing.values, added))

        for name, enum_type in actual.enum_types.items():
            if name not in desired.enum_types:
                diff.enum_types_dropped.append(name)
                diff.dropped_enum_types[name] = enum_type

    def _compare_primary_key(self, desired: Table, actual: Table, diff: TableDiff) -> None:
        new, old = desired.primary_key, actual.primary_key
        if new is None and old is None:
            return
        if new is None:
            diff.primary_key_changed = PRIMARY_KEY_REMOVED
        elif old is None or new.name != old.name or new.columns != old.columns:
            diff.primary_key_changed = new


def _by_name(desired, actual) -> tuple[list, list[str]]:
    added = [item for name, item in desired.items() if name not in actual]
    dropped = [name for name in actual if name not in desired]
    return added, dropped


def _implied_by_column(constraint: Constraint, table: Table) -> bool:
    # A column declared UNIQUE carries the unique constraint with the default name
    if constraint.kind is not ConstraintKind.UNIQUE or len(constraint.columns) != 1:
        return False
    if constraint.name != unique_constraint_name(table.name, constraint.columns):
        return False
    column = table.column(constraint.columns[0])
    return column is not None and column.unique


def compare(desired: Snapshot, actual: Snapshot) -> SchemaDiff:
    """Compare two snapshots. See ``Differ.compare``."""
    return Differ().compare(desired, actual)
