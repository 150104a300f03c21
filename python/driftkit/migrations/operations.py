"""Migration operations - DDL building blocks rendered per dialect."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from driftkit.schema import (
    Column,
    Constraint,
    ConstraintKind,
    EnumType,
    ForeignKey,
    IdentityMode,
    Index,
    PrimaryKey,
    ReferentialAction,
    Table,
    primary_key_name,
)

POSTGRESQL = "postgresql"
SQLITE = "sqlite"
DIALECTS = (POSTGRESQL, SQLITE)

MANUAL_MARKER = "-- driftkit:manual"
"""Prefix of placeholder statements that need to be completed by hand."""


@runtime_checkable
class Operation(Protocol):
    """Protocol for migration operations."""

    @property
    def operation_type(self) -> str: ...

    def to_sql(self, dialect: str) -> list[str]:
        """Generate SQL statements for this operation."""
        ...

    def reverse(self) -> Operation | None:
        """Return the reverse operation, or None if not reversible."""
        ...


def is_manual(statement: str) -> bool:
    """Check whether a statement is a manual-action placeholder."""
    return statement.lstrip().startswith(MANUAL_MARKER)


def render_column(column: Column, dialect: str, primary_key: bool = False) -> str:
    """Generate a column definition.

    Args:
        column: Column to render
        dialect: Target dialect
        primary_key: Declare the column as the (single-column) primary key inline
    """
    parts = [column.name, column.sql_type]

    # Identity columns are implicitly NOT NULL and cannot carry a default
    if column.identity is not IdentityMode.NONE:
        parts.append(f"GENERATED {column.identity.value} AS IDENTITY")
        if primary_key:
            parts.append("PRIMARY KEY")
        return " ".join(parts)

    if not column.nullable:
        parts.append("NOT NULL")

    if column.default is not None:
        parts.append(f"DEFAULT {column.default}")

    if primary_key:
        parts.append("PRIMARY KEY")
        # SQLite only accepts AUTOINCREMENT on INTEGER PRIMARY KEY
        if dialect == SQLITE and column.auto_increment and column.sql_type.upper() == "INTEGER":
            parts.append("AUTOINCREMENT")
    elif column.unique:
        parts.append("UNIQUE")

    return " ".join(parts)


def render_foreign_key(foreign_key: ForeignKey) -> str:
    """Generate a CONSTRAINT ... FOREIGN KEY clause."""
    local = ", ".join(foreign_key.columns)
    remote = ", ".join(foreign_key.referenced_columns)
    sql = (
        f"CONSTRAINT {foreign_key.name} FOREIGN KEY ({local}) "
        f"REFERENCES {foreign_key.referenced_table} ({remote})"
    )
    if foreign_key.on_delete is not ReferentialAction.NO_ACTION:
        sql += f" ON DELETE {foreign_key.on_delete.value}"
    if foreign_key.on_update is not ReferentialAction.NO_ACTION:
        sql += f" ON UPDATE {foreign_key.on_update.value}"
    return sql


def render_constraint(constraint: Constraint) -> str:
    """Generate a CONSTRAINT ... UNIQUE / CHECK clause."""
    if constraint.kind is ConstraintKind.CHECK:
        return f"CONSTRAINT {constraint.name} CHECK ({constraint.expression})"
    return f"CONSTRAINT {constraint.name} UNIQUE ({', '.join(constraint.columns)})"


def _manual(description: str) -> list[str]:
    return [f"{MANUAL_MARKER} {description}"]


@dataclass
class CreateTable:
    """Create a table with its columns, primary key and inline constraints."""

    table: Table
    include_foreign_keys: bool = False
    if_not_exists: bool = False

    @property
    def operation_type(self) -> str:
        return "create_table"

    @property
    def table_name(self) -> str:
        return self.table.name

    def to_sql(self, dialect: str) -> list[str]:
        """Generate CREATE TABLE SQL."""
        table = self.table
        pk = table.primary_key
        # A single-column key is declared inline unless it needs a custom name
        inline_pk = None
        if pk is not None and len(pk.columns) == 1 and pk.name == primary_key_name(table.name):
            inline_pk = pk.columns[0]

        parts = [render_column(c, dialect, primary_key=c.name == inline_pk) for c in table.ordered_columns()]

        if pk is not None and inline_pk is None:
            parts.append(f"CONSTRAINT {pk.name} PRIMARY KEY ({', '.join(pk.columns)})")

        for constraint in table.constraints.values():
            parts.append(render_constraint(constraint))

        if self.include_foreign_keys:
            for foreign_key in table.foreign_keys.values():
                parts.append(render_foreign_key(foreign_key))

        exists_clause = "IF NOT EXISTS " if self.if_not_exists else ""
        body = ",\n    ".join(parts)
        return [f"CREATE TABLE {exists_clause}{table.name} (\n    {body}\n)"]

    def reverse(self) -> DropTable:
        """Reverse is DROP TABLE."""
        return DropTable(self.table.name, previous=self.table)


@dataclass
class DropTable:
    """Drop a table."""

    table_name: str
    previous: Table | None = None
    if_exists: bool = True

    @property
    def operation_type(self) -> str:
        return "drop_table"

    def to_sql(self, dialect: str) -> list[str]:
        """Generate DROP TABLE SQL."""
        exists_clause = "IF EXISTS " if self.if_exists else ""
        return [f"DROP TABLE {exists_clause}{self.table_name}"]

    def reverse(self) -> CreateTable | ManualAction:
        """Recreate the table from its previous definition."""
        if self.previous is None:
            return ManualAction(f"recreate table {self.table_name} (definition unknown)")
        return CreateTable(self.previous)


@dataclass
class AddColumn:
    """Add a column to a table."""

    table_name: str
    column: Column

    @property
    def operation_type(self) -> str:
        return "add_column"

    @property
    def column_name(self) -> str:
        return self.column.name

    def to_sql(self, dialect: str) -> list[str]:
        """Generate ALTER TABLE ADD COLUMN SQL."""
        return [f"ALTER TABLE {self.table_name} ADD COLUMN {render_column(self.column, dialect)}"]

    def reverse(self) -> DropColumn:
        """Reverse is DROP COLUMN."""
        return DropColumn(self.table_name, self.column.name, previous=self.column)


@dataclass
class DropColumn:
    """Drop a column from a table."""

    table_name: str
    column_name: str
    previous: Column | None = None

    @property
    def operation_type(self) -> str:
        return "drop_column"

    def to_sql(self, dialect: str) -> list[str]:
        """Generate ALTER TABLE DROP COLUMN SQL."""
        exists_clause = "IF EXISTS " if dialect == POSTGRESQL else ""
        return [f"ALTER TABLE {self.table_name} DROP COLUMN {exists_clause}{self.column_name}"]

    def reverse(self) -> AddColumn | ManualAction:
        """Re-add the column if its previous definition is known."""
        if self.previous is None:
            return ManualAction(
                f"re-add column {self.column_name} to table {self.table_name} (definition unknown)"
            )
        return AddColumn(self.table_name, self.previous)


@dataclass
class AlterColumn:
    """Alter a column's type, nullability or default."""

    table_name: str
    old: Column
    new: Column
    type_changed: bool = False
    null_changed: bool = False
    default_changed: bool = False

    @property
    def operation_type(self) -> str:
        return "alter_column"

    @property
    def column_name(self) -> str:
        return self.new.name

    def to_sql(self, dialect: str) -> list[str]:
        """Generate ALTER TABLE ALTER COLUMN SQL."""
        table = self.table_name
        col = self.new.name

        if dialect == SQLITE:
            # SQLite cannot alter columns in place; the table must be rebuilt
            return _manual(f"rebuild table {table} to change column {col} to {render_column(self.new, dialect)}")

        statements = []
        if self.type_changed:
            statements.append(f"ALTER TABLE {table} ALTER COLUMN {col} TYPE {self.new.sql_type}")
        if self.null_changed:
            if self.new.nullable:
                statements.append(f"ALTER TABLE {table} ALTER COLUMN {col} DROP NOT NULL")
            else:
                statements.append(f"ALTER TABLE {table} ALTER COLUMN {col} SET NOT NULL")
        if self.default_changed:
            if self.new.default is None:
                statements.append(f"ALTER TABLE {table} ALTER COLUMN {col} DROP DEFAULT")
            else:
                statements.append(f"ALTER TABLE {table} ALTER COLUMN {col} SET DEFAULT {self.new.default}")
        return statements

    def reverse(self) -> AlterColumn:
        """Alter the column back to its old definition."""
        return AlterColumn(
            self.table_name,
            old=self.new,
            new=self.old,
            type_changed=self.type_changed,
            null_changed=self.null_changed,
            default_changed=self.default_changed,
        )


@dataclass
class CreateIndex:
    """Create an index on a table."""

    table_name: str
    index: Index
    if_not_exists: bool = False

    @property
    def operation_type(self) -> str:
        return "create_index"

    @property
    def index_name(self) -> str:
        return self.index.name

    def to_sql(self, dialect: str) -> list[str]:
        """Generate CREATE INDEX SQL."""
        unique = "UNIQUE " if self.index.unique else ""
        exists = "IF NOT EXISTS " if self.if_not_exists else ""
        method = self.index.method
        # SQLite has a single index kind
        using = f" USING {method}" if dialect == POSTGRESQL and method and method.lower() != "btree" else ""
        cols = ", ".join(self.index.columns)
        return [f"CREATE {unique}INDEX {exists}{self.index.name} ON {self.table_name}{using} ({cols})"]

    def reverse(self) -> DropIndex:
        """Reverse is DROP INDEX."""
        return DropIndex(self.index.name, self.table_name, previous=self.index)


@dataclass
class DropIndex:
    """Drop an index."""

    index_name: str
    table_name: str
    previous: Index | None = None

    @property
    def operation_type(self) -> str:
        return "drop_index"

    def to_sql(self, dialect: str) -> list[str]:
        """Generate DROP INDEX SQL."""
        return [f"DROP INDEX IF EXISTS {self.index_name}"]

    def reverse(self) -> CreateIndex | ManualAction:
        """Recreate the index if its previous definition is known."""
        if self.previous is None:
            return ManualAction(f"recreate index {self.index_name} on {self.table_name} (definition unknown)")
        return CreateIndex(self.table_name, self.previous)


@dataclass
class CreateForeignKey:
    """Add a foreign key constraint to an existing table."""

    table_name: str
    foreign_key: ForeignKey

    @property
    def operation_type(self) -> str:
        return "create_foreign_key"

    @property
    def constraint_name(self) -> str:
        return self.foreign_key.name

    def to_sql(self, dialect: str) -> list[str]:
        """Generate ADD CONSTRAINT ... FOREIGN KEY SQL."""
        if dialect == SQLITE:
            return _manual(
                f"rebuild table {self.table_name} to add {render_foreign_key(self.foreign_key)}"
            )
        return [f"ALTER TABLE {self.table_name} ADD {render_foreign_key(self.foreign_key)}"]

    def reverse(self) -> DropConstraint:
        """Reverse is DROP CONSTRAINT."""
        return DropConstraint(self.foreign_key.name, self.table_name, previous=self.foreign_key)


@dataclass
class AddConstraint:
    """Add a UNIQUE or CHECK constraint to an existing table."""

    table_name: str
    constraint: Constraint

    @property
    def operation_type(self) -> str:
        return "add_constraint"

    @property
    def constraint_name(self) -> str:
        return self.constraint.name

    def to_sql(self, dialect: str) -> list[str]:
        """Generate ADD CONSTRAINT SQL."""
        if dialect == SQLITE:
            return _manual(f"rebuild table {self.table_name} to add {render_constraint(self.constraint)}")
        return [f"ALTER TABLE {self.table_name} ADD {render_constraint(self.constraint)}"]

    def reverse(self) -> DropConstraint:
        """Reverse is DROP CONSTRAINT."""
        return DropConstraint(self.constraint.name, self.table_name, previous=self.constraint)


@dataclass
class AddPrimaryKey:
    """Add a primary key to an existing table."""

    table_name: str
    primary_key: PrimaryKey

    @property
    def operation_type(self) -> str:
        return "add_primary_key"

    def to_sql(self, dialect: str) -> list[str]:
        """Generate ADD CONSTRAINT ... PRIMARY KEY SQL."""
        pk = self.primary_key
        clause = f"CONSTRAINT {pk.name} PRIMARY KEY ({', '.join(pk.columns)})"
        if dialect == SQLITE:
            return _manual(f"rebuild table {self.table_name} to add {clause}")
        return [f"ALTER TABLE {self.table_name} ADD {clause}"]

    def reverse(self) -> DropConstraint:
        """Reverse is DROP CONSTRAINT."""
        return DropConstraint(self.primary_key.name, self.table_name, previous=self.primary_key)


@dataclass
class DropConstraint:
    """Drop a foreign key, unique, check or primary key constraint."""

    constraint_name: str
    table_name: str
    previous: ForeignKey | Constraint | PrimaryKey | None = None

    @property
    def operation_type(self) -> str:
        return "drop_constraint"

    def to_sql(self, dialect: str) -> list[str]:
        """Generate DROP CONSTRAINT SQL."""
        if dialect == SQLITE:
            return _manual(f"rebuild table {self.table_name} to drop constraint {self.constraint_name}")
        return [f"ALTER TABLE {self.table_name} DROP CONSTRAINT IF EXISTS {self.constraint_name}"]

    def reverse(self) -> Operation:
        """Re-add the constraint if its previous definition is known."""
        previous = self.previous
        if isinstance(previous, ForeignKey):
            return CreateForeignKey(self.table_name, previous)
        if isinstance(previous, Constraint):
            return AddConstraint(self.table_name, previous)
        if isinstance(previous, PrimaryKey):
            return AddPrimaryKey(self.table_name, previous)
        return ManualAction(
            f"re-add constraint {self.constraint_name} on {self.table_name} (definition unknown)"
        )


def _literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


@dataclass
class CreateEnumType:
    """Create a PostgreSQL enum type."""

    enum_type: EnumType

    @property
    def operation_type(self) -> str:
        return "create_enum_type"

    def to_sql(self, dialect: str) -> list[str]:
        """Generate CREATE TYPE ... AS ENUM SQL."""
        labels = ", ".join(_literal(v) for v in self.enum_type.values)
        sql = f"CREATE TYPE {self.enum_type.name} AS ENUM ({labels})"
        if dialect == SQLITE:
            return _manual(f"SQLite has no enum types, cannot run {sql}")
        return [sql]

    def reverse(self) -> DropEnumType:
        """Reverse is DROP TYPE."""
        return DropEnumType(self.enum_type.name, previous=self.enum_type)


@dataclass
class DropEnumType:
    """Drop a PostgreSQL enum type."""

    type_name: str
    previous: EnumType | None = None

    @property
    def operation_type(self) -> str:
        return "drop_enum_type"

    def to_sql(self, dialect: str) -> list[str]:
        """Generate DROP TYPE SQL."""
        if dialect == SQLITE:
            return _manual(f"SQLite has no enum types, cannot drop {self.type_name}")
        return [f"DROP TYPE IF EXISTS {self.type_name}"]

    def reverse(self) -> CreateEnumType | ManualAction:
        """Recreate the type if its previous labels are known."""
        if self.previous is None:
            return ManualAction(f"recreate enum type {self.type_name} (labels unknown)")
        return CreateEnumType(self.previous)


@dataclass
class AddEnumValues:
    """Append labels to an existing PostgreSQL enum type."""

    type_name: str
    values: list[str]

    @property
    def operation_type(self) -> str:
        return "add_enum_values"

    def to_sql(self, dialect: str) -> list[str]:
        """Generate one ALTER TYPE ... ADD VALUE per label."""
        statements = [
            f"ALTER TYPE {self.type_name} ADD VALUE IF NOT EXISTS {_literal(v)}" for v in self.values
        ]
        if dialect == SQLITE:
            return _manual(f"SQLite has no enum types, cannot run {'; '.join(statements)}")
        return statements

    def reverse(self) -> ManualAction:
        """PostgreSQL cannot remove enum labels."""
        labels = ", ".join(_literal(v) for v in self.values)
        return ManualAction(
            f"remove labels {labels} from enum type {self.type_name} (PostgreSQL cannot drop enum values)"
        )


@dataclass
class ManualAction:
    """Placeholder for a step that has to be written by hand."""

    description: str

    @property
    def operation_type(self) -> str:
        return "manual"

    def to_sql(self, dialect: str) -> list[str]:
        return _manual(self.description)

    def reverse(self) -> None:
        return None


@dataclass
class Operations:
    """Ordered collection of operations for one direction of a migration.

    Example:
        op = Operations(dialect="postgresql")
        op.add(CreateTable(users))
        op.add(CreateIndex("users", Index("ix_users_email", ["email"])))
        for sql in op.get_sql():
            print(sql)
    """

    dialect: str = POSTGRESQL
    _operations: list[Operation] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.dialect not in DIALECTS:
            raise ValueError(f"Unsupported dialect: {self.dialect}")

    def add(self, operation: Operation) -> None:
        self._operations.append(operation)

    def extend(self, operations: Iterable[Operation]) -> None:
        self._operations.extend(operations)

    def get_operations(self) -> list[Operation]:
        """Get all collected operations."""
        return self._operations

    def get_sql(self) -> list[str]:
        """Get all SQL statements, in order."""
        sql = []
        for op in self._operations:
            sql.extend(s for s in op.to_sql(self.dialect) if s)
        return sql

    def manual_steps(self) -> list[str]:
        """Get the placeholder statements that need manual completion."""
        return [s for s in self.get_sql() if is_manual(s)]
