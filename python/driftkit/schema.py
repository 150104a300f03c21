"""Schema model - immutable snapshots of relational structure.

A ``Snapshot`` maps table names to ``Table`` values. Two snapshots are
compared by the differ: the *desired* one (built from application source)
and the *actual* one (introspected from a live database).

Example:
    >>> users = Table(
    ...     "users",
    ...     columns=[
    ...         Column("id", "bigserial", nullable=False),
    ...         Column("email", "varchar(255)", nullable=False, unique=True),
    ...     ],
    ...     primary_key=PrimaryKey("users_pkey", ["id"]),
    ... )
    >>> snapshot = Snapshot([users])
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, TypeVar

_T = TypeVar("_T")


class IdentityMode(str, Enum):
    """Identity column generation mode."""

    NONE = "none"
    ALWAYS = "ALWAYS"
    BY_DEFAULT = "BY DEFAULT"


class ReferentialAction(str, Enum):
    """Foreign key ON DELETE / ON UPDATE action."""

    NO_ACTION = "NO ACTION"
    CASCADE = "CASCADE"
    RESTRICT = "RESTRICT"
    SET_NULL = "SET NULL"
    SET_DEFAULT = "SET DEFAULT"

    @classmethod
    def parse(cls, value: str | ReferentialAction | None) -> ReferentialAction:
        """Parse ``"set-null"``, ``"SET NULL"``, ``"set_null"`` and friends."""
        if value is None:
            return cls.NO_ACTION
        if isinstance(value, ReferentialAction):
            return value
        normalized = value.strip().upper().replace("-", " ").replace("_", " ")
        return cls(normalized)


class ConstraintKind(str, Enum):
    """Kind of a table-level constraint."""

    UNIQUE = "unique"
    CHECK = "check"


@dataclass(frozen=True)
class Column:
    """A table column.

    ``sql_type`` and ``default`` are opaque SQL text: they are compared
    byte for byte and rendered verbatim.
    """

    name: str
    sql_type: str
    nullable: bool = True
    unique: bool = False
    auto_increment: bool = False
    identity: IdentityMode = IdentityMode.NONE
    default: str | None = None
    position: int = 0
    """Ordinal position, only used to order columns in CREATE TABLE."""


@dataclass(frozen=True)
class PrimaryKey:
    """Primary key over an ordered list of columns."""

    name: str
    columns: tuple[str, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "columns", tuple(self.columns))


@dataclass(frozen=True)
class ForeignKey:
    """Foreign key constraint."""

    name: str
    columns: tuple[str, ...]
    referenced_table: str
    referenced_columns: tuple[str, ...]
    on_delete: ReferentialAction = ReferentialAction.NO_ACTION
    on_update: ReferentialAction = ReferentialAction.NO_ACTION

    def __post_init__(self) -> None:
        object.__setattr__(self, "columns", tuple(self.columns))
        object.__setattr__(self, "referenced_columns", tuple(self.referenced_columns))
        object.__setattr__(self, "on_delete", ReferentialAction.parse(self.on_delete))
        object.__setattr__(self, "on_update", ReferentialAction.parse(self.on_update))


@dataclass(frozen=True)
class Index:
    """Index over an ordered list of columns.

    ``method`` is the PostgreSQL access method (``gin``, ``gist``, ...);
    None means the default, btree.
    """

    name: str
    columns: tuple[str, ...]
    unique: bool = False
    method: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "columns", tuple(self.columns))


@dataclass(frozen=True)
class Constraint:
    """Table-level UNIQUE or CHECK constraint."""

    name: str
    kind: ConstraintKind = ConstraintKind.UNIQUE
    columns: tuple[str, ...] = ()
    expression: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "columns", tuple(self.columns))
        object.__setattr__(self, "kind", ConstraintKind(self.kind))
        if self.kind is ConstraintKind.CHECK and not self.expression:
            raise ValueError(f"Check constraint {self.name} requires an expression")
        if self.kind is ConstraintKind.UNIQUE and not self.columns:
            raise ValueError(f"Unique constraint {self.name} requires columns")


@dataclass(frozen=True)
class EnumType:
    """A PostgreSQL enum type and its labels, in sort order."""

    name: str
    values: tuple[str, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", tuple(self.values))
        if not self.values:
            raise ValueError(f"Enum type {self.name} requires values")


def _keyed(table: str, what: str, items: Iterable[_T] | Mapping[str, _T]) -> Mapping[str, _T]:
    values = items.values() if isinstance(items, Mapping) else items
    keyed: dict[str, _T] = {}
    for item in values:
        name = item.name  # type: ignore[attr-defined]
        if name in keyed:
            raise ValueError(f"Duplicate {what} {name!r} in table {table!r}")
        keyed[name] = item
    return MappingProxyType(keyed)


@dataclass(frozen=True)
class Table:
    """A table and everything attached to it.

    Foreign keys, indexes and constraints may be given as sequences or
    as mappings; they are stored as read-only mappings keyed by name.
    """

    name: str
    columns: tuple[Column, ...] = ()
    primary_key: PrimaryKey | None = None
    foreign_keys: Mapping[str, ForeignKey] = field(default_factory=dict)
    indexes: Mapping[str, Index] = field(default_factory=dict)
    constraints: Mapping[str, Constraint] = field(default_factory=dict)

    def __post_init__(self) -> None:
        columns = tuple(self.columns)
        seen: set[str] = set()
        for column in columns:
            if column.name in seen:
                raise ValueError(f"Duplicate column {column.name!r} in table {self.name!r}")
            seen.add(column.name)
        object.__setattr__(self, "columns", columns)
        object.__setattr__(self, "foreign_keys", _keyed(self.name, "foreign key", self.foreign_keys))
        object.__setattr__(self, "indexes", _keyed(self.name, "index", self.indexes))
        object.__setattr__(self, "constraints", _keyed(self.name, "constraint", self.constraints))

    def __hash__(self) -> int:
        return hash((self.name, self.columns, self.primary_key))

    def column(self, name: str) -> Column | None:
        """Get a column by name."""
        for column in self.columns:
            if column.name == name:
                return column
        return None

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def ordered_columns(self) -> list[Column]:
        """Columns in CREATE TABLE order (position, then declaration order)."""
        indexed = sorted(enumerate(self.columns), key=lambda pair: (pair[1].position, pair[0]))
        return [column for _, column in indexed]


class Snapshot(Mapping[str, Table]):
    """Immutable mapping of table name to ``Table``.

    Iteration order is the order tables were given in, which keeps diffs
    and generated SQL reproducible. Enum types are database-level objects
    and live next to the tables in ``enum_types``, keyed by name.
    """

    __slots__ = ("_tables", "enum_types")

    def __init__(
        self,
        tables: Iterable[Table] | Mapping[str, Table] = (),
        enum_types: Iterable[EnumType] | Mapping[str, EnumType] = (),
    ) -> None:
        values = tables.values() if isinstance(tables, Mapping) else tables
        collected: dict[str, Table] = {}
        for table in values:
            if table.name in collected:
                raise ValueError(f"Duplicate table {table.name!r} in snapshot")
            collected[table.name] = table
        self._tables: Mapping[str, Table] = MappingProxyType(collected)

        types = enum_types.values() if isinstance(enum_types, Mapping) else enum_types
        keyed: dict[str, EnumType] = {}
        for enum_type in types:
            if enum_type.name in keyed:
                raise ValueError(f"Duplicate enum type {enum_type.name!r} in snapshot")
            keyed[enum_type.name] = enum_type
        self.enum_types: Mapping[str, EnumType] = MappingProxyType(keyed)

    @classmethod
    def empty(cls) -> Snapshot:
        return cls()

    def __getitem__(self, name: str) -> Table:
        return self._tables[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tables)

    def __len__(self) -> int:
        return len(self._tables)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, Snapshot):
            return NotImplemented
        return dict(self._tables) == dict(other._tables) and dict(self.enum_types) == dict(other.enum_types)

    def __hash__(self) -> int:
        return hash((tuple(self._tables), tuple(self.enum_types)))

    def __repr__(self) -> str:
        if self.enum_types:
            return f"Snapshot({list(self._tables)!r}, enum_types={list(self.enum_types)!r})"
        return f"Snapshot({list(self._tables)!r})"


def primary_key_name(table: str) -> str:
    """Default primary key name, as PostgreSQL assigns it."""
    return f"{table}_pkey"


def foreign_key_name(table: str, columns: Iterable[str]) -> str:
    """Default foreign key name, as PostgreSQL assigns it."""
    return f"{table}_{'_'.join(columns)}_fkey"


def unique_constraint_name(table: str, columns: Iterable[str]) -> str:
    """Default unique constraint name, as PostgreSQL assigns it."""
    return f"{table}_{'_'.join(columns)}_key"
