"""Read the actual schema of a live database into a ``Snapshot``.

SQLite keeps no constraint names in its catalog. Names written as
``CONSTRAINT name ...`` clauses are recovered from the stored CREATE TABLE
text; unnamed keys get the names PostgreSQL would assign (``users_pkey``,
``posts_user_id_fkey``, ``users_a_b_key``), so a desired snapshot built
with the naming helpers in ``driftkit.schema`` compares equal on both
databases. Unnamed single-column unique constraints read back as
``Column.unique``, as do PostgreSQL unique constraints with the default
name. PostgreSQL serial columns read back as ``serial``/``bigserial``,
and enum types of the current schema are read into ``Snapshot.enum_types``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from typing import Any

from driftkit.migrations.runner import DEFAULT_VERSION_TABLE
from driftkit.pool import SQLITE_LOCK_TABLE, ConnectionPool
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
    Snapshot,
    Table,
    foreign_key_name,
    primary_key_name,
    unique_constraint_name,
)

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDE = (DEFAULT_VERSION_TABLE, SQLITE_LOCK_TABLE)

_PG_ACTIONS = {
    "a": ReferentialAction.NO_ACTION,
    "r": ReferentialAction.RESTRICT,
    "c": ReferentialAction.CASCADE,
    "n": ReferentialAction.SET_NULL,
    "d": ReferentialAction.SET_DEFAULT,
}

_PG_IDENTITY = {"a": IdentityMode.ALWAYS, "d": IdentityMode.BY_DEFAULT}


async def read_snapshot(pool: ConnectionPool, exclude: Iterable[str] = DEFAULT_EXCLUDE) -> Snapshot:
    """Introspect every table of the database.

    Args:
        pool: Database connection
        exclude: Table names to leave out (bookkeeping tables by default)

    Returns:
        Snapshot of the actual schema, tables in name order
    """
    excluded = set(exclude)
    if pool.is_postgres():
        reader = _read_postgres_table
        result = await pool.execute(
            """
            SELECT table_name AS name
            FROM information_schema.tables
            WHERE table_schema = current_schema() AND table_type = 'BASE TABLE'
            ORDER BY table_name
            """
        )
    else:
        reader = _read_sqlite_table
        result = await pool.execute(
            "SELECT name FROM sqlite_master "
            "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )

    tables = []
    for row in result.all():
        if row["name"] in excluded:
            continue
        tables.append(await reader(pool, row["name"]))
    enum_types = await _read_postgres_enum_types(pool) if pool.is_postgres() else []
    logger.debug("Introspected %d tables, %d enum types", len(tables), len(enum_types))
    return Snapshot(tables, enum_types=enum_types)


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


# =============================================================================
# SQLite
# =============================================================================


_SQLITE_CLAUSE = re.compile(
    r"""^CONSTRAINT\s+(?P<name>"(?:[^"]|"")+"|`[^`]+`|\w+)\s+"""
    r"""(?P<kind>PRIMARY\s+KEY|UNIQUE|FOREIGN\s+KEY|CHECK)\s*\(""",
    re.IGNORECASE,
)


def _scan(text: str) -> tuple[list[str], int]:
    """Split ``text`` on top-level commas, skipping quoted text and nested parentheses.

    The scan ends at an unmatched closing parenthesis, whose index is
    returned (``len(text)`` if there is none).
    """
    items: list[str] = []
    depth, quote, start = 0, None, 0
    for i, ch in enumerate(text):
        if quote:
            if ch == quote:
                quote = None
        elif ch in "'\"`":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            if depth == 0:
                items.append(text[start:i].strip())
                return items, i
            depth -= 1
        elif ch == "," and depth == 0:
            items.append(text[start:i].strip())
            start = i + 1
    items.append(text[start:].strip())
    return items, len(text)


def _unquote(identifier: str) -> str:
    identifier = identifier.strip()
    if identifier[:1] in ('"', "`") and identifier[-1:] == identifier[:1]:
        quote = identifier[0]
        return identifier[1:-1].replace(quote * 2, quote)
    # "email COLLATE nocase", "email DESC"
    return identifier.split()[0]


def sqlite_named_clauses(create_sql: str | None) -> list[tuple[str, str, str]]:
    """Find the ``CONSTRAINT name ...`` clauses of a CREATE TABLE statement.

    SQLite keeps the statement text but no constraint names in its
    catalog, so names are recovered from the text.

    Returns:
        ``(kind, name, body)`` per clause. Kind is ``PRIMARY KEY``,
        ``UNIQUE``, ``FOREIGN KEY`` or ``CHECK``; body is the text inside
        the clause's first pair of parentheses.
    """
    if not create_sql or "(" not in create_sql:
        return []
    items, _ = _scan(create_sql[create_sql.index("(") + 1:])

    clauses = []
    for item in items:
        match = _SQLITE_CLAUSE.match(item)
        if match is None:
            continue
        rest = item[match.end():]
        _, end = _scan(rest)
        kind = " ".join(match.group("kind").upper().split())
        clauses.append((kind, _unquote(match.group("name")), rest[:end].strip()))
    return clauses


def _clause_columns(body: str) -> tuple[str, ...]:
    items, _ = _scan(body)
    return tuple(_unquote(item) for item in items if item)


async def _read_sqlite_table(pool: ConnectionPool, name: str) -> Table:
    quoted = _quote(name)

    create_sql = (
        await pool.execute("SELECT sql FROM sqlite_master WHERE type = 'table' AND name = ?", [name])
    ).scalar()
    named: dict[str, dict[tuple[str, ...], str]] = {}
    checks: list[Constraint] = []
    for kind, clause_name, body in sqlite_named_clauses(create_sql):
        if kind == "CHECK":
            checks.append(Constraint(clause_name, kind=ConstraintKind.CHECK, expression=body))
        else:
            named.setdefault(kind, {})[_clause_columns(body)] = clause_name

    info = (await pool.execute(f"PRAGMA table_info({quoted})")).all()
    pk_columns = [row["name"] for row in sorted((r for r in info if r["pk"]), key=lambda r: r["pk"])]
    pk_name = named.get("PRIMARY KEY", {}).get(tuple(pk_columns), primary_key_name(name))

    indexes: list[Index] = []
    constraints: list[Constraint] = []
    unique_columns: set[str] = set()
    for index_row in (await pool.execute(f"PRAGMA index_list({quoted})")).all():
        index_info = (await pool.execute(f"PRAGMA index_info({_quote(index_row['name'])})")).all()
        columns = [r["name"] for r in sorted(index_info, key=lambda r: r["seqno"])]
        origin = index_row["origin"]
        if origin == "c":
            indexes.append(Index(index_row["name"], columns, unique=bool(index_row["unique"])))
        elif origin == "u":
            clause_name = named.get("UNIQUE", {}).get(tuple(columns))
            if clause_name is not None:
                constraints.append(Constraint(clause_name, columns=columns))
            elif len(columns) == 1:
                unique_columns.add(columns[0])
            else:
                constraints.append(Constraint(unique_constraint_name(name, columns), columns=columns))
    constraints.extend(checks)

    columns = [
        Column(
            name=row["name"],
            sql_type=row["type"],
            nullable=not row["notnull"],
            unique=row["name"] in unique_columns,
            default=row["dflt_value"],
            position=row["cid"],
        )
        for row in info
    ]

    grouped: dict[int, list[dict[str, Any]]] = {}
    for row in (await pool.execute(f"PRAGMA foreign_key_list({quoted})")).all():
        grouped.setdefault(row["id"], []).append(row)
    foreign_keys = []
    for rows in grouped.values():
        rows.sort(key=lambda r: r["seq"])
        local = [r["from"] for r in rows]
        foreign_keys.append(
            ForeignKey(
                name=named.get("FOREIGN KEY", {}).get(tuple(local), foreign_key_name(name, local)),
                columns=local,
                referenced_table=rows[0]["table"],
                referenced_columns=[r["to"] for r in rows],
                on_delete=ReferentialAction.parse(rows[0]["on_delete"]),
                on_update=ReferentialAction.parse(rows[0]["on_update"]),
            )
        )

    return Table(
        name=name,
        columns=columns,
        primary_key=PrimaryKey(pk_name, pk_columns) if pk_columns else None,
        foreign_keys=foreign_keys,
        indexes=indexes,
        constraints=constraints,
    )


# =============================================================================
# PostgreSQL
# =============================================================================

_PG_COLUMNS = """
SELECT a.attname AS name,
       format_type(a.atttypid, a.atttypmod) AS sql_type,
       NOT a.attnotnull AS nullable,
       pg_get_expr(d.adbin, d.adrelid) AS default_expr,
       a.attnum AS position,
       a.attidentity AS identity
FROM pg_attribute a
LEFT JOIN pg_attrdef d ON d.adrelid = a.attrelid AND d.adnum = a.attnum
WHERE a.attrelid = to_regclass(quote_ident($1)) AND a.attnum > 0 AND NOT a.attisdropped
ORDER BY a.attnum
"""

_PG_CONSTRAINTS = """
SELECT c.conname AS name,
       c.contype AS kind,
       ARRAY(SELECT att.attname FROM unnest(c.conkey) WITH ORDINALITY AS k(attnum, ord)
             JOIN pg_attribute att ON att.attrelid = c.conrelid AND att.attnum = k.attnum
             ORDER BY k.ord) AS columns,
       cf.relname AS referenced_table,
       ARRAY(SELECT att.attname FROM unnest(c.confkey) WITH ORDINALITY AS k(attnum, ord)
             JOIN pg_attribute att ON att.attrelid = c.confrelid AND att.attnum = k.attnum
             ORDER BY k.ord) AS referenced_columns,
       c.confdeltype AS on_delete,
       c.confupdtype AS on_update,
       pg_get_constraintdef(c.oid) AS definition
FROM pg_constraint c
LEFT JOIN pg_class cf ON cf.oid = c.confrelid
WHERE c.conrelid = to_regclass(quote_ident($1))
ORDER BY c.conname
"""

_PG_INDEXES = """
SELECT i.relname AS name,
       ix.indisunique AS is_unique,
       am.amname AS method,
       ARRAY(SELECT att.attname FROM unnest(ix.indkey::int2[]) WITH ORDINALITY AS k(attnum, ord)
             JOIN pg_attribute att ON att.attrelid = ix.indrelid AND att.attnum = k.attnum
             ORDER BY k.ord) AS columns
FROM pg_index ix
JOIN pg_class i ON i.oid = ix.indexrelid
JOIN pg_am am ON am.oid = i.relam
WHERE ix.indrelid = to_regclass(quote_ident($1))
  AND NOT EXISTS (SELECT 1 FROM pg_constraint c WHERE c.conindid = ix.indexrelid)
ORDER BY i.relname
"""

_PG_ENUM_TYPES = """
SELECT t.typname AS name,
       array_agg(e.enumlabel ORDER BY e.enumsortorder) AS labels
FROM pg_type t
JOIN pg_enum e ON e.enumtypid = t.oid
JOIN pg_namespace n ON n.oid = t.typnamespace
WHERE n.nspname = current_schema()
GROUP BY t.typname
ORDER BY t.typname
"""


_SERIAL_TYPES = {"smallint": "smallserial", "integer": "serial", "bigint": "bigserial"}

_NEXTVAL = re.compile(r"""^nextval\('(?:"?\w+"?\.)?"?(?P<sequence>[^"']+)"?'::regclass\)$""")


def serial_type(table: str, column: str, sql_type: str, default: str | None) -> str | None:
    """Get the serial pseudo-type a column was declared with, if any.

    ``bigserial`` is stored as ``bigint`` with a default drawing from the
    owned sequence ``<table>_<column>_seq``; it is reported back as
    ``bigserial`` so a desired snapshot using it compares equal.
    """
    serial = _SERIAL_TYPES.get(sql_type)
    if serial is None or default is None:
        return None
    match = _NEXTVAL.match(default)
    if match is None or match.group("sequence") != f"{table}_{column}_seq":
        return None
    return serial


def _check_expression(definition: str) -> str:
    # pg_get_constraintdef renders "CHECK ((price > 0))"
    body = definition.strip()
    if body.upper().startswith("CHECK (") and body.endswith(")"):
        body = body[len("CHECK ("):-1]
    return body


async def _read_postgres_table(pool: ConnectionPool, name: str) -> Table:
    primary_key = None
    foreign_keys: list[ForeignKey] = []
    constraints: list[Constraint] = []
    unique_columns: set[str] = set()

    for row in (await pool.execute(_PG_CONSTRAINTS, [name])).all():
        kind, columns = row["kind"], list(row["columns"])
        if kind == "p":
            primary_key = PrimaryKey(row["name"], columns)
        elif kind == "f":
            foreign_keys.append(
                ForeignKey(
                    name=row["name"],
                    columns=columns,
                    referenced_table=row["referenced_table"],
                    referenced_columns=list(row["referenced_columns"]),
                    on_delete=_PG_ACTIONS.get(row["on_delete"], ReferentialAction.NO_ACTION),
                    on_update=_PG_ACTIONS.get(row["on_update"], ReferentialAction.NO_ACTION),
                )
            )
        elif kind == "u":
            if len(columns) == 1 and row["name"] == unique_constraint_name(name, columns):
                unique_columns.add(columns[0])
            else:
                constraints.append(Constraint(row["name"], columns=columns))
        elif kind == "c":
            constraints.append(
                Constraint(
                    row["name"],
                    kind=ConstraintKind.CHECK,
                    columns=columns,
                    expression=_check_expression(row["definition"]),
                )
            )

    columns = []
    for row in (await pool.execute(_PG_COLUMNS, [name])).all():
        sql_type, default = row["sql_type"], row["default_expr"]
        serial = serial_type(name, row["name"], sql_type, default)
        if serial is not None:
            sql_type, default = serial, None
        columns.append(
            Column(
                name=row["name"],
                sql_type=sql_type,
                nullable=row["nullable"],
                unique=row["name"] in unique_columns,
                auto_increment=serial is not None or bool(default and "nextval(" in default),
                identity=_PG_IDENTITY.get(row["identity"], IdentityMode.NONE),
                default=default,
                position=row["position"] - 1,
            )
        )

    indexes = [
        Index(
            row["name"],
            list(row["columns"]),
            unique=row["is_unique"],
            method=None if row["method"] == "btree" else row["method"],
        )
        for row in (await pool.execute(_PG_INDEXES, [name])).all()
    ]

    return Table(
        name=name,
        columns=columns,
        primary_key=primary_key,
        foreign_keys=foreign_keys,
        indexes=indexes,
        constraints=constraints,
    )


async def _read_postgres_enum_types(pool: ConnectionPool) -> list[EnumType]:
    return [EnumType(row["name"], list(row["labels"])) for row in (await pool.execute(_PG_ENUM_TYPES)).all()]
