"""Statement planner - turns a schema diff into up and down SQL.

Up statements run in dependency order:

0. create new enum types, add labels to existing ones
1. create new tables (columns, primary key, unique and check constraints)
2. add new columns, then alter modified columns
3. create new indexes and constraints
4. add new foreign keys, now that every referenced table exists
5. apply primary key changes
6. drop removed foreign keys
7. drop removed indexes and constraints
8. drop removed columns
9. drop removed tables
10. drop removed enum types

Down statements are the structural inverse, planned step by step rather
than by reversing the up list. Enum labels cannot be removed, so the
inverse of adding them is a manual step. Creating every table before any foreign
key also covers cyclic references between new tables.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from driftkit.migrations.diff import SchemaDiff, TableDiff
from driftkit.migrations.operations import (
    DIALECTS,
    POSTGRESQL,
    SQLITE,
    AddColumn,
    AddConstraint,
    AddEnumValues,
    AddPrimaryKey,
    AlterColumn,
    CreateEnumType,
    CreateForeignKey,
    CreateIndex,
    CreateTable,
    DropColumn,
    DropConstraint,
    DropEnumType,
    DropIndex,
    DropTable,
    ManualAction,
    Operation,
    Operations,
)
from driftkit.schema import PrimaryKey, Table

logger = logging.getLogger(__name__)


@dataclass
class PlannerOptions:
    """Options for migration generation."""

    if_not_exists: bool = True
    """Add IF NOT EXISTS to CREATE TABLE and CREATE INDEX statements."""


@dataclass
class MigrationPlan:
    """Up and down statements generated from a diff."""

    up: list[str] = field(default_factory=list)
    down: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    """Steps that could not be generated and need manual completion."""

    def has_changes(self) -> bool:
        return bool(self.up)

    def __iter__(self):
        # Allows ``up, down = planner.generate_migration(diff)``
        return iter((self.up, self.down))


class Planner:
    """Generate SQL migration statements from a schema diff.

    Example:
        planner = Planner(dialect="postgresql")
        plan = planner.generate_migration(diff)
        for warning in plan.warnings:
            print("manual step:", warning)
    """

    def __init__(self, dialect: str = POSTGRESQL, options: PlannerOptions | None = None) -> None:
        if dialect not in DIALECTS:
            raise ValueError(f"Unsupported dialect: {dialect}")
        self.dialect = dialect
        self.options = options or PlannerOptions()

    def generate_migration(self, diff: SchemaDiff) -> MigrationPlan:
        """Generate up and down SQL from a schema diff."""
        up = Operations(self.dialect)
        up.extend(self.plan_up(diff))
        down = Operations(self.dialect)
        down.extend(self.plan_down(diff))

        plan = MigrationPlan(up=up.get_sql(), down=down.get_sql())
        for direction, ops in (("up", up), ("down", down)):
            for step in ops.manual_steps():
                message = f"{direction}: {step}"
                plan.warnings.append(message)
                logger.warning("Manual migration step required - %s", message)
        return plan

    # ------------------------------------------------------------------
    # Up
    # ------------------------------------------------------------------

    def plan_up(self, diff: SchemaDiff) -> list[Operation]:
        """Operations that move the actual schema to the desired schema."""
        ops: list[Operation] = []
        inline_fks = self.dialect == SQLITE

        # 0. Enum types, before the columns using them
        ops.extend(CreateEnumType(enum_type) for enum_type in diff.enum_types_added)
        ops.extend(AddEnumValues(change.name, change.added_values) for change in diff.enum_types_modified)

        # 1. New tables, without foreign keys on databases that can add them later
        for table in diff.tables_added:
            ops.append(
                CreateTable(
                    table,
                    include_foreign_keys=inline_fks,
                    if_not_exists=self.options.if_not_exists,
                )
            )

        # 2. New and modified columns
        for td in diff.tables_modified:
            ops.extend(AddColumn(td.table_name, column) for column in td.columns_added)
            for change in td.columns_modified:
                ops.append(
                    AlterColumn(
                        td.table_name,
                        old=change.old,
                        new=change.new,
                        type_changed=change.type_changed,
                        null_changed=change.null_changed,
                        default_changed=change.default_changed,
                    )
                )

        # 3. New indexes and constraints
        for table in diff.tables_added:
            ops.extend(self._create_index(table.name, index) for index in table.indexes.values())
        for td in diff.tables_modified:
            ops.extend(self._create_index(td.table_name, index) for index in td.indexes_added)
            ops.extend(AddConstraint(td.table_name, c) for c in td.constraints_added)

        # 4. New foreign keys
        if not inline_fks:
            for table in diff.tables_added:
                ops.extend(CreateForeignKey(table.name, fk) for fk in table.foreign_keys.values())
        for td in diff.tables_modified:
            ops.extend(CreateForeignKey(td.table_name, fk) for fk in td.foreign_keys_added)

        # 5. Primary key changes
        for td in diff.tables_modified:
            ops.extend(self._primary_key_up(td))

        # 6. Removed foreign keys
        for td in diff.tables_modified:
            ops.extend(
                DropConstraint(name, td.table_name, previous=_lookup(td.previous, "foreign_keys", name))
                for name in td.foreign_keys_dropped
            )
        if not inline_fks:
            for name in diff.tables_dropped:
                previous = diff.dropped_tables.get(name)
                if previous is not None:
                    ops.extend(
                        DropConstraint(fk.name, name, previous=fk) for fk in previous.foreign_keys.values()
                    )

        # 7. Removed indexes and constraints
        for td in diff.tables_modified:
            ops.extend(
                DropIndex(name, td.table_name, previous=_lookup(td.previous, "indexes", name))
                for name in td.indexes_dropped
            )
            ops.extend(
                DropConstraint(name, td.table_name, previous=_lookup(td.previous, "constraints", name))
                for name in td.constraints_dropped
            )

        # 8. Removed columns
        for td in diff.tables_modified:
            for name in td.columns_dropped:
                previous = td.previous.column(name) if td.previous is not None else None
                ops.append(DropColumn(td.table_name, name, previous=previous))

        # 9. Removed tables
        for name in diff.tables_dropped:
            ops.append(DropTable(name, previous=diff.dropped_tables.get(name)))

        # 10. Removed enum types, once no column uses them
        for name in diff.enum_types_dropped:
            ops.append(DropEnumType(name, previous=diff.dropped_enum_types.get(name)))

        return ops

    def _primary_key_up(self, td: TableDiff) -> list[Operation]:
        change = td.primary_key_changed
        if change is None:
            return []
        ops: list[Operation] = []
        old = td.previous.primary_key if td.previous is not None else None
        if old is not None:
            ops.append(DropConstraint(old.name, td.table_name, previous=old))
        elif td.previous is None:
            ops.append(ManualAction(f"drop the existing primary key of {td.table_name} (name unknown)"))
        if isinstance(change, PrimaryKey):
            ops.append(AddPrimaryKey(td.table_name, change))
        return ops

    # ------------------------------------------------------------------
    # Down
    # ------------------------------------------------------------------

    def plan_down(self, diff: SchemaDiff) -> list[Operation]:
        """Operations that move the desired schema back to the actual schema."""
        ops: list[Operation] = []
        inline_fks = self.dialect == SQLITE
        recreated: list[Table] = []

        # 0. Recreate dropped enum types
        ops.extend(
            DropEnumType(name, previous=diff.dropped_enum_types.get(name)).reverse()
            for name in diff.enum_types_dropped
        )

        # 1. Recreate dropped tables
        for name in diff.tables_dropped:
            previous = diff.dropped_tables.get(name)
            if previous is None:
                ops.append(DropTable(name).reverse())
                continue
            recreated.append(previous)
            ops.append(CreateTable(previous, include_foreign_keys=inline_fks))

        # 2. Re-add dropped columns
        for td in diff.tables_modified:
            for name in td.columns_dropped:
                previous = td.previous.column(name) if td.previous is not None else None
                ops.append(DropColumn(td.table_name, name, previous=previous).reverse())

        # 3. Recreate dropped indexes and constraints
        for table in recreated:
            ops.extend(CreateIndex(table.name, index) for index in table.indexes.values())
        for td in diff.tables_modified:
            ops.extend(
                DropIndex(name, td.table_name, previous=_lookup(td.previous, "indexes", name)).reverse()
                for name in td.indexes_dropped
            )
            ops.extend(
                DropConstraint(name, td.table_name, previous=_lookup(td.previous, "constraints", name)).reverse()
                for name in td.constraints_dropped
            )

        # 4. Re-add dropped foreign keys
        if not inline_fks:
            for table in recreated:
                ops.extend(CreateForeignKey(table.name, fk) for fk in table.foreign_keys.values())
        for td in diff.tables_modified:
            ops.extend(
                DropConstraint(name, td.table_name, previous=_lookup(td.previous, "foreign_keys", name)).reverse()
                for name in td.foreign_keys_dropped
            )

        # 5. Revert primary key changes
        for td in diff.tables_modified:
            ops.extend(self._primary_key_down(td))

        # 6. Drop added foreign keys, including those of created tables
        for td in diff.tables_modified:
            ops.extend(CreateForeignKey(td.table_name, fk).reverse() for fk in td.foreign_keys_added)
        if not inline_fks:
            for table in diff.tables_added:
                ops.extend(CreateForeignKey(table.name, fk).reverse() for fk in table.foreign_keys.values())

        # 7. Drop added indexes and constraints (created tables take theirs with them)
        for td in diff.tables_modified:
            ops.extend(self._create_index(td.table_name, index).reverse() for index in td.indexes_added)
            ops.extend(AddConstraint(td.table_name, c).reverse() for c in td.constraints_added)

        # 8. Revert modified columns, drop added columns
        for td in diff.tables_modified:
            for change in td.columns_modified:
                ops.append(
                    AlterColumn(
                        td.table_name,
                        old=change.old,
                        new=change.new,
                        type_changed=change.type_changed,
                        null_changed=change.null_changed,
                        default_changed=change.default_changed,
                    ).reverse()
                )
            ops.extend(AddColumn(td.table_name, column).reverse() for column in td.columns_added)

        # 9. Drop created tables
        for table in diff.tables_added:
            ops.append(CreateTable(table).reverse())

        # 10. Drop created enum types; added labels need a manual step
        for change in diff.enum_types_modified:
            ops.append(AddEnumValues(change.name, change.added_values).reverse())
        ops.extend(CreateEnumType(enum_type).reverse() for enum_type in diff.enum_types_added)

        return ops

    def _primary_key_down(self, td: TableDiff) -> list[Operation]:
        change = td.primary_key_changed
        if change is None:
            return []
        ops: list[Operation] = []
        if isinstance(change, PrimaryKey):
            ops.append(AddPrimaryKey(td.table_name, change).reverse())
        old = td.previous.primary_key if td.previous is not None else None
        if old is not None:
            ops.append(AddPrimaryKey(td.table_name, old))
        elif td.previous is None:
            ops.append(ManualAction(f"restore the previous primary key of {td.table_name} (definition unknown)"))
        return ops

    def _create_index(self, table_name: str, index) -> CreateIndex:
        return CreateIndex(table_name, index, if_not_exists=self.options.if_not_exists)


def _lookup(table: Table | None, attribute: str, name: str):
    if table is None:
        return None
    return getattr(table, attribute).get(name)


def generate_migration(
    diff: SchemaDiff,
    dialect: str = POSTGRESQL,
    options: PlannerOptions | None = None,
) -> MigrationPlan:
    """Generate up and down statements for a diff. See ``Planner``."""
    return Planner(dialect, options).generate_migration(diff)


__all__ = [
    "MigrationPlan",
    "Planner",
    "PlannerOptions",
    "generate_migration",
]
