"""driftkit migrations - schema diff, statement planning and execution.

This module provides:
- Structural diff between a desired and an actual schema snapshot
- Ordered up/down SQL generation from a diff
- Versioned migration units stored as .up.sql/.down.sql pairs
- A locked, transactional executor tracking applied versions
- Configuration parsing (driftkit.ini) and live schema introspection
"""

from __future__ import annotations

from driftkit.migrations.config import MigrationConfig, create_default_config
from driftkit.migrations.diff import (
    PRIMARY_KEY_REMOVED,
    ColumnChange,
    Differ,
    SchemaDiff,
    TableDiff,
    compare,
)
from driftkit.migrations.introspect import read_snapshot
from driftkit.migrations.operations import (
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
from driftkit.migrations.planner import MigrationPlan, Planner, PlannerOptions, generate_migration
from driftkit.migrations.runner import (
    MigrationExecutor,
    MigrationRecord,
    MigrationResult,
    MigrationStatus,
    MigrationStatusEntry,
)
from driftkit.migrations.script import (
    Migration,
    MigrationDirectory,
    MigrationFile,
    generate_version,
    slugify,
    split_statements,
)

__all__ = [
    # Config
    "MigrationConfig",
    "create_default_config",
    # Diff
    "Differ",
    "SchemaDiff",
    "TableDiff",
    "ColumnChange",
    "PRIMARY_KEY_REMOVED",
    "compare",
    # Planner
    "Planner",
    "PlannerOptions",
    "MigrationPlan",
    "generate_migration",
    # Units
    "Migration",
    "MigrationDirectory",
    "MigrationFile",
    "generate_version",
    "slugify",
    "split_statements",
    # Executor
    "MigrationExecutor",
    "MigrationRecord",
    "MigrationResult",
    "MigrationStatus",
    "MigrationStatusEntry",
    # Introspection
    "read_snapshot",
    # Operations
    "Operations",
    "Operation",
    "CreateTable",
    "DropTable",
    "AddColumn",
    "DropColumn",
    "AlterColumn",
    "CreateIndex",
    "DropIndex",
    "CreateForeignKey",
    "AddConstraint",
    "AddPrimaryKey",
    "DropConstraint",
    "CreateEnumType",
    "DropEnumType",
    "AddEnumValues",
    "ManualAction",
]
