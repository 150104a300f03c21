"""Tests for statement planning (diff -> up/down SQL)."""

from __future__ import annotations

import logging

import pytest

from driftkit.migrations.diff import compare
from driftkit.migrations.operations import is_manual
from driftkit.migrations.planner import MigrationPlan, Planner, PlannerOptions, generate_migration
from driftkit.schema import (
    Column,
    Constraint,
    EnumType,
    ForeignKey,
    Index,
    PrimaryKey,
    Snapshot,
    Table,
)


def _position(statements: list[str], fragment: str) -> int:
    for i, statement in enumerate(statements):
        if fragment in statement:
            return i
    raise AssertionError(f"{fragment!r} not found in {statements}")


class TestScenarios:
    """Concrete scenarios."""

    def test_create_users(self, users: Table) -> None:
        plan = generate_migration(compare(Snapshot([users]), Snapshot.empty()))
        assert plan.up == [
            "CREATE TABLE IF NOT EXISTS users (\n"
            "    id bigserial NOT NULL PRIMARY KEY,\n"
            "    email varchar(255) NOT NULL UNIQUE\n"
            ")"
        ]
        assert plan.down == ["DROP TABLE IF EXISTS users"]
        assert plan.warnings == []

    def test_drop_legacy_flag(self) -> None:
        id_column = Column("id", "integer", nullable=False)
        actual = Snapshot([Table("accounts", columns=[id_column, Column("legacy_flag", "boolean")])])
        desired = Snapshot([Table("accounts", columns=[id_column])])

        plan = generate_migration(compare(desired, actual))

        assert plan.up == ["ALTER TABLE accounts DROP COLUMN IF EXISTS legacy_flag"]
        assert plan.down == ["ALTER TABLE accounts ADD COLUMN legacy_flag boolean"]

    def test_no_changes(self, blog_snapshot: Snapshot) -> None:
        plan = generate_migration(compare(blog_snapshot, blog_snapshot))
        assert not plan.has_changes()
        assert plan.up == []
        assert plan.down == []

    def test_plan_unpacks_to_up_and_down(self, users: Table) -> None:
        up, down = generate_migration(compare(Snapshot([users]), Snapshot.empty()))
        assert len(up) == 1
        assert down == ["DROP TABLE IF EXISTS users"]


class TestUpOrdering:
    """Up statements respect structural dependencies."""

    @pytest.fixture
    def plan(self) -> MigrationPlan:
        users_v1 = Table(
            "users",
            columns=[Column("id", "bigint", nullable=False), Column("nickname", "text")],
            primary_key=PrimaryKey("users_pkey", ["id"]),
            indexes=[Index("ix_users_nickname", ["nickname"])],
        )
        legacy = Table(
            "legacy",
            columns=[Column("id", "bigint"), Column("user_id", "bigint")],
            foreign_keys=[ForeignKey("legacy_user_id_fkey", ["user_id"], "users", ["id"])],
        )
        users_v2 = Table(
            "users",
            columns=[
                Column("id", "bigint", nullable=False),
                Column("email", "text", nullable=False, default="''"),
                Column("team_id", "bigint"),
            ],
            primary_key=PrimaryKey("users_pkey", ["id"]),
            foreign_keys=[ForeignKey("users_team_id_fkey", ["team_id"], "teams", ["id"])],
            indexes=[Index("ix_users_email", ["email"], unique=True)],
        )
        teams = Table(
            "teams",
            columns=[Column("id", "bigint", nullable=False)],
            primary_key=PrimaryKey("teams_pkey", ["id"]),
            indexes=[Index("ix_teams_id", ["id"])],
        )
        return generate_migration(
            compare(Snapshot([users_v2, teams]), Snapshot([users_v1, legacy])),
            "postgresql",
        )

    def test_order(self, plan: MigrationPlan) -> None:
        up = plan.up
        create_teams = _position(up, "CREATE TABLE IF NOT EXISTS teams")
        add_email = _position(up, "ADD COLUMN email")
        create_index = _position(up, "CREATE UNIQUE INDEX IF NOT EXISTS ix_users_email")
        new_table_index = _position(up, "CREATE INDEX IF NOT EXISTS ix_teams_id")
        add_fk = _position(up, "ADD CONSTRAINT users_team_id_fkey")
        drop_legacy_fk = _position(up, "DROP CONSTRAINT IF EXISTS legacy_user_id_fkey")
        drop_index = _position(up, "DROP INDEX IF EXISTS ix_users_nickname")
        drop_column = _position(up, "DROP COLUMN IF EXISTS nickname")
        drop_table = _position(up, "DROP TABLE IF EXISTS legacy")

        assert create_teams < add_email < create_index < add_fk
        assert new_table_index < add_fk
        assert add_fk < drop_legacy_fk < drop_index < drop_column < drop_table
        assert drop_table == len(up) - 1

    def test_down_is_planned_inverse(self, plan: MigrationPlan) -> None:
        down = plan.down
        recreate_legacy = _position(down, "CREATE TABLE legacy")
        readd_nickname = _position(down, "ADD COLUMN nickname text")
        recreate_index = _position(down, "CREATE INDEX ix_users_nickname ON users (nickname)")
        readd_legacy_fk = _position(down, "ALTER TABLE legacy ADD CONSTRAINT legacy_user_id_fkey")
        drop_fk = _position(down, "DROP CONSTRAINT IF EXISTS users_team_id_fkey")
        drop_index = _position(down, "DROP INDEX IF EXISTS ix_users_email")
        drop_email = _position(down, "DROP COLUMN IF EXISTS email")
        drop_teams = _position(down, "DROP TABLE IF EXISTS teams")

        assert recreate_legacy < readd_nickname < recreate_index < readd_legacy_fk
        assert readd_legacy_fk < drop_fk < drop_index < drop_email < drop_teams
        assert plan.warnings == []

    def test_dropped_table_recreated_without_inline_foreign_keys(self, plan: MigrationPlan) -> None:
        recreate = plan.down[_position(plan.down, "CREATE TABLE legacy")]
        assert "FOREIGN KEY" not in recreate


class TestForeignKeys:
    """Foreign key placement."""

    def _cyclic(self) -> Snapshot:
        a = Table(
            "a",
            columns=[Column("id", "bigint", nullable=False), Column("b_id", "bigint")],
            primary_key=PrimaryKey("a_pkey", ["id"]),
            foreign_keys=[ForeignKey("a_b_id_fkey", ["b_id"], "b", ["id"])],
        )
        b = Table(
            "b",
            columns=[Column("id", "bigint", nullable=False), Column("a_id", "bigint")],
            primary_key=PrimaryKey("b_pkey", ["id"]),
            foreign_keys=[ForeignKey("b_a_id_fkey", ["a_id"], "a", ["id"])],
        )
        return Snapshot([a, b])

    def test_cyclic_references_create_tables_first(self) -> None:
        plan = generate_migration(compare(self._cyclic(), Snapshot.empty()), "postgresql")
        assert [s.split(" (")[0] for s in plan.up] == [
            "CREATE TABLE IF NOT EXISTS a",
            "CREATE TABLE IF NOT EXISTS b",
            "ALTER TABLE a ADD CONSTRAINT a_b_id_fkey FOREIGN KEY",
            "ALTER TABLE b ADD CONSTRAINT b_a_id_fkey FOREIGN KEY",
        ]

    def test_cyclic_references_down_drops_foreign_keys_first(self) -> None:
        plan = generate_migration(compare(self._cyclic(), Snapshot.empty()), "postgresql")
        assert plan.down == [
            "ALTER TABLE a DROP CONSTRAINT IF EXISTS a_b_id_fkey",
            "ALTER TABLE b DROP CONSTRAINT IF EXISTS b_a_id_fkey",
            "DROP TABLE IF EXISTS a",
            "DROP TABLE IF EXISTS b",
        ]

    def test_sqlite_inlines_foreign_keys_of_new_tables(self, blog_snapshot: Snapshot) -> None:
        plan = generate_migration(compare(blog_snapshot, Snapshot.empty()), "sqlite")
        create_posts = plan.up[_position(plan.up, "CREATE TABLE IF NOT EXISTS posts")]
        assert "CONSTRAINT posts_user_id_fkey FOREIGN KEY (user_id) REFERENCES users (id)" in create_posts
        assert not any("ADD CONSTRAINT" in s for s in plan.up)
        assert plan.warnings == []


class TestPrimaryKeyChanges:
    """Primary key changes drop the old key before adding the new one."""

    def test_changed_primary_key(self) -> None:
        columns = [Column("a", "int", nullable=False), Column("b", "int", nullable=False)]
        actual = Snapshot([Table("t", columns=columns, primary_key=PrimaryKey("t_pkey", ["a"]))])
        desired = Snapshot([Table("t", columns=columns, primary_key=PrimaryKey("t_pkey", ["a", "b"]))])

        plan = generate_migration(compare(desired, actual), "postgresql")

        assert plan.up == [
            "ALTER TABLE t DROP CONSTRAINT IF EXISTS t_pkey",
            "ALTER TABLE t ADD CONSTRAINT t_pkey PRIMARY KEY (a, b)",
        ]
        assert plan.down == [
            "ALTER TABLE t DROP CONSTRAINT IF EXISTS t_pkey",
            "ALTER TABLE t ADD CONSTRAINT t_pkey PRIMARY KEY (a)",
        ]

    def test_removed_primary_key(self) -> None:
        columns = [Column("a", "int", nullable=False)]
        actual = Snapshot([Table("t", columns=columns, primary_key=PrimaryKey("t_pkey", ["a"]))])
        desired = Snapshot([Table("t", columns=columns)])

        plan = generate_migration(compare(desired, actual), "postgresql")

        assert plan.up == ["ALTER TABLE t DROP CONSTRAINT IF EXISTS t_pkey"]
        assert plan.down == ["ALTER TABLE t ADD CONSTRAINT t_pkey PRIMARY KEY (a)"]


class TestManualPlaceholders:
    """Steps that cannot be generated become placeholders and warnings."""

    def test_sqlite_alter_column(self, caplog: pytest.LogCaptureFixture) -> None:
        actual = Snapshot([Table("t", columns=[Column("n", "integer")])])
        desired = Snapshot([Table("t", columns=[Column("n", "bigint")])])

        with caplog.at_level(logging.WARNING, logger="driftkit.migrations.planner"):
            plan = generate_migration(compare(desired, actual), "sqlite")

        assert len(plan.up) == 1 and is_manual(plan.up[0])
        assert len(plan.down) == 1 and is_manual(plan.down[0])
        assert len(plan.warnings) == 2
        assert plan.warnings[0].startswith("up: ")
        assert plan.warnings[1].startswith("down: ")
        assert "Manual migration step required" in caplog.text

    def test_sqlite_constraint_on_existing_table(self) -> None:
        columns = [Column("a", "int"), Column("b", "int")]
        actual = Snapshot([Table("t", columns=columns)])
        desired = Snapshot([Table("t", columns=columns, constraints=[Constraint("t_a_b_key", columns=["a", "b"])])])

        plan = generate_migration(compare(desired, actual), "sqlite")

        assert all(is_manual(s) for s in plan.up + plan.down)
        assert plan.warnings

    def test_postgres_has_no_placeholders_for_known_definitions(self) -> None:
        columns = [Column("a", "int"), Column("b", "int")]
        actual = Snapshot([Table("t", columns=columns)])
        desired = Snapshot([Table("t", columns=columns, constraints=[Constraint("t_a_b_key", columns=["a", "b"])])])

        plan = generate_migration(compare(desired, actual), "postgresql")

        assert plan.up == ["ALTER TABLE t ADD CONSTRAINT t_a_b_key UNIQUE (a, b)"]
        assert plan.down == ["ALTER TABLE t DROP CONSTRAINT IF EXISTS t_a_b_key"]
        assert plan.warnings == []


class TestEnumTypes:
    """Enum types are created before and dropped after the tables using them."""

    def test_created_before_tables(self) -> None:
        mood = EnumType("mood", ["sad", "happy"])
        people = Table("people", columns=[Column("id", "bigint"), Column("current_mood", "mood")])
        diff = compare(Snapshot([people], enum_types=[mood]), Snapshot.empty())
        plan = generate_migration(diff, "postgresql")

        assert plan.up[0] == "CREATE TYPE mood AS ENUM ('sad', 'happy')"
        assert plan.up[1].startswith("CREATE TABLE IF NOT EXISTS people")
        assert plan.down == ["DROP TABLE IF EXISTS people", "DROP TYPE IF EXISTS mood"]

    def test_dropped_after_tables(self) -> None:
        mood = EnumType("mood", ["sad", "happy"])
        people = Table("people", columns=[Column("id", "bigint"), Column("current_mood", "mood")])
        diff = compare(Snapshot.empty(), Snapshot([people], enum_types=[mood]))
        plan = generate_migration(diff, "postgresql")

        assert plan.up == ["DROP TABLE IF EXISTS people", "DROP TYPE IF EXISTS mood"]
        assert plan.down[0] == "CREATE TYPE mood AS ENUM ('sad', 'happy')"
        assert plan.down[1].startswith("CREATE TABLE people (")

    def test_added_labels_cannot_be_rolled_back(self) -> None:
        desired = Snapshot(enum_types=[EnumType("mood", ["sad", "ok", "happy"])])
        actual = Snapshot(enum_types=[EnumType("mood", ["sad", "happy"])])
        plan = generate_migration(compare(desired, actual), "postgresql")

        assert plan.up == ["ALTER TYPE mood ADD VALUE IF NOT EXISTS 'ok'"]
        (down,) = plan.down
        assert is_manual(down)
        assert plan.warnings == [f"down: {down}"]


class TestPlannerOptions:
    """Planner configuration."""

    def test_without_if_not_exists(self, users: Table) -> None:
        planner = Planner("postgresql", PlannerOptions(if_not_exists=False))
        plan = planner.generate_migration(compare(Snapshot([users]), Snapshot.empty()))
        assert plan.up[0].startswith("CREATE TABLE users (")

    def test_unknown_dialect(self) -> None:
        with pytest.raises(ValueError, match="Unsupported dialect"):
            Planner("mysql")
