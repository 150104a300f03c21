"""Tests for the migrate CLI and its programmatic helpers."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from textwrap import dedent

import pytest

from driftkit.cli import (
    main,
    migrate_create,
    migrate_down,
    migrate_init,
    migrate_status,
    migrate_up,
)
from driftkit.migrations.config import CONFIG_FILENAME, URL_ENV_VAR
from driftkit.migrations.runner import DEFAULT_VERSION_TABLE, MigrationStatus

SCHEMA_MODULE = dedent(
    """
    from driftkit.schema import Column, PrimaryKey, Snapshot, Table

    def desired():
        return Snapshot([
            Table(
                "accounts",
                columns=[
                    Column("id", "INTEGER", nullable=False),
                    Column("email", "text", nullable=False, unique=True),
                ],
                primary_key=PrimaryKey("accounts_pkey", ["id"]),
            )
        ])

    SNAPSHOT = desired()
    """
)


@pytest.fixture(autouse=True)
def _no_env_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(URL_ENV_VAR, raising=False)


@pytest.fixture
def project(tmp_path: Path, sqlite_url: str) -> Path:
    """A project directory with driftkit.ini pointing at a file database."""
    migrate_init(tmp_path, url=sqlite_url)
    return tmp_path


def _fill(migration_file, up: str, down: str) -> None:
    migration_file.up_path.write_text(up)
    migration_file.down_path.write_text(down)


class TestProgrammaticApi:
    """Test the migrate_* helpers."""

    def test_init(self, tmp_path: Path) -> None:
        migrate_init(tmp_path)
        assert (tmp_path / CONFIG_FILENAME).exists()
        assert (tmp_path / "migrations").is_dir()

    def test_create(self, project: Path) -> None:
        migration_file = migrate_create(project, "Create accounts")
        assert migration_file.name == "create_accounts"
        assert migration_file.up_path is not None and migration_file.up_path.exists()
        assert migration_file.down_path is not None and migration_file.down_path.exists()
        assert migration_file.up_path.parent == project / "migrations"

    async def test_up_status_down(self, project: Path, sqlite_file_pool) -> None:
        _fill(
            migrate_create(project, "create accounts"),
            "CREATE TABLE accounts (id INTEGER PRIMARY KEY);",
            "DROP TABLE accounts;",
        )
        _fill(
            migrate_create(project, "add email"),
            "ALTER TABLE accounts ADD COLUMN email TEXT;",
            "ALTER TABLE accounts DROP COLUMN email;",
        )

        status = await migrate_status(sqlite_file_pool, project)
        assert status["current_version"] is None
        assert len(status["pending"]) == 2

        applied = await migrate_up(sqlite_file_pool, project)
        assert [r.name for r in applied] == ["create_accounts", "add_email"]

        status = await migrate_status(sqlite_file_pool, project)
        assert status["current_version"] == applied[-1].version
        assert status["pending"] == []
        assert all(e.status is MigrationStatus.APPLIED for e in status["entries"])
        assert status["missing"] == []

        rolled_back = await migrate_down(sqlite_file_pool, project)
        assert [r.name for r in rolled_back] == ["add_email"]

        status = await migrate_status(sqlite_file_pool, project)
        assert status["current_version"] == applied[0].version

    async def test_down_to_version(self, project: Path, sqlite_file_pool) -> None:
        files = []
        for name in ("one", "two", "three"):
            migration_file = migrate_create(project, name)
            _fill(migration_file, f"CREATE TABLE {name} (x int);", f"DROP TABLE {name};")
            files.append(migration_file)
        await migrate_up(sqlite_file_pool, project)

        rolled_back = await migrate_down(sqlite_file_pool, project, target=files[0].version)

        assert [r.name for r in rolled_back] == ["three", "two"]

    async def test_dry_run(self, project: Path, sqlite_file_pool) -> None:
        _fill(migrate_create(project, "create t"), "CREATE TABLE t (x int);", "DROP TABLE t;")

        results = await migrate_up(sqlite_file_pool, project, dry_run=True)

        assert results[0].dry_run
        assert results[0].statements == ["CREATE TABLE t (x int)"]
        status = await migrate_status(sqlite_file_pool, project)
        assert len(status["pending"]) == 1

    async def test_missing_files_reported(self, project: Path, sqlite_file_pool) -> None:
        migration_file = migrate_create(project, "create t")
        _fill(migration_file, "CREATE TABLE t (x int);", "DROP TABLE t;")
        await migrate_up(sqlite_file_pool, project)
        migration_file.up_path.unlink()
        migration_file.down_path.unlink()

        status = await migrate_status(sqlite_file_pool, project)

        assert status["missing"] == [migration_file.version]
        assert status["entries"] == []

    async def test_down_rejects_malformed_count(self, project: Path, sqlite_file_pool) -> None:
        with pytest.raises(ValueError, match="Invalid rollback count '-abc'"):
            await migrate_down(sqlite_file_pool, project, target="-abc")
        with pytest.raises(ValueError, match="Invalid rollback count"):
            await migrate_down(sqlite_file_pool, project, target="-0")


class TestMain:
    """Test the command-line entry point."""

    def test_no_command(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main([]) == 1

    def test_init(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["migrate", "init", "-d", str(tmp_path), "--url", "sqlite:///app.db"]) == 0
        assert "Created migration structure" in capsys.readouterr().out
        assert "database_url = sqlite:///app.db" in (tmp_path / CONFIG_FILENAME).read_text()

    def test_create_up_status_history_down(self, project: Path, capsys: pytest.CaptureFixture[str]) -> None:
        ini = str(project / CONFIG_FILENAME)

        assert main(["migrate", "create", "create accounts", "-c", ini]) == 0
        (up_path,) = (project / "migrations").glob("*.up.sql")
        (down_path,) = (project / "migrations").glob("*.down.sql")
        up_path.write_text("CREATE TABLE accounts (id INTEGER PRIMARY KEY);\n")
        down_path.write_text("DROP TABLE accounts;\n")
        version = up_path.name.split("_", 1)[0]
        capsys.readouterr()

        assert main(["migrate", "up", "--dry-run", "-c", ini]) == 0
        out = capsys.readouterr().out
        assert "Would apply 1 migration(s)" in out
        assert "CREATE TABLE accounts (id INTEGER PRIMARY KEY);" in out

        assert main(["migrate", "up", "-c", ini]) == 0
        assert f"-> {version}: create_accounts" in capsys.readouterr().out

        assert main(["migrate", "up", "-c", ini]) == 0
        assert "No pending migrations." in capsys.readouterr().out

        assert main(["migrate", "status", "-c", ini]) == 0
        out = capsys.readouterr().out
        assert f"Current version: {version}" in out
        assert "[applied]" in out

        assert main(["migrate", "history", "-v", "-c", ini]) == 0
        out = capsys.readouterr().out
        assert f"{version}: create_accounts" in out
        assert "(1 statements)" in out

        assert main(["migrate", "down", "-c", ini]) == 0
        assert f"<- {version}: create_accounts" in capsys.readouterr().out

        assert main(["migrate", "down", "-c", ini]) == 0
        assert "No migrations to rollback." in capsys.readouterr().out

    def test_unknown_target(self, project: Path, capsys: pytest.CaptureFixture[str]) -> None:
        ini = str(project / CONFIG_FILENAME)
        assert main(["migrate", "down", "20991231000000", "-c", ini]) == 1
        assert "Error: Unknown migration version 20991231000000" in capsys.readouterr().err

    def test_failed_statement(self, project: Path, capsys: pytest.CaptureFixture[str]) -> None:
        ini = str(project / CONFIG_FILENAME)
        _fill(migrate_create(project, "broken"), "INSERT INTO nowhere VALUES (1);", "SELECT 1;")

        assert main(["migrate", "up", "-c", ini]) == 1
        assert "no such table: nowhere" in capsys.readouterr().err

    def test_missing_config(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.chdir(tmp_path)
        assert main(["migrate", "history", "-c", str(tmp_path / "nope.ini")]) == 1
        assert "Config file not found" in capsys.readouterr().out

    def test_config_found_from_cwd(
        self, project: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.chdir(project)
        assert main(["migrate", "history"]) == 0
        assert "No migrations found." in capsys.readouterr().out

    def test_auto(
        self, project: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        ini = str(project / CONFIG_FILENAME)
        (project / "driftkit_cli_schema.py").write_text(SCHEMA_MODULE)
        monkeypatch.syspath_prepend(str(project))

        assert main(["migrate", "auto", "create accounts", "-s", "driftkit_cli_schema:desired", "-c", ini]) == 0
        assert "1 up / 1 down statement(s)" in capsys.readouterr().out
        (up_path,) = (project / "migrations").glob("*.up.sql")
        assert "CREATE TABLE IF NOT EXISTS accounts" in up_path.read_text()

        assert main(["migrate", "up", "-c", ini]) == 0
        capsys.readouterr()

        assert main(["migrate", "auto", "again", "-s", "driftkit_cli_schema:SNAPSHOT", "-c", ini]) == 0
        assert "No changes detected." in capsys.readouterr().out

    def test_auto_bad_snapshot_reference(self, project: Path, capsys: pytest.CaptureFixture[str]) -> None:
        ini = str(project / CONFIG_FILENAME)
        assert main(["migrate", "auto", "x", "-s", "no_colon_here", "-c", ini]) == 1
        assert "module:attribute" in capsys.readouterr().err

    def test_down_invalid_count(self, project: Path, capsys: pytest.CaptureFixture[str]) -> None:
        ini = str(project / CONFIG_FILENAME)
        assert main(["migrate", "down", "-1.5", "-c", ini]) == 1
        assert "Error: Invalid rollback count '-1.5'" in capsys.readouterr().err

    def test_status_is_read_only(
        self, project: Path, sqlite_url: str, capsys: pytest.CaptureFixture[str]
    ) -> None:
        ini = str(project / CONFIG_FILENAME)
        assert main(["migrate", "status", "-c", ini]) == 0
        capsys.readouterr()

        with sqlite3.connect(sqlite_url.removeprefix("sqlite:///")) as db:
            tables = {row[0] for row in db.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
        assert DEFAULT_VERSION_TABLE not in tables
