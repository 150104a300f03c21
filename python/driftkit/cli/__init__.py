"""driftkit CLI - command-line interface for schema migrations."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

from driftkit.errors import DriftkitError

if TYPE_CHECKING:
    from driftkit.migrations.config import MigrationConfig
    from driftkit.migrations.runner import MigrationExecutor, MigrationResult
    from driftkit.migrations.script import MigrationFile
    from driftkit.pool import ConnectionPool
    from driftkit.schema import Snapshot

logger = logging.getLogger(__name__)


def main(args: list[str] | None = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Command-line arguments (defaults to sys.argv)

    Returns:
        Exit code (0 for success)
    """
    parser = argparse.ArgumentParser(
        prog="driftkit",
        description="driftkit - schema diffing and migrations for PostgreSQL and SQLite",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        dest="verbosity",
        help="Increase log output (-v for INFO, -vv for DEBUG)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # migrate subcommand
    migrate_parser = subparsers.add_parser("migrate", help="Database migration commands")
    migrate_subparsers = migrate_parser.add_subparsers(dest="subcommand", help="Migration commands")

    # migrate init
    init_parser = migrate_subparsers.add_parser(
        "init", help="Initialize driftkit.ini and the migrations directory"
    )
    init_parser.add_argument(
        "-d", "--directory",
        default=".",
        help="Target directory (default: current directory)",
    )
    init_parser.add_argument(
        "--url",
        help="Database URL to configure",
    )

    # migrate create
    create_parser = migrate_subparsers.add_parser(
        "create", help="Create a new empty migration"
    )
    create_parser.add_argument("message", help="Migration description")
    _add_config_argument(create_parser)

    # migrate auto
    auto_parser = migrate_subparsers.add_parser(
        "auto", help="Generate a migration by diffing a desired snapshot against the database"
    )
    auto_parser.add_argument("message", help="Migration description")
    auto_parser.add_argument(
        "-s", "--snapshot",
        required=True,
        help="Desired schema as 'module:attribute' (a Snapshot or a function returning one)",
    )
    _add_config_argument(auto_parser)
    _add_url_argument(auto_parser)

    # migrate up
    up_parser = migrate_subparsers.add_parser(
        "up", help="Apply pending migrations"
    )
    _add_config_argument(up_parser)
    _add_url_argument(up_parser)
    _add_run_arguments(up_parser)

    # migrate down
    down_parser = migrate_subparsers.add_parser(
        "down", help="Rollback migrations"
    )
    down_parser.add_argument(
        "target",
        nargs="?",
        default="-1",
        help="Version to roll back to, or -N for the last N migrations (default: -1)",
    )
    _add_config_argument(down_parser)
    _add_url_argument(down_parser)
    _add_run_arguments(down_parser)

    # migrate status
    status_parser = migrate_subparsers.add_parser(
        "status", help="Show applied and pending migrations"
    )
    _add_config_argument(status_parser)
    _add_url_argument(status_parser)

    # migrate history
    history_parser = migrate_subparsers.add_parser(
        "history", help="List migration files"
    )
    _add_config_argument(history_parser)
    history_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show file paths and statement counts",
    )

    # Parse arguments
    parsed = parser.parse_args(args)

    _configure_logging(parsed.verbosity)

    if parsed.command is None:
        parser.print_help()
        return 1

    if parsed.command == "migrate":
        try:
            return asyncio.run(_handle_migrate(parsed))
        except (DriftkitError, ValueError, FileNotFoundError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    return 0


def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c", "--config",
        help="Path to driftkit.ini",
    )


def _add_url_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--url",
        help="Database URL (overrides config and DRIFTKIT_DATABASE_URL)",
    )


def _add_run_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would run without touching the database",
    )
    parser.add_argument(
        "--no-wait",
        action="store_true",
        help="Fail immediately if another process holds the migration lock",
    )


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


async def _handle_migrate(args: Any) -> int:
    """Handle migrate subcommands.

    Args:
        args: Parsed arguments

    Returns:
        Exit code
    """
    if args.subcommand == "init":
        return _migrate_init(args)

    elif args.subcommand == "create":
        return _migrate_create(args)

    elif args.subcommand == "auto":
        return await _migrate_auto(args)

    elif args.subcommand == "up":
        return await _migrate_up(args)

    elif args.subcommand == "down":
        return await _migrate_down(args)

    elif args.subcommand == "status":
        return await _migrate_status(args)

    elif args.subcommand == "history":
        return _migrate_history(args)

    else:
        print("Unknown migrate subcommand. Use --help for usage.")
        return 1


def _migrate_init(args: Any) -> int:
    """Initialize driftkit.ini and the migrations directory."""
    from driftkit.migrations.config import create_default_config

    directory = Path(args.directory).resolve()
    ini_path, migrations_dir = create_default_config(directory, args.url)

    print("Created migration structure:")
    print(f"  {ini_path}")
    print(f"  {migrations_dir}/")
    print("\nEdit driftkit.ini to configure your database URL.")
    return 0


def _migrate_create(args: Any) -> int:
    """Create a new empty migration."""
    from driftkit.migrations.script import MigrationDirectory

    config = _load_config(args)
    if config is None:
        return 1

    directory = MigrationDirectory(config.migrations_dir, config.truncate_slug_length)
    migration_file = directory.write_empty(args.message)
    print(f"Created migration {migration_file.version}:")
    print(f"  {migration_file.up_path}")
    print(f"  {migration_file.down_path}")
    return 0


async def _migrate_auto(args: Any) -> int:
    """Generate a migration from the difference between a snapshot and the database."""
    from driftkit.migrations.diff import compare
    from driftkit.migrations.introspect import read_snapshot
    from driftkit.migrations.planner import Planner, PlannerOptions
    from driftkit.migrations.script import MigrationDirectory
    from driftkit.pool import SQLITE_LOCK_TABLE, create_pool

    config = _load_config(args)
    if config is None:
        return 1

    desired = _load_snapshot(args.snapshot)
    url = config.get_url(args.url)

    pool = await create_pool(url)
    try:
        actual = await read_snapshot(pool, exclude=(config.version_table, SQLITE_LOCK_TABLE))
    finally:
        await pool.close()

    diff = compare(desired, actual)
    if not diff.has_changes():
        print("No changes detected.")
        return 0

    planner = Planner(config.get_dialect(url), PlannerOptions(if_not_exists=config.if_not_exists))
    plan = planner.generate_migration(diff)

    directory = MigrationDirectory(config.migrations_dir, config.truncate_slug_length)
    migration_file = directory.write(args.message, plan)

    print(f"Created migration {migration_file.version}:")
    print(f"  {migration_file.up_path}")
    print(f"  {migration_file.down_path}")
    print(f"  {len(plan.up)} up / {len(plan.down)} down statement(s)")
    for warning in plan.warnings:
        print(f"  manual step needed: {warning}")
    return 0


async def _migrate_up(args: Any) -> int:
    """Apply pending migrations."""
    from driftkit.pool import create_pool

    config = _load_config(args)
    if config is None:
        return 1

    pool = await create_pool(config.get_url(args.url))
    try:
        results = await _run_up(pool, config, dry_run=args.dry_run, wait=not args.no_wait)
    finally:
        await pool.close()

    if not results:
        print("No pending migrations.")
    else:
        verb = "Would apply" if args.dry_run else "Applied"
        print(f"{verb} {len(results)} migration(s):")
        _print_results(results, "->", show_sql=args.dry_run)
    return 0


async def _migrate_down(args: Any) -> int:
    """Rollback migrations."""
    from driftkit.pool import create_pool

    config = _load_config(args)
    if config is None:
        return 1

    pool = await create_pool(config.get_url(args.url))
    try:
        results = await _run_down(
            pool, config, args.target, dry_run=args.dry_run, wait=not args.no_wait
        )
    finally:
        await pool.close()

    if not results:
        print("No migrations to rollback.")
    else:
        verb = "Would roll back" if args.dry_run else "Rolled back"
        print(f"{verb} {len(results)} migration(s):")
        _print_results(results, "<-", show_sql=args.dry_run)
    return 0


async def _migrate_status(args: Any) -> int:
    """Show current migration status."""
    from driftkit.pool import create_pool

    config = _load_config(args)
    if config is None:
        return 1

    pool = await create_pool(config.get_url(args.url))
    try:
        status = await _status(pool, config)
    finally:
        await pool.close()

    print("Migration status:")
    print(f"  Current version: {status['current_version'] or '(none)'}")
    print(f"  Pending migrations: {len(status['pending'])}")

    if status["entries"]:
        print()
        for entry in status["entries"]:
            applied_at = entry.applied_at.isoformat() if entry.applied_at else ""
            print(f"  [{entry.status.value:>7}] {entry.version}_{entry.name} {applied_at}".rstrip())

    if status["missing"]:
        print("\nApplied but missing from the migrations directory:")
        for version in status["missing"]:
            print(f"  - {version}")
    return 0


def _migrate_history(args: Any) -> int:
    """List migration files (doesn't require a database connection)."""
    from driftkit.migrations.script import MigrationDirectory

    config = _load_config(args)
    if config is None:
        return 1

    directory = MigrationDirectory(config.migrations_dir, config.truncate_slug_length)
    files = directory.list_migrations()
    if not files:
        print("No migrations found.")
        return 0

    print(f"Migration history ({len(files)} migrations):")
    for migration_file in files:
        print(f"  {migration_file.version}: {migration_file.name}")
        if args.verbose:
            migration = directory.read_migration(migration_file)
            print(f"       Up: {migration_file.up_path} ({len(migration.up)} statements)")
            print(f"       Down: {migration_file.down_path} ({len(migration.down)} statements)")

    return 0


def _print_results(results: list[MigrationResult], arrow: str, show_sql: bool = False) -> None:
    for result in results:
        print(f"  {arrow} {result.version}: {result.name}")
        if show_sql:
            for statement in result.statements:
                print(f"       {statement};")
            for step in result.manual_steps:
                print(f"       manual step needed: {step}")


def _load_config(args: Any) -> MigrationConfig | None:
    """Load driftkit config from args or auto-detect."""
    from driftkit.migrations.config import CONFIG_FILENAME, MigrationConfig

    if getattr(args, "config", None):
        config_path = Path(args.config)
    else:
        config_path = Path.cwd() / CONFIG_FILENAME

    if config_path.exists():
        return MigrationConfig.from_ini(config_path)

    # Try auto-detection
    config = MigrationConfig.auto_detect()
    if config:
        return config

    print(f"Error: Config file not found: {config_path}")
    print("Run 'driftkit migrate init' to create one.")
    return None


def _load_snapshot(reference: str) -> Snapshot:
    """Load a desired snapshot from 'module:attribute'.

    The attribute may be a ``Snapshot`` or a callable returning one.
    """
    import importlib

    from driftkit.schema import Snapshot

    module_name, _, attribute = reference.partition(":")
    if not attribute:
        raise ValueError(f"Snapshot must be given as 'module:attribute', got {reference!r}")

    module = importlib.import_module(module_name)
    value = getattr(module, attribute)
    if callable(value) and not isinstance(value, Snapshot):
        value = value()
    if not isinstance(value, Snapshot):
        raise ValueError(f"{reference} is not a Snapshot")
    return value


def _executor(pool: ConnectionPool, config: MigrationConfig) -> MigrationExecutor:
    from driftkit.migrations.runner import MigrationExecutor

    return MigrationExecutor(
        pool,
        table=config.version_table,
        lock_id=config.lock_id,
        lock_timeout=config.lock_timeout,
    )


def _units(config: MigrationConfig) -> list[Any]:
    from driftkit.migrations.script import MigrationDirectory

    return MigrationDirectory(config.migrations_dir, config.truncate_slug_length).load_all()


async def _run_up(
    pool: ConnectionPool,
    config: MigrationConfig,
    dry_run: bool = False,
    wait: bool = True,
) -> list[MigrationResult]:
    return await _executor(pool, config).apply_all(_units(config), dry_run=dry_run, wait=wait)


async def _run_down(
    pool: ConnectionPool,
    config: MigrationConfig,
    target: str,
    dry_run: bool = False,
    wait: bool = True,
) -> list[MigrationResult]:
    executor = _executor(pool, config)
    units = _units(config)
    if target.startswith("-"):
        count_text = target[1:]
        if not count_text.isdigit() or int(count_text) < 1:
            raise ValueError(f"Invalid rollback count {target!r}, expected -N with N >= 1")
        count = int(count_text)
        return await executor.rollback_last(units, count=count, dry_run=dry_run, wait=wait)
    return await executor.rollback_to(target, units, dry_run=dry_run, wait=wait)


async def _status(pool: ConnectionPool, config: MigrationConfig) -> dict[str, Any]:
    from driftkit.migrations.runner import MigrationStatus

    executor = _executor(pool, config)
    units = _units(config)
    entries = await executor.get_status(units)
    records = await executor.get_applied_migrations()
    known = {u.version for u in units}
    return {
        "current_version": records[-1].version if records else None,
        "entries": entries,
        "pending": [e for e in entries if e.status is MigrationStatus.PENDING],
        "missing": [r.version for r in records if r.version not in known],
    }


# =============================================================================
# Programmatic API
# =============================================================================


def _config_in(directory: Path | str) -> MigrationConfig:
    from driftkit.migrations.config import CONFIG_FILENAME, MigrationConfig

    return MigrationConfig.from_ini(Path(directory) / CONFIG_FILENAME)


def migrate_init(directory: Path | str, url: str | None = None) -> None:
    """Initialize driftkit.ini and the migrations directory.

    Args:
        directory: Target directory
        url: Optional database URL to configure
    """
    from driftkit.migrations.config import create_default_config

    create_default_config(Path(directory), url)


def migrate_create(directory: Path | str, message: str) -> MigrationFile:
    """Create a new empty migration.

    Args:
        directory: Directory containing driftkit.ini
        message: Migration description

    Returns:
        Locations of the created up and down files
    """
    from driftkit.migrations.script import MigrationDirectory

    config = _config_in(directory)
    return MigrationDirectory(config.migrations_dir, config.truncate_slug_length).write_empty(message)


async def migrate_up(
    pool: ConnectionPool,
    directory: Path | str,
    dry_run: bool = False,
) -> list[MigrationResult]:
    """Apply pending migrations.

    Args:
        pool: Database connection
        directory: Directory containing driftkit.ini
        dry_run: Report what would run without touching the database

    Returns:
        Results of the applied migrations
    """
    return await _run_up(pool, _config_in(directory), dry_run=dry_run)


async def migrate_down(
    pool: ConnectionPool,
    directory: Path | str,
    target: str = "-1",
    dry_run: bool = False,
) -> list[MigrationResult]:
    """Rollback migrations.

    Args:
        pool: Database connection
        directory: Directory containing driftkit.ini
        target: Version to roll back to, or -N for the last N (default: -1)
        dry_run: Report what would run without touching the database

    Returns:
        Results of the rolled back migrations
    """
    return await _run_down(pool, _config_in(directory), target, dry_run=dry_run)


async def migrate_status(
    pool: ConnectionPool,
    directory: Path | str,
) -> dict[str, Any]:
    """Get current migration status.

    Args:
        pool: Database connection
        directory: Directory containing driftkit.ini

    Returns:
        Dict with current_version, entries, pending and missing
    """
    return await _status(pool, _config_in(directory))


if __name__ == "__main__":
    sys.exit(main())
