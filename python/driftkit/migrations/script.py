"""Migration units and the on-disk migrations directory.

Each unit is stored as two files sharing a version and a name::

    20240101120000_create_users.up.sql
    20240101120000_create_users.down.sql

Statements in a file are separated by ``;``. Manual-action placeholders
(``-- driftkit:manual ...``) sit on their own line and are kept when the
file is read back.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from driftkit.migrations.operations import MANUAL_MARKER, is_manual
from driftkit.migrations.planner import MigrationPlan

logger = logging.getLogger(__name__)

UP = "up"
DOWN = "down"
DIRECTIONS = (UP, DOWN)

VERSION_FORMAT = "%Y%m%d%H%M%S"

_FILENAME = re.compile(r"^(?P<version>[^_]+)_(?P<name>.+)\.(?P<direction>up|down)\.sql$")
_DOLLAR_TAG = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")


@dataclass(frozen=True)
class Migration:
    """A versioned pair of up and down statement sequences.

    The version is the unit's identity; units sort by version.
    """

    version: str
    name: str
    up: tuple[str, ...] = ()
    down: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.version:
            raise ValueError("Migration version must not be empty")
        object.__setattr__(self, "up", tuple(self.up))
        object.__setattr__(self, "down", tuple(self.down))

    @classmethod
    def from_plan(cls, version: str, name: str, plan: MigrationPlan) -> Migration:
        """Wrap planner output into a unit."""
        return cls(version=version, name=name, up=tuple(plan.up), down=tuple(plan.down))

    @classmethod
    def from_sql(cls, version: str, name: str, up_sql: str, down_sql: str) -> Migration:
        """Build a unit from the text of its up and down scripts."""
        return cls(
            version=version,
            name=name,
            up=tuple(split_statements(up_sql)),
            down=tuple(split_statements(down_sql)),
        )

    def _direction(self, direction: str) -> tuple[str, ...]:
        if direction == UP:
            return self.up
        if direction == DOWN:
            return self.down
        raise ValueError(f"Unknown direction: {direction}")

    def statements(self, direction: str) -> list[str]:
        """Executable statements for ``direction``, placeholders excluded."""
        return [s for s in self._direction(direction) if not is_manual(s)]

    def manual_steps(self, direction: str) -> list[str]:
        """Descriptions of the placeholders that still need manual completion."""
        return [
            s.strip()[len(MANUAL_MARKER):].strip()
            for s in self._direction(direction)
            if is_manual(s)
        ]

    def render(self, direction: str) -> str:
        """Render one direction as the contents of its ``.sql`` file."""
        lines = [f"-- Migration: {self.name}", f"-- Version: {self.version}", ""]
        statements = self._direction(direction)
        if not statements:
            lines.append(f"-- Write your {direction.upper()} migration here")
        for statement in statements:
            lines.append(statement if is_manual(statement) else f"{statement};")
            lines.append("")
        return "\n".join(lines).rstrip("\n") + "\n"

    def __repr__(self) -> str:
        return f"Migration(version='{self.version}', name='{self.name}')"


def split_statements(sql: str) -> list[str]:
    """Split a SQL script into statements.

    Splits on ``;`` outside of quoted strings, quoted identifiers,
    dollar-quoted bodies and comments. Ordinary comments are dropped;
    manual-action placeholders are returned as statements of their own.

    Args:
        sql: SQL script text

    Returns:
        Statements without their terminating semicolons
    """
    statements: list[str] = []
    buffer: list[str] = []
    i = 0
    length = len(sql)

    def flush() -> None:
        statement = "".join(buffer).strip()
        if statement:
            statements.append(statement)
        buffer.clear()

    while i < length:
        char = sql[i]

        if char in ("'", '"'):
            end = sql.find(char, i + 1)
            end = length if end == -1 else end + 1
            buffer.append(sql[i:end])
            i = end
        elif sql.startswith("--", i):
            end = sql.find("\n", i)
            end = length if end == -1 else end
            comment = sql[i:end]
            if is_manual(comment):
                statements.append(comment.strip())
            buffer.append("\n")
            i = end + 1
        elif sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            i = length if end == -1 else end + 2
            buffer.append(" ")
        elif char == "$" and (match := _DOLLAR_TAG.match(sql, i)):
            tag = match.group(0)
            end = sql.find(tag, match.end())
            end = length if end == -1 else end + len(tag)
            buffer.append(sql[i:end])
            i = end
        elif char == ";":
            flush()
            i += 1
        else:
            buffer.append(char)
            i += 1

    flush()
    return statements


def generate_version(now: datetime | None = None) -> str:
    """Generate a version identifier from a UTC timestamp.

    Returns:
        14-digit ``YYYYMMDDHHMMSS`` string, sortable both lexically and in time
    """
    now = now or datetime.now(UTC)
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    return now.astimezone(UTC).strftime(VERSION_FORMAT)


def slugify(text: str, max_length: int = 40) -> str:
    """Convert text to a filename-safe slug.

    Args:
        text: Text to slugify
        max_length: Maximum slug length

    Returns:
        Slugified text
    """
    slug = re.sub(r"[^a-zA-Z0-9]+", "_", text.lower())
    slug = slug.strip("_")
    if len(slug) > max_length:
        slug = slug[:max_length].rstrip("_")
    return slug or "migration"


def file_name(version: str, name: str, direction: str) -> str:
    """Name of the file holding one direction of a unit."""
    return f"{version}_{name}.{direction}.sql"


@dataclass
class MigrationFile:
    """Location of a unit's up and down files."""

    version: str
    name: str
    up_path: Path | None = None
    down_path: Path | None = None

    def is_complete(self) -> bool:
        return self.up_path is not None and self.down_path is not None


class MigrationDirectory:
    """Read and write migration units in a directory.

    Example:
        directory = MigrationDirectory("migrations")
        directory.write("create users", plan)
        units = directory.load_all()
    """

    def __init__(self, path: str | Path, truncate_slug_length: int = 40) -> None:
        self.path = Path(path)
        self.truncate_slug_length = truncate_slug_length

    def _scan(self) -> dict[str, MigrationFile]:
        if not self.path.is_dir():
            return {}

        files: dict[str, MigrationFile] = {}
        for entry in sorted(self.path.iterdir()):
            if not entry.is_file():
                continue
            match = _FILENAME.match(entry.name)
            if match is None:
                continue

            version, name = match.group("version"), match.group("name")
            migration_file = files.get(version)
            if migration_file is None:
                migration_file = files[version] = MigrationFile(version, name)
            elif migration_file.name != name:
                raise ValueError(
                    f"Duplicate migration version {version}: "
                    f"{migration_file.name!r} and {name!r}"
                )

            if match.group("direction") == UP:
                migration_file.up_path = entry
            else:
                migration_file.down_path = entry
        return files

    def list_migrations(self) -> list[MigrationFile]:
        """List units that have both files, sorted by version.

        Raises:
            ValueError: If two units share a version
        """
        files = self._scan()
        for version, migration_file in files.items():
            if not migration_file.is_complete():
                logger.warning("Skipping incomplete migration %s_%s", version, migration_file.name)
        complete = [f for f in files.values() if f.is_complete()]
        return sorted(complete, key=lambda f: f.version)

    def read_migration(self, migration_file: MigrationFile) -> Migration:
        """Read a unit's statements from its files."""
        if not migration_file.is_complete():
            raise FileNotFoundError(
                f"Migration {migration_file.version} is missing its up or down file"
            )
        return Migration.from_sql(
            migration_file.version,
            migration_file.name,
            migration_file.up_path.read_text(),  # type: ignore[union-attr]
            migration_file.down_path.read_text(),  # type: ignore[union-attr]
        )

    def load_all(self) -> list[Migration]:
        """Read every complete unit, sorted by version."""
        return [self.read_migration(f) for f in self.list_migrations()]

    def next_version(self, now: datetime | None = None) -> str:
        """Generate a version not yet used in the directory.

        Versions created within the same second are bumped forward one
        second at a time until unique.
        """
        taken = set(self._scan())
        moment = now or datetime.now(UTC)
        version = generate_version(moment)
        while version in taken:
            moment += timedelta(seconds=1)
            version = generate_version(moment)
        return version

    def write_migration(self, migration: Migration) -> MigrationFile:
        """Write both files of ``migration``."""
        self.path.mkdir(parents=True, exist_ok=True)
        up_path = self.path / file_name(migration.version, migration.name, UP)
        down_path = self.path / file_name(migration.version, migration.name, DOWN)
        up_path.write_text(migration.render(UP))
        down_path.write_text(migration.render(DOWN))
        logger.info("Created migration %s_%s", migration.version, migration.name)
        return MigrationFile(migration.version, migration.name, up_path, down_path)

    def write(self, name: str, plan: MigrationPlan, now: datetime | None = None) -> MigrationFile:
        """Write a new unit from planner output."""
        slug = slugify(name, self.truncate_slug_length)
        migration = Migration.from_plan(self.next_version(now), slug, plan)
        return self.write_migration(migration)

    def write_empty(self, name: str, now: datetime | None = None) -> MigrationFile:
        """Write a new unit with empty up and down files for manual editing."""
        slug = slugify(name, self.truncate_slug_length)
        return self.write_migration(Migration(self.next_version(now), slug))
