"""Pytest configuration and fixtures."""

import os
from pathlib import Path

import pytest
import pytest_asyncio

from driftkit.schema import (
    Column,
    ForeignKey,
    Index,
    PrimaryKey,
    Snapshot,
    Table,
    foreign_key_name,
    primary_key_name,
)


@pytest_asyncio.fixture
async def sqlite_pool():
    """Create an in-memory SQLite connection."""
    from driftkit import create_engine

    pool = await create_engine("sqlite::memory:")
    yield pool
    await pool.close()


@pytest.fixture
def sqlite_url(tmp_path: Path) -> str:
    """URL of a file-backed SQLite database that several connections can share."""
    return f"sqlite:///{tmp_path / 'test.db'}"


@pytest_asyncio.fixture
async def sqlite_file_pool(sqlite_url: str):
    """Create a connection to the file-backed SQLite database."""
    from driftkit import create_engine

    pool = await create_engine(sqlite_url)
    yield pool
    await pool.close()


@pytest_asyncio.fixture
async def postgres_pool():
    """Create a PostgreSQL connection.

    Set DATABASE_URL environment variable to use a real PostgreSQL database.
    Otherwise, this fixture is skipped.
    """
    from driftkit import create_engine

    url = os.environ.get("DATABASE_URL")
    if not url:
        pytest.skip("DATABASE_URL not set")

    pool = await create_engine(url)
    yield pool
    await pool.close()


def users_table() -> Table:
    """users (id bigserial primary key, email varchar(255) unique not null)."""
    return Table(
        "users",
        columns=[
            Column("id", "bigserial", nullable=False, auto_increment=True, position=0),
            Column("email", "varchar(255)", nullable=False, unique=True, position=1),
        ],
        primary_key=PrimaryKey(primary_key_name("users"), ["id"]),
    )


def posts_table() -> Table:
    """posts with a foreign key to users and an index on user_id."""
    return Table(
        "posts",
        columns=[
            Column("id", "integer", nullable=False, position=0),
            Column("user_id", "bigint", nullable=False, position=1),
            Column("title", "varchar(200)", nullable=False, position=2),
            Column("status", "text", default="'draft'", position=3),
        ],
        primary_key=PrimaryKey(primary_key_name("posts"), ["id"]),
        foreign_keys=[
            ForeignKey(
                foreign_key_name("posts", ["user_id"]),
                ["user_id"],
                "users",
                ["id"],
                on_delete="cascade",
            )
        ],
        indexes=[Index("ix_posts_user_id", ["user_id"])],
    )


@pytest.fixture
def users() -> Table:
    return users_table()


@pytest.fixture
def posts() -> Table:
    return posts_table()


@pytest.fixture
def blog_snapshot() -> Snapshot:
    return Snapshot([users_table(), posts_table()])
