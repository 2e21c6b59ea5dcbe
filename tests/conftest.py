"""
Shared pytest fixtures for sqlmigrate tests.
"""
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from sqlmigrate.stores.sqlite import SQLiteStore


@pytest.fixture
def migrations_dir(tmp_path):
    """Empty migrations directory."""
    directory = tmp_path / "migrations"
    directory.mkdir()
    return directory


@pytest.fixture
def add_migration(migrations_dir):
    """Write a migration file into migrations_dir and return its path."""

    def _add(name: str, content: str) -> Path:
        path = migrations_dir / name
        path.write_text(content)
        return path

    return _add


@pytest.fixture
def db_path(tmp_path):
    """Path for a SQLite database file."""
    return str(tmp_path / "test.db")


@pytest.fixture
async def sqlite_store(db_path):
    """Open SQLite store on a fresh database file."""
    store = SQLiteStore(db_path)
    await store.open()
    try:
        yield store
    finally:
        await store.close()


@pytest.fixture
def mock_store():
    """Mock Store for unit tests."""
    store = MagicMock()
    store.name = "mock"
    store.open = AsyncMock()
    store.close = AsyncMock()
    store.execute = AsyncMock()
    return store
