"""SQLite store - metadata and migrations on an aiosqlite connection.

The connection runs in autocommit mode: every migration statement and every
checkpoint write commits on its own. ``transaction()`` opens an explicit
BEGIN/COMMIT block when several writes must land together. SQLite DDL is
transactional, so schema upgrades roll back cleanly.
"""

import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Sequence

import aiosqlite
import structlog

from sqlmigrate.core.errors import SchemaUpgradeFailed, StoreConnectionError
from sqlmigrate.domain.migration import Migration
from sqlmigrate.stores.base import (
    CHECKPOINTS_TABLE,
    CURRENT_SCHEMA_VERSION,
    MIGRATIONS_TABLE,
    VERSION_TABLE,
    Store,
    legacy_content,
)

log = structlog.get_logger()

MIGRATIONS_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} (
    filename TEXT UNIQUE NOT NULL,
    md5 TEXT NOT NULL,
    content TEXT NOT NULL,
    createdat TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
)
"""

CHECKPOINTS_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS {CHECKPOINTS_TABLE} (
    filename TEXT NOT NULL,
    content TEXT NOT NULL,
    idx INTEGER NOT NULL,
    md5 TEXT NOT NULL,
    createdat TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (filename, idx)
)
"""

VERSION_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS {VERSION_TABLE} (
    version INTEGER NOT NULL
)
"""


class SQLiteStore(Store):
    """Migration metadata in a SQLite database file."""

    driver_errors = (sqlite3.Error,)

    def __init__(self, db_path: str):
        """Initialize the store.

        Args:
            db_path: Path to the database file, or ":memory:".
        """
        self._db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None
        self._log = log.bind(component="sqlite_store")

    @property
    def name(self) -> str:
        return "sqlite"

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    @property
    def db_path(self) -> str:
        return self._db_path

    async def open(self) -> None:
        """Connect to the database file, creating parent directories."""
        if self._connection is not None:
            return

        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._connection = await aiosqlite.connect(
                self._db_path, isolation_level=None
            )
        except sqlite3.Error as e:
            raise StoreConnectionError(f"open sqlite database {self._db_path}", e) from e

        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA busy_timeout=5000")
        self._log.debug("sqlite_connected", db_path=self._db_path)

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    def _conn(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError("SQLite store not connected")
        return self._connection

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        conn = self._conn()
        await conn.execute("BEGIN")
        try:
            yield
        except BaseException:
            await conn.execute("ROLLBACK")
            raise
        await conn.execute("COMMIT")

    async def execute(self, statement: str) -> Any:
        cursor = await self._conn().execute(statement)
        rowcount = cursor.rowcount
        await cursor.close()
        return rowcount

    async def _table_exists(self, table: str) -> bool:
        async with self._conn().execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?", (table,)
        ) as cursor:
            return await cursor.fetchone() is not None

    # ============ Metadata tables ============

    async def ensure_migration_table(self) -> None:
        with self._operation("create meta table"):
            await self._conn().execute(MIGRATIONS_TABLE_SQL)

    async def ensure_checkpoint_table(self) -> None:
        with self._operation("create metacheckpoints table"):
            await self._conn().execute(CHECKPOINTS_TABLE_SQL)

    async def ensure_version_table(self, initial_version: int = CURRENT_SCHEMA_VERSION) -> int:
        with self._operation("create metaversion table"):
            await self._conn().execute(VERSION_TABLE_SQL)

        with self._operation("get version"):
            async with self._conn().execute(
                f"SELECT version FROM {VERSION_TABLE} LIMIT 1"
            ) as cursor:
                row = await cursor.fetchone()
            if row is not None:
                return int(row["version"])

            if await self._table_exists(MIGRATIONS_TABLE):
                return 0

        await self.update_version(initial_version)
        return initial_version

    async def update_version(self, version: int) -> None:
        with self._operation("update version"):
            conn = self._conn()
            await conn.execute(f"DELETE FROM {VERSION_TABLE}")
            await conn.execute(
                f"INSERT INTO {VERSION_TABLE} (version) VALUES (?)", (version,)
            )

    # ============ Migrations ============

    async def list_migrations(self) -> list[Migration]:
        # CAST reads the leading digit run of the filename
        query = f"""
            SELECT filename, content, md5 FROM {MIGRATIONS_TABLE}
            ORDER BY CAST(filename AS INTEGER), filename
        """
        migrations = []
        with self._operation("get migrations"):
            async with self._conn().execute(query) as cursor:
                async for row in cursor:
                    migrations.append(
                        Migration(
                            filename=row["filename"],
                            content=row["content"],
                            checksum=row["md5"],
                        )
                    )
        return migrations

    async def insert_migration(self, filename: str, content: str, checksum: str) -> None:
        with self._operation("insert migration", filename=filename):
            await self._conn().execute(
                f"INSERT INTO {MIGRATIONS_TABLE} (filename, content, md5) VALUES (?, ?, ?)",
                (filename, content, checksum),
            )

    async def upsert_migration(self, filename: str, content: str, checksum: str) -> None:
        with self._operation("upsert migration", filename=filename):
            await self._conn().execute(
                f"""
                INSERT INTO {MIGRATIONS_TABLE} (filename, content, md5) VALUES (?, ?, ?)
                ON CONFLICT(filename) DO UPDATE SET md5=excluded.md5, content=excluded.content
                """,
                (filename, content, checksum),
            )

    # ============ Checkpoints ============

    async def list_checkpoints(self, filename: str) -> list[str]:
        checksums = []
        with self._operation("get checkpoints", filename=filename):
            async with self._conn().execute(
                f"SELECT md5 FROM {CHECKPOINTS_TABLE} WHERE filename=? ORDER BY idx",
                (filename,),
            ) as cursor:
                async for row in cursor:
                    checksums.append(row["md5"])
        return checksums

    async def insert_checkpoint(
        self, filename: str, content: str, checksum: str, idx: int
    ) -> None:
        with self._operation("insert checkpoint", filename=filename, index=idx):
            await self._conn().execute(
                f"""
                INSERT INTO {CHECKPOINTS_TABLE} (filename, content, idx, md5)
                VALUES (?, ?, ?, ?)
                """,
                (filename, content, idx, checksum),
            )

    async def delete_checkpoints(self, filename: Optional[str] = None) -> None:
        with self._operation("delete checkpoints", filename=filename):
            if filename is None:
                await self._conn().execute(f"DELETE FROM {CHECKPOINTS_TABLE}")
            else:
                await self._conn().execute(
                    f"DELETE FROM {CHECKPOINTS_TABLE} WHERE filename=?", (filename,)
                )

    # ============ Schema upgrades ============

    async def _upgrade_from_v0(self, migrations: Sequence[Migration]) -> None:
        conn = self._conn()

        if await self._table_exists(CHECKPOINTS_TABLE):
            async with conn.execute(f"SELECT COUNT(*) FROM {CHECKPOINTS_TABLE}") as cursor:
                (pending,) = await cursor.fetchone()
            if pending:
                raise SchemaUpgradeFailed(
                    f"cannot upgrade metadata with {pending} unfinished checkpoints; "
                    "finish the interrupted migration with the previous version first"
                )

        async with conn.execute(
            f"SELECT filename, md5, createdat FROM {MIGRATIONS_TABLE}"
        ) as cursor:
            legacy_rows = list(await cursor.fetchall())

        # SQLite cannot drop a UNIQUE constraint or add a NOT NULL column
        # in place, so meta is rebuilt.
        await conn.execute(
            MIGRATIONS_TABLE_SQL.replace(MIGRATIONS_TABLE, "meta_v1", 1)
        )
        for row in legacy_rows:
            content = legacy_content(migrations, row["filename"], row["md5"])
            await conn.execute(
                "INSERT INTO meta_v1 (filename, content, md5, createdat) VALUES (?, ?, ?, ?)",
                (row["filename"], content, row["md5"], row["createdat"]),
            )
        await conn.execute(f"DROP TABLE {MIGRATIONS_TABLE}")
        await conn.execute(f"ALTER TABLE meta_v1 RENAME TO {MIGRATIONS_TABLE}")

        await conn.execute(f"DROP TABLE IF EXISTS {CHECKPOINTS_TABLE}")
        await conn.execute(CHECKPOINTS_TABLE_SQL)

        self._log.info("sqlite_metadata_upgraded", from_version=0, rows=len(legacy_rows))
