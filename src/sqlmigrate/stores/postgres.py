"""Postgres store - metadata and migrations on an asyncpg connection.

Outside ``transaction()`` asyncpg runs each statement in its own implicit
transaction, which gives the statement-by-statement commits checkpoints rely
on. Postgres DDL is transactional, so schema upgrades roll back cleanly.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Sequence

import asyncpg
import structlog

from sqlmigrate.core.errors import SchemaUpgradeFailed, StoreConnectionError
from sqlmigrate.domain.migration import Migration
from sqlmigrate.stores.base import (
    CHECKPOINTS_TABLE,
    CURRENT_SCHEMA_VERSION,
    MIGRATIONS_TABLE,
    VERSION_TABLE,
    Store,
    TLSSettings,
    legacy_content,
)
from sqlmigrate.stores.tls import load_ssl_context

log = structlog.get_logger()

DEFAULT_PORT = 5432
DEFAULT_USER = "postgres"

MIGRATIONS_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} (
    filename TEXT UNIQUE NOT NULL,
    md5 TEXT NOT NULL,
    content TEXT NOT NULL,
    createdat TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc')
)
"""

CHECKPOINTS_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS {CHECKPOINTS_TABLE} (
    filename TEXT NOT NULL,
    content TEXT NOT NULL,
    idx INTEGER NOT NULL,
    md5 TEXT NOT NULL,
    createdat TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc'),
    PRIMARY KEY (filename, idx)
)
"""

VERSION_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS {VERSION_TABLE} (
    version INTEGER NOT NULL
)
"""


class PostgresStore(Store):
    """Migration metadata in a Postgres database."""

    driver_errors = (asyncpg.PostgresError, asyncpg.InterfaceError)

    def __init__(
        self,
        database: str,
        user: str = DEFAULT_USER,
        password: Optional[str] = None,
        host: str = "127.0.0.1",
        port: int = DEFAULT_PORT,
        tls: Optional[TLSSettings] = None,
    ):
        self._database = database
        self._user = user
        self._password = password
        self._host = host
        self._port = port
        self._tls = tls
        self._connection: Optional[asyncpg.Connection] = None
        self._log = log.bind(component="postgres_store", database=database)

    @property
    def name(self) -> str:
        return "postgres"

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed()

    async def open(self) -> None:
        if self.is_connected:
            return

        ssl_context = load_ssl_context(self._tls) if self._tls and self._tls.enabled else False
        try:
            self._connection = await asyncpg.connect(
                host=self._host,
                port=self._port,
                user=self._user,
                password=self._password,
                database=self._database,
                ssl=ssl_context,
            )
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise StoreConnectionError(
                f"connect to postgres {self._host}:{self._port}/{self._database}", e
            ) from e

        self._log.debug("postgres_connected", host=self._host, tls=bool(ssl_context))

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    def _conn(self) -> asyncpg.Connection:
        if self._connection is None:
            raise RuntimeError("Postgres store not connected")
        return self._connection

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        async with self._conn().transaction():
            yield

    async def execute(self, statement: str) -> Any:
        return await self._conn().execute(statement)

    async def _table_exists(self, table: str) -> bool:
        return bool(
            await self._conn().fetchval(
                """
                SELECT EXISTS (
                    SELECT 1 FROM information_schema.tables
                    WHERE table_schema = current_schema() AND table_name = $1
                )
                """,
                table,
            )
        )

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
            version = await self._conn().fetchval(
                f"SELECT version FROM {VERSION_TABLE} LIMIT 1"
            )
            if version is not None:
                return int(version)

            if await self._table_exists(MIGRATIONS_TABLE):
                return 0

        await self.update_version(initial_version)
        return initial_version

    async def update_version(self, version: int) -> None:
        with self._operation("update version"):
            async with self._conn().transaction():
                await self._conn().execute(f"DELETE FROM {VERSION_TABLE}")
                await self._conn().execute(
                    f"INSERT INTO {VERSION_TABLE} (version) VALUES ($1)", version
                )

    # ============ Migrations ============

    async def list_migrations(self) -> list[Migration]:
        query = f"""
            SELECT filename, content, md5 FROM {MIGRATIONS_TABLE}
            ORDER BY CAST(substring(filename FROM '^[0-9]+') AS NUMERIC), filename
        """
        with self._operation("get migrations"):
            rows = await self._conn().fetch(query)
        return [
            Migration(filename=r["filename"], content=r["content"], checksum=r["md5"])
            for r in rows
        ]

    async def insert_migration(self, filename: str, content: str, checksum: str) -> None:
        with self._operation("insert migration", filename=filename):
            await self._conn().execute(
                f"INSERT INTO {MIGRATIONS_TABLE} (filename, content, md5) VALUES ($1, $2, $3)",
                filename,
                content,
                checksum,
            )

    async def upsert_migration(self, filename: str, content: str, checksum: str) -> None:
        with self._operation("upsert migration", filename=filename):
            await self._conn().execute(
                f"""
                INSERT INTO {MIGRATIONS_TABLE} (filename, content, md5) VALUES ($1, $2, $3)
                ON CONFLICT (filename) DO UPDATE
                SET md5 = EXCLUDED.md5, content = EXCLUDED.content
                """,
                filename,
                content,
                checksum,
            )

    # ============ Checkpoints ============

    async def list_checkpoints(self, filename: str) -> list[str]:
        with self._operation("get checkpoints", filename=filename):
            rows = await self._conn().fetch(
                f"SELECT md5 FROM {CHECKPOINTS_TABLE} WHERE filename = $1 ORDER BY idx",
                filename,
            )
        return [r["md5"] for r in rows]

    async def insert_checkpoint(
        self, filename: str, content: str, checksum: str, idx: int
    ) -> None:
        with self._operation("insert checkpoint", filename=filename, index=idx):
            await self._conn().execute(
                f"""
                INSERT INTO {CHECKPOINTS_TABLE} (filename, content, idx, md5)
                VALUES ($1, $2, $3, $4)
                """,
                filename,
                content,
                idx,
                checksum,
            )

    async def delete_checkpoints(self, filename: Optional[str] = None) -> None:
        with self._operation("delete checkpoints", filename=filename):
            if filename is None:
                await self._conn().execute(f"DELETE FROM {CHECKPOINTS_TABLE}")
            else:
                await self._conn().execute(
                    f"DELETE FROM {CHECKPOINTS_TABLE} WHERE filename = $1", filename
                )

    # ============ Schema upgrades ============

    async def _upgrade_from_v0(self, migrations: Sequence[Migration]) -> None:
        conn = self._conn()

        if await self._table_exists(CHECKPOINTS_TABLE):
            pending = await conn.fetchval(f"SELECT COUNT(*) FROM {CHECKPOINTS_TABLE}")
            if pending:
                raise SchemaUpgradeFailed(
                    f"cannot upgrade metadata with {pending} unfinished checkpoints; "
                    "finish the interrupted migration with the previous version first"
                )

        legacy_rows = await conn.fetch(f"SELECT filename, md5 FROM {MIGRATIONS_TABLE}")

        await conn.execute(
            f"ALTER TABLE {MIGRATIONS_TABLE} DROP CONSTRAINT IF EXISTS {MIGRATIONS_TABLE}_md5_key"
        )
        await conn.execute(f"ALTER TABLE {MIGRATIONS_TABLE} ADD COLUMN content TEXT")
        for row in legacy_rows:
            content = legacy_content(migrations, row["filename"], row["md5"])
            await conn.execute(
                f"UPDATE {MIGRATIONS_TABLE} SET content = $1 WHERE filename = $2",
                content,
                row["filename"],
            )
        await conn.execute(
            f"ALTER TABLE {MIGRATIONS_TABLE} ALTER COLUMN content SET NOT NULL"
        )

        await conn.execute(f"DROP TABLE IF EXISTS {CHECKPOINTS_TABLE}")
        await conn.execute(CHECKPOINTS_TABLE_SQL)

        self._log.info("postgres_metadata_upgraded", from_version=0, rows=len(legacy_rows))
