"""
Unit tests for store construction, TLS settings and MySQL statement execution.
"""
import ssl
from unittest.mock import AsyncMock, MagicMock

import pytest

from sqlmigrate.core.errors import ConfigError
from sqlmigrate.stores import StoreSettings, TLSSettings, create_store
from sqlmigrate.stores.sqlite import SQLiteStore
from sqlmigrate.stores.tls import load_ssl_context, mysql_ssl_options


class TestCreateStore:
    """Tests for the backend factory."""

    def test_sqlite(self, db_path):
        store = create_store(StoreSettings(kind="sqlite", name=db_path))
        assert isinstance(store, SQLiteStore)
        assert store.db_path == db_path
        assert not store.is_connected

    def test_postgres_defaults(self):
        from sqlmigrate.stores.postgres import PostgresStore

        store = create_store(StoreSettings(kind="postgres", name="app", password="pw"))
        assert isinstance(store, PostgresStore)
        assert store.name == "postgres"
        assert store._user == "postgres"
        assert store._port == 5432
        assert store._host == "127.0.0.1"

    def test_mysql_defaults(self):
        from sqlmigrate.stores.mysql import MySQLStore

        store = create_store(StoreSettings(kind="mysql", name="app", port=3307))
        assert isinstance(store, MySQLStore)
        assert store._user == "root"
        assert store._port == 3307

    def test_unknown_kind(self):
        with pytest.raises(ConfigError, match="unknown db type oracle"):
            create_store(StoreSettings(kind="oracle", name="app"))


class TestTLSSettings:
    """Tests for TLS option handling."""

    def test_enabled_by_any_setting(self):
        assert not TLSSettings().enabled
        assert TLSSettings(ca="ca.pem").enabled
        assert TLSSettings(server_name="db.internal").enabled

    def test_mysql_options(self):
        options = mysql_ssl_options(
            TLSSettings(key="k.pem", cert="c.pem", ca="ca.pem", server_name="db")
        )
        assert options == {
            "ssl_disabled": False,
            "ssl_ca": "ca.pem",
            "ssl_verify_cert": True,
            "ssl_cert": "c.pem",
            "ssl_key": "k.pem",
            "ssl_verify_identity": True,
        }

    def test_key_without_cert_rejected(self):
        with pytest.raises(ConfigError):
            mysql_ssl_options(TLSSettings(key="k.pem"))
        with pytest.raises(ConfigError):
            load_ssl_context(TLSSettings(cert="c.pem"))

    def test_unreadable_ca_rejected(self, tmp_path):
        with pytest.raises(ConfigError) as exc_info:
            load_ssl_context(TLSSettings(ca=str(tmp_path / "missing.pem")))
        assert exc_info.value.cause is not None

    def test_default_context_verifies(self):
        context = load_ssl_context(TLSSettings(server_name="db"))
        assert isinstance(context, ssl.SSLContext)
        assert context.verify_mode == ssl.CERT_REQUIRED
        assert context.check_hostname


class FakeCursor:
    """Cursor that refuses to close with rows left unread."""

    def __init__(self, rows):
        self._rows = rows
        self.executed = []
        self.with_rows = False
        self.rowcount = -1

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        if self.with_rows and self._rows:
            raise RuntimeError("Unread result found")

    async def execute(self, query, params=None):
        self.executed.append((query, params))
        self.with_rows = bool(self._rows)

    async def fetchall(self):
        rows, self._rows = self._rows, []
        self.rowcount = len(rows)
        return rows


class TestMySQLExecute:
    """Tests for running migration statements on a MySQL connection."""

    @pytest.fixture
    def store(self):
        from sqlmigrate.stores.mysql import MySQLStore

        return MySQLStore(database="app")

    def connect(self, store, cursor):
        connection = MagicMock()
        connection.cursor = AsyncMock(return_value=cursor)
        store._connection = connection

    @pytest.mark.asyncio
    async def test_statement_returning_rows_is_drained(self, store):
        cursor = FakeCursor([(1,)])
        self.connect(store, cursor)

        await store.execute("SELECT 1")

        assert cursor.executed == [("SELECT 1", None)]
        assert cursor._rows == []

    @pytest.mark.asyncio
    async def test_statement_without_rows(self, store):
        cursor = FakeCursor([])
        self.connect(store, cursor)

        await store.execute("UPDATE t SET pct = '5%'")

        assert cursor.executed == [("UPDATE t SET pct = '5%'", None)]
