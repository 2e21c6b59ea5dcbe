"""
Unit tests for MigrationEngine.

Runs the engine end to end against real SQLite databases in tmp_path.

Tests verify:
- Fresh runs apply every file; repeat runs are no-ops
- Interrupted files resume after the last checkpoint
- Edited, reordered and missing history is rejected
- Adoption records history without executing anything
- Dry runs never execute statements or write history
"""
import sqlite3

import pytest

from sqlmigrate.core.errors import (
    AdoptionWithDryRun,
    CheckpointChecksumMismatch,
    CheckpointOverrun,
    ChecksumMismatch,
    EmptyMigrationFile,
    HistoryReordered,
    MissingMigrations,
    NoMigrationsFound,
    StatementExecutionFailed,
    UnknownAdoptionTarget,
    UnsupportedSchemaVersion,
)
from sqlmigrate.services.checksum import fingerprint
from sqlmigrate.services.engine import EngineState, MigrationEngine
from sqlmigrate.stores.base import CURRENT_SCHEMA_VERSION
from sqlmigrate.stores.sqlite import SQLiteStore

CREATE_USERS = "CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT);"
CREATE_POSTS = (
    "CREATE TABLE posts (id INTEGER PRIMARY KEY, user_id INTEGER);\n"
    "CREATE INDEX posts_user ON posts (user_id);\n"
)
SEED_USERS = "INSERT INTO users (name) VALUES ('ada');\nINSERT INTO users (name) VALUES ('bob');\n"


def tables(db_path: str) -> set[str]:
    conn = sqlite3.connect(db_path)
    try:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    finally:
        conn.close()
    return {name for (name,) in rows}


def query(db_path: str, sql: str) -> list[tuple]:
    conn = sqlite3.connect(db_path)
    try:
        return conn.execute(sql).fetchall()
    finally:
        conn.close()


@pytest.fixture
def standard_migrations(add_migration):
    add_migration("1_users.sql", CREATE_USERS)
    add_migration("2_posts.sql", CREATE_POSTS)
    add_migration("10_seed.sql", SEED_USERS)


class TestMigrate:
    """Tests for full migration runs."""

    @pytest.mark.asyncio
    async def test_applies_all_files_in_order(
        self, sqlite_store, db_path, migrations_dir, standard_migrations
    ):
        engine = MigrationEngine(sqlite_store, migrations_dir)

        assert await engine.migrate() is True

        ctx = engine.context
        assert ctx.state == EngineState.DONE
        assert ctx.executed == ["1_users.sql", "2_posts.sql", "10_seed.sql"]
        assert {"users", "posts", "meta", "metacheckpoints", "metaversion"} <= tables(db_path)
        assert query(db_path, "SELECT COUNT(*) FROM users") == [(2,)]

        migrations = await sqlite_store.list_migrations()
        assert [m.filename for m in migrations] == ["1_users.sql", "2_posts.sql", "10_seed.sql"]
        assert migrations[1].content == CREATE_POSTS
        assert migrations[1].checksum == fingerprint(CREATE_POSTS)
        assert await sqlite_store.list_checkpoints("2_posts.sql") == []

    @pytest.mark.asyncio
    async def test_second_run_is_noop(
        self, sqlite_store, db_path, migrations_dir, standard_migrations
    ):
        """Re-running with no new files changes nothing."""
        await MigrationEngine(sqlite_store, migrations_dir).migrate()

        engine = MigrationEngine(sqlite_store, migrations_dir)
        assert await engine.migrate() is False
        assert engine.context.executed == []
        assert query(db_path, "SELECT COUNT(*) FROM users") == [(2,)]

    @pytest.mark.asyncio
    async def test_appended_file_runs_alone(
        self, sqlite_store, db_path, migrations_dir, standard_migrations, add_migration
    ):
        await MigrationEngine(sqlite_store, migrations_dir).migrate()
        add_migration("11_more.sql", "INSERT INTO users (name) VALUES ('cy');")

        engine = MigrationEngine(sqlite_store, migrations_dir)
        assert await engine.migrate() is True
        assert engine.context.executed == ["11_more.sql"]
        assert query(db_path, "SELECT COUNT(*) FROM users") == [(3,)]

    @pytest.mark.asyncio
    async def test_fresh_database_records_current_version(
        self, sqlite_store, migrations_dir, standard_migrations
    ):
        engine = MigrationEngine(sqlite_store, migrations_dir)
        await engine.migrate()
        assert engine.context.schema_version == CURRENT_SCHEMA_VERSION

    @pytest.mark.asyncio
    async def test_empty_directory_fails(self, sqlite_store, migrations_dir):
        engine = MigrationEngine(sqlite_store, migrations_dir)
        with pytest.raises(NoMigrationsFound):
            await engine.migrate()
        assert engine.context.state == EngineState.FAILED

    @pytest.mark.asyncio
    async def test_file_without_statements_fails(
        self, sqlite_store, migrations_dir, add_migration
    ):
        add_migration("1_empty.sql", "-- nothing yet\n")
        with pytest.raises(EmptyMigrationFile):
            await MigrationEngine(sqlite_store, migrations_dir).migrate()
        assert await sqlite_store.list_migrations() == []

    @pytest.mark.asyncio
    async def test_newer_schema_version_refused(
        self, sqlite_store, migrations_dir, standard_migrations
    ):
        await sqlite_store.ensure_version_table()
        await sqlite_store.update_version(CURRENT_SCHEMA_VERSION + 1)

        with pytest.raises(UnsupportedSchemaVersion):
            await MigrationEngine(sqlite_store, migrations_dir).migrate()


class TestCheckpoints:
    """Tests for statement-level resume."""

    @pytest.mark.asyncio
    async def test_failed_statement_leaves_checkpoints(
        self, sqlite_store, db_path, migrations_dir, add_migration
    ):
        """Statements before the failure stay committed and checkpointed."""
        add_migration(
            "1_partial.sql",
            "CREATE TABLE a (id INTEGER);\nCREATE TABLE b (id INTEGER);\nNOT VALID SQL;\n",
        )
        engine = MigrationEngine(sqlite_store, migrations_dir)

        with pytest.raises(StatementExecutionFailed) as exc_info:
            await engine.migrate()

        err = exc_info.value
        assert err.filename == "1_partial.sql"
        assert err.index == 2
        assert err.statement == "NOT VALID SQL"
        assert isinstance(err.cause, sqlite3.Error)
        assert engine.context.state == EngineState.FAILED

        assert {"a", "b"} <= tables(db_path)
        assert await sqlite_store.list_checkpoints("1_partial.sql") == [
            fingerprint("CREATE TABLE a (id INTEGER)"),
            fingerprint("CREATE TABLE b (id INTEGER)"),
        ]
        assert await sqlite_store.list_migrations() == []

    @pytest.mark.asyncio
    async def test_resume_skips_checkpointed_statements(
        self, sqlite_store, db_path, migrations_dir, add_migration
    ):
        """After fixing the failing statement the file finishes."""
        path = add_migration(
            "1_partial.sql",
            "CREATE TABLE a (id INTEGER);\nCREATE TABLE b (id INTEGER);\nNOT VALID SQL;\n",
        )
        with pytest.raises(StatementExecutionFailed):
            await MigrationEngine(sqlite_store, migrations_dir).migrate()

        # Re-running CREATE TABLE a or b would fail, so success proves they were skipped
        path.write_text(
            "CREATE TABLE a (id INTEGER);\nCREATE TABLE b (id INTEGER);\nCREATE TABLE c (id INTEGER);\n"
        )
        engine = MigrationEngine(sqlite_store, migrations_dir)
        assert await engine.migrate() is True

        assert {"a", "b", "c"} <= tables(db_path)
        assert await sqlite_store.list_checkpoints("1_partial.sql") == []
        migrations = await sqlite_store.list_migrations()
        assert migrations[0].checksum == fingerprint(path.read_bytes())

    @pytest.mark.asyncio
    async def test_crash_after_checkpoint_resumes(
        self, sqlite_store, db_path, migrations_dir, add_migration
    ):
        """A checkpoint written by an interrupted run is honored."""
        add_migration("1_users.sql", "CREATE TABLE users (id INTEGER);\nINSERT INTO users VALUES (1);\n")
        await sqlite_store.ensure_version_table()
        await sqlite_store.ensure_checkpoint_table()
        await sqlite_store.execute("CREATE TABLE users (id INTEGER)")
        await sqlite_store.insert_checkpoint(
            "1_users.sql",
            "CREATE TABLE users (id INTEGER)",
            fingerprint("CREATE TABLE users (id INTEGER)"),
            0,
        )

        await MigrationEngine(sqlite_store, migrations_dir).migrate()

        assert query(db_path, "SELECT id FROM users") == [(1,)]

    @pytest.mark.asyncio
    async def test_changed_checkpointed_statement_rejected(
        self, sqlite_store, migrations_dir, add_migration
    ):
        add_migration("1_users.sql", "CREATE TABLE users (id BIGINT);\nSELECT 1;\n")
        await sqlite_store.ensure_version_table()
        await sqlite_store.ensure_checkpoint_table()
        await sqlite_store.insert_checkpoint(
            "1_users.sql",
            "CREATE TABLE users (id INTEGER)",
            fingerprint("CREATE TABLE users (id INTEGER)"),
            0,
        )

        with pytest.raises(CheckpointChecksumMismatch) as exc_info:
            await MigrationEngine(sqlite_store, migrations_dir).migrate()
        assert exc_info.value.index == 0

    @pytest.mark.asyncio
    async def test_more_checkpoints_than_statements_rejected(
        self, sqlite_store, migrations_dir, add_migration
    ):
        add_migration("1_users.sql", "SELECT 1;")
        await sqlite_store.ensure_version_table()
        await sqlite_store.ensure_checkpoint_table()
        await sqlite_store.insert_checkpoint("1_users.sql", "SELECT 1", fingerprint("SELECT 1"), 0)
        await sqlite_store.insert_checkpoint("1_users.sql", "SELECT 2", fingerprint("SELECT 2"), 1)

        with pytest.raises(CheckpointOverrun):
            await MigrationEngine(sqlite_store, migrations_dir).migrate()

    @pytest.mark.asyncio
    async def test_stray_checkpoints_cleared_after_run(
        self, sqlite_store, migrations_dir, standard_migrations
    ):
        """Checkpoints of files that are not pending are removed at the end."""
        await sqlite_store.ensure_version_table()
        await sqlite_store.ensure_checkpoint_table()
        await sqlite_store.insert_checkpoint("99_gone.sql", "SELECT 1", "x", 0)

        await MigrationEngine(sqlite_store, migrations_dir).migrate()

        assert await sqlite_store.list_checkpoints("99_gone.sql") == []


class TestHistoryChecks:
    """Tests for history validation during a run."""

    @pytest.mark.asyncio
    async def test_edited_applied_file_rejected(
        self, sqlite_store, migrations_dir, standard_migrations
    ):
        await MigrationEngine(sqlite_store, migrations_dir).migrate()
        (migrations_dir / "2_posts.sql").write_text(CREATE_POSTS + "\n")

        engine = MigrationEngine(sqlite_store, migrations_dir)
        with pytest.raises(ChecksumMismatch) as exc_info:
            await engine.migrate()
        assert exc_info.value.filename == "2_posts.sql"
        assert engine.context.state == EngineState.FAILED

    @pytest.mark.asyncio
    async def test_inserted_file_rejected(
        self, sqlite_store, db_path, migrations_dir, standard_migrations, add_migration
    ):
        """A file sorting before applied history is never executed."""
        await MigrationEngine(sqlite_store, migrations_dir).migrate()
        add_migration("3_late.sql", "CREATE TABLE late (id INTEGER);")

        with pytest.raises(HistoryReordered):
            await MigrationEngine(sqlite_store, migrations_dir).migrate()
        assert "late" not in tables(db_path)

    @pytest.mark.asyncio
    async def test_deleted_applied_file_rejected(
        self, sqlite_store, migrations_dir, standard_migrations
    ):
        await MigrationEngine(sqlite_store, migrations_dir).migrate()
        (migrations_dir / "2_posts.sql").unlink()

        with pytest.raises(MissingMigrations) as exc_info:
            await MigrationEngine(sqlite_store, migrations_dir).migrate()
        assert exc_info.value.filenames == ["2_posts.sql"]


class TestAdoption:
    """Tests for skipping ahead on databases built without this tool."""

    @pytest.mark.asyncio
    async def test_adopt_records_without_executing(
        self, sqlite_store, db_path, migrations_dir, standard_migrations
    ):
        # Built by hand before the tool was introduced
        await sqlite_store.execute(CREATE_USERS)
        engine = MigrationEngine(sqlite_store, migrations_dir, adopt_to="2_posts.sql")

        assert await engine.migrate() is True

        # Only the file after the target ran
        assert engine.context.executed == ["10_seed.sql"]
        assert engine.context.start_index == 1
        assert "posts" not in tables(db_path)

    @pytest.mark.asyncio
    async def test_adopt_accepts_path(
        self, sqlite_store, migrations_dir, standard_migrations
    ):
        target = str(migrations_dir / "10_seed.sql")
        engine = MigrationEngine(sqlite_store, migrations_dir, adopt_to=target)

        ctx = await engine.prepare()

        assert ctx.start_index == 2
        assert ctx.pending == []
        migrations = await sqlite_store.list_migrations()
        assert [m.checksum for m in migrations] == [
            fingerprint(CREATE_USERS),
            fingerprint(CREATE_POSTS),
            fingerprint(SEED_USERS),
        ]

    @pytest.mark.asyncio
    async def test_adopt_overwrites_existing_rows(
        self, sqlite_store, migrations_dir, standard_migrations
    ):
        """Adoption refreshes checksums of rows it covers."""
        await sqlite_store.ensure_version_table()
        await sqlite_store.ensure_migration_table()
        await sqlite_store.insert_migration("1_users.sql", "stale", "stale-md5")

        engine = MigrationEngine(sqlite_store, migrations_dir, adopt_to="1_users.sql")
        ctx = await engine.prepare()

        assert ctx.migrations[0].checksum == fingerprint(CREATE_USERS)

    @pytest.mark.asyncio
    async def test_unknown_target_rejected(
        self, sqlite_store, migrations_dir, standard_migrations
    ):
        engine = MigrationEngine(sqlite_store, migrations_dir, adopt_to="7_nope.sql")
        with pytest.raises(UnknownAdoptionTarget):
            await engine.migrate()
        assert await sqlite_store.list_migrations() == []

    @pytest.mark.asyncio
    async def test_adoption_with_dry_run_rejected(
        self, sqlite_store, db_path, migrations_dir, standard_migrations
    ):
        engine = MigrationEngine(sqlite_store, migrations_dir, adopt_to="1_users.sql")
        with pytest.raises(AdoptionWithDryRun):
            await engine.plan()
        assert "meta" not in tables(db_path)


class TestDryRun:
    """Tests for planning without executing."""

    @pytest.mark.asyncio
    async def test_plan_lists_pending(
        self, sqlite_store, db_path, migrations_dir, standard_migrations
    ):
        engine = MigrationEngine(sqlite_store, migrations_dir)

        pending = await engine.plan()

        assert [f.name for f in pending] == ["1_users.sql", "2_posts.sql", "10_seed.sql"]
        assert engine.context.state == EngineState.HISTORY_VALIDATED
        assert "users" not in tables(db_path)
        assert await sqlite_store.list_migrations() == []

    @pytest.mark.asyncio
    async def test_plan_after_migrate_is_empty(
        self, sqlite_store, migrations_dir, standard_migrations
    ):
        await MigrationEngine(sqlite_store, migrations_dir).migrate()
        assert await MigrationEngine(sqlite_store, migrations_dir).plan() == []

    @pytest.mark.asyncio
    async def test_plan_still_validates_history(
        self, sqlite_store, migrations_dir, standard_migrations
    ):
        await MigrationEngine(sqlite_store, migrations_dir).migrate()
        (migrations_dir / "1_users.sql").write_text("CREATE TABLE users (id INTEGER);")

        with pytest.raises(ChecksumMismatch):
            await MigrationEngine(sqlite_store, migrations_dir).plan()


class TestSchemaUpgrade:
    """Tests for runs against legacy metadata."""

    @pytest.mark.asyncio
    async def test_legacy_database_upgraded_before_run(
        self, db_path, migrations_dir, standard_migrations
    ):
        conn = sqlite3.connect(db_path)
        conn.executescript(
            """
            CREATE TABLE meta (
                filename TEXT UNIQUE NOT NULL,
                md5 TEXT UNIQUE NOT NULL,
                createdat TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
            );
            CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT);
            """
        )
        conn.execute(
            "INSERT INTO meta (filename, md5) VALUES (?, ?)",
            ("1_users.sql", fingerprint(CREATE_USERS)),
        )
        conn.commit()
        conn.close()

        async with SQLiteStore(db_path) as store:
            engine = MigrationEngine(store, migrations_dir)
            assert await engine.migrate() is True

            assert engine.context.schema_version == CURRENT_SCHEMA_VERSION
            assert engine.context.executed == ["2_posts.sql", "10_seed.sql"]
            migrations = await store.list_migrations()
            assert migrations[0].content == CREATE_USERS
