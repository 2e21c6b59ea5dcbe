"""
MigrationEngine - drives one run from discovery to completion.

A run moves through a fixed sequence of states:

    INITIALIZING -> SCHEMA_CHECKED -> [ADOPTING] -> HISTORY_VALIDATED
        -> EXECUTING -> DONE

Any error moves the run to FAILED and propagates unchanged. A dry run stops
after HISTORY_VALIDATED and reports the pending files.

Each statement is committed on its own and followed by a checkpoint, so a
run that dies part-way through a file resumes after the last committed
statement. Finishing a file (recording it in history and clearing its
checkpoints) is one atomic unit.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Union

import structlog

from sqlmigrate.core.errors import (
    AdoptionWithDryRun,
    CheckpointChecksumMismatch,
    CheckpointOverrun,
    EmptyMigrationFile,
    MigrateError,
    StatementExecutionFailed,
    UnknownAdoptionTarget,
)
from sqlmigrate.domain.migration import Migration, MigrationFile, decode_content
from sqlmigrate.services.checksum import fingerprint
from sqlmigrate.services.fileset import FileSet
from sqlmigrate.services.history import HistoryValidator
from sqlmigrate.services.schema import SchemaUpgrader
from sqlmigrate.services.statements import split_statements
from sqlmigrate.stores.base import Store

log = structlog.get_logger()


class EngineState(str, Enum):
    """Lifecycle states of a migration run."""

    INITIALIZING = "initializing"
    SCHEMA_CHECKED = "schema_checked"
    ADOPTING = "adopting"
    HISTORY_VALIDATED = "history_validated"
    EXECUTING = "executing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class MigrationContext:
    """Everything one run has learned so far."""

    directory: Path
    state: EngineState = EngineState.INITIALIZING
    files: Optional[FileSet] = None
    schema_version: Optional[int] = None
    migrations: list[Migration] = field(default_factory=list)
    start_index: int = 0
    executed: list[str] = field(default_factory=list)

    @property
    def pending(self) -> list[MigrationFile]:
        """Files beyond recorded history, in execution order."""
        if self.files is None:
            return []
        return list(self.files)[len(self.migrations):]


class MigrationEngine:
    """Applies the migration files of a directory to a store.

    The store must already be open. The engine never opens or closes it.

    Usage:
        async with SQLiteStore("app.db") as store:
            engine = MigrationEngine(store, "migrations")
            changed = await engine.migrate()
    """

    def __init__(
        self,
        store: Store,
        directory: Union[str, Path],
        *,
        adopt_to: Optional[str] = None,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ):
        self._store = store
        self._directory = Path(directory)
        self._adopt_to = adopt_to
        self._log = logger or log.bind(component="engine", backend=store.name)
        self._history = HistoryValidator(self._log)
        self._schema = SchemaUpgrader(store, self._log)
        self._context: Optional[MigrationContext] = None

    @property
    def context(self) -> Optional[MigrationContext]:
        """Context of the most recent run."""
        return self._context

    # ============ Public API ============

    async def prepare(self, dry_run: bool = False) -> MigrationContext:
        """Discover files, check the schema, adopt and validate history.

        Raises:
            AdoptionWithDryRun: If a dry run is combined with adoption.
            MigrateError: Any discovery, schema or integrity failure.
        """
        ctx = MigrationContext(directory=self._directory)
        self._context = ctx
        try:
            if dry_run and self._adopt_to:
                raise AdoptionWithDryRun()

            ctx.files = FileSet.discover(self._directory)

            ctx.schema_version = await self._schema.ensure(ctx.files)
            ctx.state = EngineState.SCHEMA_CHECKED

            if self._adopt_to:
                ctx.state = EngineState.ADOPTING
                ctx.start_index = await self._adopt(ctx.files, self._adopt_to)

            ctx.migrations = await self._store.list_migrations()
            self._history.validate(ctx.files, ctx.migrations, ctx.start_index)
            ctx.state = EngineState.HISTORY_VALIDATED
        except Exception:
            ctx.state = EngineState.FAILED
            raise

        return ctx

    async def plan(self) -> list[MigrationFile]:
        """Dry run: the files a real run would execute, in order."""
        ctx = await self.prepare(dry_run=True)
        for f in ctx.pending:
            self._log.debug("would_migrate", filename=f.name)
        return ctx.pending

    async def migrate(self) -> bool:
        """Apply every pending migration.

        Returns:
            True if at least one file was executed.
        """
        ctx = await self.prepare()
        ctx.state = EngineState.EXECUTING
        try:
            for f in ctx.pending:
                await self._migrate_file(f)
                ctx.executed.append(f.name)
                self._log.info("migration_applied", filename=f.name)

            await self._store.delete_checkpoints()
        except Exception:
            ctx.state = EngineState.FAILED
            raise

        ctx.state = EngineState.DONE
        self._log.info("migrate_complete", executed=len(ctx.executed))
        return bool(ctx.executed)

    # ============ Steps ============

    async def _adopt(self, files: FileSet, target: str) -> int:
        """Record every file up to and including ``target`` as applied.

        ``target`` may be a path; only its base name is used.

        Returns:
            Index of the target file, where history validation starts.
        """
        name = Path(target).name
        index = files.index_of(name)
        if index is None:
            raise UnknownAdoptionTarget(name)

        async with self._store.transaction():
            for f in list(files)[: index + 1]:
                data = f.read()
                await self._store.upsert_migration(
                    f.name, decode_content(f.name, data), fingerprint(data)
                )

        self._log.info("adopted_migrations", target=name, count=index + 1)
        return index

    async def _migrate_file(self, f: MigrationFile) -> None:
        """Run one file statement by statement, resuming from checkpoints."""
        data = f.read()
        content = decode_content(f.name, data)
        statements = split_statements(content)
        if not statements:
            raise EmptyMigrationFile(f.name)

        checkpoints = await self._store.list_checkpoints(f.name)
        if checkpoints:
            self._log.info("checkpoints_found", filename=f.name, count=len(checkpoints))
        if len(checkpoints) >= len(statements):
            raise CheckpointOverrun(f.name, len(checkpoints), len(statements))

        for idx, statement in enumerate(statements):
            checksum = fingerprint(statement)

            if idx < len(checkpoints):
                if checkpoints[idx] != checksum:
                    raise CheckpointChecksumMismatch(f.name, idx)
                continue

            try:
                await self._store.execute(statement)
            except MigrateError:
                raise
            except Exception as e:
                self._log.error(
                    "statement_failed",
                    filename=f.name,
                    index=idx,
                    error=str(e),
                )
                raise StatementExecutionFailed(f.name, idx, statement, e) from e

            await self._store.insert_checkpoint(f.name, statement, checksum, idx)
            self._log.debug("statement_executed", filename=f.name, index=idx)

        async with self._store.transaction():
            await self._store.delete_checkpoints(f.name)
            await self._store.insert_migration(f.name, content, fingerprint(data))
