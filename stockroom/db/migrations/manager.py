"""Migration manager: ordering, execution, rollback and status.

Execution protocol for a single migration:

1. Open a transaction scope on the record store.
2. Buffer a PENDING record inside it.
3. Race up() against the configured timeout.
4. On success buffer the SUCCESS update and commit.
5. On failure abort the scope, then upsert a FAILED record outside of
   it so the failure is never lost.
6. The scope is released whatever happens.

Migration bodies may do things the store cannot roll back (index builds,
bulk rewrites), so the guarantees are about bookkeeping: no false
SUCCESS record, a FAILED record for every failure, and strictly ordered,
fail-fast batches.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import replace
from pathlib import Path
from typing import Optional

from ..connection import open_connection
from .base import (
    BaseMigration,
    DatabaseError,
    MigrationContext,
    MigrationError,
    MigrationFileInfo,
    MigrationRecord,
    MigrationResult,
    MigrationStatus,
    MigrationStatusEntry,
    MigrationTimeoutError,
)
from .config import MigrationConfig
from .records import ConnectFactory, RecordStore, SurrealRecordStore
from .registry import MigrationRegistry, discover_migrations
from .templates import render_migration_template
from .utils import generate_checksum, generate_version, parse_migration_filename, slugify

logger = logging.getLogger(__name__)


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


def _elapsed_ms(start: float) -> int:
    return int((time.time() - start) * 1000)


class MigrationManager:
    """Runs, tracks and reverts migrations against one database."""

    def __init__(
        self,
        config: Optional[MigrationConfig] = None,
        project_name: Optional[str] = None,
        registry: Optional[MigrationRegistry] = None,
        store: Optional[RecordStore] = None,
        connect: ConnectFactory = open_connection,
    ):
        """Initialize the manager.

        Args:
            config: Engine settings (read from the environment if omitted)
            project_name: Project whose database holds the data and ledger
            registry: Pre-built registry; skips package discovery
            store: Record store (SurrealDB table named by the config if omitted,
                using the shared connection pool)
            connect: Connection factory handed to migration bodies. Bodies get
                a dedicated connection by default: a timed-out body keeps
                running and must not starve the record store's pool.
        """
        self.config = config or MigrationConfig()
        self.project_name = project_name
        self.store = store or SurrealRecordStore(self.config.collection_name, project_name)
        self._connect = connect
        self._provided_registry = registry
        self._registry: Optional[MigrationRegistry] = None
        self._checksums: dict[str, str] = {}
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._background: set[asyncio.Future] = set()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def registry(self) -> MigrationRegistry:
        """Loaded definitions (loads them on first access)."""
        return self.load_definitions()

    @property
    def background_tasks(self) -> frozenset:
        """Timed-out migration bodies that are still running."""
        return frozenset(self._background)

    async def initialize(self) -> None:
        """Ensure the records collection exists and load definitions.

        Idempotent: only the first call does any work.

        Raises:
            DatabaseError: If the record store is unreachable
            MigrationLoadError: If a definition is malformed or duplicated
        """
        async with self._init_lock:
            if self._initialized:
                return

            logger.info("Initializing migration system...")

            try:
                await self.store.ensure_collection()
            except Exception as e:
                logger.error(f"Failed to initialize migration system: {e}")
                raise DatabaseError(f"Migration initialization failed: {e}") from e

            self.load_definitions()
            self._initialized = True

            if self.config.validate_checksums:
                await self._report_checksum_drift()

            logger.info("Migration system initialized successfully")

    def _load_migrations(self) -> MigrationRegistry:
        if self._provided_registry is not None:
            return self._provided_registry
        return discover_migrations(self.config.migrations_package)

    def load_definitions(self) -> MigrationRegistry:
        """Load migration definitions without touching the store."""
        if self._registry is None:
            registry = self._load_migrations()
            self._checksums = {m.name: m.get_checksum() for m in registry.get_all()}
            self._registry = registry
            for migration in registry.get_all():
                logger.debug(f"Loaded migration: {migration.name} (v{migration.version})")
        return self._registry

    def checksum_of(self, migration: BaseMigration) -> str:
        """Checksum recorded for a definition."""
        checksum = self._checksums.get(migration.name)
        if checksum is None:
            checksum = self._checksums[migration.name] = migration.get_checksum()
        return checksum

    async def _find_drift(self) -> list[str]:
        registry = self.load_definitions()
        try:
            records = await self.store.find_by_status(MigrationStatus.SUCCESS)
        except Exception as e:
            raise DatabaseError(f"Failed to read migration checksums: {e}") from e

        drifted = []
        for record in records:
            migration = registry.get(record.name)
            if migration and record.checksum and record.checksum != self.checksum_of(migration):
                drifted.append(record.name)
        return drifted

    async def _report_checksum_drift(self) -> None:
        try:
            drifted = await self._find_drift()
        except DatabaseError as e:
            logger.warning(f"Could not verify migration checksums: {e}")
            return
        for name in drifted:
            logger.warning(f"Migration '{name}' has changed on disk since it was applied")

    async def verify_checksums(self) -> list[str]:
        """Names of applied migrations whose source changed since they ran."""
        await self.initialize()
        return await self._find_drift()

    async def get_status(self) -> list[MigrationStatusEntry]:
        """Status of every known migration, ascending by version.

        Includes records whose definition no longer exists (orphaned).
        """
        await self.initialize()
        registry = self.load_definitions()

        try:
            records = await self.store.find_all()
        except Exception as e:
            raise DatabaseError(f"Failed to get migration status: {e}") from e

        by_name = {record.name: record for record in records}
        entries: list[MigrationStatusEntry] = []

        for migration in registry.get_all():
            record = by_name.get(migration.name)
            if record is None:
                entries.append(
                    MigrationStatusEntry(
                        name=migration.name,
                        version=migration.version,
                        description=migration.description,
                        applied=False,
                        status=MigrationStatus.PENDING,
                    )
                )
                continue

            drifted = (
                self.config.validate_checksums
                and record.status == MigrationStatus.SUCCESS
                and bool(record.checksum)
                and record.checksum != self.checksum_of(migration)
            )
            entries.append(
                MigrationStatusEntry(
                    name=migration.name,
                    version=migration.version,
                    description=migration.description,
                    applied=record.status == MigrationStatus.SUCCESS,
                    status=record.status,
                    applied_at=record.applied_at,
                    error_message=record.error_message,
                    checksum_mismatch=drifted,
                )
            )

        for record in records:
            if record.name in registry:
                continue
            entries.append(
                MigrationStatusEntry(
                    name=record.name,
                    version=record.version,
                    description=record.description,
                    applied=record.status == MigrationStatus.SUCCESS,
                    status=record.status,
                    applied_at=record.applied_at,
                    error_message=record.error_message,
                    orphaned=True,
                )
            )

        return sorted(entries, key=lambda entry: (entry.version, entry.name))

    async def get_pending_migrations(self) -> list[BaseMigration]:
        """Definitions without a SUCCESS record, ascending by version."""
        await self.initialize()
        registry = self.load_definitions()

        try:
            applied = await self.store.find_by_status(MigrationStatus.SUCCESS)
        except Exception as e:
            raise DatabaseError(f"Failed to get pending migrations: {e}") from e

        applied_names = {record.name for record in applied}
        return [m for m in registry.get_all() if m.name not in applied_names]

    async def migrate(self) -> list[MigrationResult]:
        """Run pending migrations in order, stopping at the first failure.

        Returns:
            One result per migration actually attempted
        """
        logger.info("Starting database migration...")

        pending = await self.get_pending_migrations()
        if not pending:
            logger.info("No pending migrations found")
            return []

        logger.info(f"Found {len(pending)} pending migrations")

        results: list[MigrationResult] = []
        for migration in pending:
            result = await self._run_single_migration(migration)
            results.append(result)

            if not result.success:
                logger.error(f"Migration {migration.name} failed, stopping execution")
                break

        success_count = sum(1 for r in results if r.success)
        logger.info(f"Migration completed: {success_count}/{len(results)} successful")
        return results

    async def _run_single_migration(self, migration: BaseMigration) -> MigrationResult:
        logger.info(f"Running migration: {migration.name} (v{migration.version})")

        record = MigrationRecord(
            name=migration.name,
            version=migration.version,
            description=migration.description,
            status=MigrationStatus.PENDING,
            checksum=self.checksum_of(migration),
        )
        start = time.time()

        try:
            async with self.store.transaction() as tx:
                tx.insert(record)
                await self._run_with_timeout(self._invoke(migration.up), "Migration timeout")
                execution_time_ms = _elapsed_ms(start)
                tx.update(
                    replace(
                        record,
                        status=MigrationStatus.SUCCESS,
                        execution_time_ms=execution_time_ms,
                    )
                )
                await tx.commit()
        except Exception as e:
            # The scope is aborted and released by the time we get here.
            execution_time_ms = _elapsed_ms(start)
            error = _error_message(e)
            await self._record_failure(record, error, execution_time_ms)
            logger.error(f"Migration {migration.name} failed: {error}")
            return MigrationResult(
                success=False,
                execution_time_ms=execution_time_ms,
                error=error,
                name=migration.name,
            )

        logger.info(f"Migration {migration.name} completed in {execution_time_ms}ms")
        return MigrationResult(
            success=True,
            execution_time_ms=execution_time_ms,
            name=migration.name,
        )

    async def _record_failure(self, record: MigrationRecord, error: str, execution_time_ms: int) -> None:
        failed = replace(
            record,
            status=MigrationStatus.FAILED,
            execution_time_ms=execution_time_ms,
            error_message=error,
        )
        try:
            await asyncio.wait_for(self.store.upsert(failed), timeout=self.config.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                f"Failed to update migration record for {record.name}: "
                f"store did not answer within {self.config.timeout_ms}ms"
            )
        except Exception as e:
            logger.warning(f"Failed to update migration record for {record.name}: {e}")

    async def _invoke(self, operation: Callable[[MigrationContext], Awaitable[None]]) -> None:
        async with self._connect(self.project_name) as conn:
            await operation(MigrationContext(conn=conn, project_name=self.project_name))

    async def _run_with_timeout(self, body: Awaitable[None], timeout_message: str) -> None:
        """Race a migration body against the configured timeout.

        On expiry the body is left running in the background unless
        cancel_on_timeout is set; either way MigrationTimeoutError is raised
        immediately.
        """
        task = asyncio.ensure_future(body)
        try:
            done, _ = await asyncio.wait({task}, timeout=self.config.timeout_seconds)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task in done:
            task.result()
            return

        if self.config.cancel_on_timeout:
            task.cancel()
        else:
            self._background.add(task)
            task.add_done_callback(self._background_done)

        raise MigrationTimeoutError(timeout_message)

    def _background_done(self, task: asyncio.Future) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Timed-out migration body failed after its timeout: {_error_message(error)}")
        else:
            logger.warning(
                "Timed-out migration body finished after its timeout; "
                "its changes were applied but it remains recorded as FAILED"
            )

    async def rollback(self, name: str) -> MigrationResult:
        """Roll back one applied migration.

        Never raises for rollback problems: a missing definition, a
        record that is not SUCCESS, a failing or timed-out down() all come
        back as an unsuccessful result with the record left untouched.
        """
        await self.initialize()
        registry = self.load_definitions()

        logger.info(f"Rolling back migration: {name}")
        start = time.time()

        try:
            migration = registry.get(name)
            if migration is None:
                raise MigrationError(f"Migration {name} not found")

            record = await self.store.find_one(name)
            if record is None or record.status != MigrationStatus.SUCCESS:
                raise MigrationError(f"Migration {name} is not applied or failed")

            async with self.store.transaction() as tx:
                await self._run_with_timeout(self._invoke(migration.down), "Rollback timeout")
                tx.delete(name)
                await tx.commit()
        except Exception as e:
            error = _error_message(e)
            logger.error(f"Rollback {name} failed: {error}")
            return MigrationResult(
                success=False,
                execution_time_ms=_elapsed_ms(start),
                error=error,
                name=name,
            )

        execution_time_ms = _elapsed_ms(start)
        logger.info(f"Rollback {name} completed in {execution_time_ms}ms")
        return MigrationResult(success=True, execution_time_ms=execution_time_ms, name=name)

    async def reset(self) -> list[MigrationResult]:
        """Roll back every applied migration, most recently applied first.

        Records whose definition no longer exists are deleted with a
        warning. Stops at the first failed rollback or record removal.

        Returns:
            One result per rollback attempted
        """
        await self.initialize()
        registry = self.load_definitions()

        logger.warning("Resetting all migrations...")

        try:
            applied = await self.store.find_by_status(MigrationStatus.SUCCESS)
        except Exception as e:
            raise DatabaseError(f"Failed to reset migrations: {e}") from e

        results: list[MigrationResult] = []
        for record in reversed(applied):
            if record.name not in registry:
                logger.warning(
                    f"Migration file not found for {record.name}, removing record only"
                )
                start = time.time()
                try:
                    await self.store.delete(record.name)
                except Exception as e:
                    error = f"Failed to remove orphaned record {record.name}: {_error_message(e)}"
                    logger.error(f"Reset stopped: {error}")
                    results.append(
                        MigrationResult(
                            success=False,
                            execution_time_ms=_elapsed_ms(start),
                            error=error,
                            name=record.name,
                        )
                    )
                    return results
                continue

            result = await self.rollback(record.name)
            results.append(result)
            if not result.success:
                logger.error(f"Reset stopped: rollback of {record.name} failed")
                return results

        logger.info("All migrations have been reset")
        return results

    async def create_migration(self, name: str, description: str) -> Path:
        """Write a new migration module from the template.

        Returns:
            Path of the created file
        """
        slug = slugify(name)
        if not slug:
            raise MigrationError(f"Migration name {name!r} has no usable characters")

        directory = self.config.resolve_migrations_path()
        if directory is None:
            raise MigrationError(
                f"Cannot locate migrations directory for package {self.config.migrations_package}"
            )

        version = generate_version()
        path = directory / f"{version}_{slug}.py"
        if path.exists():
            raise MigrationError(f"Migration file already exists: {path}")

        try:
            directory.mkdir(parents=True, exist_ok=True)
            path.write_text(
                render_migration_template(name, version, description),
                encoding="utf-8",
            )
        except OSError as e:
            raise MigrationError(f"Failed to create migration: {e}") from e

        logger.info(f"Created migration file: {path.name}")
        return path

    def get_migration_files(self) -> list[MigrationFileInfo]:
        """Migration files on disk with their content checksums.

        Names and descriptions come from the loaded definitions when the
        file defines one, otherwise from the filename.
        """
        directory = self.config.resolve_migrations_path()
        if directory is None or not directory.is_dir():
            logger.warning(f"Migrations directory not found: {directory}")
            return []

        by_path: dict[Path, BaseMigration] = {}
        for migration in self.load_definitions().get_all():
            source = migration.source_path
            if source is not None:
                by_path[source.resolve()] = migration

        infos = []
        for path in directory.glob("*.py"):
            parsed = parse_migration_filename(path.name)
            if parsed is None:
                continue

            version, slug = parsed
            migration = by_path.get(path.resolve())
            infos.append(
                MigrationFileInfo(
                    filename=path.name,
                    version=version,
                    name=migration.name if migration else slug.replace("_", " "),
                    description=migration.description if migration else "",
                    checksum=generate_checksum(path.read_text(encoding="utf-8")),
                    file_path=path,
                )
            )

        return sorted(infos, key=lambda info: (info.version, info.filename))
