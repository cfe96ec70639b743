"""Migration service: ties the migration manager into application startup.

The service adds a once-per-process initialization guard, health
reporting and the startup auto-run policy on top of MigrationManager.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..config import current_environment
from .base import DatabaseError, MigrationError, MigrationStatus, StatusSummary
from .config import AUTO_RUN_ENVIRONMENTS, is_auto_migrate_enabled
from .manager import MigrationManager

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """Outcome of running a batch of pending migrations."""

    success: bool
    migrations_run: int


class MigrationService:
    """Application-facing wrapper around a MigrationManager."""

    def __init__(self, manager: Optional[MigrationManager] = None):
        self._manager = manager
        self._initialized = False

    @property
    def manager(self) -> MigrationManager:
        """The wrapped manager, for callers needing rollback/reset.

        Built from the environment on first access, so a bad setting
        surfaces as MigrationConfigError inside the caller's error
        handling rather than when the service is created.
        """
        if self._manager is None:
            self._manager = MigrationManager()
        return self._manager

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Initialize the manager once per service instance."""
        if self._initialized:
            return

        try:
            await self.manager.initialize()
        except MigrationError:
            raise
        except Exception as e:
            raise DatabaseError(f"Migration service initialization failed: {e}") from e

        self._initialized = True
        logger.info("Migration service initialized")

    async def has_pending_migrations(self) -> bool:
        await self.initialize()
        pending = await self.manager.get_pending_migrations()
        return len(pending) > 0

    async def get_status_summary(self) -> StatusSummary:
        """Counts of applied, pending and failed migrations.

        applied counts SUCCESS records, failed counts FAILED records and
        pending counts everything else, so the three always add up to
        total.
        """
        await self.initialize()
        entries = await self.manager.get_status()

        applied = sum(1 for e in entries if e.status == MigrationStatus.SUCCESS)
        failed = sum(1 for e in entries if e.status == MigrationStatus.FAILED)

        return StatusSummary(
            total=len(entries),
            applied=applied,
            pending=len(entries) - applied - failed,
            failed=failed,
        )

    async def run_pending_migrations(self) -> RunSummary:
        """Run everything pending.

        success is True only if every attempted migration succeeded.
        """
        await self.initialize()

        pending = await self.manager.get_pending_migrations()
        if not pending:
            logger.info("No pending migrations to run")
            return RunSummary(success=True, migrations_run=0)

        logger.info(f"Running {len(pending)} pending migrations...")
        results = await self.manager.migrate()
        success_count = sum(1 for r in results if r.success)

        if success_count == len(results):
            logger.info(f"All {success_count} migrations completed successfully")
            return RunSummary(success=True, migrations_run=success_count)

        logger.warning(f"{success_count}/{len(results)} migrations completed successfully")
        return RunSummary(success=False, migrations_run=success_count)

    async def check_migration_health(self) -> Optional[StatusSummary]:
        """Log the migration state. Never raises.

        Returns:
            The summary, or None if it could not be computed
        """
        try:
            summary = await self.get_status_summary()
        except Exception as e:
            logger.error(f"Migration health check failed: {e}")
            return None

        if summary.pending > 0:
            logger.warning(f"{summary.pending} pending migration(s) found")
            logger.info('Run "stockroom-migrate up" to apply pending migrations')

        if summary.failed > 0:
            logger.error(f"{summary.failed} migration(s) failed")
            logger.info("Check migration logs and fix failed migrations")

        if summary.pending == 0 and summary.failed == 0:
            logger.info(f"Migration health check passed ({summary.applied} applied)")

        return summary

    async def run_on_startup(self) -> Optional[RunSummary]:
        """Startup hook: auto-run migrations only when allowed, else report health.

        Auto-run needs AUTO_MIGRATE=true and a development or test
        APP_ENV, both read now. Never raises.
        """
        try:
            if not is_auto_migrate_enabled():
                await self.check_migration_health()
                return None

            if current_environment() not in AUTO_RUN_ENVIRONMENTS:
                logger.warning("AUTO_MIGRATE is enabled but not in a development environment")
                logger.warning("Migrations will not run automatically here")
                await self.check_migration_health()
                return None

            logger.info("AUTO_MIGRATE enabled - checking for pending migrations...")

            if not await self.has_pending_migrations():
                logger.info("No pending migrations found")
                return RunSummary(success=True, migrations_run=0)

            result = await self.run_pending_migrations()
            if not result.success:
                logger.error("Some migrations failed during auto-run")
                logger.warning("Please check logs and run migrations manually")
            return result

        except Exception as e:
            logger.error(f"Migration startup check failed: {e}")
            logger.warning("Application will continue but database may be out of sync")
            return None

    async def create_migration(
        self,
        name: str,
        description: str = "Auto-generated migration",
    ) -> Path:
        return await self.manager.create_migration(name, description)


_service: Optional[MigrationService] = None


def get_migration_service() -> MigrationService:
    """Process-wide service, built on first use."""
    global _service
    if _service is None:
        _service = MigrationService()
    return _service


def set_migration_service(service: Optional[MigrationService]) -> None:
    """Install an explicitly built service (or None to drop the cached one)."""
    global _service
    _service = service
