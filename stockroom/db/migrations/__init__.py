"""Versioned, reversible migrations for the Stockroom document store.

Usage:
    from stockroom.db.migrations import MigrationService

    service = MigrationService()
    await service.run_on_startup()  # health check, or auto-run in development

    manager = service.manager
    results = await manager.migrate()
    await manager.rollback("Add Product Analytics Fields")

CLI Usage:
    stockroom-migrate up [--dry-run]
    stockroom-migrate status
    stockroom-migrate down <name>
    stockroom-migrate reset --yes
    stockroom-migrate create <name> [--description TEXT]
    stockroom-migrate validate

Environment Variables:
    AUTO_MIGRATE: true to apply pending migrations at startup
    APP_ENV: development/test allow AUTO_MIGRATE; anything else does not
    MIGRATIONS_TIMEOUT_MS: Per-migration timeout (default 60000)
"""

from .base import (
    BaseMigration,
    DatabaseError,
    MigrationConfigError,
    MigrationContext,
    MigrationError,
    MigrationFileInfo,
    MigrationLoadError,
    MigrationRecord,
    MigrationResult,
    MigrationStatus,
    MigrationStatusEntry,
    MigrationTimeoutError,
    StatusSummary,
)
from .config import MigrationConfig
from .manager import MigrationManager
from .records import RecordStore, RecordTransaction, SurrealRecordStore
from .registry import MigrationRegistry, discover_migrations
from .service import (
    MigrationService,
    RunSummary,
    get_migration_service,
    set_migration_service,
)
from .utils import generate_checksum, generate_version

__all__ = [
    # Definitions and results
    "BaseMigration",
    "MigrationContext",
    "MigrationFileInfo",
    "MigrationRecord",
    "MigrationResult",
    "MigrationStatus",
    "MigrationStatusEntry",
    "StatusSummary",
    # Errors
    "DatabaseError",
    "MigrationError",
    "MigrationConfigError",
    "MigrationLoadError",
    "MigrationTimeoutError",
    # Engine
    "MigrationConfig",
    "MigrationManager",
    "MigrationRegistry",
    "discover_migrations",
    "RecordStore",
    "RecordTransaction",
    "SurrealRecordStore",
    # Service
    "MigrationService",
    "RunSummary",
    "get_migration_service",
    "set_migration_service",
    # Utilities
    "generate_checksum",
    "generate_version",
]
