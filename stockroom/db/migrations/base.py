"""Base classes for the migration system.

Defines the core abstractions:
- BaseMigration: Abstract base class every migration subclasses
- MigrationContext: Context passed to migration up/down methods
- MigrationRecord: Persisted ledger row for one migration
- MigrationStatusEntry: Derived join of a definition and its record
- MigrationResult: Outcome of one attempted migration or rollback
- The migration error hierarchy
"""

import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from ..connection import Connection
from .utils import generate_checksum, parse_migration_filename, slugify

logger = logging.getLogger(__name__)


class MigrationError(Exception):
    """Base exception for migration errors."""

    pass


class MigrationLoadError(MigrationError):
    """A migration definition could not be loaded or failed validation."""

    pass


class MigrationConfigError(MigrationError, ValueError):
    """Migration settings (usually from the environment) are invalid."""

    pass


class MigrationTimeoutError(MigrationError):
    """A migration body did not finish within the configured timeout."""

    pass


class DatabaseError(MigrationError):
    """The record store could not be reached or refused an operation.

    The underlying driver error is kept as __cause__.
    """

    pass


class MigrationStatus(str, Enum):
    """Persisted status of a migration record."""

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass
class MigrationRecord:
    """One row of the migrations ledger."""

    name: str
    version: str
    description: str
    status: MigrationStatus = MigrationStatus.PENDING
    checksum: str = ""
    execution_time_ms: int = 0
    applied_at: Optional[datetime] = None
    error_message: Optional[str] = None

    def to_document(self) -> dict[str, Any]:
        """Field-exact document for the store.

        appliedAt is left out when unset so the store's default
        (creation time) applies.
        """
        doc: dict[str, Any] = {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "executionTimeMs": self.execution_time_ms,
            "checksum": self.checksum,
            "status": self.status.value,
            "errorMessage": self.error_message,
        }
        if self.applied_at is not None:
            doc["appliedAt"] = self.applied_at
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "MigrationRecord":
        """Build a record from a stored document."""
        return cls(
            name=doc["name"],
            version=doc.get("version", ""),
            description=doc.get("description", ""),
            status=MigrationStatus(doc.get("status", MigrationStatus.PENDING.value)),
            checksum=doc.get("checksum") or "",
            execution_time_ms=int(doc.get("executionTimeMs") or 0),
            applied_at=_coerce_datetime(doc.get("appliedAt")),
            error_message=doc.get("errorMessage"),
        )


def _coerce_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    inner = getattr(value, "dt", None)
    if isinstance(inner, datetime):
        return inner
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logger.debug(f"Unparseable appliedAt value: {value!r}")
        return None


@dataclass
class MigrationStatusEntry:
    """Status of one migration, derived from definition and record."""

    name: str
    version: str
    description: str
    applied: bool
    status: MigrationStatus
    applied_at: Optional[datetime] = None
    error_message: Optional[str] = None
    orphaned: bool = False
    checksum_mismatch: bool = False


@dataclass
class MigrationResult:
    """Result of running or rolling back one migration."""

    success: bool
    execution_time_ms: int = 0
    error: Optional[str] = None
    name: Optional[str] = None


@dataclass
class MigrationFileInfo:
    """A migration module found on disk."""

    filename: str
    version: str
    name: str
    description: str
    checksum: str
    file_path: Path


@dataclass
class StatusSummary:
    """Counts derived from the status listing."""

    total: int
    applied: int
    pending: int
    failed: int


@dataclass
class MigrationContext:
    """Context passed to migration up/down methods.

    Gives migration bodies the database connection plus a few
    introspection helpers.
    """

    conn: Connection
    project_name: Optional[str] = None
    _executed_statements: list[str] = field(default_factory=list)

    async def execute(self, sql: str, params: Optional[dict[str, Any]] = None) -> Any:
        """Execute a SurrealQL statement."""
        self._executed_statements.append(sql)
        return await self.conn.query(sql, params)

    async def execute_batch(self, statements: list[str]) -> list[Any]:
        """Execute multiple statements in order."""
        results = []
        for stmt in statements:
            results.append(await self.execute(stmt))
        return results

    async def _table_info(self, table: str) -> dict[str, Any]:
        try:
            result = await self.conn.query(f"INFO FOR TABLE {table}")
        except Exception as e:
            logger.debug(f"INFO FOR TABLE {table} failed: {e}")
            return {}
        if result and isinstance(result, list) and isinstance(result[0], dict):
            return result[0]
        return {}

    async def table_exists(self, table: str) -> bool:
        """Check if a table exists."""
        return bool(await self._table_info(table))

    async def field_exists(self, table: str, field_name: str) -> bool:
        """Check if a field is defined on a table."""
        info = await self._table_info(table)
        return field_name in info.get("fields", {})

    async def index_exists(self, table: str, index_name: str) -> bool:
        """Check if an index is defined on a table."""
        info = await self._table_info(table)
        return index_name in info.get("indexes", {})

    @property
    def executed_statements(self) -> list[str]:
        """Get list of executed statements."""
        return self._executed_statements.copy()


class BaseMigration(ABC):
    """Abstract base class for database migrations.

    Subclasses declare three non-empty string attributes and implement
    both directions:

        class MigrationAddSku(BaseMigration):
            name = "Add SKU"
            version = "20250801093000"
            description = "Add sku field to products"

            async def up(self, ctx): ...
            async def down(self, ctx): ...
    """

    name: str
    version: str
    description: str

    def __init_subclass__(cls, **kwargs):
        """Reject subclasses missing name, version or description."""
        super().__init_subclass__(**kwargs)

        for attr in ("name", "version", "description"):
            value = getattr(cls, attr, None)
            if not isinstance(value, str) or not value.strip():
                raise TypeError(f"Migration {cls.__name__} must define a non-empty '{attr}'")

    @abstractmethod
    async def up(self, ctx: MigrationContext) -> None:
        """Apply the migration."""

    @abstractmethod
    async def down(self, ctx: MigrationContext) -> None:
        """Revert the migration."""

    @property
    def full_name(self) -> str:
        """version_slug, matching the on-disk filename stem."""
        return f"{self.version}_{slugify(self.name)}"

    @property
    def source_path(self) -> Optional[Path]:
        """File the migration class was defined in, if known."""
        try:
            return Path(inspect.getfile(type(self)))
        except (TypeError, OSError):
            return None

    def get_checksum(self) -> str:
        """SHA-256 of the migration's source.

        A migration living in its own '<version>_<slug>.py' module is
        checksummed over the whole file, so the value matches what the
        validate command computes from disk. Anything else (migrations
        declared inline, e.g. in tests) is checksummed over the class body.
        """
        path = self.source_path
        if path is not None and parse_migration_filename(path.name) and path.is_file():
            return generate_checksum(path.read_text(encoding="utf-8"))

        try:
            return generate_checksum(inspect.getsource(type(self)))
        except (TypeError, OSError):
            return generate_checksum(f"{self.name}:{self.version}:{self.description}")

    def __repr__(self) -> str:
        return f"<Migration {self.full_name}>"
