"""Migration engine configuration and startup policy inputs."""

import importlib.util
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..config import Environment, current_environment
from .base import MigrationConfigError

logger = logging.getLogger(__name__)

DEFAULT_MIGRATIONS_PACKAGE = "stockroom.db.migrations.versions"

# Environments in which AUTO_MIGRATE may apply migrations at startup
AUTO_RUN_ENVIRONMENTS = frozenset({Environment.DEVELOPMENT, Environment.TEST})


def _env_path(name: str) -> Optional[Path]:
    value = os.getenv(name)
    return Path(value) if value else None


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as e:
        raise MigrationConfigError(f"{name} must be an integer, got {value!r}") from e


@dataclass(frozen=True)
class MigrationConfig:
    """Settings for one MigrationManager.

    Attributes:
        migrations_package: Dotted package whose modules are the migrations
        migrations_path: Directory for create/validate; defaults to the
            package's own directory
        collection_name: Table holding the migration records
        validate_checksums: Report drift between disk and recorded checksums
        timeout_ms: Per-migration timeout for up() and down()
        cancel_on_timeout: Cancel a timed-out body instead of leaving it to
            finish in the background
    """

    migrations_package: str = field(
        default_factory=lambda: os.getenv("MIGRATIONS_PACKAGE", DEFAULT_MIGRATIONS_PACKAGE)
    )
    migrations_path: Optional[Path] = field(default_factory=lambda: _env_path("MIGRATIONS_PATH"))
    collection_name: str = field(
        default_factory=lambda: os.getenv("MIGRATIONS_COLLECTION", "migrations")
    )
    validate_checksums: bool = field(
        default_factory=lambda: os.getenv("MIGRATIONS_VALIDATE_CHECKSUMS", "true").lower() == "true"
    )
    timeout_ms: int = field(default_factory=lambda: _env_int("MIGRATIONS_TIMEOUT_MS", 60000))
    cancel_on_timeout: bool = field(
        default_factory=lambda: os.getenv("MIGRATIONS_CANCEL_ON_TIMEOUT", "false").lower() == "true"
    )

    def __post_init__(self):
        if self.timeout_ms <= 0:
            raise MigrationConfigError("timeout_ms must be positive")
        if not self.collection_name.isidentifier():
            raise MigrationConfigError(f"Invalid collection name: {self.collection_name!r}")

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    def resolve_migrations_path(self) -> Optional[Path]:
        """Directory migration files live in, or None if it can't be located."""
        if self.migrations_path is not None:
            return Path(self.migrations_path)

        try:
            spec = importlib.util.find_spec(self.migrations_package)
        except (ImportError, ValueError) as e:
            logger.debug(f"Cannot locate package {self.migrations_package}: {e}")
            return None

        if spec is None or not spec.submodule_search_locations:
            return None
        return Path(list(spec.submodule_search_locations)[0])


def is_auto_migrate_enabled() -> bool:
    """AUTO_MIGRATE=true opts in to applying migrations at startup.

    Read on every call, never cached.
    """
    return os.getenv("AUTO_MIGRATE", "").strip().lower() == "true"

