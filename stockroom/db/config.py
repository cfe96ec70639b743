"""SurrealDB configuration.

Environment-based configuration for the document store that backs the
inventory service.
"""

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class Environment(str, Enum):
    """Deployment environment."""

    DEVELOPMENT = "development"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"


@dataclass
class SurrealConfig:
    """SurrealDB connection configuration.

    Attributes:
        url: SurrealDB WebSocket URL (ws:// or wss://)
        namespace: SurrealDB namespace for isolation
        user: Authentication username
        password: Authentication password
        default_database: Database used when no project is given
        pool_size: Connection pool size
        connect_timeout: Connection timeout in seconds
        query_timeout: Query timeout in seconds
        skip_ssl_verify: Skip certificate checks on wss:// URLs
    """

    url: str = field(default_factory=lambda: os.getenv("SURREAL_URL", "ws://localhost:8000/rpc"))
    namespace: str = field(default_factory=lambda: os.getenv("SURREAL_NAMESPACE", "stockroom"))
    user: str = field(default_factory=lambda: os.getenv("SURREAL_USER", "root"))
    password: str = field(default_factory=lambda: os.getenv("SURREAL_PASS", "root"))
    default_database: str = field(default_factory=lambda: os.getenv("SURREAL_DATABASE", "inventory"))
    pool_size: int = field(default_factory=lambda: int(os.getenv("SURREAL_POOL_SIZE", "2")))
    connect_timeout: float = field(
        default_factory=lambda: float(os.getenv("SURREAL_CONNECT_TIMEOUT", "10.0"))
    )
    query_timeout: float = field(
        default_factory=lambda: float(os.getenv("SURREAL_QUERY_TIMEOUT", "120.0"))
    )
    skip_ssl_verify: bool = field(
        default_factory=lambda: os.getenv("SURREAL_SKIP_SSL_VERIFY", "false").lower() == "true"
    )

    @property
    def is_secure(self) -> bool:
        """Check if using secure WebSocket connection."""
        return self.url.startswith("wss://")

    def validate(self) -> list[str]:
        """Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not self.url:
            errors.append("SURREAL_URL is required")
        elif not self.url.startswith(("ws://", "wss://")):
            errors.append("SURREAL_URL must start with ws:// or wss://")

        if not self.namespace:
            errors.append("SURREAL_NAMESPACE is required")

        if not self.user:
            errors.append("SURREAL_USER is required")

        if self.pool_size < 1:
            errors.append("SURREAL_POOL_SIZE must be at least 1")

        return errors


_config: Optional[SurrealConfig] = None


def get_config() -> SurrealConfig:
    """Get the global SurrealDB configuration."""
    global _config
    if _config is None:
        _config = SurrealConfig()
    return _config


def set_config(config: Optional[SurrealConfig]) -> None:
    """Set the global SurrealDB configuration.

    Passing None drops the cached instance so the next get_config()
    re-reads the environment.
    """
    global _config
    _config = config


def current_environment() -> Environment:
    """Read the runtime environment kind from APP_ENV.

    Read on every call rather than cached. Unknown or missing values are
    treated as production so that nothing production-sensitive is enabled
    by accident.
    """
    raw = os.getenv("APP_ENV", "").strip().lower()
    try:
        return Environment(raw)
    except ValueError:
        return Environment.PRODUCTION


def is_surrealdb_enabled() -> bool:
    """Check if the document store is enabled.

    Set SURREAL_DISABLED=true to explicitly disable it.
    """
    return os.getenv("SURREAL_DISABLED", "").lower() != "true"


class DatabaseRequiredError(Exception):
    """Raised when SurrealDB is required but not configured."""

    pass


def require_db() -> None:
    """Ensure SurrealDB is configured and enabled.

    Raises:
        DatabaseRequiredError: If the store is disabled or misconfigured
    """
    if not is_surrealdb_enabled():
        raise DatabaseRequiredError(
            "SurrealDB is required but explicitly disabled (SURREAL_DISABLED=true).\n"
            "Remove SURREAL_DISABLED or set it to 'false' to enable SurrealDB."
        )

    errors = get_config().validate()
    if errors:
        raise DatabaseRequiredError("Invalid SurrealDB configuration: " + "; ".join(errors))


def get_project_database(project_name: Optional[str] = None) -> str:
    """Get the database name for a project.

    Database names are sanitized to be SurrealDB-compatible: hyphens and
    spaces become underscores, other punctuation is dropped, the result is
    lowercased and prefixed with 'p_' when it would start with a digit.

    Examples:
        >>> get_project_database("my-app")
        'my_app'
        >>> get_project_database("2024 Stock")
        'p_2024_stock'
    """
    config = get_config()

    if project_name is None:
        return config.default_database

    safe_name = project_name.replace("-", "_").replace(" ", "_")
    safe_name = re.sub(r"[^a-zA-Z0-9_]", "", safe_name).lower()
    if safe_name and safe_name[0].isdigit():
        safe_name = f"p_{safe_name}"

    return safe_name or config.default_database
