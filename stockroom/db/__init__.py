"""SurrealDB integration for the Stockroom inventory service.

Provides:
- Environment-driven connection configuration
- Pooled async connections, plus dedicated ones for long-running work
- The schema/data migration engine (see stockroom.db.migrations)

Environment Variables:
    SURREAL_URL: WebSocket URL (ws:// or wss://)
    SURREAL_NAMESPACE: Namespace for isolation
    SURREAL_USER: Authentication username
    SURREAL_PASS: Authentication password
    SURREAL_DATABASE: Default database name
    SURREAL_POOL_SIZE: Connection pool size
    SURREAL_DISABLED: Set to true to disable the store
"""

from .config import (
    DatabaseRequiredError,
    Environment,
    SurrealConfig,
    current_environment,
    get_config,
    is_surrealdb_enabled,
    require_db,
    set_config,
)
from .connection import (
    Connection,
    ConnectionError,
    ConnectionPool,
    QueryError,
    close_all_pools,
    get_connection,
    get_pool,
    open_connection,
)

__all__ = [
    # Config
    "DatabaseRequiredError",
    "Environment",
    "SurrealConfig",
    "current_environment",
    "get_config",
    "is_surrealdb_enabled",
    "require_db",
    "set_config",
    # Connection
    "Connection",
    "ConnectionError",
    "ConnectionPool",
    "QueryError",
    "close_all_pools",
    "get_connection",
    "get_pool",
    "open_connection",
]
