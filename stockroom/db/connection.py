"""SurrealDB connection management.

Async connection pooling and context managers used by the migration
record store and by migration bodies.
"""

import asyncio
import logging
import ssl
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

import requests
import websockets
from surrealdb import AsyncSurreal
from surrealdb.connections.async_ws import AsyncWsSurrealConnection

from .config import SurrealConfig, get_config, get_project_database

logger = logging.getLogger(__name__)


class UnverifiedWsConnection(AsyncWsSurrealConnection):
    """WebSocket client that skips certificate verification on wss:// URLs.

    Only used when SURREAL_SKIP_SSL_VERIFY=true, typically against a
    staging host behind a self-signed proxy.
    """

    async def connect(self, url: Optional[str] = None) -> None:
        if self.socket:  # type: ignore[has-type]
            return

        ssl_context = None
        if self.raw_url.startswith("wss://"):
            ssl_context = ssl.create_default_context()
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE

        self.socket = await websockets.connect(
            self.raw_url,
            max_size=None,
            subprotocols=[websockets.Subprotocol("cbor")],
            ssl=ssl_context,
        )
        self.loop = asyncio.get_running_loop()
        self.recv_task = asyncio.create_task(self._recv_task())


class ConnectionError(Exception):
    """Database connection error."""

    pass


class QueryError(Exception):
    """Database query error."""

    pass


@dataclass
class ConnectionStats:
    """Connection pool statistics."""

    total_connections: int = 0
    active_connections: int = 0
    failed_connections: int = 0
    total_queries: int = 0
    failed_queries: int = 0
    last_connected: Optional[datetime] = None
    last_error: Optional[str] = None


class Connection:
    """A single SurrealDB connection.

    Handles connect/authenticate/use and flattens query results into a
    list of record dicts.
    """

    def __init__(self, config: SurrealConfig, database: str):
        self.config = config
        self.database = database
        self._client: Optional[Union[AsyncSurreal, UnverifiedWsConnection]] = None
        self._connected = False
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        """Check if connection is active."""
        return self._connected and self._client is not None

    def _signin_url(self) -> str:
        base = self.config.url
        if base.endswith("/rpc"):
            base = base[: -len("/rpc")]
        return base.replace("wss://", "https://", 1).replace("ws://", "http://", 1) + "/signin"

    def _get_auth_token(self) -> str:
        """Fetch a session token through the HTTP signin endpoint."""
        try:
            resp = requests.post(
                self._signin_url(),
                json={"user": self.config.user, "pass": self.config.password},
                headers={"Accept": "application/json"},
                timeout=self.config.connect_timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as e:
            raise ConnectionError(f"HTTP signin request failed: {e}") from e

        token = data.get("token")
        if not token:
            raise ConnectionError(f"HTTP signin returned no token: {data}")
        return token

    async def connect(self) -> None:
        """Establish connection to SurrealDB.

        ws:// URLs sign in over the socket; wss:// URLs fetch a token over
        HTTP first, which works through TLS-terminating proxies.
        """
        async with self._lock:
            if self._connected:
                return

            try:
                if self.config.skip_ssl_verify and self.config.is_secure:
                    self._client = UnverifiedWsConnection(self.config.url)
                    logger.warning("SSL verification disabled for SurrealDB connection")
                else:
                    self._client = AsyncSurreal(self.config.url)

                await asyncio.wait_for(
                    self._client.connect(),
                    timeout=self.config.connect_timeout,
                )

                if self.config.is_secure:
                    await self._client.authenticate(self._get_auth_token())
                else:
                    await self._client.signin(
                        {"username": self.config.user, "password": self.config.password}
                    )

                await self._client.use(self.config.namespace, self.database)

                self._connected = True
                logger.debug(f"Connected to SurrealDB: {self.config.namespace}/{self.database}")

            except asyncio.TimeoutError as e:
                raise ConnectionError(
                    f"Connection timeout after {self.config.connect_timeout}s"
                ) from e
            except ConnectionError:
                raise
            except Exception as e:
                raise ConnectionError(f"Failed to connect: {e}") from e

    async def disconnect(self) -> None:
        """Close connection."""
        async with self._lock:
            if self._client:
                try:
                    await self._client.close()
                except Exception as e:
                    logger.warning(f"Error closing connection: {e}")
                finally:
                    self._client = None
                    self._connected = False

    async def query(
        self,
        sql: str,
        params: Optional[dict[str, Any]] = None,
    ) -> list[dict[str, Any]]:
        """Execute a SurrealQL query.

        Args:
            sql: SurrealQL query string (may hold several statements)
            params: Query parameters

        Returns:
            Records from every statement, in statement order
        """
        if not self.is_connected:
            await self.connect()
        assert self._client is not None

        try:
            result = await asyncio.wait_for(
                self._client.query(sql, params or {}),
                timeout=self.config.query_timeout,
            )
        except asyncio.TimeoutError as e:
            raise QueryError(f"Query timeout after {self.config.query_timeout}s") from e
        except Exception as e:
            raise QueryError(f"Query failed: {e}") from e

        if not isinstance(result, list):
            return [result] if isinstance(result, dict) else []

        records: list[dict[str, Any]] = []
        for item in result:
            if isinstance(item, dict) and "result" in item:
                if item.get("status", "OK") != "OK":
                    raise QueryError(f"Query failed: {item.get('result')}")
                payload = item["result"] or []
                records.extend(payload if isinstance(payload, list) else [payload])
            elif isinstance(item, dict):
                records.append(item)
            elif isinstance(item, list):
                records.extend(item)
        return records


class ConnectionPool:
    """Fixed-size pool of connections to one database."""

    def __init__(
        self,
        config: Optional[SurrealConfig] = None,
        database: Optional[str] = None,
    ):
        self.config = config or get_config()
        self.database = database or self.config.default_database

        self._connections: list[Connection] = []
        self._available: asyncio.Queue[Connection] = asyncio.Queue()
        self._lock = asyncio.Lock()
        self._initialized = False
        self._stats = ConnectionStats()

    @property
    def stats(self) -> ConnectionStats:
        """Get pool statistics."""
        return self._stats

    async def initialize(self) -> None:
        """Open the pool's connections.

        Raises:
            ConnectionError: If not a single connection could be opened
        """
        async with self._lock:
            if self._initialized:
                return

            for i in range(self.config.pool_size):
                conn = Connection(self.config, self.database)
                try:
                    await conn.connect()
                except ConnectionError as e:
                    self._stats.failed_connections += 1
                    self._stats.last_error = str(e)
                    logger.warning(f"Failed to create connection {i + 1}: {e}")
                    continue

                self._connections.append(conn)
                await self._available.put(conn)
                self._stats.total_connections += 1
                self._stats.last_connected = datetime.now()

            if not self._connections:
                raise ConnectionError(
                    f"Failed to create any connections: {self._stats.last_error}"
                )

            self._initialized = True
            logger.info(
                f"Connection pool initialized: {len(self._connections)} connections to db={self.database}"
            )

    async def close(self) -> None:
        """Close all connections in the pool."""
        async with self._lock:
            for conn in self._connections:
                await conn.disconnect()

            self._connections.clear()
            self._available = asyncio.Queue()
            self._initialized = False

    @asynccontextmanager
    async def acquire(self) -> AsyncGenerator[Connection, None]:
        """Acquire a connection from the pool.

        Usage:
            async with pool.acquire() as conn:
                await conn.query("SELECT * FROM migrations")
        """
        if not self._initialized:
            await self.initialize()

        conn = await self._available.get()
        self._stats.active_connections += 1

        try:
            if not conn.is_connected:
                await conn.connect()
            yield conn
        finally:
            self._stats.active_connections -= 1
            await self._available.put(conn)


# Keyed by (database, loop id) so pools never cross event loops.
_pools: dict[tuple[str, int], ConnectionPool] = {}
_pools_lock = asyncio.Lock()


async def get_pool(
    project_name: Optional[str] = None,
    config: Optional[SurrealConfig] = None,
) -> ConnectionPool:
    """Get or create the connection pool for a project's database."""
    cfg = config or get_config()
    db_name = get_project_database(project_name)
    pool_key = (db_name, id(asyncio.get_running_loop()))

    async with _pools_lock:
        if pool_key not in _pools:
            pool = ConnectionPool(cfg, db_name)
            await pool.initialize()
            _pools[pool_key] = pool

        return _pools[pool_key]


async def close_all_pools() -> None:
    """Close all connection pools."""
    async with _pools_lock:
        for pool in _pools.values():
            await pool.close()
        _pools.clear()


@asynccontextmanager
async def get_connection(
    project_name: Optional[str] = None,
) -> AsyncGenerator[Connection, None]:
    """Context manager for getting a database connection.

    Usage:
        async with get_connection("inventory") as conn:
            await conn.query("INFO FOR DB")
    """
    pool = await get_pool(project_name)
    async with pool.acquire() as conn:
        yield conn


@asynccontextmanager
async def open_connection(
    project_name: Optional[str] = None,
) -> AsyncGenerator[Connection, None]:
    """Dedicated connection outside the shared pool, closed on exit.

    For work that may outlive its caller (a migration body left running
    after a timeout) and must not hold a pooled connection meanwhile.
    """
    conn = Connection(get_config(), get_project_database(project_name))
    await conn.connect()
    try:
        yield conn
    finally:
        await conn.disconnect()
