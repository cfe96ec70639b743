"""DB-specific pytest fixtures.

Provides fixtures for testing the connection layer and the migration
engine with the SurrealDB client mocked out.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from stockroom.db.config import SurrealConfig
from stockroom.db.connection import Connection
from tests.helpers import InMemoryRecordStore, fake_connect


@pytest.fixture
def mock_surreal_client():
    """Create a mock SurrealDB client."""
    client = MagicMock()
    client.connect = AsyncMock()
    client.signin = AsyncMock()
    client.authenticate = AsyncMock()
    client.use = AsyncMock()
    client.close = AsyncMock()
    client.query = AsyncMock(return_value=[{"result": [], "status": "OK"}])
    return client


@pytest.fixture
def mock_surreal_config():
    """Create a SurrealDB configuration pointing at a local test server."""
    return SurrealConfig(
        url="ws://localhost:8000/rpc",
        namespace="test",
        default_database="test_db",
        user="root",
        password="root",
        pool_size=2,
        connect_timeout=5.0,
        query_timeout=30.0,
        skip_ssl_verify=False,
    )


@pytest.fixture
def mock_connection(mock_surreal_client, mock_surreal_config):
    """Create a connected Connection around the mock client."""
    conn = Connection(mock_surreal_config, "test_db")
    conn._client = mock_surreal_client
    conn._connected = True
    return conn


@pytest.fixture
def record_store():
    """Empty in-memory migration record store."""
    return InMemoryRecordStore()


@pytest.fixture
def db_conn():
    """Mock connection handed to migration bodies."""
    conn = MagicMock()
    conn.query = AsyncMock(return_value=[])
    return conn


@pytest.fixture
def connect(db_conn):
    """Connection factory yielding db_conn."""
    return fake_connect(db_conn)
