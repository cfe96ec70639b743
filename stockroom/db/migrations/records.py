"""Persistence of migration records.

The ledger lives in one table of the document store. Writes made while a
migration runs go through a RecordTransaction: they are buffered and
sent to SurrealDB as a single BEGIN/COMMIT block, so an aborted scope
leaves no trace. Writes outside a transaction (the FAILED correction,
orphan cleanup) go straight to the store.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import replace
from typing import Any, Optional, Union

from ..connection import Connection, get_connection
from .base import MigrationError, MigrationRecord, MigrationStatus

logger = logging.getLogger(__name__)

# (kind, payload): ("insert", record) | ("update", record) | ("delete", name)
Operation = tuple[str, Union[MigrationRecord, str]]

ConnectFactory = Callable[[Optional[str]], AbstractAsyncContextManager[Connection]]


class TransactionClosedError(MigrationError):
    """A write or commit was attempted on a released transaction."""

    pass


class RecordTransaction:
    """Buffered write scope over a RecordStore.

    Nothing reaches the store until commit(). abort() throws the buffer
    away; after either call the scope is closed.
    """

    def __init__(self, store: "RecordStore"):
        self._store = store
        self._operations: list[Operation] = []
        self._active = True
        self.committed = False

    @property
    def in_transaction(self) -> bool:
        return self._active

    @property
    def operations(self) -> list[Operation]:
        return list(self._operations)

    def _ensure_active(self) -> None:
        if not self._active:
            raise TransactionClosedError("Transaction has already been committed or aborted")

    def insert(self, record: MigrationRecord) -> None:
        self._ensure_active()
        self._operations.append(("insert", replace(record)))

    def update(self, record: MigrationRecord) -> None:
        self._ensure_active()
        self._operations.append(("update", replace(record)))

    def delete(self, name: str) -> None:
        self._ensure_active()
        self._operations.append(("delete", name))

    async def commit(self) -> None:
        """Send every buffered write to the store atomically."""
        self._ensure_active()
        operations, self._operations = self._operations, []
        self._active = False
        await self._store.commit_operations(operations)
        self.committed = True

    def abort(self) -> None:
        """Discard buffered writes. No-op on a closed scope."""
        if not self._active:
            return
        operations, self._operations = self._operations, []
        self._active = False
        self._store.transaction_aborted(operations)


class RecordStore(ABC):
    """Ledger of migration records."""

    @abstractmethod
    async def ensure_collection(self) -> None:
        """Create the records collection and its indexes if missing."""

    @abstractmethod
    async def find_all(self) -> list[MigrationRecord]:
        """All records, oldest appliedAt first."""

    @abstractmethod
    async def find_by_status(self, status: MigrationStatus) -> list[MigrationRecord]:
        """Records in one status, oldest appliedAt first."""

    @abstractmethod
    async def find_one(self, name: str) -> Optional[MigrationRecord]:
        """The record for a migration name, if any."""

    @abstractmethod
    async def upsert(self, record: MigrationRecord) -> None:
        """Create or merge a record outside any transaction."""

    @abstractmethod
    async def delete(self, name: str) -> None:
        """Delete a record outside any transaction."""

    @abstractmethod
    async def commit_operations(self, operations: list[Operation]) -> None:
        """Apply a transaction's buffered writes all-or-nothing."""

    def transaction_aborted(self, operations: list[Operation]) -> None:
        """Called when a transaction discards its buffer."""
        logger.debug(f"Transaction aborted, discarded {len(operations)} buffered write(s)")

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[RecordTransaction, None]:
        """Open a transactional scope; it is always released on exit.

        Anything not committed by the time the block exits is aborted.
        """
        tx = RecordTransaction(self)
        try:
            yield tx
        finally:
            if tx.in_transaction:
                tx.abort()


SCHEMA_SQL = """
DEFINE TABLE IF NOT EXISTS {table} SCHEMAFULL;
DEFINE FIELD IF NOT EXISTS name ON TABLE {table} TYPE string;
DEFINE FIELD IF NOT EXISTS version ON TABLE {table} TYPE string;
DEFINE FIELD IF NOT EXISTS description ON TABLE {table} TYPE string;
DEFINE FIELD IF NOT EXISTS appliedAt ON TABLE {table} TYPE datetime DEFAULT time::now();
DEFINE FIELD IF NOT EXISTS executionTimeMs ON TABLE {table} TYPE int DEFAULT 0;
DEFINE FIELD IF NOT EXISTS checksum ON TABLE {table} TYPE string;
DEFINE FIELD IF NOT EXISTS status ON TABLE {table} TYPE string DEFAULT 'PENDING'
    ASSERT $value IN ['SUCCESS', 'FAILED', 'PENDING'];
DEFINE FIELD IF NOT EXISTS errorMessage ON TABLE {table} TYPE option<string>;
DEFINE INDEX IF NOT EXISTS {table}_name_unique ON TABLE {table} COLUMNS name UNIQUE;
DEFINE INDEX IF NOT EXISTS {table}_version ON TABLE {table} COLUMNS version;
DEFINE INDEX IF NOT EXISTS {table}_applied_at ON TABLE {table} COLUMNS appliedAt;
"""


def _document(record: MigrationRecord) -> dict[str, Any]:
    # option<string> fields reject NULL, so unset values are simply omitted
    return {k: v for k, v in record.to_document().items() if v is not None}


class SurrealRecordStore(RecordStore):
    """Record store backed by a SurrealDB table.

    Record ids are derived from the migration name, so re-running a
    failed migration replaces its earlier record instead of colliding
    with it.
    """

    def __init__(
        self,
        collection_name: str = "migrations",
        project_name: Optional[str] = None,
        connect: ConnectFactory = get_connection,
    ):
        self.collection_name = collection_name
        self.project_name = project_name
        self._connect = connect

    async def _query(self, sql: str, params: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
        merged = {"table": self.collection_name, **(params or {})}
        async with self._connect(self.project_name) as conn:
            return await conn.query(sql, merged)

    def _records(self, rows: list[dict[str, Any]]) -> list[MigrationRecord]:
        return [MigrationRecord.from_document(row) for row in rows if isinstance(row, dict) and "name" in row]

    async def ensure_collection(self) -> None:
        async with self._connect(self.project_name) as conn:
            await conn.query(SCHEMA_SQL.format(table=self.collection_name))
        logger.debug(f"Ensured migrations collection: {self.collection_name}")

    async def find_all(self) -> list[MigrationRecord]:
        rows = await self._query("SELECT * FROM type::table($table) ORDER BY appliedAt ASC")
        return self._records(rows)

    async def find_by_status(self, status: MigrationStatus) -> list[MigrationRecord]:
        rows = await self._query(
            "SELECT * FROM type::table($table) WHERE status = $status ORDER BY appliedAt ASC",
            {"status": status.value},
        )
        return self._records(rows)

    async def find_one(self, name: str) -> Optional[MigrationRecord]:
        rows = await self._query(
            "SELECT * FROM type::table($table) WHERE name = $name LIMIT 1",
            {"name": name},
        )
        records = self._records(rows)
        return records[0] if records else None

    async def upsert(self, record: MigrationRecord) -> None:
        await self._query(
            "UPSERT type::thing($table, $name) MERGE $data",
            {"name": record.name, "data": _document(record)},
        )

    async def delete(self, name: str) -> None:
        await self._query(
            "DELETE type::table($table) WHERE name = $name",
            {"name": name},
        )

    def render_transaction(self, operations: list[Operation]) -> tuple[str, dict[str, Any]]:
        """Build the BEGIN/COMMIT query and its parameters for a buffer."""
        statements = ["BEGIN TRANSACTION;"]
        params: dict[str, Any] = {}

        for i, (kind, payload) in enumerate(operations):
            if kind == "delete":
                assert isinstance(payload, str)
                statements.append(f"DELETE type::table($table) WHERE name = $name_{i};")
                params[f"name_{i}"] = payload
                continue

            assert isinstance(payload, MigrationRecord)
            verb = "CONTENT" if kind == "insert" else "MERGE"
            statements.append(f"UPSERT type::thing($table, $name_{i}) {verb} $data_{i};")
            params[f"name_{i}"] = payload.name
            params[f"data_{i}"] = _document(payload)

        statements.append("COMMIT TRANSACTION;")
        return "\n".join(statements), params

    async def commit_operations(self, operations: list[Operation]) -> None:
        if not operations:
            return
        sql, params = self.render_transaction(operations)
        await self._query(sql, params)
