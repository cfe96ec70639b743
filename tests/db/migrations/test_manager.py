"""Tests for the migration manager."""

import asyncio
import logging
import time
from unittest.mock import patch

import pytest

from stockroom.db.migrations.base import (
    DatabaseError,
    MigrationError,
    MigrationRecord,
    MigrationStatus,
)
from stockroom.db.migrations.config import MigrationConfig
from stockroom.db.migrations.manager import MigrationManager
from stockroom.db.migrations.registry import MigrationRegistry
from tests.helpers import make_migration


class Recorder:
    """Collects which migration bodies ran, in order."""

    def __init__(self):
        self.calls = []

    def body(self, label, error=None):
        async def run(ctx):
            self.calls.append(label)
            if error is not None:
                raise error

        return run


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def build_manager(record_store, connect, tmp_path):
    """Build a manager over the in-memory store with the given migrations."""

    def build(migrations, **config_overrides):
        config = MigrationConfig(
            migrations_package="stockroom_test_unused",
            migrations_path=tmp_path / "versions",
            **config_overrides,
        )
        return MigrationManager(
            config,
            project_name="inventory",
            registry=MigrationRegistry(migrations),
            store=record_store,
            connect=connect,
        )

    return build


@pytest.fixture
def three(recorder):
    """Three migrations where v2 fails with 'boom'."""
    return [
        make_migration("v1", "20250101000001", up=recorder.body("up v1"), down=recorder.body("down v1")),
        make_migration(
            "v2", "20250101000002", up=recorder.body("up v2", RuntimeError("boom")), down=recorder.body("down v2")
        ),
        make_migration("v3", "20250101000003", up=recorder.body("up v3"), down=recorder.body("down v3")),
    ]


def _success_record(name, version, checksum="", **kwargs):
    return MigrationRecord(
        name=name,
        version=version,
        description=f"{name} description",
        status=MigrationStatus.SUCCESS,
        checksum=checksum,
        **kwargs,
    )


class TestInitialize:
    @pytest.mark.asyncio
    async def test_idempotent(self, build_manager, record_store):
        manager = build_manager([make_migration("v1", "20250101000001")])

        with patch.object(manager, "_load_migrations", wraps=manager._load_migrations) as spy:
            await manager.initialize()
            await manager.initialize()

        spy.assert_called_once()
        assert record_store.ensure_calls == 1
        assert manager.is_initialized

    @pytest.mark.asyncio
    async def test_concurrent_calls_initialize_once(self, build_manager, record_store):
        manager = build_manager([])
        await asyncio.gather(manager.initialize(), manager.initialize(), manager.initialize())
        assert record_store.ensure_calls == 1

    @pytest.mark.asyncio
    async def test_store_failure_raises_database_error(self, build_manager, record_store):
        record_store.ensure_error = RuntimeError("connection refused")
        manager = build_manager([])

        with pytest.raises(DatabaseError, match="connection refused"):
            await manager.initialize()

        assert manager.is_initialized is False


class TestMigrate:
    @pytest.mark.asyncio
    async def test_nothing_pending(self, build_manager, record_store):
        manager = build_manager([])

        assert await manager.migrate() == []
        assert record_store.records == {}
        assert record_store.events == []

    @pytest.mark.asyncio
    async def test_all_succeed_in_order(self, build_manager, record_store, recorder):
        manager = build_manager(
            [
                make_migration("v2", "20250101000002", up=recorder.body("up v2")),
                make_migration("v1", "20250101000001", up=recorder.body("up v1")),
            ]
        )

        results = await manager.migrate()

        assert [r.name for r in results] == ["v1", "v2"]
        assert all(r.success for r in results)
        assert recorder.calls == ["up v1", "up v2"]
        assert record_store.status_of("v1") == MigrationStatus.SUCCESS
        assert record_store.records["v1"].checksum == manager.checksum_of(manager.registry.get("v1"))
        assert record_store.events == [
            ("commit", [("insert", "v1"), ("update", "v1")]),
            ("commit", [("insert", "v2"), ("update", "v2")]),
        ]

    @pytest.mark.asyncio
    async def test_stops_at_first_failure(self, build_manager, record_store, recorder, three):
        manager = build_manager(three)

        results = await manager.migrate()

        assert [(r.name, r.success, r.error) for r in results] == [
            ("v1", True, None),
            ("v2", False, "boom"),
        ]
        assert recorder.calls == ["up v1", "up v2"]
        assert record_store.status_of("v1") == MigrationStatus.SUCCESS
        assert record_store.status_of("v2") == MigrationStatus.FAILED
        assert record_store.status_of("v3") is None
        assert record_store.records["v2"].error_message == "boom"

        statuses = {entry.name: entry.status for entry in await manager.get_status()}
        assert statuses == {
            "v1": MigrationStatus.SUCCESS,
            "v2": MigrationStatus.FAILED,
            "v3": MigrationStatus.PENDING,
        }

    @pytest.mark.asyncio
    async def test_failure_aborts_then_records_outside_transaction(self, build_manager, record_store, three):
        manager = build_manager(three)

        await manager.migrate()

        assert record_store.events[1:] == [
            ("abort", [("insert", "v2")]),
            ("upsert", "v2", MigrationStatus.FAILED),
        ]

    @pytest.mark.asyncio
    async def test_failed_migration_reruns(self, build_manager, record_store, three, recorder):
        manager = build_manager(three)
        await manager.migrate()

        pending = await manager.get_pending_migrations()
        assert [m.name for m in pending] == ["v2", "v3"]

        three[1].up = recorder.body("up v2 fixed")
        results = await manager.migrate()

        assert [r.success for r in results] == [True, True]
        assert record_store.status_of("v2") == MigrationStatus.SUCCESS
        assert record_store.records["v2"].error_message is None
        assert recorder.calls[-2:] == ["up v2 fixed", "up v3"]

    @pytest.mark.asyncio
    async def test_failure_record_write_error_is_swallowed(self, build_manager, record_store, three, caplog):
        record_store.upsert_error = RuntimeError("store down")
        manager = build_manager(three)

        results = await manager.migrate()

        assert results[-1].error == "boom"
        assert "Failed to update migration record for v2" in caplog.text

    @pytest.mark.asyncio
    async def test_commit_failure_marks_failed(self, build_manager, record_store, recorder):
        record_store.commit_error = RuntimeError("transaction conflict")
        manager = build_manager([make_migration("v1", "20250101000001", up=recorder.body("up v1"))])

        results = await manager.migrate()

        assert results[0].success is False
        assert results[0].error == "transaction conflict"
        assert record_store.status_of("v1") == MigrationStatus.FAILED

    @pytest.mark.asyncio
    async def test_error_without_message_uses_type_name(self, build_manager, recorder):
        manager = build_manager(
            [make_migration("v1", "20250101000001", up=recorder.body("up v1", KeyError()))]
        )
        results = await manager.migrate()
        assert results[0].error == "KeyError"

    @pytest.mark.asyncio
    async def test_body_receives_connection_context(self, build_manager, db_conn):
        async def up(ctx):
            await ctx.execute("UPDATE products SET viewCount = 0")

        manager = build_manager([make_migration("v1", "20250101000001", up=up)])
        await manager.migrate()

        db_conn.query.assert_called_once_with("UPDATE products SET viewCount = 0", None)


class TestTimeout:
    @pytest.mark.asyncio
    async def test_timeout_fails_fast_and_body_keeps_running(self, build_manager, record_store):
        release = asyncio.Event()
        finished = []

        async def slow(ctx):
            await release.wait()
            finished.append(True)

        manager = build_manager([make_migration("slow", "20250101000001", up=slow)], timeout_ms=50)

        start = time.monotonic()
        results = await manager.migrate()
        elapsed = time.monotonic() - start

        assert results[0].success is False
        assert results[0].error == "Migration timeout"
        assert elapsed < 2
        assert record_store.status_of("slow") == MigrationStatus.FAILED
        assert len(manager.background_tasks) == 1

        release.set()
        await asyncio.gather(*manager.background_tasks)
        await asyncio.sleep(0)

        assert finished == [True]
        assert manager.background_tasks == frozenset()
        assert record_store.status_of("slow") == MigrationStatus.FAILED

    @pytest.mark.asyncio
    async def test_unresponsive_store_does_not_block_failure(self, build_manager, record_store, caplog):
        async def stuck_upsert(record):
            await asyncio.Event().wait()

        record_store.upsert = stuck_upsert
        manager = build_manager(
            [make_migration("v1", "20250101000001", up=Recorder().body("up v1", RuntimeError("boom")))],
            timeout_ms=50,
        )

        with caplog.at_level(logging.WARNING):
            results = await asyncio.wait_for(manager.migrate(), timeout=3)

        assert results[0].error == "boom"
        assert "Failed to update migration record for v1" in caplog.text
        assert "store did not answer within 50ms" in caplog.text

    @pytest.mark.asyncio
    async def test_cancel_on_timeout(self, build_manager):
        cancelled = []

        async def slow(ctx):
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        manager = build_manager(
            [make_migration("slow", "20250101000001", up=slow)], timeout_ms=50, cancel_on_timeout=True
        )

        results = await manager.migrate()
        await asyncio.sleep(0.01)

        assert results[0].error == "Migration timeout"
        assert cancelled == [True]
        assert manager.background_tasks == frozenset()

    @pytest.mark.asyncio
    async def test_rollback_timeout(self, build_manager, record_store):
        release = asyncio.Event()

        async def slow_down(ctx):
            await release.wait()

        manager = build_manager(
            [make_migration("v1", "20250101000001", down=slow_down)], timeout_ms=50
        )
        await manager.migrate()

        result = await manager.rollback("v1")

        assert result.success is False
        assert result.error == "Rollback timeout"
        assert record_store.status_of("v1") == MigrationStatus.SUCCESS

        release.set()
        await asyncio.gather(*manager.background_tasks)


class TestRollback:
    @pytest.mark.asyncio
    async def test_unknown_migration(self, build_manager, record_store):
        manager = build_manager([])

        result = await manager.rollback("missing")

        assert result.success is False
        assert result.error == "Migration missing not found"
        assert record_store.events == []

    @pytest.mark.asyncio
    async def test_not_applied(self, build_manager, record_store, recorder):
        manager = build_manager([make_migration("v1", "20250101000001", down=recorder.body("down v1"))])

        result = await manager.rollback("v1")

        assert result.success is False
        assert result.error == "Migration v1 is not applied or failed"
        assert recorder.calls == []
        assert record_store.records == {}
        assert record_store.events == []

    @pytest.mark.asyncio
    async def test_failed_record_is_not_rolled_back(self, build_manager, record_store, three, recorder):
        manager = build_manager(three)
        await manager.migrate()
        events_before = list(record_store.events)

        result = await manager.rollback("v2")

        assert result.success is False
        assert "down v2" not in recorder.calls
        assert record_store.events == events_before

    @pytest.mark.asyncio
    async def test_rollback_deletes_record(self, build_manager, record_store, recorder):
        manager = build_manager(
            [make_migration("v1", "20250101000001", up=recorder.body("up v1"), down=recorder.body("down v1"))]
        )
        await manager.migrate()

        result = await manager.rollback("v1")

        assert result.success is True
        assert result.name == "v1"
        assert recorder.calls == ["up v1", "down v1"]
        assert "v1" not in record_store.records
        assert record_store.events[-1] == ("commit", [("delete", "v1")])
        assert [m.name for m in await manager.get_pending_migrations()] == ["v1"]

    @pytest.mark.asyncio
    async def test_failing_down_keeps_record(self, build_manager, record_store, recorder):
        manager = build_manager(
            [
                make_migration(
                    "v1", "20250101000001", down=recorder.body("down v1", RuntimeError("cannot drop"))
                )
            ]
        )
        await manager.migrate()

        result = await manager.rollback("v1")

        assert result.success is False
        assert result.error == "cannot drop"
        assert record_store.status_of("v1") == MigrationStatus.SUCCESS
        assert record_store.events[-1] == ("abort", [])


class TestReset:
    @pytest.mark.asyncio
    async def test_rolls_back_newest_first(self, build_manager, record_store, recorder):
        manager = build_manager(
            [
                make_migration(f"v{i}", f"2025010100000{i}", down=recorder.body(f"down v{i}"))
                for i in (1, 2, 3)
            ]
        )
        await manager.migrate()

        results = await manager.reset()

        assert [r.name for r in results] == ["v3", "v2", "v1"]
        assert all(r.success for r in results)
        assert recorder.calls == ["down v3", "down v2", "down v1"]
        assert record_store.records == {}

    @pytest.mark.asyncio
    async def test_orphaned_record_removed(self, build_manager, record_store, recorder, caplog):
        manager = build_manager([make_migration("v1", "20250101000001", down=recorder.body("down v1"))])
        await manager.migrate()
        record_store.seed(_success_record("ghost", "20250101000009"))

        with caplog.at_level(logging.WARNING):
            results = await manager.reset()

        assert [r.name for r in results] == ["v1"]
        assert ("delete", "ghost") in record_store.events
        assert record_store.records == {}
        assert "Migration file not found for ghost" in caplog.text

    @pytest.mark.asyncio
    async def test_stops_at_first_failed_rollback(self, build_manager, record_store, recorder):
        manager = build_manager(
            [
                make_migration("v1", "20250101000001", down=recorder.body("down v1")),
                make_migration("v2", "20250101000002", down=recorder.body("down v2", RuntimeError("stuck"))),
            ]
        )
        await manager.migrate()

        results = await manager.reset()

        assert [(r.name, r.success) for r in results] == [("v2", False)]
        assert recorder.calls == ["down v2"]
        assert record_store.status_of("v1") == MigrationStatus.SUCCESS
        assert record_store.status_of("v2") == MigrationStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_orphan_removal_failure_is_a_result(self, build_manager, record_store, recorder):
        manager = build_manager(
            [
                make_migration("v1", "20250101000001", down=recorder.body("down v1")),
                make_migration("v3", "20250101000003", down=recorder.body("down v3")),
            ]
        )
        record_store.seed(_success_record("v1", "20250101000001"))
        record_store.seed(_success_record("gone", "20250101000002"))
        record_store.seed(_success_record("v3", "20250101000003"))
        record_store.delete_error = RuntimeError("store down")

        results = await manager.reset()

        assert [(r.name, r.success) for r in results] == [("v3", True), ("gone", False)]
        assert results[1].error == "Failed to remove orphaned record gone: store down"
        assert recorder.calls == ["down v3"]
        assert record_store.status_of("v3") is None
        assert record_store.status_of("gone") == MigrationStatus.SUCCESS
        assert record_store.status_of("v1") == MigrationStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_nothing_applied(self, build_manager):
        manager = build_manager([make_migration("v1", "20250101000001")])
        assert await manager.reset() == []


class TestStatus:
    @pytest.mark.asyncio
    async def test_orphans_listed_in_version_order(self, build_manager, record_store):
        manager = build_manager(
            [make_migration("v1", "20250101000001"), make_migration("v3", "20250101000003")]
        )
        record_store.seed(_success_record("v2 removed", "20250101000002"))

        entries = await manager.get_status()

        assert [(e.name, e.orphaned, e.status) for e in entries] == [
            ("v1", False, MigrationStatus.PENDING),
            ("v2 removed", True, MigrationStatus.SUCCESS),
            ("v3", False, MigrationStatus.PENDING),
        ]
        assert entries[1].applied is True
        assert entries[0].applied is False

    @pytest.mark.asyncio
    async def test_applied_only_for_success(self, build_manager, record_store, three):
        manager = build_manager(three)
        await manager.migrate()

        applied = {e.name: e.applied for e in await manager.get_status()}
        assert applied == {"v1": True, "v2": False, "v3": False}

    @pytest.mark.asyncio
    async def test_store_failure(self, build_manager, record_store):
        manager = build_manager([])
        await manager.initialize()

        async def broken():
            raise RuntimeError("socket closed")

        record_store.find_all = broken
        with pytest.raises(DatabaseError, match="Failed to get migration status"):
            await manager.get_status()


class TestChecksums:
    @pytest.mark.asyncio
    async def test_drift_is_reported_not_blocking(self, build_manager, record_store, caplog):
        record_store.seed(_success_record("v1", "20250101000001", checksum="0" * 64))
        manager = build_manager([make_migration("v1", "20250101000001"), make_migration("v2", "20250101000002")])

        with caplog.at_level(logging.WARNING):
            await manager.initialize()

        assert "Migration 'v1' has changed on disk since it was applied" in caplog.text
        assert await manager.verify_checksums() == ["v1"]

        entry = next(e for e in await manager.get_status() if e.name == "v1")
        assert entry.checksum_mismatch is True

        results = await manager.migrate()
        assert [r.name for r in results] == ["v2"]

    @pytest.mark.asyncio
    async def test_matching_checksum(self, build_manager, record_store):
        manager = build_manager([make_migration("v1", "20250101000001")])
        await manager.migrate()

        assert await manager.verify_checksums() == []
        assert all(not e.checksum_mismatch for e in await manager.get_status())

    @pytest.mark.asyncio
    async def test_validation_disabled(self, build_manager, record_store):
        record_store.seed(_success_record("v1", "20250101000001", checksum="0" * 64))
        manager = build_manager([make_migration("v1", "20250101000001")], validate_checksums=False)

        entries = await manager.get_status()

        assert entries[0].checksum_mismatch is False


class TestCreateMigration:
    @pytest.mark.asyncio
    async def test_writes_template(self, build_manager, tmp_path):
        manager = build_manager([])

        path = await manager.create_migration("Add Foo", "desc")

        assert path.parent == tmp_path / "versions"
        assert path.name.endswith("_add_foo.py")
        content = path.read_text()
        assert "Add Foo" in content
        assert "desc" in content
        assert "class MigrationAddFoo(BaseMigration):" in content
        assert "async def up(self, ctx: MigrationContext) -> None:" in content
        assert "async def down(self, ctx: MigrationContext) -> None:" in content

    @pytest.mark.asyncio
    async def test_template_compiles(self, build_manager):
        manager = build_manager([])
        path = await manager.create_migration('Quote "this" name', 'A "quoted" description')
        compile(path.read_text(), str(path), "exec")

    @pytest.mark.asyncio
    async def test_refuses_overwrite(self, build_manager):
        manager = build_manager([])

        with patch("stockroom.db.migrations.manager.generate_version", return_value="20250101000000"):
            await manager.create_migration("Add Foo", "desc")
            with pytest.raises(MigrationError, match="already exists"):
                await manager.create_migration("Add Foo", "desc")

    @pytest.mark.asyncio
    async def test_rejects_unusable_name(self, build_manager):
        manager = build_manager([])
        with pytest.raises(MigrationError, match="no usable characters"):
            await manager.create_migration("!!!", "desc")

    @pytest.mark.asyncio
    async def test_get_migration_files(self, build_manager):
        manager = build_manager([])
        with patch("stockroom.db.migrations.manager.generate_version", side_effect=["20250102000000", "20250101000000"]):
            await manager.create_migration("Second", "b")
            await manager.create_migration("First", "a")

        files = manager.get_migration_files()

        assert [f.filename for f in files] == ["20250101000000_first.py", "20250102000000_second.py"]
        assert files[0].version == "20250101000000"
        assert len(files[0].checksum) == 64
