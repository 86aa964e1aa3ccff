"""Tests for artifacts_bot.telemetry — batching, spill files, recovery."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from artifacts_bot.db import action_logs, create_engine_from_url, init_db, inventory_snapshots
from artifacts_bot.models import ActionRecord, Coordinates, InventorySlot, InventorySnapshot
from artifacts_bot.telemetry import TelemetryQueue


@pytest.fixture
def engine(tmp_path):
    engine = create_engine_from_url(f"sqlite:///{tmp_path / 'telemetry.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


def _record(i: int) -> ActionRecord:
    return ActionRecord(character="Alice", action_type="harvest",
                        coordinates=Coordinates(x=9, y=8), result={"n": i})


def _snapshot() -> InventorySnapshot:
    return InventorySnapshot(character="Alice", items=[InventorySlot(code="dead_tree", quantity=3)])


def _rows(engine, table) -> int:
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(table)).scalar()


def _disconnected():
    return patch.object(TelemetryQueue, "_insert",
                        side_effect=OperationalError("INSERT", {}, Exception("connection refused")))


# ---------------------------------------------------------------------------
# Flush
# ---------------------------------------------------------------------------

class TestFlush:
    async def test_flush_inserts_and_clears(self, engine, data_dir) -> None:
        queue = TelemetryQueue(engine, data_dir)
        for i in range(5):
            queue.add_action_log(_record(i))
        queue.add_inventory_snapshot(_snapshot())
        assert await queue.flush() is True
        assert _rows(engine, action_logs) == 5
        assert _rows(engine, inventory_snapshots) == 1
        assert queue.stats()["action_logs"] == 0
        assert queue.last_flush is not None

    async def test_successful_flush_removes_own_spills(self, engine, data_dir) -> None:
        queue = TelemetryQueue(engine, data_dir)
        queue.add_action_log(_record(0))
        await queue.flush()
        assert queue.spill_files() == []

    async def test_flush_preserves_order(self, engine, data_dir) -> None:
        queue = TelemetryQueue(engine, data_dir)
        for i in range(10):
            queue.add_action_log(_record(i))
        await queue.flush()
        with engine.connect() as conn:
            results = conn.execute(select(action_logs.c.result).order_by(action_logs.c.id)).scalars().all()
        assert [r["n"] for r in results] == list(range(10))

    async def test_failed_flush_keeps_memory_and_spill(self, engine, data_dir) -> None:
        queue = TelemetryQueue(engine, data_dir)
        for i in range(3):
            queue.add_action_log(_record(i))
        with _disconnected():
            assert await queue.flush() is False
        assert len(queue.pending_actions) == 3
        files = queue.spill_files()
        assert len(files) == 1
        assert len(json.loads(files[0].read_text())) == 3

    async def test_no_database_configured(self, data_dir) -> None:
        queue = TelemetryQueue(None, data_dir)
        queue.add_action_log(_record(0))
        assert await queue.flush() is False
        assert len(queue.spill_files()) == 1

    async def test_empty_flush_is_noop(self, engine, data_dir) -> None:
        queue = TelemetryQueue(engine, data_dir)
        assert await queue.flush() is True
        assert queue.spill_files() == []

    async def test_threshold_triggers_background_flush(self, engine, data_dir) -> None:
        queue = TelemetryQueue(engine, data_dir, flush_threshold=10)
        for i in range(11):
            queue.add_action_log(_record(i))
        assert queue._flush_task is not None
        await queue._flush_task
        assert _rows(engine, action_logs) == 11


# ---------------------------------------------------------------------------
# Spill files
# ---------------------------------------------------------------------------

class TestSpill:
    def test_filenames_unique_within_process(self, data_dir) -> None:
        queue = TelemetryQueue(None, data_dir)
        names = {queue._filename("action_backup") for _ in range(500)}
        assert len(names) == 500

    def test_filename_format(self, data_dir) -> None:
        queue = TelemetryQueue(None, data_dir)
        name = queue._filename("inventory_backup")
        assert name.startswith(f"inventory_backup_pid{queue.pid}_")
        assert name.endswith(".json")

    def test_spill_supersedes_previous(self, data_dir) -> None:
        queue = TelemetryQueue(None, data_dir)
        queue.add_action_log(_record(0))
        queue.backup_to_file()
        queue.add_action_log(_record(1))
        queue.backup_to_file()
        files = queue.spill_files()
        assert len(files) == 1
        assert len(json.loads(files[0].read_text())) == 2

    def test_both_kinds_spilled(self, data_dir) -> None:
        queue = TelemetryQueue(None, data_dir)
        queue.add_action_log(_record(0))
        queue.add_inventory_snapshot(_snapshot())
        queue.backup_to_file()
        names = sorted(p.name.split("_pid")[0] for p in queue.spill_files())
        assert names == ["action_backup", "inventory_backup"]


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------

class TestRecovery:
    async def test_crash_then_recover_then_flush(self, engine, data_dir) -> None:
        crashed = TelemetryQueue(engine, data_dir)
        for i in range(7):
            crashed.add_action_log(_record(i))
        crashed.add_inventory_snapshot(_snapshot())
        crashed.backup_to_file()
        # crashed process never flushes

        restarted = TelemetryQueue(engine, data_dir)
        assert restarted.initialize() == 8
        assert len(restarted.pending_actions) == 7
        assert restarted.spill_files() == []

        assert await restarted.flush() is True
        assert _rows(engine, action_logs) == 7
        assert _rows(engine, inventory_snapshots) == 1

    def test_skips_files_of_live_processes(self, data_dir) -> None:
        data_dir.mkdir(parents=True, exist_ok=True)
        other = data_dir / "action_backup_pid4242_1700000000000_abc123.json"
        other.write_text("[]")
        queue = TelemetryQueue(None, data_dir)
        with patch("artifacts_bot.telemetry.pid_alive", return_value=True):
            queue.initialize()
        assert other.exists()

    def test_adopts_files_of_dead_processes(self, data_dir) -> None:
        data_dir.mkdir(parents=True, exist_ok=True)
        record = _record(1).model_dump(mode="json")
        dead = data_dir / "action_backup_pid4242_1700000000000_abc123.json"
        dead.write_text(json.dumps([record]))
        queue = TelemetryQueue(None, data_dir)
        with patch("artifacts_bot.telemetry.pid_alive", return_value=False):
            assert queue.initialize() == 1
        assert not dead.exists()
        assert queue.pending_actions[0].result == {"n": 1}

    def test_unreadable_file_left_in_place(self, data_dir) -> None:
        data_dir.mkdir(parents=True, exist_ok=True)
        bad = data_dir / "action_backup_pid4242_1700000000000_abc123.json"
        bad.write_text("{not json")
        queue = TelemetryQueue(None, data_dir)
        with patch("artifacts_bot.telemetry.pid_alive", return_value=False):
            assert queue.initialize() == 0
        assert bad.exists()

    def test_file_claimed_by_another_worker_is_skipped(self, data_dir) -> None:
        data_dir.mkdir(parents=True, exist_ok=True)
        dead = data_dir / "action_backup_pid4242_1700000000000_abc123.json"
        dead.write_text(json.dumps([_record(1).model_dump(mode="json")]))
        queue = TelemetryQueue(None, data_dir)
        with patch("artifacts_bot.telemetry.pid_alive", return_value=False), \
                patch.object(Path, "rename", side_effect=FileNotFoundError):
            assert queue.initialize() == 0
        assert queue.pending_actions == []

    def test_claim_held_by_live_worker_is_left_alone(self, data_dir) -> None:
        data_dir.mkdir(parents=True, exist_ok=True)
        claimed = data_dir / "action_backup_pid4242_1700000000000_abc123.json.claim4243"
        claimed.write_text(json.dumps([_record(1).model_dump(mode="json")]))
        queue = TelemetryQueue(None, data_dir)
        with patch("artifacts_bot.telemetry.pid_alive", side_effect=lambda pid: pid == 4243):
            assert queue.initialize() == 0
        assert claimed.exists()

    def test_stale_claim_of_dead_worker_is_recovered(self, data_dir) -> None:
        data_dir.mkdir(parents=True, exist_ok=True)
        claimed = data_dir / "action_backup_pid4242_1700000000000_abc123.json.claim4243"
        claimed.write_text(json.dumps([_record(1).model_dump(mode="json")]))
        queue = TelemetryQueue(None, data_dir)
        with patch("artifacts_bot.telemetry.pid_alive", return_value=False):
            assert queue.initialize() == 1
        assert list(data_dir.glob("*_backup_pid*")) == []


# ---------------------------------------------------------------------------
# Shutdown durability
# ---------------------------------------------------------------------------

class TestShutdown:
    async def test_database_down_at_shutdown_spills_everything(self, engine, data_dir) -> None:
        queue = TelemetryQueue(engine, data_dir)
        with _disconnected():
            for i in range(250):
                queue.add_action_log(_record(i))
            assert await queue.shutdown() is False

        files = queue.spill_files()
        assert files
        counts = [len(json.loads(f.read_text())) for f in files]
        assert max(counts) == 250

        restarted = TelemetryQueue(engine, data_dir)
        restarted.initialize()
        assert await restarted.flush() is True
        assert _rows(engine, action_logs) == 250
        assert restarted.spill_files() == []

    async def test_shutdown_flushes(self, engine, data_dir) -> None:
        queue = TelemetryQueue(engine, data_dir)
        queue.start()
        queue.add_action_log(_record(0))
        assert await queue.shutdown() is True
        assert _rows(engine, action_logs) == 1
        assert queue._timers == []
