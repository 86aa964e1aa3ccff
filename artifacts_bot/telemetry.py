"""Durable telemetry queue: action logs and inventory snapshots.

Lifecycle (one queue per worker process):

    queue = TelemetryQueue(engine, data_dir)
    queue.initialize()        # mkdir + recover spill files from earlier runs
    queue.start()             # periodic flush (10 min) and spill (60 s) tasks
    queue.add_action_log(r)   # O(1); >100 queued schedules a background flush
    await queue.shutdown()    # cancel timers, flush, spill if the flush fails

Durability tiers: memory, then spill files in `data_dir`, then the relational
store. A flush spills first, then inserts both kinds in one transaction and
drops exactly the records it committed. Spill files are named

    {action_backup|inventory_backup}_pid<pid>_<epoch_ms>_<rand>.json

and each spill replaces this process's previous ones, so the newest file per
kind always holds the full queue.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable

from pydantic import TypeAdapter
from sqlalchemy import insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from artifacts_bot.db import action_logs, inventory_snapshots
from artifacts_bot.models import ActionRecord, InventorySnapshot, utc_now
from artifacts_bot.procs import pid_alive

logger = logging.getLogger(__name__)

FLUSH_THRESHOLD = 100
FLUSH_INTERVAL = 10 * 60
SPILL_INTERVAL = 60

ACTION_PREFIX = "action_backup"
INVENTORY_PREFIX = "inventory_backup"

_SPILL_RE = re.compile(r"^(action|inventory)_backup_pid(\d+)_(\d+)_([0-9a-z]+)\.json$")
_CLAIM_RE = re.compile(r"^((?:action|inventory)_backup_pid\d+_\d+_[0-9a-z]+\.json)\.claim(\d+)$")

_actions_adapter = TypeAdapter(list[ActionRecord])
_snapshots_adapter = TypeAdapter(list[InventorySnapshot])


class TelemetryQueue:
    """Buffers telemetry in memory and batches it into the relational store.

    `engine` may be None (no database configured); flushes then fail and the
    queue lives on spill files alone.
    """

    def __init__(
        self,
        engine: Engine | None,
        data_dir: Path,
        flush_threshold: int = FLUSH_THRESHOLD,
        flush_interval: float = FLUSH_INTERVAL,
        spill_interval: float = SPILL_INTERVAL,
    ) -> None:
        self.engine = engine
        self.data_dir = Path(data_dir)
        self.flush_threshold = flush_threshold
        self.flush_interval = flush_interval
        self.spill_interval = spill_interval
        self.pid = os.getpid()
        self.last_flush: datetime | None = None

        self._actions: list[ActionRecord] = []
        self._snapshots: list[InventorySnapshot] = []
        self._flush_lock = asyncio.Lock()
        self._flush_task: asyncio.Task | None = None
        self._timers: list[asyncio.Task] = []
        self._own_spills: list[Path] = []
        self._last_ms = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> int:
        """Create the spill directory and recover earlier spills. Returns the count recovered."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        return self.recover_from_files()

    def start(self) -> None:
        """Start the periodic flush and spill tasks on the running loop."""
        if self._timers:
            return
        self._timers = [
            asyncio.create_task(self._every(self.flush_interval, self.flush)),
            asyncio.create_task(self._every(self.spill_interval, self._spill_async)),
        ]
        logger.info("Telemetry queue started (flush every %.0f min)", self.flush_interval / 60)

    async def shutdown(self) -> bool:
        """Stop timers, flush once, spill as a last resort. Returns True if flushed."""
        for task in self._timers:
            task.cancel()
        if self._timers:
            await asyncio.gather(*self._timers, return_exceptions=True)
        self._timers = []
        if self._flush_task is not None and not self._flush_task.done():
            await asyncio.gather(self._flush_task, return_exceptions=True)

        flushed = await self.flush()
        if not flushed:
            logger.warning("Final flush failed, spilling %d action logs and %d snapshots to disk",
                           len(self._actions), len(self._snapshots))
            self.backup_to_file()
        return flushed

    async def _every(self, interval: float, fn: Callable[[], Awaitable[Any]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await fn()
            except Exception:
                logger.exception("Periodic telemetry task failed")

    async def _spill_async(self) -> bool:
        return self.backup_to_file()

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def add_action_log(self, record: ActionRecord) -> None:
        self._actions.append(record)
        self._maybe_flush()

    def add_inventory_snapshot(self, snapshot: InventorySnapshot) -> None:
        self._snapshots.append(snapshot)
        self._maybe_flush()

    def _maybe_flush(self) -> None:
        if len(self._actions) <= self.flush_threshold and len(self._snapshots) <= self.flush_threshold:
            return
        if self._flush_task is not None and not self._flush_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop (sync caller); the next periodic flush picks it up.
            return
        self._flush_task = loop.create_task(self.flush())

    @property
    def pending_actions(self) -> list[ActionRecord]:
        return list(self._actions)

    @property
    def pending_snapshots(self) -> list[InventorySnapshot]:
        return list(self._snapshots)

    # ------------------------------------------------------------------
    # Flush
    # ------------------------------------------------------------------

    async def flush(self) -> bool:
        """Spill, then commit everything currently queued in one transaction.

        On failure nothing is removed from memory and the spill stays on disk.
        """
        async with self._flush_lock:
            actions = list(self._actions)
            snapshots = list(self._snapshots)
            if not actions and not snapshots:
                return True

            self.backup_to_file()
            if self.engine is None:
                logger.warning("No database configured; %d records kept on disk",
                               len(actions) + len(snapshots))
                return False

            try:
                await asyncio.to_thread(self._insert, actions, snapshots)
            except SQLAlchemyError as e:
                logger.error("Error flushing telemetry to database: %s", e)
                return False

            # Records appended during the insert stay queued.
            del self._actions[: len(actions)]
            del self._snapshots[: len(snapshots)]
            self.last_flush = utc_now()
            self._remove_own_spills()
            if self._actions or self._snapshots:
                self.backup_to_file()
            logger.info("Flushed %d action logs and %d inventory snapshots",
                        len(actions), len(snapshots))
            return True

    def _insert(self, actions: list[ActionRecord], snapshots: list[InventorySnapshot]) -> None:
        with self.engine.begin() as conn:
            if actions:
                conn.execute(insert(action_logs), [
                    {
                        "character": r.character,
                        "action_type": r.action_type,
                        "coordinates": r.coordinates,
                        "result": r.result,
                        "error": r.error,
                        "timestamp": r.timestamp,
                    }
                    for r in actions
                ])
            if snapshots:
                conn.execute(insert(inventory_snapshots), [
                    {
                        "character": s.character,
                        "items": [slot.model_dump() for slot in s.items],
                        "timestamp": s.timestamp,
                    }
                    for s in snapshots
                ])

    # ------------------------------------------------------------------
    # Spill files
    # ------------------------------------------------------------------

    def _filename(self, prefix: str) -> str:
        # Strictly increasing per process so two spills in the same ms differ.
        ms = max(int(time.time() * 1000), self._last_ms + 1)
        self._last_ms = ms
        return f"{prefix}_pid{self.pid}_{ms}_{uuid.uuid4().hex[:12]}.json"

    def backup_to_file(self) -> bool:
        """Write the whole queue to fresh spill files, replacing our older ones."""
        written: list[Path] = []
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            if self._actions:
                path = self.data_dir / self._filename(ACTION_PREFIX)
                path.write_bytes(_actions_adapter.dump_json(self._actions))
                written.append(path)
            if self._snapshots:
                path = self.data_dir / self._filename(INVENTORY_PREFIX)
                path.write_bytes(_snapshots_adapter.dump_json(self._snapshots))
                written.append(path)
        except OSError as e:
            logger.error("Error spilling telemetry to %s: %s", self.data_dir, e)
            return False

        previous = self._own_spills
        self._own_spills = written
        for path in previous:
            path.unlink(missing_ok=True)
        return True

    def _remove_own_spills(self) -> None:
        for path in self._own_spills:
            path.unlink(missing_ok=True)
        self._own_spills = []

    def spill_files(self) -> list[Path]:
        return sorted(p for p in self.data_dir.glob("*_backup_pid*.json") if _SPILL_RE.match(p.name))

    def _release_stale_claims(self) -> None:
        """Put back files claimed by a recovery that died before finishing."""
        for path in self.data_dir.glob("*_backup_pid*.json.claim*"):
            match = _CLAIM_RE.match(path.name)
            if not match:
                continue
            claimer = int(match.group(2))
            if claimer != self.pid and pid_alive(claimer):
                continue
            try:
                path.rename(path.with_name(match.group(1)))
            except FileNotFoundError:
                continue

    def recover_from_files(self) -> int:
        """Load every recoverable spill file into memory and delete it.

        Files written by another process that is still alive belong to that
        process and are left alone. Each file is claimed with an atomic
        rename before it is read, so two workers starting together never
        load the same file twice.
        """
        self._release_stale_claims()
        recovered = 0
        for path in self.spill_files():
            match = _SPILL_RE.match(path.name)
            kind, pid = match.group(1), int(match.group(2))
            if pid != self.pid and pid_alive(pid):
                logger.debug("Skipping %s: owner pid %d is alive", path.name, pid)
                continue
            if path in self._own_spills:
                continue
            claimed = path.with_name(f"{path.name}.claim{self.pid}")
            try:
                path.rename(claimed)
            except FileNotFoundError:
                # Another worker claimed it first.
                continue
            try:
                content = claimed.read_bytes()
                if kind == "action":
                    records = _actions_adapter.validate_json(content)
                    self._actions.extend(records)
                else:
                    records = _snapshots_adapter.validate_json(content)
                    self._snapshots.extend(records)
            except ValueError as e:
                logger.error("Unreadable spill file %s left in place: %s", path.name, e)
                claimed.rename(path)
                continue
            claimed.unlink(missing_ok=True)
            recovered += len(records)

        if recovered:
            logger.info("Recovered %d inventory snapshots and %d action logs from backup files",
                        len(self._snapshots), len(self._actions))
        return recovered

    def stats(self) -> dict[str, Any]:
        return {
            "action_logs": len(self._actions),
            "inventory_snapshots": len(self._snapshots),
            "last_flush": self.last_flush.isoformat() if self.last_flush else None,
            "spill_files": len(self.spill_files()) if self.data_dir.is_dir() else 0,
        }
