"""Persistent task table for the supervisor (character_tasks).

State machine, forward-only except recovered → running:

    idle → starting → running ↔ recovered
               ↓         ↓
            errored   stopping → stopped

A character may have at most one task in an active state (starting, running,
recovered, stopping); create() refuses a second one with TaskConflict.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Iterable

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Engine

from artifacts_bot.db import character_tasks, init_db
from artifacts_bot.models import TaskRecord, TaskState, utc_now

logger = logging.getLogger(__name__)

ACTIVE_STATES = frozenset({TaskState.starting, TaskState.running, TaskState.recovered, TaskState.stopping})
FINISHED_STATES = frozenset({TaskState.stopped, TaskState.errored})

TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.idle: frozenset({TaskState.starting}),
    TaskState.starting: frozenset({TaskState.running, TaskState.errored, TaskState.stopping}),
    TaskState.running: frozenset({TaskState.recovered, TaskState.stopping, TaskState.stopped, TaskState.errored}),
    TaskState.recovered: frozenset({TaskState.running, TaskState.stopping, TaskState.stopped, TaskState.errored}),
    TaskState.stopping: frozenset({TaskState.stopped, TaskState.errored}),
    TaskState.stopped: frozenset(),
    TaskState.errored: frozenset(),
}

_UNSET: Any = object()


class TaskConflict(Exception):
    """The character already has an active task."""


class TaskNotFound(LookupError):
    pass


class InvalidTransition(ValueError):
    pass


class TaskStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        init_db(engine)

    # -- reads --------------------------------------------------------------

    def _one(self, stmt) -> TaskRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(stmt).mappings().first()
        return TaskRecord.model_validate(dict(row)) if row else None

    def _many(self, stmt) -> list[TaskRecord]:
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [TaskRecord.model_validate(dict(row)) for row in rows]

    def get(self, task_id: int) -> TaskRecord:
        task = self._one(select(character_tasks).where(character_tasks.c.id == task_id))
        if task is None:
            raise TaskNotFound(f"Task {task_id} not found")
        return task

    def latest(self, character: str) -> TaskRecord | None:
        return self._one(
            select(character_tasks)
            .where(character_tasks.c.character == character)
            .order_by(character_tasks.c.id.desc())
            .limit(1)
        )

    def active(self, character: str) -> TaskRecord | None:
        return self._one(
            select(character_tasks)
            .where(character_tasks.c.character == character)
            .where(character_tasks.c.state.in_([s.value for s in ACTIVE_STATES]))
            .order_by(character_tasks.c.id.desc())
            .limit(1)
        )

    def in_states(self, states: Iterable[TaskState]) -> list[TaskRecord]:
        return self._many(
            select(character_tasks)
            .where(character_tasks.c.state.in_([TaskState(s).value for s in states]))
            .order_by(character_tasks.c.id)
        )

    def list_tasks(self, character: str | None = None, limit: int = 10) -> list[TaskRecord]:
        stmt = select(character_tasks).order_by(character_tasks.c.id.desc()).limit(limit)
        if character:
            stmt = stmt.where(character_tasks.c.character == character)
        return self._many(stmt)

    # -- writes -------------------------------------------------------------

    def create(
        self,
        character: str,
        task_type: str,
        script_name: str,
        script_args: list[str] | None = None,
        task_data: dict[str, Any] | None = None,
    ) -> TaskRecord:
        """Insert a task in `starting`. Raises TaskConflict if one is active."""
        existing = self.active(character)
        if existing is not None:
            raise TaskConflict(
                f"{character} already has task {existing.id} in state {existing.state.value}"
            )
        now = utc_now()
        with self.engine.begin() as conn:
            task_id = conn.execute(
                insert(character_tasks).values(
                    character=character,
                    task_type=task_type,
                    script_name=script_name,
                    script_args=list(script_args or []),
                    state=TaskState.starting.value,
                    task_data=dict(task_data or {}),
                    last_updated=now,
                    created_at=now,
                )
            ).inserted_primary_key[0]
        logger.info("Created task %d for %s (%s)", task_id, character, script_name)
        return self.get(task_id)

    def transition(
        self,
        task_id: int,
        new_state: TaskState,
        *,
        process_id: int | None = _UNSET,
        error_message: str | None = None,
    ) -> TaskRecord:
        task = self.get(task_id)
        new_state = TaskState(new_state)
        if new_state not in TRANSITIONS[task.state]:
            raise InvalidTransition(f"Task {task_id}: {task.state.value} → {new_state.value} not allowed")

        now = utc_now()
        values: dict[str, Any] = {"state": new_state.value, "last_updated": now}
        if new_state == TaskState.running and task.state == TaskState.starting:
            values["start_time"] = now
        if process_id is not _UNSET:
            values["process_id"] = process_id
        if error_message is not None:
            values["error_message"] = error_message
        with self.engine.begin() as conn:
            conn.execute(update(character_tasks).where(character_tasks.c.id == task_id).values(**values))
        logger.info("Task %d (%s): %s → %s", task_id, task.character, task.state.value, new_state.value)
        return self.get(task_id)

    def set_process_id(self, task_id: int, process_id: int | None) -> TaskRecord:
        with self.engine.begin() as conn:
            conn.execute(
                update(character_tasks)
                .where(character_tasks.c.id == task_id)
                .values(process_id=process_id, last_updated=utc_now())
            )
        return self.get(task_id)

    def cleanup_old_tasks(self, days: int = 7) -> int:
        """Delete finished tasks older than `days`, keeping each character's latest row."""
        cutoff = utc_now() - timedelta(days=days)
        latest_ids = select(func.max(character_tasks.c.id)).group_by(character_tasks.c.character)
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(character_tasks)
                .where(character_tasks.c.state.in_([s.value for s in FINISHED_STATES]))
                .where(character_tasks.c.last_updated < cutoff)
                .where(character_tasks.c.id.not_in(latest_ids))
            )
        if result.rowcount:
            logger.info("Cleaned up %d old tasks", result.rowcount)
        return result.rowcount
