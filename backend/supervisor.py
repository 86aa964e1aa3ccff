"""Task supervisor: spawns, observes and recovers worker processes.

Each start() inserts a task row, launches

    python -m artifacts_bot.worker <script_name> <character> <args...>

with `control_character` in the environment, and pumps the merged
stdout/stderr into a bounded buffer on a reader thread. The first output
line is the heartbeat (starting → running); process exit maps to stopped
(exit 0, or exit after a stop request) or errored.

recover() runs once when the control plane boots and reconciles rows left
in running/starting by a previous instance. Those workers are not our
children, so poll() re-checks them by pid.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import threading
from collections import deque
from pathlib import Path
from typing import Callable

from artifacts_bot.loops import CATALOG
from artifacts_bot.models import TaskRecord, TaskState
from artifacts_bot.procs import pid_alive

from .tasks import FINISHED_STATES, TaskNotFound, TaskStore

logger = logging.getLogger(__name__)

ROOT = Path(__file__).parent.parent
OUTPUT_LINES = 1000
STOP_GRACE = 10.0

_supervisor: Supervisor | None = None


class _Worker:
    def __init__(self, task_id: int, character: str, proc: subprocess.Popen, buffer_lines: int) -> None:
        self.task_id = task_id
        self.character = character
        self.proc = proc
        self.output: deque[str] = deque(maxlen=buffer_lines)
        self.heartbeat = False
        self.reader: threading.Thread | None = None


class Supervisor:
    def __init__(
        self,
        store: TaskStore,
        python: str = sys.executable,
        cwd: Path = ROOT,
        env: dict[str, str] | None = None,
        grace: float = STOP_GRACE,
        buffer_lines: int = OUTPUT_LINES,
        spawn: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> None:
        self.store = store
        self.python = python
        self.cwd = cwd
        self.env = dict(env or {})
        self.grace = grace
        self.buffer_lines = buffer_lines
        self._spawn = spawn
        self._workers: dict[str, _Worker] = {}
        self._timers: list[threading.Timer] = []
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    def command(self, character: str, script_name: str, args: list[str]) -> list[str]:
        return [self.python, "-m", "artifacts_bot.worker", script_name, character, *args]

    def start(
        self,
        character: str,
        task_type: str,
        script_name: str,
        args: list[str] | None = None,
    ) -> TaskRecord:
        """Start a worker. Raises TaskConflict if the character is busy."""
        if script_name not in CATALOG:
            raise ValueError(f"Unknown loop: {script_name}")
        args = list(args or [])
        with self._lock:
            task = self.store.create(character, task_type, script_name, args)
            env = {**os.environ, **self.env, "control_character": character, "PYTHONUNBUFFERED": "1"}
            try:
                proc = self._spawn(
                    self.command(character, script_name, args),
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    bufsize=1,
                    cwd=self.cwd,
                    env=env,
                )
            except OSError as e:
                logger.error("Failed to spawn %s for %s: %s", script_name, character, e)
                return self.store.transition(task.id, TaskState.errored, error_message=f"Spawn failed: {e}")

            task = self.store.set_process_id(task.id, proc.pid)
            worker = _Worker(task.id, character, proc, self.buffer_lines)
            self._workers[character] = worker
            worker.reader = threading.Thread(
                target=self._pump, args=(worker,), name=f"worker-{character}", daemon=True,
            )
            worker.reader.start()
            logger.info("Started %s for %s (pid %d)", script_name, character, proc.pid)
            return task

    def stop(self, character: str) -> TaskRecord:
        """Ask the character's worker to stop: SIGTERM, then SIGKILL after the grace period."""
        with self._lock:
            task = self.store.active(character)
            if task is None:
                raise TaskNotFound(f"No active task for {character}")
            if task.state != TaskState.stopping:
                task = self.store.transition(task.id, TaskState.stopping)
            worker = self._workers.get(character)

        if worker is not None and worker.task_id == task.id:
            if worker.proc.poll() is None:
                worker.proc.send_signal(signal.SIGTERM)
                self._escalate(lambda: worker.proc.poll() is None, worker.proc.kill)
        elif task.process_id and pid_alive(task.process_id):
            # Adopted from a previous control-plane run: not our child.
            pid = task.process_id
            os.kill(pid, signal.SIGTERM)
            self._escalate(lambda: pid_alive(pid), lambda: os.kill(pid, signal.SIGKILL))
        else:
            task = self.store.transition(task.id, TaskState.stopped, process_id=None)
        return task

    def _escalate(self, still_running: Callable[[], bool], kill: Callable[[], None]) -> None:
        def check() -> None:
            if still_running():
                logger.warning("Worker ignored SIGTERM for %.0fs, killing", self.grace)
                try:
                    kill()
                except ProcessLookupError:
                    pass
        timer = threading.Timer(self.grace, check)
        timer.daemon = True
        self._timers.append(timer)
        timer.start()

    # ------------------------------------------------------------------
    # Worker observation
    # ------------------------------------------------------------------

    def _pump(self, worker: _Worker) -> None:
        for line in worker.proc.stdout:
            worker.output.append(line.rstrip("\n"))
            if not worker.heartbeat:
                worker.heartbeat = True
                self._on_heartbeat(worker)
        self._on_exit(worker, worker.proc.wait())

    def _on_heartbeat(self, worker: _Worker) -> None:
        with self._lock:
            task = self.store.get(worker.task_id)
            if task.state == TaskState.starting:
                self.store.transition(task.id, TaskState.running)

    def _on_exit(self, worker: _Worker, code: int) -> None:
        logger.info("Task %d (%s) exited with code %s", worker.task_id, worker.character, code)
        with self._lock:
            task = self.store.get(worker.task_id)
            if task.state in FINISHED_STATES:
                return
            if task.state == TaskState.starting:
                self.store.transition(task.id, TaskState.errored, process_id=None,
                                      error_message=f"Process exited with code {code} before starting")
            elif code == 0 or task.state == TaskState.stopping:
                self.store.transition(task.id, TaskState.stopped, process_id=None)
            else:
                self.store.transition(task.id, TaskState.errored, process_id=None,
                                      error_message=f"Process exited with code {code}")

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def recover(self) -> list[TaskRecord]:
        """Reconcile tasks a previous control plane left running or starting."""
        recovered: list[TaskRecord] = []
        with self._lock:
            for task in self.store.in_states([TaskState.running, TaskState.starting]):
                if task.process_id and pid_alive(task.process_id):
                    if task.state == TaskState.starting:
                        task = self.store.transition(task.id, TaskState.running)
                    recovered.append(self.store.transition(task.id, TaskState.recovered))
                else:
                    recovered.append(self.store.transition(
                        task.id, TaskState.errored, process_id=None,
                        error_message="Process not found during recovery",
                    ))
        if recovered:
            logger.info("Recovered %d tasks: %s", len(recovered),
                        ", ".join(f"{t.character}={t.state.value}" for t in recovered))
        return recovered

    def poll(self) -> list[TaskRecord]:
        """Re-check tasks we do not own a process handle for."""
        changed: list[TaskRecord] = []
        with self._lock:
            for task in self.store.in_states([TaskState.recovered, TaskState.stopping]):
                worker = self._workers.get(task.character)
                if worker is not None and worker.task_id == task.id:
                    continue
                alive = pid_alive(task.process_id)
                if task.state == TaskState.recovered:
                    if alive:
                        changed.append(self.store.transition(task.id, TaskState.running))
                    else:
                        changed.append(self.store.transition(
                            task.id, TaskState.errored, process_id=None,
                            error_message="Process disappeared after recovery",
                        ))
                elif not alive:
                    changed.append(self.store.transition(task.id, TaskState.stopped, process_id=None))
        return changed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self, character: str) -> TaskRecord | None:
        return self.store.latest(character)

    def list_tasks(self, character: str | None = None, limit: int = 10) -> list[TaskRecord]:
        return self.store.list_tasks(character, limit)

    def output(self, character: str) -> list[str]:
        worker = self._workers.get(character)
        return list(worker.output) if worker else []

    def close(self) -> None:
        """Cancel pending SIGKILL escalations. Workers keep running."""
        for timer in self._timers:
            timer.cancel()
        self._timers = []


def init_supervisor(supervisor: Supervisor) -> Supervisor:
    global _supervisor
    _supervisor = supervisor
    return _supervisor


def get_supervisor() -> Supervisor:
    assert _supervisor is not None, "Call init_supervisor() before using the supervisor"
    return _supervisor
