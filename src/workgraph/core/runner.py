"""Autonomous agent loop: wake, check for ready work, do it, sleep."""

import json
import logging
import subprocess
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from pathlib import Path

from workgraph.core.heartbeat import record_actor_heartbeat
from workgraph.core.query import ready_tasks
from workgraph.core.tasks import claim_task, done_task, fail_task, submit_task
from workgraph.db.engine import WorkGraph, atomic_write_text, get_graph, mutate_graph
from workgraph.db.models import Actor, Task, now_iso
from workgraph.errors import InvalidTransitionError, StorageError

logger = logging.getLogger(__name__)

COMPLETED = "completed"
FAILED = "failed"
IDLE = "idle"
CLAIMED = "claimed"
SUBMITTED = "submitted"


def state_path(wg_dir: Path, actor_id: str) -> Path:
    return Path(wg_dir) / "agents" / "state" / f"{actor_id}.json"


@dataclass
class RunnerState:
    """Lifetime counters for one actor, persisted across runs."""

    actor_id: str
    total_tasks_completed: int = 0
    total_tasks_failed: int = 0
    total_iterations: int = 0
    total_idle_iterations: int = 0
    session_count: int = 0
    first_run: str | None = None
    last_run: str | None = None
    task_history: list[dict] = field(default_factory=list)

    @classmethod
    def load(cls, wg_dir: Path, actor_id: str) -> "RunnerState":
        path = state_path(wg_dir, actor_id)
        if not path.exists():
            return cls(actor_id=actor_id, first_run=now_iso())
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})
        except (OSError, json.JSONDecodeError, TypeError) as e:
            raise StorageError(f"Failed to load runner state from {path}: {e}") from e

    def save(self, wg_dir: Path):
        atomic_write_text(state_path(wg_dir, self.actor_id), json.dumps(asdict(self), indent=2) + "\n")

    def record(self, task_id: str, outcome: str, reason: str | None = None):
        if outcome in (COMPLETED, SUBMITTED):
            self.total_tasks_completed += 1
        else:
            self.total_tasks_failed += 1
        entry = {"task_id": task_id, "outcome": outcome, "timestamp": now_iso()}
        if reason:
            entry["failure_reason"] = reason
        self.task_history.append(entry)


def reset_state(wg_dir: Path, actor_id: str) -> bool:
    path = state_path(wg_dir, actor_id)
    if path.exists():
        path.unlink()
        return True
    return False


@dataclass
class IterationResult:
    outcome: str
    task_id: str | None = None
    reason: str | None = None
    output: str = ""


def select_task(graph: WorkGraph, actor: Actor | None) -> Task | None:
    """First ready, unpaused task, preferring ones whose skills the actor covers."""
    candidates = [t for t in ready_tasks(graph) if not t.paused]
    if not candidates:
        return None
    if actor is not None and actor.capabilities:
        capable = set(actor.capabilities)
        for task in candidates:
            if task.skills and set(task.skills) <= capable:
                return task
    return candidates[0]


class AgentRunner:
    """WAKE -> CHECK -> WORK -> SLEEP until ``once`` or ``max_tasks`` stops it."""

    def __init__(
        self,
        wg_dir: Path,
        actor_id: str,
        interval: int = 10,
        max_tasks: int | None = None,
        once: bool = False,
        sleep: Callable[[float], None] = time.sleep,
        report: Callable[[str], None] | None = None,
    ):
        self.wg_dir = Path(wg_dir)
        self.actor_id = actor_id
        self.interval = interval
        self.max_tasks = max_tasks
        self.once = once
        self.sleep = sleep
        self.report = report or (lambda message: None)
        self.state = RunnerState.load(self.wg_dir, actor_id)
        self.iterations = 0
        self.tasks_done = 0

    def wake(self):
        with mutate_graph(self.wg_dir) as graph:
            if graph.get_actor(self.actor_id) is not None:
                record_actor_heartbeat(graph, self.actor_id)

    def work(self, task: Task) -> IterationResult:
        with mutate_graph(self.wg_dir) as graph:
            claim_task(graph, task.id, self.actor_id)
        self.report(f"Working on: {task.id} - {task.title}")

        if not task.exec:
            self.report(f"  No exec command, task claimed for external execution. Complete with: wg done {task.id}")
            return IterationResult(CLAIMED, task.id)

        self.report(f"  Executing: {task.exec}")
        proc = subprocess.run(
            ["bash", "-c", task.exec],
            cwd=self.wg_dir.resolve().parent,
            capture_output=True,
            text=True,
        )
        output = (proc.stdout or "") + (proc.stderr or "")
        for line in output.splitlines():
            self.report(f"  | {line}")

        with mutate_graph(self.wg_dir) as graph:
            if proc.returncode != 0:
                reason = f"Exit code {proc.returncode}"
                fail_task(graph, task.id, reason)
                return IterationResult(FAILED, task.id, reason=reason, output=output)
            try:
                if graph.require_task(task.id).verify:
                    submit_task(graph, task.id, self.actor_id)
                    return IterationResult(SUBMITTED, task.id, output=output)
                done_task(graph, task.id, self.actor_id)
                return IterationResult(COMPLETED, task.id, output=output)
            except InvalidTransitionError as e:
                reason = f"Exec succeeded but task could not be completed: {e}"
                fail_task(graph, task.id, reason)
        return IterationResult(FAILED, task.id, reason=reason, output=output)

    def run_iteration(self) -> IterationResult:
        self.wake()
        graph = get_graph(self.wg_dir)
        task = select_task(graph, graph.get_actor(self.actor_id))
        if task is None:
            return IterationResult(IDLE)
        return self.work(task)

    def run(self) -> list[IterationResult]:
        self.state.session_count += 1
        self.state.last_run = now_iso()
        self.state.save(self.wg_dir)
        logger.info("Runner '%s' starting (session #%s)", self.actor_id, self.state.session_count)

        results = []
        try:
            while True:
                self.iterations += 1
                self.state.total_iterations += 1
                result = self.run_iteration()
                results.append(result)

                if result.outcome in (COMPLETED, SUBMITTED, FAILED):
                    self.tasks_done += 1
                    self.state.record(result.task_id, result.outcome, result.reason)
                    self.state.save(self.wg_dir)
                    if result.outcome == COMPLETED:
                        self.report(f"Completed: {result.task_id}")
                    elif result.outcome == SUBMITTED:
                        self.report(f"Submitted for review: {result.task_id}")
                    else:
                        self.report(f"Failed: {result.task_id} - {result.reason}")
                elif result.outcome == IDLE:
                    self.state.total_idle_iterations += 1
                    self.report(f"No work available, sleeping {self.interval}s...")

                if self.max_tasks is not None and self.tasks_done >= self.max_tasks:
                    self.report(f"Reached max tasks limit ({self.max_tasks})")
                    break
                if self.once:
                    break
                self.sleep(self.interval)
        finally:
            self.state.save(self.wg_dir)
        return results
