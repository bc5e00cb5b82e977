"""Agent lifecycle: spawning executors on tasks, self-finalization, and teardown."""

import json
import logging
import os
import shlex
import shutil
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from workgraph.core.executors import TemplateVars, load_executor
from workgraph.core.loops import parse_delay
from workgraph.core.process import KILL, TERMINATE, PosixProcessControl, ProcessControl
from workgraph.core.registry import AgentRegistry
from workgraph.core.tasks import check_claimable, claim_task, done_task, fail_task, submit_task
from workgraph.db.engine import get_graph, graph_path, mutate_graph, save_graph
from workgraph.db.models import AgentEntry, AgentStatus, Status, now_iso
from workgraph.errors import (
    InvalidTransitionError,
    ProcessError,
    ValidationError,
    WorkgraphError,
    best_effort,
)
from workgraph.integrations.coordinator import notify_graph_changed

logger = logging.getLogger(__name__)

DEFAULT_WAIT_SECS = 5
HEARTBEAT_EVERY_SECS = 60


def agents_root(wg_dir: Path) -> Path:
    return Path(wg_dir) / "agents"


def agent_dir(wg_dir: Path, agent_id: str) -> Path:
    return agents_root(wg_dir) / agent_id


def project_root(wg_dir: Path) -> Path:
    return Path(wg_dir).resolve().parent


def _wg_command() -> str:
    """How the wrapper script invokes this CLI, independent of PATH."""
    return f"{shlex.quote(sys.executable)} -m workgraph.cli"


# ── Wrapper Script ───────────────────────────────────────────────────────────


def build_wrapper_script(
    task_id: str,
    agent_id: str,
    argv: list[str],
    output_file: Path,
    prompt_file: Path | None = None,
    timeout: str | None = None,
) -> str:
    """Shell script that runs the agent and finalizes the task if the agent didn't."""
    command = shlex.join(argv)
    if timeout:
        command = f"timeout --signal=TERM {shlex.quote(timeout)} {command}"
    if prompt_file is not None:
        command += f" < {shlex.quote(str(prompt_file))}"
    wg = _wg_command()
    q_task = shlex.quote(task_id)
    q_agent = shlex.quote(agent_id)
    q_out = shlex.quote(str(output_file))
    return (
        "#!/bin/bash\n"
        f"# workgraph agent {agent_id} for task {task_id}\n"
        "unset CLAUDECODE CLAUDE_CODE_ENTRYPOINT\n"
        f"( while sleep {HEARTBEAT_EVERY_SECS}; do {wg} heartbeat {q_agent} >/dev/null 2>&1; done ) &\n"
        "HEARTBEAT_PID=$!\n"
        f"{command} >> {q_out} 2>&1\n"
        "EXIT_CODE=$?\n"
        "kill $HEARTBEAT_PID 2>/dev/null\n"
        f"{wg} finalize {q_task} {q_agent} \"$EXIT_CODE\" >> {q_out} 2>&1\n"
        "exit $EXIT_CODE\n"
    )


# ── Spawn ────────────────────────────────────────────────────────────────────


@dataclass
class SpawnResult:
    agent_id: str
    pid: int
    task_id: str
    executor: str
    output_file: str

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "pid": self.pid,
            "task_id": self.task_id,
            "executor": self.executor,
            "output_file": self.output_file,
        }


def _rollback_claim(wg_dir: Path, task_id: str, agent_id: str, error: Exception):
    with mutate_graph(wg_dir) as graph:
        task = graph.get_task(task_id)
        if task is not None and task.status == Status.IN_PROGRESS and task.assigned == agent_id:
            task.status = Status.OPEN
            task.assigned = None
            task.started_at = None
            task.add_log(f"Spawn of {agent_id} failed, claim rolled back: {error}")


def spawn_agent(
    wg_dir: Path,
    task_id: str,
    executor: str = "claude",
    model: str | None = None,
    timeout: str | None = None,
    force: bool = False,
    process: ProcessControl | None = None,
) -> SpawnResult:
    """Claim a task and launch an executor on it as a detached agent process."""
    process = process or PosixProcessControl()
    wg_dir = Path(wg_dir)
    graph = get_graph(wg_dir)
    task = graph.require_task(task_id)
    check_claimable(task)
    if task.paused and not force:
        raise InvalidTransitionError(
            f"Task '{task_id}' is paused. Use 'wg resume {task_id}' or --force."
        )

    config = load_executor(wg_dir, executor)
    if config.executor_type == "shell" and not task.exec:
        raise ValidationError(
            f"Task '{task_id}' has no exec command; the shell executor needs one"
        )
    timeout = timeout or config.timeout
    if timeout and parse_delay(timeout) is None:
        raise ValidationError(f"Invalid timeout '{timeout}'. Use format: 30s, 5m, 1h")
    model = model or task.model

    template_vars = TemplateVars.from_task(graph, task, project_root(wg_dir))
    settings = config.apply(template_vars)
    workdir = Path(settings.working_dir) if settings.working_dir else project_root(wg_dir)
    if not workdir.is_dir():
        workdir = project_root(wg_dir)

    with AgentRegistry.locked(wg_dir) as registry:
        agent_id = registry.reserve_id()

    out_dir = agent_dir(wg_dir, agent_id)
    out_dir.mkdir(parents=True, exist_ok=True)
    output_file = out_dir / "output.log"
    output_file.touch()

    argv, use_prompt = settings.command_line(task, model)
    prompt_file = None
    if use_prompt:
        prompt_file = out_dir / "prompt.txt"
        prompt_file.write_text(settings.prompt_template, encoding="utf-8")

    script = out_dir / "run.sh"
    script.write_text(
        build_wrapper_script(task_id, agent_id, argv, output_file, prompt_file, timeout)
    )
    script.chmod(0o755)

    # Claim first so a concurrent spawn on the same task sees it taken.
    try:
        with mutate_graph(wg_dir) as graph:
            claimed = claim_task(graph, task_id, agent_id)
            claimed.add_log(f"Spawned by wg spawn --executor {executor}", agent_id)
    except WorkgraphError:
        shutil.rmtree(out_dir, ignore_errors=True)
        raise

    env = {
        **os.environ,
        **settings.env,
        "WG_TASK_ID": task_id,
        "WG_AGENT_ID": agent_id,
        "WG_DIR": str(wg_dir.resolve()),
    }
    try:
        pid = process.spawn(["bash", str(script)], env, workdir, output_file)
    except ProcessError as e:
        logger.warning("Spawn failed for task '%s', rolling back claim: %s", task_id, e)
        _rollback_claim(wg_dir, task_id, agent_id, e)
        raise

    with AgentRegistry.locked(wg_dir) as registry:
        registry.register(pid, task_id, executor, str(output_file), agent_id=agent_id)

    metadata = {
        "agent_id": agent_id,
        "pid": pid,
        "task_id": task_id,
        "executor": executor,
        "model": model,
        "started_at": now_iso(),
        "timeout": timeout,
    }
    (out_dir / "metadata.json").write_text(json.dumps(metadata, indent=2))

    logger.info("Spawned %s (PID %s) for task '%s'", agent_id, pid, task_id)
    notify_graph_changed(wg_dir)
    return SpawnResult(
        agent_id=agent_id,
        pid=pid,
        task_id=task_id,
        executor=executor,
        output_file=str(output_file),
    )


# ── Finalize ─────────────────────────────────────────────────────────────────


def capture_output(wg_dir: Path, task_id: str, agent_id: str) -> Path | None:
    source = agent_dir(wg_dir, agent_id) / "output.log"
    if not source.exists():
        return None
    target_dir = Path(wg_dir) / "output" / task_id
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / f"{agent_id}.log"
    shutil.copyfile(source, target)
    return target


def finalize_agent(wg_dir: Path, task_id: str, agent_id: str, exit_code: int) -> str | None:
    """Settle a task after its agent exits, if the agent left it in progress.

    Returns the new task status, or None when the agent had already finalized
    the task itself (or it was unclaimed in the meantime).
    """
    wg_dir = Path(wg_dir)
    graph = get_graph(wg_dir)
    task = graph.get_task(task_id)
    outcome = None
    if task is not None and task.status == Status.IN_PROGRESS:
        if exit_code == 0:
            try:
                if task.verify:
                    submit_task(graph, task_id, agent_id)
                else:
                    done_task(graph, task_id, agent_id)
            except InvalidTransitionError as e:
                fail_task(graph, task_id, f"Agent exited 0 but task could not be completed: {e}")
        else:
            fail_task(graph, task_id, f"Agent exited with code {exit_code}")
        outcome = task.status
        save_graph(graph, graph_path(wg_dir))
        logger.info("Agent %s finalized task '%s' as %s", agent_id, task_id, outcome)

    with best_effort("agent status update"):
        with AgentRegistry.locked(wg_dir) as registry:
            if registry.get(agent_id) is not None:
                status = AgentStatus.DONE if exit_code == 0 else AgentStatus.FAILED
                registry.set_status(agent_id, status)

    with best_effort("output capture"):
        capture_output(wg_dir, task_id, agent_id)

    if outcome is not None:
        notify_graph_changed(wg_dir)
    return outcome


# ── Kill ─────────────────────────────────────────────────────────────────────


def kill_process_graceful(
    process: ProcessControl,
    pid: int,
    wait_secs: int = DEFAULT_WAIT_SECS,
    sleep: Callable[[float], None] = time.sleep,
):
    """SIGTERM, wait up to ``wait_secs``, then SIGKILL. A vanished process is success."""
    if not process.is_alive(pid):
        return
    if not process.signal(pid, TERMINATE):
        return
    for _ in range(wait_secs):
        sleep(1)
        if not process.is_alive(pid):
            return
    logger.info("PID %s ignored SIGTERM for %ss, sending SIGKILL", pid, wait_secs)
    process.signal(pid, KILL)


def kill_process_force(process: ProcessControl, pid: int):
    if process.is_alive(pid):
        process.signal(pid, KILL)


def _unclaim_after_kill(wg_dir: Path, entry: AgentEntry) -> bool:
    """Re-open the agent's task if it is still in progress. Returns True if it was."""
    graph = get_graph(wg_dir)
    task = graph.get_task(entry.task_id)
    if task is None or task.status != Status.IN_PROGRESS:
        return False
    task.status = Status.OPEN
    task.assigned = None
    task.add_log(f"Task unclaimed: agent '{entry.id}' was killed")
    save_graph(graph, graph_path(wg_dir))
    return True


@dataclass
class KillResult:
    agent_id: str
    pid: int
    task_id: str
    task_unclaimed: bool


def _terminate(process: ProcessControl, entry: AgentEntry, force: bool, wait_secs: int, sleep):
    if force:
        kill_process_force(process, entry.pid)
    else:
        kill_process_graceful(process, entry.pid, wait_secs, sleep)


def kill_agent(
    wg_dir: Path,
    agent_id: str,
    force: bool = False,
    process: ProcessControl | None = None,
    wait_secs: int = DEFAULT_WAIT_SECS,
    sleep: Callable[[float], None] = time.sleep,
) -> KillResult:
    """Stop an agent's process, release its task and drop it from the registry."""
    process = process or PosixProcessControl()
    with AgentRegistry.locked(wg_dir) as registry:
        entry = registry.require(agent_id)
        if entry.is_alive:
            registry.set_status(agent_id, AgentStatus.STOPPING)

    _terminate(process, entry, force, wait_secs, sleep)
    unclaimed = _unclaim_after_kill(wg_dir, entry)

    with AgentRegistry.locked(wg_dir) as registry:
        registry.unregister(agent_id)

    logger.info("Killed %s (PID %s), task '%s' unclaimed=%s", agent_id, entry.pid, entry.task_id, unclaimed)
    notify_graph_changed(wg_dir)
    return KillResult(agent_id=agent_id, pid=entry.pid, task_id=entry.task_id, task_unclaimed=unclaimed)


@dataclass
class KillAllResult:
    killed: list[KillResult] = field(default_factory=list)
    errors: list[tuple[str, str]] = field(default_factory=list)


def kill_all_agents(
    wg_dir: Path,
    force: bool = False,
    process: ProcessControl | None = None,
    wait_secs: int = DEFAULT_WAIT_SECS,
    sleep: Callable[[float], None] = time.sleep,
) -> KillAllResult:
    """Kill every alive agent, carrying on past individual failures.

    An agent's registry entry is only removed once its task has been released,
    so a failed unclaim never loses the link between a task and its process.
    """
    process = process or PosixProcessControl()
    result = KillAllResult()
    with AgentRegistry.locked(wg_dir) as registry:
        alive = registry.list_alive()
        for entry in alive:
            registry.set_status(entry.id, AgentStatus.STOPPING)

    for entry in alive:
        try:
            _terminate(process, entry, force, wait_secs, sleep)
        except WorkgraphError as e:
            result.errors.append((entry.id, str(e)))
            continue
        try:
            unclaimed = _unclaim_after_kill(wg_dir, entry)
        except WorkgraphError as e:
            result.errors.append((entry.id, f"failed to unclaim '{entry.task_id}': {e}"))
            continue
        with AgentRegistry.locked(wg_dir) as registry:
            registry.unregister(entry.id)
        result.killed.append(
            KillResult(agent_id=entry.id, pid=entry.pid, task_id=entry.task_id, task_unclaimed=unclaimed)
        )

    if result.killed:
        notify_graph_changed(wg_dir)
    return result


# ── Dead Agents ──────────────────────────────────────────────────────────────


def find_dead_agents(
    wg_dir: Path, timeout: timedelta, process: ProcessControl | None = None
) -> list[AgentEntry]:
    """Alive agents with a stale heartbeat, or whose process has disappeared."""
    process = process or PosixProcessControl()
    registry = AgentRegistry.load(wg_dir)
    dead = registry.find_dead(timeout)
    seen = {a.id for a in dead}
    for entry in registry.list_alive():
        if entry.id not in seen and not process.is_alive(entry.pid):
            dead.append(entry)
    return dead


@dataclass
class CleanupResult:
    dead: list[AgentEntry] = field(default_factory=list)
    unclaimed: list[str] = field(default_factory=list)


def cleanup_dead_agents(
    wg_dir: Path, timeout: timedelta, process: ProcessControl | None = None
) -> CleanupResult:
    """Mark dead agents and release the tasks they were holding."""
    result = CleanupResult(dead=find_dead_agents(wg_dir, timeout, process))
    if not result.dead:
        return result

    with AgentRegistry.locked(wg_dir) as registry:
        for entry in result.dead:
            if registry.get(entry.id) is not None:
                registry.set_status(entry.id, AgentStatus.DEAD)

    graph = get_graph(wg_dir)
    for entry in result.dead:
        task = graph.get_task(entry.task_id)
        if task is not None and task.status == Status.IN_PROGRESS and task.assigned == entry.id:
            task.status = Status.OPEN
            task.assigned = None
            task.add_log(f"Task unclaimed: agent '{entry.id}' died")
            result.unclaimed.append(task.id)
    if result.unclaimed:
        save_graph(graph, graph_path(wg_dir))
        notify_graph_changed(wg_dir)
    return result


def remove_dead_agents(wg_dir: Path) -> list[str]:
    with AgentRegistry.locked(wg_dir) as registry:
        dead = [a.id for a in registry.list_agents() if a.status == AgentStatus.DEAD]
        for agent_id in dead:
            registry.unregister(agent_id)
    return dead
