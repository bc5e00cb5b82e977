"""Task management: creation, editing and the status state machine."""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from workgraph.core.loops import evaluate_loop_edges, parse_delay, parse_guard
from workgraph.db.engine import WorkGraph
from workgraph.db.models import Estimate, LoopEdge, Status, Task, now_iso, parse_timestamp
from workgraph.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ResourceExhaustedError,
    ValidationError,
)

# Blockers in these states still hold up completion.
_UNRESOLVED = frozenset({Status.OPEN, Status.IN_PROGRESS, Status.BLOCKED, Status.PENDING_REVIEW})


def slugify(title: str) -> str:
    """Slug from the first three words of a title."""
    words = [w for w in re.split(r"[^0-9a-z]+", title.lower()) if w]
    return "-".join(words[:3])


def _unique_id(graph: WorkGraph, base: str) -> str:
    if base not in graph:
        return base
    i = 2
    while True:
        candidate = f"{base}-{i}"
        if candidate not in graph:
            return candidate
        i += 1


def unresolved_blockers(graph: WorkGraph, task: Task) -> list[str]:
    """Blocker ids that prevent ``task`` from being completed."""
    pending = []
    for blocker_id in task.blocked_by:
        blocker = graph.get_task(blocker_id)
        if blocker is not None and blocker.status in _UNRESOLVED:
            pending.append(blocker_id)
    return pending


def _check_blockers(graph: WorkGraph, task: Task, verb: str):
    pending = unresolved_blockers(graph, task)
    if pending:
        raise InvalidTransitionError(
            f"Cannot {verb} '{task.id}': blocked by {len(pending)} unresolved task(s): "
            f"{', '.join(pending)}"
        )


# ── Creation & editing ───────────────────────────────────────────────────────


def create_task(
    graph: WorkGraph,
    title: str,
    task_id: str | None = None,
    description: str | None = None,
    blocked_by: list[str] | None = None,
    hours: float | None = None,
    cost: float | None = None,
    tags: list[str] | None = None,
    skills: list[str] | None = None,
    inputs: list[str] | None = None,
    deliverables: list[str] | None = None,
    requires: list[str] | None = None,
    max_retries: int | None = None,
    model: str | None = None,
    verify: str | None = None,
    exec_cmd: str | None = None,
    assign: str | None = None,
) -> Task:
    """Create a new Open task and link it to its blockers."""
    if not title or not title.strip():
        raise ValidationError("Task title must not be empty")

    if task_id:
        if task_id in graph:
            raise ConflictError(f"Task with ID '{task_id}' already exists")
    else:
        task_id = _unique_id(graph, slugify(title) or "task")

    blocked_by = list(dict.fromkeys(blocked_by or []))
    for dep_id in blocked_by:
        if graph.get_task(dep_id) is None:
            raise NotFoundError(f"Blocker task not found: {dep_id}")
    for res_id in requires or []:
        if graph.get_resource(res_id) is None:
            raise NotFoundError(f"Resource not found: {res_id}")

    estimate = Estimate(hours=hours, cost=cost) if hours is not None or cost is not None else None
    task = Task(
        id=task_id,
        title=title.strip(),
        description=description,
        assigned=assign,
        estimate=estimate,
        blocked_by=blocked_by,
        requires=list(requires or []),
        tags=list(tags or []),
        skills=list(skills or []),
        inputs=list(inputs or []),
        deliverables=list(deliverables or []),
        max_retries=max_retries,
        model=model,
        verify=verify,
        exec=exec_cmd,
        created_at=now_iso(),
    )
    graph.add_node(task)
    for dep_id in blocked_by:
        blocker = graph.get_task(dep_id)
        if task_id not in blocker.blocks:
            blocker.blocks.append(task_id)
    return task


def add_dependency(graph: WorkGraph, task_id: str, blocker_id: str) -> Task:
    """Make ``task_id`` wait on ``blocker_id``, keeping both edge lists in sync."""
    task = graph.require_task(task_id)
    blocker = graph.get_task(blocker_id)
    if blocker is None:
        raise NotFoundError(f"Blocker task not found: {blocker_id}")
    if blocker_id == task_id:
        raise ValidationError(f"Task '{task_id}' cannot block itself")
    if blocker_id not in task.blocked_by:
        task.blocked_by.append(blocker_id)
    if task_id not in blocker.blocks:
        blocker.blocks.append(task_id)
    return task


def remove_dependency(graph: WorkGraph, task_id: str, blocker_id: str) -> Task:
    task = graph.require_task(task_id)
    if blocker_id in task.blocked_by:
        task.blocked_by.remove(blocker_id)
    blocker = graph.get_task(blocker_id)
    if blocker is not None and task_id in blocker.blocks:
        blocker.blocks.remove(task_id)
    return task


def add_loop_edge(
    graph: WorkGraph,
    task_id: str,
    target: str,
    max_iterations: int | None,
    guard: str | None = None,
    delay: str | None = None,
) -> bool:
    """Attach a loop edge. Returns False if an edge to ``target`` already exists."""
    task = graph.require_task(task_id)
    if max_iterations is None:
        raise ValidationError("--loop-max is required when adding a loop edge")
    if max_iterations < 1:
        raise ValidationError("--loop-max must be at least 1")
    if graph.get_task(target) is None:
        raise NotFoundError(f"Loop target task not found: {target}")
    parsed_guard = parse_guard(guard) if guard else None
    if delay is not None and parse_delay(delay) is None:
        raise ValidationError(f"Invalid delay '{delay}'. Use format: 30s, 5m, 1h, 24h, 7d")
    if any(edge.target == target for edge in task.loops_to):
        return False
    task.loops_to.append(
        LoopEdge(target=target, max_iterations=max_iterations, guard=parsed_guard, delay=delay)
    )
    return True


def remove_loop_edge(graph: WorkGraph, task_id: str, target: str) -> bool:
    task = graph.require_task(task_id)
    before = len(task.loops_to)
    task.loops_to = [e for e in task.loops_to if e.target != target]
    return len(task.loops_to) != before


def edit_task(
    graph: WorkGraph,
    task_id: str,
    title: str | None = None,
    description: str | None = None,
    model: str | None = None,
    add_tags: list[str] | None = None,
    remove_tags: list[str] | None = None,
    add_skills: list[str] | None = None,
    remove_skills: list[str] | None = None,
    add_blocked_by: list[str] | None = None,
    remove_blocked_by: list[str] | None = None,
    loop_iteration: int | None = None,
) -> list[str]:
    """Apply field edits to a task. Returns a description of each change made."""
    task = graph.require_task(task_id)
    changes = []

    if title is not None:
        if not title.strip():
            raise ValidationError("Task title must not be empty")
        task.title = title.strip()
        changes.append(f"title: {task.title}")
    if description is not None:
        task.description = description
        changes.append("description updated")
    if model is not None:
        task.model = model
        changes.append(f"model: {model}")

    for tag in add_tags or []:
        if tag not in task.tags:
            task.tags.append(tag)
            changes.append(f"+tag {tag}")
    for tag in remove_tags or []:
        if tag in task.tags:
            task.tags.remove(tag)
            changes.append(f"-tag {tag}")
    for skill in add_skills or []:
        if skill not in task.skills:
            task.skills.append(skill)
            changes.append(f"+skill {skill}")
    for skill in remove_skills or []:
        if skill in task.skills:
            task.skills.remove(skill)
            changes.append(f"-skill {skill}")

    for dep in add_blocked_by or []:
        if dep not in task.blocked_by:
            add_dependency(graph, task_id, dep)
            changes.append(f"+blocked-by {dep}")
    for dep in remove_blocked_by or []:
        if dep in task.blocked_by:
            remove_dependency(graph, task_id, dep)
            changes.append(f"-blocked-by {dep}")

    if loop_iteration is not None:
        if loop_iteration < 0:
            raise ValidationError("loop_iteration must not be negative")
        task.loop_iteration = loop_iteration
        changes.append(f"loop_iteration: {loop_iteration}")

    return changes


def add_log(graph: WorkGraph, task_id: str, message: str, actor: str | None = None) -> Task:
    task = graph.require_task(task_id)
    if not message.strip():
        raise ValidationError("Log message must not be empty")
    task.add_log(message, actor)
    return task


def add_artifact(graph: WorkGraph, task_id: str, path: str) -> bool:
    task = graph.require_task(task_id)
    if path in task.artifacts:
        return False
    task.artifacts.append(path)
    return True


def remove_artifact(graph: WorkGraph, task_id: str, path: str) -> bool:
    task = graph.require_task(task_id)
    if path not in task.artifacts:
        return False
    task.artifacts.remove(path)
    return True


def reschedule(
    graph: WorkGraph,
    task_id: str,
    at: str | None = None,
    after_hours: float | None = None,
) -> Task:
    """Set (or with neither argument, clear) a task's ``not_before`` gate."""
    task = graph.require_task(task_id)
    if at is not None and after_hours is not None:
        raise ValidationError("Use either an absolute time or --after, not both")
    if after_hours is not None:
        if after_hours < 0:
            raise ValidationError("--after must not be negative")
        when = datetime.now(timezone.utc) + timedelta(hours=after_hours)
        task.not_before = when.isoformat()
    elif at is not None:
        when = parse_timestamp(at)
        if when is None:
            raise ValidationError(f"Invalid timestamp '{at}'. Use ISO-8601")
        task.not_before = when.isoformat()
    else:
        task.not_before = None
    task.add_log(f"Rescheduled: not before {task.not_before or 'now'}")
    return task


def set_paused(graph: WorkGraph, task_id: str, paused: bool) -> Task:
    task = graph.require_task(task_id)
    if task.paused != paused:
        task.paused = paused
        task.add_log("Task paused" if paused else "Task resumed")
    return task


def assign_task(graph: WorkGraph, task_id: str, actor_id: str | None) -> Task:
    task = graph.require_task(task_id)
    task.assigned = actor_id
    task.add_log(f"Assigned to @{actor_id}" if actor_id else "Assignment cleared")
    return task


# ── State machine ────────────────────────────────────────────────────────────


@dataclass
class DoneResult:
    task: Task
    already_done: bool = False
    reactivated: list[str] = field(default_factory=list)


def check_claimable(task: Task):
    """Raise unless the task may move to InProgress."""
    task_id = task.id
    if task.status == Status.IN_PROGRESS:
        since = task.started_at or "unknown time"
        if task.assigned:
            raise ConflictError(
                f"Task '{task_id}' is already claimed by @{task.assigned} (since {since}). "
                f"Use 'wg unclaim {task_id}' to release it first."
            )
        raise ConflictError(f"Task '{task_id}' is already in progress (since {since})")
    if task.status == Status.DONE:
        raise InvalidTransitionError(f"Cannot claim task '{task_id}': task is already done")
    if task.status == Status.FAILED:
        raise InvalidTransitionError(
            f"Cannot claim task '{task_id}': task is Failed. Use 'wg retry {task_id}' first."
        )
    if task.status == Status.ABANDONED:
        raise InvalidTransitionError(f"Cannot claim task '{task_id}': task is Abandoned")
    if task.status == Status.PENDING_REVIEW:
        raise InvalidTransitionError(
            f"Cannot claim task '{task_id}': task is pending review. Approve or reject it."
        )


def claim_task(graph: WorkGraph, task_id: str, actor: str | None = None) -> Task:
    """Move an Open or Blocked task to InProgress."""
    task = graph.require_task(task_id)
    check_claimable(task)
    task.status = Status.IN_PROGRESS
    task.started_at = now_iso()
    if actor:
        task.assigned = actor
        task.add_log(f"Task claimed by @{actor}", actor)
    else:
        task.add_log("Task claimed")
    return task


def unclaim_task(graph: WorkGraph, task_id: str, reason: str | None = None) -> bool:
    """Release a claimed task back to Open. Returns False if it was already Open."""
    task = graph.require_task(task_id)
    if task.status == Status.OPEN:
        return False
    if task.status.is_terminal or task.status == Status.PENDING_REVIEW:
        raise InvalidTransitionError(
            f"Cannot unclaim task '{task_id}': task is {task.status}"
        )
    previous = task.assigned
    task.status = Status.OPEN
    task.assigned = None
    if reason:
        task.add_log(reason)
    elif previous:
        task.add_log(f"Task unclaimed (was @{previous})")
    else:
        task.add_log("Task unclaimed")
    return True


def _complete(graph: WorkGraph, task: Task, actor: str | None, message: str) -> list[str]:
    task.status = Status.DONE
    task.completed_at = now_iso()
    task.add_log(message, actor)
    return evaluate_loop_edges(graph, task.id)


def done_task(graph: WorkGraph, task_id: str, actor: str | None = None) -> DoneResult:
    """Mark a task done and fire its loop edges."""
    task = graph.require_task(task_id)
    if task.status == Status.DONE:
        return DoneResult(task=task, already_done=True)
    if task.status in (Status.FAILED, Status.ABANDONED):
        raise InvalidTransitionError(
            f"Cannot mark '{task_id}' as done: task is {task.status}"
        )
    if task.status == Status.PENDING_REVIEW:
        raise InvalidTransitionError(
            f"Task '{task_id}' is pending review. Use 'wg approve {task_id}'."
        )
    _check_blockers(graph, task, "mark as done")
    if task.verify:
        raise InvalidTransitionError(
            f"Task '{task_id}' requires verification. Use 'wg submit {task_id}' instead."
        )
    reactivated = _complete(graph, task, actor, "Task marked as done")
    return DoneResult(task=task, reactivated=reactivated)


def fail_task(graph: WorkGraph, task_id: str, reason: str | None = None) -> bool:
    """Mark a task failed. Returns False if it had already failed."""
    task = graph.require_task(task_id)
    if task.status == Status.FAILED:
        return False
    if task.status in (Status.DONE, Status.ABANDONED):
        raise InvalidTransitionError(f"Cannot fail task '{task_id}': task is {task.status}")
    task.status = Status.FAILED
    task.retry_count += 1
    task.failure_reason = reason
    task.add_log(f"Task failed: {reason}" if reason else "Task failed", task.assigned)
    return True


def retry_task(graph: WorkGraph, task_id: str) -> Task:
    """Re-open a failed task, keeping its retry count."""
    task = graph.require_task(task_id)
    if task.status != Status.FAILED:
        raise InvalidTransitionError(
            f"Cannot retry task '{task_id}': task is {task.status}, not failed"
        )
    if task.max_retries is not None and task.retry_count >= task.max_retries:
        raise ResourceExhaustedError(
            f"Task '{task_id}' has reached its retry limit "
            f"({task.retry_count}/{task.max_retries})"
        )
    task.status = Status.OPEN
    task.failure_reason = None
    task.assigned = None
    task.add_log(f"Task reset for retry (attempt #{task.retry_count + 1})")
    return task


def abandon_task(graph: WorkGraph, task_id: str, reason: str | None = None) -> bool:
    """Abandon a task. Returns False if it was already abandoned."""
    task = graph.require_task(task_id)
    if task.status == Status.ABANDONED:
        return False
    if task.status == Status.DONE:
        raise InvalidTransitionError(f"Cannot abandon task '{task_id}': task is already done")
    task.status = Status.ABANDONED
    if reason:
        task.failure_reason = reason
    task.add_log(f"Task abandoned: {reason}" if reason else "Task abandoned")
    return True


def reclaim_task(graph: WorkGraph, task_id: str, from_actor: str, to_actor: str) -> Task:
    """Hand an in-progress task from one actor to another."""
    task = graph.require_task(task_id)
    if task.status != Status.IN_PROGRESS:
        raise InvalidTransitionError(
            f"Cannot reclaim task '{task_id}': task is {task.status}, not in-progress"
        )
    if task.assigned != from_actor:
        raise ConflictError(
            f"Cannot reclaim task '{task_id}': assigned to "
            f"@{task.assigned or 'nobody'}, not @{from_actor}"
        )
    task.assigned = to_actor
    task.started_at = now_iso()
    task.add_log(f"Task reclaimed from @{from_actor} by @{to_actor}", to_actor)
    return task


def submit_task(graph: WorkGraph, task_id: str, actor: str | None = None) -> Task:
    task = graph.require_task(task_id)
    if task.status != Status.IN_PROGRESS:
        raise InvalidTransitionError(
            f"Cannot submit task '{task_id}': task is {task.status}, not in-progress"
        )
    _check_blockers(graph, task, "submit")
    task.status = Status.PENDING_REVIEW
    task.add_log("Task submitted for review", actor or task.assigned)
    return task


def approve_task(graph: WorkGraph, task_id: str, actor: str | None = None) -> DoneResult:
    task = graph.require_task(task_id)
    if task.status != Status.PENDING_REVIEW:
        raise InvalidTransitionError(
            f"Cannot approve task '{task_id}': task is {task.status}, not pending-review"
        )
    _check_blockers(graph, task, "approve")
    reactivated = _complete(graph, task, actor, "Task approved")
    return DoneResult(task=task, reactivated=reactivated)


def reject_task(
    graph: WorkGraph, task_id: str, reason: str | None = None, actor: str | None = None
) -> Task:
    task = graph.require_task(task_id)
    if task.status != Status.PENDING_REVIEW:
        raise InvalidTransitionError(
            f"Cannot reject task '{task_id}': task is {task.status}, not pending-review"
        )
    task.status = Status.OPEN
    task.assigned = None
    task.retry_count += 1
    task.add_log(f"Task rejected: {reason}" if reason else "Task rejected", actor)
    return task
