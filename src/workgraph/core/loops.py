"""Loop edges: re-activating upstream chains when a task completes."""

import logging
import re
from collections import deque
from datetime import datetime, timedelta, timezone

from workgraph.db.engine import WorkGraph
from workgraph.db.models import (
    GUARD_ITERATION_LESS_THAN,
    GUARD_TASK_STATUS,
    LoopEdge,
    LoopGuard,
    Status,
    Task,
)
from workgraph.errors import ValidationError

logger = logging.getLogger(__name__)

_DELAY_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
_DELAY = re.compile(r"(?P<amount>\d+)(?P<unit>[smhd])", re.ASCII)


def parse_delay(value: str) -> timedelta | None:
    """Parse "30s", "5m", "1h", "24h" or "7d". Returns None if malformed."""
    m = _DELAY.fullmatch(value.strip())
    if not m:
        return None
    return timedelta(seconds=int(m.group("amount")) * _DELAY_UNITS[m.group("unit")])


_TASK_GUARD = re.compile(r"^task:(?P<task>[^=\s]+)=(?P<status>[a-z-]+)$")
_ITERATION_GUARD = re.compile(r"^iteration\s*<\s*(?P<value>\d+)$", re.ASCII)


def parse_guard(expr: str) -> LoopGuard:
    """Parse a guard expression: ``always``, ``task:<id>=<status>`` or ``iteration<N``."""
    expr = expr.strip()
    if expr.lower() == "always":
        return LoopGuard()

    if m := _TASK_GUARD.match(expr):
        raw = m.group("status")
        # pending-review is a legacy spelling of done
        if raw == Status.PENDING_REVIEW.value:
            raw = Status.DONE.value
        try:
            status = Status(raw)
        except ValueError:
            raise ValidationError(f"Unknown status '{raw}' in guard '{expr}'") from None
        return LoopGuard(kind=GUARD_TASK_STATUS, task=m.group("task"), status=status)

    if m := _ITERATION_GUARD.match(expr):
        return LoopGuard(kind=GUARD_ITERATION_LESS_THAN, value=int(m.group("value")))

    raise ValidationError(
        f"Invalid guard '{expr}'. Use 'always', 'task:<id>=<status>' or 'iteration<N'"
    )


def guard_satisfied(graph: WorkGraph, guard: LoopGuard | None, target: Task | None) -> bool:
    if guard is None:
        return True
    if guard.kind == GUARD_TASK_STATUS:
        other = graph.get_task(guard.task)
        return other is not None and other.status == guard.status
    if guard.kind == GUARD_ITERATION_LESS_THAN:
        current = target.loop_iteration if target else 0
        return current < guard.value
    return True


def _forward_reachable(graph: WorkGraph, start: str) -> set[str]:
    """Every task reachable from ``start`` by following ``blocks``."""
    seen = {start}
    queue = deque([start])
    while queue:
        task = graph.get_task(queue.popleft())
        if task is None:
            continue
        for dependent in task.blocks:
            if dependent not in seen:
                seen.add(dependent)
                queue.append(dependent)
    return seen


def _backward_reachable(graph: WorkGraph, start: str) -> set[str]:
    """Every task reachable from ``start`` by following ``blocked_by``."""
    seen = {start}
    queue = deque([start])
    while queue:
        task = graph.get_task(queue.popleft())
        if task is None:
            continue
        for blocker in task.blocked_by:
            if blocker not in seen:
                seen.add(blocker)
                queue.append(blocker)
    return seen


def chain_between(graph: WorkGraph, target_id: str, source_id: str) -> list[str]:
    """Tasks strictly between target and source on the dependency path."""
    between = _forward_reachable(graph, target_id) & _backward_reachable(graph, source_id)
    between.discard(target_id)
    between.discard(source_id)
    # keep graph order so the log reads top to bottom
    return [t.id for t in graph.tasks() if t.id in between]


def _reopen(task: Task, iteration: int, ready_after: str | None):
    task.status = Status.OPEN
    task.assigned = None
    task.started_at = None
    task.completed_at = None
    task.loop_iteration = iteration
    task.ready_after = ready_after


def evaluate_loop_edges(graph: WorkGraph, source_id: str) -> list[str]:
    """Fire the loop edges of a task that has just been marked done.

    Returns the ids of every task that was re-opened, target first.
    """
    source = graph.get_task(source_id)
    if source is None:
        return []

    reactivated: list[str] = []
    edges: list[LoopEdge] = list(source.loops_to)
    for edge in edges:
        target = graph.get_task(edge.target)
        if not guard_satisfied(graph, edge.guard, target):
            continue
        if target is None:
            logger.warning(
                "Loop edge from '%s' targets missing task '%s'", source_id, edge.target
            )
            continue
        if target.loop_iteration >= edge.max_iterations:
            continue

        ready_after = None
        if edge.delay:
            delay = parse_delay(edge.delay)
            if delay is None:
                logger.warning(
                    "Ignoring invalid delay '%s' on loop edge %s -> %s",
                    edge.delay, source_id, edge.target,
                )
            else:
                ready_after = (datetime.now(timezone.utc) + delay).isoformat()

        new_iteration = target.loop_iteration + 1
        _reopen(target, new_iteration, ready_after)
        target.add_log(
            f"Re-activated by loop from {source_id} "
            f"(iteration {new_iteration}/{edge.max_iterations})"
        )
        reactivated.append(target.id)

        for mid_id in chain_between(graph, target.id, source_id):
            mid = graph.get_task(mid_id)
            if mid.status != Status.DONE:
                continue
            _reopen(mid, new_iteration, ready_after)
            mid.add_log(f"Re-activated by loop from {source_id} via {target.id}")
            reactivated.append(mid_id)

        if source.id != target.id:
            _reopen(source, new_iteration, ready_after)
            source.add_log(f"Re-opened for loop iteration {new_iteration}")
            reactivated.append(source.id)

    return reactivated
