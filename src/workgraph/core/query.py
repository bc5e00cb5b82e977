"""Read-only queries over the task graph: readiness, blockers, cost and critical path.

Every traversal here uses an explicit visited set. Loop edges make cycles a
legitimate shape, so none of these functions assume the graph is acyclic.
"""

import math
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

from workgraph.db.engine import WorkGraph
from workgraph.db.models import Status, Task

DEFAULT_TASK_HOURS = 1.0


def ready_tasks(graph: WorkGraph, now: datetime | None = None) -> list[Task]:
    """Open tasks whose blockers are all done and whose time gates have passed."""
    now = now or datetime.now(timezone.utc)
    ready = []
    for task in graph.tasks():
        if task.status != Status.OPEN:
            continue
        gate = task.earliest_start()
        if gate is not None and gate > now:
            continue
        if all(
            (blocker := graph.get_task(b)) is None or blocker.status == Status.DONE
            for b in task.blocked_by
        ):
            ready.append(task)
    return ready


def blocked_by(graph: WorkGraph, task_id: str) -> list[Task]:
    """Blockers of ``task_id`` that are not done, failed or abandoned."""
    task = graph.require_task(task_id)
    blockers = []
    for blocker_id in task.blocked_by:
        blocker = graph.get_task(blocker_id)
        if blocker is not None and not blocker.status.is_terminal:
            blockers.append(blocker)
    return blockers


def cost_of(graph: WorkGraph, task_id: str) -> float:
    """Own cost plus the cost of every transitive blocker, each counted once."""
    graph.require_task(task_id)
    visited = {task_id}
    stack = [task_id]
    total = 0.0
    while stack:
        task = graph.get_task(stack.pop())
        if task is None:
            continue
        total += task.cost
        for blocker_id in task.blocked_by:
            if blocker_id not in visited:
                visited.add(blocker_id)
                stack.append(blocker_id)
    return total


def find_cycles(graph: WorkGraph, tasks: list[Task] | None = None) -> list[list[str]]:
    """Cycles along ``blocked_by`` edges, found by DFS with a recursion stack.

    Only edges between the given tasks (default: all tasks) are followed.
    Each cycle is reported as the path from its first repeated node.
    """
    tasks = graph.tasks() if tasks is None else tasks
    ids = {t.id for t in tasks}
    visited: set[str] = set()
    cycles: list[list[str]] = []

    def edges(node_id: str):
        return iter(graph.get_task(node_id).blocked_by)

    for root in tasks:
        if root.id in visited:
            continue
        visited.add(root.id)
        path = [root.id]
        on_path = {root.id}
        stack = [(root.id, edges(root.id))]
        while stack:
            node_id, children = stack[-1]
            for child in children:
                if child not in ids:
                    continue
                if child in on_path:
                    cycles.append(path[path.index(child):])
                elif child not in visited:
                    visited.add(child)
                    path.append(child)
                    on_path.add(child)
                    stack.append((child, edges(child)))
                    break
            else:
                stack.pop()
                path.pop()
                on_path.discard(node_id)
    return cycles


def task_hours(task: Task) -> float:
    """Hours used for path length: missing means the default, bad values mean zero."""
    hours = task.hours
    if hours is None:
        return DEFAULT_TASK_HOURS
    if math.isnan(hours) or hours < 0:
        return 0.0
    return float(hours)


@dataclass
class CriticalPath:
    path: list[str] = field(default_factory=list)
    total_hours: float = 0.0
    cycles_skipped: list[list[str]] = field(default_factory=list)
    slack: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "total_hours": self.total_hours,
            "cycles_skipped": self.cycles_skipped,
            "slack": self.slack,
        }


def critical_path(graph: WorkGraph) -> CriticalPath:
    """Longest chain of active work measured in estimated hours."""
    active = [t for t in graph.tasks() if not t.status.is_terminal]
    cycles = find_cycles(graph, active)
    in_cycle = {node for cycle in cycles for node in cycle}
    nodes = [t for t in active if t.id not in in_cycle]
    node_ids = {t.id for t in nodes}
    hours = {t.id: task_hours(t) for t in nodes}

    # blocker -> dependents, in graph order
    forward: dict[str, list[str]] = defaultdict(list)
    indegree = {t.id: 0 for t in nodes}
    for task in nodes:
        for blocker_id in dict.fromkeys(task.blocked_by):
            if blocker_id in node_ids:
                forward[blocker_id].append(task.id)
                indegree[task.id] += 1

    # topological order (graph is acyclic once cycle members are removed)
    order = []
    queue = deque(t.id for t in nodes if indegree[t.id] == 0)
    remaining = dict(indegree)
    while queue:
        node_id = queue.popleft()
        order.append(node_id)
        for child in forward[node_id]:
            remaining[child] -= 1
            if remaining[child] == 0:
                queue.append(child)

    longest: dict[str, float] = {}
    successor: dict[str, str | None] = {}
    for node_id in reversed(order):
        best_child, best = None, 0.0
        for child in forward[node_id]:
            if best_child is None or longest[child] > best:
                best_child, best = child, longest[child]
        longest[node_id] = hours[node_id] + best
        successor[node_id] = best_child

    entries = [t.id for t in nodes if indegree[t.id] == 0]
    result = CriticalPath(cycles_skipped=cycles)
    if not entries:
        return result

    start = entries[0]
    for entry in entries[1:]:
        if longest[entry] > longest[start]:
            start = entry
    node: str | None = start
    while node is not None:
        result.path.append(node)
        node = successor[node]
    result.total_hours = longest[start]

    earliest = {node_id: 0.0 for node_id in order}
    for node_id in order:
        finish = earliest[node_id] + hours[node_id]
        for child in forward[node_id]:
            earliest[child] = max(earliest[child], finish)
    latest_finish: dict[str, float] = {}
    for node_id in reversed(order):
        children = forward[node_id]
        if children:
            latest_finish[node_id] = min(latest_finish[c] - hours[c] for c in children)
        else:
            latest_finish[node_id] = result.total_hours
        result.slack[node_id] = round(
            latest_finish[node_id] - hours[node_id] - earliest[node_id], 6
        )
    return result


def loop_report(graph: WorkGraph) -> list[dict]:
    """Every loop edge with its guard, limit and current iteration."""
    report = []
    for task in graph.tasks():
        for edge in task.loops_to:
            target = graph.get_task(edge.target)
            iteration = target.loop_iteration if target else None
            report.append({
                "source": task.id,
                "target": edge.target,
                "guard": edge.guard.describe() if edge.guard else "always",
                "max_iterations": edge.max_iterations,
                "delay": edge.delay,
                "iteration": iteration,
                "exhausted": iteration is not None and iteration >= edge.max_iterations,
                "target_missing": target is None,
            })
    return report


def status_counts(graph: WorkGraph) -> dict:
    counts = {status.value: 0 for status in Status}
    for task in graph.tasks():
        counts[task.status.value] += 1
    total = sum(counts.values())
    progress = (counts[Status.DONE.value] / total * 100) if total > 0 else 0
    return {"counts": counts, "total": total, "progress_pct": round(progress, 1)}


# ── Dependents ───────────────────────────────────────────────────────────────


def _dependents_index(graph: WorkGraph) -> dict[str, list[str]]:
    index: dict[str, list[str]] = defaultdict(list)
    for task in graph.tasks():
        for blocker_id in task.blocked_by:
            index[blocker_id].append(task.id)
    return index


def transitive_dependents(graph: WorkGraph, task_id: str) -> list[str]:
    """Every task that waits on ``task_id``, directly or not, in breadth-first order.

    The task itself is never included, even when a cycle leads back to it.
    """
    graph.require_task(task_id)
    index = _dependents_index(graph)
    visited = {task_id}
    order = []
    queue = deque([task_id])
    while queue:
        for dependent in index.get(queue.popleft(), []):
            if dependent not in visited:
                visited.add(dependent)
                order.append(dependent)
                queue.append(dependent)
    return order


@dataclass
class Impact:
    task_id: str
    direct: list[str] = field(default_factory=list)
    transitive: list[str] = field(default_factory=list)
    hours_at_risk: float = 0.0

    @property
    def affected(self) -> list[str]:
        return self.direct + self.transitive

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "direct_dependents": self.direct,
            "transitive_dependents": self.transitive,
            "total_tasks_affected": len(self.affected),
            "total_hours_at_risk": self.hours_at_risk,
        }


def impact(graph: WorkGraph, task_id: str) -> Impact:
    """What a delay to ``task_id`` would hold up, and the estimated hours involved."""
    everything = transitive_dependents(graph, task_id)
    direct = [d for d in dict.fromkeys(_dependents_index(graph).get(task_id, [])) if d != task_id]
    direct_set = set(direct)
    result = Impact(
        task_id=task_id,
        direct=direct,
        transitive=[d for d in everything if d not in direct_set],
    )
    for dependent_id in everything:
        hours = graph.get_task(dependent_id).hours
        if hours is not None and not math.isnan(hours) and hours > 0:
            result.hours_at_risk += hours
    return result


# ── Integrity ────────────────────────────────────────────────────────────────


@dataclass
class OrphanRef:
    source: str
    target: str
    relation: str

    def to_dict(self) -> dict:
        return {"from": self.source, "to": self.target, "relation": self.relation}


@dataclass
class CheckResult:
    cycles: list[list[str]] = field(default_factory=list)
    orphans: list[OrphanRef] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.cycles and not self.orphans

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "cycles": self.cycles,
            "orphan_refs": [o.to_dict() for o in self.orphans],
        }


def check_orphans(graph: WorkGraph, archived: set[str] | None = None) -> list[OrphanRef]:
    """References from tasks to ids that no node in the graph carries.

    Blockers that were moved to the archive are finished work, not orphans.
    """
    archived = archived or set()
    orphans = []
    for task in graph.tasks():
        for blocker_id in task.blocked_by:
            if blocker_id not in graph and blocker_id not in archived:
                orphans.append(OrphanRef(task.id, blocker_id, "blocked_by"))
        for blocked_id in task.blocks:
            if blocked_id not in graph:
                orphans.append(OrphanRef(task.id, blocked_id, "blocks"))
        for resource_id in task.requires:
            if graph.get_resource(resource_id) is None:
                orphans.append(OrphanRef(task.id, resource_id, "requires"))
        for edge in task.loops_to:
            if graph.get_task(edge.target) is None:
                orphans.append(OrphanRef(task.id, edge.target, "loops_to"))
            if edge.guard is not None and edge.guard.task and graph.get_task(edge.guard.task) is None:
                orphans.append(OrphanRef(task.id, edge.guard.task, "loop_guard"))
    return orphans


def check_graph(graph: WorkGraph, archived: set[str] | None = None) -> CheckResult:
    """Dependency cycles (warnings) and dangling references (errors)."""
    return CheckResult(cycles=find_cycles(graph), orphans=check_orphans(graph, archived))
