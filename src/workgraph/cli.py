"""CLI entry point for workgraph."""

import json
import logging
import sys
from contextlib import contextmanager
from datetime import timedelta

import click

from workgraph.config import get_config
from workgraph.core import actors as actors_mod
from workgraph.core import agents as agents_mod
from workgraph.core import archive as archive_mod
from workgraph.core import executors as executors_mod
from workgraph.core import heartbeat as heartbeat_mod
from workgraph.core import query as query_mod
from workgraph.core import runner as runner_mod
from workgraph.core import tasks as tasks_mod
from workgraph.core.registry import AgentRegistry
from workgraph.db.engine import get_graph, init_graph, mutate_graph
from workgraph.errors import WorkgraphError
from workgraph.integrations.coordinator import notify_graph_changed


class WorkgraphGroup(click.Group):
    """Turns domain errors from any subcommand into ``Error: ...`` and exit 1."""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except WorkgraphError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)


def _wg_dir():
    return get_config().workgraph_dir


@contextmanager
def _mutation():
    """Load, mutate and save the graph, then tell the coordinator."""
    wg_dir = _wg_dir()
    with mutate_graph(wg_dir) as graph:
        yield graph
    notify_graph_changed(wg_dir)


def _split(values) -> list[str]:
    """Flatten repeatable, comma-separated option values."""
    out = []
    for value in values or ():
        out.extend(v.strip() for v in value.split(",") if v.strip())
    return out


@click.group(cls=WorkgraphGroup)
def main():
    """wg - task graph and agent dispatch"""
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.WARNING),
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@main.command("init")
def init_command():
    """Initialize a workgraph in the current directory (or $WG_DIR)."""
    path = init_graph(_wg_dir())
    click.echo(f"Initialized workgraph at {path.parent}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.command("add")
@click.argument("title")
@click.option("--id", "task_id", default=None, help="Explicit task ID (default: slug of title)")
@click.option("--description", "-d", default=None, help="Task description")
@click.option("--blocked-by", multiple=True, help="Blocker task IDs (repeatable or comma-separated)")
@click.option("--hours", type=float, default=None, help="Estimated hours")
@click.option("--cost", type=float, default=None, help="Estimated cost")
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable)")
@click.option("--skill", "skills", multiple=True, help="Required skill (repeatable)")
@click.option("--input", "inputs", multiple=True, help="Input path or reference")
@click.option("--deliverable", "deliverables", multiple=True, help="Expected deliverable")
@click.option("--requires", multiple=True, help="Required resource IDs")
@click.option("--max-retries", type=int, default=None, help="Retry limit")
@click.option("--model", default=None, help="Preferred model for agents")
@click.option("--verify", default=None, help="Verification criteria; completion goes through review")
@click.option("--exec", "exec_cmd", default=None, help="Shell command that performs the task")
@click.option("--assign", default=None, help="Actor to assign")
@click.option("--loops-to", default=None, help="Loop edge target task ID")
@click.option("--loop-max", type=int, default=None, help="Maximum loop iterations")
@click.option("--loop-guard", default=None, help="Guard: always, task:<id>=<status>, iteration<N")
@click.option("--loop-delay", default=None, help="Delay before the target is ready again (e.g. 5m)")
def add_command(title, task_id, description, blocked_by, hours, cost, tags, skills, inputs,
                deliverables, requires, max_retries, model, verify, exec_cmd, assign,
                loops_to, loop_max, loop_guard, loop_delay):
    """Add a new task."""
    with _mutation() as graph:
        task = tasks_mod.create_task(
            graph, title,
            task_id=task_id,
            description=description,
            blocked_by=_split(blocked_by),
            hours=hours,
            cost=cost,
            tags=_split(tags),
            skills=_split(skills),
            inputs=list(inputs),
            deliverables=list(deliverables),
            requires=_split(requires),
            max_retries=max_retries,
            model=model,
            verify=verify,
            exec_cmd=exec_cmd,
            assign=assign,
        )
        if loops_to:
            tasks_mod.add_loop_edge(graph, task.id, loops_to, loop_max, loop_guard, loop_delay)
    click.echo(f"Added task: {task.id} ({task.title})")
    if task.blocked_by:
        click.echo(f"  Blocked by: {', '.join(task.blocked_by)}")
    if loops_to:
        click.echo(f"  Loops to: {loops_to} (max {loop_max})")


@main.command("edit")
@click.argument("task_id")
@click.option("--title", default=None)
@click.option("--description", "-d", default=None)
@click.option("--model", default=None)
@click.option("--add-tag", multiple=True)
@click.option("--remove-tag", multiple=True)
@click.option("--add-skill", multiple=True)
@click.option("--remove-skill", multiple=True)
@click.option("--add-blocked-by", multiple=True)
@click.option("--remove-blocked-by", multiple=True)
@click.option("--add-loops-to", default=None, help="Add a loop edge to this target")
@click.option("--loop-max", type=int, default=None)
@click.option("--loop-guard", default=None)
@click.option("--loop-delay", default=None)
@click.option("--remove-loops-to", default=None, help="Remove the loop edge to this target")
@click.option("--loop-iteration", type=int, default=None, help="Reset the loop iteration counter")
def edit_command(task_id, title, description, model, add_tag, remove_tag, add_skill, remove_skill,
                 add_blocked_by, remove_blocked_by, add_loops_to, loop_max, loop_guard,
                 loop_delay, remove_loops_to, loop_iteration):
    """Edit a task's fields and edges."""
    with _mutation() as graph:
        changes = tasks_mod.edit_task(
            graph, task_id,
            title=title,
            description=description,
            model=model,
            add_tags=_split(add_tag),
            remove_tags=_split(remove_tag),
            add_skills=_split(add_skill),
            remove_skills=_split(remove_skill),
            add_blocked_by=_split(add_blocked_by),
            remove_blocked_by=_split(remove_blocked_by),
            loop_iteration=loop_iteration,
        )
        if add_loops_to:
            if tasks_mod.add_loop_edge(graph, task_id, add_loops_to, loop_max, loop_guard, loop_delay):
                changes.append(f"+loops-to {add_loops_to}")
        if remove_loops_to and tasks_mod.remove_loop_edge(graph, task_id, remove_loops_to):
            changes.append(f"-loops-to {remove_loops_to}")
        if changes:
            graph.require_task(task_id).add_log(f"Edited: {'; '.join(changes)}")
    if not changes:
        click.echo(f"No changes to {task_id}")
        return
    click.echo(f"Updated {task_id}:")
    for change in changes:
        click.echo(f"  {change}")


STATUS_ICONS = {
    "open": "○",
    "in-progress": "●",
    "done": "✓",
    "blocked": "✗",
    "failed": "!",
    "abandoned": "-",
    "pending-review": "?",
}


def _task_line(task) -> str:
    icon = STATUS_ICONS.get(task.status.value, "?")
    who = f" @{task.assigned}" if task.assigned else ""
    deps = f" [blocked by: {', '.join(task.blocked_by)}]" if task.blocked_by else ""
    paused = " (paused)" if task.paused else ""
    return f"  {icon} {task.id}: {task.title} ({task.status}){who}{deps}{paused}"


@main.command("show")
@click.argument("task_id")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def show_command(task_id, json_output):
    """Show task details."""
    task = get_graph(_wg_dir()).require_task(task_id)
    if json_output:
        click.echo(json.dumps(task.to_dict(), indent=2))
        return

    click.echo(f"Task: {task.id}")
    click.echo(f"  Title: {task.title}")
    click.echo(f"  Status: {task.status}")
    if task.description:
        click.echo(f"  Description: {task.description}")
    if task.assigned:
        click.echo(f"  Assigned: {task.assigned}")
    if task.estimate:
        click.echo(f"  Estimate: {task.hours or 0}h, cost {task.cost}")
    if task.blocked_by:
        click.echo(f"  Blocked by: {', '.join(task.blocked_by)}")
    if task.blocks:
        click.echo(f"  Blocks: {', '.join(task.blocks)}")
    if task.tags:
        click.echo(f"  Tags: {', '.join(task.tags)}")
    if task.skills:
        click.echo(f"  Skills: {', '.join(task.skills)}")
    if task.exec:
        click.echo(f"  Exec: {task.exec}")
    if task.verify:
        click.echo(f"  Verify: {task.verify}")
    if task.not_before or task.ready_after:
        click.echo(f"  Not before: {task.earliest_start().isoformat() if task.earliest_start() else '-'}")
    if task.paused:
        click.echo("  Paused: yes")
    if task.retry_count or task.max_retries is not None:
        limit = task.max_retries if task.max_retries is not None else "∞"
        click.echo(f"  Retries: {task.retry_count}/{limit}")
    if task.failure_reason:
        click.echo(f"  Failure: {task.failure_reason}")
    for edge in task.loops_to:
        guard = edge.guard.describe() if edge.guard else "always"
        click.echo(f"  Loops to: {edge.target} (max {edge.max_iterations}, guard {guard})")
    if task.loop_iteration:
        click.echo(f"  Loop iteration: {task.loop_iteration}")
    if task.artifacts:
        click.echo("  Artifacts:")
        for path in task.artifacts:
            click.echo(f"    - {path}")
    if task.log:
        click.echo("  Log:")
        for entry in task.log:
            who = f" @{entry.actor}" if entry.actor else ""
            click.echo(f"    [{entry.timestamp}]{who} {entry.message}")


@main.command("list")
@click.option("--status", default=None, help="Filter by status")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def list_command(status, json_output):
    """List tasks."""
    tasks = get_graph(_wg_dir()).tasks()
    if status:
        tasks = [t for t in tasks if t.status.value == status]
    if json_output:
        click.echo(json.dumps([t.to_dict() for t in tasks], indent=2))
        return
    if not tasks:
        click.echo("No tasks found.")
        return
    for task in tasks:
        click.echo(_task_line(task))


@main.command("claim")
@click.argument("task_id")
@click.option("--actor", default=None, help="Actor claiming the task")
def claim_command(task_id, actor):
    """Claim a task (mark it in-progress)."""
    with _mutation() as graph:
        tasks_mod.claim_task(graph, task_id, actor)
    suffix = f" by @{actor}" if actor else ""
    click.echo(f"Claimed '{task_id}'{suffix}")


@main.command("unclaim")
@click.argument("task_id")
def unclaim_command(task_id):
    """Release a claimed task back to open."""
    with _mutation() as graph:
        changed = tasks_mod.unclaim_task(graph, task_id)
    click.echo(f"Unclaimed '{task_id}'" if changed else f"Task '{task_id}' is already open")


@main.command("done")
@click.argument("task_id")
@click.option("--actor", default=None)
def done_command(task_id, actor):
    """Mark a task as done."""
    with _mutation() as graph:
        result = tasks_mod.done_task(graph, task_id, actor)
    if result.already_done:
        click.echo(f"Task '{task_id}' is already done")
        return
    click.echo(f"Marked '{task_id}' as done")
    for reactivated in result.reactivated:
        click.echo(f"  Loop re-activated: {reactivated}")


@main.command("fail")
@click.argument("task_id")
@click.option("--reason", default=None, help="Why the task failed")
def fail_command(task_id, reason):
    """Mark a task as failed."""
    with _mutation() as graph:
        changed = tasks_mod.fail_task(graph, task_id, reason)
    click.echo(f"Marked '{task_id}' as failed" if changed else f"Task '{task_id}' is already failed")


@main.command("retry")
@click.argument("task_id")
def retry_command(task_id):
    """Re-open a failed task."""
    with _mutation() as graph:
        task = tasks_mod.retry_task(graph, task_id)
    click.echo(f"Reset '{task_id}' for retry (attempt #{task.retry_count + 1})")


@main.command("abandon")
@click.argument("task_id")
@click.option("--reason", default=None)
def abandon_command(task_id, reason):
    """Abandon a task permanently."""
    with _mutation() as graph:
        changed = tasks_mod.abandon_task(graph, task_id, reason)
    click.echo(f"Abandoned '{task_id}'" if changed else f"Task '{task_id}' is already abandoned")


@main.command("reclaim")
@click.argument("task_id")
@click.option("--from", "from_actor", required=True, help="Current assignee")
@click.option("--to", "to_actor", required=True, help="New assignee")
def reclaim_command(task_id, from_actor, to_actor):
    """Hand an in-progress task to another actor."""
    with _mutation() as graph:
        tasks_mod.reclaim_task(graph, task_id, from_actor, to_actor)
    click.echo(f"Reclaimed '{task_id}' from @{from_actor} to @{to_actor}")


@main.command("submit")
@click.argument("task_id")
@click.option("--actor", default=None)
def submit_command(task_id, actor):
    """Submit a task for review."""
    with _mutation() as graph:
        tasks_mod.submit_task(graph, task_id, actor)
    click.echo(f"Submitted '{task_id}' for review")


@main.command("approve")
@click.argument("task_id")
@click.option("--actor", default=None)
def approve_command(task_id, actor):
    """Approve a task pending review."""
    with _mutation() as graph:
        result = tasks_mod.approve_task(graph, task_id, actor)
    click.echo(f"Approved '{task_id}'")
    for reactivated in result.reactivated:
        click.echo(f"  Loop re-activated: {reactivated}")


@main.command("reject")
@click.argument("task_id")
@click.option("--reason", default=None)
@click.option("--actor", default=None)
def reject_command(task_id, reason, actor):
    """Reject a task pending review and re-open it."""
    with _mutation() as graph:
        tasks_mod.reject_task(graph, task_id, reason, actor)
    click.echo(f"Rejected '{task_id}'")


@main.command("log")
@click.argument("task_id")
@click.argument("message", required=False)
@click.option("--actor", default=None)
def log_command(task_id, message, actor):
    """Append a progress note to a task, or list its log."""
    if message is None:
        task = get_graph(_wg_dir()).require_task(task_id)
        if not task.log:
            click.echo(f"No log entries for '{task_id}'")
        for entry in task.log:
            who = f" @{entry.actor}" if entry.actor else ""
            click.echo(f"[{entry.timestamp}]{who} {entry.message}")
        return
    with _mutation() as graph:
        tasks_mod.add_log(graph, task_id, message, actor)
    click.echo(f"Logged to '{task_id}'")


@main.command("artifact")
@click.argument("task_id")
@click.argument("path", required=False)
@click.option("--remove", is_flag=True, help="Remove the artifact instead of adding it")
def artifact_command(task_id, path, remove):
    """Record (or list, or remove) an artifact produced by a task."""
    if path is None:
        task = get_graph(_wg_dir()).require_task(task_id)
        if not task.artifacts:
            click.echo(f"No artifacts for '{task_id}'")
        for artifact in task.artifacts:
            click.echo(artifact)
        return
    with _mutation() as graph:
        if remove:
            changed = tasks_mod.remove_artifact(graph, task_id, path)
        else:
            changed = tasks_mod.add_artifact(graph, task_id, path)
    if remove:
        click.echo(f"Removed artifact {path}" if changed else f"Artifact {path} not recorded")
    else:
        click.echo(f"Recorded artifact {path}" if changed else f"Artifact {path} already recorded")


@main.command("reschedule")
@click.argument("task_id")
@click.option("--at", default=None, help="ISO-8601 timestamp")
@click.option("--after", "after_hours", type=float, default=None, help="Hours from now")
def reschedule_command(task_id, at, after_hours):
    """Set or clear the earliest time a task may start."""
    with _mutation() as graph:
        task = tasks_mod.reschedule(graph, task_id, at, after_hours)
    click.echo(f"Rescheduled '{task_id}': not before {task.not_before or 'now'}")


@main.command("pause")
@click.argument("task_id")
def pause_command(task_id):
    """Pause a task so agents won't be spawned on it."""
    with _mutation() as graph:
        tasks_mod.set_paused(graph, task_id, True)
    click.echo(f"Paused '{task_id}'")


@main.command("resume")
@click.argument("task_id")
def resume_command(task_id):
    """Resume a paused task."""
    with _mutation() as graph:
        tasks_mod.set_paused(graph, task_id, False)
    click.echo(f"Resumed '{task_id}'")


@main.command("assign")
@click.argument("task_id")
@click.argument("actor", required=False)
def assign_command(task_id, actor):
    """Assign a task to an actor, or clear the assignment."""
    with _mutation() as graph:
        tasks_mod.assign_task(graph, task_id, actor)
    click.echo(f"Assigned '{task_id}' to @{actor}" if actor else f"Cleared assignment of '{task_id}'")


# ── Query Commands ────────────────────────────────────────────────────────────


@main.command("ready")
@click.option("--json", "json_output", is_flag=True)
def ready_command(json_output):
    """List tasks ready to be worked on."""
    tasks = query_mod.ready_tasks(get_graph(_wg_dir()))
    if json_output:
        click.echo(json.dumps([t.to_dict() for t in tasks], indent=2))
        return
    if not tasks:
        click.echo("No tasks ready.")
        return
    for task in tasks:
        click.echo(_task_line(task))


@main.command("blocked")
@click.argument("task_id")
def blocked_command(task_id):
    """Show what is blocking a task."""
    blockers = query_mod.blocked_by(get_graph(_wg_dir()), task_id)
    if not blockers:
        click.echo(f"'{task_id}' is not blocked")
        return
    click.echo(f"'{task_id}' is blocked by:")
    for blocker in blockers:
        click.echo(_task_line(blocker))


@main.command("cost")
@click.argument("task_id")
def cost_command(task_id):
    """Total cost of a task and all of its transitive blockers."""
    total = query_mod.cost_of(get_graph(_wg_dir()), task_id)
    click.echo(f"Total cost of '{task_id}': {total:.2f}")


@main.command("critical-path")
@click.option("--json", "json_output", is_flag=True)
def critical_path_command(json_output):
    """Show the longest chain of remaining work."""
    result = query_mod.critical_path(get_graph(_wg_dir()))
    if json_output:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return
    if not result.path:
        click.echo("No active tasks.")
    else:
        click.echo(f"Critical path ({result.total_hours:g}h):")
        for task_id in result.path:
            click.echo(f"  → {task_id}")
    if result.cycles_skipped:
        click.echo(f"Skipped {len(result.cycles_skipped)} cycle(s):")
        for cycle in result.cycles_skipped:
            click.echo(f"  {' -> '.join(cycle)}")


@main.command("loops")
@click.option("--json", "json_output", is_flag=True)
def loops_command(json_output):
    """List loop edges and their iteration state."""
    report = query_mod.loop_report(get_graph(_wg_dir()))
    if json_output:
        click.echo(json.dumps(report, indent=2))
        return
    if not report:
        click.echo("No loop edges.")
        return
    for edge in report:
        state = "exhausted" if edge["exhausted"] else "active"
        if edge["target_missing"]:
            state = "target missing"
        iteration = edge["iteration"] if edge["iteration"] is not None else "?"
        delay = f", delay {edge['delay']}" if edge["delay"] else ""
        click.echo(
            f"  {edge['source']} -> {edge['target']} "
            f"[{iteration}/{edge['max_iterations']}, guard {edge['guard']}{delay}] {state}"
        )


@main.command("cycles")
def cycles_command():
    """Report dependency cycles."""
    cycles = query_mod.find_cycles(get_graph(_wg_dir()))
    if not cycles:
        click.echo("No cycles found.")
        return
    for cycle in cycles:
        click.echo(f"  {' -> '.join(cycle)}")


@main.command("check")
@click.option("--json", "json_output", is_flag=True)
def check_command(json_output):
    """Check the graph for dangling references and dependency cycles."""
    wg_dir = _wg_dir()
    graph = get_graph(wg_dir)
    archived = {t.id for t in archive_mod.list_archive(wg_dir)}
    result = query_mod.check_graph(graph, archived)
    if json_output:
        click.echo(json.dumps({**result.to_dict(), "node_count": len(graph)}, indent=2))
    else:
        if result.cycles:
            click.echo("Warning: cycles detected (fine for recurring work):", err=True)
            for cycle in result.cycles:
                click.echo(f"  {' -> '.join(cycle)}", err=True)
        if result.orphans:
            click.echo("Orphan references:", err=True)
            for orphan in result.orphans:
                click.echo(f"  {orphan.source} --[{orphan.relation}]--> {orphan.target} (not found)", err=True)
    if result.orphans:
        click.echo(
            f"Error: found {len(result.orphans)} error(s) and {len(result.cycles)} warning(s)",
            err=True,
        )
        sys.exit(1)
    if not json_output:
        warnings = f"{len(result.cycles)} warning(s)" if result.cycles else "no issues found"
        click.echo(f"Graph OK: {len(graph)} nodes, {warnings}")


@main.command("impact")
@click.argument("task_id")
@click.option("--json", "json_output", is_flag=True)
def impact_command(task_id, json_output):
    """Show every task that would be held up if TASK_ID slips."""
    graph = get_graph(_wg_dir())
    result = query_mod.impact(graph, task_id)
    if json_output:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return
    if not result.affected:
        click.echo(f"Nothing depends on '{task_id}'")
        return
    click.echo(f"Direct dependents ({len(result.direct)}):")
    for dependent_id in result.direct:
        click.echo(_task_line(graph.get_task(dependent_id)))
    if result.transitive:
        click.echo(f"Transitive dependents ({len(result.transitive)}):")
        for dependent_id in result.transitive:
            click.echo(_task_line(graph.get_task(dependent_id)))
    click.echo(f"{len(result.affected)} task(s) affected, {result.hours_at_risk:g}h at risk")


@main.command("archive")
@click.option("--older", default=None, help="Only tasks completed longer ago than this (e.g. 30d)")
@click.option("--dry-run", is_flag=True, help="Show what would be archived")
@click.option("--list", "list_only", is_flag=True, help="List archived tasks")
def archive_command(older, dry_run, list_only):
    """Move completed tasks to the archive."""
    wg_dir = _wg_dir()
    if list_only:
        archived = archive_mod.list_archive(wg_dir)
        if not archived:
            click.echo("Archive is empty.")
        for task in archived:
            click.echo(f"  {task.id}: {task.title} (completed {task.completed_at or '?'})")
        return
    selected = archive_mod.archive_tasks(wg_dir, older, dry_run)
    if not selected:
        click.echo("No tasks to archive.")
        return
    verb = "Would archive" if dry_run else "Archived"
    click.echo(f"{verb} {len(selected)} task(s):")
    for task in selected:
        click.echo(f"  {task.id}: {task.title}")
    if not dry_run:
        notify_graph_changed(wg_dir)


# ── Actor & Resource Commands ─────────────────────────────────────────────────


@main.group("actor")
def actor_group():
    """Manage actors."""
    pass


@actor_group.command("add")
@click.argument("actor_id")
@click.option("--name", default=None)
@click.option("--role", default=None)
@click.option("--rate", type=float, default=None, help="Hourly rate")
@click.option("--capacity", type=float, default=None, help="Hours available")
@click.option("--capability", "capabilities", multiple=True, help="Skill (repeatable)")
@click.option("--context-limit", type=int, default=None)
@click.option("--trust-level", default="provisional",
              type=click.Choice(actors_mod.TRUST_LEVELS))
@click.option("--type", "actor_type", default="agent", type=click.Choice(actors_mod.ACTOR_TYPES))
@click.option("--chat-user-id", default=None)
def actor_add(actor_id, name, role, rate, capacity, capabilities, context_limit, trust_level,
              actor_type, chat_user_id):
    """Register an actor."""
    actor = actors_mod.add_actor(
        _wg_dir(), actor_id,
        name=name,
        role=role,
        rate=rate,
        capacity=capacity,
        capabilities=_split(capabilities),
        context_limit=context_limit,
        trust_level=trust_level,
        actor_type=actor_type,
        chat_user_id=chat_user_id,
    )
    click.echo(f"Added actor: {actor.id}")


@main.group("resource")
def resource_group():
    """Manage resources."""
    pass


@resource_group.command("add")
@click.argument("resource_id")
@click.option("--name", default=None)
@click.option("--type", "resource_type", default=None)
@click.option("--available", type=float, default=None)
@click.option("--unit", default=None)
def resource_add(resource_id, name, resource_type, available, unit):
    """Register a resource."""
    resource = actors_mod.add_resource(
        _wg_dir(), resource_id, name=name, resource_type=resource_type,
        available=available, unit=unit,
    )
    click.echo(f"Added resource: {resource.id}")


# ── Heartbeat Commands ───────────────────────────────────────────────────────


@main.command("heartbeat")
@click.argument("target_id", required=False)
@click.option("--check", is_flag=True, help="Report active, stale and dead actors and agents")
@click.option("--threshold", type=int, default=None, help="Staleness threshold in minutes")
@click.option("--json", "json_output", is_flag=True)
def heartbeat_command(target_id, check, threshold, json_output):
    """Record a heartbeat for an actor or agent, or check liveness."""
    config = get_config()
    wg_dir = _wg_dir()
    if not check:
        if not target_id:
            click.echo("Error: give an actor/agent ID or --check", err=True)
            sys.exit(1)
        kind = heartbeat_mod.record_heartbeat(wg_dir, target_id)
        click.echo(f"Heartbeat recorded for {kind} {target_id}")
        return

    limit = timedelta(minutes=threshold or config.heartbeat_timeout_minutes)
    actors = heartbeat_mod.check_actors(get_graph(wg_dir), limit)
    agents = heartbeat_mod.check_agents(AgentRegistry.load(wg_dir), limit)
    if json_output:
        click.echo(json.dumps({"actors": actors.to_dict(), "agents": agents.to_dict()}, indent=2))
        return
    for label, report in (("Actors", actors), ("Agents", agents)):
        click.echo(f"{label}:")
        for bucket in ("active", "stale", "dead"):
            for status in getattr(report, bucket):
                seen = status.last_seen or "never"
                click.echo(f"  [{bucket}] {status.id} (last seen {seen})")


# ── Agent Commands ───────────────────────────────────────────────────────────


@main.command("spawn")
@click.argument("task_id")
@click.option("--executor", default=None, help="Executor name (default: $WG_EXECUTOR or claude)")
@click.option("--model", default=None, help="Model override")
@click.option("--timeout", default=None, help="Kill the agent after this long (e.g. 30m)")
@click.option("--force", is_flag=True, help="Spawn even if the task is paused")
@click.option("--json", "json_output", is_flag=True)
def spawn_command(task_id, executor, model, timeout, force, json_output):
    """Spawn an agent to work on a task."""
    config = get_config()
    result = agents_mod.spawn_agent(
        config.workgraph_dir,
        task_id,
        executor=executor or config.default_executor,
        model=model or config.default_model,
        timeout=timeout,
        force=force,
    )
    if json_output:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return
    click.echo(f"Spawned {result.agent_id} for task '{task_id}'")
    click.echo(f"  Executor: {result.executor}")
    click.echo(f"  PID: {result.pid}")
    click.echo(f"  Output: {result.output_file}")


@main.command("finalize", hidden=True)
@click.argument("task_id")
@click.argument("agent_id")
@click.argument("exit_code", type=int)
def finalize_command(task_id, agent_id, exit_code):
    """Settle a task after its agent exits (called by the agent wrapper)."""
    outcome = agents_mod.finalize_agent(_wg_dir(), task_id, agent_id, exit_code)
    if outcome is None:
        click.echo(f"[wrapper] Task '{task_id}' already settled by {agent_id}")
    else:
        click.echo(f"[wrapper] Agent exited with code {exit_code}, task '{task_id}' is {outcome}")


@main.command("kill")
@click.argument("agent_id", required=False)
@click.option("--all", "kill_all", is_flag=True, help="Kill every running agent")
@click.option("--force", is_flag=True, help="SIGKILL immediately")
def kill_command(agent_id, kill_all, force):
    """Kill a running agent and release its task."""
    config = get_config()
    if kill_all:
        result = agents_mod.kill_all_agents(
            config.workgraph_dir, force=force, wait_secs=config.kill_wait_seconds
        )
        if not result.killed and not result.errors:
            click.echo("No running agents.")
        for killed in result.killed:
            click.echo(f"Killed {killed.agent_id} (PID {killed.pid})")
        for failed_id, error in result.errors:
            click.echo(f"Failed to kill {failed_id}: {error}", err=True)
        if result.errors:
            sys.exit(1)
        return
    if not agent_id:
        click.echo("Error: give an agent ID or --all", err=True)
        sys.exit(1)
    result = agents_mod.kill_agent(
        config.workgraph_dir, agent_id, force=force, wait_secs=config.kill_wait_seconds
    )
    click.echo(f"Killed {result.agent_id} (PID {result.pid})")
    if result.task_unclaimed:
        click.echo(f"  Task '{result.task_id}' unclaimed")


@main.command("agents")
@click.option("--alive", is_flag=True, help="Only running or stopping agents")
@click.option("--json", "json_output", is_flag=True)
def agents_command(alive, json_output):
    """List registered agents."""
    registry = AgentRegistry.load(_wg_dir())
    entries = registry.list_alive() if alive else registry.list_agents()
    if json_output:
        click.echo(json.dumps([e.to_dict() for e in entries], indent=2))
        return
    if not entries:
        click.echo("No agents.")
        return
    for entry in entries:
        click.echo(
            f"  [{entry.status.value.upper()}] {entry.id} task={entry.task_id} "
            f"pid={entry.pid} executor={entry.executor}"
        )


@main.command("dead-agents")
@click.option("--cleanup", is_flag=True, help="Mark dead and unclaim their tasks")
@click.option("--remove", is_flag=True, help="Remove dead agents from the registry")
@click.option("--threshold", type=int, default=None, help="Heartbeat timeout in minutes")
def dead_agents_command(cleanup, remove, threshold):
    """Find agents whose heartbeat went stale or whose process is gone."""
    config = get_config()
    wg_dir = config.workgraph_dir
    timeout = timedelta(minutes=threshold or config.heartbeat_timeout_minutes)
    if cleanup:
        result = agents_mod.cleanup_dead_agents(wg_dir, timeout)
        for entry in result.dead:
            click.echo(f"Marked {entry.id} dead (task '{entry.task_id}')")
        for task_id in result.unclaimed:
            click.echo(f"  Unclaimed '{task_id}'")
        if not result.dead:
            click.echo("No dead agents.")
    else:
        dead = agents_mod.find_dead_agents(wg_dir, timeout)
        if not dead:
            click.echo("No dead agents.")
        for entry in dead:
            click.echo(f"  {entry.id} task={entry.task_id} pid={entry.pid} last heartbeat {entry.last_heartbeat}")
    if remove:
        removed = agents_mod.remove_dead_agents(wg_dir)
        click.echo(f"Removed {len(removed)} dead agent(s) from the registry")


@main.group("agent")
def agent_group():
    """Autonomous agent loop."""
    pass


@agent_group.command("run")
@click.argument("actor_id")
@click.option("--once", is_flag=True, help="Run a single iteration")
@click.option("--interval", type=int, default=None, help="Seconds to sleep between iterations")
@click.option("--max-tasks", type=int, default=None, help="Stop after this many tasks")
@click.option("--reset-state", is_flag=True, help="Discard saved run state first")
def agent_run(actor_id, once, interval, max_tasks, reset_state):
    """Run the wake/check/work/sleep loop as ACTOR_ID."""
    config = get_config()
    wg_dir = config.workgraph_dir
    get_graph(wg_dir)
    if reset_state and runner_mod.reset_state(wg_dir, actor_id):
        click.echo(f"Agent state reset for '{actor_id}'")
    runner = runner_mod.AgentRunner(
        wg_dir, actor_id,
        interval=interval or config.agent_interval,
        max_tasks=max_tasks,
        once=once,
        report=click.echo,
    )
    click.echo(f"Agent '{actor_id}' starting (interval {runner.interval}s)")
    try:
        runner.run()
    except KeyboardInterrupt:
        click.echo("Interrupted.")
    state = runner.state
    click.echo(
        f"Session: {runner.iterations} iteration(s), {runner.tasks_done} task(s). "
        f"Lifetime: {state.total_tasks_completed} completed, {state.total_tasks_failed} failed"
    )


# ── Executor Commands ────────────────────────────────────────────────────────


@main.group("executor")
def executor_group():
    """Manage executor configurations."""
    pass


@executor_group.command("init")
def executor_init():
    """Write the built-in executor configs to the executors directory."""
    written = executors_mod.init_executors(_wg_dir())
    if not written:
        click.echo("Executor configs already exist.")
    for path in written:
        click.echo(f"Wrote {path}")


@executor_group.command("list")
def executor_list():
    """List available executors."""
    for name in executors_mod.list_executors(_wg_dir()):
        click.echo(f"  {name}")


# ── Dashboard Command ────────────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
@click.option("--open/--no-open", default=True, help="Open browser automatically")
def ui_command(host, port, open):
    """Launch the web dashboard."""
    import webbrowser

    from workgraph.web.app import run_server

    url = f"http://{host}:{port}"
    click.echo(f"Starting dashboard at {url}")
    if open:
        webbrowser.open(url)
    run_server(host=host, port=port)


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from workgraph.mcp.server import mcp
    from workgraph.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
