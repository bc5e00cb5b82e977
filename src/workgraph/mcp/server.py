"""MCP server exposing workgraph task tools."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from mcp.server.fastmcp import Context, FastMCP

from workgraph.config import Config, get_config
from workgraph.core import heartbeat as heartbeat_mod
from workgraph.core import query as query_mod
from workgraph.core import tasks as tasks_mod
from workgraph.db.engine import get_graph, mutate_graph
from workgraph.errors import WorkgraphError
from workgraph.integrations.coordinator import notify_graph_changed


@dataclass
class AppContext:
    config: Config

    @property
    def wg_dir(self) -> Path:
        return self.config.workgraph_dir


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Resolve configuration once for the lifetime of the server."""
    yield AppContext(config=get_config())


mcp = FastMCP("workgraph", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _error(e: WorkgraphError) -> dict:
    return {"error": str(e)}


# ── Query Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def list_tasks(ctx: Context, status: str | None = None) -> list[dict] | dict:
    """List all tasks, optionally filtered by status (open, in-progress, done, ...)."""
    try:
        tasks = get_graph(_ctx(ctx).wg_dir).tasks()
    except WorkgraphError as e:
        return _error(e)
    if status:
        tasks = [t for t in tasks if t.status.value == status]
    return [t.to_dict() for t in tasks]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get full details of a task, including its log, artifacts and loop edges."""
    try:
        graph = get_graph(_ctx(ctx).wg_dir)
        task = graph.require_task(task_id)
    except WorkgraphError as e:
        return _error(e)
    result = task.to_dict()
    result["unresolved_blockers"] = tasks_mod.unresolved_blockers(graph, task)
    return result


@mcp.tool()
def ready_tasks(ctx: Context) -> list[dict] | dict:
    """Tasks that are open, unblocked and past their time gates."""
    try:
        graph = get_graph(_ctx(ctx).wg_dir)
    except WorkgraphError as e:
        return _error(e)
    return [t.to_dict() for t in query_mod.ready_tasks(graph)]


# ── Mutation Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def add_task(
    ctx: Context,
    title: str,
    description: str | None = None,
    blocked_by: list[str] | None = None,
    hours: float | None = None,
    tags: list[str] | None = None,
    skills: list[str] | None = None,
    exec_cmd: str | None = None,
    verify: str | None = None,
) -> dict:
    """Create a new open task. ``blocked_by`` lists tasks that must finish first."""
    app = _ctx(ctx)
    try:
        with mutate_graph(app.wg_dir) as graph:
            task = tasks_mod.create_task(
                graph, title,
                description=description,
                blocked_by=blocked_by,
                hours=hours,
                tags=tags,
                skills=skills,
                exec_cmd=exec_cmd,
                verify=verify,
            )
    except WorkgraphError as e:
        return _error(e)
    notify_graph_changed(app.wg_dir)
    return task.to_dict()


@mcp.tool()
def claim_task(ctx: Context, task_id: str, actor: str | None = None) -> dict:
    """Claim a task, moving it to in-progress."""
    app = _ctx(ctx)
    try:
        with mutate_graph(app.wg_dir) as graph:
            task = tasks_mod.claim_task(graph, task_id, actor)
    except WorkgraphError as e:
        return _error(e)
    notify_graph_changed(app.wg_dir)
    return task.to_dict()


@mcp.tool()
def done_task(ctx: Context, task_id: str, actor: str | None = None) -> dict:
    """Mark a task done. Loop edges on the task may re-open earlier tasks."""
    app = _ctx(ctx)
    try:
        with mutate_graph(app.wg_dir) as graph:
            result = tasks_mod.done_task(graph, task_id, actor)
    except WorkgraphError as e:
        return _error(e)
    notify_graph_changed(app.wg_dir)
    out = result.task.to_dict()
    out["already_done"] = result.already_done
    out["reactivated"] = result.reactivated
    return out


@mcp.tool()
def fail_task(ctx: Context, task_id: str, reason: str | None = None) -> dict:
    """Mark a task failed with an optional reason."""
    app = _ctx(ctx)
    try:
        with mutate_graph(app.wg_dir) as graph:
            tasks_mod.fail_task(graph, task_id, reason)
            task = graph.require_task(task_id)
    except WorkgraphError as e:
        return _error(e)
    notify_graph_changed(app.wg_dir)
    return task.to_dict()


@mcp.tool()
def log_task(ctx: Context, task_id: str, message: str, actor: str | None = None) -> dict:
    """Append a progress note to a task's log."""
    app = _ctx(ctx)
    try:
        with mutate_graph(app.wg_dir) as graph:
            task = tasks_mod.add_log(graph, task_id, message, actor)
    except WorkgraphError as e:
        return _error(e)
    return {"task_id": task.id, "log_entries": len(task.log)}


@mcp.tool()
def add_artifact(ctx: Context, task_id: str, path: str) -> dict:
    """Record a file produced by a task."""
    app = _ctx(ctx)
    try:
        with mutate_graph(app.wg_dir) as graph:
            added = tasks_mod.add_artifact(graph, task_id, path)
            artifacts = list(graph.require_task(task_id).artifacts)
    except WorkgraphError as e:
        return _error(e)
    return {"task_id": task_id, "added": added, "artifacts": artifacts}


@mcp.tool()
def heartbeat(ctx: Context, actor_id: str) -> dict:
    """Record a heartbeat for an actor or a spawned agent (agent-N)."""
    try:
        kind = heartbeat_mod.record_heartbeat(_ctx(ctx).wg_dir, actor_id)
    except WorkgraphError as e:
        return _error(e)
    return {"id": actor_id, "kind": kind}
