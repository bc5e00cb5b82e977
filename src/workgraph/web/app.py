"""Web dashboard API for workgraph."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse
from starlette.routing import Route

from workgraph.config import get_config
from workgraph.core import query as query_mod
from workgraph.core.registry import AgentRegistry
from workgraph.db.engine import get_graph
from workgraph.errors import NotFoundError, NotInitializedError
from workgraph.web.dashboard import get_dashboard_html


def _wg_dir():
    return get_config().workgraph_dir


def _graph():
    return get_graph(_wg_dir())


# ── Handlers ──────────────────────────────────────────────────────────────────


async def index(request: Request):
    return HTMLResponse(get_dashboard_html())


async def api_list_tasks(request: Request):
    status_filter = request.query_params.get("status")
    tasks = _graph().tasks()
    if status_filter:
        tasks = [t for t in tasks if t.status.value == status_filter]
    return JSONResponse([_task_dict(t) for t in tasks])


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    graph = _graph()
    task = graph.get_task(task_id)
    if not task:
        return JSONResponse({"error": "Task not found"}, status_code=404)
    td = task.to_dict()
    td["blockers"] = [_task_dict(b) for b in query_mod.blocked_by(graph, task_id)]
    td["total_cost"] = query_mod.cost_of(graph, task_id)
    return JSONResponse(td)


async def api_ready(request: Request):
    return JSONResponse([_task_dict(t) for t in query_mod.ready_tasks(_graph())])


async def api_summary(request: Request):
    graph = _graph()
    summary = query_mod.status_counts(graph)
    summary["ready"] = len(query_mod.ready_tasks(graph))
    summary["actors"] = len(graph.actors())
    summary["resources"] = len(graph.resources())
    return JSONResponse(summary)


async def api_critical_path(request: Request):
    return JSONResponse(query_mod.critical_path(_graph()).to_dict())


async def api_agents(request: Request):
    registry = AgentRegistry.load(_wg_dir())
    return JSONResponse([e.to_dict() for e in registry.list_agents()])


# ── Serialization ─────────────────────────────────────────────────────────────


def _task_dict(t) -> dict:
    """Flat task summary for lists; the detail endpoint returns the full record."""
    return {
        "id": t.id,
        "title": t.title,
        "status": t.status.value,
        "description": t.description,
        "assigned": t.assigned,
        "blocked_by": t.blocked_by,
        "tags": t.tags,
        "hours": t.hours,
        "paused": t.paused,
        "loop_iteration": t.loop_iteration,
        "created_at": t.created_at,
        "completed_at": t.completed_at,
    }


# ── Errors ────────────────────────────────────────────────────────────────────


async def not_found(request: Request, exc: NotFoundError):
    return JSONResponse({"error": str(exc)}, status_code=404)


async def not_initialized(request: Request, exc: NotInitializedError):
    return JSONResponse({"error": str(exc)}, status_code=503)


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/", index),
        Route("/api/tasks", api_list_tasks),
        Route("/api/tasks/{task_id}", api_get_task),
        Route("/api/ready", api_ready),
        Route("/api/summary", api_summary),
        Route("/api/critical-path", api_critical_path),
        Route("/api/agents", api_agents),
    ]
    handlers = {NotFoundError: not_found, NotInitializedError: not_initialized}
    return Starlette(routes=routes, exception_handlers=handlers)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
