"""Tests for the web dashboard API."""

import os
import tempfile
from pathlib import Path

import pytest
from starlette.testclient import TestClient

from workgraph.core import tasks as tasks_mod
from workgraph.core.actors import add_actor
from workgraph.core.registry import AgentRegistry
from workgraph.db.engine import init_graph, mutate_graph
from workgraph.web.app import create_app


@pytest.fixture
def web_env():
    """Set up a temp environment for web API testing."""
    with tempfile.TemporaryDirectory() as tmp:
        wg_dir = Path(tmp) / ".workgraph"
        env = {"WG_DIR": str(wg_dir)}
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        # Seed data
        init_graph(wg_dir)
        add_actor(wg_dir, "alice")
        with mutate_graph(wg_dir) as graph:
            tasks_mod.create_task(graph, "Setup database", description="Create tables", hours=2, cost=20)
            tasks_mod.create_task(graph, "Build API", blocked_by=["setup-database"], hours=3, cost=30)
            tasks_mod.create_task(graph, "Write tests", hours=1)
            tasks_mod.claim_task(graph, "setup-database", "alice")
            tasks_mod.done_task(graph, "setup-database", "alice")
            tasks_mod.claim_task(graph, "build-api", "alice")
        with AgentRegistry.locked(wg_dir) as registry:
            registry.register(4242, "build-api", "claude", str(wg_dir / "agents" / "agent-1" / "output.log"))

        app = create_app()
        client = TestClient(app)
        yield client

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


class TestDashboardPage:
    def test_index_returns_html(self, web_env):
        resp = web_env.get("/")
        assert resp.status_code == 200
        assert "text/html" in resp.headers["content-type"]
        assert "workgraph" in resp.text


class TestTasksAPI:
    def test_list_tasks(self, web_env):
        resp = web_env.get("/api/tasks")
        assert resp.status_code == 200
        ids = [t["id"] for t in resp.json()]
        assert ids == ["setup-database", "build-api", "write-tests"]

    def test_filter_by_status(self, web_env):
        resp = web_env.get("/api/tasks?status=in-progress")
        data = resp.json()
        assert len(data) == 1
        assert data[0]["id"] == "build-api"
        assert data[0]["assigned"] == "alice"

    def test_get_task(self, web_env):
        resp = web_env.get("/api/tasks/build-api")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "in-progress"
        assert data["blocked_by"] == ["setup-database"]
        assert data["blockers"] == []
        assert data["total_cost"] == 50

    def test_get_task_not_found(self, web_env):
        resp = web_env.get("/api/tasks/nonexistent")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Task not found"}

    def test_ready(self, web_env):
        resp = web_env.get("/api/ready")
        assert [t["id"] for t in resp.json()] == ["write-tests"]


class TestSummaryAPI:
    def test_summary(self, web_env):
        data = web_env.get("/api/summary").json()
        assert data["total"] == 3
        assert data["counts"]["done"] == 1
        assert data["counts"]["in-progress"] == 1
        assert data["counts"]["open"] == 1
        assert data["progress_pct"] == 33.3
        assert data["ready"] == 1
        assert data["actors"] == 1
        assert data["resources"] == 0

    def test_critical_path(self, web_env):
        data = web_env.get("/api/critical-path").json()
        assert data["path"] == ["build-api"]
        assert data["total_hours"] == 3

    def test_agents(self, web_env):
        data = web_env.get("/api/agents").json()
        assert len(data) == 1
        assert data[0]["id"] == "agent-1"
        assert data[0]["pid"] == 4242


class TestUninitialized:
    def test_returns_503(self):
        with tempfile.TemporaryDirectory() as tmp:
            old = os.environ.get("WG_DIR")
            os.environ["WG_DIR"] = str(Path(tmp) / "missing")
            try:
                resp = TestClient(create_app()).get("/api/tasks")
            finally:
                if old is None:
                    os.environ.pop("WG_DIR", None)
                else:
                    os.environ["WG_DIR"] = old
        assert resp.status_code == 503
        assert "wg init" in resp.json()["error"]
