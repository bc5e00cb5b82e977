"""Tests for the autonomous agent loop."""

import json
import shutil
import subprocess
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from workgraph.core import runner as runner_mod
from workgraph.core import tasks as tasks_mod
from workgraph.core.actors import add_actor
from workgraph.db.engine import WorkGraph, get_graph, init_graph, mutate_graph
from workgraph.db.models import Actor, Status

pytestmark = pytest.mark.skipif(shutil.which("bash") is None, reason="needs bash")


@pytest.fixture
def wg_dir():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / ".workgraph"
        init_graph(path)
        add_actor(path, "bot", capabilities=["python"])
        yield path


def _add(wg_dir, task_id, **kwargs):
    with mutate_graph(wg_dir) as graph:
        tasks_mod.create_task(graph, task_id.upper(), task_id=task_id, **kwargs)


def _runner(wg_dir, **kwargs):
    return runner_mod.AgentRunner(wg_dir, "bot", interval=7, sleep=MagicMock(), **kwargs)


class TestSelectTask:
    def test_prefers_matching_skills(self):
        graph = WorkGraph()
        tasks_mod.create_task(graph, "Rust", task_id="rust", skills=["rust"])
        tasks_mod.create_task(graph, "Py", task_id="py", skills=["python"])
        actor = Actor(id="bot", capabilities=["python"])
        assert runner_mod.select_task(graph, actor).id == "py"

    def test_falls_back_to_any_ready(self):
        graph = WorkGraph()
        tasks_mod.create_task(graph, "Rust", task_id="rust", skills=["rust"])
        assert runner_mod.select_task(graph, Actor(id="bot")).id == "rust"

    def test_skips_paused(self):
        graph = WorkGraph()
        tasks_mod.create_task(graph, "A", task_id="a").paused = True
        assert runner_mod.select_task(graph, None) is None


class TestAgentRunner:
    def test_once_runs_exec_task(self, wg_dir):
        _add(wg_dir, "t1", exec_cmd="echo working")
        runner = _runner(wg_dir, once=True)
        results = runner.run()

        assert [r.outcome for r in results] == [runner_mod.COMPLETED]
        assert "working" in results[0].output
        graph = get_graph(wg_dir)
        assert graph.get_task("t1").status == Status.DONE
        assert graph.get_actor("bot").last_seen is not None
        runner.sleep.assert_not_called()

    def test_failed_exec(self, wg_dir):
        _add(wg_dir, "t1", exec_cmd="exit 4")
        result = _runner(wg_dir, once=True).run()[0]
        assert result.outcome == runner_mod.FAILED
        task = get_graph(wg_dir).get_task("t1")
        assert task.status == Status.FAILED
        assert task.failure_reason == "Exit code 4"

    def test_verify_task_submitted_for_review(self, wg_dir):
        _add(wg_dir, "t1", exec_cmd="true", verify="check it")
        runner = _runner(wg_dir, once=True)
        result = runner.run()[0]
        assert result.outcome == runner_mod.SUBMITTED
        assert get_graph(wg_dir).get_task("t1").status == Status.PENDING_REVIEW
        assert runner.state.total_tasks_completed == 1

    def test_refused_done_fails_task(self, wg_dir):
        _add(wg_dir, "dep")
        with mutate_graph(wg_dir) as graph:
            tasks_mod.done_task(graph, "dep")
        _add(wg_dir, "t1", exec_cmd="true", blocked_by=["dep"])

        def reopen_dep(*args, **kwargs):
            with mutate_graph(wg_dir) as graph:
                graph.get_task("dep").status = Status.OPEN
            return subprocess.CompletedProcess(args[0], 0, "", "")

        with patch("workgraph.core.runner.subprocess.run", side_effect=reopen_dep):
            result = _runner(wg_dir, once=True).run()[0]

        assert result.outcome == runner_mod.FAILED
        assert "could not be completed" in result.reason
        task = get_graph(wg_dir).get_task("t1")
        assert task.status == Status.FAILED
        assert "dep" in task.failure_reason

    def test_task_without_exec_left_claimed(self, wg_dir):
        _add(wg_dir, "t1")
        result = _runner(wg_dir, once=True).run()[0]
        assert result.outcome == runner_mod.CLAIMED
        task = get_graph(wg_dir).get_task("t1")
        assert task.status == Status.IN_PROGRESS
        assert task.assigned == "bot"

    def test_idle(self, wg_dir):
        results = _runner(wg_dir, once=True).run()
        assert [r.outcome for r in results] == [runner_mod.IDLE]

    def test_max_tasks(self, wg_dir):
        _add(wg_dir, "t1", exec_cmd="true")
        _add(wg_dir, "t2", exec_cmd="true")
        _add(wg_dir, "t3", exec_cmd="true")
        runner = _runner(wg_dir, max_tasks=2)
        results = runner.run()

        assert len(results) == 2
        assert runner.tasks_done == 2
        runner.sleep.assert_called_once_with(7)
        assert get_graph(wg_dir).get_task("t3").status == Status.OPEN

    def test_state_persisted(self, wg_dir):
        _add(wg_dir, "t1", exec_cmd="true")
        _add(wg_dir, "t2", exec_cmd="false")
        _runner(wg_dir, max_tasks=2).run()

        path = runner_mod.state_path(wg_dir, "bot")
        data = json.loads(path.read_text())
        assert data["total_tasks_completed"] == 1
        assert data["total_tasks_failed"] == 1
        assert data["session_count"] == 1
        assert [h["outcome"] for h in data["task_history"]] == ["completed", "failed"]

        _runner(wg_dir, once=True).run()
        assert runner_mod.RunnerState.load(wg_dir, "bot").session_count == 2

    def test_reset_state(self, wg_dir):
        _runner(wg_dir, once=True).run()
        assert runner_mod.reset_state(wg_dir, "bot") is True
        assert runner_mod.reset_state(wg_dir, "bot") is False
