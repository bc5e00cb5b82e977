"""Tests for the CLI."""

import json
import os
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from workgraph.cli import main
from workgraph.core.registry import AgentRegistry
from workgraph.db.engine import get_graph, mutate_graph
from workgraph.db.models import Status


@pytest.fixture
def cli_env():
    """Set up a temp workgraph directory for CLI testing."""
    with tempfile.TemporaryDirectory() as tmp:
        wg_dir = Path(tmp) / ".workgraph"
        env = {"WG_DIR": str(wg_dir)}
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        yield CliRunner(), wg_dir

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


@pytest.fixture
def initialized(cli_env):
    runner, wg_dir = cli_env
    result = runner.invoke(main, ["init"])
    assert result.exit_code == 0
    return runner, wg_dir


class TestCLI:
    def test_help(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "task graph and agent dispatch" in result.output

    def test_init_twice(self, initialized):
        runner, wg_dir = initialized
        assert (wg_dir / "graph.jsonl").exists()
        result = runner.invoke(main, ["init"])
        assert result.exit_code == 1
        assert "Error: Workgraph already initialized" in result.output

    def test_not_initialized(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["list"])
        assert result.exit_code == 1
        assert "wg init" in result.output

    def test_task_flow(self, initialized):
        runner, wg_dir = initialized

        result = runner.invoke(main, ["add", "Design API", "--hours", "2"])
        assert result.exit_code == 0
        assert "Added task: design-api (Design API)" in result.output

        result = runner.invoke(main, ["add", "Build API", "--blocked-by", "design-api"])
        assert result.exit_code == 0
        assert "Blocked by: design-api" in result.output

        result = runner.invoke(main, ["ready"])
        assert "design-api" in result.output
        assert "build-api" not in result.output

        result = runner.invoke(main, ["claim", "design-api", "--actor", "alice"])
        assert result.exit_code == 0
        assert "Claimed 'design-api' by @alice" in result.output

        result = runner.invoke(main, ["done", "design-api"])
        assert result.exit_code == 0
        assert "Marked 'design-api' as done" in result.output

        result = runner.invoke(main, ["done", "design-api"])
        assert result.exit_code == 0
        assert "already done" in result.output

        result = runner.invoke(main, ["ready", "--json"])
        assert [t["id"] for t in json.loads(result.output)] == ["build-api"]

        result = runner.invoke(main, ["list"])
        assert "✓ design-api" in result.output
        assert "○ build-api" in result.output

    def test_fail_and_retry(self, initialized):
        runner, wg_dir = initialized
        runner.invoke(main, ["add", "Flaky", "--max-retries", "2"])

        result = runner.invoke(main, ["fail", "flaky", "--reason", "timeout"])
        assert "Marked 'flaky' as failed" in result.output
        result = runner.invoke(main, ["retry", "flaky"])
        assert result.exit_code == 0
        assert "attempt #2" in result.output

        runner.invoke(main, ["fail", "flaky"])
        result = runner.invoke(main, ["retry", "flaky"])
        assert result.exit_code == 1
        assert result.output.startswith("Error:")

    def test_done_with_unresolved_blocker(self, initialized):
        runner, _ = initialized
        runner.invoke(main, ["add", "First"])
        runner.invoke(main, ["add", "Second", "--blocked-by", "first"])
        result = runner.invoke(main, ["done", "second"])
        assert result.exit_code == 1
        assert "first" in result.output

    def test_unknown_task(self, initialized):
        runner, _ = initialized
        result = runner.invoke(main, ["show", "nope"])
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_show_json_and_log(self, initialized):
        runner, _ = initialized
        runner.invoke(main, ["add", "Write docs", "--tag", "docs", "--skill", "writing"])
        runner.invoke(main, ["log", "write-docs", "Outline drafted", "--actor", "bob"])
        runner.invoke(main, ["artifact", "write-docs", "docs/index.md"])

        result = runner.invoke(main, ["show", "write-docs", "--json"])
        data = json.loads(result.output)
        assert data["tags"] == ["docs"]
        assert data["artifacts"] == ["docs/index.md"]
        assert data["log"][-1]["message"] == "Outline drafted"

        result = runner.invoke(main, ["log", "write-docs"])
        assert "@bob Outline drafted" in result.output

    def test_loop_edge(self, initialized):
        runner, wg_dir = initialized
        runner.invoke(main, ["add", "Poll"])
        result = runner.invoke(main, ["edit", "poll", "--add-loops-to", "poll", "--loop-max", "2"])
        assert "+loops-to poll" in result.output

        runner.invoke(main, ["claim", "poll"])
        result = runner.invoke(main, ["done", "poll"])
        assert "Loop re-activated: poll" in result.output
        assert get_graph(wg_dir).get_task("poll").status == Status.OPEN

        result = runner.invoke(main, ["loops"])
        assert "poll -> poll [1/2, guard always] active" in result.output

    def test_cost_and_critical_path(self, initialized):
        runner, _ = initialized
        runner.invoke(main, ["add", "A", "--hours", "3", "--cost", "10"])
        runner.invoke(main, ["add", "B", "--hours", "2", "--cost", "5", "--blocked-by", "a"])

        result = runner.invoke(main, ["cost", "b"])
        assert "Total cost of 'b': 15.00" in result.output

        result = runner.invoke(main, ["critical-path", "--json"])
        data = json.loads(result.output)
        assert data["path"] == ["a", "b"]
        assert data["total_hours"] == 5

    def test_check(self, initialized):
        runner, wg_dir = initialized
        runner.invoke(main, ["add", "A"])
        runner.invoke(main, ["add", "B", "--blocked-by", "a"])
        result = runner.invoke(main, ["check"])
        assert result.exit_code == 0
        assert "Graph OK: 2 nodes, no issues found" in result.output

        with mutate_graph(wg_dir) as graph:
            graph.get_task("b").requires.append("gpu")
        result = runner.invoke(main, ["check", "--json"])
        assert result.exit_code == 1
        assert "Error: found 1 error(s)" in result.output
        assert '"relation": "requires"' in result.output

    def test_check_ignores_archived_blockers(self, initialized):
        runner, _ = initialized
        runner.invoke(main, ["add", "A"])
        runner.invoke(main, ["add", "B", "--blocked-by", "a"])
        runner.invoke(main, ["done", "a"])
        runner.invoke(main, ["archive"])
        result = runner.invoke(main, ["check"])
        assert result.exit_code == 0

    def test_impact(self, initialized):
        runner, _ = initialized
        runner.invoke(main, ["add", "Schema"])
        runner.invoke(main, ["add", "API", "--blocked-by", "schema", "--hours", "3"])
        runner.invoke(main, ["add", "UI", "--blocked-by", "api", "--hours", "2"])
        result = runner.invoke(main, ["impact", "schema"])
        assert result.exit_code == 0
        assert "Direct dependents (1):" in result.output
        assert "Transitive dependents (1):" in result.output
        assert "2 task(s) affected, 5h at risk" in result.output

        result = runner.invoke(main, ["impact", "ui"])
        assert "Nothing depends on 'ui'" in result.output

    def test_actor_and_heartbeat(self, initialized):
        runner, wg_dir = initialized
        result = runner.invoke(main, ["actor", "add", "alice", "--capability", "python,rust"])
        assert result.exit_code == 0
        assert get_graph(wg_dir).get_actor("alice").capabilities == ["python", "rust"]

        result = runner.invoke(main, ["heartbeat", "alice"])
        assert "Heartbeat recorded for actor alice" in result.output

        result = runner.invoke(main, ["heartbeat", "--check", "--json"])
        data = json.loads(result.output)
        assert [s["id"] for s in data["actors"]["active"]] == ["alice"]

    def test_heartbeat_needs_target(self, initialized):
        runner, _ = initialized
        result = runner.invoke(main, ["heartbeat"])
        assert result.exit_code == 1

    def test_archive(self, initialized):
        runner, wg_dir = initialized
        runner.invoke(main, ["add", "Old"])
        runner.invoke(main, ["done", "old"])
        result = runner.invoke(main, ["archive", "--dry-run"])
        assert "Would archive 1 task(s)" in result.output
        result = runner.invoke(main, ["archive"])
        assert "Archived 1 task(s)" in result.output
        assert get_graph(wg_dir).get_task("old") is None
        result = runner.invoke(main, ["archive", "--list"])
        assert "old: Old" in result.output


class TestAgentCommands:
    def test_spawn_and_kill(self, initialized):
        runner, wg_dir = initialized
        runner.invoke(main, ["add", "Build", "--exec", "make"])

        with patch("workgraph.core.agents.PosixProcessControl") as control:
            control.return_value.spawn.return_value = 4242
            result = runner.invoke(main, ["spawn", "build", "--executor", "shell"])
            assert result.exit_code == 0
            assert "Spawned agent-1 for task 'build'" in result.output
            assert "PID: 4242" in result.output

            result = runner.invoke(main, ["agents", "--json"])
            assert json.loads(result.output)[0]["task_id"] == "build"

            result = runner.invoke(main, ["kill", "agent-1", "--force"])
            assert result.exit_code == 0
            assert "Killed agent-1 (PID 4242)" in result.output
            assert "Task 'build' unclaimed" in result.output

        assert get_graph(wg_dir).get_task("build").status == Status.OPEN
        assert AgentRegistry.load(wg_dir).list_agents() == []

    def test_finalize(self, initialized):
        runner, wg_dir = initialized
        runner.invoke(main, ["add", "Build"])
        runner.invoke(main, ["claim", "build", "--actor", "agent-1"])
        result = runner.invoke(main, ["finalize", "build", "agent-1", "3"])
        assert result.exit_code == 0
        task = get_graph(wg_dir).get_task("build")
        assert task.status == Status.FAILED
        assert task.failure_reason == "Agent exited with code 3"

    def test_kill_needs_target(self, initialized):
        runner, _ = initialized
        result = runner.invoke(main, ["kill"])
        assert result.exit_code == 1

    def test_executor_list(self, initialized):
        runner, _ = initialized
        result = runner.invoke(main, ["executor", "list"])
        assert "claude" in result.output
        assert "shell" in result.output

    def test_agent_run_once(self, initialized):
        runner, wg_dir = initialized
        runner.invoke(main, ["actor", "add", "bot"])
        runner.invoke(main, ["add", "Greet", "--exec", "echo hi"])
        result = runner.invoke(main, ["agent", "run", "bot", "--once"])
        assert result.exit_code == 0
        assert "Completed: greet" in result.output
        assert get_graph(wg_dir).get_task("greet").status == Status.DONE
