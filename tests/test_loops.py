"""Tests for loop edges: delays, guards and re-activation."""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from workgraph.core import loops as loops_mod
from workgraph.core import query as query_mod
from workgraph.core import tasks as tasks_mod
from workgraph.db.engine import WorkGraph
from workgraph.db.models import GUARD_ITERATION_LESS_THAN, GUARD_TASK_STATUS, LoopEdge, Status, parse_timestamp
from workgraph.errors import ValidationError


@pytest.fixture
def graph():
    return WorkGraph()


def _add(graph, task_id, blocked_by=None):
    return tasks_mod.create_task(graph, task_id.upper(), task_id=task_id, blocked_by=blocked_by)


def _finish(graph, task_id):
    tasks_mod.claim_task(graph, task_id)
    return tasks_mod.done_task(graph, task_id)


class TestParseDelay:
    @pytest.mark.parametrize("value,expected", [
        ("30s", timedelta(seconds=30)),
        ("5m", timedelta(minutes=5)),
        ("24h", timedelta(hours=24)),
        ("7d", timedelta(days=7)),
        ("0s", timedelta(0)),
        (" 1h ", timedelta(hours=1)),
    ])
    def test_valid(self, value, expected):
        assert loops_mod.parse_delay(value) == expected

    @pytest.mark.parametrize("value", ["", "s", "5", "5x", "-5m", "1.5h", "h5", "5 m", "²s", "٣m"])
    def test_invalid(self, value):
        assert loops_mod.parse_delay(value) is None

    def test_non_ascii_delay_rejected_on_edge(self):
        graph = WorkGraph()
        _add(graph, "a")
        _add(graph, "b", blocked_by=["a"])
        with pytest.raises(ValidationError):
            tasks_mod.add_loop_edge(graph, "b", "a", 2, delay="²s")


class TestParseGuard:
    def test_always(self):
        assert loops_mod.parse_guard("always").describe() == "always"

    def test_task_status(self):
        guard = loops_mod.parse_guard("task:review=failed")
        assert guard.kind == GUARD_TASK_STATUS
        assert guard.task == "review"
        assert guard.status == Status.FAILED

    def test_pending_review_reads_as_done(self):
        assert loops_mod.parse_guard("task:review=pending-review").status == Status.DONE

    def test_iteration(self):
        guard = loops_mod.parse_guard("iteration<3")
        assert guard.kind == GUARD_ITERATION_LESS_THAN
        assert guard.value == 3

    @pytest.mark.parametrize("expr", ["sometimes", "task:review", "task:review=sleeping", "iteration>3"])
    def test_invalid(self, expr):
        with pytest.raises(ValidationError):
            loops_mod.parse_guard(expr)


class TestEvaluate:
    def test_self_loop(self, graph):
        _add(graph, "poll")
        tasks_mod.add_loop_edge(graph, "poll", "poll", 3)
        result = _finish(graph, "poll")
        task = graph.get_task("poll")
        assert result.reactivated == ["poll"]
        assert task.status == Status.OPEN
        assert task.loop_iteration == 1
        assert task.completed_at is None

    def test_target_reopened_until_max(self, graph):
        target = _add(graph, "target")
        target.status = Status.DONE
        _add(graph, "source")
        tasks_mod.add_loop_edge(graph, "source", "target", 2)

        _finish(graph, "source")
        assert target.status == Status.OPEN
        assert target.loop_iteration == 1

        target.status = Status.DONE
        _finish(graph, "source")
        assert target.status == Status.OPEN
        assert target.loop_iteration == 2

        target.status = Status.DONE
        result = _finish(graph, "source")
        assert result.reactivated == []
        assert target.status == Status.DONE
        assert target.loop_iteration == 2
        assert graph.get_task("source").status == Status.DONE

    def test_chain_reopened(self, graph):
        _add(graph, "write")
        _add(graph, "test", blocked_by=["write"])
        _add(graph, "review", blocked_by=["test"])
        tasks_mod.add_loop_edge(graph, "review", "write", 5)
        _finish(graph, "write")
        _finish(graph, "test")
        result = _finish(graph, "review")

        assert result.reactivated == ["write", "test", "review"]
        for task_id in ("write", "test", "review"):
            task = graph.get_task(task_id)
            assert task.status == Status.OPEN
            assert task.loop_iteration == 1
            assert task.assigned is None
        assert [t.id for t in query_mod.ready_tasks(graph)] == ["write"]
        assert graph.get_task("write").log[-1].message == (
            "Re-activated by loop from review (iteration 1/5)"
        )

    def test_unrelated_tasks_untouched(self, graph):
        _add(graph, "write")
        _add(graph, "docs", blocked_by=["write"])
        _add(graph, "review", blocked_by=["write"])
        tasks_mod.add_loop_edge(graph, "review", "write", 5)
        _finish(graph, "write")
        _finish(graph, "docs")
        _finish(graph, "review")
        assert graph.get_task("docs").status == Status.DONE

    def test_guard_on_other_task(self, graph):
        _add(graph, "check")
        _add(graph, "work")
        tasks_mod.add_loop_edge(graph, "work", "work", 5, guard="task:check=failed")
        assert _finish(graph, "work").reactivated == []

        graph.get_task("work").status = Status.OPEN
        tasks_mod.fail_task(graph, "check")
        assert _finish(graph, "work").reactivated == ["work"]

    def test_iteration_guard(self, graph):
        _add(graph, "poll")
        tasks_mod.add_loop_edge(graph, "poll", "poll", 10, guard="iteration<2")
        _finish(graph, "poll")
        _finish(graph, "poll")
        assert graph.get_task("poll").loop_iteration == 2
        assert _finish(graph, "poll").reactivated == []

    def test_delay_sets_ready_after(self, graph):
        _add(graph, "poll")
        tasks_mod.add_loop_edge(graph, "poll", "poll", 3, delay="1h")
        _finish(graph, "poll")
        task = graph.get_task("poll")
        gate = parse_timestamp(task.ready_after)
        assert gate > datetime.now(timezone.utc) + timedelta(minutes=59)
        assert query_mod.ready_tasks(graph) == []

    def test_invalid_delay_still_fires(self, graph, caplog):
        task = _add(graph, "poll")
        task.loops_to.append(LoopEdge(target="poll", max_iterations=3, delay="soon"))
        with caplog.at_level(logging.WARNING):
            result = _finish(graph, "poll")
        assert result.reactivated == ["poll"]
        assert task.ready_after is None
        assert "invalid delay" in caplog.text

    def test_missing_target_skipped(self, graph, caplog):
        task = _add(graph, "source")
        task.loops_to.append(LoopEdge(target="ghost", max_iterations=3))
        with caplog.at_level(logging.WARNING):
            result = _finish(graph, "source")
        assert result.reactivated == []
        assert task.status == Status.DONE
        assert "missing task 'ghost'" in caplog.text


def test_chain_between(graph):
    _add(graph, "a")
    _add(graph, "b", blocked_by=["a"])
    _add(graph, "c", blocked_by=["b"])
    _add(graph, "side", blocked_by=["a"])
    assert loops_mod.chain_between(graph, "a", "c") == ["b"]
