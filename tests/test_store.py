"""Tests for the data models and the JSONL graph store."""

import json
import tempfile
from pathlib import Path

import pytest

from workgraph.db.engine import (
    WorkGraph,
    append_archive,
    append_node,
    archive_path,
    atomic_write_text,
    get_graph,
    graph_path,
    init_graph,
    load_archive,
    load_graph,
    locked_file,
    mutate_graph,
    save_graph,
)
from workgraph.db.models import (
    Actor,
    Estimate,
    LoopEdge,
    LoopGuard,
    Resource,
    Status,
    Task,
    node_from_dict,
    node_to_dict,
    parse_timestamp,
)
from workgraph.errors import ConflictError, NotFoundError, NotInitializedError, StorageError


@pytest.fixture
def wg_dir():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / ".workgraph"
        init_graph(path)
        yield path


class TestModels:
    def test_task_dict_omits_defaults(self):
        data = Task(id="t1", title="Build").to_dict()
        assert data == {"id": "t1", "title": "Build", "status": "open"}

    def test_node_kind_tag(self):
        assert node_to_dict(Actor(id="alice"))["kind"] == "actor"
        assert node_to_dict(Task(id="t", title="T"))["kind"] == "task"

    def test_resource_type_field_is_renamed_on_disk(self):
        data = node_to_dict(Resource(id="gpu", resource_type="compute", available=2))
        assert data["type"] == "compute"
        assert "resource_type" not in data
        assert node_from_dict(data).resource_type == "compute"

    def test_full_task_survives_serialization(self):
        task = Task(
            id="t1",
            title="Review",
            status=Status.IN_PROGRESS,
            estimate=Estimate(hours=2.5, cost=100.0),
            loops_to=[
                LoopEdge(
                    target="t0",
                    max_iterations=3,
                    guard=LoopGuard(kind="task_status", task="t2", status=Status.DONE),
                    delay="5m",
                )
            ],
        )
        task.add_log("Started", "alice")
        restored = node_from_dict(json.loads(json.dumps(node_to_dict(task))))
        assert restored == task

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            node_from_dict({"kind": "spaceship", "id": "x"})

    def test_unknown_fields_ignored(self):
        task = node_from_dict({"kind": "task", "id": "t", "title": "T", "future_field": 1})
        assert task.id == "t"

    def test_cost_defaults_to_zero(self):
        assert Task(id="t", title="T").cost == 0.0
        assert Task(id="t", title="T", estimate=Estimate(hours=1)).cost == 0.0

    def test_earliest_start_takes_later_gate(self):
        task = Task(
            id="t", title="T",
            not_before="2030-01-01T00:00:00+00:00",
            ready_after="2030-06-01T00:00:00+00:00",
        )
        assert task.earliest_start() == parse_timestamp("2030-06-01T00:00:00+00:00")

    def test_earliest_start_ignores_garbage(self):
        assert Task(id="t", title="T", not_before="tomorrow-ish").earliest_start() is None

    def test_naive_timestamp_is_utc(self):
        assert parse_timestamp("2030-01-01T00:00:00").tzinfo is not None


class TestWorkGraph:
    def test_shared_id_space(self):
        graph = WorkGraph([Actor(id="x")])
        with pytest.raises(ConflictError):
            graph.add_node(Task(id="x", title="X"))

    def test_kind_lookups(self):
        graph = WorkGraph([Actor(id="alice"), Task(id="t", title="T")])
        assert graph.get_task("alice") is None
        assert graph.get_actor("alice").id == "alice"
        with pytest.raises(NotFoundError):
            graph.require_task("alice")

    def test_insertion_order(self):
        graph = WorkGraph([Task(id=i, title=i) for i in ("c", "a", "b")])
        assert [t.id for t in graph.tasks()] == ["c", "a", "b"]

    def test_remove_missing(self):
        with pytest.raises(NotFoundError):
            WorkGraph().remove_node("ghost")


class TestGraphFile:
    def test_init_twice_conflicts(self, wg_dir):
        with pytest.raises(ConflictError):
            init_graph(wg_dir)

    def test_not_initialized(self):
        with tempfile.TemporaryDirectory() as tmp:
            with pytest.raises(NotInitializedError):
                get_graph(Path(tmp))

    def test_save_and_load(self, wg_dir):
        graph = WorkGraph([Task(id="a", title="A"), Actor(id="bob", capabilities=["rust"])])
        save_graph(graph, graph_path(wg_dir))
        loaded = get_graph(wg_dir)
        assert [n.id for n in loaded.nodes.values()] == ["a", "bob"]
        assert loaded.get_actor("bob").capabilities == ["rust"]

    def test_blank_and_comment_lines_skipped(self, wg_dir):
        path = graph_path(wg_dir)
        path.write_text('# header\n\n{"kind": "task", "id": "a", "title": "A"}\n\n')
        assert len(load_graph(path)) == 1

    def test_bad_line_names_line_number(self, wg_dir):
        path = graph_path(wg_dir)
        path.write_text('{"kind": "task", "id": "a", "title": "A"}\nnot json\n')
        with pytest.raises(StorageError, match="line 2"):
            load_graph(path)

    def test_duplicate_ids_on_disk(self, wg_dir):
        path = graph_path(wg_dir)
        record = '{"kind": "task", "id": "a", "title": "A"}\n'
        path.write_text(record * 2)
        with pytest.raises(StorageError):
            load_graph(path)

    def test_append_node(self, wg_dir):
        append_node(Actor(id="alice"), graph_path(wg_dir))
        append_node(Resource(id="gpu"), graph_path(wg_dir))
        assert len(get_graph(wg_dir)) == 2

    def test_mutate_graph_saves(self, wg_dir):
        with mutate_graph(wg_dir) as graph:
            graph.add_node(Task(id="a", title="A"))
        assert get_graph(wg_dir).get_task("a") is not None

    def test_mutate_graph_discards_on_error(self, wg_dir):
        with pytest.raises(RuntimeError):
            with mutate_graph(wg_dir) as graph:
                graph.add_node(Task(id="a", title="A"))
                raise RuntimeError("boom")
        assert len(get_graph(wg_dir)) == 0


class TestFilePrimitives:
    def test_atomic_write_leaves_no_temp_files(self, wg_dir):
        target = wg_dir / "data.txt"
        atomic_write_text(target, "hello")
        atomic_write_text(target, "world")
        assert target.read_text() == "world"
        assert not [p for p in wg_dir.iterdir() if p.name.endswith(".tmp")]

    def test_locked_file_releases_on_error(self, wg_dir):
        lock = wg_dir / ".lock"
        with pytest.raises(RuntimeError):
            with locked_file(lock):
                raise RuntimeError("boom")
        # would block forever if the lock were still held
        with locked_file(lock):
            pass


class TestArchiveFile:
    def test_append_and_load(self, wg_dir):
        path = archive_path(wg_dir)
        assert load_archive(path) == []
        append_archive([Task(id="a", title="A", status=Status.DONE)], path)
        append_archive([Task(id="b", title="B", status=Status.DONE)], path)
        assert [t.id for t in load_archive(path)] == ["a", "b"]
