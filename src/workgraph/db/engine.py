"""File-backed graph store: JSONL load/save, atomic rewrites and file locks."""

import fcntl
import json
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from workgraph.db.models import Actor, Node, Resource, Task, node_from_dict, node_to_dict
from workgraph.errors import ConflictError, NotFoundError, NotInitializedError, StorageError

GRAPH_FILE = "graph.jsonl"
ARCHIVE_FILE = "archive.jsonl"


def graph_path(wg_dir: Path) -> Path:
    return Path(wg_dir) / GRAPH_FILE


def archive_path(wg_dir: Path) -> Path:
    return Path(wg_dir) / ARCHIVE_FILE


# ── In-memory graph ─────────────────────────────────────────────────────────


class WorkGraph:
    """Nodes of every kind, keyed by one shared id space, in insertion order."""

    def __init__(self, nodes: list[Node] | None = None):
        self.nodes: dict[str, Node] = {}
        for node in nodes or []:
            self.add_node(node)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def add_node(self, node: Node):
        if node.id in self.nodes:
            existing = self.nodes[node.id]
            raise ConflictError(f"Node with ID '{node.id}' already exists (a {existing.kind})")
        self.nodes[node.id] = node

    def remove_node(self, node_id: str) -> Node:
        if node_id not in self.nodes:
            raise NotFoundError(f"Node not found: {node_id}")
        return self.nodes.pop(node_id)

    def get_node(self, node_id: str) -> Node | None:
        return self.nodes.get(node_id)

    def _get_kind(self, node_id: str, kind: str):
        node = self.nodes.get(node_id)
        if node is None or node.kind != kind:
            return None
        return node

    def get_task(self, task_id: str) -> Task | None:
        return self._get_kind(task_id, Task.kind)

    def get_actor(self, actor_id: str) -> Actor | None:
        return self._get_kind(actor_id, Actor.kind)

    def get_resource(self, resource_id: str) -> Resource | None:
        return self._get_kind(resource_id, Resource.kind)

    def require_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return task

    def require_actor(self, actor_id: str) -> Actor:
        actor = self.get_actor(actor_id)
        if actor is None:
            raise NotFoundError(f"Actor not found: {actor_id}")
        return actor

    def tasks(self) -> list[Task]:
        return [n for n in self.nodes.values() if n.kind == Task.kind]

    def actors(self) -> list[Actor]:
        return [n for n in self.nodes.values() if n.kind == Actor.kind]

    def resources(self) -> list[Resource]:
        return [n for n in self.nodes.values() if n.kind == Resource.kind]


# ── Low-level file primitives ───────────────────────────────────────────────


@contextmanager
def locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive lock on ``path`` for the duration of the block."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a+", encoding="utf-8") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, text: str):
    """Write via a sibling temp file and rename so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _iter_records(path: Path) -> Iterator[tuple[int, dict]]:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        raise StorageError(f"Failed to read {path}: {e}") from e
    for lineno, line in enumerate(lines, start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            yield lineno, json.loads(line)
        except json.JSONDecodeError as e:
            raise StorageError(f"Failed to parse {path.name} line {lineno}: {e}") from e


# ── Graph file ──────────────────────────────────────────────────────────────


def init_graph(wg_dir: Path) -> Path:
    """Create the workgraph directory and an empty graph file."""
    path = graph_path(wg_dir)
    if path.exists():
        raise ConflictError(f"Workgraph already initialized at {wg_dir}")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch()
    return path


def load_graph(path: Path) -> WorkGraph:
    graph = WorkGraph()
    for lineno, record in _iter_records(path):
        try:
            node = node_from_dict(record)
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Invalid node in {path.name} line {lineno}: {e}") from e
        try:
            graph.add_node(node)
        except ConflictError as e:
            raise StorageError(f"{path.name} line {lineno}: {e}") from e
    return graph


def save_graph(graph: WorkGraph, path: Path):
    lines = [json.dumps(node_to_dict(node)) for node in graph.nodes.values()]
    text = "\n".join(lines) + "\n" if lines else ""
    try:
        atomic_write_text(path, text)
    except OSError as e:
        raise StorageError(f"Failed to write {path}: {e}") from e


def append_node(node: Node, path: Path):
    """Append a brand-new node without rewriting the file."""
    try:
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(node_to_dict(node)) + "\n")
    except OSError as e:
        raise StorageError(f"Failed to append to {path}: {e}") from e


def get_graph(wg_dir: Path) -> WorkGraph:
    path = graph_path(wg_dir)
    if not path.exists():
        raise NotInitializedError(
            f"Workgraph not initialized at {wg_dir}. Run 'wg init' first."
        )
    return load_graph(path)


@contextmanager
def mutate_graph(wg_dir: Path) -> Iterator[WorkGraph]:
    """Load the graph, yield it for mutation, and save it if the block succeeds."""
    graph = get_graph(wg_dir)
    yield graph
    save_graph(graph, graph_path(wg_dir))


# ── Archive file ────────────────────────────────────────────────────────────


def append_archive(tasks: list[Task], path: Path):
    try:
        with path.open("a", encoding="utf-8") as handle:
            for task in tasks:
                handle.write(json.dumps(node_to_dict(task)) + "\n")
    except OSError as e:
        raise StorageError(f"Failed to append to {path}: {e}") from e


def load_archive(path: Path) -> list[Task]:
    if not path.exists():
        return []
    tasks = []
    for lineno, record in _iter_records(path):
        try:
            node = node_from_dict(record)
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Invalid node in {path.name} line {lineno}: {e}") from e
        if node.kind == Task.kind:
            tasks.append(node)
    return tasks
