"""Moving completed tasks out of the working graph into the archive file."""

import re
from datetime import datetime, timedelta, timezone
from pathlib import Path

from workgraph.db.engine import (
    append_archive,
    archive_path,
    graph_path,
    get_graph,
    load_archive,
    save_graph,
)
from workgraph.db.models import Status, Task, parse_timestamp
from workgraph.errors import ValidationError

_AGE = re.compile(r"^(?P<amount>\d+)\s*(?P<unit>[dwh]?)$", re.ASCII)
_AGE_UNITS = {"h": timedelta(hours=1), "d": timedelta(days=1), "w": timedelta(weeks=1)}


def parse_age(value: str) -> timedelta:
    """Parse "12h", "30d", "2w" or a bare number of days."""
    m = _AGE.match(value.strip().lower())
    if not m:
        raise ValidationError(f"Invalid age '{value}'. Use e.g. 12h, 30d, 2w")
    return int(m.group("amount")) * _AGE_UNITS[m.group("unit") or "d"]


def archivable_tasks(
    tasks: list[Task], older_than: timedelta | None = None, now: datetime | None = None
) -> list[Task]:
    now = now or datetime.now(timezone.utc)
    selected = []
    for task in tasks:
        if task.status != Status.DONE:
            continue
        if older_than is not None:
            completed = parse_timestamp(task.completed_at)
            # no completion time means age is unknown: keep it
            if completed is None or now - completed < older_than:
                continue
        selected.append(task)
    return selected


def archive_tasks(
    wg_dir: Path, older: str | None = None, dry_run: bool = False
) -> list[Task]:
    """Move done tasks to the archive. Returns the tasks archived (or that would be)."""
    graph = get_graph(wg_dir)
    older_than = parse_age(older) if older else None
    selected = archivable_tasks(graph.tasks(), older_than)
    if dry_run or not selected:
        return selected

    append_archive(selected, archive_path(wg_dir))
    archived_ids = {t.id for t in selected}
    for task in selected:
        graph.remove_node(task.id)
    # drop dangling edges that pointed at archived tasks
    for task in graph.tasks():
        task.blocks = [b for b in task.blocks if b not in archived_ids]
    save_graph(graph, graph_path(wg_dir))
    return selected


def list_archive(wg_dir: Path) -> list[Task]:
    return load_archive(archive_path(wg_dir))
