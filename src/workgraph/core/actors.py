"""Actor and resource registration."""

from pathlib import Path

from workgraph.db.engine import append_node, get_graph, graph_path
from workgraph.db.models import Actor, Resource
from workgraph.errors import ValidationError

TRUST_LEVELS = ("verified", "provisional", "unknown")
ACTOR_TYPES = ("agent", "human")


def add_actor(
    wg_dir: Path,
    actor_id: str,
    name: str | None = None,
    role: str | None = None,
    rate: float | None = None,
    capacity: float | None = None,
    capabilities: list[str] | None = None,
    context_limit: int | None = None,
    trust_level: str = "provisional",
    actor_type: str = "agent",
    chat_user_id: str | None = None,
) -> Actor:
    """Register a new actor by appending a single record to the graph file."""
    if not actor_id.strip():
        raise ValidationError("Actor ID must not be empty")
    if trust_level not in TRUST_LEVELS:
        raise ValidationError(f"Invalid trust level '{trust_level}': use {', '.join(TRUST_LEVELS)}")
    if actor_type not in ACTOR_TYPES:
        raise ValidationError(f"Invalid actor type '{actor_type}': use {', '.join(ACTOR_TYPES)}")

    graph = get_graph(wg_dir)
    actor = Actor(
        id=actor_id,
        name=name,
        role=role,
        rate=rate,
        capacity=capacity,
        capabilities=list(capabilities or []),
        context_limit=context_limit,
        trust_level=trust_level,
        actor_type=actor_type,
        chat_user_id=chat_user_id,
    )
    # raises ConflictError on a clash with any node kind
    graph.add_node(actor)
    append_node(actor, graph_path(wg_dir))
    return actor


def add_resource(
    wg_dir: Path,
    resource_id: str,
    name: str | None = None,
    resource_type: str | None = None,
    available: float | None = None,
    unit: str | None = None,
) -> Resource:
    """Register a new resource by appending a single record to the graph file."""
    if not resource_id.strip():
        raise ValidationError("Resource ID must not be empty")
    if available is not None and available < 0:
        raise ValidationError("Available quantity must not be negative")

    graph = get_graph(wg_dir)
    resource = Resource(
        id=resource_id,
        name=name,
        resource_type=resource_type,
        available=available,
        unit=unit,
    )
    graph.add_node(resource)
    append_node(resource, graph_path(wg_dir))
    return resource
