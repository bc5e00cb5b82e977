"""Liveness tracking for human/agent actors and spawned agent processes."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

from workgraph.core.registry import AgentRegistry
from workgraph.db.engine import WorkGraph, mutate_graph
from workgraph.db.models import Actor, AgentEntry, AgentStatus, now_iso, parse_timestamp

logger = logging.getLogger(__name__)

AGENT_PREFIX = "agent-"


def record_actor_heartbeat(graph: WorkGraph, actor_id: str) -> Actor:
    actor = graph.require_actor(actor_id)
    actor.last_seen = now_iso()
    return actor


def record_agent_heartbeat(wg_dir: Path, agent_id: str) -> AgentEntry:
    with AgentRegistry.locked(wg_dir) as registry:
        return registry.heartbeat(agent_id)


def record_heartbeat(wg_dir: Path, target_id: str) -> str:
    """Heartbeat an agent (``agent-N``) or an actor. Returns which kind was updated."""
    if target_id.startswith(AGENT_PREFIX):
        record_agent_heartbeat(wg_dir, target_id)
        return "agent"
    with mutate_graph(wg_dir) as graph:
        record_actor_heartbeat(graph, target_id)
    return "actor"


def _elapsed(value: str | None, now: datetime) -> timedelta | None:
    seen = parse_timestamp(value)
    return now - seen if seen is not None else None


@dataclass
class HeartbeatStatus:
    id: str
    last_seen: str | None
    elapsed: timedelta | None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "last_seen": self.last_seen,
            "elapsed_seconds": int(self.elapsed.total_seconds()) if self.elapsed is not None else None,
        }


@dataclass
class HeartbeatReport:
    active: list[HeartbeatStatus] = field(default_factory=list)
    stale: list[HeartbeatStatus] = field(default_factory=list)
    dead: list[HeartbeatStatus] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "active": [s.to_dict() for s in self.active],
            "stale": [s.to_dict() for s in self.stale],
            "dead": [s.to_dict() for s in self.dead],
        }


def check_actors(
    graph: WorkGraph, threshold: timedelta, now: datetime | None = None
) -> HeartbeatReport:
    """Split actors into active and stale. Never-seen actors are stale."""
    now = now or datetime.now(timezone.utc)
    report = HeartbeatReport()
    for actor in graph.actors():
        elapsed = _elapsed(actor.last_seen, now)
        status = HeartbeatStatus(actor.id, actor.last_seen, elapsed)
        if elapsed is not None and elapsed <= threshold:
            report.active.append(status)
        else:
            report.stale.append(status)
    return report


def check_agents(
    registry: AgentRegistry, threshold: timedelta, now: datetime | None = None
) -> HeartbeatReport:
    """Dead agents get their own bucket; only running agents are checked for staleness."""
    now = now or datetime.now(timezone.utc)
    report = HeartbeatReport()
    for entry in registry.list_agents():
        elapsed = _elapsed(entry.last_heartbeat, now)
        status = HeartbeatStatus(entry.id, entry.last_heartbeat, elapsed)
        if entry.status == AgentStatus.DEAD:
            report.dead.append(status)
        elif entry.status != AgentStatus.RUNNING:
            continue
        elif elapsed is not None and elapsed <= threshold:
            report.active.append(status)
        else:
            report.stale.append(status)
    return report
