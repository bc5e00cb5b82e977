"""Durable registry of spawned agent processes, serialized by a file lock."""

import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

from workgraph.db.engine import atomic_write_text, locked_file
from workgraph.db.models import AgentEntry, AgentStatus, now_iso, parse_timestamp
from workgraph.errors import NotFoundError, StorageError


def service_dir(wg_dir: Path) -> Path:
    return Path(wg_dir) / "service"


def registry_path(wg_dir: Path) -> Path:
    return service_dir(wg_dir) / "registry.json"


def registry_lock_path(wg_dir: Path) -> Path:
    return service_dir(wg_dir) / ".registry.lock"


class AgentRegistry:
    """All agents ever registered (until unregistered) plus the id counter."""

    def __init__(self, agents: dict[str, AgentEntry] | None = None, next_agent_id: int = 1):
        self.agents: dict[str, AgentEntry] = agents or {}
        self.next_agent_id = next_agent_id

    # ── Persistence ─────────────────────────────────────────────────────────

    @classmethod
    def load(cls, wg_dir: Path) -> "AgentRegistry":
        """Read the registry without taking the lock. Use ``locked`` to mutate."""
        path = registry_path(wg_dir)
        if not path.exists():
            return cls()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            agents = {
                agent_id: AgentEntry.from_dict(entry)
                for agent_id, entry in data.get("agents", {}).items()
            }
            return cls(agents=agents, next_agent_id=int(data.get("next_agent_id", 1)))
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Failed to load agent registry from {path}: {e}") from e

    def save(self, wg_dir: Path):
        data = {
            "agents": {agent_id: entry.to_dict() for agent_id, entry in self.agents.items()},
            "next_agent_id": self.next_agent_id,
        }
        try:
            atomic_write_text(registry_path(wg_dir), json.dumps(data, indent=2) + "\n")
        except OSError as e:
            raise StorageError(f"Failed to save agent registry: {e}") from e

    @classmethod
    @contextmanager
    def locked(cls, wg_dir: Path) -> Iterator["AgentRegistry"]:
        """Load, yield for mutation and save, all under the exclusive registry lock.

        The registry is saved only when the block exits without an exception;
        the lock is released either way.
        """
        with locked_file(registry_lock_path(wg_dir)):
            registry = cls.load(wg_dir)
            yield registry
            registry.save(wg_dir)

    # ── Mutations ───────────────────────────────────────────────────────────

    def peek_next_id(self) -> str:
        return f"agent-{self.next_agent_id}"

    def reserve_id(self) -> str:
        """Consume the next id so a spawn in progress can name its files before registering."""
        agent_id = self.peek_next_id()
        self.next_agent_id += 1
        return agent_id

    def register(
        self,
        pid: int,
        task_id: str,
        executor: str,
        output_file: str,
        agent_id: str | None = None,
    ) -> AgentEntry:
        agent_id = agent_id or self.reserve_id()
        now = now_iso()
        entry = AgentEntry(
            id=agent_id,
            pid=pid,
            task_id=task_id,
            executor=executor,
            output_file=output_file,
            started_at=now,
            last_heartbeat=now,
        )
        self.agents[agent_id] = entry
        return entry

    def get(self, agent_id: str) -> AgentEntry | None:
        return self.agents.get(agent_id)

    def require(self, agent_id: str) -> AgentEntry:
        entry = self.agents.get(agent_id)
        if entry is None:
            raise NotFoundError(f"Agent not found: {agent_id}")
        return entry

    def heartbeat(self, agent_id: str) -> AgentEntry:
        entry = self.require(agent_id)
        entry.last_heartbeat = now_iso()
        return entry

    def set_status(self, agent_id: str, status: AgentStatus) -> AgentEntry:
        entry = self.require(agent_id)
        entry.status = status
        return entry

    def unregister(self, agent_id: str) -> AgentEntry | None:
        return self.agents.pop(agent_id, None)

    # ── Queries ─────────────────────────────────────────────────────────────

    def list_agents(self) -> list[AgentEntry]:
        return list(self.agents.values())

    def list_alive(self) -> list[AgentEntry]:
        return [a for a in self.agents.values() if a.is_alive]

    def find_by_task(self, task_id: str) -> list[AgentEntry]:
        return [a for a in self.agents.values() if a.task_id == task_id]

    def find_dead(self, timeout: timedelta, now: datetime | None = None) -> list[AgentEntry]:
        """Alive agents whose heartbeat is older than ``timeout`` or unreadable."""
        now = now or datetime.now(timezone.utc)
        dead = []
        for entry in self.list_alive():
            beat = parse_timestamp(entry.last_heartbeat)
            if beat is None or now - beat > timeout:
                dead.append(entry)
        return dead

    def mark_dead(self, timeout: timedelta, now: datetime | None = None) -> list[AgentEntry]:
        dead = self.find_dead(timeout, now)
        for entry in dead:
            entry.status = AgentStatus.DEAD
        return dead
