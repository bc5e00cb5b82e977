"""Data models for the task graph and agent registry."""

from dataclasses import MISSING, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp, treating naive values as UTC.

    Returns None when the value is empty or unparsable; callers decide what
    an unreadable timestamp means for them.
    """
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class Status(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in-progress"
    BLOCKED = "blocked"
    DONE = "done"
    FAILED = "failed"
    ABANDONED = "abandoned"
    PENDING_REVIEW = "pending-review"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({Status.DONE, Status.FAILED, Status.ABANDONED})


class AgentStatus(str, Enum):
    RUNNING = "running"
    STOPPING = "stopping"
    DONE = "done"
    FAILED = "failed"
    DEAD = "dead"

    def __str__(self) -> str:
        return self.value

    @property
    def is_alive(self) -> bool:
        return self in (AgentStatus.RUNNING, AgentStatus.STOPPING)


# ── Serialization helpers ───────────────────────────────────────────────────


def _field_default(f):
    if f.default is not MISSING:
        return f.default
    if f.default_factory is not MISSING:
        return f.default_factory()
    return MISSING


def _compact(obj, renames: dict[str, str] | None = None) -> dict:
    """Dump a dataclass, leaving out fields still at their default value."""
    renames = renames or {}
    data = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        default = _field_default(f)
        if default is not MISSING and value == default:
            continue
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, list):
            value = [v.to_dict() if hasattr(v, "to_dict") else v for v in value]
        elif hasattr(value, "to_dict"):
            value = value.to_dict()
        data[renames.get(f.name, f.name)] = value
    return data


def _known(cls, data: dict, renames: dict[str, str] | None = None) -> dict:
    """Keep only keys the dataclass declares, applying on-disk renames."""
    renames = renames or {}
    names = {f.name for f in fields(cls)}
    out = {}
    for key, value in data.items():
        key = renames.get(key, key)
        if key in names:
            out[key] = value
    return out


# ── Task parts ──────────────────────────────────────────────────────────────


@dataclass
class Estimate:
    hours: float | None = None
    cost: float | None = None

    def to_dict(self) -> dict:
        return _compact(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Estimate":
        return cls(**_known(cls, data))


@dataclass
class LogEntry:
    timestamp: str
    message: str
    actor: str | None = None

    def to_dict(self) -> dict:
        return _compact(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LogEntry":
        return cls(**_known(cls, data))


GUARD_ALWAYS = "always"
GUARD_TASK_STATUS = "task_status"
GUARD_ITERATION_LESS_THAN = "iteration_less_than"


@dataclass
class LoopGuard:
    kind: str = GUARD_ALWAYS
    task: str | None = None
    status: Status | None = None
    value: int | None = None

    def describe(self) -> str:
        if self.kind == GUARD_TASK_STATUS:
            return f"task:{self.task}={self.status}"
        if self.kind == GUARD_ITERATION_LESS_THAN:
            return f"iteration<{self.value}"
        return "always"

    def to_dict(self) -> dict:
        data = {"kind": self.kind}
        if self.kind == GUARD_TASK_STATUS:
            data["task"] = self.task
            data["status"] = self.status.value
        elif self.kind == GUARD_ITERATION_LESS_THAN:
            data["value"] = self.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "LoopGuard":
        kind = data.get("kind", GUARD_ALWAYS)
        if kind == GUARD_TASK_STATUS:
            return cls(kind=kind, task=data["task"], status=Status(data["status"]))
        if kind == GUARD_ITERATION_LESS_THAN:
            return cls(kind=kind, value=int(data["value"]))
        if kind != GUARD_ALWAYS:
            raise ValueError(f"Unknown loop guard kind: {kind}")
        return cls()


@dataclass
class LoopEdge:
    target: str
    max_iterations: int
    guard: LoopGuard | None = None
    delay: str | None = None

    def to_dict(self) -> dict:
        return _compact(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LoopEdge":
        guard = data.get("guard")
        return cls(
            target=data["target"],
            max_iterations=int(data["max_iterations"]),
            guard=LoopGuard.from_dict(guard) if guard else None,
            delay=data.get("delay"),
        )


# ── Nodes ───────────────────────────────────────────────────────────────────


@dataclass
class Task:
    kind: ClassVar[str] = "task"

    id: str
    title: str
    description: str | None = None
    status: Status = Status.OPEN
    assigned: str | None = None
    estimate: Estimate | None = None
    blocks: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)
    requires: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    skills: list[str] = field(default_factory=list)
    inputs: list[str] = field(default_factory=list)
    deliverables: list[str] = field(default_factory=list)
    artifacts: list[str] = field(default_factory=list)
    exec: str | None = None
    not_before: str | None = None
    ready_after: str | None = None
    created_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    log: list[LogEntry] = field(default_factory=list)
    retry_count: int = 0
    max_retries: int | None = None
    failure_reason: str | None = None
    model: str | None = None
    verify: str | None = None
    agent: str | None = None
    loops_to: list[LoopEdge] = field(default_factory=list)
    loop_iteration: int = 0
    paused: bool = False

    @property
    def hours(self) -> float | None:
        return self.estimate.hours if self.estimate else None

    @property
    def cost(self) -> float:
        if self.estimate and self.estimate.cost is not None:
            return self.estimate.cost
        return 0.0

    def add_log(self, message: str, actor: str | None = None):
        self.log.append(LogEntry(timestamp=now_iso(), message=message, actor=actor))

    def earliest_start(self) -> datetime | None:
        """The later of the two time gates, ignoring unparsable values."""
        gates = [
            dt for dt in (parse_timestamp(self.not_before), parse_timestamp(self.ready_after))
            if dt is not None
        ]
        return max(gates) if gates else None

    def to_dict(self) -> dict:
        data = {"id": self.id, "title": self.title, "status": self.status.value}
        data.update(_compact(self))
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        kwargs = _known(cls, data)
        kwargs["status"] = Status(kwargs.get("status", Status.OPEN))
        if kwargs.get("estimate"):
            kwargs["estimate"] = Estimate.from_dict(kwargs["estimate"])
        kwargs["log"] = [LogEntry.from_dict(e) for e in kwargs.get("log", [])]
        kwargs["loops_to"] = [LoopEdge.from_dict(e) for e in kwargs.get("loops_to", [])]
        return cls(**kwargs)


@dataclass
class Actor:
    kind: ClassVar[str] = "actor"

    id: str
    name: str | None = None
    role: str | None = None
    rate: float | None = None
    capacity: float | None = None
    capabilities: list[str] = field(default_factory=list)
    context_limit: int | None = None
    trust_level: str = "provisional"
    last_seen: str | None = None
    actor_type: str = "agent"
    chat_user_id: str | None = None
    response_times: list[float] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = {"id": self.id}
        data.update(_compact(self))
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Actor":
        return cls(**_known(cls, data))


@dataclass
class Resource:
    kind: ClassVar[str] = "resource"

    id: str
    name: str | None = None
    resource_type: str | None = None
    available: float | None = None
    unit: str | None = None

    def to_dict(self) -> dict:
        data = {"id": self.id}
        data.update(_compact(self, renames={"resource_type": "type"}))
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Resource":
        return cls(**_known(cls, data, renames={"type": "resource_type"}))


Node = Task | Actor | Resource

NODE_TYPES: dict[str, type] = {cls.kind: cls for cls in (Task, Actor, Resource)}


def node_to_dict(node: Node) -> dict:
    return {"kind": node.kind, **node.to_dict()}


def node_from_dict(data: dict) -> Node:
    kind = data.get("kind")
    cls = NODE_TYPES.get(kind)
    if cls is None:
        raise ValueError(f"Unknown node kind: {kind!r}")
    return cls.from_dict(data)


# ── Agent registry ──────────────────────────────────────────────────────────


@dataclass
class AgentEntry:
    id: str
    pid: int
    task_id: str
    executor: str
    output_file: str
    started_at: str
    last_heartbeat: str
    status: AgentStatus = AgentStatus.RUNNING

    @property
    def is_alive(self) -> bool:
        return self.status.is_alive

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pid": self.pid,
            "task_id": self.task_id,
            "executor": self.executor,
            "output_file": self.output_file,
            "started_at": self.started_at,
            "last_heartbeat": self.last_heartbeat,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AgentEntry":
        kwargs = _known(cls, data)
        kwargs["status"] = AgentStatus(kwargs.get("status", AgentStatus.RUNNING))
        return cls(**kwargs)
