"""Domain records persisted in the shared coordination directory."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from agent_coord.timeutil import from_iso, to_iso

ORCHESTRATOR_ROLE = "orchestrator"


class AgentStatus(str, Enum):
    """Self-reported agent activity."""

    ACTIVE = "active"
    IDLE = "idle"
    WORKING = "working"
    BLOCKED = "blocked"


class TaskPriority(str, Enum):
    """Task urgency levels."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Base scheduling rank; lower runs first."""

        return PRIORITY_RANK[self]


PRIORITY_RANK = {
    TaskPriority.CRITICAL: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 3,
}


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})


@dataclass(slots=True)
class AgentRecord:
    """One live member of the agent registry."""

    agent_id: str
    session_id: str
    started_at: datetime
    last_heartbeat: datetime
    status: AgentStatus = AgentStatus.ACTIVE
    assigned_role: str = "general"
    current_task: str | None = None
    pid: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "agent_id": self.agent_id,
            "session_id": self.session_id,
            "started_at": to_iso(self.started_at),
            "last_heartbeat": to_iso(self.last_heartbeat),
            "status": self.status.value,
            "assigned_role": self.assigned_role,
            "pid": self.pid,
        }
        if self.current_task is not None:
            payload["current_task"] = self.current_task
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> AgentRecord:
        """Parse a registry entry; raises ``ValueError`` on malformed input."""

        agent_id = raw.get("agent_id")
        if not isinstance(agent_id, str) or not agent_id.strip():
            raise ValueError("agent.agent_id must be a non-empty string")
        last_heartbeat = _required_time(raw, "last_heartbeat")
        started_raw = raw.get("started_at")
        started_at = from_iso(started_raw) if isinstance(started_raw, str) else last_heartbeat
        current_task = raw.get("current_task")
        pid = raw.get("pid")
        return cls(
            agent_id=agent_id,
            session_id=str(raw.get("session_id") or ""),
            started_at=started_at,
            last_heartbeat=last_heartbeat,
            status=AgentStatus(raw.get("status", AgentStatus.ACTIVE.value)),
            assigned_role=str(raw.get("assigned_role") or "general"),
            current_task=current_task if isinstance(current_task, str) else None,
            pid=pid if isinstance(pid, int) else None,
        )


@dataclass(slots=True)
class LeaderLease:
    """Single-writer leadership record."""

    leader_id: str
    leader_epoch: int
    last_heartbeat: datetime
    ttl_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "leader_id": self.leader_id,
            "leader_epoch": self.leader_epoch,
            "last_heartbeat": to_iso(self.last_heartbeat),
            "ttl_ms": self.ttl_ms,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> LeaderLease:
        leader_id = raw.get("leader_id")
        epoch = raw.get("leader_epoch")
        ttl_ms = raw.get("ttl_ms")
        if not isinstance(leader_id, str) or not leader_id:
            raise ValueError("lease.leader_id must be a non-empty string")
        if isinstance(epoch, bool) or not isinstance(epoch, int) or epoch < 1:
            raise ValueError("lease.leader_epoch must be an integer >= 1")
        if isinstance(ttl_ms, bool) or not isinstance(ttl_ms, int) or ttl_ms <= 0:
            raise ValueError("lease.ttl_ms must be a positive integer")
        return cls(
            leader_id=leader_id,
            leader_epoch=epoch,
            last_heartbeat=_required_time(raw, "last_heartbeat"),
            ttl_ms=ttl_ms,
        )


@dataclass(slots=True)
class Task:
    """Unit of work in the shared priority queue."""

    id: str
    title: str
    description: str
    priority: TaskPriority
    status: TaskStatus
    created_at: datetime
    updated_at: datetime
    created_by: str = "unknown"
    assigned_to: str | None = None
    claimed_at: datetime | None = None
    completed_at: datetime | None = None
    depends_on: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    quality_score: float | None = None
    quality_notes: str | None = None
    external_refs: dict[str, str] = field(default_factory=dict)

    def add_note(self, text: str, at: datetime) -> None:
        """Append a timestamped note."""

        self.notes.append(f"[{to_iso(at)}] {text}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "status": self.status.value,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "created_by": self.created_by,
            "assigned_to": self.assigned_to,
            "claimed_at": to_iso(self.claimed_at) if self.claimed_at is not None else None,
            "completed_at": to_iso(self.completed_at) if self.completed_at is not None else None,
            "depends_on": list(self.depends_on),
            "blocked_by": list(self.blocked_by),
            "notes": list(self.notes),
            "tags": list(self.tags),
            "quality_score": self.quality_score,
            "quality_notes": self.quality_notes,
            "external_refs": dict(self.external_refs),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Task:
        """Parse a stored task; raises ``ValueError`` on malformed input."""

        task_id = raw.get("id")
        title = raw.get("title")
        if not isinstance(task_id, str) or not task_id.strip():
            raise ValueError("task.id must be a non-empty string")
        if not isinstance(title, str):
            raise ValueError(f"task {task_id}: title must be a string")
        quality_score = raw.get("quality_score")
        quality_notes = raw.get("quality_notes")
        assigned_to = raw.get("assigned_to")
        refs = raw.get("external_refs") or {}
        if not isinstance(refs, dict):
            raise ValueError(f"task {task_id}: external_refs must be an object")
        return cls(
            id=task_id,
            title=title,
            description=str(raw.get("description") or ""),
            priority=TaskPriority(raw.get("priority", TaskPriority.MEDIUM.value)),
            status=TaskStatus(raw.get("status", TaskStatus.PENDING.value)),
            created_at=_required_time(raw, "created_at"),
            updated_at=_optional_time(raw, "updated_at") or _required_time(raw, "created_at"),
            created_by=str(raw.get("created_by") or "unknown"),
            assigned_to=assigned_to if isinstance(assigned_to, str) and assigned_to else None,
            claimed_at=_optional_time(raw, "claimed_at"),
            completed_at=_optional_time(raw, "completed_at"),
            depends_on=_string_list(raw, "depends_on", task_id),
            blocked_by=_string_list(raw, "blocked_by", task_id),
            notes=_string_list(raw, "notes", task_id),
            tags=_string_list(raw, "tags", task_id),
            quality_score=(
                float(quality_score)
                if isinstance(quality_score, int | float) and not isinstance(quality_score, bool)
                else None
            ),
            quality_notes=quality_notes if isinstance(quality_notes, str) else None,
            external_refs={str(key): str(value) for key, value in refs.items()},
        )


def _required_time(raw: dict[str, Any], key: str) -> datetime:
    value = raw.get(key)
    if not isinstance(value, str):
        raise ValueError(f"{key} must be an ISO timestamp string")
    return from_iso(value)


def _optional_time(raw: dict[str, Any], key: str) -> datetime | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{key} must be an ISO timestamp string when provided")
    return from_iso(value)


def _string_list(raw: dict[str, Any], key: str, task_id: str) -> list[str]:
    value = raw.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"task {task_id}: {key} must be an array of strings")
    return list(value)
