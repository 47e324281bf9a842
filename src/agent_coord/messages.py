"""Closed set of message-bus message types and their payloads."""

from __future__ import annotations

from dataclasses import MISSING, asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any

from agent_coord.timeutil import from_iso, to_iso


class MessageType(str, Enum):
    """Every message kind the bus understands."""

    HEARTBEAT = "heartbeat"
    BROADCAST = "broadcast"
    DIRECT = "direct"
    TASK_CLAIM = "task_claim"
    TASK_COMPLETE = "task_complete"
    TASK_AVAILABLE = "task_available"
    REQUEST_HELP = "request_help"
    LEADER_ELECTED = "leader_elected"


@dataclass(slots=True)
class HeartbeatPayload:
    status: str


@dataclass(slots=True)
class BroadcastPayload:
    status: str
    details: str = ""


@dataclass(slots=True)
class DirectPayload:
    text: str
    details: str = ""


@dataclass(slots=True)
class TaskClaimPayload:
    task_id: str
    title: str
    claimed_by: str


@dataclass(slots=True)
class TaskCompletePayload:
    task_id: str
    title: str
    completed_by: str
    result: str = ""


@dataclass(slots=True)
class TaskAvailablePayload:
    task_id: str
    title: str
    priority: str
    reason: str = ""


@dataclass(slots=True)
class RequestHelpPayload:
    task: str
    details: str
    requester: str


@dataclass(slots=True)
class LeaderElectedPayload:
    leader_id: str
    epoch: int


MessagePayload = (
    HeartbeatPayload
    | BroadcastPayload
    | DirectPayload
    | TaskClaimPayload
    | TaskCompletePayload
    | TaskAvailablePayload
    | RequestHelpPayload
    | LeaderElectedPayload
)

PAYLOAD_TYPES: dict[MessageType, type[Any]] = {
    MessageType.HEARTBEAT: HeartbeatPayload,
    MessageType.BROADCAST: BroadcastPayload,
    MessageType.DIRECT: DirectPayload,
    MessageType.TASK_CLAIM: TaskClaimPayload,
    MessageType.TASK_COMPLETE: TaskCompletePayload,
    MessageType.TASK_AVAILABLE: TaskAvailablePayload,
    MessageType.REQUEST_HELP: RequestHelpPayload,
    MessageType.LEADER_ELECTED: LeaderElectedPayload,
}


def message_type_for(payload: MessagePayload) -> MessageType:
    """Resolve the message type a payload instance belongs to."""

    for message_type, payload_type in PAYLOAD_TYPES.items():
        if isinstance(payload, payload_type):
            return message_type
    raise TypeError(f"Unsupported message payload: {type(payload).__name__}")


@dataclass(slots=True)
class Message:
    """One line of the message-bus log."""

    message_id: str
    from_agent: str
    timestamp: datetime
    type: MessageType
    payload: MessagePayload
    to_agent: str | None = None
    read_by: list[str] = field(default_factory=list)

    @property
    def is_broadcast(self) -> bool:
        return self.to_agent is None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "message_id": self.message_id,
            "from_agent": self.from_agent,
            "timestamp": to_iso(self.timestamp),
            "type": self.type.value,
            "payload": asdict(self.payload),
            "read_by": list(self.read_by),
        }
        if self.to_agent is not None:
            payload["to_agent"] = self.to_agent
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Message:
        """Parse one log line; raises ``ValueError`` for malformed or unknown messages."""

        message_id = raw.get("message_id")
        from_agent = raw.get("from_agent")
        timestamp = raw.get("timestamp")
        if not isinstance(message_id, str) or not message_id:
            raise ValueError("message.message_id must be a non-empty string")
        if not isinstance(from_agent, str):
            raise ValueError(f"message {message_id}: from_agent must be a string")
        if not isinstance(timestamp, str):
            raise ValueError(f"message {message_id}: timestamp must be a string")
        try:
            message_type = MessageType(raw.get("type"))
        except ValueError as error:
            raise ValueError(f"message {message_id}: unknown type {raw.get('type')!r}") from error
        to_agent = raw.get("to_agent")
        read_by = raw.get("read_by") or []
        if not isinstance(read_by, list):
            raise ValueError(f"message {message_id}: read_by must be an array")
        return cls(
            message_id=message_id,
            from_agent=from_agent,
            timestamp=from_iso(timestamp),
            type=message_type,
            payload=parse_payload(message_type, raw.get("payload")),
            to_agent=to_agent if isinstance(to_agent, str) and to_agent else None,
            read_by=[str(item) for item in read_by],
        )


def parse_payload(message_type: MessageType, raw: Any) -> MessagePayload:
    """Build the payload dataclass for ``message_type`` from decoded JSON."""

    if not isinstance(raw, dict):
        raise ValueError(f"{message_type.value} payload must be an object")
    payload_type = PAYLOAD_TYPES[message_type]
    values: dict[str, Any] = {}
    for payload_field in fields(payload_type):
        if payload_field.name not in raw:
            if payload_field.default is not MISSING:
                continue
            raise ValueError(f"{message_type.value} payload is missing {payload_field.name!r}")
        value = raw[payload_field.name]
        expected = int if payload_field.type == "int" else str
        if isinstance(value, bool) or not isinstance(value, expected):
            raise ValueError(
                f"{message_type.value} payload field {payload_field.name!r} "
                f"must be {expected.__name__}",
            )
        values[payload_field.name] = value
    return payload_type(**values)
