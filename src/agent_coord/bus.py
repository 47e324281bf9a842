"""Append-only JSONL message bus with per-reader read markers."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterable, Iterator
from datetime import datetime
from pathlib import Path
from typing import Any
from urllib.parse import quote
from uuid import uuid4

from agent_coord.documents import read_document, write_document
from agent_coord.messages import (
    PAYLOAD_TYPES,
    BroadcastPayload,
    DirectPayload,
    Message,
    MessagePayload,
    MessageType,
    RequestHelpPayload,
)
from agent_coord.timeutil import Clock, to_iso, utc_now

logger = logging.getLogger(__name__)


class MessageBus:
    """Messaging endpoint of one agent.

    The log is only ever appended to. Read state lives in
    ``<markers_dir>/<agent_id>.json``, which only this agent writes.
    """

    def __init__(
        self,
        path: Path,
        markers_dir: Path,
        agent_id: str,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.path = path
        self.markers_dir = markers_dir
        self.agent_id = agent_id
        self.clock = clock

    @property
    def marker_path(self) -> Path:
        return self.markers_dir / f"{_safe_name(self.agent_id)}.json"

    def send(
        self,
        message_type: MessageType,
        payload: MessagePayload,
        to_agent: str | None = None,
    ) -> Message:
        """Append one message; ``to_agent=None`` broadcasts."""

        expected = PAYLOAD_TYPES[message_type]
        if not isinstance(payload, expected):
            raise TypeError(
                f"{message_type.value} messages need {expected.__name__}, "
                f"got {type(payload).__name__}",
            )
        now = self.clock()
        message = Message(
            message_id=f"msg-{int(now.timestamp() * 1000)}-{uuid4().hex[:7]}",
            from_agent=self.agent_id,
            timestamp=now,
            type=message_type,
            payload=payload,
            to_agent=to_agent,
        )
        self._append(json.dumps(message.to_dict(), ensure_ascii=False) + "\n")
        logger.info(
            "Message sent: %s %s",
            message_type.value,
            f"to {to_agent}" if to_agent else "(broadcast)",
        )
        return message

    def broadcast_status(self, status: str, details: str = "") -> Message:
        return self.send(MessageType.BROADCAST, BroadcastPayload(status=status, details=details))

    def send_direct(self, to_agent: str, text: str, details: str = "") -> Message:
        return self.send(MessageType.DIRECT, DirectPayload(text=text, details=details), to_agent)

    def request_help(self, task: str, details: str = "") -> Message:
        return self.send(
            MessageType.REQUEST_HELP,
            RequestHelpPayload(task=task, details=details, requester=self.agent_id),
        )

    def iter_messages(self) -> Iterator[Message]:
        """Yield every well-formed message in log order, skipping bad lines."""

        for _, message in self._scan(0):
            if message is not None:
                yield message

    def read_unread(self, since: datetime | None = None) -> list[Message]:
        """Messages addressed to this agent (or broadcast) it has not marked read.

        Reading does not change read state; call ``mark_read`` for that.
        """

        marker = self._load_marker()
        already_read = set(marker["read_ids"])
        return [
            message
            for _, message in self._scan(marker["offset"])
            if message is not None
            and self._is_for_me(message)
            and message.message_id not in already_read
            and (since is None or message.timestamp >= since)
        ]

    def mark_read(self, message_ids: Iterable[str]) -> int:
        """Record ``message_ids`` as read by this agent; returns how many were new.

        The marker keeps a byte offset below which every message is either read or
        not addressed to this agent, plus the read ids past that offset.
        """

        marker = self._load_marker()
        read_ids = set(marker["read_ids"])
        wanted = set(message_ids) - read_ids
        offset = marker["offset"]
        advancing = True
        added = 0
        remaining: list[str] = []
        for end, message in self._scan(offset):
            if message is None:
                if advancing and end is not None:
                    offset = end
                else:
                    advancing = False
                continue
            if message.message_id in wanted:
                wanted.discard(message.message_id)
                read_ids.add(message.message_id)
                added += 1
            is_read = message.message_id in read_ids
            if advancing and end is not None and (is_read or not self._is_for_me(message)):
                offset = end
                continue
            advancing = False
            if is_read:
                remaining.append(message.message_id)
        if added or offset != marker["offset"]:
            write_document(
                self.marker_path,
                {
                    "agent_id": self.agent_id,
                    "read_ids": remaining,
                    "offset": offset,
                    "updated_at": to_iso(self.clock()),
                },
            )
        return added

    def _is_for_me(self, message: Message) -> bool:
        return (
            message.from_agent != self.agent_id
            and (message.to_agent is None or message.to_agent == self.agent_id)
            and self.agent_id not in message.read_by
        )

    def _scan(self, offset: int) -> Iterator[tuple[int | None, Message | None]]:
        """Yield ``(end_offset, message)`` per line from ``offset``.

        ``message`` is None for a malformed line; ``end_offset`` is None for a
        trailing line whose write has not finished.
        """

        try:
            fh = self.path.open("rb")
        except FileNotFoundError:
            return
        with fh:
            fh.seek(offset)
            position = offset
            for raw_line in fh:
                position += len(raw_line)
                end = position if raw_line.endswith(b"\n") else None
                if not raw_line.strip():
                    yield end, None
                    continue
                try:
                    raw = json.loads(raw_line.decode("utf-8"))
                    if not isinstance(raw, dict):
                        raise ValueError("message line is not a JSON object")
                    message = Message.from_dict(raw)
                except ValueError as error:
                    # UnicodeDecodeError and json.JSONDecodeError are ValueErrors too.
                    logger.warning("Skipping message bus line at byte %d: %s", position, error)
                    yield end, None
                    continue
                yield end, message

    def _load_marker(self) -> dict[str, Any]:
        marker = read_document(self.marker_path, self._empty_marker)
        if marker.get("agent_id") != self.agent_id:
            logger.warning(
                "Ignoring read marker %s owned by %r",
                self.marker_path,
                marker.get("agent_id"),
            )
            return self._empty_marker()
        known = marker.get("read_ids")
        offset = marker.get("offset", 0)
        if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
            offset = 0
        try:
            if offset > self.path.stat().st_size:
                logger.warning("Message bus shrank below read offset; rescanning from start")
                offset = 0
        except FileNotFoundError:
            offset = 0
        return {
            "agent_id": self.agent_id,
            "read_ids": [str(item) for item in known] if isinstance(known, list) else [],
            "offset": offset,
        }

    def _empty_marker(self) -> dict[str, Any]:
        return {"agent_id": self.agent_id, "read_ids": [], "offset": 0, "updated_at": None}

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = line.encode("utf-8")
        fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
        try:
            # One write() per record keeps concurrent appends from interleaving.
            os.write(fd, data)
            os.fsync(fd)
        finally:
            os.close(fd)


def _safe_name(agent_id: str) -> str:
    return quote(agent_id, safe="")
