"""Agent membership registry backed by an optimistically versioned JSON file."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar
from uuid import uuid4

from agent_coord.documents import NoChange, VersionedDocument
from agent_coord.errors import RetryExhaustedError
from agent_coord.models import AgentRecord, AgentStatus
from agent_coord.retry import BackoffPolicy
from agent_coord.timeutil import Clock, age_ms, to_iso, utc_now

logger = logging.getLogger(__name__)

REGISTRY_SCHEMA_VERSION = "1.0.0"

T = TypeVar("T")


def _empty_registry() -> dict[str, Any]:
    return {
        "version": REGISTRY_SCHEMA_VERSION,
        "agents": [],
        "last_updated": None,
        "lock_version": 0,
    }


class AgentRegistry:
    """Register, heartbeat and reap agents sharing one coordination directory."""

    def __init__(
        self,
        path: Path,
        *,
        stale_threshold_ms: int = 300_000,
        policy: BackoffPolicy | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.path = path
        self.stale_threshold_ms = stale_threshold_ms
        self.clock = clock
        self._document: VersionedDocument[Any] = VersionedDocument(
            path,
            default_factory=_empty_registry,
            policy=policy,
        )
        self._dropped: list[AgentRecord] = []
        self._dropped_guard = threading.Lock()

    def register(
        self,
        agent_id: str,
        role: str = "general",
        session_id: str | None = None,
        *,
        pid: int | None = None,
    ) -> bool:
        """Upsert ``agent_id`` as active, dropping stale peers on the way."""

        def _mutate(document: dict[str, Any], dropped: list[AgentRecord]) -> bool:
            now = self.clock()
            records = self._live_records(document, now, dropped)
            # A stale agent registering again is back, not reaped.
            dropped[:] = [item for item in dropped if item.agent_id != agent_id]
            existing = _find(records, agent_id)
            effective_session = session_id
            if effective_session is None:
                effective_session = (
                    existing.session_id if existing else f"session-{uuid4().hex[:12]}"
                )
            record = AgentRecord(
                agent_id=agent_id,
                session_id=effective_session,
                started_at=existing.started_at if existing else now,
                last_heartbeat=now,
                status=AgentStatus.ACTIVE,
                assigned_role=role,
                current_task=existing.current_task if existing else None,
                pid=pid if pid is not None else os.getpid(),
            )
            records = [item for item in records if item.agent_id != agent_id]
            records.append(record)
            _store(document, records, now)
            return True

        if not self._update(_mutate, f"register {agent_id}", default=False):
            return False
        logger.info("Agent registered: %s (role=%s)", agent_id, role)
        return True

    def heartbeat(self, agent_id: str) -> bool:
        """Refresh ``last_heartbeat``; False when the agent is not (or no longer) registered."""

        def _mutate(document: dict[str, Any], dropped: list[AgentRecord]) -> bool:
            now = self.clock()
            records = self._live_records(document, now, dropped)
            record = _find(records, agent_id)
            if record is None:
                raise NoChange(False)
            record.last_heartbeat = now
            _store(document, records, now)
            return True

        updated = self._update(_mutate, f"heartbeat {agent_id}", default=False)
        if not updated:
            logger.debug("Heartbeat skipped for unregistered agent %s", agent_id)
        return updated

    def update_status(
        self,
        agent_id: str,
        status: AgentStatus,
        current_task: str | None = None,
    ) -> bool:
        def _mutate(document: dict[str, Any], dropped: list[AgentRecord]) -> bool:
            now = self.clock()
            records = self._live_records(document, now, dropped)
            record = _find(records, agent_id)
            if record is None:
                raise NoChange(False)
            record.status = status
            record.current_task = current_task
            record.last_heartbeat = now
            _store(document, records, now)
            return True

        return self._update(_mutate, f"status {agent_id}", default=False)

    def unregister(self, agent_id: str) -> bool:
        def _mutate(document: dict[str, Any], dropped: list[AgentRecord]) -> bool:
            now = self.clock()
            records = self._live_records(document, now, dropped)
            if _find(records, agent_id) is None:
                raise NoChange(False)
            _store(document, [item for item in records if item.agent_id != agent_id], now)
            return True

        removed = self._update(_mutate, f"unregister {agent_id}", default=False)
        if removed:
            logger.info("Agent unregistered: %s", agent_id)
        return removed

    def reap_stale(self) -> list[AgentRecord]:
        """Remove every agent whose heartbeat is older than the stale threshold.

        Also returns stale agents dropped by earlier writes of this registry
        since the previous call, so no reaped agent goes unreported.
        """

        def _mutate(document: dict[str, Any], dropped: list[AgentRecord]) -> bool:
            now = self.clock()
            records = self._live_records(document, now, dropped)
            if not dropped:
                raise NoChange(False)
            _store(document, records, now)
            return True

        self._update(_mutate, "reap stale agents", default=False)
        with self._dropped_guard:
            reaped, self._dropped = self._dropped, []
        return reaped

    def get(self, agent_id: str) -> AgentRecord | None:
        return _find(self.list_active(), agent_id)

    def list_active(self) -> list[AgentRecord]:
        """Point-in-time snapshot of agents within the stale threshold."""

        return self._live_records(self._document.read(), self.clock())

    def list_by_role(self, role: str) -> list[AgentRecord]:
        return [item for item in self.list_active() if item.assigned_role == role]

    def list_idle(self) -> list[AgentRecord]:
        return [item for item in self.list_active() if item.status == AgentStatus.IDLE]

    def is_stale(self, record: AgentRecord, now: datetime) -> bool:
        return age_ms(record.last_heartbeat, now) > self.stale_threshold_ms

    def _live_records(
        self,
        document: dict[str, Any],
        now: datetime,
        dropped: list[AgentRecord] | None = None,
    ) -> list[AgentRecord]:
        live: list[AgentRecord] = []
        for record in _parse_records(document):
            if not self.is_stale(record, now):
                live.append(record)
            elif dropped is not None:
                dropped.append(record)
        return live

    def _update(
        self,
        mutate: Callable[[dict[str, Any], list[AgentRecord]], T],
        description: str,
        *,
        default: T,
    ) -> T:
        dropped: list[AgentRecord] = []

        def _attempt(document: dict[str, Any]) -> T:
            dropped.clear()
            try:
                return mutate(document, dropped)
            except NoChange:
                dropped.clear()
                raise

        try:
            result = self._document.update(_attempt)
        except RetryExhaustedError as error:
            logger.error("Registry %s failed: %s", description, error)
            return default
        self._remember_dropped(dropped)
        return result

    def _remember_dropped(self, records: list[AgentRecord]) -> None:
        for record in records:
            logger.info(
                "Reaped stale agent %s (last heartbeat %s)",
                record.agent_id,
                to_iso(record.last_heartbeat),
            )
        with self._dropped_guard:
            known = {item.agent_id for item in self._dropped}
            self._dropped.extend(item for item in records if item.agent_id not in known)


def _parse_records(document: dict[str, Any]) -> list[AgentRecord]:
    raw_agents = document.get("agents")
    if not isinstance(raw_agents, list):
        return []
    records: list[AgentRecord] = []
    seen: set[str] = set()
    for raw in raw_agents:
        if not isinstance(raw, dict):
            logger.warning("Skipping malformed registry entry: %r", raw)
            continue
        try:
            record = AgentRecord.from_dict(raw)
        except ValueError as error:
            logger.warning("Skipping malformed registry entry: %s", error)
            continue
        if record.agent_id in seen:
            continue
        seen.add(record.agent_id)
        records.append(record)
    return records


def _store(document: dict[str, Any], records: list[AgentRecord], now: datetime) -> None:
    document.setdefault("version", REGISTRY_SCHEMA_VERSION)
    document["agents"] = [item.to_dict() for item in records]
    document["last_updated"] = to_iso(now)


def _find(records: list[AgentRecord], agent_id: str) -> AgentRecord | None:
    for record in records:
        if record.agent_id == agent_id:
            return record
    return None
