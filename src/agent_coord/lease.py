"""Leader lease stored in ``orchestrator-state.json``.

Every read-modify-write runs inside the advisory file lock; the epoch only ever
grows so a deposed leader can detect that somebody else took over.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from agent_coord.documents import read_document, write_document
from agent_coord.lock import FileLock
from agent_coord.models import LeaderLease
from agent_coord.timeutil import TIME_ZERO, Clock, age_ms, utc_now

logger = logging.getLogger(__name__)


class LeaseState(str, Enum):
    """Lease status as seen by one agent."""

    UNCLAIMED = "unclaimed"
    HELD_BY_ME = "held_by_me"
    HELD_BY_OTHER = "held_by_other"
    DEMOTED = "demoted"


@dataclass(slots=True)
class LeaseResult:
    """Outcome of an acquire or renew attempt."""

    state: LeaseState
    lease: LeaderLease | None = None
    took_over: bool = False

    @property
    def is_leader(self) -> bool:
        return self.state == LeaseState.HELD_BY_ME

    @property
    def epoch(self) -> int | None:
        return self.lease.leader_epoch if self.lease is not None else None


class LeaderLeaseManager:
    """Acquire, renew and release the single leader lease."""

    def __init__(
        self,
        path: Path,
        lock: FileLock,
        *,
        ttl_ms: int = 180_000,
        clock: Clock = utc_now,
    ) -> None:
        self.path = path
        self.lock = lock
        self.ttl_ms = ttl_ms
        self.clock = clock

    def current(self) -> LeaderLease | None:
        """Point-in-time lease read; None when unclaimed or unreadable."""

        return _parse_lease(read_document(self.path, dict))

    def is_expired(self, lease: LeaderLease, now: datetime | None = None) -> bool:
        return age_ms(lease.last_heartbeat, now or self.clock()) > lease.ttl_ms

    def state_for(self, agent_id: str) -> LeaseState:
        """Read-only classification of the lease from ``agent_id``'s point of view."""

        lease = self.current()
        if lease is None or self.is_expired(lease):
            return LeaseState.UNCLAIMED
        if lease.leader_id == agent_id:
            return LeaseState.HELD_BY_ME
        return LeaseState.HELD_BY_OTHER

    def acquire(self, agent_id: str) -> LeaseResult:
        """Claim an unclaimed or expired lease, or refresh one already held."""

        with self.lock.held(self.path, agent_id):
            document = read_document(self.path, dict)
            lease = _parse_lease(document)
            now = self.clock()
            if lease is not None and not self.is_expired(lease, now):
                if lease.leader_id != agent_id:
                    return LeaseResult(state=LeaseState.HELD_BY_OTHER, lease=lease)
                lease.last_heartbeat = now
                lease.ttl_ms = self.ttl_ms
                self._write(document, lease)
                return LeaseResult(state=LeaseState.HELD_BY_ME, lease=lease)

            previous_epoch = lease.leader_epoch if lease is not None else _salvage_epoch(document)
            claimed = LeaderLease(
                leader_id=agent_id,
                leader_epoch=previous_epoch + 1,
                last_heartbeat=now,
                ttl_ms=self.ttl_ms,
            )
            self._write(document, claimed)
        if lease is None:
            logger.info("Leader lease claimed by %s (epoch %d)", agent_id, claimed.leader_epoch)
        else:
            logger.info(
                "Leader lease taken over by %s from %s (epoch %d -> %d)",
                agent_id,
                lease.leader_id,
                lease.leader_epoch,
                claimed.leader_epoch,
            )
        return LeaseResult(state=LeaseState.HELD_BY_ME, lease=claimed, took_over=True)

    def renew(self, agent_id: str, epoch: int) -> LeaseResult:
        """Refresh the lease if ``agent_id`` still owns ``epoch``; otherwise demote."""

        with self.lock.held(self.path, agent_id):
            document = read_document(self.path, dict)
            lease = _parse_lease(document)
            if lease is None or lease.leader_id != agent_id or lease.leader_epoch != epoch:
                logger.warning(
                    "Agent %s demoted: lease now held by %s (epoch %s), expected epoch %d",
                    agent_id,
                    lease.leader_id if lease else "nobody",
                    lease.leader_epoch if lease else "-",
                    epoch,
                )
                return LeaseResult(state=LeaseState.DEMOTED, lease=lease)
            lease.last_heartbeat = self.clock()
            lease.ttl_ms = self.ttl_ms
            self._write(document, lease)
        return LeaseResult(state=LeaseState.HELD_BY_ME, lease=lease)

    def release(self, agent_id: str, epoch: int) -> bool:
        """Expire the lease immediately when ``agent_id`` still holds ``epoch``."""

        with self.lock.held(self.path, agent_id):
            document = read_document(self.path, dict)
            lease = _parse_lease(document)
            if lease is None or lease.leader_id != agent_id or lease.leader_epoch != epoch:
                return False
            lease.last_heartbeat = TIME_ZERO
            self._write(document, lease)
        logger.info("Leader lease released by %s (epoch %d)", agent_id, epoch)
        return True

    def _write(self, document: dict[str, Any], lease: LeaderLease) -> None:
        document.update(lease.to_dict())
        write_document(self.path, document)


def _parse_lease(document: dict[str, Any]) -> LeaderLease | None:
    if not document or document.get("leader_id") in (None, ""):
        return None
    try:
        return LeaderLease.from_dict(document)
    except ValueError as error:
        logger.warning("Treating corrupt leader lease as unclaimed: %s", error)
        return None


def _salvage_epoch(document: dict[str, Any]) -> int:
    epoch = document.get("leader_epoch")
    if isinstance(epoch, bool) or not isinstance(epoch, int) or epoch < 0:
        return 0
    return epoch
