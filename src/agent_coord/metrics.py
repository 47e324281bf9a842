"""Per-agent performance metrics kept beside the task queue."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from agent_coord.documents import VersionedDocument
from agent_coord.errors import RetryExhaustedError
from agent_coord.retry import BackoffPolicy
from agent_coord.timeutil import Clock, from_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

METRICS_SCHEMA_VERSION = "1.0"


def _empty_metrics() -> dict[str, Any]:
    return {
        "version": METRICS_SCHEMA_VERSION,
        "agents": {},
        "last_updated": None,
        "lock_version": 0,
    }


@dataclass(slots=True)
class AgentMetrics:
    """Running totals for one agent's claimed and completed work."""

    agent_id: str
    first_seen: datetime
    last_activity: datetime
    tasks_claimed: int = 0
    tasks_completed: int = 0
    total_duration_ms: int = 0
    quality_scores: list[float] = field(default_factory=list)

    @property
    def avg_duration_ms(self) -> int:
        if not self.tasks_completed:
            return 0
        return round(self.total_duration_ms / self.tasks_completed)

    @property
    def avg_quality(self) -> float:
        if not self.quality_scores:
            return 0.0
        return round(sum(self.quality_scores) / len(self.quality_scores), 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "tasks_completed": self.tasks_completed,
            "tasks_claimed": self.tasks_claimed,
            "total_duration_ms": self.total_duration_ms,
            "avg_duration_ms": self.avg_duration_ms,
            "quality_scores": list(self.quality_scores),
            "avg_quality": self.avg_quality,
            "last_activity": to_iso(self.last_activity),
            "first_seen": to_iso(self.first_seen),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any], agent_id: str) -> AgentMetrics:
        """Parse one agent entry; raises ``ValueError`` on malformed input."""

        first_seen = raw.get("first_seen")
        last_activity = raw.get("last_activity")
        if not isinstance(first_seen, str) or not isinstance(last_activity, str):
            raise ValueError(f"metrics for {agent_id} need first_seen and last_activity")
        scores = raw.get("quality_scores", [])
        if not isinstance(scores, list):
            raise ValueError(f"metrics for {agent_id}: quality_scores must be a list")
        return cls(
            agent_id=agent_id,
            first_seen=from_iso(first_seen),
            last_activity=from_iso(last_activity),
            tasks_claimed=_count(raw, "tasks_claimed"),
            tasks_completed=_count(raw, "tasks_completed"),
            total_duration_ms=_count(raw, "total_duration_ms"),
            quality_scores=[
                float(score)
                for score in scores
                if isinstance(score, int | float) and not isinstance(score, bool)
            ],
        )


class AgentMetricsStore:
    """Optimistically versioned ``agent-performance-metrics.json``."""

    def __init__(
        self,
        path: Path,
        *,
        policy: BackoffPolicy | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.path = path
        self.clock = clock
        self._document: VersionedDocument[Any] = VersionedDocument(
            path,
            default_factory=_empty_metrics,
            policy=policy,
        )

    def record_claim(self, agent_id: str) -> AgentMetrics | None:
        def _apply(metrics: AgentMetrics) -> None:
            metrics.tasks_claimed += 1

        return self._record(agent_id, _apply, "claim")

    def record_completion(self, agent_id: str, duration_ms: int) -> AgentMetrics | None:
        """Count one finished task; negative durations count as zero."""

        def _apply(metrics: AgentMetrics) -> None:
            metrics.tasks_completed += 1
            metrics.total_duration_ms += max(0, duration_ms)

        return self._record(agent_id, _apply, "completion")

    def record_quality(self, agent_id: str, score: float) -> AgentMetrics | None:
        def _apply(metrics: AgentMetrics) -> None:
            metrics.quality_scores.append(float(score))

        return self._record(agent_id, _apply, "quality score")

    def get(self, agent_id: str) -> AgentMetrics | None:
        return self.list().get(agent_id)

    def list(self) -> dict[str, AgentMetrics]:
        return _parse_agents(self._document.read())

    def _record(
        self,
        agent_id: str,
        apply: Callable[[AgentMetrics], None],
        description: str,
    ) -> AgentMetrics | None:
        def _mutate(document: dict[str, Any]) -> AgentMetrics:
            now = self.clock()
            agents = _parse_agents(document)
            metrics = agents.get(agent_id) or AgentMetrics(
                agent_id=agent_id,
                first_seen=now,
                last_activity=now,
            )
            apply(metrics)
            metrics.last_activity = now
            agents[agent_id] = metrics
            document.setdefault("version", METRICS_SCHEMA_VERSION)
            document["agents"] = {key: value.to_dict() for key, value in agents.items()}
            document["last_updated"] = to_iso(now)
            return metrics

        try:
            return self._document.update(_mutate)
        except RetryExhaustedError as error:
            logger.error("Metrics %s for %s not recorded: %s", description, agent_id, error)
            return None


def _parse_agents(document: dict[str, Any]) -> dict[str, AgentMetrics]:
    raw_agents = document.get("agents")
    if not isinstance(raw_agents, dict):
        return {}
    agents: dict[str, AgentMetrics] = {}
    for agent_id, raw in raw_agents.items():
        if not isinstance(raw, dict):
            logger.warning("Skipping malformed metrics entry for %s", agent_id)
            continue
        try:
            agents[agent_id] = AgentMetrics.from_dict(raw, agent_id)
        except ValueError as error:
            logger.warning("Skipping malformed metrics entry: %s", error)
    return agents


def _count(raw: dict[str, Any], key: str) -> int:
    value = raw.get(key, 0)
    if isinstance(value, bool) or not isinstance(value, int | float):
        return 0
    return max(0, int(value))
