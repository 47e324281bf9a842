from __future__ import annotations

import json
from pathlib import Path

import allure

from agent_coord.metrics import AgentMetricsStore

pytestmark = [
    allure.epic("Coordination Core"),
    allure.feature("Agent Metrics"),
]


def test_metrics_document_shape(tmp_path: Path, clock) -> None:
    path = tmp_path / "agent-performance-metrics.json"
    store = AgentMetricsStore(path, clock=clock)

    store.record_claim("agent-a")
    clock.advance(minutes=1)
    store.record_completion("agent-a", 1_000)
    store.record_completion("agent-a", 2_000)
    store.record_quality("agent-a", 7)
    store.record_quality("agent-a", 8)
    store.record_quality("agent-a", 8)

    payload = json.loads(path.read_text("utf-8"))
    assert payload["version"] == "1.0"
    assert payload["lock_version"] == 6
    entry = payload["agents"]["agent-a"]
    assert entry["tasks_claimed"] == 1
    assert entry["tasks_completed"] == 2
    assert entry["total_duration_ms"] == 3_000
    assert entry["avg_duration_ms"] == 1_500
    assert entry["quality_scores"] == [7.0, 8.0, 8.0]
    assert entry["avg_quality"] == 7.67
    assert entry["first_seen"] == "2026-03-02T09:00:00+00:00"
    assert entry["last_activity"] == "2026-03-02T09:01:00+00:00"


def test_negative_duration_counts_as_zero(tmp_path: Path, clock) -> None:
    store = AgentMetricsStore(tmp_path / "agent-performance-metrics.json", clock=clock)

    recorded = store.record_completion("agent-a", -50)

    assert recorded is not None
    assert recorded.total_duration_ms == 0
    assert recorded.tasks_completed == 1


def test_empty_and_malformed_entries(tmp_path: Path, clock) -> None:
    path = tmp_path / "agent-performance-metrics.json"
    store = AgentMetricsStore(path, clock=clock)
    assert store.list() == {}
    assert store.get("agent-a") is None

    path.write_text(
        json.dumps(
            {
                "version": "1.0",
                "lock_version": 3,
                "agents": {
                    "broken": "nope",
                    "no-times": {"tasks_completed": 4},
                    "agent-b": {
                        "tasks_completed": 2,
                        "tasks_claimed": True,
                        "quality_scores": [9, "x", None],
                        "first_seen": "2026-03-01T09:00:00+00:00",
                        "last_activity": "2026-03-01T10:00:00+00:00",
                    },
                },
            },
        ),
        "utf-8",
    )

    agents = store.list()

    assert list(agents) == ["agent-b"]
    assert agents["agent-b"].tasks_claimed == 0
    assert agents["agent-b"].quality_scores == [9.0]

    store.record_claim("agent-b")
    payload = json.loads(path.read_text("utf-8"))
    assert payload["lock_version"] == 4
    assert sorted(payload["agents"]) == ["agent-b"]
    assert payload["agents"]["agent-b"]["tasks_claimed"] == 1
