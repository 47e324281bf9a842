from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from agent_coord.bus import MessageBus
from agent_coord.config import TaskSettings
from agent_coord.errors import TaskNotFoundError
from agent_coord.messages import MessageType
from agent_coord.metrics import AgentMetricsStore
from agent_coord.models import Task, TaskPriority, TaskStatus
from agent_coord.retry import BackoffPolicy
from agent_coord.tasks import TaskStore, effective_priority

pytestmark = [
    allure.epic("Coordination Core"),
    allure.feature("Task Queue"),
]

NO_AGING = {"critical": 0.0, "high": 0.0, "medium": 0.0, "low": 0.0}


def _store(root: Path, clock, settings: TaskSettings | None = None) -> TaskStore:
    bus = MessageBus(root / "message-bus.jsonl", root / "read-markers", "agent-c", clock=clock)
    return TaskStore(
        root / "tasks.json",
        bus=bus,
        settings=settings,
        policy=BackoffPolicy(attempts=5, base_delay_seconds=0.001),
        clock=clock,
        actor_id="agent-c",
    )


def _observed(root: Path, clock, message_type: MessageType) -> list:
    observer = MessageBus(
        root / "message-bus.jsonl",
        root / "read-markers",
        "observer",
        clock=clock,
    )
    return [item for item in observer.read_unread() if item.type == message_type]


def _edit_stored(root: Path, task_id: str, **changes) -> None:
    path = root / "tasks.json"
    payload = json.loads(path.read_text("utf-8"))
    for entry in payload["tasks"]:
        if isinstance(entry, dict) and entry.get("id") == task_id:
            entry.update(changes)
    path.write_text(json.dumps(payload), "utf-8")


def test_create_persists_pending_task(tmp_path: Path, clock) -> None:
    store = _store(tmp_path, clock)

    task = store.create("Write docs", "Explain the lease", TaskPriority.HIGH, tags=["docs", "docs"])

    assert task.id.startswith("task_")
    assert task.status == TaskStatus.PENDING
    assert task.created_by == "agent-c"
    assert task.tags == ["docs"]
    assert store.get(task.id) == task
    payload = json.loads((tmp_path / "tasks.json").read_text("utf-8"))
    assert payload["version"] == "1.0"
    assert payload["lock_version"] == 1
    assert payload["completed_count"] == 0


def test_create_rejects_blank_title(tmp_path: Path, clock) -> None:
    with pytest.raises(ValueError, match="title"):
        _store(tmp_path, clock).create("   ")


def test_dependencies_block_until_completed(tmp_path: Path, clock) -> None:
    store = _store(tmp_path, clock)
    base = store.create("Schema")
    dependent = store.create("Migration", depends_on=[base.id, "task_missing"])

    assert dependent.status == TaskStatus.BLOCKED
    assert dependent.depends_on == [base.id]
    assert dependent.blocked_by == [base.id]
    refused = store.claim(dependent.id, "worker-1")
    assert refused.success is False
    assert refused.reason == "status_blocked"

    assert store.claim(base.id, "worker-1").success
    clock.advance(minutes=10)
    done = store.complete(base.id, "worker-1", note="schema merged")

    assert done.success
    assert done.unblocked == [dependent.id]
    refreshed = store.require(dependent.id)
    assert refreshed.status == TaskStatus.PENDING
    assert refreshed.blocked_by == []
    assert store.claim(dependent.id, "worker-2").success


def test_task_with_completed_dependency_starts_pending(tmp_path: Path, clock) -> None:
    store = _store(tmp_path, clock)
    base = store.create("Schema")
    store.claim(base.id, "worker-1")
    store.complete(base.id)

    follow_up = store.create("Index", depends_on=[base.id])

    assert follow_up.status == TaskStatus.PENDING
    assert follow_up.blocked_by == []


def test_claim_refuses_pending_task_with_unmet_dependencies(tmp_path: Path, clock) -> None:
    store = _store(tmp_path, clock)
    upstream = store.create("Upstream")
    downstream = store.create("Downstream")
    _edit_stored(tmp_path, downstream.id, depends_on=[upstream.id])

    result = store.claim(downstream.id, "worker-1")

    assert result.success is False
    assert result.reason == "dependencies_unmet"
    assert store.next_available().id == upstream.id


def test_claim_conflict_reports_current_assignee(tmp_path: Path, clock) -> None:
    store = _store(tmp_path, clock)
    task = store.create("Fix login")

    first = store.claim(task.id, "worker-1")
    second = store.claim(task.id, "worker-2")

    assert first.success is True
    assert first.task.assigned_to == "worker-1"
    assert first.task.claimed_at == clock.now
    assert second.success is False
    assert second.reason == "already_claimed"
    assert second.current_assignee == "worker-1"
    assert store.claim("task_unknown", "worker-2").reason == "not_found"
    claims = _observed(tmp_path, clock, MessageType.TASK_CLAIM)
    assert [item.payload.claimed_by for item in claims] == ["worker-1"]


def test_complete_requires_in_progress_and_matching_assignee(tmp_path: Path, clock) -> None:
    store = _store(tmp_path, clock)
    task = store.create("Ship release")

    assert store.complete(task.id).reason == "status_pending"
    store.claim(task.id, "worker-1")
    assert store.complete(task.id, "worker-2").reason == "not_assignee"

    result = store.complete(task.id, "worker-1", note="tagged v1", result="ok")

    assert result.success
    assert result.task.status == TaskStatus.COMPLETED
    assert result.task.completed_at == clock.now
    assert result.task.notes[-1].endswith("tagged v1")
    assert store.complete(task.id, "worker-1").reason == "status_completed"
    assert store.complete("task_unknown").reason == "not_found"
    assert store.stats()["completed_count"] == 1
    completions = _observed(tmp_path, clock, MessageType.TASK_COMPLETE)
    assert [(item.payload.completed_by, item.payload.result) for item in completions] == [
        ("worker-1", "ok"),
    ]


def test_effective_priority_ages_and_caps(tmp_path: Path, clock) -> None:
    store = _store(tmp_path, clock)
    settings = TaskSettings()
    low = store.create("Low", priority=TaskPriority.LOW)
    high = store.create("High", priority=TaskPriority.HIGH)
    critical = store.create("Critical", priority=TaskPriority.CRITICAL)
    start = clock.now

    assert effective_priority(low, start, settings) == pytest.approx(3.0)
    assert effective_priority(low, start + timedelta(hours=10), settings) == pytest.approx(2.0)
    assert effective_priority(low, start + timedelta(hours=40), settings) == pytest.approx(1.0)
    assert effective_priority(high, start + timedelta(hours=20), settings) == pytest.approx(0.6)
    assert effective_priority(critical, start + timedelta(hours=99), settings) == 0.0
    assert effective_priority(low, start - timedelta(hours=5), settings) == pytest.approx(3.0)


def test_effective_priority_never_drops_below_zero(tmp_path: Path, clock) -> None:
    settings = TaskSettings(aging_per_hour={**NO_AGING, "high": 1.0}, max_aging_bonus=5.0)
    task = _store(tmp_path, clock, settings).create("High", priority=TaskPriority.HIGH)

    assert effective_priority(task, clock.now + timedelta(hours=3), settings) == 0.0


def test_aged_low_priority_task_overtakes_fresh_medium(tmp_path: Path, clock) -> None:
    store = _store(tmp_path, clock)
    old_low = store.create("Old low", priority=TaskPriority.LOW)
    clock.advance(hours=30)
    store.create("Fresh medium", priority=TaskPriority.MEDIUM)

    assert store.next_available().id == old_low.id


def test_ties_are_broken_by_creation_time(tmp_path: Path, clock) -> None:
    store = _store(tmp_path, clock, TaskSettings(aging_per_hour=dict(NO_AGING)))
    first = store.create("First", priority=TaskPriority.MEDIUM)
    clock.advance(minutes=1)
    store.create("Second", priority=TaskPriority.MEDIUM)

    assert store.next_available().id == first.id
    store.claim(first.id, "worker-1")
    assert store.next_available().title == "Second"


def test_next_available_is_none_without_claimable_tasks(tmp_path: Path, clock) -> None:
    store = _store(tmp_path, clock)
    assert store.next_available() is None

    task = store.create("Only")
    store.claim(task.id, "worker-1")

    assert store.next_available() is None


def test_release_agent_tasks_returns_work_to_pool(tmp_path: Path, clock) -> None:
    store = _store(tmp_path, clock)
    kept = store.create("Kept", priority=TaskPriority.LOW)
    lost = store.create("Lost", priority=TaskPriority.LOW)
    store.claim(kept.id, "worker-2")
    store.claim(lost.id, "worker-1")

    released = store.release_agent_tasks(["worker-1"], "worker crashed")

    assert [task.id for task in released] == [lost.id]
    restored = store.require(lost.id)
    assert restored.status == TaskStatus.PENDING
    assert restored.assigned_to is None
    assert restored.claimed_at is None
    assert restored.notes[-1].endswith("Released from worker-1: worker crashed")
    assert store.require(kept.id).assigned_to == "worker-2"
    available = _observed(tmp_path, clock, MessageType.TASK_AVAILABLE)
    assert [(item.payload.task_id, item.payload.reason) for item in available] == [
        (lost.id, "worker crashed"),
    ]
    assert store.release_agent_tasks([], "noop") == []


def test_release_orphaned_keeps_tasks_of_active_agents(tmp_path: Path, clock) -> None:
    store = _store(tmp_path, clock)
    owned = store.create("Owned")
    orphan = store.create("Orphan")
    store.claim(owned.id, "worker-1")
    store.claim(orphan.id, "worker-gone")

    released = store.release_orphaned({"worker-1"}, "assignee is no longer registered")

    assert [task.id for task in released] == [orphan.id]
    assert store.require(owned.id).status == TaskStatus.IN_PROGRESS
    assert store.release_orphaned({"worker-1"}, "again") == []


def test_only_configured_priorities_are_broadcast_on_create(tmp_path: Path, clock) -> None:
    store = _store(tmp_path, clock)
    store.create("Low", priority=TaskPriority.LOW)
    store.create("Medium", priority=TaskPriority.MEDIUM)
    critical = store.create("Critical", priority=TaskPriority.CRITICAL)
    high = store.create("High", priority=TaskPriority.HIGH)

    available = _observed(tmp_path, clock, MessageType.TASK_AVAILABLE)

    assert [item.payload.task_id for item in available] == [critical.id, high.id]
    assert {item.payload.reason for item in available} == {"created"}


def test_rate_quality_clamps_score_on_completed_tasks(tmp_path: Path, clock) -> None:
    store = _store(tmp_path, clock)
    task = store.create("Review")

    assert store.rate_quality(task.id, 8).reason == "status_pending"
    store.claim(task.id, "worker-1")
    store.complete(task.id, "worker-1")

    high = store.rate_quality(task.id, 15, "excellent")
    assert high.success
    assert high.task.quality_score == 10.0
    assert high.task.quality_notes == "excellent"
    assert store.rate_quality(task.id, 0).task.quality_score == 1.0
    assert store.rate_quality("task_unknown", 5).reason == "not_found"


def test_cancel_only_open_tasks(tmp_path: Path, clock) -> None:
    store = _store(tmp_path, clock)
    task = store.create("Spike")

    result = store.cancel(task.id, note="out of scope")

    assert result.success
    assert result.task.status == TaskStatus.CANCELLED
    assert result.task.notes[-1].endswith("out of scope")
    assert store.cancel(task.id).reason == "status_cancelled"
    assert store.cancel("task_unknown").reason == "not_found"


def test_cancel_leaves_dependents_blocked_with_a_note(tmp_path: Path, clock) -> None:
    store = _store(tmp_path, clock)
    base = store.create("Schema")
    other = store.create("Fixtures")
    dependent = store.create("Migrate", depends_on=[base.id, other.id])
    unrelated = store.create("Docs")

    result = store.cancel(base.id)

    assert result.success
    assert result.stranded == [dependent.id]
    stranded = store.require(dependent.id)
    assert stranded.status == TaskStatus.BLOCKED
    assert stranded.blocked_by == [base.id, other.id]
    assert f"Dependency {base.id} was cancelled" in stranded.notes[-1]
    assert store.require(unrelated.id).notes == []

    store.claim(other.id, "agent-d")
    store.complete(other.id, "agent-d")
    assert store.require(dependent.id).status == TaskStatus.BLOCKED
    assert store.require(dependent.id).blocked_by == [base.id]


def test_claim_complete_and_rating_feed_agent_metrics(tmp_path: Path, clock) -> None:
    metrics = AgentMetricsStore(tmp_path / "agent-performance-metrics.json", clock=clock)
    store = _store(tmp_path, clock)
    store.metrics = metrics
    first = store.create("One")
    second = store.create("Two")

    store.claim(first.id, "agent-d")
    clock.advance(minutes=2)
    store.complete(first.id, "agent-d")
    store.claim(second.id, "agent-d")
    clock.advance(minutes=4)
    store.complete(second.id, "agent-d")
    store.rate_quality(first.id, 8)
    store.rate_quality(first.id, 6)
    store.rate_quality(second.id, 15)

    recorded = metrics.get("agent-d")
    assert recorded is not None
    assert recorded.tasks_claimed == 2
    assert recorded.tasks_completed == 2
    assert recorded.total_duration_ms == 360_000
    assert recorded.avg_duration_ms == 180_000
    assert recorded.quality_scores == [8.0, 10.0]
    assert recorded.avg_quality == 9.0


def test_refused_operations_leave_metrics_untouched(tmp_path: Path, clock) -> None:
    metrics = AgentMetricsStore(tmp_path / "agent-performance-metrics.json", clock=clock)
    store = _store(tmp_path, clock)
    store.metrics = metrics
    task = store.create("One")
    store.claim(task.id, "agent-d")

    assert not store.claim(task.id, "agent-e").success
    assert not store.complete(task.id, "agent-e").success
    assert not store.rate_quality(task.id, 5).success

    assert metrics.get("agent-e") is None
    recorded = metrics.get("agent-d")
    assert recorded is not None
    assert (recorded.tasks_claimed, recorded.tasks_completed) == (1, 0)


def test_notes_and_references(tmp_path: Path, clock) -> None:
    store = _store(tmp_path, clock)
    task = store.create("Bugfix")

    noted = store.add_note(task.id, "reproduced locally")
    linked = store.attach_reference(task.id, "commit", "abc1234")

    assert noted.notes == [f"[{clock.now.isoformat()}] reproduced locally"]
    assert linked.external_refs == {"commit": "abc1234"}
    with pytest.raises(TaskNotFoundError):
        store.add_note("task_unknown", "nope")
    with pytest.raises(TaskNotFoundError):
        store.require("task_unknown")


def test_malformed_entries_are_preserved(tmp_path: Path, clock) -> None:
    store = _store(tmp_path, clock)
    task = store.create("Valid")
    path = tmp_path / "tasks.json"
    payload = json.loads(path.read_text("utf-8"))
    payload["tasks"].insert(0, {"id": "", "title": 3})
    path.write_text(json.dumps(payload), "utf-8")

    assert [item.id for item in store.list()] == [task.id]
    assert store.claim(task.id, "worker-1").success

    stored = json.loads(path.read_text("utf-8"))["tasks"]
    assert stored[0] == {"id": "", "title": 3}
    assert stored[1]["assigned_to"] == "worker-1"


def test_list_filters_and_stats(tmp_path: Path, clock) -> None:
    store = _store(tmp_path, clock)
    first = store.create("First")
    store.create("Second")
    blocked = store.create("Third", depends_on=[first.id])
    store.claim(first.id, "worker-1")

    assert [task.id for task in store.list(TaskStatus.BLOCKED)] == [blocked.id]
    assert len(store.list(TaskStatus.PENDING)) == 1
    stats = store.stats()
    assert stats["total"] == 3
    assert stats["pending"] == 1
    assert stats["in_progress"] == 1
    assert stats["blocked"] == 1
    assert stats["completed"] == 0


def test_task_dict_round_trip(tmp_path: Path, clock) -> None:
    store = _store(tmp_path, clock)
    task = store.create("Round trip", tags=["x"])
    store.claim(task.id, "worker-1")
    store.attach_reference(task.id, "issue", "https://example.invalid/1")
    stored = store.require(task.id)

    assert Task.from_dict(stored.to_dict()) == stored
