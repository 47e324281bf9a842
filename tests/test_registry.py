from __future__ import annotations

import json
import threading
from pathlib import Path

import allure

from agent_coord.models import AgentStatus
from agent_coord.registry import AgentRegistry
from agent_coord.retry import BackoffPolicy

pytestmark = [
    allure.epic("Coordination Core"),
    allure.feature("Agent Registry"),
]

STALE_MS = 300_000


def _registry(path: Path, clock=None, attempts: int = 5) -> AgentRegistry:
    kwargs = {"clock": clock} if clock is not None else {}
    return AgentRegistry(
        path,
        stale_threshold_ms=STALE_MS,
        policy=BackoffPolicy(attempts=attempts, base_delay_seconds=0.001, max_delay_seconds=0.01),
        **kwargs,
    )


def test_register_writes_registry_document(tmp_path: Path, clock) -> None:
    path = tmp_path / "agent-registry.json"
    registry = _registry(path, clock)

    assert registry.register("agent-a", "orchestrator", "session-1", pid=4242) is True

    payload = json.loads(path.read_text("utf-8"))
    assert payload["version"] == "1.0.0"
    assert payload["lock_version"] == 1
    assert payload["agents"][0]["agent_id"] == "agent-a"
    assert payload["agents"][0]["assigned_role"] == "orchestrator"
    assert payload["agents"][0]["pid"] == 4242

    record = registry.get("agent-a")
    assert record is not None
    assert record.session_id == "session-1"
    assert record.status == AgentStatus.ACTIVE
    assert record.last_heartbeat == clock.now


def test_register_is_an_upsert_keeping_started_at(tmp_path: Path, clock) -> None:
    registry = _registry(tmp_path / "agent-registry.json", clock)
    registry.register("agent-a", "general", "session-1")
    started = clock.now

    clock.advance(seconds=30)
    registry.register("agent-a", "reviewer")

    records = registry.list_active()
    assert len(records) == 1
    assert records[0].assigned_role == "reviewer"
    assert records[0].session_id == "session-1"
    assert records[0].started_at == started
    assert records[0].last_heartbeat == clock.now


def test_heartbeat_refreshes_and_reports_unknown_agents(tmp_path: Path, clock) -> None:
    registry = _registry(tmp_path / "agent-registry.json", clock)
    registry.register("agent-a")

    clock.advance(seconds=45)

    assert registry.heartbeat("agent-a") is True
    assert registry.get("agent-a").last_heartbeat == clock.now
    assert registry.heartbeat("agent-unknown") is False


def test_stale_threshold_boundary(tmp_path: Path, clock) -> None:
    registry = _registry(tmp_path / "agent-registry.json", clock)
    registry.register("agent-a")

    clock.advance(milliseconds=STALE_MS)
    assert registry.reap_stale() == []
    assert [item.agent_id for item in registry.list_active()] == ["agent-a"]

    clock.advance(milliseconds=1)
    reaped = registry.reap_stale()

    assert [item.agent_id for item in reaped] == ["agent-a"]
    assert registry.list_active() == []
    assert json.loads((tmp_path / "agent-registry.json").read_text("utf-8"))["agents"] == []


def test_stale_peers_dropped_by_writes_are_reported_by_reap(tmp_path: Path, clock) -> None:
    registry = _registry(tmp_path / "agent-registry.json", clock)
    registry.register("leader")
    registry.register("worker")
    clock.advance(milliseconds=STALE_MS - 1000)
    registry.heartbeat("leader")
    clock.advance(milliseconds=1001)

    # The leader's own heartbeat rewrites the registry without the stale worker.
    assert registry.heartbeat("leader") is True
    assert [item.agent_id for item in registry.list_active()] == ["leader"]

    assert [item.agent_id for item in registry.reap_stale()] == ["worker"]
    assert registry.reap_stale() == []


def test_reregistering_agent_is_not_reported_as_reaped(tmp_path: Path, clock) -> None:
    registry = _registry(tmp_path / "agent-registry.json", clock)
    registry.register("agent-a")
    clock.advance(milliseconds=STALE_MS + 1)

    assert registry.register("agent-a") is True

    assert registry.reap_stale() == []


def test_stale_agent_cannot_heartbeat_back_in(tmp_path: Path, clock) -> None:
    registry = _registry(tmp_path / "agent-registry.json", clock)
    registry.register("agent-a")
    clock.advance(milliseconds=STALE_MS + 1)

    assert registry.heartbeat("agent-a") is False
    assert registry.register("agent-a") is True
    assert registry.get("agent-a") is not None


def test_status_role_and_idle_queries(tmp_path: Path, clock) -> None:
    registry = _registry(tmp_path / "agent-registry.json", clock)
    registry.register("orch", "orchestrator")
    registry.register("worker-1", "developer")
    registry.register("worker-2", "developer")

    assert registry.update_status("worker-1", AgentStatus.WORKING, current_task="task_1")
    assert registry.update_status("worker-2", AgentStatus.IDLE)
    assert registry.update_status("ghost", AgentStatus.IDLE) is False

    assert [item.agent_id for item in registry.list_by_role("developer")] == [
        "worker-1",
        "worker-2",
    ]
    assert [item.agent_id for item in registry.list_idle()] == ["worker-2"]
    assert registry.get("worker-1").current_task == "task_1"


def test_unregister_removes_agent(tmp_path: Path, clock) -> None:
    registry = _registry(tmp_path / "agent-registry.json", clock)
    registry.register("agent-a")
    registry.register("agent-b")

    assert registry.unregister("agent-a") is True
    assert registry.unregister("agent-a") is False
    assert [item.agent_id for item in registry.list_active()] == ["agent-b"]


def test_malformed_entries_are_skipped(tmp_path: Path, clock) -> None:
    path = tmp_path / "agent-registry.json"
    path.write_text(
        json.dumps(
            {
                "version": "1.0.0",
                "agents": [{"agent_id": ""}, "junk", {"agent_id": "x", "last_heartbeat": 5}],
                "lock_version": 3,
            },
        ),
        "utf-8",
    )
    registry = _registry(path, clock)

    assert registry.list_active() == []
    assert registry.register("agent-a") is True
    assert [item.agent_id for item in registry.list_active()] == ["agent-a"]
    assert json.loads(path.read_text("utf-8"))["lock_version"] == 4


def test_concurrent_registrations_are_all_kept(tmp_path: Path) -> None:
    path = tmp_path / "agent-registry.json"
    errors: list[BaseException] = []

    def _worker(agent_id: str) -> None:
        try:
            assert _registry(path, attempts=50).register(agent_id)
        except BaseException as error:  # noqa: BLE001
            errors.append(error)

    threads = [threading.Thread(target=_worker, args=(f"agent-{i}",)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert errors == []
    active = _registry(path).list_active()
    assert sorted(item.agent_id for item in active) == sorted(f"agent-{i}" for i in range(8))
