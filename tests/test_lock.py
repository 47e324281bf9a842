from __future__ import annotations

import json
import threading
from pathlib import Path

import allure
import pytest

from agent_coord.errors import LockTimeoutError
from agent_coord.lock import FileLock, lock_path_for, read_lock_metadata
from agent_coord.timeutil import to_iso

pytestmark = [
    allure.epic("Coordination Core"),
    allure.feature("Advisory File Lock"),
]


def _lock(clock, **kwargs) -> FileLock:
    kwargs.setdefault("timeout_ms", 300)
    kwargs.setdefault("retry_delay_ms", 5)
    kwargs.setdefault("max_retry_delay_ms", 20)
    return FileLock(clock=clock, **kwargs)


def test_acquire_writes_owner_metadata_and_release_removes_it(
    tmp_path: Path,
    clock,
) -> None:
    resource = tmp_path / "state.json"
    lock = _lock(clock)

    assert lock.acquire(resource, "agent-a") is True

    metadata = read_lock_metadata(lock_path_for(resource))
    assert metadata is not None
    assert metadata.owner_id == "agent-a"
    assert metadata.locked_at == to_iso(clock.now)
    assert lock_path_for(resource).name == "state.json.lock"

    assert lock.release(resource, "agent-a") is True
    assert not lock_path_for(resource).exists()


def test_release_by_non_owner_leaves_lock_in_place(tmp_path: Path, clock) -> None:
    resource = tmp_path / "state.json"
    lock = _lock(clock)
    assert lock.acquire(resource, "agent-a")

    assert lock.release(resource, "agent-b") is False
    assert lock_path_for(resource).exists()
    assert lock.release(tmp_path / "missing.json", "agent-a") is False


def test_busy_lock_times_out(tmp_path: Path, clock) -> None:
    resource = tmp_path / "state.json"
    lock = _lock(clock)
    assert lock.acquire(resource, "agent-a")

    assert lock.acquire(resource, "agent-b", timeout_ms=0) is False
    assert lock.acquire(resource, "agent-b", timeout_ms=50) is False
    assert read_lock_metadata(lock_path_for(resource)).owner_id == "agent-a"


def test_stale_lock_is_taken_over(tmp_path: Path, clock) -> None:
    resource = tmp_path / "state.json"
    lock = _lock(clock, stale_ms=1_000)
    assert lock.acquire(resource, "crashed")

    clock.advance(milliseconds=1_001)

    assert lock.acquire(resource, "agent-b") is True
    assert read_lock_metadata(lock_path_for(resource)).owner_id == "agent-b"


def test_lock_at_stale_boundary_is_still_honoured(tmp_path: Path, clock) -> None:
    resource = tmp_path / "state.json"
    lock = _lock(clock, stale_ms=1_000)
    assert lock.acquire(resource, "agent-a")

    clock.advance(milliseconds=1_000)

    assert lock.acquire(resource, "agent-b", timeout_ms=30) is False


def test_unparsable_lock_is_treated_as_stale(tmp_path: Path, clock) -> None:
    resource = tmp_path / "state.json"
    lock_path_for(resource).write_text("{not json", "utf-8")

    assert _lock(clock).acquire(resource, "agent-b") is True
    assert read_lock_metadata(lock_path_for(resource)).owner_id == "agent-b"


def test_lock_of_dead_pid_is_taken_over(tmp_path: Path, clock) -> None:
    resource = tmp_path / "state.json"
    lock_path_for(resource).write_text(
        json.dumps({"owner_id": "ghost", "locked_at": to_iso(clock.now), "pid": 99_999_999}),
        "utf-8",
    )

    assert _lock(clock, check_pid=False).acquire(resource, "agent-b", timeout_ms=30) is False
    assert _lock(clock).acquire(resource, "agent-b") is True


def test_held_raises_timeout_and_releases_after_block(tmp_path: Path, clock) -> None:
    resource = tmp_path / "state.json"
    lock = _lock(clock)

    with lock.held(resource, "agent-a"):
        with pytest.raises(LockTimeoutError) as excinfo:
            with lock.held(resource, "agent-b", timeout_ms=0):
                pass
        assert excinfo.value.timeout_ms == 0
        assert lock_path_for(resource).exists()

    assert not lock_path_for(resource).exists()


def test_lock_serializes_threads(tmp_path: Path) -> None:
    resource = tmp_path / "counter.json"
    resource.write_text("0", "utf-8")
    lock = FileLock(timeout_ms=10_000, retry_delay_ms=1, max_retry_delay_ms=5)
    errors: list[BaseException] = []

    def _worker(owner: str) -> None:
        try:
            for _ in range(10):
                with lock.held(resource, owner):
                    value = int(resource.read_text("utf-8"))
                    resource.write_text(str(value + 1), "utf-8")
        except BaseException as error:  # noqa: BLE001
            errors.append(error)

    threads = [threading.Thread(target=_worker, args=(f"worker-{i}",)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert errors == []
    assert resource.read_text("utf-8") == "40"
