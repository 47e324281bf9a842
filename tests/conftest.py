"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from agent_coord.config import LockSettings, RegistrySettings, Settings
from agent_coord.coordinator import CoordinationContext

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FrozenClock:
    """Manually advanced clock shared by every component under test."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def coord_root(tmp_path: Path) -> Path:
    return tmp_path / "coord"


@pytest.fixture()
def settings(coord_root: Path) -> Settings:
    return Settings(
        root_dir=coord_root,
        lock=LockSettings(timeout_ms=2_000, retry_delay_ms=5, max_retry_delay_ms=20),
        registry=RegistrySettings(max_write_attempts=20, backoff_base_ms=1, backoff_max_ms=10),
    )


@pytest.fixture()
def make_context(
    settings: Settings,
    clock: FrozenClock,
) -> Callable[..., CoordinationContext]:
    def _make(agent_id: str, role: str = "general", **kwargs) -> CoordinationContext:
        return CoordinationContext.create(
            settings,
            role=role,
            agent_id=agent_id,
            clock=clock,
            **kwargs,
        )

    return _make
