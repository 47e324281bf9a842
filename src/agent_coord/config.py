"""Runtime configuration for the coordination core."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from agent_coord.lock import FileLock
from agent_coord.retry import BackoffPolicy
from agent_coord.timeutil import Clock, utc_now

REGISTRY_FILE = "agent-registry.json"
LEASE_FILE = "orchestrator-state.json"
BUS_FILE = "message-bus.jsonl"
TASKS_FILE = "tasks.json"
READ_MARKERS_DIR = "read-markers"
METRICS_FILE = "agent-performance-metrics.json"

_PRIORITY_NAMES = ("critical", "high", "medium", "low")


@dataclass(slots=True)
class LockSettings:
    """Advisory sidecar lock settings."""

    timeout_ms: int = 10_000
    stale_ms: int = 120_000
    retry_delay_ms: int = 50
    max_retry_delay_ms: int = 1_000
    check_pid: bool = True


@dataclass(slots=True)
class RegistrySettings:
    """Agent registry and optimistic write settings."""

    stale_threshold_ms: int = 300_000
    max_write_attempts: int = 5
    backoff_base_ms: int = 100
    backoff_max_ms: int = 2_000


@dataclass(slots=True)
class LeaseSettings:
    """Leader lease settings."""

    ttl_ms: int = 180_000


@dataclass(slots=True)
class HeartbeatSettings:
    """Heartbeat timer settings."""

    interval_ms: int = 60_000
    bus_heartbeat_every: int = 5


@dataclass(slots=True)
class TaskSettings:
    """Task queue scheduling settings."""

    aging_per_hour: dict[str, float] = field(
        default_factory=lambda: {"critical": 0.0, "high": 0.02, "medium": 0.05, "low": 0.1},
    )
    max_aging_bonus: float = 2.0
    broadcast_priorities: tuple[str, ...] = ("critical", "high")


@dataclass(slots=True)
class SpawnSettings:
    """Successor/worker process spawning settings."""

    command_template: str = ""
    log_dir: Path | None = None


@dataclass(slots=True)
class CoordinationPaths:
    """Resolved file locations inside the shared directory."""

    root: Path

    @property
    def registry(self) -> Path:
        return self.root / REGISTRY_FILE

    @property
    def lease(self) -> Path:
        return self.root / LEASE_FILE

    @property
    def bus(self) -> Path:
        return self.root / BUS_FILE

    @property
    def tasks(self) -> Path:
        return self.root / TASKS_FILE

    @property
    def read_markers(self) -> Path:
        return self.root / READ_MARKERS_DIR

    @property
    def metrics(self) -> Path:
        return self.root / METRICS_FILE


@dataclass(slots=True)
class Settings:
    """Coordination settings grouped by concern."""

    root_dir: Path = Path(".agent-coord")
    log_level: str = "INFO"
    lock: LockSettings = field(default_factory=LockSettings)
    registry: RegistrySettings = field(default_factory=RegistrySettings)
    lease: LeaseSettings = field(default_factory=LeaseSettings)
    heartbeat: HeartbeatSettings = field(default_factory=HeartbeatSettings)
    tasks: TaskSettings = field(default_factory=TaskSettings)
    spawn: SpawnSettings = field(default_factory=SpawnSettings)

    @classmethod
    def from_env(cls, root_dir: Path | None = None) -> Settings:
        """Load settings from ``AGENT_COORD_*`` environment variables."""

        defaults = TaskSettings()
        return cls(
            root_dir=root_dir or Path(os.getenv("AGENT_COORD_ROOT", ".agent-coord")),
            log_level=os.getenv("AGENT_COORD_LOG_LEVEL", "INFO").strip().upper(),
            lock=LockSettings(
                timeout_ms=int(os.getenv("AGENT_COORD_LOCK_TIMEOUT_MS", "10000")),
                stale_ms=int(os.getenv("AGENT_COORD_LOCK_STALE_MS", "120000")),
                retry_delay_ms=int(os.getenv("AGENT_COORD_LOCK_RETRY_DELAY_MS", "50")),
                max_retry_delay_ms=int(os.getenv("AGENT_COORD_LOCK_MAX_RETRY_DELAY_MS", "1000")),
                check_pid=_env_bool("AGENT_COORD_LOCK_CHECK_PID", default=True),
            ),
            registry=RegistrySettings(
                stale_threshold_ms=int(os.getenv("AGENT_COORD_STALE_THRESHOLD_MS", "300000")),
                max_write_attempts=int(os.getenv("AGENT_COORD_MAX_WRITE_ATTEMPTS", "5")),
                backoff_base_ms=int(os.getenv("AGENT_COORD_BACKOFF_BASE_MS", "100")),
                backoff_max_ms=int(os.getenv("AGENT_COORD_BACKOFF_MAX_MS", "2000")),
            ),
            lease=LeaseSettings(
                ttl_ms=int(os.getenv("AGENT_COORD_LEASE_TTL_MS", "180000")),
            ),
            heartbeat=HeartbeatSettings(
                interval_ms=int(os.getenv("AGENT_COORD_HEARTBEAT_INTERVAL_MS", "60000")),
                bus_heartbeat_every=int(os.getenv("AGENT_COORD_BUS_HEARTBEAT_EVERY", "5")),
            ),
            tasks=TaskSettings(
                aging_per_hour={
                    name: float(
                        os.getenv(
                            f"AGENT_COORD_AGING_{name.upper()}_PER_HOUR",
                            str(defaults.aging_per_hour[name]),
                        ),
                    )
                    for name in _PRIORITY_NAMES
                },
                max_aging_bonus=float(os.getenv("AGENT_COORD_MAX_AGING_BONUS", "2.0")),
                broadcast_priorities=_collect_csv(
                    "AGENT_COORD_BROADCAST_PRIORITIES",
                    defaults.broadcast_priorities,
                ),
            ),
            spawn=SpawnSettings(
                command_template=os.getenv("AGENT_COORD_SPAWN_COMMAND", "").strip(),
                log_dir=_env_path("AGENT_COORD_SPAWN_LOG_DIR"),
            ),
        )

    @property
    def paths(self) -> CoordinationPaths:
        return CoordinationPaths(root=self.root_dir)

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.lock.timeout_ms < 0:
            raise ValueError("AGENT_COORD_LOCK_TIMEOUT_MS must be >= 0.")
        if self.lock.stale_ms <= 0:
            raise ValueError("AGENT_COORD_LOCK_STALE_MS must be > 0.")
        if self.lock.retry_delay_ms <= 0 or self.lock.max_retry_delay_ms < self.lock.retry_delay_ms:
            raise ValueError(
                "AGENT_COORD_LOCK_RETRY_DELAY_MS must be > 0 and "
                "<= AGENT_COORD_LOCK_MAX_RETRY_DELAY_MS.",
            )
        if self.registry.stale_threshold_ms <= 0:
            raise ValueError("AGENT_COORD_STALE_THRESHOLD_MS must be > 0.")
        if self.registry.max_write_attempts < 1:
            raise ValueError("AGENT_COORD_MAX_WRITE_ATTEMPTS must be >= 1.")
        if self.registry.backoff_base_ms < 0 or self.registry.backoff_max_ms < 0:
            raise ValueError("AGENT_COORD_BACKOFF_*_MS must be >= 0.")
        if self.lease.ttl_ms <= 0:
            raise ValueError("AGENT_COORD_LEASE_TTL_MS must be > 0.")
        if self.heartbeat.interval_ms <= 0:
            raise ValueError("AGENT_COORD_HEARTBEAT_INTERVAL_MS must be > 0.")
        if self.heartbeat.bus_heartbeat_every < 1:
            raise ValueError("AGENT_COORD_BUS_HEARTBEAT_EVERY must be >= 1.")
        if any(rate < 0 for rate in self.tasks.aging_per_hour.values()):
            raise ValueError("AGENT_COORD_AGING_*_PER_HOUR must be >= 0.")
        if self.tasks.max_aging_bonus < 0:
            raise ValueError("AGENT_COORD_MAX_AGING_BONUS must be >= 0.")
        unknown = [name for name in self.tasks.broadcast_priorities if name not in _PRIORITY_NAMES]
        if unknown:
            raise ValueError(
                f"Invalid AGENT_COORD_BROADCAST_PRIORITIES entries: {', '.join(unknown)}",
            )
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if self.log_level not in valid_levels:
            raise ValueError(
                f"AGENT_COORD_LOG_LEVEL must be one of: {', '.join(sorted(valid_levels))}",
            )

    def write_policy(self) -> BackoffPolicy:
        """Retry bounds for optimistic document writes."""

        return BackoffPolicy(
            attempts=self.registry.max_write_attempts,
            base_delay_seconds=self.registry.backoff_base_ms / 1000.0,
            max_delay_seconds=self.registry.backoff_max_ms / 1000.0,
        )

    def file_lock(self, clock: Clock = utc_now) -> FileLock:
        """Advisory lock configured from ``lock`` settings."""

        return FileLock(
            timeout_ms=self.lock.timeout_ms,
            stale_ms=self.lock.stale_ms,
            retry_delay_ms=self.lock.retry_delay_ms,
            max_retry_delay_ms=self.lock.max_retry_delay_ms,
            check_pid=self.lock.check_pid,
            clock=clock,
        )


def _collect_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    values: list[str] = []
    for part in raw.split(","):
        token = part.strip().lower()
        if token and token not in values:
            values.append(token)
    return tuple(values)


def _env_path(name: str) -> Path | None:
    value = os.getenv(name, "").strip()
    return Path(value) if value else None


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
