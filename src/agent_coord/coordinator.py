"""Per-agent coordination facade and heartbeat timer."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from uuid import uuid4

from agent_coord.bus import MessageBus
from agent_coord.collaborators import (
    ProcessSpawner,
    QualityAssessor,
    ReferenceLinker,
    SpawnResult,
    SubprocessSpawner,
    SummaryRenderer,
    TextSummaryRenderer,
)
from agent_coord.config import Settings
from agent_coord.errors import CoordinationError, LockTimeoutError, SpawnError
from agent_coord.lease import LeaderLeaseManager, LeaseResult
from agent_coord.messages import HeartbeatPayload, LeaderElectedPayload, MessageType
from agent_coord.metrics import AgentMetricsStore
from agent_coord.models import ORCHESTRATOR_ROLE, Task
from agent_coord.registry import AgentRegistry
from agent_coord.tasks import TaskStore, TaskUpdateResult
from agent_coord.timeutil import Clock, utc_now

logger = logging.getLogger(__name__)


def new_agent_id(clock: Clock = utc_now) -> str:
    return f"agent-{int(clock().timestamp() * 1000)}-{uuid4().hex[:6]}"


@dataclass(slots=True)
class CoordinationContext:
    """Everything one agent process needs, created at start and closed at stop."""

    settings: Settings
    agent_id: str
    session_id: str
    role: str
    clock: Clock
    registry: AgentRegistry
    lease: LeaderLeaseManager
    bus: MessageBus
    tasks: TaskStore
    metrics: AgentMetricsStore
    spawner: ProcessSpawner | None = None
    quality_assessor: QualityAssessor | None = None
    reference_linker: ReferenceLinker | None = None
    summary_renderer: SummaryRenderer = field(default_factory=TextSummaryRenderer)
    closed: bool = False

    @classmethod
    def create(  # noqa: PLR0913
        cls,
        settings: Settings,
        *,
        role: str = "general",
        agent_id: str | None = None,
        session_id: str | None = None,
        clock: Clock = utc_now,
        spawner: ProcessSpawner | None = None,
        quality_assessor: QualityAssessor | None = None,
        reference_linker: ReferenceLinker | None = None,
    ) -> CoordinationContext:
        """Wire the coordination components for one agent from ``settings``."""

        paths = settings.paths
        effective_id = agent_id or new_agent_id(clock)
        policy = settings.write_policy()
        bus = MessageBus(paths.bus, paths.read_markers, effective_id, clock=clock)
        metrics = AgentMetricsStore(paths.metrics, policy=policy, clock=clock)
        if spawner is None and settings.spawn.command_template:
            spawner = SubprocessSpawner(
                settings.spawn.command_template,
                root_dir=settings.root_dir,
                log_dir=settings.spawn.log_dir,
            )
        return cls(
            settings=settings,
            agent_id=effective_id,
            session_id=session_id or f"session-{int(clock().timestamp() * 1000)}",
            role=role,
            clock=clock,
            registry=AgentRegistry(
                paths.registry,
                stale_threshold_ms=settings.registry.stale_threshold_ms,
                policy=policy,
                clock=clock,
            ),
            lease=LeaderLeaseManager(
                paths.lease,
                settings.file_lock(clock),
                ttl_ms=settings.lease.ttl_ms,
                clock=clock,
            ),
            bus=bus,
            tasks=TaskStore(
                paths.tasks,
                bus=bus,
                metrics=metrics,
                settings=settings.tasks,
                policy=policy,
                clock=clock,
                actor_id=effective_id,
            ),
            metrics=metrics,
            spawner=spawner,
            quality_assessor=quality_assessor,
            reference_linker=reference_linker,
        )

    def close(self) -> None:
        self.closed = True


@dataclass(slots=True)
class HeartbeatReport:
    """What one heartbeat tick did."""

    registered: bool
    is_leader: bool
    leader_epoch: int | None = None
    demoted: bool = False
    reaped_agents: list[str] = field(default_factory=list)
    released_tasks: list[str] = field(default_factory=list)
    bus_heartbeat_sent: bool = False


class Coordinator:
    """Membership, leadership and recovery duties of one agent."""

    def __init__(self, context: CoordinationContext) -> None:
        self.context = context
        self._lease_epoch: int | None = None
        self._ticks = 0
        self._mutex = threading.Lock()

    @property
    def agent_id(self) -> str:
        return self.context.agent_id

    @property
    def is_leader(self) -> bool:
        return self._lease_epoch is not None

    @property
    def leader_epoch(self) -> int | None:
        return self._lease_epoch

    @property
    def is_orchestrator(self) -> bool:
        return self.context.role == ORCHESTRATOR_ROLE

    def start(self) -> bool:
        """Register this agent; orchestrators also contend for the lease."""

        self._ensure_open()
        with self._mutex:
            ctx = self.context
            if not ctx.registry.register(ctx.agent_id, ctx.role, ctx.session_id):
                logger.error("Agent %s failed to register", ctx.agent_id)
                return False
            if self.is_orchestrator:
                self._contend_for_lease()
        return True

    def heartbeat(self) -> HeartbeatReport:
        """One tick: refresh membership, keep the lease and run leader recovery."""

        self._ensure_open()
        with self._mutex:
            ctx = self.context
            registered = ctx.registry.heartbeat(ctx.agent_id)
            if not registered:
                logger.warning("Agent %s missing from registry, re-registering", ctx.agent_id)
                registered = ctx.registry.register(ctx.agent_id, ctx.role, ctx.session_id)

            demoted = False
            lease_confirmed = False
            if self.is_orchestrator:
                try:
                    demoted, lease_confirmed = self._maintain_lease()
                except LockTimeoutError as error:
                    logger.warning("Lease check skipped this tick: %s", error)

            report = HeartbeatReport(
                registered=registered,
                is_leader=self.is_leader,
                leader_epoch=self._lease_epoch,
                demoted=demoted,
            )
            if self.is_leader and lease_confirmed:
                self._recover(report)

            self._ticks += 1
            if self._ticks % ctx.settings.heartbeat.bus_heartbeat_every == 0:
                ctx.bus.send(
                    MessageType.HEARTBEAT,
                    HeartbeatPayload(status="leader" if self.is_leader else "active"),
                )
                report.bus_heartbeat_sent = True
            return report

    def handoff(self, prompt: str) -> bool:
        """Release leadership, then ask the spawner for a successor orchestrator."""

        self._ensure_open()
        with self._mutex:
            ctx = self.context
            epoch = self._lease_epoch
            if epoch is None:
                logger.warning("Agent %s cannot hand off: not the leader", ctx.agent_id)
                return False
            if ctx.spawner is None:
                logger.error("Handoff requested but no process spawner is configured")
                return False
            ctx.lease.release(ctx.agent_id, epoch)
            self._lease_epoch = None
            try:
                ctx.spawner.spawn(ORCHESTRATOR_ROLE, prompt)
            except SpawnError as error:
                logger.error("Successor orchestrator failed to start: %s", error)
                return False
        logger.info("Leadership handed off by %s (epoch %d)", ctx.agent_id, epoch)
        return True

    def delegate(self, role: str, prompt: str) -> SpawnResult:
        """Start a worker agent; only the leader may delegate."""

        self._ensure_open()
        if not self.is_leader:
            raise CoordinationError(f"Agent {self.agent_id} is not the leader")
        if self.context.spawner is None:
            raise SpawnError("No process spawner configured; set AGENT_COORD_SPAWN_COMMAND.")
        return self.context.spawner.spawn(role, prompt)

    def assess_quality(self, task_id: str) -> TaskUpdateResult:
        """Score a completed task with the configured quality assessor."""

        assessor = self.context.quality_assessor
        if assessor is None:
            raise CoordinationError("No quality assessor configured")
        task = self.context.tasks.require(task_id)
        assessment = assessor.assess(task)
        return self.context.tasks.rate_quality(task_id, assessment.score, assessment.notes)

    def link_references(self, task_id: str) -> Task:
        """Attach the reference linker's references to a task."""

        linker = self.context.reference_linker
        if linker is None:
            raise CoordinationError("No reference linker configured")
        task = self.context.tasks.require(task_id)
        for key, value in linker.link(task).items():
            task = self.context.tasks.attach_reference(task_id, key, value)
        return task

    def summary(self) -> str:
        ctx = self.context
        return ctx.summary_renderer.render(
            agents=ctx.registry.list_active(),
            lease=ctx.lease.current(),
            tasks=ctx.tasks.list(),
        )

    def stop(self) -> None:
        """Release leadership if held, unregister and close the context."""

        if self.context.closed:
            return
        with self._mutex:
            ctx = self.context
            if self._lease_epoch is not None:
                try:
                    ctx.lease.release(ctx.agent_id, self._lease_epoch)
                except LockTimeoutError as error:
                    logger.warning("Could not release lease on stop: %s", error)
                self._lease_epoch = None
            ctx.registry.unregister(ctx.agent_id)
            ctx.close()
        logger.info("Agent %s stopped", ctx.agent_id)

    def _contend_for_lease(self) -> LeaseResult:
        ctx = self.context
        result = ctx.lease.acquire(ctx.agent_id)
        if not result.is_leader:
            self._lease_epoch = None
            return result
        self._lease_epoch = result.epoch
        if result.took_over and result.epoch is not None:
            ctx.bus.send(
                MessageType.LEADER_ELECTED,
                LeaderElectedPayload(leader_id=ctx.agent_id, epoch=result.epoch),
            )
        return result

    def _maintain_lease(self) -> tuple[bool, bool]:
        ctx = self.context
        if self._lease_epoch is None:
            return False, self._contend_for_lease().is_leader
        result = ctx.lease.renew(ctx.agent_id, self._lease_epoch)
        if result.is_leader:
            return False, True
        self._lease_epoch = None
        return True, False

    def _recover(self, report: HeartbeatReport) -> None:
        ctx = self.context
        reaped = ctx.registry.reap_stale()
        report.reaped_agents = [record.agent_id for record in reaped]
        released = ctx.tasks.release_agent_tasks(
            report.reaped_agents,
            reason=(
                "assignee stopped sending heartbeats "
                f"(>{ctx.settings.registry.stale_threshold_ms}ms)"
            ),
        )
        active_ids = {record.agent_id for record in ctx.registry.list_active()}
        released += ctx.tasks.release_orphaned(
            active_ids,
            reason="assignee is no longer registered",
        )
        report.released_tasks = [task.id for task in released]
        if report.reaped_agents or report.released_tasks:
            logger.info(
                "Leader %s recovered %d task(s) from %d stale agent(s)",
                ctx.agent_id,
                len(report.released_tasks),
                len(report.reaped_agents),
            )

    def _ensure_open(self) -> None:
        if self.context.closed:
            raise CoordinationError(f"Coordination context of {self.agent_id} is closed")


class HeartbeatLoop:
    """Background thread calling ``Coordinator.heartbeat`` every interval."""

    def __init__(
        self,
        coordinator: Coordinator,
        *,
        interval_seconds: float,
        max_ticks: int | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.interval_seconds = interval_seconds
        self.max_ticks = max_ticks
        self.ticks = 0
        self.last_report: HeartbeatReport | None = None
        self._stop = stop_event or threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def stop_event(self) -> threading.Event:
        return self._stop

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"heartbeat-{self.coordinator.agent_id}",
        )
        self._thread.start()
        logger.info("Heartbeat loop started (every %.1fs)", self.interval_seconds)

    def stop(self, timeout: float = 15.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Heartbeat loop stopped after %d tick(s)", self.ticks)

    def _run(self) -> None:
        while not self._stop.wait(timeout=self.interval_seconds):
            try:
                self.last_report = self.coordinator.heartbeat()
            except Exception:
                logger.exception("Heartbeat failed for %s", self.coordinator.agent_id)
            self.ticks += 1
            if self.max_ticks is not None and self.ticks >= self.max_ticks:
                self._stop.set()


def run_agent(
    coordinator: Coordinator,
    *,
    interval_seconds: float,
    max_ticks: int | None = None,
) -> int:
    """Run an agent until SIGINT/SIGTERM (or ``max_ticks``); returns ticks executed."""

    if not coordinator.start():
        raise CoordinationError(f"Agent {coordinator.agent_id} could not register")
    loop = HeartbeatLoop(coordinator, interval_seconds=interval_seconds, max_ticks=max_ticks)
    try:
        with _signal_handlers(loop.stop_event):
            loop.start()
            while not loop.stop_event.wait(timeout=0.5):
                pass
    finally:
        loop.stop()
        coordinator.stop()
    return loop.ticks


@contextmanager
def _signal_handlers(stop_event: threading.Event) -> Iterator[None]:
    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.info("Received %s, stopping agent", name)
        stop_event.set()

    originals: dict[int, object] = {}
    try:
        for signum in (signal.SIGINT, signal.SIGTERM):
            original = signal.getsignal(signum)
            signal.signal(signum, _handler)
            originals[signum] = original
    except ValueError:
        # Signal handlers can only be installed in main thread.
        pass
    try:
        yield
    finally:
        for signum, original in originals.items():
            signal.signal(signum, original)  # type: ignore[arg-type]
