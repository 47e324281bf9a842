"""Shared priority task queue with dependency gating and crash recovery."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from agent_coord.bus import MessageBus
from agent_coord.config import TaskSettings
from agent_coord.documents import NoChange, VersionedDocument
from agent_coord.errors import RetryExhaustedError, TaskNotFoundError
from agent_coord.messages import (
    MessagePayload,
    MessageType,
    TaskAvailablePayload,
    TaskClaimPayload,
    TaskCompletePayload,
)
from agent_coord.metrics import AgentMetricsStore
from agent_coord.models import Task, TaskPriority, TaskStatus
from agent_coord.retry import BackoffPolicy
from agent_coord.timeutil import Clock, to_iso, utc_now

logger = logging.getLogger(__name__)

TASKS_SCHEMA_VERSION = "1.0"
MIN_QUALITY_SCORE = 1.0
MAX_QUALITY_SCORE = 10.0


def _empty_store() -> dict[str, Any]:
    return {
        "version": TASKS_SCHEMA_VERSION,
        "tasks": [],
        "completed_count": 0,
        "last_updated": None,
        "lock_version": 0,
    }


@dataclass(slots=True)
class ClaimResult:
    """Outcome of a claim attempt."""

    success: bool
    task: Task | None = None
    reason: str = ""
    current_assignee: str | None = None


@dataclass(slots=True)
class TaskUpdateResult:
    """Outcome of a status-changing task operation."""

    success: bool
    task: Task | None = None
    reason: str = ""
    unblocked: list[str] = field(default_factory=list)
    stranded: list[str] = field(default_factory=list)


def effective_priority(task: Task, now: datetime, settings: TaskSettings) -> float:
    """Base rank minus an aging bonus that grows with time spent waiting."""

    hours_waiting = max(0.0, (now - task.created_at).total_seconds() / 3600.0)
    rate = settings.aging_per_hour.get(task.priority.value, 0.0)
    bonus = min(settings.max_aging_bonus, hours_waiting * rate)
    return max(0.0, task.priority.rank - bonus)


class TaskStore:
    """Read and mutate ``tasks.json`` on behalf of one agent."""

    def __init__(  # noqa: PLR0913
        self,
        path: Path,
        *,
        bus: MessageBus | None = None,
        metrics: AgentMetricsStore | None = None,
        settings: TaskSettings | None = None,
        policy: BackoffPolicy | None = None,
        clock: Clock = utc_now,
        actor_id: str = "system",
    ) -> None:
        self.path = path
        self.bus = bus
        self.metrics = metrics
        self.settings = settings or TaskSettings()
        self.clock = clock
        self.actor_id = actor_id
        self._document: VersionedDocument[Any] = VersionedDocument(
            path,
            default_factory=_empty_store,
            policy=policy,
        )

    def create(  # noqa: PLR0913
        self,
        title: str,
        description: str = "",
        priority: TaskPriority = TaskPriority.MEDIUM,
        depends_on: Iterable[str] = (),
        created_by: str | None = None,
        tags: Iterable[str] = (),
    ) -> Task:
        """Add a task; unknown dependency ids are dropped.

        Raises ``RetryExhaustedError`` when the store keeps changing underneath.
        """

        if not title.strip():
            raise ValueError("Task title must not be empty.")
        requested = list(dict.fromkeys(depends_on))

        def _mutate(document: dict[str, Any]) -> Task:
            now = self.clock()
            tasks = {task.id: task for _, task in _parse_entries(document)}
            known = [dep for dep in requested if dep in tasks]
            dropped = [dep for dep in requested if dep not in tasks]
            if dropped:
                logger.warning(
                    "Dropping unknown dependencies for %r: %s",
                    title,
                    ", ".join(dropped),
                )
            unmet = [dep for dep in known if tasks[dep].status != TaskStatus.COMPLETED]
            task = Task(
                id=f"task_{int(now.timestamp() * 1000)}_{uuid4().hex[:6]}",
                title=title,
                description=description,
                priority=priority,
                status=TaskStatus.BLOCKED if unmet else TaskStatus.PENDING,
                created_at=now,
                updated_at=now,
                created_by=created_by or self.actor_id,
                depends_on=known,
                blocked_by=unmet,
                tags=list(dict.fromkeys(tags)),
            )
            _entries(document).append(task.to_dict())
            document["last_updated"] = to_iso(now)
            return task

        task = self._document.update(_mutate)
        logger.info(
            "Task created: %s %r (%s, %s)",
            task.id,
            task.title,
            task.priority.value,
            task.status.value,
        )
        if task.priority.value in self.settings.broadcast_priorities:
            self._broadcast(
                MessageType.TASK_AVAILABLE,
                TaskAvailablePayload(
                    task_id=task.id,
                    title=task.title,
                    priority=task.priority.value,
                    reason="created",
                ),
            )
        return task

    def get(self, task_id: str) -> Task | None:
        for _, task in _parse_entries(self._document.read()):
            if task.id == task_id:
                return task
        return None

    def require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return task

    def list(self, status: TaskStatus | None = None) -> list[Task]:
        """Point-in-time snapshot, optionally filtered by status."""

        tasks = [task for _, task in _parse_entries(self._document.read())]
        if status is None:
            return tasks
        return [task for task in tasks if task.status == status]

    def claim(self, task_id: str, agent_id: str) -> ClaimResult:
        """Move a pending, unassigned task with met dependencies to ``agent_id``."""

        def _mutate(document: dict[str, Any]) -> ClaimResult:
            now = self.clock()
            entries = _parse_entries(document)
            statuses = {task.id: task.status for _, task in entries}
            located = _locate(entries, task_id)
            if located is None:
                raise NoChange(ClaimResult(success=False, reason="not_found"))
            index, task = located
            if task.assigned_to:
                raise NoChange(
                    ClaimResult(
                        success=False,
                        task=task,
                        reason="already_claimed",
                        current_assignee=task.assigned_to,
                    ),
                )
            if task.status != TaskStatus.PENDING:
                raise NoChange(ClaimResult(success=False, task=task, reason=_status_reason(task)))
            unmet = _unmet_dependencies(task, statuses)
            if unmet:
                raise NoChange(ClaimResult(success=False, task=task, reason="dependencies_unmet"))
            task.status = TaskStatus.IN_PROGRESS
            task.assigned_to = agent_id
            task.claimed_at = now
            task.updated_at = now
            _put(document, index, task, now)
            return ClaimResult(success=True, task=task)

        try:
            result = self._document.update(_mutate)
        except RetryExhaustedError as error:
            logger.error("Claim of %s by %s failed: %s", task_id, agent_id, error)
            return ClaimResult(success=False, reason="conflict")
        if result.success and result.task is not None:
            logger.info("Task claimed: %s by %s", task_id, agent_id)
            if self.metrics is not None:
                self.metrics.record_claim(agent_id)
            self._broadcast(
                MessageType.TASK_CLAIM,
                TaskClaimPayload(task_id=task_id, title=result.task.title, claimed_by=agent_id),
            )
        else:
            logger.info("Task claim rejected: %s by %s (%s)", task_id, agent_id, result.reason)
        return result

    def next_available(self, now: datetime | None = None) -> Task | None:
        """Pending task with met dependencies and lowest effective priority."""

        moment = now or self.clock()
        tasks = self.list()
        statuses = {task.id: task.status for task in tasks}
        candidates = [
            task
            for task in tasks
            if task.status == TaskStatus.PENDING
            and not task.assigned_to
            and not _unmet_dependencies(task, statuses)
        ]
        if not candidates:
            return None
        return min(
            candidates,
            key=lambda task: (effective_priority(task, moment, self.settings), task.created_at),
        )

    def complete(
        self,
        task_id: str,
        agent_id: str | None = None,
        note: str | None = None,
        result: str = "",
    ) -> TaskUpdateResult:
        """Finish an in-progress task and unblock dependents that are now satisfied."""

        def _mutate(document: dict[str, Any]) -> TaskUpdateResult:
            now = self.clock()
            entries = _parse_entries(document)
            located = _locate(entries, task_id)
            if located is None:
                raise NoChange(TaskUpdateResult(success=False, reason="not_found"))
            index, task = located
            if task.status != TaskStatus.IN_PROGRESS:
                raise NoChange(
                    TaskUpdateResult(success=False, task=task, reason=_status_reason(task)),
                )
            if agent_id is not None and task.assigned_to != agent_id:
                raise NoChange(TaskUpdateResult(success=False, task=task, reason="not_assignee"))
            task.status = TaskStatus.COMPLETED
            task.completed_at = now
            task.updated_at = now
            if note:
                task.add_note(note, now)
            _put(document, index, task, now)
            document["completed_count"] = _completed_count(document) + 1
            unblocked = _refresh_dependents(document, entries, task, now)
            return TaskUpdateResult(success=True, task=task, unblocked=unblocked)

        outcome = self._update(_mutate, f"complete {task_id}")
        if outcome.success and outcome.task is not None:
            logger.info("Task completed: %s", task_id)
            for dependent in outcome.unblocked:
                logger.info("Task unblocked: %s", dependent)
            self._record_completion(outcome.task)
            self._broadcast(
                MessageType.TASK_COMPLETE,
                TaskCompletePayload(
                    task_id=task_id,
                    title=outcome.task.title,
                    completed_by=agent_id or outcome.task.assigned_to or self.actor_id,
                    result=result,
                ),
            )
        return outcome

    def cancel(self, task_id: str, note: str | None = None) -> TaskUpdateResult:
        """Cancel a task; dependents stay blocked and get a note naming the cancelled task."""

        cancellable = {TaskStatus.PENDING, TaskStatus.BLOCKED, TaskStatus.IN_PROGRESS}

        def _mutate(document: dict[str, Any]) -> TaskUpdateResult:
            now = self.clock()
            entries = _parse_entries(document)
            located = _locate(entries, task_id)
            if located is None:
                raise NoChange(TaskUpdateResult(success=False, reason="not_found"))
            index, task = located
            if task.status not in cancellable:
                raise NoChange(
                    TaskUpdateResult(success=False, task=task, reason=_status_reason(task)),
                )
            task.status = TaskStatus.CANCELLED
            task.updated_at = now
            if note:
                task.add_note(note, now)
            _put(document, index, task, now)
            stranded = _strand_dependents(document, entries, task, now)
            return TaskUpdateResult(success=True, task=task, stranded=stranded)

        outcome = self._update(_mutate, f"cancel {task_id}")
        if outcome.success:
            logger.info("Task cancelled: %s", task_id)
            for dependent in outcome.stranded:
                logger.warning(
                    "Task %s stays blocked: dependency %s was cancelled",
                    dependent,
                    task_id,
                )
        return outcome

    def add_note(self, task_id: str, note: str) -> Task:
        def _apply(task: Task, now: datetime) -> None:
            task.add_note(note, now)

        return self._edit(task_id, _apply)

    def attach_reference(self, task_id: str, key: str, value: str) -> Task:
        """Record an external reference (commit, issue url, ...) on a task."""

        def _apply(task: Task, now: datetime) -> None:
            del now
            task.external_refs[key] = value

        return self._edit(task_id, _apply)

    def rate_quality(
        self,
        task_id: str,
        score: float,
        notes: str | None = None,
    ) -> TaskUpdateResult:
        """Store a 1..10 quality score on a completed task."""

        clamped = min(MAX_QUALITY_SCORE, max(MIN_QUALITY_SCORE, float(score)))
        first_rating: list[bool] = [False]

        def _mutate(document: dict[str, Any]) -> TaskUpdateResult:
            now = self.clock()
            located = _locate(_parse_entries(document), task_id)
            if located is None:
                raise NoChange(TaskUpdateResult(success=False, reason="not_found"))
            index, task = located
            if task.status != TaskStatus.COMPLETED:
                raise NoChange(
                    TaskUpdateResult(success=False, task=task, reason=_status_reason(task)),
                )
            first_rating[0] = task.quality_score is None
            task.quality_score = clamped
            task.quality_notes = notes
            task.updated_at = now
            _put(document, index, task, now)
            return TaskUpdateResult(success=True, task=task)

        outcome = self._update(_mutate, f"rate {task_id}")
        rated = outcome.task
        # Only the first rating of a task counts toward agent metrics.
        if outcome.success and rated is not None and first_rating[0]:
            if self.metrics is not None and rated.assigned_to:
                self.metrics.record_quality(rated.assigned_to, clamped)
        return outcome

    def release_agent_tasks(self, agent_ids: Iterable[str], reason: str) -> list[Task]:
        """Return in-progress tasks held by ``agent_ids`` to the pending pool."""

        owners = set(agent_ids)
        if not owners:
            return []
        return self._release(lambda assignee: assignee in owners, reason)

    def release_orphaned(self, active_ids: Iterable[str], reason: str) -> list[Task]:
        """Return in-progress tasks whose assignee is not among ``active_ids``."""

        active = set(active_ids)
        return self._release(lambda assignee: assignee is None or assignee not in active, reason)

    def stats(self) -> dict[str, int]:
        document = self._document.read()
        counts = {status.value: 0 for status in TaskStatus}
        total = 0
        for _, task in _parse_entries(document):
            counts[task.status.value] += 1
            total += 1
        return {"total": total, "completed_count": _completed_count(document), **counts}

    def _release(self, should_release: Callable[[str | None], bool], reason: str) -> list[Task]:
        def _mutate(document: dict[str, Any]) -> list[Task]:
            now = self.clock()
            released: list[Task] = []
            for index, task in _parse_entries(document):
                if task.status != TaskStatus.IN_PROGRESS or not should_release(task.assigned_to):
                    continue
                previous = task.assigned_to or "nobody"
                task.status = TaskStatus.PENDING
                task.assigned_to = None
                task.claimed_at = None
                task.updated_at = now
                task.add_note(f"Released from {previous}: {reason}", now)
                _put(document, index, task, now)
                released.append(task)
            if not released:
                raise NoChange([])
            return released

        try:
            released = self._document.update(_mutate)
        except RetryExhaustedError as error:
            logger.error("Task release failed: %s", error)
            return []
        for task in released:
            logger.warning("Task %s returned to pending: %s", task.id, reason)
            self._broadcast(
                MessageType.TASK_AVAILABLE,
                TaskAvailablePayload(
                    task_id=task.id,
                    title=task.title,
                    priority=task.priority.value,
                    reason=reason,
                ),
            )
        return released

    def _edit(self, task_id: str, apply: Callable[[Task, datetime], None]) -> Task:
        def _mutate(document: dict[str, Any]) -> Task:
            now = self.clock()
            located = _locate(_parse_entries(document), task_id)
            if located is None:
                raise TaskNotFoundError(f"Task not found: {task_id}")
            index, task = located
            apply(task, now)
            task.updated_at = now
            _put(document, index, task, now)
            return task

        return self._document.update(_mutate)

    def _update(
        self,
        mutate: Callable[[dict[str, Any]], TaskUpdateResult],
        description: str,
    ) -> TaskUpdateResult:
        try:
            return self._document.update(mutate)
        except RetryExhaustedError as error:
            logger.error("Task %s failed: %s", description, error)
            return TaskUpdateResult(success=False, reason="conflict")

    def _record_completion(self, task: Task) -> None:
        if self.metrics is None or not task.assigned_to:
            return
        duration_ms = 0
        if task.claimed_at is not None and task.completed_at is not None:
            duration_ms = int((task.completed_at - task.claimed_at).total_seconds() * 1000)
        self.metrics.record_completion(task.assigned_to, duration_ms)

    def _broadcast(self, message_type: MessageType, payload: MessagePayload) -> None:
        if self.bus is None:
            return
        try:
            self.bus.send(message_type, payload)
        except OSError as error:
            logger.warning("Failed to broadcast %s: %s", message_type.value, error)


def _entries(document: dict[str, Any]) -> list[Any]:
    entries = document.get("tasks")
    if not isinstance(entries, list):
        entries = []
        document["tasks"] = entries
    return entries


def _parse_entries(document: dict[str, Any]) -> list[tuple[int, Task]]:
    """Parse stored tasks, keeping their list positions; malformed ones are skipped."""

    parsed: list[tuple[int, Task]] = []
    for index, raw in enumerate(_entries(document)):
        if not isinstance(raw, dict):
            logger.warning("Skipping malformed task entry #%d", index)
            continue
        try:
            parsed.append((index, Task.from_dict(raw)))
        except ValueError as error:
            logger.warning("Skipping malformed task entry #%d: %s", index, error)
    return parsed


def _locate(entries: list[tuple[int, Task]], task_id: str) -> tuple[int, Task] | None:
    for index, task in entries:
        if task.id == task_id:
            return index, task
    return None


def _put(document: dict[str, Any], index: int, task: Task, now: datetime) -> None:
    _entries(document)[index] = task.to_dict()
    document["last_updated"] = to_iso(now)


def _unmet_dependencies(task: Task, statuses: dict[str, TaskStatus]) -> list[str]:
    return [dep for dep in task.depends_on if statuses.get(dep) != TaskStatus.COMPLETED]


def _refresh_dependents(
    document: dict[str, Any],
    entries: list[tuple[int, Task]],
    completed: Task,
    now: datetime,
) -> list[str]:
    statuses = {task.id: task.status for _, task in entries}
    statuses[completed.id] = TaskStatus.COMPLETED
    unblocked: list[str] = []
    for index, task in entries:
        if completed.id not in task.depends_on:
            continue
        if task.status not in {TaskStatus.BLOCKED, TaskStatus.PENDING}:
            continue
        unmet = _unmet_dependencies(task, statuses)
        task.blocked_by = unmet
        if not unmet and task.status == TaskStatus.BLOCKED:
            task.status = TaskStatus.PENDING
            unblocked.append(task.id)
        task.updated_at = now
        _put(document, index, task, now)
    return unblocked


def _strand_dependents(
    document: dict[str, Any],
    entries: list[tuple[int, Task]],
    cancelled: Task,
    now: datetime,
) -> list[str]:
    statuses = {task.id: task.status for _, task in entries}
    stranded: list[str] = []
    for index, task in entries:
        if cancelled.id not in task.depends_on:
            continue
        if task.status not in {TaskStatus.BLOCKED, TaskStatus.PENDING}:
            continue
        task.status = TaskStatus.BLOCKED
        task.blocked_by = _unmet_dependencies(task, statuses)
        task.add_note(f"Dependency {cancelled.id} was cancelled", now)
        task.updated_at = now
        _put(document, index, task, now)
        stranded.append(task.id)
    return stranded


def _completed_count(document: dict[str, Any]) -> int:
    value = document.get("completed_count", 0)
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value


def _status_reason(task: Task) -> str:
    return f"status_{task.status.value}"
