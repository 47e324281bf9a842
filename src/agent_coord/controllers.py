"""Controllers for coordination CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from agent_coord.config import Settings
from agent_coord.coordinator import CoordinationContext, Coordinator, run_agent
from agent_coord.messages import Message, MessageType
from agent_coord.models import Task, TaskPriority, TaskStatus
from agent_coord.tasks import effective_priority
from agent_coord.timeutil import to_iso

CLI_AGENT_ID = "cli"


@dataclass(slots=True)
class StatusCommand:
    """CLI input for the coordination summary."""

    root_dir: Path | None


@dataclass(slots=True)
class LeaseCommand:
    """CLI input for leader lease inspection."""

    root_dir: Path | None


@dataclass(slots=True)
class MessagesCommand:
    """CLI input for reading one agent's unread messages."""

    root_dir: Path | None
    agent_id: str
    since: datetime | None
    mark_read: bool


@dataclass(slots=True)
class SendCommand:
    """CLI input for posting a broadcast or direct message."""

    root_dir: Path | None
    agent_id: str
    text: str
    to_agent: str | None


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    root_dir: Path | None
    status: str | None


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation."""

    root_dir: Path | None
    title: str
    description: str
    priority: str
    depends_on: tuple[str, ...]
    tags: tuple[str, ...]
    created_by: str


@dataclass(slots=True)
class TaskClaimCommand:
    """CLI input for claiming a task."""

    root_dir: Path | None
    task_id: str
    agent_id: str


@dataclass(slots=True)
class TaskCompleteCommand:
    """CLI input for completing a task."""

    root_dir: Path | None
    task_id: str
    agent_id: str | None
    note: str | None


@dataclass(slots=True)
class TaskNextCommand:
    """CLI input for the next claimable task."""

    root_dir: Path | None


@dataclass(slots=True)
class MetricsCommand:
    """CLI input for per-agent performance metrics."""

    root_dir: Path | None
    agent_id: str | None


@dataclass(slots=True)
class AgentRunCommand:
    """CLI input for running an agent with a heartbeat loop."""

    root_dir: Path | None
    role: str
    agent_id: str | None
    max_ticks: int | None


@dataclass(slots=True)
class CommandResult:
    """Output lines plus success flag for commands that can be refused."""

    lines: list[str]
    success: bool


class CoordinationCliController:
    """Translate CLI commands into coordination operations."""

    def status(self, command: StatusCommand) -> list[str]:
        context = _context(command.root_dir)
        return Coordinator(context).summary().splitlines()

    def lease(self, command: LeaseCommand) -> list[str]:
        context = _context(command.root_dir)
        lease = context.lease.current()
        if lease is None:
            return ["Leader lease: unclaimed"]
        state = "expired" if context.lease.is_expired(lease) else "active"
        return [
            f"Leader lease: {state}",
            f"  leader_id={lease.leader_id} epoch={lease.leader_epoch}",
            f"  last_heartbeat={to_iso(lease.last_heartbeat)} ttl_ms={lease.ttl_ms}",
        ]

    def messages(self, command: MessagesCommand) -> list[str]:
        context = _context(command.root_dir, agent_id=command.agent_id)
        since = command.since
        if since is not None and since.tzinfo is None:
            since = since.replace(tzinfo=UTC)
        unread = context.bus.read_unread(since=since)
        lines = [f"Unread messages for {command.agent_id}: {len(unread)}"]
        lines.extend(_format_message(message) for message in unread)
        if command.mark_read and unread:
            marked = context.bus.mark_read(message.message_id for message in unread)
            lines.append(f"Marked read: {marked}")
        return lines

    def send(self, command: SendCommand) -> list[str]:
        context = _context(command.root_dir, agent_id=command.agent_id)
        if command.to_agent:
            message = context.bus.send_direct(command.to_agent, command.text)
        else:
            message = context.bus.broadcast_status(command.text)
        return [f"Message sent: {message.message_id} type={message.type.value}"]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        context = _context(command.root_dir)
        status = TaskStatus(command.status.strip().lower()) if command.status else None
        tasks = context.tasks.list(status=status)
        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(_format_task(task) for task in tasks)
        return lines

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        context = _context(command.root_dir, agent_id=command.created_by)
        task = context.tasks.create(
            title=command.title,
            description=command.description,
            priority=TaskPriority(command.priority.strip().lower()),
            depends_on=command.depends_on,
            created_by=command.created_by,
            tags=command.tags,
        )
        lines = [f"Task created: {task.id} status={task.status.value}"]
        if task.blocked_by:
            lines.append(f"  blocked_by={','.join(task.blocked_by)}")
        return lines

    def claim_task(self, command: TaskClaimCommand) -> CommandResult:
        context = _context(command.root_dir, agent_id=command.agent_id)
        result = context.tasks.claim(command.task_id, command.agent_id)
        if result.success:
            return CommandResult(
                lines=[f"Task claimed: {command.task_id} by {command.agent_id}"],
                success=True,
            )
        line = f"Claim refused: {command.task_id} ({result.reason})"
        if result.current_assignee:
            line += f" current_assignee={result.current_assignee}"
        return CommandResult(lines=[line], success=False)

    def complete_task(self, command: TaskCompleteCommand) -> CommandResult:
        context = _context(command.root_dir, agent_id=command.agent_id or CLI_AGENT_ID)
        result = context.tasks.complete(command.task_id, command.agent_id, command.note)
        if not result.success:
            return CommandResult(
                lines=[f"Completion refused: {command.task_id} ({result.reason})"],
                success=False,
            )
        lines = [f"Task completed: {command.task_id}"]
        if result.unblocked:
            lines.append(f"  unblocked={','.join(result.unblocked)}")
        return CommandResult(lines=lines, success=True)

    def next_task(self, command: TaskNextCommand) -> list[str]:
        context = _context(command.root_dir)
        now = context.clock()
        task = context.tasks.next_available(now)
        if task is None:
            return ["No claimable tasks."]
        score = effective_priority(task, now, context.settings.tasks)
        return [f"Next task: {task.id} effective_priority={score:.2f}", _format_task(task)]

    def metrics(self, command: MetricsCommand) -> list[str]:
        context = _context(command.root_dir)
        metrics = context.metrics.list()
        if command.agent_id is not None:
            metrics = {key: value for key, value in metrics.items() if key == command.agent_id}
        lines = [f"Agent metrics: {len(metrics)}"]
        for item in sorted(metrics.values(), key=lambda entry: entry.agent_id):
            lines.append(
                f"  {item.agent_id} claimed={item.tasks_claimed} completed={item.tasks_completed}"
                f" avg_duration_ms={item.avg_duration_ms} avg_quality={item.avg_quality:.2f}",
            )
        return lines

    def run_agent(self, command: AgentRunCommand) -> list[str]:
        settings = _settings(command.root_dir)
        context = CoordinationContext.create(
            settings,
            role=command.role,
            agent_id=command.agent_id,
        )
        coordinator = Coordinator(context)
        ticks = run_agent(
            coordinator,
            interval_seconds=settings.heartbeat.interval_ms / 1000.0,
            max_ticks=command.max_ticks,
        )
        return [f"Agent stopped: {context.agent_id} role={command.role} heartbeats={ticks}"]


def _settings(root_dir: Path | None) -> Settings:
    settings = Settings.from_env(root_dir=root_dir)
    settings.validate()
    return settings


def _context(root_dir: Path | None, *, agent_id: str = CLI_AGENT_ID) -> CoordinationContext:
    return CoordinationContext.create(_settings(root_dir), agent_id=agent_id)


def _format_task(task: Task) -> str:
    assignee = f" assigned_to={task.assigned_to}" if task.assigned_to else ""
    blocked = f" blocked_by={','.join(task.blocked_by)}" if task.blocked_by else ""
    return (
        f"  {task.id} [{task.priority.value}] status={task.status.value}"
        f"{assignee}{blocked} title={task.title}"
    )


def _format_message(message: Message) -> str:
    target = message.to_agent or "*"
    body = message.payload
    if message.type == MessageType.DIRECT:
        text = getattr(body, "text", "")
    elif message.type in (MessageType.BROADCAST, MessageType.HEARTBEAT):
        text = getattr(body, "status", "")
    else:
        text = (
            getattr(body, "task_id", "")
            or getattr(body, "task", "")
            or getattr(body, "leader_id", "")
        )
    return (
        f"  {to_iso(message.timestamp)} {message.message_id} {message.type.value} "
        f"{message.from_agent} -> {target}: {text}"
    )
