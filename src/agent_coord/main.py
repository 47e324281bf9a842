"""CLI entrypoint for agent-coord."""

import logging
import os
from datetime import datetime
from pathlib import Path

import rich_click as click

from agent_coord import __version__
from agent_coord.controllers import (
    CLI_AGENT_ID,
    AgentRunCommand,
    CommandResult,
    CoordinationCliController,
    LeaseCommand,
    MessagesCommand,
    MetricsCommand,
    SendCommand,
    StatusCommand,
    TaskClaimCommand,
    TaskCompleteCommand,
    TaskCreateCommand,
    TaskListCommand,
    TaskNextCommand,
)
from agent_coord.errors import CoordinationError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = CoordinationCliController()

_ROOT_OPTION = click.option(
    "--root",
    "root_dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Shared coordination directory (default: AGENT_COORD_ROOT or .agent-coord).",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-coord")
def agent_coord() -> None:
    """File-based multi-agent coordination."""

    level = os.getenv("AGENT_COORD_LOG_LEVEL", "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_coord.command("status")
@_ROOT_OPTION
def status(root_dir: Path | None) -> None:
    """Show active agents, the leader lease and task counts."""

    _emit_lines(CONTROLLER.status(StatusCommand(root_dir=root_dir)))


@agent_coord.command("lease")
@_ROOT_OPTION
def lease(root_dir: Path | None) -> None:
    """Show the current leader lease."""

    _emit_lines(CONTROLLER.lease(LeaseCommand(root_dir=root_dir)))


@agent_coord.command("messages")
@_ROOT_OPTION
@click.option("--agent-id", required=True, help="Reader agent id.")
@click.option(
    "--since",
    type=click.DateTime(formats=["%Y-%m-%dT%H:%M:%S", "%Y-%m-%d"]),
    default=None,
    help="Only messages at or after this UTC time.",
)
@click.option("--mark-read/--no-mark-read", default=False, show_default=True)
def messages(
    root_dir: Path | None,
    agent_id: str,
    since: datetime | None,
    mark_read: bool,
) -> None:
    """List unread messages addressed to an agent."""

    _emit_lines(
        CONTROLLER.messages(
            MessagesCommand(
                root_dir=root_dir,
                agent_id=agent_id,
                since=since,
                mark_read=mark_read,
            ),
        ),
    )


@agent_coord.command("send")
@_ROOT_OPTION
@click.option("--agent-id", default=CLI_AGENT_ID, show_default=True, help="Sender agent id.")
@click.option("--to", "to_agent", default=None, help="Recipient; omit to broadcast.")
@click.argument("text")
def send(root_dir: Path | None, agent_id: str, to_agent: str | None, text: str) -> None:
    """Post a broadcast status or a direct message."""

    _emit_lines(
        CONTROLLER.send(
            SendCommand(root_dir=root_dir, agent_id=agent_id, text=text, to_agent=to_agent),
        ),
    )


@agent_coord.command("metrics")
@_ROOT_OPTION
@click.option("--agent-id", default=None, help="Only show this agent.")
def metrics(root_dir: Path | None, agent_id: str | None) -> None:
    """Show per-agent claim, completion, duration and quality totals."""

    _emit_lines(CONTROLLER.metrics(MetricsCommand(root_dir=root_dir, agent_id=agent_id)))


@agent_coord.group()
def tasks() -> None:
    """Task queue commands."""


@tasks.command("list")
@_ROOT_OPTION
@click.option(
    "--status",
    type=click.Choice(
        ["pending", "in_progress", "completed", "blocked", "cancelled"],
        case_sensitive=False,
    ),
    default=None,
    help="Optional status filter.",
)
def tasks_list(root_dir: Path | None, status: str | None) -> None:
    """List tasks."""

    _emit_lines(CONTROLLER.list_tasks(TaskListCommand(root_dir=root_dir, status=status)))


@tasks.command("create")
@_ROOT_OPTION
@click.option("--title", required=True, help="Short task title.")
@click.option("--description", default="", help="Task description.")
@click.option(
    "--priority",
    type=click.Choice(["critical", "high", "medium", "low"], case_sensitive=False),
    default="medium",
    show_default=True,
)
@click.option("--depends-on", "depends_on", multiple=True, help="Dependency task id. Repeatable.")
@click.option("--tag", "tags", multiple=True, help="Task tag. Repeatable.")
@click.option("--created-by", default=CLI_AGENT_ID, show_default=True)
def tasks_create(  # noqa: PLR0913
    root_dir: Path | None,
    title: str,
    description: str,
    priority: str,
    depends_on: tuple[str, ...],
    tags: tuple[str, ...],
    created_by: str,
) -> None:
    """Create a task."""

    _emit_lines(
        CONTROLLER.create_task(
            TaskCreateCommand(
                root_dir=root_dir,
                title=title,
                description=description,
                priority=priority,
                depends_on=depends_on,
                tags=tags,
                created_by=created_by,
            ),
        ),
    )


@tasks.command("claim")
@_ROOT_OPTION
@click.option("--task-id", required=True, help="Task id.")
@click.option("--agent-id", required=True, help="Claiming agent id.")
def tasks_claim(root_dir: Path | None, task_id: str, agent_id: str) -> None:
    """Claim a pending task."""

    _emit_result(
        CONTROLLER.claim_task(
            TaskClaimCommand(root_dir=root_dir, task_id=task_id, agent_id=agent_id),
        ),
    )


@tasks.command("complete")
@_ROOT_OPTION
@click.option("--task-id", required=True, help="Task id.")
@click.option("--agent-id", default=None, help="Require this agent to be the assignee.")
@click.option("--note", default=None, help="Completion note.")
def tasks_complete(
    root_dir: Path | None,
    task_id: str,
    agent_id: str | None,
    note: str | None,
) -> None:
    """Complete an in-progress task."""

    _emit_result(
        CONTROLLER.complete_task(
            TaskCompleteCommand(root_dir=root_dir, task_id=task_id, agent_id=agent_id, note=note),
        ),
    )


@tasks.command("next")
@_ROOT_OPTION
def tasks_next(root_dir: Path | None) -> None:
    """Show the next claimable task by effective priority."""

    _emit_lines(CONTROLLER.next_task(TaskNextCommand(root_dir=root_dir)))


@agent_coord.group()
def agent() -> None:
    """Agent process commands."""


@agent.command("run")
@_ROOT_OPTION
@click.option("--role", default="general", show_default=True, help="Agent role.")
@click.option("--agent-id", default=None, help="Agent id (generated when omitted).")
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many heartbeats (default: run until interrupted).",
)
def agent_run(
    root_dir: Path | None,
    role: str,
    agent_id: str | None,
    max_ticks: int | None,
) -> None:
    """Register an agent and keep it alive with heartbeats."""

    try:
        lines = CONTROLLER.run_agent(
            AgentRunCommand(
                root_dir=root_dir,
                role=role,
                agent_id=agent_id,
                max_ticks=max_ticks,
            ),
        )
    except CoordinationError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_result(result: CommandResult) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(result.lines[-1])


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_coord()
