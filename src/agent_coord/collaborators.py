"""Interfaces for external collaborators and the subprocess agent spawner."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Protocol

from agent_coord.errors import SpawnError
from agent_coord.models import AgentRecord, LeaderLease, Task
from agent_coord.timeutil import to_iso

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class QualityAssessment:
    """Score in 1..10 plus free-form reviewer notes."""

    score: float
    notes: str = ""


@dataclass(slots=True)
class SpawnResult:
    """Handle of a started agent process."""

    pid: int
    argv: list[str]
    role: str


class QualityAssessor(Protocol):
    """Scores completed tasks."""

    def assess(self, task: Task) -> QualityAssessment:
        """Return the quality assessment of a completed task."""


class ReferenceLinker(Protocol):
    """Links tasks to external artifacts such as commits or issues."""

    def link(self, task: Task) -> dict[str, str]:
        """Return reference key/value pairs to attach to ``task``."""


class SummaryRenderer(Protocol):
    """Renders a human-readable status summary."""

    def render(
        self,
        *,
        agents: list[AgentRecord],
        lease: LeaderLease | None,
        tasks: list[Task],
    ) -> str:
        """Return summary text for the current coordination state."""


class ProcessSpawner(Protocol):
    """Starts new agent processes."""

    def spawn(self, role: str, prompt: str) -> SpawnResult:
        """Start an agent with ``role`` working on ``prompt``."""


class SubprocessSpawner:
    """Start detached agent processes from a shell-style command template.

    The template may reference ``{role}`` and ``{prompt}``; both are shell-quoted
    before substitution, e.g. ``my-agent --role {role} --prompt {prompt}``.
    """

    def __init__(
        self,
        command_template: str,
        *,
        root_dir: Path | None = None,
        log_dir: Path | None = None,
    ) -> None:
        self.command_template = command_template
        self.root_dir = root_dir
        self.log_dir = log_dir

    def spawn(self, role: str, prompt: str) -> SpawnResult:
        argv = build_spawn_args(command_template=self.command_template, role=role, prompt=prompt)
        env = dict(os.environ)
        env["AGENT_COORD_ROLE"] = role
        if self.root_dir is not None:
            env["AGENT_COORD_ROOT"] = str(self.root_dir)
        try:
            if self.log_dir is not None:
                self.log_dir.mkdir(parents=True, exist_ok=True)
                log_path = self.log_dir / f"spawn-{role}-{os.getpid()}.log"
                with log_path.open("ab") as log_handle:
                    process = _start(argv, env, log_handle)
            else:
                process = _start(argv, env, subprocess.DEVNULL)
        except OSError as error:
            raise SpawnError(f"Failed to start {argv[0]!r}: {error}") from error
        logger.info("Spawned %s agent (pid %d): %s", role, process.pid, argv[0])
        return SpawnResult(pid=process.pid, argv=argv, role=role)


def build_spawn_args(*, command_template: str, role: str, prompt: str) -> list[str]:
    """Render the spawn template into an argv list."""

    stripped = command_template.strip()
    if not stripped:
        raise SpawnError("Spawn command template is empty; set AGENT_COORD_SPAWN_COMMAND.")
    try:
        rendered = stripped.format(role=shlex.quote(role), prompt=shlex.quote(prompt))
    except (KeyError, IndexError) as error:
        raise SpawnError(f"Unsupported spawn template placeholder: {error}") from error
    argv = shlex.split(rendered)
    if not argv:
        raise SpawnError("Spawn command template rendered empty command.")
    return argv


def _start(
    argv: list[str],
    env: dict[str, str],
    output: int | IO[bytes],
) -> subprocess.Popen[bytes]:
    return subprocess.Popen(  # noqa: S603
        argv,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=output,
        stderr=output,
        start_new_session=True,
    )


class TextSummaryRenderer:
    """Plain-text status summary used by the CLI."""

    def render(
        self,
        *,
        agents: list[AgentRecord],
        lease: LeaderLease | None,
        tasks: list[Task],
    ) -> str:
        lines = [f"Agents: {len(agents)} active"]
        for agent in sorted(agents, key=lambda item: item.agent_id):
            current = f" task={agent.current_task}" if agent.current_task else ""
            lines.append(
                f"- {agent.agent_id} role={agent.assigned_role} status={agent.status.value}"
                f" heartbeat={to_iso(agent.last_heartbeat)}{current}",
            )
        if lease is None:
            lines.append("Leader: none")
        else:
            lines.append(
                f"Leader: {lease.leader_id} epoch={lease.leader_epoch}"
                f" heartbeat={to_iso(lease.last_heartbeat)}",
            )
        counts: dict[str, int] = {}
        for task in tasks:
            counts[task.status.value] = counts.get(task.status.value, 0) + 1
        breakdown = ", ".join(f"{name}={count}" for name, count in sorted(counts.items()))
        lines.append(f"Tasks: {len(tasks)}" + (f" ({breakdown})" if breakdown else ""))
        return "\n".join(lines)
