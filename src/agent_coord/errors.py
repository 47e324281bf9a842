"""Exception hierarchy for coordination failures."""

from __future__ import annotations


class CoordinationError(RuntimeError):
    """Base class for coordination core errors."""


class LockTimeoutError(CoordinationError):
    """Advisory lock could not be acquired before the timeout elapsed."""

    def __init__(self, path: str, timeout_ms: int) -> None:
        super().__init__(f"Timed out acquiring file lock for {path} after {timeout_ms}ms")
        self.path = path
        self.timeout_ms = timeout_ms


class VersionConflictError(CoordinationError):
    """Document changed on disk between read and commit."""

    def __init__(self, path: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Version conflict on {path}: expected lock_version={expected}, found {actual}",
        )
        self.expected = expected
        self.actual = actual


class RetryExhaustedError(CoordinationError):
    """Retried operation kept conflicting until attempts or time ran out."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"Operation still conflicting after {attempts} attempt(s)")
        self.attempts = attempts


class TaskNotFoundError(CoordinationError):
    """Referenced task id does not exist in the task store."""


class SpawnError(CoordinationError):
    """Process spawner could not start the requested agent."""
