"""JSON document store with optimistic version counters."""

from __future__ import annotations

import fcntl
import json
import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generic, TypeVar
from uuid import uuid4

from agent_coord.errors import VersionConflictError
from agent_coord.retry import BackoffPolicy, retry_with_backoff

logger = logging.getLogger(__name__)

T = TypeVar("T")


class NoChange(Exception):  # noqa: N818
    """Raised by a mutator to finish an update without writing."""

    def __init__(self, result: Any = None) -> None:
        super().__init__("no change")
        self.result = result


def read_document(path: Path, default: Callable[[], dict[str, Any]]) -> dict[str, Any]:
    """Load a JSON object; missing or corrupt files yield ``default()``."""

    try:
        raw = path.read_text("utf-8")
    except FileNotFoundError:
        return default()
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        logger.warning("Ignoring corrupt JSON document %s: %s", path, error)
        return default()
    if not isinstance(payload, dict):
        logger.warning("Ignoring %s: expected JSON object, got %s", path, type(payload).__name__)
        return default()
    return payload


def write_document(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload atomically using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{uuid4().hex[:8]}.tmp")
    try:
        with tmp.open("w", encoding="utf-8") as fh:
            json.dump(payload, fh, ensure_ascii=False, indent=2)
            fh.write("\n")
            fh.flush()
            os.fsync(fh.fileno())
        tmp.replace(path)
    finally:
        tmp.unlink(missing_ok=True)


class VersionedDocument(Generic[T]):
    """Optimistic read-modify-write over one JSON document.

    Every commit checks that the integer at ``version_field`` on disk still equals
    the value that was read; otherwise the whole read-modify-write is retried.
    """

    def __init__(
        self,
        path: Path,
        *,
        default_factory: Callable[[], dict[str, Any]],
        version_field: str = "lock_version",
        policy: BackoffPolicy | None = None,
    ) -> None:
        self.path = path
        self.default_factory = default_factory
        self.version_field = version_field
        self.policy = policy or BackoffPolicy()
        self._commit_guard_path = path.with_name(f".{path.name}.commit")

    def read(self) -> dict[str, Any]:
        """Point-in-time snapshot of the document."""

        return read_document(self.path, self.default_factory)

    def update(self, mutate: Callable[[dict[str, Any]], T]) -> T:
        """Apply ``mutate`` to a fresh snapshot and commit it with a version check.

        Raises ``RetryExhaustedError`` when conflicts persist past the policy.
        """

        def _attempt() -> T:
            document = self.read()
            expected = _version_of(document, self.version_field)
            try:
                result = mutate(document)
            except NoChange as unchanged:
                return unchanged.result
            document[self.version_field] = expected + 1
            self._commit(document, expected)
            return result

        return retry_with_backoff(
            _attempt,
            is_conflict=lambda error: isinstance(error, VersionConflictError),
            policy=self.policy,
            description=f"update {self.path.name}",
        )

    def _commit(self, document: dict[str, Any], expected: int) -> None:
        with self._commit_guard():
            on_disk = _version_of(self.read(), self.version_field)
            if on_disk != expected:
                raise VersionConflictError(str(self.path), expected, on_disk)
            write_document(self.path, document)

    @contextmanager
    def _commit_guard(self) -> Iterator[None]:
        # Serializes only the compare-and-rename step, never the caller's mutation.
        self._commit_guard_path.parent.mkdir(parents=True, exist_ok=True)
        with self._commit_guard_path.open("a+", encoding="utf-8") as fh:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)


def _version_of(document: dict[str, Any], field_name: str) -> int:
    value = document.get(field_name, 0)
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value
