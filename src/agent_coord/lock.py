"""Advisory sidecar-file lock with staleness takeover.

The lock for ``<path>`` is the file ``<path>.lock`` holding
``{owner_id, locked_at, pid}``. It is only honoured by cooperating processes:
a crashed holder blocks others until its lock is older than ``stale_ms`` (or,
on this host, until its pid is observed to be gone).
"""

from __future__ import annotations

import errno
import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from agent_coord.errors import LockTimeoutError, RetryExhaustedError
from agent_coord.retry import BackoffPolicy, retry_with_backoff
from agent_coord.timeutil import Clock, age_ms, from_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"


class LockBusyError(Exception):
    """Lock is currently held by a live, non-stale owner."""


@dataclass(slots=True)
class LockMetadata:
    """Content of a sidecar lock file."""

    owner_id: str
    locked_at: str
    pid: int | None = None


def lock_path_for(path: Path) -> Path:
    """Sidecar lock path for a resource."""

    return path.with_name(path.name + LOCK_SUFFIX)


class FileLock:
    """Acquire/release sidecar locks for shared files."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        timeout_ms: int = 10_000,
        stale_ms: int = 120_000,
        retry_delay_ms: int = 50,
        max_retry_delay_ms: int = 1_000,
        check_pid: bool = True,
        clock: Clock = utc_now,
    ) -> None:
        self.timeout_ms = timeout_ms
        self.stale_ms = stale_ms
        self.retry_delay_ms = retry_delay_ms
        self.max_retry_delay_ms = max_retry_delay_ms
        self.check_pid = check_pid
        self.clock = clock

    def acquire(
        self,
        path: Path,
        owner_id: str,
        *,
        timeout_ms: int | None = None,
        stale_ms: int | None = None,
    ) -> bool:
        """Try to take the lock for ``path`` until ``timeout_ms`` elapses."""

        lock_path = lock_path_for(path)
        effective_timeout = self.timeout_ms if timeout_ms is None else timeout_ms
        effective_stale = self.stale_ms if stale_ms is None else stale_ms
        policy = BackoffPolicy(
            attempts=None,
            base_delay_seconds=self.retry_delay_ms / 1000.0,
            max_delay_seconds=self.max_retry_delay_ms / 1000.0,
            timeout_seconds=max(0, effective_timeout) / 1000.0,
        )

        def _attempt() -> None:
            if not self._try_acquire(lock_path, owner_id, effective_stale):
                raise LockBusyError(str(lock_path))

        try:
            retry_with_backoff(
                _attempt,
                is_conflict=lambda error: isinstance(error, LockBusyError),
                policy=policy,
                description=f"lock {lock_path.name}",
            )
        except RetryExhaustedError:
            holder = read_lock_metadata(lock_path)
            logger.warning(
                "Failed to acquire lock on %s within %dms (held by %s)",
                path,
                effective_timeout,
                holder.owner_id if holder else "unknown",
            )
            return False
        logger.debug("Lock acquired: %s by %s", path, owner_id)
        return True

    def release(self, path: Path, owner_id: str) -> bool:
        """Delete the lock only when ``owner_id`` holds it."""

        lock_path = lock_path_for(path)
        holder = read_lock_metadata(lock_path)
        if holder is None or holder.owner_id != owner_id:
            return False
        try:
            lock_path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Lock released: %s by %s", path, owner_id)
        return True

    @contextmanager
    def held(
        self,
        path: Path,
        owner_id: str,
        *,
        timeout_ms: int | None = None,
        stale_ms: int | None = None,
    ) -> Iterator[None]:
        """Hold the lock for the duration of the block or raise ``LockTimeoutError``."""

        if not self.acquire(path, owner_id, timeout_ms=timeout_ms, stale_ms=stale_ms):
            raise LockTimeoutError(str(path), self.timeout_ms if timeout_ms is None else timeout_ms)
        try:
            yield
        finally:
            self.release(path, owner_id)

    def _try_acquire(self, lock_path: Path, owner_id: str, stale_ms: int) -> bool:
        metadata = {
            "owner_id": owner_id,
            "locked_at": to_iso(self.clock()),
            "pid": os.getpid(),
        }
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        # Write the full content first, then publish it with an exclusive link so
        # readers never observe a half-written lock file.
        staging = lock_path.with_name(f"{lock_path.name}.{os.getpid()}-{uuid4().hex[:8]}")
        with staging.open("w", encoding="utf-8") as fh:
            json.dump(metadata, fh, indent=2)
            fh.flush()
            os.fsync(fh.fileno())
        try:
            os.link(staging, lock_path)
        except OSError as error:
            if error.errno not in {errno.EEXIST, errno.EACCES}:
                raise
            self._clear_if_stale(lock_path, stale_ms)
            return False
        finally:
            staging.unlink(missing_ok=True)
        return True

    def _clear_if_stale(self, lock_path: Path, stale_ms: int) -> None:
        try:
            raw = lock_path.read_text("utf-8")
        except FileNotFoundError:
            return
        reason = self._stale_reason(raw, stale_ms)
        if reason is None:
            return
        logger.warning("Removing stale lock %s (%s)", lock_path, reason)
        _remove_if_unchanged(lock_path, raw)

    def _stale_reason(self, raw: str, stale_ms: int) -> str | None:
        metadata = _parse_lock_metadata(raw)
        if metadata is None:
            return "unparsable"
        try:
            locked_at = from_iso(metadata.locked_at)
        except ValueError:
            return "invalid locked_at"
        age = age_ms(locked_at, self.clock())
        if age > stale_ms:
            return f"age {int(age)}ms > {stale_ms}ms"
        if self.check_pid and metadata.pid is not None and not _pid_alive(metadata.pid):
            return f"owner pid {metadata.pid} is gone"
        return None


def read_lock_metadata(lock_path: Path) -> LockMetadata | None:
    """Return parsed lock content, or None when absent or corrupt."""

    try:
        raw = lock_path.read_text("utf-8")
    except FileNotFoundError:
        return None
    return _parse_lock_metadata(raw)


def _parse_lock_metadata(raw: str) -> LockMetadata | None:
    try:
        payload: Any = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    owner_id = payload.get("owner_id")
    locked_at = payload.get("locked_at")
    pid = payload.get("pid")
    if not isinstance(owner_id, str) or not isinstance(locked_at, str):
        return None
    return LockMetadata(
        owner_id=owner_id,
        locked_at=locked_at,
        pid=pid if isinstance(pid, int) else None,
    )


def _remove_if_unchanged(lock_path: Path, expected_raw: str) -> None:
    # Move aside first so two contenders cannot both delete and recreate.
    aside = lock_path.with_name(f"{lock_path.name}.stale-{uuid4().hex[:8]}")
    try:
        os.rename(lock_path, aside)
    except FileNotFoundError:
        return
    try:
        if aside.read_text("utf-8") != expected_raw:
            # A fresh lock was swapped in meanwhile; put it back.
            try:
                os.link(aside, lock_path)
            except FileExistsError:
                logger.warning("Could not restore fresh lock %s after stale cleanup", lock_path)
    finally:
        aside.unlink(missing_ok=True)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
