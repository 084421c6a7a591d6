"""
Per-target upgrade locks.

A lock is a JSON record in ``<locks_dir>/<target>.lock`` whose existence
means the target is being upgraded. Records are published with a hard link
from a fully written temporary file, so the lock file appears atomically
and never holds partial content; if two processes race, exactly one link
succeeds.

A record is stale when its owner process no longer exists or it is older
than the timeout (10 minutes by default). Stale records are reclaimed by the
next acquirer. Process liveness, the caller's pid and the clock are all
injectable so the staleness rules can be tested without real processes.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

import psutil
from pydantic import BaseModel, Field, ValidationError

from agentmgr.errors import InvalidArgumentError, LockBusyError, UnavailableError
from agentmgr.logging import get_logger

logger = get_logger(__name__)

DEFAULT_LOCK_TIMEOUT_SECONDS = 600.0

# Lock target used by self-upgrades of the management tool itself
SELF_UPGRADE_TARGET = "_self"

_TARGET_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9._-]*$")


class LockRecord(BaseModel):
    """
    Contents of a lock file.

    Attributes:
        pid: Process id of the owner.
        acquired_at: Acquisition time in seconds since the epoch.
        target: Locked target name.
    """

    pid: int = Field(..., description="Owner process id")
    acquired_at: float = Field(..., description="Acquisition time (epoch seconds)")
    target: str = Field(..., description="Locked target name")


class LockStatus(BaseModel):
    """
    Read-only view of a target's lock.

    Attributes:
        locked: Whether a live, non-expired lock exists.
        owner_pid: Owner process id when locked.
        age_seconds: Age of the lock when locked.
    """

    locked: bool
    owner_pid: int | None = None
    age_seconds: float | None = None


def _pid_exists(pid: int) -> bool:
    return psutil.pid_exists(pid)


def validate_target(target: str) -> str:
    """
    Ensure a target name can be used as a lock file name.

    Raises:
        InvalidArgumentError: If the name is empty or contains separators.
    """
    if not _TARGET_PATTERN.match(target or ""):
        raise InvalidArgumentError(
            f"Invalid lock target: {target!r}",
            details={"target": target},
        )
    return target


class LockManager:
    """
    Cooperative file-based mutual exclusion per upgrade target.

    Example:
        >>> locks = LockManager(Path("/srv/agent/.agentmgr/locks"))
        >>> with locks.hold("web-console"):
        ...     run_upgrade()
    """

    def __init__(
        self,
        locks_dir: Path,
        *,
        timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        is_alive: Callable[[int], bool] | None = None,
        pid: int | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        """
        Initialize the lock manager.

        Args:
            locks_dir: Directory holding lock files (created on demand).
            timeout_seconds: Age after which any lock is stale.
            is_alive: Returns whether a pid belongs to a live process.
                Defaults to ``psutil.pid_exists``.
            pid: Process id recorded as owner. Defaults to ``os.getpid()``.
            clock: Returns epoch seconds. Defaults to ``time.time``.
        """
        self.locks_dir = Path(locks_dir)
        self.timeout_seconds = timeout_seconds
        self._is_alive = is_alive or _pid_exists
        self.pid = pid if pid is not None else os.getpid()
        self._clock = clock or time.time

    def lock_path(self, target: str) -> Path:
        """Return the lock file path of ``target``."""
        return self.locks_dir / f"{validate_target(target)}.lock"

    def _read(self, path: Path) -> LockRecord | None:
        """Read a lock record; raises ValueError for a corrupt file."""
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return LockRecord.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            raise ValueError(f"Corrupt lock file {path}: {e}") from e

    def _is_stale(self, record: LockRecord) -> bool:
        age = self._clock() - record.acquired_at
        if age > self.timeout_seconds:
            return True
        return not self._is_alive(record.pid)

    def _try_create(self, path: Path, record: LockRecord) -> bool:
        """Publish ``record`` at ``path``; False if the path already exists."""
        fd, temp_name = tempfile.mkstemp(
            dir=self.locks_dir, prefix=f".{path.stem}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record.model_dump(), f)
                f.flush()
                os.fsync(f.fileno())
            try:
                os.link(temp_name, path)
            except FileExistsError:
                return False
            return True
        finally:
            try:
                os.unlink(temp_name)
            except FileNotFoundError:
                pass

    def _discard(self, path: Path, expected: LockRecord | None) -> None:
        """Remove ``path`` if it still holds ``expected`` (None: corrupt)."""
        try:
            current = self._read(path)
        except ValueError:
            current = None
        if current != expected:
            return
        try:
            path.unlink()
        except FileNotFoundError:
            pass

    def acquire(self, target: str) -> LockRecord:
        """
        Acquire the lock of ``target``.

        A stale or corrupt lock is removed and acquisition retried once.

        Returns:
            The record written for this process.

        Raises:
            LockBusyError: If a live process holds the lock, or another
                acquirer won the race.
            UnavailableError: If the lock directory cannot be written.
        """
        path = self.lock_path(target)
        try:
            self.locks_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise UnavailableError(
                f"Cannot create locks directory: {self.locks_dir}",
                details={"path": str(self.locks_dir), "error": str(e)},
            ) from e

        for attempt in range(2):
            record = LockRecord(pid=self.pid, acquired_at=self._clock(), target=target)
            try:
                created = self._try_create(path, record)
            except OSError as e:
                raise UnavailableError(
                    f"Failed to create lock for {target}: {e}",
                    details={"target": target, "error": str(e)},
                ) from e

            if created:
                logger.info(
                    "Lock acquired",
                    extra={"target": target, "pid": self.pid, "path": str(path)},
                )
                return record

            try:
                existing = self._read(path)
            except ValueError as e:
                logger.warning(
                    "Removing corrupt lock file",
                    extra={"target": target, "path": str(path), "error": str(e)},
                )
                self._discard(path, None)
                continue

            if existing is None:
                # Released between our create attempt and the read.
                continue

            if attempt == 0 and self._is_stale(existing):
                logger.warning(
                    "Reclaiming stale lock",
                    extra={
                        "target": target,
                        "owner_pid": existing.pid,
                        "age_seconds": self._clock() - existing.acquired_at,
                    },
                )
                self._discard(path, existing)
                continue

            raise LockBusyError(
                f"Target {target!r} is being upgraded by PID {existing.pid}",
                owner_pid=existing.pid,
                details={"target": target},
            )

        raise LockBusyError(
            f"Target {target!r} lock was acquired by another process",
            details={"target": target},
        )

    def release(self, target: str) -> bool:
        """
        Release the lock of ``target`` if this process owns it.

        Returns:
            True if the lock was removed or was already gone; False if it is
            owned by another process or unreadable.
        """
        path = self.lock_path(target)
        try:
            record = self._read(path)
        except ValueError as e:
            logger.warning(
                "Refusing to release unreadable lock",
                extra={"target": target, "error": str(e)},
            )
            return False

        if record is None:
            return True

        if record.pid != self.pid:
            logger.warning(
                "Lock owned by a different process; not released",
                extra={"target": target, "owner_pid": record.pid, "pid": self.pid},
            )
            return False

        try:
            path.unlink()
        except FileNotFoundError:
            pass
        logger.info("Lock released", extra={"target": target, "pid": self.pid})
        return True

    def is_locked(self, target: str) -> LockStatus:
        """
        Report whether ``target`` is locked, without changing anything.

        Stale and corrupt records count as unlocked.
        """
        try:
            record = self._read(self.lock_path(target))
        except ValueError:
            return LockStatus(locked=False)

        if record is None or self._is_stale(record):
            return LockStatus(locked=False)

        return LockStatus(
            locked=True,
            owner_pid=record.pid,
            age_seconds=self._clock() - record.acquired_at,
        )

    @contextmanager
    def hold(self, target: str) -> Iterator[LockRecord]:
        """Acquire ``target`` for the duration of a ``with`` block."""
        record = self.acquire(target)
        try:
            yield record
        finally:
            self.release(target)
