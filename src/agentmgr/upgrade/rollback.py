"""
Rollback actions.

Rollback is best-effort: every compensating action is attempted
independently and reports its own success, so a failed dependency reinstall
never prevents the service restart that follows it. Nothing here retries.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path

from agentmgr.errors import AgentMgrError, FailedPreconditionError
from agentmgr.logging import get_logger
from agentmgr.upgrade.operations import sync_tree
from agentmgr.upgrade.pipeline import RollbackAction

logger = get_logger(__name__)

BACKUP_DIR = ".backup"

RESTORE_EXCLUDES = (BACKUP_DIR, "node_modules")

RollbackCallable = Callable[[], Awaitable[None]]


async def attempt(action: str, fn: RollbackCallable) -> RollbackAction:
    """
    Run one compensating action and record its outcome.

    Errors are logged and reported, never raised.
    """
    try:
        await fn()
    except AgentMgrError as e:
        logger.error("Rollback action failed", extra={"action": action, "error": e.message})
        return RollbackAction(action=action, success=False, error=e.message)
    except Exception as e:
        logger.exception("Rollback action failed", extra={"action": action})
        return RollbackAction(action=action, success=False, error=str(e) or e.__class__.__name__)

    logger.info("Rollback action succeeded", extra={"action": action})
    return RollbackAction(action=action, success=True)


async def run_actions(actions: Iterable[tuple[str, RollbackCallable]]) -> list[RollbackAction]:
    """Attempt each ``(name, callable)`` in order."""
    return [await attempt(name, fn) for name, fn in actions]


def restore_tree(backup_dir: Path, target: Path, *, preserve: Iterable[str] = ()) -> None:
    """
    Mirror ``backup_dir`` back over ``target``.

    Files the failed upgrade added are removed. ``.backup``, dependency
    caches and preserved names stay as they are.

    Raises:
        FailedPreconditionError: If the backup is missing.
        SyncError: If copying fails.
    """
    if not backup_dir.is_dir():
        raise FailedPreconditionError(
            f"Backup directory not found: {backup_dir}",
            details={"backup_dir": str(backup_dir), "target": str(target)},
        )

    logger.info(
        "Restoring tree from backup",
        extra={"backup_dir": str(backup_dir), "target": str(target)},
    )
    sync_tree(backup_dir, target, excludes=[*RESTORE_EXCLUDES, *preserve])
