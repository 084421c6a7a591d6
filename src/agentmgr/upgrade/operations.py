"""
Directory sync primitives for the agentmgr upgrade engine.

This module implements the filesystem operations every higher layer uses to
move trees around:
- safe_remove_directory: tolerant removal of a whole tree
- copy_tree: recursive copy, skipping excluded top-level names
- sync_tree: mirror copy, deleting destination entries the source lacks
  while leaving excluded top-level names in the destination untouched
- prune_empty_parents: remove directories emptied by a deletion

Exclusion lists always match the first path component relative to the root
of the operation, so ``node_modules`` excludes ``<root>/node_modules`` but
not ``<root>/lib/node_modules``.
"""

from __future__ import annotations

import shutil
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

from agentmgr.errors import FailedPreconditionError, SyncError
from agentmgr.logging import get_logger

logger = get_logger(__name__)


def safe_remove_directory(path: Path, *, ignore_errors: bool = True) -> bool:
    """
    Remove the tree at ``path``; return False when there was nothing to remove.

    Used for originals snapshots, extracted releases and skills added by a
    failed self-upgrade. With ``ignore_errors=False`` a partial removal is
    reported as FailedPreconditionError instead of being silently tolerated.
    """
    if not path.exists():
        return False

    try:
        shutil.rmtree(path, ignore_errors=ignore_errors)
    except OSError as e:
        if not ignore_errors:
            raise FailedPreconditionError(
                f"Could not remove {path}: {e}",
                details={"path": str(path), "error": str(e)},
            ) from e
        return False
    logger.debug("Removed tree", extra={"path": str(path)})
    return True


def timestamp_slug(now: datetime | None = None) -> str:
    """Return a filesystem-safe UTC timestamp such as ``20260101-120000-123456``."""
    return (now or datetime.now(UTC)).strftime("%Y%m%d-%H%M%S-%f")


def _remove_entry(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def copy_tree(
    src: Path,
    dest: Path,
    *,
    excludes: Iterable[str] = (),
) -> None:
    """
    Copy a directory tree into ``dest``, skipping excluded top-level names.

    Existing files in ``dest`` are overwritten; files only present in
    ``dest`` are left alone.

    Args:
        src: Source directory.
        dest: Destination directory (created if missing).
        excludes: Top-level entry names of ``src`` to skip.

    Raises:
        FailedPreconditionError: If ``src`` is not a directory.
        SyncError: If copying fails.
    """
    if not src.is_dir():
        raise FailedPreconditionError(
            f"Source directory does not exist: {src}",
            details={"src": str(src)},
        )

    skip = set(excludes)
    try:
        dest.mkdir(parents=True, exist_ok=True)
        for entry in sorted(src.iterdir()):
            if entry.name in skip:
                continue
            target = dest / entry.name
            if entry.is_dir() and not entry.is_symlink():
                shutil.copytree(entry, target, symlinks=True, dirs_exist_ok=True)
            else:
                if target.is_dir() and not target.is_symlink():
                    shutil.rmtree(target)
                shutil.copy2(entry, target, follow_symlinks=False)
    except OSError as e:
        raise SyncError(
            f"Failed to copy {src} to {dest}: {e}",
            details={"src": str(src), "dest": str(dest), "error": str(e)},
        ) from e

    logger.debug("Copied tree", extra={"src": str(src), "dest": str(dest)})


def sync_tree(
    src: Path,
    dest: Path,
    *,
    excludes: Iterable[str] = (),
) -> None:
    """
    Mirror ``src`` onto ``dest``.

    Every top-level entry of ``dest`` that is not excluded is removed, then
    ``src`` is copied over with the same exclusions. Excluded names are
    neither deleted from ``dest`` nor copied from ``src``.

    Args:
        src: Source directory.
        dest: Destination directory (created if missing).
        excludes: Top-level names preserved in ``dest`` and skipped in ``src``.

    Raises:
        FailedPreconditionError: If ``src`` is not a directory.
        SyncError: If removing or copying fails.
    """
    if not src.is_dir():
        raise FailedPreconditionError(
            f"Source directory does not exist: {src}",
            details={"src": str(src)},
        )

    skip = set(excludes)
    try:
        dest.mkdir(parents=True, exist_ok=True)
        for entry in list(dest.iterdir()):
            if entry.name in skip:
                continue
            _remove_entry(entry)
    except OSError as e:
        raise SyncError(
            f"Failed to clear {dest} before mirroring: {e}",
            details={"src": str(src), "dest": str(dest), "error": str(e)},
        ) from e

    copy_tree(src, dest, excludes=skip)
    logger.debug("Mirrored tree", extra={"src": str(src), "dest": str(dest)})


def prune_empty_parents(path: Path, root: Path) -> list[Path]:
    """
    Remove empty directories from ``path``'s parent upward, stopping at ``root``.

    Args:
        path: A file path that has just been deleted.
        root: Directory that is never removed.

    Returns:
        The directories that were removed, deepest first.
    """
    removed: list[Path] = []
    root = root.resolve()
    current = path.parent.resolve()

    while current != root and root in current.parents:
        try:
            if any(current.iterdir()):
                break
            current.rmdir()
        except FileNotFoundError:
            pass
        except OSError:
            break
        removed.append(current)
        current = current.parent

    return removed


def cleanup_temp(path: Path) -> bool:
    """
    Remove an extracted incoming tree once the caller is done with it.

    Returns:
        True if something was removed.
    """
    removed = safe_remove_directory(path)
    if removed:
        logger.info("Removed temporary tree", extra={"path": str(path)})
    return removed
