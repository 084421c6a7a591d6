"""
Originals snapshot: the merge ancestor of an installed tree.

After every successful sync the incoming tree is mirrored into
``<tree>/.agentmgr/originals/``. The next upgrade uses those files as the
base of its three-way merges, so the snapshot always holds what was shipped
last time, never what the user has now.
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from agentmgr.logging import get_logger
from agentmgr.upgrade.manifest import DEFAULT_EXCLUDES, META_DIR, hash_file, iter_files
from agentmgr.upgrade.operations import safe_remove_directory, sync_tree

logger = get_logger(__name__)

ORIGINALS_DIR = "originals"


class OriginalsStore:
    """Mirrors incoming trees and serves base contents for merges."""

    def __init__(self, excludes: Iterable[str] = DEFAULT_EXCLUDES) -> None:
        self.excludes = tuple(excludes)

    @staticmethod
    def originals_path(root: Path) -> Path:
        """Return the snapshot directory of an installed tree."""
        return root / META_DIR / ORIGINALS_DIR

    def exists(self, root: Path) -> bool:
        """Whether ``root`` has a snapshot."""
        return self.originals_path(root).is_dir()

    def save(self, root: Path, incoming: Path) -> Path:
        """
        Replace the snapshot of ``root`` with the contents of ``incoming``.

        Returns:
            The snapshot directory.
        """
        target = self.originals_path(root)
        sync_tree(incoming, target, excludes=self.excludes)
        logger.debug(
            "Saved originals snapshot",
            extra={"root": str(root), "incoming": str(incoming)},
        )
        return target

    def read(self, root: Path, rel_path: str) -> bytes | None:
        """
        Return the shipped content of ``rel_path``, or None if not recorded.
        """
        path = self.originals_path(root) / rel_path
        if not path.is_file():
            return None
        return path.read_bytes()

    def files(self, root: Path) -> set[str] | None:
        """
        Return the paths shipped last time, or None when no snapshot exists.
        """
        snapshot = self.originals_path(root)
        if not snapshot.is_dir():
            return None
        return set(iter_files(snapshot, self.excludes))

    def digest(self, root: Path, rel_path: str) -> str | None:
        """Return the SHA-256 of the shipped ``rel_path``, or None if not recorded."""
        path = self.originals_path(root) / rel_path
        if not path.is_file():
            return None
        return hash_file(path)

    def clear(self, root: Path) -> bool:
        """Remove the snapshot of ``root``."""
        return safe_remove_directory(self.originals_path(root))
