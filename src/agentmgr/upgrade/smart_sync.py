"""
Smart sync: apply an incoming tree onto an installed tree file by file.

Every file shipped in the incoming tree receives exactly one outcome:

- added: the installed tree had no such file
- overwritten: the user had not changed it (or no manifest exists yet)
- kept: only the user changed it
- merged: both changed and the three-way merge was clean
- conflict: both changed and the merge failed, or the path was never shipped;
  the user's content is copied to a backup location before incoming wins

Local and incoming changes are measured against the originals snapshot when
one exists, and against the saved manifest otherwise. Files shipped
previously (present in both the manifest and the snapshot) but absent from
the incoming tree are deleted; files the user added on their own are never
deleted. When a release turns a file into a directory or back, the entry in
the way is deleted if it was shipped and dropped, and backed up as a
conflict otherwise. After the walk the originals snapshot is replaced with
the incoming tree and the manifest is regenerated from the final installed
state.
"""

from __future__ import annotations

import os
import shutil
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field

from agentmgr.errors import FailedPreconditionError, MergeUnavailableError, SyncError
from agentmgr.logging import get_logger
from agentmgr.upgrade.manifest import (
    META_DIR,
    Manifest,
    ManifestStore,
    hash_file,
    iter_files,
)
from agentmgr.upgrade.merge import LineMerger, ThreeWayMerger
from agentmgr.upgrade.operations import prune_empty_parents, timestamp_slug
from agentmgr.upgrade.originals import OriginalsStore

logger = get_logger(__name__)

CONFLICTS_DIR = "conflicts"


class SyncMode(str, Enum):
    """How incoming files are applied."""

    MERGE = "merge"
    OVERWRITE = "overwrite"


class SyncOutcome(str, Enum):
    """Outcome recorded for one path."""

    ADDED = "added"
    OVERWRITTEN = "overwritten"
    KEPT = "kept"
    MERGED = "merged"
    CONFLICT = "conflict"
    DELETED = "deleted"


class FileOutcome(BaseModel):
    """
    Outcome for one relative path.

    Attributes:
        path: Path relative to the tree root (POSIX separators).
        outcome: What happened to the file.
        backup_path: Where the user's content was preserved (conflicts only).
    """

    path: str
    outcome: SyncOutcome
    backup_path: str | None = None


class SyncReport(BaseModel):
    """
    Per-file outcomes of one smart sync run.

    Attributes:
        files: Outcomes in processing order.
        unchanged: Paths that already matched and were left alone.
    """

    files: list[FileOutcome] = Field(default_factory=list)
    unchanged: list[str] = Field(default_factory=list)

    def paths(self, outcome: SyncOutcome) -> list[str]:
        """Return the paths that received ``outcome``."""
        return [f.path for f in self.files if f.outcome == outcome]

    @property
    def added(self) -> list[str]:
        return self.paths(SyncOutcome.ADDED)

    @property
    def overwritten(self) -> list[str]:
        return self.paths(SyncOutcome.OVERWRITTEN)

    @property
    def kept(self) -> list[str]:
        return self.paths(SyncOutcome.KEPT)

    @property
    def merged(self) -> list[str]:
        return self.paths(SyncOutcome.MERGED)

    @property
    def deleted(self) -> list[str]:
        return self.paths(SyncOutcome.DELETED)

    @property
    def conflicts(self) -> list[FileOutcome]:
        return [f for f in self.files if f.outcome == SyncOutcome.CONFLICT]

    def outcome_for(self, path: str) -> SyncOutcome | None:
        """Return the outcome recorded for ``path``, if any."""
        for f in self.files:
            if f.path == path:
                return f.outcome
        return None

    def summary(self) -> str:
        """
        Return a one-line summary such as ``"2 overwritten, 1 merged"``.

        Returns ``"no changes"`` when nothing happened.
        """
        labels = [
            (SyncOutcome.OVERWRITTEN, "overwritten"),
            (SyncOutcome.KEPT, "kept"),
            (SyncOutcome.MERGED, "merged"),
            (SyncOutcome.CONFLICT, "conflicts"),
            (SyncOutcome.ADDED, "added"),
            (SyncOutcome.DELETED, "deleted"),
        ]
        parts = []
        for outcome, label in labels:
            count = len(self.paths(outcome))
            if count:
                parts.append(f"{count} {label}")
        return ", ".join(parts) or "no changes"


def _is_text(data: bytes) -> bool:
    if b"\x00" in data:
        return False
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return False
    return True


def _top_level(rel: str) -> str:
    return rel.split("/", 1)[0]


class SmartSync:
    """
    Applies incoming trees onto installed trees.

    Example:
        >>> sync = SmartSync()
        >>> report = sync.sync(Path("/tmp/web-console-2.0"), Path("/srv/agent/skills/web-console"))
        >>> report.summary()
        '3 overwritten, 1 merged'
    """

    def __init__(
        self,
        manifests: ManifestStore | None = None,
        originals: OriginalsStore | None = None,
        merger: ThreeWayMerger | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize smart sync.

        Args:
            manifests: Manifest store; a default store when None.
            originals: Originals store; a default store when None.
            merger: Three-way merger; the builtin line merger when None.
            clock: Returns the current time, used for default conflict
                backup directories.
        """
        self.manifests = manifests or ManifestStore()
        self.originals = originals or OriginalsStore()
        self.merger = merger or LineMerger()
        self._clock = clock or (lambda: datetime.now(UTC))

    def sync(
        self,
        src: Path,
        dest: Path,
        *,
        backup_dir: Path | None = None,
        mode: SyncMode = SyncMode.MERGE,
        excludes: Iterable[str] = (),
        label: str = "",
    ) -> SyncReport:
        """
        Apply ``src`` onto ``dest``.

        Args:
            src: Incoming tree.
            dest: Installed tree, mutated in place (created if missing).
            backup_dir: Where conflicting local content is preserved. Defaults
                to ``<dest>/.agentmgr/conflicts/<timestamp>``.
            mode: MERGE applies the decision table; OVERWRITE copies every
                incoming file unconditionally.
            excludes: Top-level names left alone in both trees.
            label: Name used in log records.

        Returns:
            SyncReport with one outcome per touched path.

        Raises:
            FailedPreconditionError: If ``src`` is not a directory.
            SyncError: If reading, writing or backing up a file fails.
        """
        if not src.is_dir():
            raise FailedPreconditionError(
                f"Incoming tree does not exist: {src}",
                details={"src": str(src)},
            )

        mode = SyncMode(mode)
        skip = frozenset(excludes)
        conflict_root = backup_dir or (
            dest / META_DIR / CONFLICTS_DIR / timestamp_slug(self._clock())
        )
        report = SyncReport()

        try:
            dest.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SyncError(
                f"Failed to create {dest}: {e}",
                details={"dest": str(dest), "error": str(e)},
            ) from e

        saved = self.manifests.load(dest)
        shipped = self.originals.files(dest)
        incoming = [
            rel
            for rel in iter_files(src, self.manifests.excludes)
            if _top_level(rel) not in skip
        ]
        incoming_set = set(incoming)
        # Only files an earlier release shipped may be deleted; the manifest
        # alone also tracks files the user added.
        tracked: set[str] = set()
        if saved is not None:
            tracked = set(saved.files) if shipped is None else set(saved.files) & shipped
        dropped = tracked - incoming_set

        logger.info(
            "Smart sync started",
            extra={
                "label": label,
                "src": str(src),
                "dest": str(dest),
                "mode": mode.value,
                "has_manifest": saved is not None,
            },
        )

        for rel in incoming:
            try:
                displaced = self._make_room(dest, rel, dropped, conflict_root, report)
                if displaced is not None:
                    self._copy(src / rel, dest / rel)
                    outcome: FileOutcome | None = FileOutcome(
                        path=rel, outcome=SyncOutcome.CONFLICT, backup_path=displaced
                    )
                else:
                    outcome = self._sync_file(
                        src, dest, rel, saved, shipped, mode, conflict_root
                    )
            except OSError as e:
                raise SyncError(
                    f"Failed to sync {rel}: {e}",
                    details={"path": rel, "dest": str(dest), "error": str(e)},
                ) from e
            if outcome is None:
                report.unchanged.append(rel)
            else:
                report.files.append(outcome)

        for rel in sorted(dropped):
            if _top_level(rel) in skip or report.outcome_for(rel) is not None:
                continue
            try:
                if self._delete(dest, rel):
                    report.files.append(FileOutcome(path=rel, outcome=SyncOutcome.DELETED))
            except OSError as e:
                raise SyncError(
                    f"Failed to delete {rel}: {e}",
                    details={"path": rel, "dest": str(dest), "error": str(e)},
                ) from e

        try:
            self.originals.save(dest, src)
            self.manifests.refresh(dest)
        except OSError as e:
            raise SyncError(
                f"Failed to record sync state for {dest}: {e}",
                details={"dest": str(dest), "error": str(e)},
            ) from e

        logger.info(
            "Smart sync finished",
            extra={"label": label, "dest": str(dest), "summary": report.summary()},
        )
        return report

    def _sync_file(
        self,
        src: Path,
        dest: Path,
        rel: str,
        saved: Manifest | None,
        shipped: set[str] | None,
        mode: SyncMode,
        conflict_root: Path,
    ) -> FileOutcome | None:
        src_file = src / rel
        dest_file = dest / rel

        if not dest_file.exists() and not dest_file.is_symlink():
            self._copy(src_file, dest_file)
            return FileOutcome(path=rel, outcome=SyncOutcome.ADDED)

        if mode == SyncMode.OVERWRITE or saved is None:
            self._copy(src_file, dest_file)
            return FileOutcome(path=rel, outcome=SyncOutcome.OVERWRITTEN)

        # The shipped content is the baseline: a file kept last time holds
        # the user's edit in the refreshed manifest, not the shipped bytes.
        if shipped is None:
            base_hash = saved.files.get(rel)
        else:
            base_hash = self.originals.digest(dest, rel)
        if base_hash is None:
            return self._conflict(src_file, dest_file, rel, conflict_root)

        current_hash = hash_file(dest_file)
        incoming_hash = hash_file(src_file)
        local_modified = current_hash != base_hash
        incoming_changed = incoming_hash != base_hash

        if not incoming_changed:
            if not local_modified or current_hash == saved.files.get(rel):
                return None
            return FileOutcome(path=rel, outcome=SyncOutcome.KEPT)
        if not local_modified:
            self._copy(src_file, dest_file)
            return FileOutcome(path=rel, outcome=SyncOutcome.OVERWRITTEN)

        if current_hash == incoming_hash:
            # Both sides made the same change.
            return None

        local = dest_file.read_bytes()
        new = src_file.read_bytes()

        merged = self._try_merge(dest, rel, local, new)
        if merged is not None:
            dest_file.write_text(merged, encoding="utf-8")
            return FileOutcome(path=rel, outcome=SyncOutcome.MERGED)

        return self._conflict(src_file, dest_file, rel, conflict_root)

    def _try_merge(self, dest: Path, rel: str, local: bytes, new: bytes) -> str | None:
        base = self.originals.read(dest, rel)
        if base is None:
            logger.debug("No merge base recorded", extra={"path": rel})
            return None
        if not (_is_text(base) and _is_text(local) and _is_text(new)):
            logger.debug("Binary file, skipping merge", extra={"path": rel})
            return None

        try:
            result = self.merger.merge(
                base.decode("utf-8"), local.decode("utf-8"), new.decode("utf-8")
            )
        except MergeUnavailableError as e:
            logger.warning(
                "Merge unavailable, treating as conflict",
                extra={"path": rel, "error": e.message},
            )
            return None

        return result.content if result.clean else None

    def _conflict(
        self, src_file: Path, dest_file: Path, rel: str, conflict_root: Path
    ) -> FileOutcome:
        backup_path = conflict_root / rel
        backup_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(dest_file, backup_path, follow_symlinks=False)
        self._copy(src_file, dest_file)
        logger.warning(
            "Conflict: local content backed up, incoming applied",
            extra={"path": rel, "backup_path": str(backup_path)},
        )
        return FileOutcome(
            path=rel, outcome=SyncOutcome.CONFLICT, backup_path=str(backup_path)
        )

    def _make_room(
        self,
        dest: Path,
        rel: str,
        dropped: set[str],
        conflict_root: Path,
        report: SyncReport,
    ) -> str | None:
        """
        Clear entries of the other kind standing where ``rel`` goes.

        A release may turn a shipped file into a directory or the other way
        round. Shipped files the incoming tree drops are deleted here instead
        of in the deletion pass; anything else in the way goes to the
        conflict backup first.

        Returns:
            Backup location of a directory that stood at ``rel``, or None.
        """
        parts = rel.split("/")
        for depth in range(1, len(parts)):
            prefix = "/".join(parts[:depth])
            entry = dest / prefix
            if entry.is_dir():
                continue
            if entry.exists() or entry.is_symlink():
                report.files.append(self._displace_file(dest, prefix, dropped, conflict_root))
            break

        target = dest / rel
        if target.is_symlink() or not target.is_dir():
            return None

        for child in list(iter_files(target, ())):
            child_rel = f"{rel}/{child}"
            if child_rel in dropped:
                (target / child).unlink()
                report.files.append(FileOutcome(path=child_rel, outcome=SyncOutcome.DELETED))
        for dirpath, _dirnames, _filenames in os.walk(target, topdown=False):
            if not os.listdir(dirpath):
                os.rmdir(dirpath)
        if not target.exists():
            return None

        backup_path = conflict_root / rel
        shutil.copytree(target, backup_path, symlinks=True, dirs_exist_ok=True)
        shutil.rmtree(target)
        logger.warning(
            "Conflict: local directory backed up, incoming file applied",
            extra={"path": rel, "backup_path": str(backup_path)},
        )
        return str(backup_path)

    def _displace_file(
        self, dest: Path, rel: str, dropped: set[str], conflict_root: Path
    ) -> FileOutcome:
        path = dest / rel
        if rel in dropped:
            path.unlink()
            return FileOutcome(path=rel, outcome=SyncOutcome.DELETED)

        backup_path = conflict_root / rel
        backup_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, backup_path, follow_symlinks=False)
        path.unlink()
        logger.warning(
            "Conflict: local file backed up to make room for a directory",
            extra={"path": rel, "backup_path": str(backup_path)},
        )
        return FileOutcome(
            path=rel, outcome=SyncOutcome.CONFLICT, backup_path=str(backup_path)
        )

    @staticmethod
    def _copy(src_file: Path, dest_file: Path) -> None:
        dest_file.parent.mkdir(parents=True, exist_ok=True)
        if dest_file.is_symlink():
            dest_file.unlink()
        shutil.copy2(src_file, dest_file)

    @staticmethod
    def _delete(dest: Path, rel: str) -> bool:
        path = dest / rel
        if path.is_dir() and not path.is_symlink():
            return False
        try:
            path.unlink()
        except (FileNotFoundError, NotADirectoryError):
            return False
        prune_empty_parents(path, dest)
        return True
