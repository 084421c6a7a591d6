"""
Content-hash manifests for installed trees.

A manifest maps every regular file of a tree (relative POSIX path) to its
SHA-256 digest. It is stored inside the tree's own metadata directory
(``<tree>/.agentmgr/manifest.json``) and records the tree as it was after the
last successful sync. Comparing it with the current contents tells whether
the user changed a file since then.
"""

from __future__ import annotations

import hashlib
import json
import os
from collections.abc import Callable, Iterable, Iterator
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from agentmgr.logging import get_logger

logger = get_logger(__name__)

META_DIR = ".agentmgr"
MANIFEST_FILE = "manifest.json"

# Directory and file names skipped at any depth when walking a tree
DEFAULT_EXCLUDES: tuple[str, ...] = (
    ".git",
    META_DIR,
    "node_modules",
    ".backup",
    "__pycache__",
    ".venv",
)

_CHUNK_SIZE = 1024 * 1024


# =============================================================================
# Models
# =============================================================================


class Manifest(BaseModel):
    """
    Per-file content hashes of one installed tree.

    Attributes:
        files: Mapping of relative POSIX path to hex SHA-256 digest.
        generated_at: ISO 8601 timestamp of generation.
    """

    files: dict[str, str] = Field(
        default_factory=dict,
        description="Relative path to SHA-256 hex digest",
    )
    generated_at: str = Field(
        default_factory=lambda: datetime.now(UTC).isoformat(),
        description="ISO 8601 timestamp when the manifest was generated",
    )

    def same_files(self, other: Manifest) -> bool:
        """Return True if both manifests describe identical file contents."""
        return self.files == other.files


class ChangeReport(BaseModel):
    """
    Result of comparing a tree against its saved manifest.

    Attributes:
        modified: Paths whose content differs from the saved hash.
        added: Paths present now but absent from the saved manifest.
        deleted: Paths in the saved manifest that no longer exist.
        unchanged: Paths whose content matches the saved hash.
    """

    modified: list[str] = Field(default_factory=list)
    added: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    unchanged: list[str] = Field(default_factory=list)

    @property
    def has_local_changes(self) -> bool:
        """Whether any tracked file was modified, added or deleted."""
        return bool(self.modified or self.added or self.deleted)


# =============================================================================
# Hashing helpers
# =============================================================================


def hash_file(path: Path) -> str:
    """Return the hex SHA-256 digest of a file's bytes."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def hash_bytes(data: bytes) -> str:
    """Return the hex SHA-256 digest of ``data``."""
    return hashlib.sha256(data).hexdigest()


def iter_files(root: Path, excludes: Iterable[str] = DEFAULT_EXCLUDES) -> Iterator[str]:
    """
    Yield relative POSIX paths of regular files under ``root`` in sorted order.

    Symlinks are not followed and not reported. Any entry whose name is in
    ``excludes`` is skipped together with its subtree.
    """
    skip = frozenset(excludes)

    def walk(directory: Path, prefix: str) -> Iterator[str]:
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda e: e.name)
        for entry in entries:
            if entry.name in skip:
                continue
            rel = f"{prefix}{entry.name}"
            if entry.is_dir(follow_symlinks=False):
                yield from walk(Path(entry.path), f"{rel}/")
            elif entry.is_file(follow_symlinks=False):
                yield rel

    if not root.is_dir():
        return
    yield from walk(root, "")


# =============================================================================
# Manifest Store
# =============================================================================


class ManifestStore:
    """
    Generates, persists and compares manifests.

    The store is stateless apart from its exclusion list and clock, so one
    instance can serve every installed tree.

    Example:
        >>> store = ManifestStore()
        >>> manifest = store.generate(Path("/srv/agent/skills/web-console"))
        >>> store.save(Path("/srv/agent/skills/web-console"), manifest)
    """

    def __init__(
        self,
        excludes: Iterable[str] = DEFAULT_EXCLUDES,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize the store.

        Args:
            excludes: Names skipped at any depth while walking a tree.
            clock: Returns the current time; defaults to UTC now.
        """
        self.excludes = tuple(excludes)
        self._clock = clock or (lambda: datetime.now(UTC))

    @staticmethod
    def manifest_path(root: Path) -> Path:
        """Return the manifest location of an installed tree."""
        return root / META_DIR / MANIFEST_FILE

    def generate(self, root: Path) -> Manifest:
        """
        Hash every regular file under ``root``.

        Args:
            root: Tree to scan. A missing directory yields an empty manifest.

        Returns:
            Manifest with sorted keys.
        """
        files = {rel: hash_file(root / rel) for rel in iter_files(root, self.excludes)}
        return Manifest(files=files, generated_at=self._clock().isoformat())

    def save(self, root: Path, manifest: Manifest) -> Path:
        """
        Persist ``manifest`` as the side-car file of ``root``.

        Uses an atomic write (temp file then rename).

        Returns:
            Path of the written manifest.
        """
        path = self.manifest_path(root)
        path.parent.mkdir(parents=True, exist_ok=True)

        temp_path = path.with_suffix(".tmp")
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(manifest.model_dump(), f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)

        logger.debug(
            "Saved manifest",
            extra={"path": str(path), "file_count": len(manifest.files)},
        )
        return path

    def load(self, root: Path) -> Manifest | None:
        """
        Load the saved manifest of ``root``.

        Returns:
            The manifest, or None when none exists. An unreadable or corrupt
            manifest is logged and also reported as None, which callers treat
            like a first install.
        """
        path = self.manifest_path(root)
        if not path.is_file():
            return None

        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return Manifest.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning(
                "Saved manifest is unreadable; treating tree as untracked",
                extra={"path": str(path), "error": str(e)},
            )
            return None

    def refresh(self, root: Path) -> Manifest:
        """Regenerate and save the manifest of ``root``."""
        manifest = self.generate(root)
        self.save(root, manifest)
        return manifest

    def detect_changes(self, root: Path) -> ChangeReport | None:
        """
        Compare the current tree against its saved manifest.

        Returns:
            ChangeReport, or None when there is no saved manifest to compare
            against.
        """
        saved = self.load(root)
        if saved is None:
            return None

        current = self.generate(root)
        report = ChangeReport()

        for rel, digest in current.files.items():
            if rel not in saved.files:
                report.added.append(rel)
            elif saved.files[rel] != digest:
                report.modified.append(rel)
            else:
                report.unchanged.append(rel)

        report.deleted.extend(rel for rel in saved.files if rel not in current.files)
        return report
