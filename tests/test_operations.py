"""
Tests for the directory sync primitives.

Tests cover:
- copy_tree with top-level exclusions
- sync_tree mirroring and preserved names
- prune_empty_parents
- cleanup_temp and timestamp_slug
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest
from conftest import read_tree, write_tree

from agentmgr.errors import FailedPreconditionError
from agentmgr.upgrade.operations import (
    cleanup_temp,
    copy_tree,
    prune_empty_parents,
    safe_remove_directory,
    sync_tree,
    timestamp_slug,
)


class TestCopyTree:
    """Tests for copy_tree."""

    def test_copies_nested_files(self, tmp_path: Path) -> None:
        """Test that every file is copied with its relative path."""
        src = write_tree(tmp_path / "src", {"a.txt": "A", "lib/b.txt": "B"})

        copy_tree(src, tmp_path / "dest")

        assert read_tree(tmp_path / "dest") == {"a.txt": "A", "lib/b.txt": "B"}

    def test_keeps_extra_destination_files(self, tmp_path: Path) -> None:
        """Test that copy_tree never deletes from the destination."""
        src = write_tree(tmp_path / "src", {"a.txt": "new"})
        dest = write_tree(tmp_path / "dest", {"a.txt": "old", "mine.txt": "M"})

        copy_tree(src, dest)

        assert read_tree(dest) == {"a.txt": "new", "mine.txt": "M"}

    def test_excludes_top_level_only(self, tmp_path: Path) -> None:
        """Test that exclusions match only the first path component."""
        src = write_tree(
            tmp_path / "src",
            {"node_modules/x.js": "x", "lib/node_modules/y.js": "y", "a.txt": "A"},
        )

        copy_tree(src, tmp_path / "dest", excludes=["node_modules"])

        assert read_tree(tmp_path / "dest") == {"a.txt": "A", "lib/node_modules/y.js": "y"}

    def test_missing_source(self, tmp_path: Path) -> None:
        """Test that a missing source raises FailedPreconditionError."""
        with pytest.raises(FailedPreconditionError):
            copy_tree(tmp_path / "absent", tmp_path / "dest")


class TestSyncTree:
    """Tests for sync_tree."""

    def test_mirror_removes_extra_files(self, tmp_path: Path) -> None:
        """Test that destination-only entries are removed."""
        src = write_tree(tmp_path / "src", {"a.txt": "A"})
        dest = write_tree(tmp_path / "dest", {"a.txt": "old", "stale/x.txt": "x"})

        sync_tree(src, dest)

        assert read_tree(dest) == {"a.txt": "A"}
        assert not (dest / "stale").exists()

    def test_mirror_preserves_excluded_names(self, tmp_path: Path) -> None:
        """Test that excluded names survive in dest and are not copied."""
        src = write_tree(tmp_path / "src", {"a.txt": "A", "data/seed.db": "seed"})
        dest = write_tree(tmp_path / "dest", {"data/live.db": "live", "b.txt": "B"})

        sync_tree(src, dest, excludes=["data"])

        assert read_tree(dest) == {"a.txt": "A", "data/live.db": "live"}

    def test_missing_source_leaves_dest(self, tmp_path: Path) -> None:
        """Test that a missing source fails before anything is removed."""
        dest = write_tree(tmp_path / "dest", {"a.txt": "A"})

        with pytest.raises(FailedPreconditionError):
            sync_tree(tmp_path / "absent", dest)

        assert read_tree(dest) == {"a.txt": "A"}


class TestHelpers:
    """Tests for the smaller filesystem helpers."""

    def test_prune_empty_parents(self, tmp_path: Path) -> None:
        """Test that emptied directories are removed up to the root."""
        root = write_tree(tmp_path / "root", {"a/b/c.txt": "c", "a/keep.txt": "k"})
        (root / "a/b/c.txt").unlink()

        removed = prune_empty_parents(root / "a/b/c.txt", root)

        assert removed == [(root / "a/b").resolve()]
        assert (root / "a").is_dir()

    def test_prune_never_removes_root(self, tmp_path: Path) -> None:
        """Test that the root survives even when empty."""
        root = write_tree(tmp_path / "root", {"c.txt": "c"})
        (root / "c.txt").unlink()

        assert prune_empty_parents(root / "c.txt", root) == []
        assert root.is_dir()

    def test_safe_remove_directory(self, tmp_path: Path) -> None:
        """Test that a tree is removed once and a missing one reports False."""
        write_tree(tmp_path / "x", {"y/z.txt": "z"})

        assert safe_remove_directory(tmp_path / "x")
        assert not safe_remove_directory(tmp_path / "x")

    def test_cleanup_temp(self, tmp_path: Path) -> None:
        """Test that cleanup_temp removes an extracted tree once."""
        temp = write_tree(tmp_path / "extract", {"a.txt": "A"})

        assert cleanup_temp(temp)
        assert not temp.exists()
        assert not cleanup_temp(temp)

    def test_timestamp_slug_is_sortable(self) -> None:
        """Test the timestamp slug format."""
        when = datetime(2026, 3, 4, 5, 6, 7, 890, tzinfo=UTC)

        assert timestamp_slug(when) == "20260304-050607-000890"
