"""
Tests for smart sync.

Tests cover:
- First installs and installs without a manifest
- The decision table: overwritten, kept, merged, conflict, added, deleted
- Conflict backups holding the user's exact bytes
- Idempotence of a repeated sync
- Overwrite mode and preserved top-level names
- Binary files, unknown paths and unavailable mergers
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest
from conftest import read_tree, write_tree

from agentmgr.errors import FailedPreconditionError, MergeUnavailableError
from agentmgr.upgrade.manifest import META_DIR, ManifestStore
from agentmgr.upgrade.merge import MergeResult, ThreeWayMerger
from agentmgr.upgrade.smart_sync import CONFLICTS_DIR, SmartSync, SyncMode, SyncOutcome

V1 = {
    "index.js": "console.log('v1');\n",
    "config.txt": "A\nB\nC\n",
    "README.md": "# Tool\n",
    "old.txt": "dropped in v2\n",
}


class UnavailableMerger(ThreeWayMerger):
    """Merger that always reports it cannot run."""

    def merge(self, base: str, local: str, incoming: str) -> MergeResult:
        raise MergeUnavailableError("no merge tool")


@pytest.fixture
def installed(tmp_path: Path) -> Path:
    """An installed tree synced from V1, with a manifest and originals."""
    v1 = write_tree(tmp_path / "v1", V1)
    dest = tmp_path / "installed"
    SmartSync().sync(v1, dest)
    return dest


def incoming(tmp_path: Path, **changes: str | None) -> Path:
    """Write V1 with ``changes`` applied (None deletes) as the v2 tree."""
    files = dict(V1)
    for key, value in changes.items():
        rel = key.replace("__", ".")
        if value is None:
            files.pop(rel, None)
        else:
            files[rel] = value
    return write_tree(tmp_path / "v2", files)


# =============================================================================
# First install
# =============================================================================


class TestFirstInstall:
    """Tests for syncing onto trees without a manifest."""

    def test_empty_destination_gets_added(self, tmp_path: Path) -> None:
        """Test that every file is added and a manifest is written."""
        src = write_tree(tmp_path / "src", {"a.txt": "A", "lib/b.txt": "B"})
        dest = tmp_path / "dest"

        report = SmartSync().sync(src, dest)

        assert sorted(report.added) == ["a.txt", "lib/b.txt"]
        assert read_tree(dest) == {"a.txt": "A", "lib/b.txt": "B"}
        assert ManifestStore().load(dest) is not None

    def test_existing_files_without_manifest_are_overwritten(self, tmp_path: Path) -> None:
        """Test that without a baseline every existing file is replaced."""
        src = write_tree(tmp_path / "src", {"a.txt": "new"})
        dest = write_tree(tmp_path / "dest", {"a.txt": "old", "mine.txt": "M"})

        report = SmartSync().sync(src, dest)

        assert report.overwritten == ["a.txt"]
        assert read_tree(dest) == {"a.txt": "new", "mine.txt": "M"}

    def test_missing_source(self, tmp_path: Path) -> None:
        """Test that a missing incoming tree raises FailedPreconditionError."""
        with pytest.raises(FailedPreconditionError):
            SmartSync().sync(tmp_path / "absent", tmp_path / "dest")


# =============================================================================
# Decision table
# =============================================================================


class TestDecisionTable:
    """Tests for per-file outcomes against a saved manifest."""

    def test_untouched_file_is_overwritten(self, tmp_path: Path, installed: Path) -> None:
        """Test that an unmodified file takes the incoming content."""
        v2 = incoming(tmp_path, index__js="console.log('v2');\n")

        report = SmartSync().sync(v2, installed)

        assert report.outcome_for("index.js") == SyncOutcome.OVERWRITTEN
        assert (installed / "index.js").read_text() == "console.log('v2');\n"

    def test_unchanged_files_are_not_reported(self, tmp_path: Path, installed: Path) -> None:
        """Test that identical files get no outcome."""
        v2 = incoming(tmp_path, index__js="console.log('v2');\n")

        report = SmartSync().sync(v2, installed)

        assert "README.md" in report.unchanged
        assert report.outcome_for("README.md") is None

    def test_locally_modified_file_is_kept(self, tmp_path: Path, installed: Path) -> None:
        """Test that a user edit survives when upstream did not change."""
        (installed / "README.md").write_text("# My notes\n")
        v2 = incoming(tmp_path, index__js="console.log('v2');\n")

        report = SmartSync().sync(v2, installed)

        assert report.kept == ["README.md"]
        assert (installed / "README.md").read_text() == "# My notes\n"

    def test_both_changed_merges_cleanly(self, tmp_path: Path, installed: Path) -> None:
        """Test the three-way merge of neighbouring edits."""
        (installed / "config.txt").write_text("A\nB2\nC\n")
        v2 = incoming(tmp_path, config__txt="A\nB\nC2\n")

        report = SmartSync().sync(v2, installed)

        assert report.merged == ["config.txt"]
        assert (installed / "config.txt").read_text() == "A\nB2\nC2\n"
        assert report.conflicts == []

    def test_conflict_backs_up_local_bytes(self, tmp_path: Path, installed: Path) -> None:
        """Test that a conflict preserves the user's exact content."""
        (installed / "config.txt").write_text("A\nB3\nC\n")
        v2 = incoming(tmp_path, config__txt="A\nB4\nC\n")
        backup = tmp_path / "backup"

        report = SmartSync().sync(v2, installed, backup_dir=backup)

        [conflict] = report.conflicts
        assert conflict.path == "config.txt"
        assert conflict.backup_path == str(backup / "config.txt")
        assert (backup / "config.txt").read_bytes() == b"A\nB3\nC\n"
        assert (installed / "config.txt").read_text() == "A\nB4\nC\n"

    def test_identical_changes_are_unchanged(self, tmp_path: Path, installed: Path) -> None:
        """Test that the same edit locally and upstream is not a conflict."""
        (installed / "config.txt").write_text("A\nX\nC\n")
        v2 = incoming(tmp_path, config__txt="A\nX\nC\n")

        report = SmartSync().sync(v2, installed)

        assert "config.txt" in report.unchanged
        assert report.conflicts == []

    def test_new_upstream_file_is_added(self, tmp_path: Path, installed: Path) -> None:
        """Test that files new in the incoming tree are added."""
        v2 = incoming(tmp_path, **{"lib/util.js": "util\n"})

        report = SmartSync().sync(v2, installed)

        assert report.added == ["lib/util.js"]

    def test_dropped_upstream_file_is_deleted(self, tmp_path: Path, installed: Path) -> None:
        """Test that previously shipped files absent upstream are deleted."""
        v2 = incoming(tmp_path, old__txt=None)

        report = SmartSync().sync(v2, installed)

        assert report.deleted == ["old.txt"]
        assert not (installed / "old.txt").exists()

    def test_user_files_are_never_deleted(self, tmp_path: Path, installed: Path) -> None:
        """Test that files the user created are left alone."""
        (installed / "notes.md").write_text("mine\n")
        v2 = incoming(tmp_path, old__txt=None)

        report = SmartSync().sync(v2, installed)

        assert report.outcome_for("notes.md") is None
        assert (installed / "notes.md").read_text() == "mine\n"

    def test_unknown_existing_path_is_conflict(self, tmp_path: Path, installed: Path) -> None:
        """Test that a user file colliding with a new upstream file is backed up."""
        (installed / "extra.txt").write_text("user version\n")
        v2 = incoming(tmp_path, extra__txt="upstream version\n")
        backup = tmp_path / "backup"

        report = SmartSync().sync(v2, installed, backup_dir=backup)

        assert report.outcome_for("extra.txt") == SyncOutcome.CONFLICT
        assert (backup / "extra.txt").read_text() == "user version\n"
        assert (installed / "extra.txt").read_text() == "upstream version\n"

    def test_binary_files_conflict(self, tmp_path: Path) -> None:
        """Test that binary content is never merged."""
        v1 = write_tree(tmp_path / "v1", {"logo.bin": b"\x00\x01base"})
        dest = tmp_path / "installed"
        SmartSync().sync(v1, dest)
        (dest / "logo.bin").write_bytes(b"\x00\x01local")
        v2 = write_tree(tmp_path / "v2", {"logo.bin": b"\x00\x01incoming"})
        backup = tmp_path / "backup"

        report = SmartSync().sync(v2, dest, backup_dir=backup)

        assert report.outcome_for("logo.bin") == SyncOutcome.CONFLICT
        assert (backup / "logo.bin").read_bytes() == b"\x00\x01local"
        assert (dest / "logo.bin").read_bytes() == b"\x00\x01incoming"

    def test_unavailable_merger_is_conflict(self, tmp_path: Path, installed: Path) -> None:
        """Test that a merger that cannot run degrades to a conflict."""
        (installed / "config.txt").write_text("A\nB2\nC\n")
        v2 = incoming(tmp_path, config__txt="A\nB\nC2\n")

        report = SmartSync(merger=UnavailableMerger()).sync(
            v2, installed, backup_dir=tmp_path / "backup"
        )

        assert report.outcome_for("config.txt") == SyncOutcome.CONFLICT

    def test_default_conflict_location(self, tmp_path: Path, installed: Path) -> None:
        """Test the timestamped default conflict directory."""
        when = datetime(2026, 5, 6, 7, 8, 9, tzinfo=UTC)
        (installed / "config.txt").write_text("A\nB3\nC\n")
        v2 = incoming(tmp_path, config__txt="A\nB4\nC\n")

        report = SmartSync(clock=lambda: when).sync(v2, installed)

        expected = installed / META_DIR / CONFLICTS_DIR / "20260506-070809-000000" / "config.txt"
        assert report.conflicts[0].backup_path == str(expected)
        assert expected.read_text() == "A\nB3\nC\n"


# =============================================================================
# Repeated runs and modes
# =============================================================================


class TestRepeatedRunsAndModes:
    """Tests for idempotence, overwrite mode and exclusions."""

    def test_second_run_reports_nothing(self, tmp_path: Path, installed: Path) -> None:
        """Test that re-applying the same tree yields no merges or conflicts."""
        (installed / "config.txt").write_text("A\nB3\nC\n")
        v2 = incoming(tmp_path, config__txt="A\nB4\nC\n")
        syncer = SmartSync()
        syncer.sync(v2, installed, backup_dir=tmp_path / "backup")

        report = syncer.sync(v2, installed, backup_dir=tmp_path / "backup2")

        assert report.files == []
        assert report.summary() == "no changes"
        assert not (tmp_path / "backup2").exists()

    def test_manifest_matches_final_state(self, tmp_path: Path, installed: Path) -> None:
        """Test that the refreshed manifest describes the installed tree."""
        (installed / "config.txt").write_text("A\nB2\nC\n")
        v2 = incoming(tmp_path, config__txt="A\nB\nC2\n")
        store = ManifestStore()

        SmartSync(manifests=store).sync(v2, installed)

        saved = store.load(installed)
        assert saved is not None
        assert saved.files == store.generate(installed).files

    def test_overwrite_mode_discards_local_edits(self, tmp_path: Path, installed: Path) -> None:
        """Test that overwrite mode copies every incoming file."""
        (installed / "README.md").write_text("# My notes\n")
        v2 = incoming(tmp_path)

        report = SmartSync().sync(v2, installed, mode=SyncMode.OVERWRITE)

        assert "README.md" in report.overwritten
        assert (installed / "README.md").read_text() == V1["README.md"]
        assert report.conflicts == []

    def test_excluded_names_are_left_alone(self, tmp_path: Path) -> None:
        """Test that preserved top-level names are neither copied nor deleted."""
        v1 = write_tree(tmp_path / "v1", {"app.js": "1", "data/seed.json": "[]"})
        dest = tmp_path / "installed"
        SmartSync().sync(v1, dest)
        (dest / "data/seed.json").write_text("[1, 2]")
        v2 = write_tree(tmp_path / "v2", {"app.js": "2"})

        report = SmartSync().sync(v2, dest, excludes=["data"])

        assert report.deleted == []
        assert (dest / "data/seed.json").read_text() == "[1, 2]"
        assert (dest / "app.js").read_text() == "2"

    def test_summary_counts_outcomes(self, tmp_path: Path, installed: Path) -> None:
        """Test the one-line summary."""
        (installed / "config.txt").write_text("A\nB2\nC\n")
        v2 = incoming(tmp_path, config__txt="A\nB\nC2\n", old__txt=None)

        report = SmartSync().sync(v2, installed)

        assert report.summary() == "1 merged, 1 deleted"


# =============================================================================
# Successive upgrades and changed entry kinds
# =============================================================================


class TestUpgradeSequences:
    """Tests for trees synced through several releases."""

    def test_user_file_survives_successive_upgrades(
        self, tmp_path: Path, installed: Path
    ) -> None:
        """Test that a file the user added is not deleted once it is in the manifest."""
        (installed / "notes.txt").write_text("mine\n")
        SmartSync().sync(incoming(tmp_path, old__txt=None), installed)
        v3 = dict(V1, **{"index.js": "console.log('v3');\n"})
        v3.pop("old.txt")

        report = SmartSync().sync(write_tree(tmp_path / "v3", v3), installed)

        assert report.outcome_for("notes.txt") is None
        assert report.deleted == []
        assert (installed / "notes.txt").read_text() == "mine\n"

    def test_kept_edit_is_merged_by_later_release(
        self, tmp_path: Path, installed: Path
    ) -> None:
        """Test that a kept local edit is merged, not overwritten, when upstream changes later."""
        (installed / "config.txt").write_text("A\nB-user\nC\n")
        first = SmartSync().sync(
            incoming(tmp_path, index__js="console.log('v2');\n"), installed
        )
        assert first.kept == ["config.txt"]
        v3 = dict(V1, **{"config.txt": "A\nB\nC2\n"})

        report = SmartSync().sync(
            write_tree(tmp_path / "v3", v3), installed, backup_dir=tmp_path / "backup"
        )

        assert report.merged == ["config.txt"]
        assert report.conflicts == []
        assert (installed / "config.txt").read_text() == "A\nB-user\nC2\n"

    def test_file_becomes_directory(self, tmp_path: Path) -> None:
        """Test that a shipped file replaced by a directory is deleted, not an error."""
        dest = tmp_path / "installed"
        SmartSync().sync(write_tree(tmp_path / "v1", {"app.js": "1", "docs": "old"}), dest)
        v2 = write_tree(tmp_path / "v2", {"app.js": "1", "docs/a.txt": "new"})

        report = SmartSync().sync(v2, dest, backup_dir=tmp_path / "backup")

        assert report.outcome_for("docs") == SyncOutcome.DELETED
        assert report.outcome_for("docs/a.txt") == SyncOutcome.ADDED
        assert read_tree(dest) == {"app.js": "1", "docs/a.txt": "new"}

    def test_directory_becomes_file(self, tmp_path: Path) -> None:
        """Test that a shipped directory replaced by a file is removed first."""
        dest = tmp_path / "installed"
        SmartSync().sync(write_tree(tmp_path / "v1", {"app.js": "1", "docs/a.txt": "old"}), dest)
        v2 = write_tree(tmp_path / "v2", {"app.js": "1", "docs": "flat"})

        report = SmartSync().sync(v2, dest, backup_dir=tmp_path / "backup")

        assert report.outcome_for("docs/a.txt") == SyncOutcome.DELETED
        assert report.outcome_for("docs") == SyncOutcome.ADDED
        assert (dest / "docs").read_text() == "flat"

    def test_user_files_in_replaced_directory_are_backed_up(self, tmp_path: Path) -> None:
        """Test that user content under a directory turned into a file is preserved."""
        dest = tmp_path / "installed"
        backup = tmp_path / "backup"
        SmartSync().sync(write_tree(tmp_path / "v1", {"app.js": "1", "docs/a.txt": "old"}), dest)
        (dest / "docs/mine.txt").write_text("keep me")
        v2 = write_tree(tmp_path / "v2", {"app.js": "1", "docs": "flat"})

        report = SmartSync().sync(v2, dest, backup_dir=backup)

        assert report.outcome_for("docs/a.txt") == SyncOutcome.DELETED
        assert report.outcome_for("docs") == SyncOutcome.CONFLICT
        assert (backup / "docs/mine.txt").read_text() == "keep me"
        assert not (backup / "docs/a.txt").exists()
        assert (dest / "docs").read_text() == "flat"

    def test_user_file_in_place_of_new_directory_is_backed_up(
        self, tmp_path: Path, installed: Path
    ) -> None:
        """Test that an unshipped file blocking a new directory goes to the backup."""
        backup = tmp_path / "backup"
        (installed / "docs").write_text("my docs")
        v2 = write_tree(incoming(tmp_path), {"docs/a.txt": "new"})

        report = SmartSync().sync(v2, installed, backup_dir=backup)

        assert report.outcome_for("docs") == SyncOutcome.CONFLICT
        assert report.outcome_for("docs/a.txt") == SyncOutcome.ADDED
        assert (backup / "docs").read_text() == "my docs"
        assert (installed / "docs/a.txt").read_text() == "new"
