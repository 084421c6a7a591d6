"""
Tests for incoming releases.

Tests cover:
- Tree validation before an upgrade
- Version resolution (explicit or declared in the tree)
- Changelog reading and filtering by installed version
- Cleanup of the extracted tree
"""

from __future__ import annotations

from pathlib import Path

import pytest
from conftest import write_tree

from agentmgr.errors import FailedPreconditionError
from agentmgr.upgrade.release import IncomingRelease, filter_changelog, read_changelog

CHANGELOG = """# Changelog

## [1.2.0] - 2026-03-01
- new dashboard

## [1.1.0] - 2026-02-01
- fix login

## [1.0.0] - 2026-01-01
- initial release
"""


# =============================================================================
# IncomingRelease
# =============================================================================


class TestIncomingRelease:
    """Tests for IncomingRelease."""

    def test_validate_tree_missing(self, tmp_path: Path) -> None:
        """Test that a missing tree is a failed precondition."""
        release = IncomingRelease(temp_dir=tmp_path / "absent")

        with pytest.raises(FailedPreconditionError) as exc_info:
            release.validate_tree()

        assert exc_info.value.message.startswith("Temp directory not available")

    def test_validate_tree_present(self, tmp_path: Path) -> None:
        """Test that an existing tree passes validation."""
        IncomingRelease(temp_dir=tmp_path).validate_tree()

    def test_version_explicit(self, tmp_path: Path) -> None:
        """Test that the resolved version wins over the tree."""
        write_tree(tmp_path, {"package.json": '{"version": "1.0.0"}'})

        assert IncomingRelease(temp_dir=tmp_path, new_version="2.0.0").version() == "2.0.0"

    def test_version_from_tree(self, tmp_path: Path) -> None:
        """Test that the declared version is used when none was resolved."""
        write_tree(tmp_path, {"SKILL.md": "---\nversion: 1.5.0\n---\n"})

        assert IncomingRelease(temp_dir=tmp_path).version() == "1.5.0"

    def test_changelog(self, tmp_path: Path) -> None:
        """Test the changelog excerpt of a release."""
        write_tree(tmp_path, {"CHANGELOG.md": CHANGELOG})

        excerpt = IncomingRelease(temp_dir=tmp_path).changelog("1.1.0")

        assert excerpt == "## [1.2.0] - 2026-03-01\n- new dashboard"

    def test_cleanup(self, tmp_path: Path) -> None:
        """Test that cleanup removes the tree once."""
        release = IncomingRelease(temp_dir=write_tree(tmp_path / "t", {"a.txt": "a"}))

        assert release.cleanup() is True
        assert not release.temp_dir.exists()
        assert release.cleanup() is False


# =============================================================================
# Changelog helpers
# =============================================================================


class TestChangelog:
    """Tests for read_changelog and filter_changelog."""

    def test_read_changelog_missing(self, tmp_path: Path) -> None:
        """Test that a tree without a changelog gives None."""
        assert read_changelog(tmp_path) is None

    def test_filter_two_versions(self) -> None:
        """Test that every newer entry is kept."""
        excerpt = filter_changelog(CHANGELOG, "1.0.0")

        assert excerpt is not None
        assert "1.2.0" in excerpt
        assert "fix login" in excerpt
        assert "initial release" not in excerpt

    def test_filter_v_prefix(self) -> None:
        """Test that a v-prefixed installed version matches."""
        changelog = "## v1.1.0\n- fix\n## v1.0.0\n- init\n"

        assert filter_changelog(changelog, "v1.0.0") == "## v1.1.0\n- fix"

    def test_filter_up_to_date(self) -> None:
        """Test that nothing is returned when the newest entry is installed."""
        assert filter_changelog(CHANGELOG, "1.2.0") is None

    def test_filter_without_headers(self) -> None:
        """Test that unstructured text is returned unchanged."""
        assert filter_changelog("misc notes\n", "1.0.0") == "misc notes\n"

    def test_filter_without_installed_version(self) -> None:
        """Test that the whole changelog is kept for a first install."""
        assert filter_changelog(CHANGELOG, None) == CHANGELOG
