"""
Tests for the three-way merge engine.

Tests cover:
- Clean merges of non-overlapping and adjacent edits
- Conflict markers for overlapping edits
- Identical changes on both sides
- Insertions and deletions
- Minimal diffs over repeated lines
- The diff3 backend and its unavailability
"""

from __future__ import annotations

import shutil

import pytest

from agentmgr.errors import InvalidArgumentError, MergeUnavailableError
from agentmgr.upgrade.merge import (
    BASE_MARKER,
    INCOMING_MARKER,
    LOCAL_MARKER,
    MAX_EDIT_DISTANCE,
    SEPARATOR_MARKER,
    Diff3Merger,
    LineMerger,
    get_merger,
    shortest_edit,
    split_lines,
)

# =============================================================================
# LineMerger
# =============================================================================


class TestLineMerger:
    """Tests for the builtin line merger."""

    def test_adjacent_edits_merge_cleanly(self) -> None:
        """Test the config.txt scenario: edits on neighbouring lines."""
        result = LineMerger().merge("A\nB\nC\n", "A\nB2\nC\n", "A\nB\nC2\n")

        assert result.clean
        assert result.content == "A\nB2\nC2\n"
        assert result.conflict_count == 0

    def test_same_line_edits_conflict(self) -> None:
        """Test that both sides changing one line produce markers."""
        result = LineMerger().merge("A\nB\nC\n", "A\nB3\nC\n", "A\nB4\nC\n")

        assert not result.clean
        assert result.conflict_count == 1
        assert result.content == (
            "A\n"
            f"{LOCAL_MARKER}\n"
            "B3\n"
            f"{BASE_MARKER}\n"
            "B\n"
            f"{SEPARATOR_MARKER}\n"
            "B4\n"
            f"{INCOMING_MARKER}\n"
            "C\n"
        )

    def test_only_local_changed(self) -> None:
        """Test that an unchanged incoming side keeps local content."""
        result = LineMerger().merge("A\nB\n", "A\nX\n", "A\nB\n")

        assert result.clean
        assert result.content == "A\nX\n"

    def test_only_incoming_changed(self) -> None:
        """Test that an unchanged local side takes incoming content."""
        result = LineMerger().merge("A\nB\n", "A\nB\n", "A\nY\n")

        assert result.clean
        assert result.content == "A\nY\n"

    def test_identical_changes_taken_once(self) -> None:
        """Test that the same edit on both sides is not a conflict."""
        base = "A\nB\nC\nD\n"
        local = "A\nX\nC\nD\n"
        incoming = "A\nX\nC\nE\n"

        result = LineMerger().merge(base, local, incoming)

        assert result.clean
        assert result.content == "A\nX\nC\nE\n"

    def test_distant_edits_merge(self) -> None:
        """Test edits far apart in a longer file."""
        base = "".join(f"line{i}\n" for i in range(10))
        local = base.replace("line1\n", "local1\n")
        incoming = base.replace("line8\n", "incoming8\n")

        result = LineMerger().merge(base, local, incoming)

        assert result.clean
        assert "local1\n" in result.content
        assert "incoming8\n" in result.content
        assert result.content.count("\n") == 10

    def test_insertions_at_different_places(self) -> None:
        """Test that insertions at both ends merge cleanly."""
        result = LineMerger().merge("A\nB\n", "A\nB\nL\n", "I\nA\nB\n")

        assert result.clean
        assert result.content == "I\nA\nB\nL\n"

    def test_insertions_at_same_place_conflict(self) -> None:
        """Test that different insertions at one point conflict."""
        result = LineMerger().merge("A\nB\n", "A\nB\nL\n", "A\nB\nM\n")

        assert not result.clean
        assert LOCAL_MARKER in result.content
        assert "L\n" in result.content
        assert "M\n" in result.content

    def test_deletion_and_neighbouring_edit(self) -> None:
        """Test a local deletion next to an incoming edit."""
        result = LineMerger().merge("A\nB\nC\n", "A\nC\n", "A\nB\nC2\n")

        assert result.clean
        assert result.content == "A\nC2\n"

    def test_missing_trailing_newline_in_conflict(self) -> None:
        """Test that conflict blocks stay line-terminated."""
        result = LineMerger().merge("A\nB", "A\nB1", "A\nB2")

        assert not result.clean
        assert "B1\n" + BASE_MARKER in result.content
        assert result.content.endswith(INCOMING_MARKER + "\n")

    def test_repeated_lines_keep_both_changes(self) -> None:
        """Test that an insertion among identical lines does not swallow a deletion."""
        base = "}\n" * 6
        local = "}\n# note\n" + "}\n" * 5
        incoming = "}\n" * 5

        result = LineMerger().merge(base, local, incoming)

        assert result.clean
        assert result.content == "}\n# note\n" + "}\n" * 4
        assert result.content.count("}\n") == 5

    def test_repeated_blank_lines(self) -> None:
        """Test edits separated only by repeated blank lines."""
        base = "a\n\n\n\nb\n"
        local = "a\n\n\nb\n"
        incoming = "a\n\n\n\nb\n\n"

        result = LineMerger().merge(base, local, incoming)

        assert result.clean
        assert result.content == "a\n\n\nb\n\n"

    def test_too_many_differences_is_unavailable(self) -> None:
        """Test that wholly rewritten large inputs are not merged in-process."""
        base = "".join(f"base{i}\n" for i in range(MAX_EDIT_DISTANCE))
        local = "".join(f"local{i}\n" for i in range(MAX_EDIT_DISTANCE))
        incoming = base + "tail\n"

        with pytest.raises(MergeUnavailableError):
            LineMerger().merge(base, local, incoming)

    def test_shortest_edit_is_minimal(self) -> None:
        """Test that kept lines form a longest common subsequence."""
        a = ["x", "}", "}", "}", "y"]
        b = ["}", "x", "}", "}", "y", "}"]

        pairs = shortest_edit(a, b)

        assert len(pairs) == 4
        assert all(a[i] == b[j] for i, j in pairs)
        assert pairs == sorted(pairs)

    def test_split_lines_keeps_terminators(self) -> None:
        """Test split_lines round trips through join."""
        assert split_lines("A\nB\n") == ["A\n", "B\n"]
        assert split_lines("A\nB") == ["A\n", "B"]
        assert split_lines("") == []


# =============================================================================
# Diff3Merger
# =============================================================================


class TestDiff3Merger:
    """Tests for the diff3 backend."""

    def test_missing_executable_is_unavailable(self) -> None:
        """Test that a missing tool raises MergeUnavailableError."""
        merger = Diff3Merger(executable="agentmgr-no-such-diff3")

        assert not merger.is_available()
        with pytest.raises(MergeUnavailableError):
            merger.merge("A\n", "B\n", "C\n")

    @pytest.mark.integration
    @pytest.mark.skipif(shutil.which("diff3") is None, reason="diff3 not installed")
    def test_diff3_clean_merge(self) -> None:
        """Test a clean merge through GNU diff3."""
        result = Diff3Merger().merge("A\nB\nC\nD\nE\n", "A\nB1\nC\nD\nE\n", "A\nB\nC\nD\nE1\n")

        assert result.clean
        assert result.content == "A\nB1\nC\nD\nE1\n"

    @pytest.mark.integration
    @pytest.mark.skipif(shutil.which("diff3") is None, reason="diff3 not installed")
    def test_diff3_conflict(self) -> None:
        """Test that diff3 conflicts are reported as unclean."""
        result = Diff3Merger().merge("A\nB\nC\n", "A\nB3\nC\n", "A\nB4\nC\n")

        assert not result.clean
        assert result.conflict_count == 1


class TestGetMerger:
    """Tests for get_merger."""

    def test_known_backends(self) -> None:
        """Test that both configured names resolve."""
        assert isinstance(get_merger("builtin"), LineMerger)
        assert isinstance(get_merger("diff3"), Diff3Merger)

    def test_unknown_backend(self) -> None:
        """Test that an unknown name is rejected."""
        with pytest.raises(InvalidArgumentError):
            get_merger("git")
