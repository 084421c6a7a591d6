"""
Tests for the step pipeline and rollback helpers.

Tests cover:
- Ordered execution and per-step results
- Fail-fast behaviour and single rollback invocation
- Exceptions and timeouts recorded as failures with their text
- Independent rollback actions
- restore_tree
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path

import pytest
from conftest import read_tree, write_tree

from agentmgr.errors import FailedPreconditionError, SyncError
from agentmgr.upgrade.pipeline import (
    Done,
    Failed,
    Pipeline,
    RollbackAction,
    Skipped,
    Step,
    StepResult,
    StepStatus,
)
from agentmgr.upgrade.rollback import attempt, restore_tree, run_actions


@dataclass
class Ctx:
    ran: list[str] = field(default_factory=list)
    rollbacks: int = 0


def recording(name: str, outcome: Done | Skipped | Failed | None = None):
    async def run(ctx: Ctx) -> Done | Skipped | Failed:
        ctx.ran.append(name)
        return outcome or Done()

    return Step(name, run)


async def count_rollback(ctx: Ctx) -> list[RollbackAction]:
    ctx.rollbacks += 1
    return [RollbackAction(action="restore_files", success=True)]


# =============================================================================
# Execution
# =============================================================================


class TestPipelineRun:
    """Tests for Pipeline.run."""

    @pytest.mark.asyncio
    async def test_runs_all_steps_in_order(self) -> None:
        """Test a successful run records every step."""
        ctx = Ctx()
        pipeline = Pipeline([recording("a"), recording("b", Skipped("nothing")), recording("c")])

        run = await pipeline.run(ctx)

        assert run.success
        assert ctx.ran == ["a", "b", "c"]
        assert [s.index for s in run.steps] == [1, 2, 3]
        assert [s.status for s in run.steps] == [
            StepStatus.DONE,
            StepStatus.SKIPPED,
            StepStatus.DONE,
        ]
        assert run.steps[1].message == "nothing"
        assert not run.rollback_performed

    @pytest.mark.asyncio
    async def test_stops_at_first_failure(self) -> None:
        """Test that no step runs after a failure and rollback runs once."""
        ctx = Ctx()
        pipeline = Pipeline(
            [recording("a"), recording("b", Failed("bad")), recording("c")],
            rollback=count_rollback,
        )

        run = await pipeline.run(ctx)

        assert not run.success
        assert ctx.ran == ["a", "b"]
        assert len(run.steps) == 2
        assert run.failed_step is not None
        assert run.failed_step.name == "b"
        assert run.failed_step.error == "bad"
        assert run.error_code == "step_failed"
        assert run.rollback_performed
        assert ctx.rollbacks == 1
        assert run.rollback_clean

    @pytest.mark.asyncio
    async def test_exception_text_is_preserved(self) -> None:
        """Test that an exception's message becomes the step error verbatim."""

        async def boom(ctx: Ctx) -> Done:
            raise SyncError("Failed to sync config.txt: disk full")

        run = await Pipeline([Step("smart_sync", boom)]).run(Ctx())

        assert run.failed_step is not None
        assert run.failed_step.error == "Failed to sync config.txt: disk full"
        assert run.error_code == "sync_failed"

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_internal(self) -> None:
        """Test that non-domain exceptions are recorded as internal errors."""

        async def boom(ctx: Ctx) -> Done:
            raise KeyError("missing")

        run = await Pipeline([Step("x", boom)], rollback=count_rollback).run(Ctx())

        assert run.error_code == "internal"
        assert run.failed_step is not None
        assert "missing" in (run.failed_step.error or "")
        assert run.rollback_performed

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self) -> None:
        """Test that a step exceeding its timeout fails the pipeline."""

        async def slow(ctx: Ctx) -> Done:
            await asyncio.sleep(5)
            return Done()

        ctx = Ctx()
        pipeline = Pipeline(
            [Step("slow", slow, timeout=0.01), recording("after")],
            rollback=count_rollback,
        )

        run = await pipeline.run(ctx)

        assert run.error_code == "timeout"
        assert run.failed_step is not None
        assert "timed out" in (run.failed_step.error or "")
        assert ctx.ran == []
        assert ctx.rollbacks == 1

    @pytest.mark.asyncio
    async def test_on_step_sees_each_result(self) -> None:
        """Test that the callback is invoked as each step completes."""
        seen: list[StepResult] = []
        pipeline = Pipeline([recording("a"), recording("b")], on_step=seen.append)

        await pipeline.run(Ctx())

        assert [r.name for r in seen] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_duration_from_clock(self) -> None:
        """Test that durations are measured with the injected clock."""
        ticks = iter([0.0, 0.25])

        run = await Pipeline([recording("a")], clock=lambda: next(ticks)).run(Ctx())

        assert run.steps[0].duration_ms == 250

    def test_step_result_to_dict(self) -> None:
        """Test the serialised step shape."""
        result = StepResult(index=1, name="backup", status=StepStatus.DONE, message="ok")

        assert result.to_dict() == {
            "index": 1,
            "name": "backup",
            "status": "done",
            "durationMs": 0,
            "message": "ok",
        }


# =============================================================================
# Rollback helpers
# =============================================================================


class TestRollbackHelpers:
    """Tests for attempt, run_actions and restore_tree."""

    @pytest.mark.asyncio
    async def test_failed_action_does_not_stop_later_ones(self) -> None:
        """Test that every rollback action is attempted."""
        calls: list[str] = []

        async def reinstall() -> None:
            calls.append("reinstall")
            raise FailedPreconditionError("npm missing")

        async def restart() -> None:
            calls.append("restart")

        actions = await run_actions([("restore_dependencies", reinstall), ("restart_service", restart)])

        assert calls == ["reinstall", "restart"]
        assert [a.success for a in actions] == [False, True]
        assert actions[0].error == "npm missing"

    @pytest.mark.asyncio
    async def test_attempt_reports_unexpected_errors(self) -> None:
        """Test that arbitrary exceptions are reported, not raised."""

        async def broken() -> None:
            raise OSError("read-only file system")

        action = await attempt("restore_files", broken)

        assert not action.success
        assert action.error == "read-only file system"

    def test_restore_tree_mirrors_backup(self, tmp_path: Path) -> None:
        """Test that restore removes added files and keeps preserved ones."""
        backup = write_tree(tmp_path / "backup", {"a.txt": "old"})
        target = write_tree(
            tmp_path / "target",
            {"a.txt": "new", "added.txt": "x", "data/db.json": "{}", ".backup/b/a.txt": "old"},
        )

        restore_tree(backup, target, preserve=["data"])

        assert read_tree(target) == {"a.txt": "old", "data/db.json": "{}"}
        assert (target / ".backup/b/a.txt").exists()

    def test_restore_tree_missing_backup(self, tmp_path: Path) -> None:
        """Test that a missing backup is reported."""
        with pytest.raises(FailedPreconditionError):
            restore_tree(tmp_path / "absent", tmp_path)
