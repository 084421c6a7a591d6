"""
Structured upgrade results.

``UpgradeResult`` is the only object callers consume. ``to_dict()`` renders
it with stable camelCase keys so automation layers can parse it without
importing this package.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from agentmgr.upgrade.context import UpgradeContext
from agentmgr.upgrade.pipeline import PipelineRun, RollbackAction, StepResult


class MergeConflict(BaseModel):
    """A conflicting file and where its local content was preserved."""

    file: str
    backup_path: str | None = None


class RollbackSummary(BaseModel):
    """Rollback outcome attached to a failed result."""

    performed: bool
    steps: list[RollbackAction] = Field(default_factory=list)

    @property
    def clean(self) -> bool:
        return all(step.success for step in self.steps)


class UpgradeResult(BaseModel):
    """
    Outcome of one upgrade attempt.

    Attributes:
        action: ``upgrade`` or ``self_upgrade``.
        target: Component name or ``_self``.
        success: Whether every step passed.
        from_version: Installed version before the attempt.
        to_version: Installed version after a successful attempt.
        steps: Step results in execution order.
        backup_location: Pre-upgrade backup directory.
        merge_conflicts: Files resolved as conflicts.
        merged_files: Files merged cleanly.
        failed_step: 1-based index of the failed step.
        failed_step_name: Name of the failed step.
        error: Failure text, verbatim.
        error_code: Machine-readable failure category.
        rollback: Rollback outcome when a step failed.
    """

    action: str
    target: str
    success: bool
    from_version: str | None = None
    to_version: str | None = None
    steps: list[StepResult] = Field(default_factory=list)
    backup_location: str | None = None
    merge_conflicts: list[MergeConflict] = Field(default_factory=list)
    merged_files: list[str] = Field(default_factory=list)
    failed_step: int | None = None
    failed_step_name: str | None = None
    error: str | None = None
    error_code: str | None = None
    rollback: RollbackSummary | None = None

    @property
    def rolled_back_cleanly(self) -> bool | None:
        """None when no rollback ran, else whether every action succeeded."""
        if self.rollback is None or not self.rollback.performed:
            return None
        return self.rollback.clean

    @classmethod
    def failure(
        cls,
        action: str,
        target: str,
        error: str,
        error_code: str,
        from_version: str | None = None,
    ) -> UpgradeResult:
        """Result for an attempt that failed before any step ran."""
        return cls(
            action=action,
            target=target,
            success=False,
            from_version=from_version,
            error=error,
            error_code=error_code,
        )

    @classmethod
    def from_run(
        cls,
        action: str,
        ctx: UpgradeContext,
        run: PipelineRun,
        to_version: str | None = None,
    ) -> UpgradeResult:
        """Assemble the result of a finished pipeline run."""
        result = cls(
            action=action,
            target=ctx.target,
            success=run.success,
            from_version=ctx.from_version,
            to_version=to_version if run.success else None,
            steps=list(run.steps),
            backup_location=str(ctx.backup_dir) if ctx.backup_dir else None,
            merge_conflicts=[
                MergeConflict(file=c.path, backup_path=c.backup_path)
                for c in ctx.merge_conflicts
            ],
            merged_files=ctx.merged_files,
        )
        if run.failed_step is not None:
            result.failed_step = run.failed_step.index
            result.failed_step_name = run.failed_step.name
            result.error = run.failed_step.error
            result.error_code = run.error_code
            result.rollback = RollbackSummary(
                performed=run.rollback_performed,
                steps=list(run.rollback),
            )
        return result

    def to_dict(self) -> dict[str, Any]:
        """Render the machine-parseable result."""
        data: dict[str, Any] = {
            "action": self.action,
            "target": self.target,
            "success": self.success,
            "from": self.from_version,
            "to": self.to_version,
            "steps": [step.to_dict() for step in self.steps],
        }
        if self.backup_location:
            data["backupLocation"] = self.backup_location
        if self.merge_conflicts:
            data["mergeConflicts"] = [
                {"file": c.file, "backupPath": c.backup_path} for c in self.merge_conflicts
            ]
        if self.merged_files:
            data["mergedFiles"] = list(self.merged_files)
        if self.failed_step is not None:
            data["failedStep"] = self.failed_step
            data["failedStepName"] = self.failed_step_name
        if self.error is not None:
            data["error"] = self.error
            data["errorCode"] = self.error_code
        if self.rollback is not None:
            data["rollback"] = {
                "performed": self.rollback.performed,
                "steps": [step.to_dict() for step in self.rollback.steps],
            }
        return data
