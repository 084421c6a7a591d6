"""
Fail-fast step pipeline with whole-run rollback.

A pipeline is an ordered list of named steps sharing one mutable context.
Each step returns Done, Skipped or Failed; an exception or timeout escaping
a step is recorded as Failed with the error text preserved. On the first
failure no further step runs and the pipeline's rollback routine is
invoked once. Rollback actions report their own success so callers can tell
a clean rollback from a partial one.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar, assert_never

from pydantic import BaseModel, Field

from agentmgr.errors import AgentMgrError
from agentmgr.logging import get_logger

logger = get_logger(__name__)

C = TypeVar("C")


# =============================================================================
# Step outcomes
# =============================================================================


@dataclass(frozen=True)
class Done:
    """The step changed something."""

    message: str | None = None


@dataclass(frozen=True)
class Skipped:
    """The step had nothing to do; not an error."""

    message: str | None = None


@dataclass(frozen=True)
class Failed:
    """The step failed; the pipeline stops and rolls back."""

    error: str


StepOutcome = Done | Skipped | Failed


class StepStatus(str, Enum):
    """Recorded status of a step."""

    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


class StepResult(BaseModel):
    """
    Record of one executed step.

    Attributes:
        index: 1-based position in the pipeline.
        name: Step name.
        status: done, skipped or failed.
        message: Informational message.
        error: Failure text, verbatim.
        duration_ms: Wall time spent in the step.
    """

    index: int
    name: str
    status: StepStatus
    message: str | None = None
    error: str | None = None
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "index": self.index,
            "name": self.name,
            "status": self.status.value,
            "durationMs": self.duration_ms,
        }
        if self.message is not None:
            data["message"] = self.message
        if self.error is not None:
            data["error"] = self.error
        return data


class RollbackAction(BaseModel):
    """Outcome of one compensating action."""

    action: str
    success: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"action": self.action, "success": self.success}
        if self.error is not None:
            data["error"] = self.error
        return data


class PipelineRun(BaseModel):
    """
    In-memory record of one pipeline run.

    Attributes:
        steps: Results of the steps that ran, in order.
        failed_step: The failing step, if any.
        error_code: Error code of the exception that failed the step.
        rollback_performed: Whether rollback was invoked.
        rollback: Rollback action outcomes.
    """

    steps: list[StepResult] = Field(default_factory=list)
    failed_step: StepResult | None = None
    error_code: str | None = None
    rollback_performed: bool = False
    rollback: list[RollbackAction] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed_step is None

    @property
    def rollback_clean(self) -> bool:
        """True when every rollback action succeeded."""
        return all(action.success for action in self.rollback)


# =============================================================================
# Pipeline
# =============================================================================

StepFn = Callable[[C], Awaitable[StepOutcome]]
RollbackFn = Callable[[C], Awaitable[list[RollbackAction]]]


@dataclass(frozen=True)
class Step(Generic[C]):
    """A named pipeline step."""

    name: str
    run: StepFn[C]
    timeout: float | None = None


class Pipeline(Generic[C]):
    """
    Runs steps in order until the first failure, then rolls back.

    Example:
        >>> pipeline = Pipeline([Step("backup", backup), Step("sync", sync)], rollback=restore)
        >>> run = await pipeline.run(ctx)
        >>> run.success
        True
    """

    def __init__(
        self,
        steps: Sequence[Step[C]],
        rollback: RollbackFn[C] | None = None,
        *,
        step_timeout: float | None = None,
        on_step: Callable[[StepResult], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the pipeline.

        Args:
            steps: Steps in execution order.
            rollback: Invoked once with the context after the first failure.
            step_timeout: Default timeout for steps without their own.
            on_step: Called with each step result as soon as it is known.
            clock: Monotonic clock in seconds.
        """
        self.steps = list(steps)
        self._rollback = rollback
        self.step_timeout = step_timeout
        self._on_step = on_step
        self._clock = clock

    async def _execute(self, step: Step[C], ctx: C) -> tuple[StepOutcome, str | None]:
        timeout = step.timeout if step.timeout is not None else self.step_timeout
        try:
            if timeout is None:
                return await step.run(ctx), None
            return await asyncio.wait_for(step.run(ctx), timeout=timeout), None
        except TimeoutError:
            return Failed(f"Step {step.name} timed out after {timeout}s"), "timeout"
        except AgentMgrError as e:
            return Failed(e.message), e.error_code
        except Exception as e:
            logger.exception("Unexpected error in step", extra={"step": step.name})
            return Failed(str(e) or e.__class__.__name__), "internal"

    async def run(self, ctx: C) -> PipelineRun:
        """
        Execute the pipeline against ``ctx``.

        Returns:
            PipelineRun with per-step results and, after a failure, the
            rollback outcome.
        """
        record = PipelineRun()

        for index, step in enumerate(self.steps, start=1):
            started = self._clock()
            outcome, error_code = await self._execute(step, ctx)
            duration_ms = int((self._clock() - started) * 1000)

            match outcome:
                case Done(message=message):
                    result = StepResult(
                        index=index,
                        name=step.name,
                        status=StepStatus.DONE,
                        message=message,
                        duration_ms=duration_ms,
                    )
                case Skipped(message=message):
                    result = StepResult(
                        index=index,
                        name=step.name,
                        status=StepStatus.SKIPPED,
                        message=message,
                        duration_ms=duration_ms,
                    )
                case Failed(error=error):
                    result = StepResult(
                        index=index,
                        name=step.name,
                        status=StepStatus.FAILED,
                        error=error,
                        duration_ms=duration_ms,
                    )
                case _:
                    assert_never(outcome)

            record.steps.append(result)
            logger.info(
                "Step finished",
                extra={
                    "step": step.name,
                    "index": index,
                    "status": result.status.value,
                    "duration_ms": duration_ms,
                },
            )
            if self._on_step is not None:
                self._on_step(result)

            if result.status == StepStatus.FAILED:
                record.failed_step = result
                record.error_code = error_code or "step_failed"
                break

        if record.failed_step is not None and self._rollback is not None:
            logger.warning(
                "Pipeline failed; rolling back",
                extra={"step": record.failed_step.name, "error": record.failed_step.error},
            )
            record.rollback_performed = True
            record.rollback = await self._rollback(ctx)
            logger.info(
                "Rollback finished",
                extra={
                    "clean": record.rollback_clean,
                    "actions": [a.action for a in record.rollback],
                },
            )

        return record
