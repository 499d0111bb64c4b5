"""Sequential chain executor with per-step fault isolation.

TaskChain runs its steps in order against one PipelineContext. A StepError
is an ordinary failure; any other exception is caught here as well and
turned into a failure with a diagnostic message, so nothing a step raises
ever reaches the scheduler.
"""

import logging
import time
from typing import List, Sequence

from pubpipe.orchestrator.state import STEP_COMPLETED, STEP_FAILED, STEP_RUNNING, STEP_SKIPPED
from pubpipe.orchestrator.step_tracker import StepTracker, StepTrackingError
from pubpipe.orchestrator.steps import PipelineContext, PipelineStep, StepError, StepOutcome

logger = logging.getLogger(__name__)


class TrackedStep(PipelineStep):
    """Wrap a step so every run is mirrored onto its StepRecord.

    Tracker failures are logged and never change the step's outcome.
    """

    def __init__(self, step: PipelineStep, tracker: StepTracker, unit_ref: str) -> None:
        self.step = step
        self.tracker = tracker
        self.unit_ref = unit_ref
        self.name = step.name
        self.reads = step.reads
        self.writes = step.writes

    async def execute(self, ctx: PipelineContext) -> StepOutcome:
        await self._track(STEP_RUNNING)
        try:
            outcome = await self.step.execute(ctx)
        except StepError as e:
            await self._track(STEP_FAILED, str(e))
            raise
        except Exception as e:
            await self._track(STEP_FAILED, _unexpected_message(self.name, e))
            raise

        if outcome is StepOutcome.SKIPPED:
            await self._track(STEP_SKIPPED)
        else:
            await self._track(STEP_COMPLETED)
        try:
            await self.tracker.update_result(self.unit_ref, self.name, ctx.snapshot(self.writes))
        except StepTrackingError as e:
            logger.error(f"Could not store result of {self.unit_ref}/{self.name}: {e}")
        return outcome

    async def _track(self, status: str, error_message: str | None = None) -> None:
        try:
            await self.tracker.update_status(self.unit_ref, self.name, status, error_message)
        except StepTrackingError as e:
            logger.error(f"Could not mark {self.unit_ref}/{self.name} {status}: {e}")


def _unexpected_message(step_name: str, exc: BaseException) -> str:
    return f"unexpected error in {step_name}: {type(exc).__name__}: {exc}"


class TaskChain:
    """Ordered list of steps sharing one context."""

    def __init__(self, steps: Sequence[PipelineStep], stop_on_failure: bool = True) -> None:
        self.steps: List[PipelineStep] = list(steps)
        self.stop_on_failure = stop_on_failure

    async def run(self, ctx: PipelineContext) -> PipelineContext:
        """Execute every step in order and return the context.

        The first failure message is written to ctx.error. With
        stop_on_failure the remaining steps are not started.
        """
        ref = ctx.unit.source_ref
        for index, step in enumerate(self.steps, start=1):
            logger.info(f"[{ref}] step {index}/{len(self.steps)}: {step.name}")
            step_start = time.monotonic()
            try:
                with ctx.writing(step.writes):
                    outcome = await step.execute(ctx)
            except StepError as e:
                message = str(e) or f"{step.name} failed"
                logger.error(f"[{ref}] {step.name} failed: {message}")
                failed = True
            except Exception as e:
                message = _unexpected_message(step.name, e)
                logger.error(f"[{ref}] {message}", exc_info=True)
                failed = True
            else:
                failed = False
                logger.info(
                    f"[{ref}] {step.name} {getattr(outcome, 'value', outcome)} "
                    f"in {time.monotonic() - step_start:.2f}s"
                )

            if failed:
                if ctx.error is None:
                    ctx.error = message
                if self.stop_on_failure:
                    logger.info(f"[{ref}] chain stopped after {step.name}")
                    break

        return ctx
