"""Process-level control: scheduler lifecycle and manual step retries."""

import asyncio
import logging
from typing import List, Optional

from pubpipe.db.models import StepRecord
from pubpipe.orchestrator.ingestion import IngestionScheduler
from pubpipe.orchestrator.publication import PublicationScheduler
from pubpipe.orchestrator.runtime import Runtime
from pubpipe.orchestrator.state import PROCESSING, STEP_RUNNING, STEPS_BY_NAME, is_ingestion_step
from pubpipe.services.unit_service import UnitNotFound

logger = logging.getLogger(__name__)


class StepNotRetryable(ValueError):
    """The step does not exist, is not retryable, or is not an ingestion step."""


class StepBusy(Exception):
    """The step or its unit is running right now."""


async def request_step_retry(runtime: Runtime, unit_ref: str, step_name: str) -> StepRecord:
    """Reset one ingestion step to pending so a later ingestion tick re-runs it.

    Raises:
        UnitNotFound: If the unit does not exist.
        StepNotRetryable: If the step cannot be retried manually.
        StepBusy: If the step or its unit is being processed.
    """
    unit = await runtime.units.get(unit_ref)
    if unit is None:
        raise UnitNotFound(f"Unit {unit_ref} not found")

    definition = STEPS_BY_NAME.get(step_name)
    if definition is None:
        raise StepNotRetryable(f"Unknown step: {step_name}")
    if not is_ingestion_step(step_name):
        raise StepNotRetryable(f"{step_name} is a publication step; use manual publish instead")
    if not definition.can_retry:
        raise StepNotRetryable(f"{step_name} cannot be retried")

    if unit.status == PROCESSING:
        raise StepBusy(f"Unit {unit_ref} is being processed")

    await runtime.tracker.initialize_steps(unit_ref)
    record = await runtime.tracker.get_step(unit_ref, step_name)
    if record is not None and record.status == STEP_RUNNING:
        raise StepBusy(f"{step_name} is running")

    await runtime.tracker.reset_step(unit_ref, step_name)
    logger.info(f"[{unit_ref}] manual retry of {step_name} requested")
    return await runtime.tracker.get_step(unit_ref, step_name)


class SchedulerService:
    """Owns the two scheduler loops for one process."""

    def __init__(
        self,
        runtime: Runtime,
        ingestion: Optional[IngestionScheduler] = None,
        publication: Optional[PublicationScheduler] = None,
    ) -> None:
        self.runtime = runtime
        self.ingestion = ingestion or IngestionScheduler(runtime)
        self.publication = publication or PublicationScheduler(runtime)
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def start(self) -> None:
        """Recover from any interrupted run, then start both loops."""
        if self.running:
            return
        report = await self.runtime.tracker.reset_all_running_on_startup()
        logger.info(
            f"Startup recovery: {report.steps_reset} step(s) reset, "
            f"{report.total_units} unit(s) returned to a resumable state"
        )
        self._tasks = [
            asyncio.create_task(self.ingestion.run_forever(), name="ingestion-scheduler"),
            asyncio.create_task(self.publication.run_forever(), name="publication-scheduler"),
        ]

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
