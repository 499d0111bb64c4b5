"""Ingestion scheduler: retries first, then one new unit per tick.

Lifecycle handled here:
    pending-ingestion -> processing -> ready | failed

Ticks are single-flight per scheduler instance. A tick that fires while
the previous one is still running returns immediately without doing
anything.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

from pubpipe.db.models import StepRecord, WorkUnit
from pubpipe.orchestrator.pipeline import run_ingestion, run_single_step
from pubpipe.orchestrator.runtime import Runtime
from pubpipe.orchestrator.state import (
    FAILED,
    PENDING_INGESTION,
    PROCESSING,
    READY,
    STEP_FAILED,
    STEP_PENDING,
    STEP_TERMINAL_OK,
    is_ingestion_step,
)
from pubpipe.orchestrator.steps import PipelineContext

logger = logging.getLogger(__name__)

UnitRunner = Callable[[Runtime, WorkUnit], Awaitable[PipelineContext]]
StepRunner = Callable[[Runtime, WorkUnit, str], Awaitable[PipelineContext]]


class IngestionScheduler:
    def __init__(
        self,
        runtime: Runtime,
        *,
        tick_seconds: Optional[float] = None,
        run_unit: UnitRunner = run_ingestion,
        run_step: StepRunner = run_single_step,
    ) -> None:
        self.runtime = runtime
        self.tick_seconds = tick_seconds or runtime.settings.ingestion.tick_seconds
        self._run_unit = run_unit
        self._run_step = run_step
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def tick(self) -> bool:
        """Run one scheduling pass; returns False if skipped because a pass is running."""
        if self._lock.locked():
            logger.debug("Ingestion tick skipped: previous tick still running")
            return False
        async with self._lock:
            try:
                await self._tick()
            except Exception:
                logger.error("Ingestion tick failed", exc_info=True)
        return True

    async def run_forever(self) -> None:
        """Fire a tick every `tick_seconds` until cancelled."""
        logger.info(f"Ingestion scheduler started (every {self.tick_seconds}s)")
        try:
            while True:
                task = asyncio.create_task(self.tick())
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                await asyncio.sleep(self.tick_seconds)
        finally:
            for task in list(self._tasks):
                task.cancel()
            logger.info("Ingestion scheduler stopped")

    async def _tick(self) -> None:
        retries = await self.runtime.tracker.get_pending_retry_steps()
        if retries:
            logger.info(f"Retrying {len(retries)} pending step(s)")
            by_unit: Dict[str, List[StepRecord]] = {}
            for record in retries:
                by_unit.setdefault(record.unit_ref, []).append(record)
            for unit_ref, records in by_unit.items():
                await self._retry_unit(unit_ref, sorted(records, key=lambda r: r.step_order))
            return

        unit = await self.runtime.units.oldest_in_status(PENDING_INGESTION)
        if unit is None:
            return
        if not await self.runtime.units.claim(unit.id, (PENDING_INGESTION,), PROCESSING):
            logger.debug(f"Unit {unit.source_ref} was claimed elsewhere")
            return
        await self._process(unit)

    async def _process(self, unit: WorkUnit) -> None:
        logger.info(f"[{unit.source_ref}] ingestion started")
        try:
            ctx = await self._run_unit(self.runtime, unit)
            error = ctx.error
        except Exception as e:
            logger.error(f"[{unit.source_ref}] ingestion aborted", exc_info=True)
            error = f"unexpected error: {type(e).__name__}: {e}"

        if error is None:
            await self.runtime.units.transition(unit.id, READY, error_message=None)
            logger.info(f"[{unit.source_ref}] ingestion complete")
        else:
            await self.runtime.units.transition(unit.id, FAILED, error_message=error)
            logger.warning(f"[{unit.source_ref}] ingestion failed: {error}")

    async def _retry_unit(self, unit_ref: str, records: List[StepRecord]) -> None:
        """Run a unit's pending steps one by one in step order, then settle it once."""
        unit = await self.runtime.units.get(unit_ref)
        if unit is None:
            logger.warning(f"Retry for unknown unit {unit_ref} ignored")
            return

        for record in records:
            logger.info(f"[{unit_ref}] retrying {record.step_name}")
            try:
                ctx = await self._run_step(self.runtime, unit, record.step_name)
                if ctx.error:
                    logger.warning(f"[{unit_ref}] retry of {record.step_name} failed: {ctx.error}")
            except Exception:
                logger.error(f"[{unit_ref}] retry of {record.step_name} aborted", exc_info=True)

        await self._settle_after_retry(unit_ref)

    async def _settle_after_retry(self, unit_ref: str) -> None:
        """Move a failed unit on once its retried steps allow it.

        All ingestion steps done -> ready; steps never reached by the failed
        run -> back to pending-ingestion so the chain resumes; any failed
        step keeps the unit failed.
        """
        unit = await self.runtime.units.get(unit_ref)
        if unit is None or unit.status != FAILED:
            return

        steps = [s for s in await self.runtime.tracker.get_steps(unit_ref) if is_ingestion_step(s.step_name)]
        failed = [s for s in steps if s.status == STEP_FAILED]
        if failed:
            error = failed[0].error_message or f"{failed[0].step_name} failed"
            await self.runtime.units.update_fields(unit.id, error_message=error)
            return

        if steps and all(s.status in STEP_TERMINAL_OK for s in steps):
            if await self.runtime.units.claim(unit.id, (FAILED,), READY):
                await self.runtime.units.update_fields(unit.id, error_message=None)
            return

        if any(s.status == STEP_PENDING for s in steps):
            await self.runtime.units.claim(unit.id, (FAILED,), PENDING_INGESTION)
