"""Durable per-unit, per-step execution tracking.

Every operation opens its own session and is either a single UPDATE or one
transaction, so a failure never leaves a record half-written. Database
errors surface as StepTrackingError; callers log them and carry on.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pubpipe.db.models import StepRecord, WorkUnit, utcnow
from pubpipe.orchestrator.state import (
    FAILED,
    INGESTION_STEPS,
    IN_PROGRESS_RECOVERY,
    PENDING_INGESTION,
    PROCESSING,
    STEP_COMPLETED,
    STEP_DEFINITIONS,
    STEP_FAILED,
    STEP_PENDING,
    STEP_RUNNING,
    STEP_SKIPPED,
    STEP_STATUSES,
    StepDefinition,
)

logger = logging.getLogger(__name__)


class StepTrackingError(Exception):
    """Raised when a step record cannot be read or written."""


@dataclass
class StepProgress:
    total: int
    completed: int
    failed: int
    skipped: int
    current_step: Optional[str]
    percent: int


@dataclass
class RecoveryReport:
    steps_reset: int = 0
    retries_flagged: int = 0
    units_reset: Dict[str, int] = field(default_factory=dict)

    @property
    def total_units(self) -> int:
        return sum(self.units_reset.values())


def _duration_ms(start: Optional[datetime], end: datetime) -> int:
    if start is None:
        return 0
    return max(0, int((end - start).total_seconds() * 1000))


class StepTracker:
    """Persist and query StepRecords for work units."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def initialize_steps(
        self,
        unit_ref: str,
        definitions: Iterable[StepDefinition] = STEP_DEFINITIONS,
    ) -> bool:
        """Create the unit's step records unless any already exist.

        Returns True if records were created, False if the unit was
        already initialized.
        """
        try:
            async with self._session_factory() as session:
                existing = await session.scalar(
                    select(func.count(StepRecord.id)).where(StepRecord.unit_ref == unit_ref)
                )
                if existing:
                    return False

                now = self._clock()
                session.add_all([
                    StepRecord(
                        unit_ref=unit_ref,
                        step_name=d.name,
                        step_order=d.order,
                        status=STEP_PENDING,
                        can_retry=d.can_retry,
                        duration_ms=0,
                        attempts=0,
                        created_at=now,
                        updated_at=now,
                    )
                    for d in definitions
                ])
                await session.commit()
        except IntegrityError:
            # Another writer initialized the same unit first
            logger.debug(f"Steps for {unit_ref} already initialized concurrently")
            return False
        except SQLAlchemyError as e:
            raise StepTrackingError(f"Failed to initialize steps for {unit_ref}: {e}") from e

        logger.info(f"Initialized step records for {unit_ref}")
        return True

    async def update_status(
        self,
        unit_ref: str,
        step_name: str,
        status: str,
        error_message: Optional[str] = None,
    ) -> None:
        """Move a step to `status`, stamping start/end times and duration."""
        if status not in STEP_STATUSES:
            raise ValueError(f"Unknown step status: {status}")

        try:
            async with self._session_factory() as session:
                record = await self._load(session, unit_ref, step_name)
                now = self._clock()
                record.status = status
                if status == STEP_RUNNING:
                    record.start_time = now
                    record.end_time = None
                    record.attempts = (record.attempts or 0) + 1
                    record.retry_requested_at = None
                    record.error_message = None
                elif status in (STEP_COMPLETED, STEP_FAILED, STEP_SKIPPED):
                    record.end_time = now
                    record.duration_ms = _duration_ms(record.start_time, now)
                if error_message:
                    record.error_message = error_message
                await session.commit()
        except SQLAlchemyError as e:
            raise StepTrackingError(
                f"Failed to set {unit_ref}/{step_name} to {status}: {e}"
            ) from e

    async def update_result(self, unit_ref: str, step_name: str, snapshot: Dict[str, Any]) -> None:
        """Store the step's context contribution as JSON.

        A snapshot that cannot be serialized is stored as an empty string.
        """
        try:
            payload = json.dumps(snapshot, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            logger.warning(f"Result of {unit_ref}/{step_name} is not serializable: {e}")
            payload = ""

        await self._update_one(unit_ref, step_name, result_data=payload)

    async def reset_step(self, unit_ref: str, step_name: str) -> None:
        """Return a step to pending, clearing its previous run, and flag it for retry."""
        await self._update_one(
            unit_ref,
            step_name,
            status=STEP_PENDING,
            start_time=None,
            end_time=None,
            duration_ms=0,
            error_message=None,
            result_data=None,
            retry_requested_at=self._clock(),
        )
        logger.info(f"Step {unit_ref}/{step_name} reset to pending")

    async def reset_all_running_on_startup(self) -> RecoveryReport:
        """Return everything a crash left in progress to a resumable state.

        Runs as one transaction: running steps go back to pending and each
        in-progress unit code goes back to the code it was claimed from.
        Running steps of units that are not resumed by the full chain are
        flagged so the retry path picks them up.
        """
        report = RecoveryReport()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    for from_code, to_code in IN_PROGRESS_RECOVERY.items():
                        result = await session.execute(
                            update(WorkUnit)
                            .where(WorkUnit.status == from_code)
                            .values(status=to_code)
                            .execution_options(synchronize_session=False)
                        )
                        report.units_reset[from_code] = result.rowcount or 0

                    resumed_units = select(WorkUnit.source_ref).where(
                        WorkUnit.status == PENDING_INGESTION
                    )
                    flagged = await session.execute(
                        update(StepRecord)
                        .where(
                            StepRecord.status == STEP_RUNNING,
                            StepRecord.unit_ref.not_in(resumed_units),
                        )
                        .values(status=STEP_PENDING, retry_requested_at=self._clock())
                        .execution_options(synchronize_session=False)
                    )
                    report.retries_flagged = flagged.rowcount or 0

                    rest = await session.execute(
                        update(StepRecord)
                        .where(StepRecord.status == STEP_RUNNING)
                        .values(status=STEP_PENDING)
                        .execution_options(synchronize_session=False)
                    )
                    report.steps_reset = report.retries_flagged + (rest.rowcount or 0)
        except SQLAlchemyError as e:
            raise StepTrackingError(f"Startup recovery failed: {e}") from e

        if report.steps_reset or report.total_units:
            logger.warning(
                f"Recovered from interrupted run: {report.steps_reset} steps, "
                f"units {report.units_reset}"
            )
        return report

    async def get_pending_retry_steps(self) -> List[StepRecord]:
        """Pending ingestion steps the retry pass should run.

        Flagged steps of any unit no longer being ingested, plus every pending
        step of a failed unit (the ones its stop-on-failure run never reached).
        Flagged steps come first, oldest request first, then by unit and step order.
        """
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(StepRecord)
                    .join(WorkUnit, WorkUnit.source_ref == StepRecord.unit_ref)
                    .where(
                        StepRecord.status == STEP_PENDING,
                        StepRecord.step_name.in_(INGESTION_STEPS),
                        WorkUnit.status.not_in((PENDING_INGESTION, PROCESSING)),
                        or_(StepRecord.retry_requested_at.is_not(None), WorkUnit.status == FAILED),
                    )
                    .order_by(
                        StepRecord.retry_requested_at.is_(None),
                        StepRecord.retry_requested_at,
                        StepRecord.unit_ref,
                        StepRecord.step_order,
                    )
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StepTrackingError(f"Failed to query retry steps: {e}") from e

    async def get_steps(self, unit_ref: str) -> List[StepRecord]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(StepRecord)
                    .where(StepRecord.unit_ref == unit_ref)
                    .order_by(StepRecord.step_order)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StepTrackingError(f"Failed to load steps for {unit_ref}: {e}") from e

    async def get_step(self, unit_ref: str, step_name: str) -> Optional[StepRecord]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(StepRecord).where(
                        StepRecord.unit_ref == unit_ref,
                        StepRecord.step_name == step_name,
                    )
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StepTrackingError(f"Failed to load {unit_ref}/{step_name}: {e}") from e

    async def get_progress(self, unit_ref: str) -> StepProgress:
        """Summarize a unit's step records."""
        steps = await self.get_steps(unit_ref)
        completed = sum(1 for s in steps if s.status == STEP_COMPLETED)
        failed = sum(1 for s in steps if s.status == STEP_FAILED)
        skipped = sum(1 for s in steps if s.status == STEP_SKIPPED)
        current = next((s.step_name for s in steps if s.status == STEP_RUNNING), None)
        total = len(steps)
        percent = int((completed + skipped) * 100 / total) if total else 0
        return StepProgress(
            total=total,
            completed=completed,
            failed=failed,
            skipped=skipped,
            current_step=current,
            percent=percent,
        )

    async def _load(self, session: AsyncSession, unit_ref: str, step_name: str) -> StepRecord:
        result = await session.execute(
            select(StepRecord).where(
                StepRecord.unit_ref == unit_ref,
                StepRecord.step_name == step_name,
            )
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise StepTrackingError(f"No step record {unit_ref}/{step_name}")
        return record

    async def _update_one(self, unit_ref: str, step_name: str, **values: Any) -> None:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(StepRecord)
                    .where(
                        StepRecord.unit_ref == unit_ref,
                        StepRecord.step_name == step_name,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise StepTrackingError(f"Failed to update {unit_ref}/{step_name}: {e}") from e

        if not result.rowcount:
            raise StepTrackingError(f"No step record {unit_ref}/{step_name}")
