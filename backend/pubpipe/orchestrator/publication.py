"""Publication scheduler: two-phase, delayed publishing of ready units.

Lifecycle handled here:
    ready -> publishing-primary -> primary-published | primary-published-failed
    primary-published -> publishing-secondary -> fully-published | secondary-published-failed

Each phase publishes at most one unit per cooldown window. The secondary
phase only considers units whose primary publication is at least
`secondary_delay` old and carries a primary publish id.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Set

from pubpipe.db.models import WorkUnit
from pubpipe.orchestrator.pipeline import run_single_step
from pubpipe.orchestrator.runtime import Runtime
from pubpipe.orchestrator.state import (
    FULLY_PUBLISHED,
    PRIMARY_PUBLISHABLE,
    PRIMARY_PUBLISHED,
    PRIMARY_PUBLISH_FAILED,
    PUBLISH_CAPTIONS,
    PUBLISH_VIDEO,
    PUBLISHING_PRIMARY,
    PUBLISHING_SECONDARY,
    READY,
    SECONDARY_PUBLISHABLE,
    SECONDARY_PUBLISH_FAILED,
)
from pubpipe.orchestrator.steps import PipelineContext
from pubpipe.services.unit_service import UnitNotFound

logger = logging.getLogger(__name__)

PRIMARY = "primary"
SECONDARY = "secondary"
PHASES = (PRIMARY, SECONDARY)

StepRunner = Callable[[Runtime, WorkUnit, str], Awaitable[PipelineContext]]


class PublishNotAllowed(Exception):
    """The unit is not in a state that permits the requested publication."""


def check_publish_allowed(unit: WorkUnit, phase: str) -> None:
    """Raise PublishNotAllowed unless `phase` may be published for the unit now."""
    if phase == PRIMARY:
        if unit.status not in PRIMARY_PUBLISHABLE:
            raise PublishNotAllowed(
                f"primary publication needs status {' or '.join(PRIMARY_PUBLISHABLE)}, got {unit.status}"
            )
    elif phase == SECONDARY:
        if unit.status not in SECONDARY_PUBLISHABLE:
            raise PublishNotAllowed(
                f"secondary publication needs status {' or '.join(SECONDARY_PUBLISHABLE)}, got {unit.status}"
            )
        if not unit.primary_publish_id:
            raise PublishNotAllowed("secondary publication needs a primary publish id")
    else:
        raise PublishNotAllowed(f"unknown publication phase: {phase}")


class PublicationScheduler:
    def __init__(
        self,
        runtime: Runtime,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        tick_seconds: Optional[float] = None,
        primary_cooldown: Optional[timedelta] = None,
        secondary_cooldown: Optional[timedelta] = None,
        secondary_delay: Optional[timedelta] = None,
        run_step: StepRunner = run_single_step,
    ) -> None:
        cfg = runtime.settings.publication
        self.runtime = runtime
        self.clock = clock or runtime.clock
        self.tick_seconds = tick_seconds or cfg.tick_seconds
        self.primary_cooldown = (
            primary_cooldown if primary_cooldown is not None
            else timedelta(seconds=cfg.primary_cooldown_seconds)
        )
        self.secondary_cooldown = (
            secondary_cooldown if secondary_cooldown is not None
            else timedelta(seconds=cfg.secondary_cooldown_seconds)
        )
        self.secondary_delay = (
            secondary_delay if secondary_delay is not None
            else timedelta(seconds=cfg.secondary_delay_seconds)
        )
        self._run_step = run_step
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._seeded = False
        self.last_primary_at: Optional[datetime] = None
        self.last_secondary_at: Optional[datetime] = None

    async def tick(self) -> bool:
        """Run one scheduling pass; returns False if skipped because a pass is running."""
        if self._lock.locked():
            logger.debug("Publication tick skipped: previous tick still running")
            return False
        async with self._lock:
            try:
                await self._tick()
            except Exception:
                logger.error("Publication tick failed", exc_info=True)
        return True

    async def run_forever(self) -> None:
        logger.info(f"Publication scheduler started (every {self.tick_seconds}s)")
        try:
            while True:
                task = asyncio.create_task(self.tick())
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                await asyncio.sleep(self.tick_seconds)
        finally:
            for task in list(self._tasks):
                task.cancel()
            logger.info("Publication scheduler stopped")

    async def publish_now(self, unit_ref: str, phase: str) -> bool:
        """Publish one phase for a unit immediately, bypassing cooldown and delay.

        Raises:
            UnitNotFound: If the unit does not exist.
            PublishNotAllowed: If the unit's state does not permit it.
        """
        unit = await self.runtime.units.get(unit_ref)
        if unit is None:
            raise UnitNotFound(f"Unit {unit_ref} not found")
        check_publish_allowed(unit, phase)
        logger.info(f"[{unit_ref}] manual {phase} publication requested")
        if phase == PRIMARY:
            return await self._publish_primary(unit, PRIMARY_PUBLISHABLE)
        return await self._publish_secondary(unit, SECONDARY_PUBLISHABLE)

    async def _tick(self) -> None:
        await self._seed()
        now = self.clock()

        if _cooled_down(self.last_primary_at, self.primary_cooldown, now):
            unit = await self.runtime.units.oldest_in_status(READY)
            if unit is not None:
                await self._publish_primary(unit, (READY,))
        else:
            logger.debug("Primary publication cooling down")

        if _cooled_down(self.last_secondary_at, self.secondary_cooldown, now):
            unit = await self.runtime.units.oldest_secondary_candidate(now - self.secondary_delay)
            if unit is not None:
                await self._publish_secondary(unit, (PRIMARY_PUBLISHED,))
        else:
            logger.debug("Secondary publication cooling down")

    async def _seed(self) -> None:
        """Start the cooldown windows from the last persisted publications."""
        if self._seeded:
            return
        self.last_primary_at = await self.runtime.units.latest_primary_publication()
        self.last_secondary_at = await self.runtime.units.latest_secondary_publication()
        self._seeded = True

    async def _publish_primary(self, unit: WorkUnit, from_statuses) -> bool:
        units = self.runtime.units
        if not await units.claim(unit.id, from_statuses, PUBLISHING_PRIMARY):
            return False

        error = None
        platform_id = None
        try:
            ctx = await self._run_step(self.runtime, unit, PUBLISH_VIDEO)
            error = ctx.error
            platform_id = ctx.primary_publish_id
        except Exception as e:
            logger.error(f"[{unit.source_ref}] primary publication aborted", exc_info=True)
            error = f"unexpected error: {type(e).__name__}: {e}"

        if error is None and platform_id:
            published_at = self.clock()
            await units.transition(
                unit.id,
                PRIMARY_PUBLISHED,
                primary_publish_id=platform_id,
                primary_published_at=published_at,
                error_message=None,
            )
            self.last_primary_at = published_at
            logger.info(f"[{unit.source_ref}] primary published as {platform_id}")
            return True

        error = error or "publish returned no platform id"
        await units.transition(unit.id, PRIMARY_PUBLISH_FAILED, error_message=error)
        logger.warning(f"[{unit.source_ref}] primary publication failed: {error}")
        return False

    async def _publish_secondary(self, unit: WorkUnit, from_statuses) -> bool:
        units = self.runtime.units
        if not unit.primary_publish_id:
            logger.warning(f"[{unit.source_ref}] secondary publication needs a primary publish id")
            return False
        if not await units.claim(unit.id, from_statuses, PUBLISHING_SECONDARY):
            return False

        try:
            ctx = await self._run_step(self.runtime, unit, PUBLISH_CAPTIONS)
            error = ctx.error
        except Exception as e:
            logger.error(f"[{unit.source_ref}] secondary publication aborted", exc_info=True)
            error = f"unexpected error: {type(e).__name__}: {e}"

        if error is None:
            published_at = self.clock()
            await units.transition(
                unit.id,
                FULLY_PUBLISHED,
                secondary_published_at=published_at,
                error_message=None,
            )
            self.last_secondary_at = published_at
            logger.info(f"[{unit.source_ref}] fully published")
            return True

        await units.transition(unit.id, SECONDARY_PUBLISH_FAILED, error_message=error)
        logger.warning(f"[{unit.source_ref}] secondary publication failed: {error}")
        return False


def _cooled_down(last: Optional[datetime], cooldown: timedelta, now: datetime) -> bool:
    return last is None or now - last >= cooldown
