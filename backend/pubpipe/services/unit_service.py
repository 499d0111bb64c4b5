"""Work-unit persistence: enqueueing, lookups and lifecycle transitions.

Lifecycle changes are conditional single-row UPDATEs, so two writers can
never both claim the same unit.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pubpipe.db.models import WorkUnit, utcnow
from pubpipe.orchestrator.state import PENDING_INGESTION, PRIMARY_PUBLISHED

logger = logging.getLogger(__name__)


class UnitNotFound(LookupError):
    """No work unit exists for the given source ref."""


class UnitService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def enqueue(
        self,
        source_ref: str,
        *,
        source_url: Optional[str] = None,
        title: Optional[str] = None,
        subtitles: Optional[list] = None,
    ) -> Tuple[WorkUnit, bool]:
        """Create the unit in pending-ingestion unless it already exists.

        Returns the unit and whether it was created.
        """
        async with self._session_factory() as session:
            existing = await self._by_ref(session, source_ref)
            if existing is not None:
                return existing, False

            now = self._clock()
            unit = WorkUnit(
                source_ref=source_ref,
                source_url=source_url,
                title=title,
                subtitles=subtitles,
                status=PENDING_INGESTION,
                created_at=now,
                updated_at=now,
            )
            session.add(unit)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self._by_ref(session, source_ref)
                if existing is None:
                    raise
                return existing, False

        logger.info(f"Enqueued unit {source_ref}")
        return unit, True

    async def get(self, source_ref: str) -> Optional[WorkUnit]:
        async with self._session_factory() as session:
            return await self._by_ref(session, source_ref)

    async def get_by_id(self, unit_id: int) -> Optional[WorkUnit]:
        async with self._session_factory() as session:
            return await session.get(WorkUnit, unit_id)

    async def list_units(self, status: Optional[str] = None, limit: int = 100) -> List[WorkUnit]:
        async with self._session_factory() as session:
            stmt = select(WorkUnit).order_by(WorkUnit.created_at.desc(), WorkUnit.id.desc()).limit(limit)
            if status:
                stmt = stmt.where(WorkUnit.status == status)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def oldest_in_status(self, status: str) -> Optional[WorkUnit]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WorkUnit)
                .where(WorkUnit.status == status)
                .order_by(WorkUnit.created_at, WorkUnit.id)
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def oldest_secondary_candidate(self, published_before: datetime) -> Optional[WorkUnit]:
        """Oldest primary-published unit with an id, published at or before the cutoff."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(WorkUnit)
                .where(
                    WorkUnit.status == PRIMARY_PUBLISHED,
                    WorkUnit.primary_publish_id.is_not(None),
                    WorkUnit.primary_publish_id != "",
                    WorkUnit.primary_published_at.is_not(None),
                    WorkUnit.primary_published_at <= published_before,
                )
                .order_by(WorkUnit.primary_published_at, WorkUnit.id)
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def claim(self, unit_id: int, from_statuses: Iterable[str], to_status: str) -> bool:
        """Move the unit to `to_status` only if it is currently in one of `from_statuses`."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(WorkUnit)
                .where(WorkUnit.id == unit_id, WorkUnit.status.in_(tuple(from_statuses)))
                .values(status=to_status)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        claimed = bool(result.rowcount)
        if claimed:
            logger.info(f"Unit {unit_id} -> {to_status}")
        return claimed

    async def transition(self, unit_id: int, to_status: str, **fields: Any) -> None:
        """Set the lifecycle code together with any accompanying fields."""
        async with self._session_factory() as session:
            await session.execute(
                update(WorkUnit)
                .where(WorkUnit.id == unit_id)
                .values(status=to_status, **fields)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        logger.info(f"Unit {unit_id} -> {to_status}")

    async def update_fields(self, unit_id: int, **fields: Any) -> None:
        """Write non-lifecycle columns (metadata, cover key)."""
        if "status" in fields:
            raise ValueError("use claim() or transition() to change status")
        async with self._session_factory() as session:
            await session.execute(
                update(WorkUnit)
                .where(WorkUnit.id == unit_id)
                .values(**fields)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def latest_primary_publication(self) -> Optional[datetime]:
        async with self._session_factory() as session:
            return await session.scalar(select(func.max(WorkUnit.primary_published_at)))

    async def latest_secondary_publication(self) -> Optional[datetime]:
        async with self._session_factory() as session:
            return await session.scalar(select(func.max(WorkUnit.secondary_published_at)))

    async def _by_ref(self, session: AsyncSession, source_ref: str) -> Optional[WorkUnit]:
        result = await session.execute(select(WorkUnit).where(WorkUnit.source_ref == source_ref))
        return result.scalar_one_or_none()
