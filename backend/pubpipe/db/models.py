"""SQLAlchemy 2.0 ORM models for the publishing pipeline."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite round-trips."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class WorkUnit(Base):
    """One source video moving through ingestion and publication.

    Only the schedulers and the manual trigger operations write `status`.
    """
    __tablename__ = "work_units"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    source_ref: Mapped[str] = mapped_column(String(200), unique=True, index=True)
    source_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(40), index=True)
    subtitles: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)  # [{text, offset, duration, lang}]

    generated_title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    generated_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    generated_tags: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    cover_key: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    primary_publish_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    primary_published_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    secondary_published_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)


class StepRecord(Base):
    """Execution state of one named step for one work unit."""
    __tablename__ = "step_records"
    __table_args__ = (UniqueConstraint("unit_ref", "step_name", name="uq_step_records_unit_step"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    unit_ref: Mapped[str] = mapped_column(String(200), index=True)
    step_name: Mapped[str] = mapped_column(String(50))
    step_order: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(20), index=True)
    start_time: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    end_time: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON snapshot of context writes
    can_retry: Mapped[bool] = mapped_column(Boolean, default=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    retry_requested_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)
