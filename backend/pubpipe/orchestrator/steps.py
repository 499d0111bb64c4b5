"""Step contract and the typed context shared by the steps of one chain run.

A step declares the context keys it reads and writes. While it executes,
the context only accepts writes to the declared keys, so data flows
forward through the chain and every step's contribution can be
snapshotted into its StepRecord and restored on resume.
"""

import enum
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from pubpipe.services.file_manager import UnitWorkspace

logger = logging.getLogger(__name__)


class StepError(Exception):
    """Expected step failure; the message is recorded on the step."""


class ContextWriteError(Exception):
    """A step wrote a context key it did not declare."""


class StepOutcome(enum.Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class UnitInfo:
    """Read-only snapshot of the work unit a chain runs for."""

    unit_id: int
    source_ref: str
    created_at: datetime
    source_url: Optional[str] = None
    title: Optional[str] = None
    subtitles: Tuple[Dict[str, Any], ...] = ()
    generated_title: Optional[str] = None
    generated_description: Optional[str] = None
    generated_tags: Tuple[str, ...] = ()
    cover_key: Optional[str] = None
    primary_publish_id: Optional[str] = None

    @classmethod
    def from_model(cls, unit) -> "UnitInfo":
        return cls(
            unit_id=unit.id,
            source_ref=unit.source_ref,
            created_at=unit.created_at,
            source_url=unit.source_url,
            title=unit.title,
            subtitles=tuple(unit.subtitles or ()),
            generated_title=unit.generated_title,
            generated_description=unit.generated_description,
            generated_tags=tuple(unit.generated_tags or ()),
            cover_key=unit.cover_key,
            primary_publish_id=unit.primary_publish_id,
        )


@dataclass
class PipelineContext:
    unit: UnitInfo
    workspace: UnitWorkspace

    video_path: Optional[str] = None
    source_subtitle_path: Optional[str] = None
    subtitle_count: Optional[int] = None
    cover_image_path: Optional[str] = None
    cover_key: Optional[str] = None
    translated_subtitle_path: Optional[str] = None
    translated_count: Optional[int] = None
    validation: Optional[Dict[str, int]] = None
    video_title: Optional[str] = None
    video_description: Optional[str] = None
    video_tags: Optional[List[str]] = None
    primary_publish_id: Optional[str] = None
    caption_upload_count: Optional[int] = None

    error: Optional[str] = None

    _writable: FrozenSet[str] = field(default=frozenset(), repr=False, compare=False)

    def put(self, key: str, value: Any) -> None:
        if key not in CONTEXT_KEYS:
            raise ContextWriteError(f"Unknown context key: {key}")
        if key not in self._writable:
            raise ContextWriteError(f"Context key {key} is not writable here")
        setattr(self, key, value)

    def require(self, key: str) -> Any:
        """Return a value an earlier step must have produced."""
        value = getattr(self, key, None)
        if value is None:
            raise StepError(f"missing required input: {key}")
        return value

    def snapshot(self, keys: Iterable[str]) -> Dict[str, Any]:
        return {k: getattr(self, k) for k in keys if getattr(self, k) is not None}

    def restore(self, data: Dict[str, Any]) -> None:
        """Rehydrate values persisted by an earlier run; unknown keys are ignored."""
        for key, value in data.items():
            if key in CONTEXT_KEYS and value is not None:
                setattr(self, key, value)

    @contextmanager
    def writing(self, keys: Iterable[str]):
        previous = self._writable
        self._writable = frozenset(keys)
        try:
            yield self
        finally:
            self._writable = previous


CONTEXT_KEYS: FrozenSet[str] = frozenset(
    f.name for f in fields(PipelineContext)
    if f.name not in ("unit", "workspace", "error", "_writable")
)


class PipelineStep(ABC):
    """One named unit of work in a chain."""

    name: str = ""
    reads: Tuple[str, ...] = ()
    writes: Tuple[str, ...] = ()

    @abstractmethod
    async def execute(self, ctx: PipelineContext) -> StepOutcome:
        """Run the step against the shared context.

        Raises:
            StepError: On an expected failure; the message is recorded.
        """
        ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
