"""Translated subtitle validation and automatic repair.

Every translated cue is classified as ok, missing or incomplete. Problem
cues are re-translated from their source text in small batches with a
pause between batches; a cue counts as fixed only when the new text is
itself ok.
"""

import asyncio
import enum
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from pubpipe.services.subtitles import SubtitleCue
from pubpipe.services.translation.batch import BatchTranslator

logger = logging.getLogger(__name__)

MISSING_MARKERS = ("[translation missing]", "translation missing", "[missing]")
INCOMPLETE_MARKERS = ("...", "[", "]", "???", "XXX")
_HAN_RE = re.compile(r"[\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff]")


class EntryStatus(str, enum.Enum):
    OK = "ok"
    MISSING = "missing"
    INCOMPLETE = "incomplete"


@dataclass
class EntryCheck:
    position: int
    source_text: str
    translated_text: str
    status: EntryStatus


@dataclass
class ValidationReport:
    total: int = 0
    valid: int = 0
    missing: int = 0
    incomplete: int = 0
    fixed: int = 0
    unresolved: int = 0
    processing_seconds: float = 0.0
    cues: List[SubtitleCue] = field(default_factory=list)

    def as_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "valid": self.valid,
            "missing": self.missing,
            "incomplete": self.incomplete,
            "fixed": self.fixed,
            "unresolved": self.unresolved,
        }


class SubtitleValidator:
    """Classify translated cues and repair the problem ones."""

    def __init__(
        self,
        translator: BatchTranslator,
        *,
        repair_batch_size: int = 10,
        repair_interval: float = 2.0,
        extra_missing_markers: Sequence[str] = (),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.translator = translator
        self.repair_batch_size = max(1, repair_batch_size)
        self.repair_interval = repair_interval
        self.missing_markers = tuple(
            m.lower() for m in (*MISSING_MARKERS, translator.placeholder, *extra_missing_markers)
        )
        self.expects_han = translator.target_language.lower().startswith("zh")
        self._sleep = sleep

    def classify(self, text: str) -> EntryStatus:
        stripped = (text or "").strip()
        if not stripped:
            return EntryStatus.MISSING
        lowered = stripped.lower()
        if any(marker in lowered for marker in self.missing_markers):
            return EntryStatus.MISSING
        if any(marker in stripped for marker in INCOMPLETE_MARKERS):
            return EntryStatus.INCOMPLETE
        if self.expects_han and not _HAN_RE.search(stripped) and len(stripped) > 10:
            return EntryStatus.INCOMPLETE
        if len(stripped) < 2:
            return EntryStatus.INCOMPLETE
        return EntryStatus.OK

    def check(
        self, source_cues: Sequence[SubtitleCue], translated_cues: Sequence[SubtitleCue]
    ) -> List[EntryCheck]:
        """Pair cues by position; the source defines how many entries there are."""
        checks = []
        for position, source in enumerate(source_cues):
            translated = translated_cues[position].text if position < len(translated_cues) else ""
            checks.append(EntryCheck(
                position=position,
                source_text=source.text,
                translated_text=translated,
                status=self.classify(translated),
            ))
        return checks

    async def validate_and_repair(
        self, source_cues: Sequence[SubtitleCue], translated_cues: Sequence[SubtitleCue]
    ) -> ValidationReport:
        """Return the repaired cue list (source timings, best text) with counts."""
        started = time.monotonic()
        checks = self.check(source_cues, translated_cues)
        report = ValidationReport(total=len(checks))
        report.valid = sum(1 for c in checks if c.status is EntryStatus.OK)
        report.missing = sum(1 for c in checks if c.status is EntryStatus.MISSING)
        report.incomplete = sum(1 for c in checks if c.status is EntryStatus.INCOMPLETE)

        problems = [c for c in checks if c.status is not EntryStatus.OK]
        if problems:
            logger.info(
                f"Subtitle check: {report.valid}/{report.total} ok, "
                f"{report.missing} missing, {report.incomplete} incomplete; repairing"
            )
            report.fixed = await self._repair(problems)
        report.unresolved = len(problems) - report.fixed

        report.cues = [
            source.with_text(check.translated_text or source.text)
            for source, check in zip(source_cues, checks)
        ]
        report.processing_seconds = time.monotonic() - started
        if problems:
            logger.info(f"Subtitle repair fixed {report.fixed}, unresolved {report.unresolved}")
        return report

    async def _repair(self, problems: List[EntryCheck]) -> int:
        fixed = 0
        for offset in range(0, len(problems), self.repair_batch_size):
            if offset:
                await self._sleep(self.repair_interval)
            batch = problems[offset:offset + self.repair_batch_size]
            try:
                texts = await self.translator.translate_group([c.source_text for c in batch])
            except Exception as e:
                logger.warning(
                    f"Repair batch at {offset} failed, keeping {len(batch)} entries as-is: "
                    f"{type(e).__name__}: {e}"
                )
                continue
            for check, text in zip(batch, texts):
                if self.classify(text) is EntryStatus.OK:
                    check.translated_text = text
                    check.status = EntryStatus.OK
                    fixed += 1
        return fixed


def repair_summary(report: Optional[ValidationReport]) -> str:
    if report is None:
        return "not validated"
    return f"{report.valid}/{report.total} ok, {report.fixed} fixed, {report.unresolved} unresolved"
