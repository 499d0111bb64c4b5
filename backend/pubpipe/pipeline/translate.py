"""Subtitle translation step: batch translate, validate, repair, write."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from pubpipe.orchestrator.state import TRANSLATE_SUBTITLES
from pubpipe.orchestrator.steps import PipelineContext, PipelineStep, StepError, StepOutcome
from pubpipe.services.subtitles import read_srt, write_srt
from pubpipe.services.translation import (
    BatchTranslationError,
    BatchTranslator,
    SubtitleValidator,
    describe_translation_error,
)
from pubpipe.services.translation.validator import repair_summary

logger = logging.getLogger(__name__)


class TranslateSubtitlesStep(PipelineStep):
    name = TRANSLATE_SUBTITLES
    reads = ("source_subtitle_path",)
    writes = ("translated_subtitle_path", "translated_count", "validation")

    def __init__(
        self,
        translator: Optional[BatchTranslator],
        validator: Optional[SubtitleValidator] = None,
        source_language: str = "en",
        target_language: str = "zh",
    ) -> None:
        self.translator = translator
        self.validator = validator
        self.source_language = source_language
        self.target_language = target_language

    async def execute(self, ctx: PipelineContext) -> StepOutcome:
        ref = ctx.unit.source_ref
        source_path = self._source_path(ctx)
        if source_path is None:
            logger.info(f"[{ref}] no source subtitles, skipping translation")
            return StepOutcome.SKIPPED

        cues = await asyncio.to_thread(read_srt, source_path)
        if not cues:
            logger.info(f"[{ref}] source subtitles are empty, skipping translation")
            return StepOutcome.SKIPPED
        if self.translator is None:
            raise StepError("translation failed: no translation provider configured")

        try:
            texts = await self.translator.translate([cue.text for cue in cues])
        except BatchTranslationError as e:
            raise StepError(describe_translation_error(e)) from e

        translated = [cue.with_text(text) for cue, text in zip(cues, texts)]
        report = None
        if self.validator is not None:
            report = await self.validator.validate_and_repair(cues, translated)
            translated = report.cues
        logger.info(f"[{ref}] translated {len(translated)} cues ({repair_summary(report)})")

        output = ctx.workspace.subtitle_path(self.target_language)
        await asyncio.to_thread(write_srt, output, translated)

        ctx.put("translated_subtitle_path", str(output))
        ctx.put("translated_count", len(translated))
        ctx.put("validation", report.as_dict() if report else None)
        return StepOutcome.COMPLETED

    def _source_path(self, ctx: PipelineContext) -> Optional[Path]:
        if ctx.source_subtitle_path and Path(ctx.source_subtitle_path).exists():
            return Path(ctx.source_subtitle_path)
        fallback = ctx.workspace.subtitle_path(self.source_language)
        return fallback if fallback.exists() else None
