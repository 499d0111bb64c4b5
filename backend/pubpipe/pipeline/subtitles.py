"""Render the unit's transcript cues to SRT files."""

import asyncio
import logging
import shutil

from pubpipe.orchestrator.state import GENERATE_SUBTITLES
from pubpipe.orchestrator.steps import PipelineContext, PipelineStep, StepOutcome
from pubpipe.services.subtitles import cues_from_transcript, write_srt

logger = logging.getLogger(__name__)


class GenerateSubtitlesStep(PipelineStep):
    """Write `<ref>.srt` from the submitted transcript and copy it to `<lang>.srt`.

    A unit without a transcript skips this step; that is not an error.
    """

    name = GENERATE_SUBTITLES
    writes = ("source_subtitle_path", "subtitle_count")

    def __init__(self, source_language: str = "en") -> None:
        self.source_language = source_language

    async def execute(self, ctx: PipelineContext) -> StepOutcome:
        cues = cues_from_transcript(ctx.unit.subtitles)
        if not cues:
            logger.info(f"[{ctx.unit.source_ref}] no transcript submitted, skipping subtitles")
            return StepOutcome.SKIPPED

        raw_path = ctx.workspace.raw_subtitle_path()
        lang_path = ctx.workspace.subtitle_path(self.source_language)
        await asyncio.to_thread(write_srt, raw_path, cues)
        if lang_path != raw_path:
            await asyncio.to_thread(shutil.copyfile, raw_path, lang_path)

        logger.info(f"[{ctx.unit.source_ref}] wrote {len(cues)} subtitle cues to {lang_path.name}")
        ctx.put("source_subtitle_path", str(lang_path))
        ctx.put("subtitle_count", len(cues))
        return StepOutcome.COMPLETED
