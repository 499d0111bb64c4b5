"""Publish metadata generation step.

Asks the LLM for a title, description and tags from the opening of the
subtitles. Generation problems fall back to defaults derived from the
unit instead of failing the pipeline.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from pubpipe.orchestrator.state import GENERATE_METADATA
from pubpipe.orchestrator.steps import PipelineContext, PipelineStep, StepOutcome
from pubpipe.schemas.metadata import VideoMetadata
from pubpipe.services.llm import LLMAdapter
from pubpipe.services.subtitles import read_srt
from pubpipe.services.translation.batch import LANGUAGE_NAMES
from pubpipe.services.unit_service import UnitService

logger = logging.getLogger(__name__)

MAX_EXCERPT_CHARS = 1000


def default_metadata(ctx: PipelineContext) -> VideoMetadata:
    unit = ctx.unit
    source = unit.source_url or unit.source_ref
    return VideoMetadata(
        title=unit.title or unit.source_ref,
        description=f"Source: {source}",
        tags=[],
    )


class GenerateMetadataStep(PipelineStep):
    name = GENERATE_METADATA
    reads = ("translated_subtitle_path", "source_subtitle_path")
    writes = ("video_title", "video_description", "video_tags")

    def __init__(self, llm: Optional[LLMAdapter], units: UnitService, target_language: str = "zh") -> None:
        self.llm = llm
        self.units = units
        self.target_language = target_language

    async def execute(self, ctx: PipelineContext) -> StepOutcome:
        ref = ctx.unit.source_ref
        excerpt = await self._excerpt(ctx)
        metadata = None
        if self.llm is not None and excerpt:
            try:
                metadata = await self.llm.generate_structured(
                    self._prompt(ctx, excerpt),
                    VideoMetadata,
                    system_prompt=self._system_prompt(),
                )
            except Exception as e:
                logger.warning(f"[{ref}] metadata generation failed, using defaults: {type(e).__name__}: {e}")
        if metadata is None:
            metadata = default_metadata(ctx)

        await asyncio.to_thread(
            ctx.workspace.metadata_path.write_text,
            metadata.model_dump_json(indent=2),
            "utf-8",
        )
        await self.units.update_fields(
            ctx.unit.unit_id,
            generated_title=metadata.title,
            generated_description=metadata.description,
            generated_tags=metadata.tags,
        )
        logger.info(f"[{ref}] metadata title: {metadata.title}")

        ctx.put("video_title", metadata.title)
        ctx.put("video_description", metadata.description)
        ctx.put("video_tags", metadata.tags)
        return StepOutcome.COMPLETED

    def _system_prompt(self) -> str:
        target = LANGUAGE_NAMES.get(self.target_language, self.target_language)
        return (
            "You write metadata for republished videos. Given a subtitle excerpt, "
            f"produce a catchy title (at most 80 characters), a short description and "
            f"up to 10 tags, all in {target}."
        )

    def _prompt(self, ctx: PipelineContext, excerpt: str) -> str:
        original_title = ctx.unit.title or "unknown"
        return f"Original title: {original_title}\n\nSubtitle excerpt:\n{excerpt}"

    async def _excerpt(self, ctx: PipelineContext) -> str:
        for candidate in (ctx.translated_subtitle_path, ctx.source_subtitle_path):
            if candidate and Path(candidate).exists():
                cues = await asyncio.to_thread(read_srt, candidate)
                text = " ".join(cue.text.replace("\n", " ") for cue in cues)
                return text[:MAX_EXCERPT_CHARS]
        return ""
