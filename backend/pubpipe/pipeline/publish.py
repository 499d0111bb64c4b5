"""Publication steps: the primary video and the secondary caption tracks."""

import logging
from pathlib import Path
from typing import List, Optional, Tuple

from pubpipe.orchestrator.state import PUBLISH_CAPTIONS, PUBLISH_VIDEO
from pubpipe.orchestrator.steps import PipelineContext, PipelineStep, StepError, StepOutcome
from pubpipe.schemas.metadata import VideoMetadata
from pubpipe.services.publisher import PublishClient, PublishError

logger = logging.getLogger(__name__)


class PublishVideoStep(PipelineStep):
    name = PUBLISH_VIDEO
    reads = ("video_path", "cover_image_path", "video_title", "video_description", "video_tags")
    writes = ("primary_publish_id",)

    def __init__(self, publisher: PublishClient) -> None:
        self.publisher = publisher

    async def execute(self, ctx: PipelineContext) -> StepOutcome:
        video = self._video(ctx)
        unit = ctx.unit
        metadata = VideoMetadata(
            title=ctx.video_title or unit.generated_title or unit.title or unit.source_ref,
            description=ctx.video_description or unit.generated_description or "",
            tags=list(ctx.video_tags or unit.generated_tags or []),
        )
        cover = self._cover(ctx)

        try:
            platform_id = await self.publisher.publish_video(video, metadata, cover)
        except PublishError as e:
            raise StepError(f"video publish failed: {e}") from e

        ctx.put("primary_publish_id", platform_id)
        return StepOutcome.COMPLETED

    def _video(self, ctx: PipelineContext) -> Path:
        if ctx.video_path and Path(ctx.video_path).exists():
            return Path(ctx.video_path)
        found = ctx.workspace.find_videos()
        if not found:
            raise StepError("no video file to publish")
        return found[0]

    def _cover(self, ctx: PipelineContext) -> Optional[Path]:
        if ctx.cover_image_path and Path(ctx.cover_image_path).exists():
            return Path(ctx.cover_image_path)
        if ctx.workspace.cover_path.exists():
            return ctx.workspace.cover_path
        return None


class PublishCaptionsStep(PipelineStep):
    """Attach the translated and source caption tracks to the published video.

    Succeeds when at least one track was attached; a unit without any
    caption files skips the step.
    """

    name = PUBLISH_CAPTIONS
    reads = ("primary_publish_id", "translated_subtitle_path", "source_subtitle_path")
    writes = ("caption_upload_count",)

    def __init__(
        self,
        publisher: PublishClient,
        source_language: str = "en",
        target_language: str = "zh",
        caption_language: str = "zh-Hans",
    ) -> None:
        self.publisher = publisher
        self.source_language = source_language
        self.target_language = target_language
        self.caption_language = caption_language

    async def execute(self, ctx: PipelineContext) -> StepOutcome:
        platform_id = ctx.primary_publish_id or ctx.unit.primary_publish_id
        if not platform_id:
            raise StepError("no primary publish id; the video must be published first")

        tracks = self._tracks(ctx)
        if not tracks:
            logger.info(f"[{ctx.unit.source_ref}] no caption files, skipping")
            return StepOutcome.SKIPPED

        uploaded = 0
        errors = []
        for path, language in tracks:
            try:
                await self.publisher.publish_captions(platform_id, path, language)
                uploaded += 1
            except PublishError as e:
                logger.warning(f"[{ctx.unit.source_ref}] {language} captions failed: {e}")
                errors.append(f"{language}: {e}")

        if uploaded == 0:
            raise StepError("caption publish failed: " + "; ".join(errors))
        ctx.put("caption_upload_count", uploaded)
        return StepOutcome.COMPLETED

    def _tracks(self, ctx: PipelineContext) -> List[Tuple[Path, str]]:
        candidates = [
            (ctx.translated_subtitle_path, self.target_language, self.caption_language),
            (ctx.source_subtitle_path, self.source_language, self.source_language),
        ]
        tracks = []
        for known, file_language, caption_language in candidates:
            path = Path(known) if known else ctx.workspace.subtitle_path(file_language)
            if path.exists():
                tracks.append((path, caption_language))
        return tracks
