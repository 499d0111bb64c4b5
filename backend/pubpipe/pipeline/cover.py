"""Cover image step: published thumbnail first, a video frame as fallback."""

import logging
from pathlib import Path
from typing import Optional

from pubpipe.orchestrator.state import DOWNLOAD_COVER
from pubpipe.orchestrator.steps import PipelineContext, PipelineStep, StepError, StepOutcome
from pubpipe.services.media_tools import FfmpegTool, MediaToolError, ThumbnailFetcher, youtube_id
from pubpipe.services.object_storage import ObjectStorage
from pubpipe.services.unit_service import UnitService

logger = logging.getLogger(__name__)


class DownloadCoverStep(PipelineStep):
    name = DOWNLOAD_COVER
    reads = ("video_path",)
    writes = ("cover_image_path", "cover_key")

    def __init__(
        self,
        thumbnails: ThumbnailFetcher,
        ffmpeg: FfmpegTool,
        storage: ObjectStorage,
        units: UnitService,
    ) -> None:
        self.thumbnails = thumbnails
        self.ffmpeg = ffmpeg
        self.storage = storage
        self.units = units

    async def execute(self, ctx: PipelineContext) -> StepOutcome:
        ref = ctx.unit.source_ref
        cover = await self._obtain(ctx)
        if cover is None:
            logger.warning(f"[{ref}] no cover image available, publishing without one")
            return StepOutcome.SKIPPED

        try:
            key = await self.storage.upload(cover, f"covers/{ctx.workspace.source_ref}.jpg")
        except (OSError, ValueError) as e:
            raise StepError(f"cover upload failed: {e}") from e

        await self.units.update_fields(ctx.unit.unit_id, cover_key=key)
        ctx.put("cover_image_path", str(cover))
        ctx.put("cover_key", key)
        return StepOutcome.COMPLETED

    async def _obtain(self, ctx: PipelineContext) -> Optional[Path]:
        target = ctx.workspace.cover_path
        if target.exists():
            return target

        video_id = youtube_id(ctx.unit.source_url or ctx.unit.source_ref)
        if video_id:
            fetched = await self.thumbnails.fetch(video_id, target)
            if fetched is not None:
                return fetched

        if ctx.video_path and Path(ctx.video_path).exists():
            try:
                return await self.ffmpeg.extract_frame(Path(ctx.video_path), target)
            except MediaToolError as e:
                logger.warning(f"[{ctx.unit.source_ref}] frame extraction failed: {e}")
        return None
