"""Source video acquisition step."""

import logging

from pubpipe.orchestrator.state import DOWNLOAD_VIDEO
from pubpipe.orchestrator.steps import PipelineContext, PipelineStep, StepError, StepOutcome
from pubpipe.services.media_tools import MediaToolError, YtDlpDownloader

logger = logging.getLogger(__name__)


class DownloadVideoStep(PipelineStep):
    """Download the source video into the unit workspace, reusing an earlier download."""

    name = DOWNLOAD_VIDEO
    writes = ("video_path",)

    def __init__(self, downloader: YtDlpDownloader) -> None:
        self.downloader = downloader

    async def execute(self, ctx: PipelineContext) -> StepOutcome:
        existing = ctx.workspace.find_videos()
        if existing:
            logger.info(f"[{ctx.unit.source_ref}] reusing downloaded video {existing[0].name}")
            ctx.put("video_path", str(existing[0]))
            return StepOutcome.COMPLETED

        try:
            path = await self.downloader.download(
                ctx.unit.source_url or ctx.unit.source_ref, ctx.workspace.root
            )
        except MediaToolError as e:
            raise StepError(f"video download failed: {e}") from e

        ctx.put("video_path", str(path))
        return StepOutcome.COMPLETED
