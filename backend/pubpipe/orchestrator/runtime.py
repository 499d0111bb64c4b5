"""Wiring of the collaborators shared by both schedulers, the API and the CLI."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pubpipe.config import Settings, settings as default_settings
from pubpipe.db.models import utcnow
from pubpipe.orchestrator.step_tracker import StepTracker
from pubpipe.services.file_manager import FileManager
from pubpipe.services.llm import LLMAdapter, get_adapter
from pubpipe.services.media_tools import FfmpegTool, ThumbnailFetcher, YtDlpDownloader
from pubpipe.services.object_storage import LocalObjectStorage, ObjectStorage
from pubpipe.services.publisher import HttpPublishClient, PublishClient
from pubpipe.services.translation import BatchTranslator, SubtitleValidator
from pubpipe.services.unit_service import UnitService

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    tracker: StepTracker
    units: UnitService
    files: FileManager
    storage: ObjectStorage
    publisher: PublishClient
    downloader: YtDlpDownloader
    ffmpeg: FfmpegTool
    thumbnails: ThumbnailFetcher
    llm: Optional[LLMAdapter] = None
    clock: Callable[[], datetime] = field(default=utcnow)

    def translator(self) -> Optional[BatchTranslator]:
        if self.llm is None:
            return None
        cfg = self.settings.translation
        return BatchTranslator(
            self.llm,
            group_size=cfg.group_size,
            max_workers=cfg.max_workers,
            source_language=cfg.source_language,
            target_language=cfg.target_language,
            placeholder=cfg.missing_placeholder,
        )

    def validator(self, translator: BatchTranslator) -> SubtitleValidator:
        cfg = self.settings.translation
        return SubtitleValidator(
            translator,
            repair_batch_size=cfg.repair_batch_size,
            repair_interval=cfg.repair_interval_seconds,
        )

    async def aclose(self) -> None:
        if self.llm is not None:
            await self.llm.aclose()
        await self.publisher.aclose()


def build_runtime(
    app_settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> Runtime:
    """Build a Runtime from settings, defaulting to the module singletons."""
    app_settings = app_settings or default_settings
    if session_factory is None:
        from pubpipe.db import async_session

        session_factory = async_session

    tools = app_settings.tools
    destination = app_settings.destination
    return Runtime(
        settings=app_settings,
        session_factory=session_factory,
        tracker=StepTracker(session_factory),
        units=UnitService(session_factory),
        files=FileManager(app_settings.storage.work_dir),
        storage=LocalObjectStorage(app_settings.storage.object_store_dir),
        publisher=HttpPublishClient(
            destination.base_url,
            destination.api_token,
            timeout=destination.timeout_seconds,
            max_retries=destination.max_retries,
        ),
        downloader=YtDlpDownloader(tools.ytdlp_path, tools.proxy, tools.cookies_from_browser),
        ffmpeg=FfmpegTool(tools.ffmpeg_path),
        thumbnails=ThumbnailFetcher(),
        llm=get_adapter(app_settings.llm),
    )
