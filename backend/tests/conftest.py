"""Shared fixtures: a temp-file SQLite database per test and in-process fakes."""

import asyncio
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional

import pytest
import pytest_asyncio

from pubpipe.config import PublicationConfig, Settings, TranslationConfig
from pubpipe.db import create_engine, create_session_factory, init_database
from pubpipe.orchestrator.runtime import Runtime
from pubpipe.orchestrator.step_tracker import StepTracker
from pubpipe.services.file_manager import FileManager
from pubpipe.services.llm.base import LLMAdapter
from pubpipe.services.media_tools import MediaToolError
from pubpipe.services.object_storage import LocalObjectStorage
from pubpipe.services.publisher import PublishClient, PublishError
from pubpipe.services.translation.batch import SENTENCE_BREAK
from pubpipe.services.unit_service import UnitService


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeLLM(LLMAdapter):
    """Answers translation prompts by prefixing every line; `handler` overrides."""

    def __init__(self, handler: Optional[Callable[[str, Optional[str]], str]] = None) -> None:
        self.handler = handler
        self.calls: List[str] = []

    async def complete(self, prompt, *, system_prompt=None, temperature=None, max_tokens=None):
        self.calls.append(prompt)
        if self.handler is not None:
            return self.handler(prompt, system_prompt)
        lines = [line.strip() for line in prompt.split(SENTENCE_BREAK)]
        return f"\n{SENTENCE_BREAK}\n".join(f"译文{line}" for line in lines)


class FakePublisher(PublishClient):
    def __init__(self) -> None:
        self.videos: List[Path] = []
        self.captions: List[tuple] = []
        self.fail_video: Optional[str] = None
        self.fail_captions: Optional[str] = None

    async def publish_video(self, video_path, metadata, cover_path=None):
        if self.fail_video:
            raise PublishError(self.fail_video)
        self.videos.append(video_path)
        return f"vid-{len(self.videos)}"

    async def publish_captions(self, platform_id, caption_path, language):
        if self.fail_captions:
            raise PublishError(self.fail_captions)
        self.captions.append((platform_id, caption_path.name, language))


class FakeDownloader:
    def __init__(self) -> None:
        self.calls: List[str] = []
        self.error: Optional[str] = None

    async def download(self, source_ref: str, dest_dir: Path) -> Path:
        self.calls.append(source_ref)
        if self.error:
            raise MediaToolError(self.error)
        path = dest_dir / "video.mp4"
        path.write_bytes(b"\x00\x00\x00\x18ftypmp42")
        return path


class FakeThumbnails:
    def __init__(self, available: bool = True) -> None:
        self.available = available

    async def fetch(self, video_id: str, output_path: Path) -> Optional[Path]:
        if not self.available:
            return None
        output_path.write_bytes(b"\xff\xd8\xff\xe0jpeg")
        return output_path


class FakeFfmpeg:
    async def extract_frame(self, video_path: Path, output_path: Path, at_seconds: float = 5.0) -> Path:
        output_path.write_bytes(b"\xff\xd8\xff\xe0frame")
        return output_path


TRANSCRIPT = [
    {"text": "Hello there", "offset": 0.0, "duration": 1.5},
    {"text": "How are you", "offset": 1.5, "duration": 2.0},
    {"text": "Goodbye", "offset": 3.5, "duration": 1.0},
]


@pytest_asyncio.fixture
async def engine(tmp_path):
    db_engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_database(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracker(session_factory, clock):
    return StepTracker(session_factory, clock=clock)


@pytest.fixture
def units(session_factory, clock):
    return UnitService(session_factory, clock=clock)


@pytest.fixture
def test_settings():
    return Settings(
        translation=TranslationConfig(group_size=2, max_workers=2, repair_interval_seconds=0),
        publication=PublicationConfig(tick_seconds=1),
    )


@pytest.fixture
def runtime(tmp_path, test_settings, session_factory, tracker, units, clock):
    return Runtime(
        settings=test_settings,
        session_factory=session_factory,
        tracker=tracker,
        units=units,
        files=FileManager(tmp_path / "work"),
        storage=LocalObjectStorage(tmp_path / "objects"),
        publisher=FakePublisher(),
        downloader=FakeDownloader(),
        ffmpeg=FakeFfmpeg(),
        thumbnails=FakeThumbnails(),
        llm=FakeLLM(),
        clock=clock,
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll an async predicate until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
