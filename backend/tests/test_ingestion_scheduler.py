"""Tests for the ingestion scheduler: chain runs, resume, retries and single-flight."""

import asyncio
import json

import pytest

from pubpipe.orchestrator.ingestion import IngestionScheduler
from pubpipe.orchestrator.service import request_step_retry
from pubpipe.orchestrator.state import (
    DOWNLOAD_COVER,
    DOWNLOAD_VIDEO,
    FAILED,
    GENERATE_METADATA,
    GENERATE_SUBTITLES,
    INGESTION_STEPS,
    PENDING_INGESTION,
    PROCESSING,
    PUBLISH_CAPTIONS,
    PUBLISH_VIDEO,
    READY,
    STEP_COMPLETED,
    STEP_FAILED,
    STEP_PENDING,
    STEP_RUNNING,
    TRANSLATE_SUBTITLES,
)
from pubpipe.orchestrator.steps import PipelineContext, UnitInfo
from pubpipe.services.subtitles import read_srt
from pubpipe.services.translation.batch import SENTENCE_BREAK

from conftest import TRANSCRIPT, FakeLLM

VIDEO_ID = "dQw4w9WgXcQ"


def _llm_handler(prompt, system):
    if "JSON" in (system or ""):
        return '```json\n{"title": "Never gonna", "description": "A classic.", "tags": ["music", "#80s"]}\n```'
    lines = [line.strip() for line in prompt.split(SENTENCE_BREAK)]
    return f"\n{SENTENCE_BREAK}\n".join(f"中文{line}" for line in lines)


async def _statuses(runtime, ref):
    return {s.step_name: s.status for s in await runtime.tracker.get_steps(ref)}


@pytest.mark.asyncio
async def test_tick_ingests_unit_to_ready(runtime):
    runtime.llm = FakeLLM(_llm_handler)
    unit, _ = await runtime.units.enqueue(VIDEO_ID, title="Original", subtitles=TRANSCRIPT)

    assert await IngestionScheduler(runtime).tick() is True

    unit = await runtime.units.get(VIDEO_ID)
    assert unit.status == READY
    assert unit.error_message is None
    assert unit.generated_title == "Never gonna"
    assert unit.generated_tags == ["music", "80s"]
    assert unit.cover_key == f"covers/{VIDEO_ID}.jpg"

    statuses = await _statuses(runtime, VIDEO_ID)
    assert all(statuses[name] == STEP_COMPLETED for name in INGESTION_STEPS)
    assert statuses[PUBLISH_VIDEO] == STEP_PENDING
    assert statuses[PUBLISH_CAPTIONS] == STEP_PENDING

    workspace = runtime.files.workspace(VIDEO_ID, unit.created_at)
    translated = read_srt(workspace.subtitle_path("zh"))
    assert [c.text for c in translated] == [f"中文{e['text']}" for e in TRANSCRIPT]
    assert workspace.subtitle_path("en").exists()
    assert workspace.raw_subtitle_path().exists()
    assert json.loads(workspace.metadata_path.read_text())["title"] == "Never gonna"


@pytest.mark.asyncio
async def test_unit_without_transcript_skips_subtitle_steps(runtime):
    await runtime.units.enqueue(VIDEO_ID)

    await IngestionScheduler(runtime).tick()

    assert (await runtime.units.get(VIDEO_ID)).status == READY
    statuses = await _statuses(runtime, VIDEO_ID)
    assert statuses[GENERATE_SUBTITLES] == "skipped"
    assert statuses[TRANSLATE_SUBTITLES] == "skipped"
    assert statuses[GENERATE_METADATA] == STEP_COMPLETED


@pytest.mark.asyncio
async def test_failed_step_fails_unit_and_stops_chain(runtime):
    runtime.downloader.error = "HTTP Error 404"
    await runtime.units.enqueue(VIDEO_ID, subtitles=TRANSCRIPT)

    await IngestionScheduler(runtime).tick()

    unit = await runtime.units.get(VIDEO_ID)
    assert unit.status == FAILED
    assert unit.error_message == "video download failed: HTTP Error 404"
    statuses = await _statuses(runtime, VIDEO_ID)
    assert statuses[DOWNLOAD_VIDEO] == STEP_FAILED
    assert all(statuses[name] == STEP_PENDING for name in INGESTION_STEPS[1:])


@pytest.mark.asyncio
async def test_retry_runs_remaining_steps_and_reaches_ready(runtime):
    runtime.downloader.error = "timeout"
    await runtime.units.enqueue(VIDEO_ID, subtitles=TRANSCRIPT)
    scheduler = IngestionScheduler(runtime)
    await scheduler.tick()
    assert (await runtime.units.get(VIDEO_ID)).status == FAILED

    runtime.downloader.error = None
    await request_step_retry(runtime, VIDEO_ID, DOWNLOAD_VIDEO)

    # The retried step runs first, then the steps the failed run never reached
    await scheduler.tick()
    unit = await runtime.units.get(VIDEO_ID)
    assert unit.status == READY
    assert unit.error_message is None
    statuses = await _statuses(runtime, VIDEO_ID)
    assert all(statuses[name] == STEP_COMPLETED for name in INGESTION_STEPS)
    assert runtime.downloader.calls == [VIDEO_ID, VIDEO_ID]
    download = await runtime.tracker.get_step(VIDEO_ID, DOWNLOAD_VIDEO)
    assert download.attempts == 2
    assert (await runtime.tracker.get_step(VIDEO_ID, GENERATE_SUBTITLES)).attempts == 1


@pytest.mark.asyncio
async def test_failed_unit_pending_steps_run_before_new_units(runtime):
    runtime.downloader.error = "HTTP Error 403"
    await runtime.units.enqueue(VIDEO_ID, subtitles=TRANSCRIPT)
    scheduler = IngestionScheduler(runtime)
    await scheduler.tick()
    assert (await runtime.tracker.get_pending_retry_steps())

    await runtime.units.enqueue("later-unit")
    await scheduler.tick()

    # The failed unit's unreached steps ran; the new unit waited
    assert (await runtime.units.get("later-unit")).status == PENDING_INGESTION
    unit = await runtime.units.get(VIDEO_ID)
    assert unit.status == FAILED
    assert unit.error_message == "video download failed: HTTP Error 403"
    statuses = await _statuses(runtime, VIDEO_ID)
    assert statuses[DOWNLOAD_VIDEO] == STEP_FAILED
    assert all(statuses[name] == STEP_COMPLETED for name in INGESTION_STEPS[1:])
    assert await runtime.tracker.get_pending_retry_steps() == []

    runtime.downloader.error = None
    await scheduler.tick()
    assert (await runtime.units.get("later-unit")).status == READY


@pytest.mark.asyncio
async def test_retry_of_last_failed_step_makes_unit_ready(runtime):
    await runtime.units.enqueue(VIDEO_ID, subtitles=TRANSCRIPT)
    def refuse(prompt, system):
        raise RuntimeError("connection refused")

    runtime.llm = FakeLLM(refuse)
    scheduler = IngestionScheduler(runtime)
    await scheduler.tick()

    unit = await runtime.units.get(VIDEO_ID)
    assert unit.status == FAILED
    assert unit.error_message == "translation failed: could not connect to provider"

    runtime.llm = FakeLLM()
    await request_step_retry(runtime, VIDEO_ID, TRANSLATE_SUBTITLES)
    await scheduler.tick()
    unit = await runtime.units.get(VIDEO_ID)
    assert unit.status == READY
    assert unit.error_message is None


@pytest.mark.asyncio
async def test_retry_that_fails_again_keeps_unit_failed(runtime):
    runtime.downloader.error = "first"
    await runtime.units.enqueue(VIDEO_ID)
    scheduler = IngestionScheduler(runtime)
    await scheduler.tick()

    runtime.downloader.error = "second"
    await request_step_retry(runtime, VIDEO_ID, DOWNLOAD_VIDEO)
    await scheduler.tick()

    unit = await runtime.units.get(VIDEO_ID)
    assert unit.status == FAILED
    assert unit.error_message == "video download failed: second"
    assert await runtime.tracker.get_pending_retry_steps() == []


@pytest.mark.asyncio
async def test_resume_after_crash_skips_finished_steps(runtime):
    unit, _ = await runtime.units.enqueue(VIDEO_ID, subtitles=TRANSCRIPT)
    workspace = runtime.files.workspace(VIDEO_ID, unit.created_at)
    video = workspace.root / "video.mp4"
    video.write_bytes(b"mp4")

    tracker = runtime.tracker
    await tracker.initialize_steps(VIDEO_ID)
    await tracker.update_status(VIDEO_ID, DOWNLOAD_VIDEO, STEP_RUNNING)
    await tracker.update_status(VIDEO_ID, DOWNLOAD_VIDEO, STEP_COMPLETED)
    await tracker.update_result(VIDEO_ID, DOWNLOAD_VIDEO, {"video_path": str(video)})
    await tracker.update_status(VIDEO_ID, GENERATE_SUBTITLES, STEP_RUNNING)
    await runtime.units.claim(unit.id, (PENDING_INGESTION,), PROCESSING)

    # Simulated restart
    await tracker.reset_all_running_on_startup()
    assert (await runtime.units.get(VIDEO_ID)).status == PENDING_INGESTION

    await IngestionScheduler(runtime).tick()

    assert (await runtime.units.get(VIDEO_ID)).status == READY
    assert runtime.downloader.calls == []
    assert (await tracker.get_step(VIDEO_ID, DOWNLOAD_VIDEO)).attempts == 1
    assert (await tracker.get_step(VIDEO_ID, GENERATE_SUBTITLES)).attempts == 2


@pytest.mark.asyncio
async def test_retries_take_priority_over_new_units(runtime):
    processed = []

    async def run_unit(rt, unit):
        processed.append(("unit", unit.source_ref))
        return PipelineContext(unit=UnitInfo.from_model(unit), workspace=None)

    async def run_step(rt, unit, step_name):
        processed.append(("step", unit.source_ref, step_name))
        await rt.tracker.update_status(unit.source_ref, step_name, STEP_RUNNING)
        await rt.tracker.update_status(unit.source_ref, step_name, STEP_FAILED, "still broken")
        return PipelineContext(unit=UnitInfo.from_model(unit), workspace=None, error="still broken")

    old, _ = await runtime.units.enqueue("old-unit")
    await runtime.units.transition(old.id, FAILED)
    await runtime.tracker.initialize_steps("old-unit")
    await runtime.tracker.reset_step("old-unit", DOWNLOAD_COVER)
    await runtime.units.enqueue("new-unit")

    scheduler = IngestionScheduler(runtime, run_unit=run_unit, run_step=run_step)
    await scheduler.tick()

    # The flagged step and the failed unit's other pending steps, in step order
    assert processed == [("step", "old-unit", name) for name in INGESTION_STEPS]
    assert (await runtime.units.get("new-unit")).status == PENDING_INGESTION

    await scheduler.tick()
    assert processed[-1] == ("unit", "new-unit")
    assert (await runtime.units.get("new-unit")).status == READY


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(runtime):
    release = asyncio.Event()
    started = asyncio.Event()
    runs = []

    async def run_unit(rt, unit):
        runs.append(unit.source_ref)
        started.set()
        await release.wait()
        return PipelineContext(unit=UnitInfo.from_model(unit), workspace=None)

    await runtime.units.enqueue("slow")
    await runtime.units.enqueue("next")
    scheduler = IngestionScheduler(runtime, run_unit=run_unit)

    first = asyncio.create_task(scheduler.tick())
    await started.wait()
    assert scheduler.busy
    assert await scheduler.tick() is False

    release.set()
    assert await first is True
    assert runs == ["slow"]
    assert (await runtime.units.get("next")).status == PENDING_INGESTION


@pytest.mark.asyncio
async def test_unexpected_chain_error_fails_unit(runtime):
    async def run_unit(rt, unit):
        raise RuntimeError("disk full")

    await runtime.units.enqueue("abc")
    await IngestionScheduler(runtime, run_unit=run_unit).tick()

    unit = await runtime.units.get("abc")
    assert unit.status == FAILED
    assert unit.error_message == "unexpected error: RuntimeError: disk full"


@pytest.mark.asyncio
async def test_idle_tick_does_nothing(runtime):
    assert await IngestionScheduler(runtime).tick() is True
    assert await runtime.units.list_units() == []
