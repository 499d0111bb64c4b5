"""Pipeline definition: the step registry and the chain runners.

Coordinates one unit's chain run with:
- Idempotent step-record initialization
- Resume that skips steps already completed or skipped, restoring their
  recorded context contribution
- Single-step runs for retries and publication
"""

import json
import logging
from typing import Callable, Dict, Iterable, List, Tuple

from pubpipe.db.models import WorkUnit
from pubpipe.orchestrator.chain import TaskChain, TrackedStep
from pubpipe.orchestrator.runtime import Runtime
from pubpipe.orchestrator.state import (
    DOWNLOAD_COVER,
    DOWNLOAD_VIDEO,
    GENERATE_METADATA,
    GENERATE_SUBTITLES,
    INGESTION_STEPS,
    PUBLISH_CAPTIONS,
    PUBLISH_VIDEO,
    STEP_TERMINAL_OK,
    TRANSLATE_SUBTITLES,
)
from pubpipe.orchestrator.steps import PipelineContext, PipelineStep, UnitInfo
from pubpipe.pipeline import (
    DownloadCoverStep,
    DownloadVideoStep,
    GenerateMetadataStep,
    GenerateSubtitlesStep,
    PublishCaptionsStep,
    PublishVideoStep,
    TranslateSubtitlesStep,
)

logger = logging.getLogger(__name__)


class UnknownStepError(ValueError):
    """No step is registered under the requested name."""


def _translate_step(rt: Runtime) -> PipelineStep:
    translator = rt.translator()
    cfg = rt.settings.translation
    return TranslateSubtitlesStep(
        translator,
        rt.validator(translator) if translator is not None else None,
        source_language=cfg.source_language,
        target_language=cfg.target_language,
    )


STEP_BUILDERS: Dict[str, Callable[[Runtime], PipelineStep]] = {
    DOWNLOAD_VIDEO: lambda rt: DownloadVideoStep(rt.downloader),
    GENERATE_SUBTITLES: lambda rt: GenerateSubtitlesStep(rt.settings.translation.source_language),
    DOWNLOAD_COVER: lambda rt: DownloadCoverStep(rt.thumbnails, rt.ffmpeg, rt.storage, rt.units),
    TRANSLATE_SUBTITLES: _translate_step,
    GENERATE_METADATA: lambda rt: GenerateMetadataStep(
        rt.llm, rt.units, rt.settings.translation.target_language
    ),
    PUBLISH_VIDEO: lambda rt: PublishVideoStep(rt.publisher),
    PUBLISH_CAPTIONS: lambda rt: PublishCaptionsStep(
        rt.publisher,
        source_language=rt.settings.translation.source_language,
        target_language=rt.settings.translation.target_language,
        caption_language=rt.settings.translation.caption_language,
    ),
}


def build_step(name: str, runtime: Runtime) -> PipelineStep:
    try:
        builder = STEP_BUILDERS[name]
    except KeyError:
        raise UnknownStepError(f"Unknown step: {name}") from None
    return builder(runtime)


def build_ingestion_chain(runtime: Runtime, unit_ref: str, skip: Iterable[str] = ()) -> TaskChain:
    """Tracked, stop-on-failure chain of the ingestion steps not in `skip`."""
    skip = set(skip)
    steps = [
        TrackedStep(build_step(name, runtime), runtime.tracker, unit_ref)
        for name in INGESTION_STEPS
        if name not in skip
    ]
    return TaskChain(steps, stop_on_failure=True)


async def prepare_context(runtime: Runtime, unit: WorkUnit) -> Tuple[PipelineContext, List[str]]:
    """Build the unit's context, restoring what finished steps recorded.

    Returns the context and the names of steps already completed or skipped.
    """
    workspace = runtime.files.workspace(unit.source_ref, unit.created_at)
    ctx = PipelineContext(unit=UnitInfo.from_model(unit), workspace=workspace)
    done = []
    for record in await runtime.tracker.get_steps(unit.source_ref):
        if record.status not in STEP_TERMINAL_OK:
            continue
        done.append(record.step_name)
        if not record.result_data:
            continue
        try:
            ctx.restore(json.loads(record.result_data))
        except ValueError:
            logger.warning(f"[{unit.source_ref}] unreadable result for {record.step_name}, ignoring")
    return ctx, done


async def run_ingestion(runtime: Runtime, unit: WorkUnit) -> PipelineContext:
    """Run the unit's ingestion chain, resuming past finished steps."""
    await runtime.tracker.initialize_steps(unit.source_ref)
    ctx, done = await prepare_context(runtime, unit)
    if done:
        logger.info(f"[{unit.source_ref}] resuming; already done: {', '.join(done)}")
    chain = build_ingestion_chain(runtime, unit.source_ref, skip=done)
    return await chain.run(ctx)


async def run_single_step(runtime: Runtime, unit: WorkUnit, step_name: str) -> PipelineContext:
    """Reset one step and run it alone in a tracked, non-stop-on-failure chain."""
    step = build_step(step_name, runtime)
    await runtime.tracker.initialize_steps(unit.source_ref)
    await runtime.tracker.reset_step(unit.source_ref, step_name)
    ctx, _ = await prepare_context(runtime, unit)
    chain = TaskChain([TrackedStep(step, runtime.tracker, unit.source_ref)], stop_on_failure=False)
    return await chain.run(ctx)
