"""State machine constants for the work-unit lifecycle and step records.

Defines the lifecycle codes the two schedulers move a unit through, the
step statuses tracked per unit, and the fixed step table.
"""

from dataclasses import dataclass
from typing import Dict, Tuple

# Work-unit lifecycle codes
PENDING_INGESTION = "pending-ingestion"
PROCESSING = "processing"
READY = "ready"
FAILED = "failed"
PUBLISHING_PRIMARY = "publishing-primary"
PRIMARY_PUBLISHED = "primary-published"
PRIMARY_PUBLISH_FAILED = "primary-published-failed"
PUBLISHING_SECONDARY = "publishing-secondary"
FULLY_PUBLISHED = "fully-published"
SECONDARY_PUBLISH_FAILED = "secondary-published-failed"

UNIT_STATES = {
    PENDING_INGESTION: "Waiting for the ingestion scheduler",
    PROCESSING: "Ingestion chain running",
    READY: "Ingestion complete, waiting for primary publication",
    FAILED: "Ingestion failed; retryable per step",
    PUBLISHING_PRIMARY: "Primary publication in progress",
    PRIMARY_PUBLISHED: "Primary artifact published, waiting out the secondary delay",
    PRIMARY_PUBLISH_FAILED: "Primary publication failed",
    PUBLISHING_SECONDARY: "Secondary publication in progress",
    FULLY_PUBLISHED: "All artifacts published",
    SECONDARY_PUBLISH_FAILED: "Secondary publication failed",
}

# Codes that must not survive a restart, and where each one goes back to
IN_PROGRESS_RECOVERY = {
    PROCESSING: PENDING_INGESTION,
    PUBLISHING_PRIMARY: READY,
    PUBLISHING_SECONDARY: PRIMARY_PUBLISHED,
}

# Manual publication is allowed from these codes
PRIMARY_PUBLISHABLE = (READY, PRIMARY_PUBLISH_FAILED)
SECONDARY_PUBLISHABLE = (PRIMARY_PUBLISHED, SECONDARY_PUBLISH_FAILED)

# Step statuses
STEP_PENDING = "pending"
STEP_RUNNING = "running"
STEP_COMPLETED = "completed"
STEP_FAILED = "failed"
STEP_SKIPPED = "skipped"

STEP_STATUSES = (STEP_PENDING, STEP_RUNNING, STEP_COMPLETED, STEP_FAILED, STEP_SKIPPED)
STEP_TERMINAL_OK = (STEP_COMPLETED, STEP_SKIPPED)

INGESTION = "ingestion"
PUBLICATION = "publication"


@dataclass(frozen=True)
class StepDefinition:
    name: str
    order: int
    phase: str
    can_retry: bool = True


DOWNLOAD_VIDEO = "download_video"
GENERATE_SUBTITLES = "generate_subtitles"
DOWNLOAD_COVER = "download_cover"
TRANSLATE_SUBTITLES = "translate_subtitles"
GENERATE_METADATA = "generate_metadata"
PUBLISH_VIDEO = "publish_video"
PUBLISH_CAPTIONS = "publish_captions"

STEP_DEFINITIONS: Tuple[StepDefinition, ...] = (
    StepDefinition(DOWNLOAD_VIDEO, 1, INGESTION),
    StepDefinition(GENERATE_SUBTITLES, 2, INGESTION),
    StepDefinition(DOWNLOAD_COVER, 3, INGESTION),
    StepDefinition(TRANSLATE_SUBTITLES, 4, INGESTION),
    StepDefinition(GENERATE_METADATA, 5, INGESTION),
    StepDefinition(PUBLISH_VIDEO, 6, PUBLICATION),
    StepDefinition(PUBLISH_CAPTIONS, 7, PUBLICATION),
)

STEPS_BY_NAME: Dict[str, StepDefinition] = {d.name: d for d in STEP_DEFINITIONS}

INGESTION_STEPS = tuple(d.name for d in STEP_DEFINITIONS if d.phase == INGESTION)


def is_ingestion_step(step_name: str) -> bool:
    """Return True if the ingestion scheduler owns the named step."""
    return step_name in INGESTION_STEPS
