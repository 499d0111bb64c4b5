"""Concrete pipeline steps."""

from pubpipe.pipeline.cover import DownloadCoverStep
from pubpipe.pipeline.download import DownloadVideoStep
from pubpipe.pipeline.metadata import GenerateMetadataStep
from pubpipe.pipeline.publish import PublishCaptionsStep, PublishVideoStep
from pubpipe.pipeline.subtitles import GenerateSubtitlesStep
from pubpipe.pipeline.translate import TranslateSubtitlesStep

__all__ = [
    "DownloadCoverStep",
    "DownloadVideoStep",
    "GenerateMetadataStep",
    "GenerateSubtitlesStep",
    "PublishCaptionsStep",
    "PublishVideoStep",
    "TranslateSubtitlesStep",
]
