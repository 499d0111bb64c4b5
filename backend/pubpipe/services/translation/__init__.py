"""Batch subtitle translation with validation and repair."""

from pubpipe.services.translation.batch import BatchTranslator, partition
from pubpipe.services.translation.errors import BatchTranslationError, describe_translation_error
from pubpipe.services.translation.validator import SubtitleValidator, ValidationReport

__all__ = [
    "BatchTranslationError",
    "BatchTranslator",
    "SubtitleValidator",
    "ValidationReport",
    "describe_translation_error",
    "partition",
]
