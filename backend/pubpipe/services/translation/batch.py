"""Concurrent batch translation of ordered text segments.

Segments are split into contiguous groups of at most `group_size`. The
groups are put on a work queue and drained by `min(max_workers, groups)`
asyncio workers, one provider call per group. Each worker reports
`(group_index, texts, error)` on a result queue; results are reassembled
by group index so the output always lines up with the input.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from pubpipe.services.llm.base import LLMAdapter
from pubpipe.services.translation.errors import BatchTranslationError

logger = logging.getLogger(__name__)

SENTENCE_BREAK = "###SENTENCE_BREAK###"
JOIN_DELIMITER = f"\n{SENTENCE_BREAK}\n"
DEFAULT_PLACEHOLDER = "[translation missing]"

LANGUAGE_NAMES = {
    "en": "English",
    "zh": "Simplified Chinese",
    "zh-Hans": "Simplified Chinese",
    "zh-Hant": "Traditional Chinese",
    "ja": "Japanese",
    "ko": "Korean",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
}


@dataclass(frozen=True)
class TranslationGroup:
    """Contiguous slice of the input; `start` is the position of its first segment."""

    index: int
    start: int
    texts: Tuple[str, ...]


def partition(texts: Sequence[str], group_size: int) -> List[TranslationGroup]:
    if group_size < 1:
        raise ValueError("group_size must be at least 1")
    return [
        TranslationGroup(index=i, start=start, texts=tuple(texts[start:start + group_size]))
        for i, start in enumerate(range(0, len(texts), group_size))
    ]


def align_count(parts: List[str], expected: int, placeholder: str) -> Tuple[List[str], bool]:
    """Pad with `placeholder` or truncate so exactly `expected` parts remain.

    Returns the aligned list and whether a correction was made.
    """
    if len(parts) == expected:
        return parts, False
    if len(parts) < expected:
        return parts + [placeholder] * (expected - len(parts)), True
    return parts[:expected], True


def build_system_prompt(count: int, source_language: str, target_language: str) -> str:
    source = LANGUAGE_NAMES.get(source_language, source_language)
    target = LANGUAGE_NAMES.get(target_language, target_language)
    return (
        f"You are a professional video subtitle translator. Translate the {count} "
        f"{source} subtitle lines you are given into {target}.\n\n"
        "Requirements:\n"
        f"1. Natural and fluent: use conversational {target} suited to subtitles.\n"
        "2. Faithful: keep the meaning, tone and emotion of each line.\n"
        "3. Concise: subtitles must be quick to read.\n"
        f"4. Exact count: output exactly {count} translations, no more and no fewer, "
        "in the same order as the input.\n"
        f'5. Separator: separate translations with "{SENTENCE_BREAK}".\n\n'
        f'Input format: lines separated by "{SENTENCE_BREAK}"\n'
        f'Output format: only the translations, separated by "{SENTENCE_BREAK}"\n\n'
        "Return only the translated text. Do not add numbering, notes or anything else."
    )


class BatchTranslator:
    """Translate ordered segments through a bounded pool of asyncio workers."""

    def __init__(
        self,
        provider: LLMAdapter,
        *,
        group_size: int = 25,
        max_workers: int = 3,
        source_language: str = "en",
        target_language: str = "zh",
        placeholder: str = DEFAULT_PLACEHOLDER,
    ) -> None:
        if group_size < 1 or max_workers < 1:
            raise ValueError("group_size and max_workers must be at least 1")
        self.provider = provider
        self.group_size = group_size
        self.max_workers = max_workers
        self.source_language = source_language
        self.target_language = target_language
        self.placeholder = placeholder

    async def translate(self, texts: Sequence[str]) -> List[str]:
        """Translate every segment; the result has exactly len(texts) entries in input order.

        Raises:
            BatchTranslationError: If any group fails. Partial results are discarded.
        """
        if not texts:
            return []

        groups = partition(texts, self.group_size)
        work: asyncio.Queue = asyncio.Queue()
        for group in groups:
            work.put_nowait(group)
        results: asyncio.Queue = asyncio.Queue()

        worker_count = min(self.max_workers, len(groups))
        logger.info(
            f"Translating {len(texts)} segments in {len(groups)} groups "
            f"with {worker_count} workers"
        )
        await asyncio.gather(*(self._worker(n, work, results) for n in range(worker_count)))

        by_index = {}
        first_error: Optional[Tuple[int, BaseException]] = None
        while not results.empty():
            index, translated, error = results.get_nowait()
            if error is not None:
                if first_error is None:
                    first_error = (index, error)
                continue
            by_index[index] = translated

        if first_error is not None:
            index, error = first_error
            raise BatchTranslationError(f"group {index} failed: {error}", group_index=index) from error

        output: List[str] = []
        for group in groups:
            output.extend(by_index[group.index])
        return output

    async def translate_group(self, texts: Sequence[str]) -> List[str]:
        """One provider call for a group; the reply is split and count-corrected."""
        reply = await self.provider.complete(
            JOIN_DELIMITER.join(texts),
            system_prompt=build_system_prompt(len(texts), self.source_language, self.target_language),
        )
        parts = [part.strip() for part in reply.split(SENTENCE_BREAK)]
        aligned, corrected = align_count(parts, len(texts), self.placeholder)
        if corrected:
            logger.warning(
                f"Translation count mismatch: expected {len(texts)}, got {len(parts)}; "
                f"{'padded' if len(parts) < len(texts) else 'truncated'}"
            )
        return aligned

    async def _worker(self, worker_id: int, work: asyncio.Queue, results: asyncio.Queue) -> None:
        while True:
            try:
                group = work.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                translated = await self.translate_group(group.texts)
            except Exception as e:
                logger.warning(f"Worker {worker_id}: group {group.index} failed: {type(e).__name__}: {e}")
                results.put_nowait((group.index, None, e))
            else:
                logger.debug(f"Worker {worker_id}: group {group.index} done ({len(translated)} lines)")
                results.put_nowait((group.index, translated, None))
