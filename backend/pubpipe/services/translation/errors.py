"""Translation errors and their user-facing descriptions."""

from typing import Optional

import httpx

from pubpipe.services.llm.base import ProviderAuthError, ProviderRateLimited


class BatchTranslationError(Exception):
    """A batch failed; carries the first group failure as its cause."""

    def __init__(self, message: str, group_index: Optional[int] = None) -> None:
        super().__init__(message)
        self.group_index = group_index


def _root_cause(exc: BaseException) -> BaseException:
    while exc.__cause__ is not None:
        exc = exc.__cause__
    return exc


def describe_translation_error(exc: BaseException) -> str:
    """Map a translation failure to a message an operator can act on."""
    cause = _root_cause(exc)
    text = f"{exc} {cause}".lower()

    if "api key" in text and "not configured" in text:
        return "translation failed: provider API key is not configured"
    if isinstance(cause, ProviderAuthError) or "401" in text or "unauthorized" in text:
        return "translation failed: provider API key is invalid or expired"
    if isinstance(cause, ProviderRateLimited) or "429" in text or "rate limit" in text:
        return "translation failed: provider rate limit hit, retry later"
    if "insufficient_quota" in text or "quota" in text:
        return "translation failed: provider account quota exhausted"
    if isinstance(cause, httpx.TimeoutException) or "timeout" in text or "timed out" in text:
        return "translation failed: provider request timed out"
    if isinstance(cause, httpx.TransportError) or "connection" in text:
        return "translation failed: could not connect to provider"
    if "context_length_exceeded" in text or "max_tokens" in text:
        return "translation failed: subtitle batch too long for the model"
    return f"translation failed: {cause}"
