"""LLM provider abstraction layer.

Provides a unified async interface for chat completion and structured
output across providers (OpenAI-compatible endpoints and Ollama).

Usage:
    from pubpipe.services.llm import get_adapter

    adapter = get_adapter(settings.llm)
    text = await adapter.complete(prompt, system_prompt=system)
    meta = await adapter.generate_structured(prompt, VideoMetadata)
"""

from pubpipe.services.llm.base import (
    LLMAdapter,
    ProviderAuthError,
    ProviderError,
    ProviderRateLimited,
    ProviderServerError,
)
from pubpipe.services.llm.registry import get_adapter

__all__ = [
    "LLMAdapter",
    "ProviderAuthError",
    "ProviderError",
    "ProviderRateLimited",
    "ProviderServerError",
    "get_adapter",
]
