"""Provider registry for LLM adapters.

Routes model IDs to the correct adapter implementation based on the model
ID prefix: "ollama/" goes to Ollama, everything else to an
OpenAI-compatible endpoint.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from pubpipe.services.llm.base import LLMAdapter

if TYPE_CHECKING:
    from pubpipe.config import LLMConfig

logger = logging.getLogger(__name__)


def _is_ollama_model(model_id: str) -> bool:
    """Return True if the model ID uses the ollama/ prefix."""
    return model_id.startswith("ollama/")


def get_adapter(config: "LLMConfig") -> Optional[LLMAdapter]:
    """Return the configured LLM adapter, or None when the provider is disabled."""
    if not config.enabled:
        logger.info("LLM provider disabled")
        return None

    if _is_ollama_model(config.model):
        from pubpipe.services.llm.ollama_adapter import OllamaAdapter

        logger.debug(
            "Routing %s to OllamaAdapter (base_url=%s, has_key=%s)",
            config.model,
            config.base_url,
            bool(config.api_key),
        )
        return OllamaAdapter(
            model_id=config.model,
            base_url=config.base_url,
            api_key=config.api_key,
            max_retries=config.max_retries,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )

    from pubpipe.services.llm.openai_adapter import OpenAICompatibleAdapter

    logger.debug("Routing %s to OpenAICompatibleAdapter at %s", config.model, config.base_url)
    return OpenAICompatibleAdapter(
        model=config.model,
        base_url=config.base_url,
        api_key=config.api_key,
        timeout=config.timeout_seconds,
        max_retries=config.max_retries,
        retry_delay=config.retry_delay_seconds,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
    )
