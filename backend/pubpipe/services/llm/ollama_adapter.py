"""Ollama adapter for the LLM abstraction layer.

Connects via ollama.AsyncClient with optional auth headers. Structured
output uses format='json' with the schema described in the system prompt,
since Ollama Cloud does not reliably enforce a full JSON schema dict.
"""

import logging
from typing import Optional, Type

import httpx
from ollama import AsyncClient, ResponseError
from pydantic import BaseModel
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from pubpipe.services.llm.base import LLMAdapter, schema_instruction, strip_code_fences

logger = logging.getLogger(__name__)


def _is_retriable(exc: BaseException) -> bool:
    """Return True only for transient errors worth retrying."""
    if isinstance(exc, ResponseError):
        return exc.status_code == 429 or exc.status_code >= 500
    return isinstance(exc, httpx.TransportError)


class OllamaAdapter(LLMAdapter):
    """LLM adapter backed by a local or cloud Ollama instance.

    Strips the "ollama/" prefix from model IDs before passing to the ollama
    library. Always passes stream=False to avoid async generator responses.
    """

    def __init__(
        self,
        model_id: str,
        base_url: str = "http://localhost:11434",
        api_key: Optional[str] = None,
        *,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        temperature: float = 0.3,
        max_tokens: int = 4000,
    ) -> None:
        self._ollama_model = model_id.removeprefix("ollama/")
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._temperature = temperature
        self._max_tokens = max_tokens
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = AsyncClient(host=base_url, headers=headers)

    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        return await self._chat(prompt, system_prompt, temperature, max_tokens, json_mode=False)

    async def generate_structured(
        self,
        prompt: str,
        schema: Type[BaseModel],
        *,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> BaseModel:
        system = (system_prompt or "") + schema_instruction(schema)
        raw = await self._chat(prompt, system.lstrip(), temperature, None, json_mode=True)
        return schema.model_validate_json(strip_code_fences(raw))

    async def _chat(
        self,
        prompt: str,
        system_prompt: Optional[str],
        temperature: Optional[float],
        max_tokens: Optional[int],
        *,
        json_mode: bool,
    ) -> str:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        options = {
            "temperature": self._temperature if temperature is None else temperature,
            "num_predict": max_tokens or self._max_tokens,
        }

        @retry(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=wait_exponential(multiplier=self._retry_delay, min=2 * self._retry_delay, max=30),
            retry=retry_if_exception(_is_retriable),
            reraise=True,
        )
        async def _call() -> str:
            response = await self._client.chat(
                model=self._ollama_model,
                messages=messages,
                format="json" if json_mode else "",
                options=options,
                stream=False,
            )
            return response.message.content or ""

        return await _call()
