"""OpenAI-compatible chat completion adapter (DeepSeek and similar).

Talks to `{base_url}/chat/completions` over httpx. Timeouts, transport
errors, 5xx and 429 responses are retried with exponential backoff; a
rate-limited attempt waits additionally before the next one. Any other
4xx fails immediately.
"""

import logging
from typing import Optional

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from pubpipe.services.llm.base import (
    LLMAdapter,
    ProviderAuthError,
    ProviderError,
    ProviderRateLimited,
    ProviderServerError,
)

logger = logging.getLogger(__name__)

_RETRYABLE = (
    httpx.TimeoutException,
    httpx.TransportError,
    ProviderRateLimited,
    ProviderServerError,
)


class wait_for_rate_limit(wait_base):
    """Extra wait after a rate-limited attempt, growing with the attempt number."""

    def __init__(self, step: float) -> None:
        self.step = step

    def __call__(self, retry_state) -> float:
        outcome = retry_state.outcome
        if outcome is not None and isinstance(outcome.exception(), ProviderRateLimited):
            return self.step * (retry_state.attempt_number + 1)
        return 0.0


class OpenAICompatibleAdapter(LLMAdapter):
    """LLM adapter for any endpoint speaking the OpenAI chat completions API."""

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: Optional[str] = None,
        *,
        timeout: float = 60.0,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        temperature: float = 0.3,
        max_tokens: int = 4000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.model = model
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": self._temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self._max_tokens,
        }

        @retry(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=wait_exponential(multiplier=self._retry_delay, max=30)
            + wait_for_rate_limit(self._retry_delay * 2.5),
            retry=retry_if_exception_type(_RETRYABLE),
            reraise=True,
        )
        async def _call() -> str:
            response = await self._client.post("/chat/completions", json=payload)
            _raise_for_status(response)
            return _extract_content(response)

        return await _call()

    async def aclose(self) -> None:
        await self._client.aclose()


def _raise_for_status(response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    body = response.text[:500]
    status = response.status_code
    if status == 429 or "rate limit" in body.lower():
        logger.warning(f"Provider rate limited (HTTP {status})")
        raise ProviderRateLimited(f"HTTP {status}: {body}", status)
    if status in (401, 403):
        raise ProviderAuthError(f"HTTP {status}: {body}", status)
    if status >= 500:
        logger.warning(f"Provider server error (HTTP {status})")
        raise ProviderServerError(f"HTTP {status}: {body}", status)
    raise ProviderError(f"HTTP {status}: {body}", status)


def _extract_content(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError as e:
        raise ProviderError(f"Provider returned invalid JSON: {e}") from e

    if isinstance(data, dict) and data.get("error"):
        error = data["error"]
        message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
        raise ProviderError(f"Provider error: {message}")

    choices = data.get("choices") if isinstance(data, dict) else None
    if not choices:
        raise ProviderError("Provider returned no choices")
    content = (choices[0].get("message") or {}).get("content")
    if content is None:
        raise ProviderError("Provider returned an empty message")
    return content
