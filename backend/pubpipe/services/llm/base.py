"""Abstract base class for LLM provider adapters.

Defines the consistent async interface that all adapters implement: plain
chat completion for translation, and structured output validated against
a caller-supplied pydantic schema for metadata generation.
"""

import json
from abc import ABC, abstractmethod
from typing import Optional, Type

from pydantic import BaseModel


class ProviderError(Exception):
    """A provider call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderRateLimited(ProviderError):
    """The provider answered 429 or reported a rate limit."""


class ProviderServerError(ProviderError):
    """The provider answered with a 5xx status."""


class ProviderAuthError(ProviderError):
    """The provider rejected the credentials."""


def strip_code_fences(raw: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    stripped = raw.strip()
    if stripped.startswith("```"):
        first_newline = stripped.find("\n")
        stripped = stripped[first_newline + 1:] if first_newline != -1 else ""
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3].rstrip()
    return stripped


def schema_instruction(schema: Type[BaseModel]) -> str:
    """Build a concise JSON schema instruction to append to the system prompt."""
    schema_json = json.dumps(schema.model_json_schema(), indent=2)
    return (
        "\n\nIMPORTANT: You MUST respond with a single JSON object (no markdown, "
        "no commentary, no code fences). The JSON must conform to this schema:\n"
        f"```json\n{schema_json}\n```\n"
        "Return ONLY the JSON object."
    )


class LLMAdapter(ABC):
    """Abstract base class for LLM provider adapters."""

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Return the model's text reply to a single user prompt.

        Transient failures are retried inside the adapter; the exception
        of the last attempt propagates.
        """
        ...

    async def generate_structured(
        self,
        prompt: str,
        schema: Type[BaseModel],
        *,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> BaseModel:
        """Generate JSON output and validate it against `schema`.

        Raises:
            pydantic.ValidationError: If the reply does not match the schema.
        """
        instruction = schema_instruction(schema)
        raw = await self.complete(
            prompt,
            system_prompt=(system_prompt or "") + instruction,
            temperature=temperature,
        )
        return schema.model_validate_json(strip_code_fences(raw))

    async def aclose(self) -> None:
        """Release network resources held by the adapter."""
