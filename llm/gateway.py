"""Structured-output gateway over an LLM client."""

import asyncio
import json
import logging
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .base_client import BaseLLMClient, Message

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class GenerationError(Exception):
    """Raised when the backend gives no usable structured result."""


class GenerationGateway:
    """
    Turns a rendered prompt plus an output schema into a validated result.

    One attempt per call, bounded by ``timeout``. Every failure mode
    (backend error, timeout, empty reply, bad JSON, schema mismatch) is
    raised as GenerationError so callers can degrade to "no result".
    """

    SYSTEM_PROMPT = """You are a component of a group chat application.
Follow the instructions in the user message exactly.

## Response Format
Respond with valid JSON only, no prose and no markdown. The JSON must match this JSON schema:
{schema}"""

    def __init__(
        self,
        llm_client: BaseLLMClient,
        timeout: float = 30.0,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        label: str = "default"
    ):
        """
        Initialize gateway.

        Args:
            llm_client: Backend client used for every call
            timeout: Seconds to wait for one backend call
            temperature: Sampling temperature
            max_tokens: Maximum tokens in the reply
            label: Name used in logs (usually the credential id)
        """
        self.llm_client = llm_client
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.label = label

    async def generate(
        self,
        prompt: str,
        schema: Type[T],
        temperature: Optional[float] = None
    ) -> T:
        """
        Generate a structured result.

        Args:
            prompt: Fully rendered prompt text
            schema: Pydantic model describing the expected JSON
            temperature: Optional per-call temperature override

        Returns:
            Instance of ``schema``

        Raises:
            GenerationError: If no valid result could be produced
        """
        messages = [
            Message(
                role="system",
                content=self.SYSTEM_PROMPT.format(
                    schema=json.dumps(schema.model_json_schema())
                )
            ),
            Message(role="user", content=prompt)
        ]

        try:
            response = await asyncio.wait_for(
                self.llm_client.chat(
                    messages=messages,
                    temperature=self.temperature if temperature is None else temperature,
                    max_tokens=self.max_tokens,
                    json_mode=True
                ),
                timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise GenerationError(
                f"[{self.label}] backend timed out after {self.timeout}s"
            ) from e
        except Exception as e:
            raise GenerationError(f"[{self.label}] backend call failed: {e}") from e

        content = (response.content or "").strip()
        if not content:
            raise GenerationError(f"[{self.label}] backend returned empty content")

        content = self._strip_code_fence(content)

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            raise GenerationError(f"[{self.label}] response is not JSON: {e}") from e

        if parsed is None:
            raise GenerationError(f"[{self.label}] backend returned null")

        try:
            result = schema.model_validate(parsed)
        except ValidationError as e:
            raise GenerationError(
                f"[{self.label}] response does not match {schema.__name__}: {e}"
            ) from e

        logger.debug(f"[{self.label}] generated {schema.__name__} (usage={response.usage})")
        return result

    @staticmethod
    def _strip_code_fence(content: str) -> str:
        """Remove a surrounding markdown code block, if any."""
        if content.startswith("```"):
            content = content.split("```")[1]
            if content.startswith("json"):
                content = content[4:]
            content = content.strip()
        return content
