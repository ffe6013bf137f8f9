"""Anthropic chat client."""

import logging
import os
from typing import List, Optional

from anthropic import AsyncAnthropic

from .base_client import BaseLLMClient, Message, LLMResponse

logger = logging.getLogger(__name__)


class AnthropicClient(BaseLLMClient):
    """
    Async Anthropic messages client.

    Anthropic has no JSON response format, so JSON mode prefills the
    assistant turn with an opening brace and puts it back on the reply.
    """

    DEFAULT_MODEL = "claude-sonnet-4-20250514"
    JSON_PREFILL = "{"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None
    ):
        """
        Initialize Anthropic client.

        Args:
            api_key: Anthropic API key (falls back to ANTHROPIC_API_KEY env var)
            model: Model to use (default: claude-sonnet-4-20250514)
        """
        api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not api_key:
            raise ValueError("An Anthropic API key is required")

        self.model = model or self.DEFAULT_MODEL
        self.client = AsyncAnthropic(api_key=api_key)
        logger.debug(f"Anthropic client ready ({self.model})")

    @staticmethod
    def _split_system(messages: List[Message]):
        """System prompt text and the remaining conversation turns."""
        system = "\n".join(m.content for m in messages if m.role == "system")
        turns = [{"role": m.role, "content": m.content} for m in messages if m.role != "system"]
        return system, turns

    async def chat(
        self,
        messages: List[Message],
        temperature: float = 0.7,
        max_tokens: int = 1000,
        json_mode: bool = False
    ) -> LLMResponse:
        """Send a messages request, prefilling "{" in JSON mode."""
        system, turns = self._split_system(messages)
        if json_mode:
            turns.append({"role": "assistant", "content": self.JSON_PREFILL})

        kwargs = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": turns,
        }
        if system:
            kwargs["system"] = system

        response = await self.client.messages.create(**kwargs)

        content = "".join(block.text for block in response.content if block.type == "text")
        if json_mode:
            content = self.JSON_PREFILL + content

        usage = None
        if response.usage:
            usage = {
                "prompt_tokens": response.usage.input_tokens,
                "completion_tokens": response.usage.output_tokens,
                "total_tokens": response.usage.input_tokens + response.usage.output_tokens,
            }

        return LLMResponse(
            content=content,
            usage=usage,
            finish_reason=response.stop_reason
        )

    async def close(self):
        await self.client.close()

    def get_provider_name(self) -> str:
        return "anthropic"

    def get_model_name(self) -> str:
        return self.model
