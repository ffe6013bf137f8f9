"""Base LLM client interface."""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from pydantic import BaseModel


class Message(BaseModel):
    """A prompt turn sent to an LLM backend."""
    role: str  # "system", "user" or "assistant"
    content: str


class LLMResponse(BaseModel):
    """Raw completion text with usage accounting."""
    content: str
    usage: Optional[Dict[str, int]] = None
    finish_reason: Optional[str] = None


class BaseLLMClient(ABC):
    """
    Async chat backend.

    Clients make exactly one request per call and let provider errors
    propagate; wrapping them is the gateway's job.
    """

    @abstractmethod
    async def chat(
        self,
        messages: List[Message],
        temperature: float = 0.7,
        max_tokens: int = 1000,
        json_mode: bool = False
    ) -> LLMResponse:
        """
        Send one chat request.

        Args:
            messages: Prompt turns, system first
            temperature: Sampling temperature
            max_tokens: Maximum tokens in the reply
            json_mode: Constrain the reply to a JSON object where supported

        Returns:
            LLMResponse with the reply text
        """
        pass

    async def close(self):
        """Release network resources."""

    @abstractmethod
    def get_provider_name(self) -> str:
        pass

    @abstractmethod
    def get_model_name(self) -> str:
        pass
