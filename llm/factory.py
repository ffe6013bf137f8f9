"""LLM client factory."""

from enum import Enum
from typing import Optional, Union

from .base_client import BaseLLMClient
from .openai_client import OpenAIClient
from .anthropic_client import AnthropicClient


class LLMProvider(str, Enum):
    """Supported LLM providers."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


CLIENT_CLASSES = {
    LLMProvider.OPENAI: OpenAIClient,
    LLMProvider.ANTHROPIC: AnthropicClient,
}


def create_llm_client(
    provider: Union[LLMProvider, str],
    api_key: Optional[str] = None,
    model: Optional[str] = None
) -> BaseLLMClient:
    """
    Build an async client for one credential.

    Args:
        provider: Provider enum or its string value
        api_key: Key of the credential the client is bound to
        model: Optional model override

    Raises:
        ValueError: For an unknown provider or a missing key
    """
    try:
        client_class = CLIENT_CLASSES[LLMProvider(provider)]
    except ValueError:
        raise ValueError(f"Unsupported LLM provider: {provider}") from None
    return client_class(api_key=api_key, model=model)
