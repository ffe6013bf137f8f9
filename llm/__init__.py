"""LLM client abstraction layer."""

from .base_client import BaseLLMClient, Message, LLMResponse
from .factory import create_llm_client, LLMProvider
from .gateway import GenerationGateway, GenerationError
from .credentials import ApiCredential, CredentialPool, GatewayFactory

__all__ = [
    "BaseLLMClient",
    "Message",
    "LLMResponse",
    "create_llm_client",
    "LLMProvider",
    "GenerationGateway",
    "GenerationError",
    "ApiCredential",
    "CredentialPool",
    "GatewayFactory",
]
