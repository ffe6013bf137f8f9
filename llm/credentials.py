"""Backend credentials: round-robin pool and per-credential gateway cache."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel

from .base_client import BaseLLMClient
from .factory import LLMProvider, create_llm_client
from .gateway import GenerationGateway

logger = logging.getLogger(__name__)

SYSTEM_CREDENTIAL_ID = "system"


class ApiCredential(BaseModel):
    """A usable backend API key."""
    id: str
    name: str
    key: str
    provider: LLMProvider = LLMProvider.OPENAI


CredentialLoader = Callable[[], Awaitable[List[ApiCredential]]]


class CredentialPool:
    """
    Hands out credentials round-robin to spread rate limits across keys.

    With a loader, the pool refreshes itself once ``cache_seconds`` have
    passed. A failed refresh keeps the previous credentials.
    """

    CACHE_SECONDS = 5 * 60

    def __init__(
        self,
        credentials: Optional[List[ApiCredential]] = None,
        loader: Optional[CredentialLoader] = None,
        cache_seconds: float = CACHE_SECONDS
    ):
        self._credentials: List[ApiCredential] = list(credentials or [])
        self._loader = loader
        self._cache_seconds = cache_seconds
        self._last_fetched = 0.0 if loader else time.monotonic()
        self._index = 0
        self._lock = asyncio.Lock()

    async def _refresh_if_stale(self):
        if not self._loader:
            return

        now = time.monotonic()
        if self._credentials and now - self._last_fetched < self._cache_seconds:
            return

        try:
            credentials = await self._loader()
            self._credentials = list(credentials)
            self._index = 0
            logger.info(f"Loaded {len(self._credentials)} backend credentials")
        except Exception as e:
            logger.error(f"Failed to load backend credentials: {e}")
            if not self._credentials:
                logger.error("No backend credentials available")
        self._last_fetched = now

    async def next_credential(self) -> Optional[ApiCredential]:
        """Next credential in round-robin order, or None if the pool is empty."""
        async with self._lock:
            await self._refresh_if_stale()
            if not self._credentials:
                return None
            credential = self._credentials[self._index % len(self._credentials)]
            self._index = (self._index + 1) % len(self._credentials)
            return credential

    async def get(self, credential_id: str) -> Optional[ApiCredential]:
        """Look up a credential by id."""
        async with self._lock:
            await self._refresh_if_stale()
            for credential in self._credentials:
                if credential.id == credential_id:
                    return credential
        return None

    def __len__(self) -> int:
        return len(self._credentials)


ClientFactory = Callable[[LLMProvider, Optional[str], Optional[str]], BaseLLMClient]


class GatewayFactory:
    """
    Builds and caches one GenerationGateway per credential id.

    Injected into the selection engine and memory manager so that no
    module holds a global client.
    """

    def __init__(
        self,
        settings,
        pool: Optional[CredentialPool] = None,
        client_factory: ClientFactory = create_llm_client
    ):
        """
        Initialize factory.

        Args:
            settings: Application settings (provider, model, system key, timeouts)
            pool: Credential pool for agent replies
            client_factory: Callable building an LLM client from (provider, key, model)
        """
        self.settings = settings
        self.pool = pool or CredentialPool()
        self.client_factory = client_factory
        self._gateways: Dict[str, GenerationGateway] = {}

    def _gateway_for(self, credential: ApiCredential, temperature: float) -> GenerationGateway:
        cache_key = f"{credential.id}:{temperature}"
        gateway = self._gateways.get(cache_key)
        if gateway is None:
            client = self.client_factory(credential.provider, credential.key, self.settings.llm_model)
            gateway = GenerationGateway(
                llm_client=client,
                timeout=self.settings.generation_timeout,
                temperature=temperature,
                label=credential.id
            )
            self._gateways[cache_key] = gateway
        return gateway

    def _system_credential(self) -> Optional[ApiCredential]:
        api_key = self.settings.get_llm_api_key()
        if not api_key:
            return None
        return ApiCredential(
            id=SYSTEM_CREDENTIAL_ID,
            name="System key",
            key=api_key,
            provider=LLMProvider(self.settings.llm_provider)
        )

    def system_gateway(self) -> Optional[GenerationGateway]:
        """Gateway on the system credential, used for memory management."""
        credential = self._system_credential()
        if credential is None:
            logger.warning(f"No API key for {self.settings.llm_provider}; memory management disabled")
            return None
        return self._gateway_for(credential, self.settings.memory_temperature)

    async def _next_reply_credential(self, requester: str) -> Optional[ApiCredential]:
        credential = await self.pool.next_credential()
        if credential is None:
            credential = self._system_credential()
            if credential is not None:
                logger.debug(f"No pool credential; {requester} falls back to the system key")
        return credential

    async def gateway_for_agent(self, agent) -> Optional[GenerationGateway]:
        """
        Gateway an agent should use for its reply decision.

        Order: the agent's pinned credential, the next pool credential,
        then the system credential.

        Returns:
            Gateway, or None when no credential is usable
        """
        credential = None
        if agent.api_key_id:
            credential = await self.pool.get(agent.api_key_id)
            if credential is None:
                logger.warning(f"Credential {agent.api_key_id} pinned by {agent.name} not found")

        if credential is None:
            credential = await self._next_reply_credential(agent.name)

        if credential is None:
            logger.warning(f"No usable credential for {agent.name}; skipping")
            return None

        return self._gateway_for(credential, self.settings.decision_temperature)

    async def gateway_for_moderator(self) -> Optional[GenerationGateway]:
        """Gateway for a single-call moderator selection."""
        credential = await self._next_reply_credential("moderator")
        if credential is None:
            logger.warning("No usable credential for the moderator")
            return None
        return self._gateway_for(credential, self.settings.decision_temperature)

    async def close(self):
        """Close every cached client."""
        gateways = list(self._gateways.values())
        self._gateways.clear()
        for gateway in gateways:
            await gateway.llm_client.close()
