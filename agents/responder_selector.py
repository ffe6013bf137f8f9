"""Responder selection: which agents reply to a message, and what they say."""

import asyncio
import logging
from typing import List, Optional

from llm.credentials import GatewayFactory
from memory.context_manager import ConversationContextManager
from schemas.chat import Message
from schemas.responses import AgentCandidate, ReplyDecision, SelectedResponse
from .mentions import is_trivial_acknowledgment, mentions_name
from .moderator import LLMModeratorSelector
from .reply_decider import LLMReplyDecider

logger = logging.getLogger(__name__)

PER_AGENT = "per_agent"
MODERATOR = "moderator"


class ResponderSelector:
    """
    Selects zero, one or many responders for a trigger message.

    Deterministic guards run first (author exclusion, empty roster,
    trivial acknowledgments); the judgment itself is delegated to the
    backend, either one decision per agent fanned out concurrently or a
    single moderator call.
    """

    def __init__(
        self,
        gateway_factory: GatewayFactory,
        mode: str = PER_AGENT,
        decider: Optional[LLMReplyDecider] = None,
        moderator: Optional[LLMModeratorSelector] = None
    ):
        """
        Initialize selector.

        Args:
            gateway_factory: Provides a gateway per agent (or for the moderator)
            mode: "per_agent" or "moderator"
            decider: Per-agent decision maker
            moderator: Single-call moderator
        """
        if mode not in (PER_AGENT, MODERATOR):
            raise ValueError(f"Unknown selection mode: {mode}")

        self.gateway_factory = gateway_factory
        self.mode = mode
        self.decider = decider or LLMReplyDecider()
        self.moderator = moderator or LLMModeratorSelector()

    async def select_responders(
        self,
        trigger: Message,
        recent_history: List[Message],
        candidates: List[AgentCandidate]
    ) -> List[SelectedResponse]:
        """
        Decide who replies to ``trigger``.

        Args:
            trigger: Message being evaluated
            recent_history: Recent messages, oldest first (may include the trigger)
            candidates: Agents that may reply, with their relevant memories

        Returns:
            Selected responses; per-agent mode keeps roster order
        """
        if trigger.author is None:
            return []

        eligible = [c for c in candidates if c.agent.id != trigger.author.id]
        if not eligible:
            return []

        if is_trivial_acknowledgment(trigger.text) and not any(
            mentions_name(trigger.text, c.agent.name) for c in eligible
        ):
            logger.info(f"Message {trigger.id} is a trivial acknowledgment; no replies")
            return []

        if self.mode == MODERATOR:
            gateway = await self.gateway_factory.gateway_for_moderator()
            responses = await self.moderator.select(trigger, recent_history, eligible, gateway)
        else:
            responses = await self._select_per_agent(trigger, recent_history, eligible)

        known_ids = {m.id for m in recent_history} | {trigger.id}
        for response in responses:
            if response.reply_to_id and response.reply_to_id not in known_ids:
                logger.debug(f"Dropping unknown replyToId {response.reply_to_id} from {response.agent_id}")
                response.reply_to_id = None

        logger.info(
            f"Selected {len(responses)} of {len(eligible)} agents for message {trigger.id}"
        )
        return responses

    async def _decide_for(
        self,
        trigger: Message,
        history: List[Message],
        history_text: str,
        candidate: AgentCandidate
    ) -> ReplyDecision:
        gateway = await self.gateway_factory.gateway_for_agent(candidate.agent)
        return await self.decider.decide(trigger, history, history_text, candidate, gateway)

    async def _select_per_agent(
        self,
        trigger: Message,
        history: List[Message],
        candidates: List[AgentCandidate]
    ) -> List[SelectedResponse]:
        history_text = ConversationContextManager.format_transcript(history)

        results = await asyncio.gather(
            *(self._decide_for(trigger, history, history_text, c) for c in candidates),
            return_exceptions=True
        )

        selected = []
        for candidate, result in zip(candidates, results):
            if isinstance(result, BaseException):
                logger.error(f"Error getting decision for {candidate.agent.name}: {result}")
                continue
            if result.should_reply and result.reply and result.reply.strip():
                selected.append(SelectedResponse(
                    agent_id=candidate.agent.id,
                    reply=result.reply.strip(),
                    reply_to_id=result.reply_to_id
                ))
        return selected
