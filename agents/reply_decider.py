"""LLM-based per-agent reply decision."""

import logging
from typing import List, Optional

from llm.gateway import GenerationGateway, GenerationError
from schemas.chat import Message
from schemas.responses import AgentCandidate, ReplyDecision
from .mentions import mentions_name

logger = logging.getLogger(__name__)


class LLMReplyDecider:
    """
    Lets one agent decide, in character, whether to answer a message.

    The decision is delegated to the backend under a fixed policy:
    - direct address is the strongest reason to reply
    - expertise or remembered context is a secondary reason
    - answering another AI needs new information, a counter-argument
      or a clarifying question
    - acknowledgments and politeness never justify a reply
    """

    PROMPT_TEMPLATE = """You are an AI assistant in a group chat with a human and other AI assistants.
Your name is {name} and your persona is: "{persona}".

You must make a STRICT decision about whether to reply to the latest message.
Do not reply to be polite or to acknowledge something.

## Decision Policy
1. Reply if the message directly mentions you by your name, "{name}", or asks you a direct question.
2. Otherwise reply only if the message is highly relevant to your specific expertise or to your memories below.
3. If the message was written by another AI assistant, reply only if you add new information, a counter-argument, or a clarifying question. Never reply just to agree or to thank.
4. Never reply to trivial acknowledgments such as "ok" or "thanks".
5. Not every assistant should answer every message. If others are better placed to answer, stay silent.

## Your Memories
{memories}

## Recent Chat History (oldest first)
{history}

## Messages You Can Reply To
{threadable}

## The Message to Consider
{author}: "{text}"
{address_note}
## Your Task
- If you decide to reply, set "shouldReply" to true and write a concise chat reply consistent with your persona.
- If your reply directly answers one specific message listed above other than the message to consider, set "replyToId" to that message's ID. Otherwise omit "replyToId".
- If you decide NOT to reply, set "shouldReply" to false and omit "reply"."""

    def _build_prompt(
        self,
        trigger: Message,
        history: List[Message],
        history_text: str,
        candidate: AgentCandidate
    ) -> str:
        agent = candidate.agent

        if candidate.memories:
            memories = "\n".join(f"- {memory}" for memory in candidate.memories)
        else:
            memories = "You have no memories."

        targets = [m for m in history if m.id != trigger.id] + [trigger]
        threadable = "\n".join(
            f"- ID: {m.id} | {m.author.name}: \"{m.text}\""
            for m in targets if m.author
        )

        address_note = ""
        if mentions_name(trigger.text, agent.name):
            address_note = f"\nNote: this message appears to address you ({agent.name}) directly.\n"

        return self.PROMPT_TEMPLATE.format(
            name=agent.name,
            persona=agent.persona.describe(),
            memories=memories,
            history=history_text or "(no earlier messages)",
            threadable=threadable,
            author=trigger.author.name,
            text=trigger.text,
            address_note=address_note
        )

    async def decide(
        self,
        trigger: Message,
        history: List[Message],
        history_text: str,
        candidate: AgentCandidate,
        gateway: Optional[GenerationGateway]
    ) -> ReplyDecision:
        """
        Decide whether one agent replies.

        Args:
            trigger: Message under consideration
            history: Recent messages (context and threading targets)
            history_text: History formatted as ``name: text`` lines
            candidate: The agent with its relevant memories
            gateway: Gateway for this agent, None when no credential is usable

        Returns:
            ReplyDecision; any failure yields should_reply=False
        """
        agent = candidate.agent

        # Never let an agent answer its own message
        if trigger.author and trigger.author.id == agent.id:
            return ReplyDecision(should_reply=False)

        if gateway is None:
            return ReplyDecision(should_reply=False)

        prompt = self._build_prompt(trigger, history, history_text, candidate)

        try:
            decision = await gateway.generate(prompt, ReplyDecision)
        except GenerationError as e:
            logger.warning(f"Reply decision failed for {agent.name}: {e}")
            return ReplyDecision(should_reply=False)

        if not decision.should_reply or not (decision.reply or "").strip():
            return ReplyDecision(should_reply=False)

        logger.info(f"{agent.name} decided to reply")
        return decision
