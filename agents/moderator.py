"""LLM moderator that selects all responders in a single call."""

import logging
from typing import List, Optional

from llm.gateway import GenerationGateway, GenerationError
from schemas.chat import Message
from schemas.responses import AgentCandidate, ResponderSelectorOutput, SelectedResponse
from .mentions import mentions_name

logger = logging.getLogger(__name__)


class LLMModeratorSelector:
    """
    Chooses zero or more responders and writes their replies at once.

    One backend call per trigger instead of one per agent, which keeps
    request volume low when many agents share a single credential.
    """

    PROMPT_TEMPLATE = """You are a master chat moderator for a group chat with humans and multiple AI assistants.
Analyze the latest message in the context of the recent chat history and decide which AI assistant(s), if any, should reply.

## Available AI Assistants
{participants}

## Recent Chat History (oldest to newest)
{history}

## Latest Message
Message ID: {trigger_id}
From: {author}
Content: "{text}"

## Decision Framework
1. Direct address: an assistant mentioned by name or asked a direct question should reply.{addressed}
2. Relevance: otherwise choose assistants whose expertise or memories make them relevant to the message.
3. Replies between assistants: if the latest message is from an AI, another AI replies only with new information, a counter-argument, or a clarifying question. Never just agree or thank.
4. Trivial acknowledgments such as "ok" or "thanks" get no reply at all.
5. Avoid dogpiling: several assistants may reply, but not every assistant should reply to every message.
6. Each reply must match its assistant's name and persona and be concise, as in a real-time chat.
7. If a reply directly answers a specific message from the history, put that message's ID in "replyToId". Otherwise omit the field.

If no reply is necessary, return {{"responses": []}}."""

    def _build_prompt(
        self,
        trigger: Message,
        history: List[Message],
        candidates: List[AgentCandidate]
    ) -> str:
        participant_lines = []
        for candidate in candidates:
            agent = candidate.agent
            lines = [
                f"- ID: {agent.id}",
                f"  Name: {agent.name}",
                f"  Persona: {agent.persona.describe()}",
            ]
            if candidate.memories:
                lines.append(f"  Memories: {' | '.join(candidate.memories)}")
            participant_lines.append("\n".join(lines))

        history_lines = [
            f"- Message ID: {m.id}\n  From: {m.author.name}\n  Content: \"{m.text}\""
            for m in history if m.author and m.id != trigger.id
        ]

        addressed = [c.agent.name for c in candidates if mentions_name(trigger.text, c.agent.name)]
        addressed_note = f" The latest message appears to address: {', '.join(addressed)}." if addressed else ""

        return self.PROMPT_TEMPLATE.format(
            participants="\n".join(participant_lines),
            history="\n".join(history_lines) or "(no earlier messages)",
            trigger_id=trigger.id,
            author=trigger.author.name,
            text=trigger.text,
            addressed=addressed_note
        )

    async def select(
        self,
        trigger: Message,
        history: List[Message],
        candidates: List[AgentCandidate],
        gateway: Optional[GenerationGateway]
    ) -> List[SelectedResponse]:
        """
        Select responders with one backend call.

        Responses naming unknown agents, the trigger's author, an agent
        already selected, or carrying an empty reply are dropped.

        Returns:
            Responses in the order the moderator returned them
        """
        if not candidates:
            return []

        if gateway is None:
            logger.warning("No usable credential for the moderator; nobody replies")
            return []

        prompt = self._build_prompt(trigger, history, candidates)

        try:
            output = await gateway.generate(prompt, ResponderSelectorOutput)
        except GenerationError as e:
            logger.warning(f"Moderator selection failed: {e}")
            return []

        allowed = {c.agent.id for c in candidates}
        author_id = trigger.author.id if trigger.author else None

        selected: List[SelectedResponse] = []
        seen = set()
        for response in output.responses:
            if response.responder_id not in allowed or response.responder_id == author_id:
                logger.debug(f"Moderator picked ineligible responder {response.responder_id}")
                continue
            if response.responder_id in seen or not response.reply.strip():
                continue
            seen.add(response.responder_id)
            selected.append(SelectedResponse(
                agent_id=response.responder_id,
                reply=response.reply.strip(),
                reply_to_id=response.reply_to_id
            ))

        return selected
