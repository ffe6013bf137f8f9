"""Per-agent long-term memory: summarization, retrieval and pruning."""

import asyncio
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Optional, Set

from llm.gateway import GenerationGateway, GenerationError
from schemas.chat import MemoryItem, new_id
from schemas.responses import PruneOutput, RelevantMemoriesOutput, SummarizeOutput

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str], Awaitable[None]]


def _normalize(text: str) -> str:
    return " ".join(text.strip().lstrip("-*• ").split()).casefold()


class MemoryManager:
    """
    Owns the memory banks of every agent in one group.

    Banks are ordered oldest first. Once an automatic append pushes a bank
    past ``prune_threshold`` items, the oldest ``prune_count`` items are
    condensed into one summary item placed where the block was. Mutations
    of one bank are serialized by a per-agent lock; the summary call itself
    runs outside the lock so reads and appends are never blocked by it.
    """

    PRUNE_THRESHOLD = 5
    PRUNE_COUNT = 3

    SUMMARIZE_PROMPT = """You are a memory management module for a conversational AI with the following persona: {persona}

Analyze the conversation transcript below and extract the most important, non-trivial facts and key points.
Summarize them into a single, dense, 1-2 sentence memory item under 100 words.

## Rules
- Do not include trivial chatter, greetings, or acknowledgments.
- Focus on information the AI should remember in future conversations.
- If the conversation contains nothing new and important, return an empty string for "newMemory".

## Conversation Transcript
---
{transcript}
---"""

    PRUNE_PROMPT = """You are a memory management module.
Merge and prune the following older memories into a single, tighter, and more comprehensive summary.
The summary must be under 100 words and capture the essence of every point.

## Memories to prune
{memories}"""

    RETRIEVE_PROMPT = """You are a memory retrieval module.
Select the memory items from the memory bank that are relevant to the current message.
Return only memories directly related to the message's topics, copied verbatim. Do not return all memories.

## Current Message
"{query}"

## Memory Bank
{memories}"""

    def __init__(
        self,
        gateway: Optional[GenerationGateway],
        prune_threshold: int = PRUNE_THRESHOLD,
        prune_count: int = PRUNE_COUNT,
        on_change: Optional[ChangeCallback] = None
    ):
        """
        Initialize memory manager.

        Args:
            gateway: Gateway for summarization, pruning and retrieval (None disables them)
            prune_threshold: Bank length above which pruning runs
            prune_count: Number of oldest items condensed per prune
            on_change: Awaited with the agent id after automatic bank changes
        """
        self.gateway = gateway
        self.prune_threshold = prune_threshold
        self.prune_count = prune_count
        self.on_change = on_change

        self._banks: Dict[str, List[MemoryItem]] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._pruning: Set[str] = set()

    # == Bank access ==

    def load_bank(self, agent_id: str, items: List[MemoryItem]):
        """Replace an agent's bank wholesale (loading or rollback)."""
        self._banks[agent_id] = [item.model_copy() for item in items]

    def forget_agent(self, agent_id: str):
        self._banks.pop(agent_id, None)

    def get_bank(self, agent_id: str) -> List[MemoryItem]:
        return [item.model_copy() for item in self._banks.get(agent_id, [])]

    def get_contents(self, agent_id: str) -> List[str]:
        return [item.content for item in self._banks.get(agent_id, [])]

    def is_pruning(self, agent_id: str) -> bool:
        return agent_id in self._pruning

    async def _notify(self, agent_id: str):
        if not self.on_change:
            return
        try:
            await self.on_change(agent_id)
        except Exception as e:
            logger.error(f"Failed to persist memory bank for {agent_id}: {e}")

    # == Automatic lifecycle ==

    async def append(self, agent_id: str, content: str) -> Optional[MemoryItem]:
        """
        Append a memory to the tail of an agent's bank.

        Empty or whitespace-only content is ignored. The prune check runs
        against the bank as committed by this append.

        Returns:
            The stored item, or None if nothing was appended
        """
        if not content or not content.strip():
            logger.debug(f"Skipping empty memory for {agent_id}")
            return None

        item = MemoryItem(content=content.strip())
        async with self._locks[agent_id]:
            bank = self._banks.setdefault(agent_id, [])
            bank.append(item)
            length = len(bank)

        logger.info(f"Stored memory {item.id} for {agent_id} (bank size {length})")
        await self._notify(agent_id)

        if length > self.prune_threshold:
            await self.prune_if_needed(agent_id)

        return item

    async def prune_if_needed(self, agent_id: str) -> bool:
        """
        Condense the oldest items if the bank is over the threshold.

        Returns:
            True if the bank was compacted
        """
        if self.gateway is None:
            logger.warning(f"No gateway for pruning; memory bank of {agent_id} left as is")
            return False

        async with self._locks[agent_id]:
            bank = self._banks.get(agent_id, [])
            if len(bank) <= self.prune_threshold or agent_id in self._pruning:
                return False
            block = [(item.id, item.content) for item in bank[:self.prune_count]]
            self._pruning.add(agent_id)

        try:
            prompt = self.PRUNE_PROMPT.format(
                memories="\n".join(f"- {content}" for _, content in block)
            )
            try:
                output = await self.gateway.generate(prompt, PruneOutput)
            except GenerationError as e:
                logger.warning(f"Failed to prune memories for {agent_id}: {e}")
                return False

            summary = output.pruned_summary.strip()
            if not summary:
                logger.warning(f"Empty prune summary for {agent_id}; bank left as is")
                return False

            async with self._locks[agent_id]:
                bank = self._banks.get(agent_id, [])
                block_ids = {item_id for item_id, _ in block}
                current = [(item.id, item.content) for item in bank if item.id in block_ids]
                if current != block:
                    logger.warning(f"Memory bank of {agent_id} changed during pruning; skipped")
                    return False

                start = next(i for i, item in enumerate(bank) if item.id in block_ids)
                remaining = [item for item in bank if item.id not in block_ids]
                compacted = MemoryItem(id=new_id("mem-pruned"), content=summary)
                remaining.insert(start, compacted)
                self._banks[agent_id] = remaining
                length = len(remaining)
        finally:
            self._pruning.discard(agent_id)

        logger.info(f"Pruned {len(block)} memories for {agent_id} into {compacted.id} (bank size {length})")
        await self._notify(agent_id)
        return True

    async def summarize_and_store(
        self,
        agent_id: str,
        persona_description: str,
        transcript: str
    ) -> Optional[MemoryItem]:
        """
        Distill a conversation slice into a new memory for an agent.

        Failures and empty summaries leave the bank untouched.
        """
        if not transcript.strip():
            return None

        if self.gateway is None:
            logger.warning(f"No gateway for summarization; no memory stored for {agent_id}")
            return None

        prompt = self.SUMMARIZE_PROMPT.format(persona=persona_description, transcript=transcript)
        try:
            output = await self.gateway.generate(prompt, SummarizeOutput)
        except GenerationError as e:
            logger.warning(f"Failed to summarize conversation for {agent_id}: {e}")
            return None

        return await self.append(agent_id, output.new_memory)

    async def retrieve_relevant(self, agent_id: str, query: str) -> List[str]:
        """
        Memories relevant to a message, in bank order.

        Relevance is judged by the backend; only items actually present in
        the bank are returned. An empty bank returns immediately.
        """
        contents = self.get_contents(agent_id)
        if not contents:
            return []

        if self.gateway is None:
            return []

        prompt = self.RETRIEVE_PROMPT.format(
            query=query,
            memories="\n".join(f"- {content}" for content in contents)
        )
        try:
            output = await self.gateway.generate(prompt, RelevantMemoriesOutput)
        except GenerationError as e:
            logger.warning(f"Failed to retrieve memories for {agent_id}: {e}")
            return []

        wanted = {_normalize(text) for text in output.relevant_memories}
        relevant = [content for content in contents if _normalize(content) in wanted]

        if len(relevant) < len(wanted):
            logger.debug(f"Dropped {len(wanted) - len(relevant)} memories not found in the bank of {agent_id}")
        return relevant

    # == Manual edits (never trigger pruning) ==

    async def add_memory(self, agent_id: str, content: str) -> MemoryItem:
        """Add a memory by hand."""
        if not content or not content.strip():
            raise ValueError("Memory content cannot be empty")

        item = MemoryItem(content=content.strip())
        async with self._locks[agent_id]:
            self._banks.setdefault(agent_id, []).append(item)
        return item

    async def update_memory(self, agent_id: str, memory_id: str, content: str) -> MemoryItem:
        """Overwrite the content of one memory."""
        if not content or not content.strip():
            raise ValueError("Memory content cannot be empty")

        async with self._locks[agent_id]:
            for item in self._banks.get(agent_id, []):
                if item.id == memory_id:
                    item.content = content.strip()
                    return item.model_copy()
        raise KeyError(f"Memory {memory_id} not found for {agent_id}")

    async def delete_memory(self, agent_id: str, memory_id: str):
        """Remove one memory."""
        async with self._locks[agent_id]:
            bank = self._banks.get(agent_id, [])
            kept = [item for item in bank if item.id != memory_id]
            if len(kept) == len(bank):
                raise KeyError(f"Memory {memory_id} not found for {agent_id}")
            self._banks[agent_id] = kept

    async def insert_memory(self, agent_id: str, index: int, item: MemoryItem):
        """Put an item back at a position (undoing a delete)."""
        async with self._locks[agent_id]:
            bank = self._banks.setdefault(agent_id, [])
            bank.insert(min(index, len(bank)), item.model_copy())
