"""Structured LLM output schemas and selection results."""

from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field

from .chat import AgentParticipant


class ReplyDecision(BaseModel):
    """One agent's decision about replying to a message."""
    model_config = ConfigDict(populate_by_name=True)

    should_reply: bool = Field(
        False,
        alias="shouldReply",
        description="Whether the assistant has decided to reply to the message."
    )
    reply: Optional[str] = Field(
        None,
        description="The reply text. Only present when shouldReply is true."
    )
    reply_to_id: Optional[str] = Field(
        None,
        alias="replyToId",
        description="ID of the earlier message this reply directly answers. Omit if not a direct reply."
    )


class ModeratedResponse(BaseModel):
    """A single reply chosen by the moderator."""
    model_config = ConfigDict(populate_by_name=True)

    responder_id: str = Field(
        alias="responderId",
        description="The ID of the AI assistant that should reply."
    )
    reply_to_id: Optional[str] = Field(
        None,
        alias="replyToId",
        description="ID of the message this reply directly answers. Omit if not a direct reply."
    )
    reply: str = Field(description="The assistant's generated reply.")


class ResponderSelectorOutput(BaseModel):
    """Moderator output: any number of replies."""
    responses: List[ModeratedResponse] = Field(
        default_factory=list,
        description="Replies from the AI assistants. Can be empty."
    )


class SummarizeOutput(BaseModel):
    """New memory distilled from a conversation slice."""
    model_config = ConfigDict(populate_by_name=True)

    new_memory: str = Field(
        "",
        alias="newMemory",
        description="A dense 1-2 sentence memory item, or an empty string if nothing is worth remembering."
    )


class PruneOutput(BaseModel):
    """Compacted summary of several old memories."""
    model_config = ConfigDict(populate_by_name=True)

    pruned_summary: str = Field(
        "",
        alias="prunedSummary",
        description="One cohesive summary under 100 words merging all the provided memories."
    )


class RelevantMemoriesOutput(BaseModel):
    """Memories judged relevant to a query."""
    model_config = ConfigDict(populate_by_name=True)

    relevant_memories: List[str] = Field(
        default_factory=list,
        alias="relevantMemories",
        description="Memory items copied verbatim from the bank that relate to the query."
    )


class OptimizedPromptOutput(BaseModel):
    """Refined persona instructions."""
    model_config = ConfigDict(populate_by_name=True)

    optimized_prompt: str = Field(alias="optimizedPrompt")


class AgentCandidate(BaseModel):
    """An agent offered to the selection engine with its retrieved memories."""
    agent: AgentParticipant
    memories: List[str] = Field(default_factory=list)


class SelectedResponse(BaseModel):
    """A reply the orchestrator should deliver."""
    agent_id: str
    reply: str
    reply_to_id: Optional[str] = None
