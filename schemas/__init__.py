"""Pydantic schemas for the group chat orchestrator."""

from .chat import (
    Persona,
    MemoryItem,
    HumanParticipant,
    AgentParticipant,
    Participant,
    AuthorSnapshot,
    MessageType,
    Message,
    ChatGroup,
    HUMAN_USER,
)
from .responses import (
    ReplyDecision,
    ModeratedResponse,
    ResponderSelectorOutput,
    SummarizeOutput,
    PruneOutput,
    RelevantMemoriesOutput,
    OptimizedPromptOutput,
    AgentCandidate,
    SelectedResponse,
)
from .events import ChatEvent, ChatEventKind

__all__ = [
    "Persona",
    "MemoryItem",
    "HumanParticipant",
    "AgentParticipant",
    "Participant",
    "AuthorSnapshot",
    "MessageType",
    "Message",
    "ChatGroup",
    "HUMAN_USER",
    "ReplyDecision",
    "ModeratedResponse",
    "ResponderSelectorOutput",
    "SummarizeOutput",
    "PruneOutput",
    "RelevantMemoriesOutput",
    "OptimizedPromptOutput",
    "AgentCandidate",
    "SelectedResponse",
    "ChatEvent",
    "ChatEventKind",
]
