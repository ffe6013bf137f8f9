"""Events emitted by the turn orchestrator for presentation layers."""

from enum import Enum
from typing import Optional
from pydantic import BaseModel

from .chat import Message


class ChatEventKind(str, Enum):
    """What happened in the group."""
    TYPING_STARTED = "typing_started"
    TYPING_STOPPED = "typing_stopped"
    MESSAGE_ADDED = "message_added"          # Tentative, not yet persisted
    MESSAGE_CONFIRMED = "message_confirmed"  # Persisted, id is final
    MESSAGE_REMOVED = "message_removed"      # Rolled back after a failed write
    MEMORY_UPDATED = "memory_updated"


class ChatEvent(BaseModel):
    """A single orchestrator event."""
    kind: ChatEventKind
    group_id: str
    participant_id: Optional[str] = None
    message: Optional[Message] = None
    previous_id: Optional[str] = None  # Temporary id replaced on confirmation
