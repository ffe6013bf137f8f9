"""Chat domain schemas: participants, memories, messages and groups."""

import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, model_validator


def new_id(prefix: str) -> str:
    """Sortable, collision-resistant id such as ``mem-1718000000000000000-3fa2c1``."""
    return f"{prefix}-{time.time_ns()}-{uuid.uuid4().hex[:6]}"


class Persona(BaseModel):
    """Behavioural configuration of an AI participant."""
    tone: str
    expertise: str
    additional_instructions: Optional[str] = None

    def describe(self) -> str:
        """Single persona description consumed by prompts."""
        text = f"Tone: {self.tone}, Expertise: {self.expertise}."
        if self.additional_instructions:
            text += f" {self.additional_instructions.strip()}"
        return text


class MemoryItem(BaseModel):
    """One remembered fact or summary in an agent's memory bank."""
    id: str = Field(default_factory=lambda: new_id("mem"))
    content: str
    timestamp: datetime = Field(default_factory=datetime.now)


class HumanParticipant(BaseModel):
    """The human member of a chat group."""
    kind: Literal["human"] = "human"
    id: str
    name: str
    avatar: str = ""

    @property
    def is_ai(self) -> bool:
        return False


class AgentParticipant(BaseModel):
    """An AI persona taking part in a chat group."""
    kind: Literal["agent"] = "agent"
    id: str
    name: str
    avatar: str = ""
    description: str = ""
    persona: Persona
    memory_bank: List[MemoryItem] = Field(default_factory=list)
    is_custom: bool = False
    api_key_id: Optional[str] = None  # Pin the agent to one backend credential
    is_typing: bool = Field(False, exclude=True)  # Presentation only

    @property
    def is_ai(self) -> bool:
        return True


Participant = Annotated[
    Union[HumanParticipant, AgentParticipant],
    Field(discriminator="kind")
]

participant_list_adapter = TypeAdapter(List[Participant])


HUMAN_USER = HumanParticipant(id="human-user", name="You")


class AuthorSnapshot(BaseModel):
    """Author details stored with each message."""
    id: str
    name: str
    is_ai: bool

    @classmethod
    def of(cls, participant: Union[HumanParticipant, AgentParticipant]) -> "AuthorSnapshot":
        return cls(id=participant.id, name=participant.name, is_ai=participant.is_ai)


class MessageType(str, Enum):
    """Origin of a chat message."""
    USER = "user"
    AI = "ai"
    SYSTEM = "system"


class Message(BaseModel):
    """A chat message in a group."""
    id: str
    text: str
    timestamp: datetime = Field(default_factory=datetime.now)
    type: MessageType
    author: Optional[AuthorSnapshot] = None
    reply_to_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_author(self) -> "Message":
        if self.type == MessageType.SYSTEM:
            if self.author is not None or self.reply_to_id is not None:
                raise ValueError("system messages carry neither author nor reply_to_id")
        elif self.author is None:
            raise ValueError(f"{self.type.value} messages require an author")
        return self


class ChatGroup(BaseModel):
    """A conversation with its own message log and roster."""
    id: str
    name: str
    icon: str = "MessageSquare"
    description: str = ""
    created_at: datetime = Field(default_factory=datetime.now)
