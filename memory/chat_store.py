"""Persistence interface for groups, messages and participants."""

import copy
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from schemas.chat import ChatGroup, Message, Participant


class ChatStore(ABC):
    """
    Async document-style store used by the orchestrator.

    Participants (including agent memory banks) are saved as one document
    per group with full-overwrite semantics.
    """

    @abstractmethod
    async def list_groups(self) -> List[ChatGroup]:
        pass

    @abstractmethod
    async def create_group(self, name: str, icon: str = "MessageSquare", description: str = "") -> ChatGroup:
        pass

    @abstractmethod
    async def get_group(self, group_id: str) -> Optional[ChatGroup]:
        pass

    @abstractmethod
    async def get_messages(self, group_id: str, limit: int = 100) -> List[Message]:
        """Last ``limit`` messages, oldest first."""
        pass

    @abstractmethod
    async def add_message(self, group_id: str, message: Message) -> str:
        """Persist a message and return its final id."""
        pass

    @abstractmethod
    async def get_participants(self, group_id: str) -> List[Participant]:
        pass

    @abstractmethod
    async def save_participants(self, group_id: str, participants: List[Participant]):
        pass

    async def get_api_keys(self) -> list:
        """Stored backend credentials as dicts with id, name, key; none by default."""
        return []


class InMemoryChatStore(ChatStore):
    """Process-local store for tests and throwaway sessions."""

    def __init__(self):
        self.groups: Dict[str, ChatGroup] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.participants: Dict[str, List[Participant]] = {}

    async def list_groups(self) -> List[ChatGroup]:
        return sorted(self.groups.values(), key=lambda g: g.created_at)

    async def create_group(self, name: str, icon: str = "MessageSquare", description: str = "") -> ChatGroup:
        group = ChatGroup(id=uuid.uuid4().hex, name=name, icon=icon, description=description)
        self.groups[group.id] = group
        self.messages[group.id] = []
        return group

    async def get_group(self, group_id: str) -> Optional[ChatGroup]:
        return self.groups.get(group_id)

    async def get_messages(self, group_id: str, limit: int = 100) -> List[Message]:
        return [m.model_copy() for m in self.messages.get(group_id, [])[-limit:]]

    async def add_message(self, group_id: str, message: Message) -> str:
        final_id = f"msg-{uuid.uuid4().hex}"
        stored = message.model_copy(update={"id": final_id, "timestamp": datetime.now()})
        self.messages.setdefault(group_id, []).append(stored)
        return final_id

    async def get_participants(self, group_id: str) -> List[Participant]:
        return copy.deepcopy(self.participants.get(group_id, []))

    async def save_participants(self, group_id: str, participants: List[Participant]):
        self.participants[group_id] = copy.deepcopy(list(participants))
