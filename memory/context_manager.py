"""Conversation context formatting for prompts."""

import logging
from typing import Iterable, List, Sequence

from schemas.chat import AuthorSnapshot, Message, MessageType

logger = logging.getLogger(__name__)

DELETED_AUTHOR_NAME = "Deleted User"


class ConversationContextManager:
    """Builds the conversation slices that go into prompts."""

    # Configuration
    HISTORY_WINDOW = 4  # Messages shown to the selection step
    SUMMARY_WINDOW = 5  # Messages summarized into a memory after an agent speaks

    def __init__(
        self,
        history_window: int = HISTORY_WINDOW,
        summary_window: int = SUMMARY_WINDOW
    ):
        """
        Initialize context manager.

        Args:
            history_window: Number of trailing messages used as chat history
            summary_window: Number of trailing messages used for memory summaries
        """
        self.history_window = history_window
        self.summary_window = summary_window

    @staticmethod
    def _tail(messages: Sequence[Message], window: int) -> List[Message]:
        """Last ``window`` messages with system notices dropped."""
        tail = list(messages[-window:]) if window > 0 else []
        return [m for m in tail if m.type != MessageType.SYSTEM and m.author]

    def recent_history(self, messages: Sequence[Message]) -> List[Message]:
        """Messages the selection engine sees as context."""
        return self._tail(messages, self.history_window)

    def summary_slice(self, messages: Sequence[Message]) -> List[Message]:
        """Messages an agent summarizes into a new memory."""
        return self._tail(messages, self.summary_window)

    @staticmethod
    def format_transcript(messages: Iterable[Message]) -> str:
        """Plain ``name: text`` lines, oldest first."""
        return "\n".join(f"{m.author.name}: {m.text}" for m in messages if m.author)


def resolve_author(message: Message, participants: Iterable) -> AuthorSnapshot:
    """
    Author to display for a message.

    Authors no longer in the roster come back as a "Deleted User"
    snapshot, keeping the original id and AI flag.
    """
    if message.author is None:
        raise ValueError("System messages have no author")

    for participant in participants:
        if participant.id == message.author.id:
            return AuthorSnapshot.of(participant)

    logger.debug(f"Author {message.author.id} of message {message.id} is no longer a participant")
    return AuthorSnapshot(
        id=message.author.id,
        name=DELETED_AUTHOR_NAME,
        is_ai=message.author.is_ai
    )
