"""Turn orchestration for group chats between a human and AI agents."""

import asyncio
import inspect
import logging
import random
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from config.settings import Settings
from schemas.chat import (
    AgentParticipant,
    AuthorSnapshot,
    ChatGroup,
    HumanParticipant,
    HUMAN_USER,
    MemoryItem,
    Message,
    MessageType,
    Participant,
    Persona,
    new_id,
)
from schemas.events import ChatEvent, ChatEventKind
from schemas.responses import AgentCandidate, SelectedResponse

# LLM components
from llm.credentials import ApiCredential, CredentialPool, GatewayFactory
from llm.factory import LLMProvider
from llm.gateway import GenerationGateway

# Memory components
from memory.chat_store import ChatStore
from memory.sqlite_store import SQLiteChatStore
from memory.context_manager import ConversationContextManager, resolve_author
from memory.memory_manager import MemoryManager

# Agents
from agents.responder_selector import ResponderSelector
from agents.persona_optimizer import PersonaPromptOptimizer

logger = logging.getLogger(__name__)

EventListener = Callable[[ChatEvent], Union[None, Awaitable[None]]]


class PersistenceError(Exception):
    """A write to the chat store failed and the local change was rolled back."""


class MessageSendError(PersistenceError):
    """The user's message could not be sent."""


class RosterError(Exception):
    """A roster change was refused."""


class TurnOrchestrator:
    """
    Drives response cycles for one chat group.

    A cycle takes a trigger message, retrieves each agent's relevant
    memories, asks the selector once who replies, then delivers the
    replies one after another with simulated thinking and typing time.
    Each delivered reply schedules a memory summary for its author and a
    follow-up cycle one level deeper, so agents can answer each other
    until ``max_reply_depth`` is reached.
    """

    def __init__(
        self,
        group: ChatGroup,
        store: ChatStore,
        selector: ResponderSelector,
        memory_gateway: Optional[GenerationGateway],
        settings: Optional[Settings] = None,
        listener: Optional[EventListener] = None,
        rng: Optional[random.Random] = None
    ):
        """
        Initialize turn orchestrator.

        Args:
            group: Group this orchestrator serves
            store: Persistence for messages and participants
            selector: Responder selection engine
            memory_gateway: Gateway for memory summarization and retrieval
            settings: Application settings
            listener: Receives ChatEvents (sync or async callable)
            rng: Random source for pacing delays
        """
        self.group = group
        self.store = store
        self.selector = selector
        self.settings = settings or Settings()
        self.listener = listener
        self.rng = rng or random.Random()

        self.context = ConversationContextManager(
            history_window=self.settings.history_window,
            summary_window=self.settings.summary_window
        )
        self.memory = MemoryManager(
            gateway=memory_gateway,
            prune_threshold=self.settings.memory_prune_threshold,
            prune_count=self.settings.memory_prune_count,
            on_change=self._on_memory_change
        )

        self.messages: List[Message] = []
        self.participants: List[Participant] = [HUMAN_USER.model_copy()]
        self.selection_rounds = 0

        self._tasks: set = set()
        self._persist_lock = asyncio.Lock()

    # == Roster views ==

    @property
    def agents(self) -> List[AgentParticipant]:
        return [p for p in self.participants if isinstance(p, AgentParticipant)]

    @property
    def human(self) -> HumanParticipant:
        for p in self.participants:
            if isinstance(p, HumanParticipant):
                return p
        return HUMAN_USER

    def find_agent(self, agent_id: str) -> Optional[AgentParticipant]:
        for agent in self.agents:
            if agent.id == agent_id:
                return agent
        return None

    def _require_agent(self, agent_id: str) -> AgentParticipant:
        agent = self.find_agent(agent_id)
        if agent is None:
            raise RosterError(f"No AI assistant with id {agent_id} in this chat.")
        return agent

    def display_author(self, message: Message) -> AuthorSnapshot:
        """Author to show for a message, "Deleted User" for departed authors."""
        return resolve_author(message, self.participants)

    # == Loading and persistence ==

    async def load(self):
        """Load messages and participants (with memory banks) from the store."""
        messages, participants = await asyncio.gather(
            self.store.get_messages(self.group.id),
            self.store.get_participants(self.group.id)
        )

        roster: List[Participant] = []
        for participant in participants:
            if isinstance(participant, AgentParticipant):
                self.memory.load_bank(participant.id, participant.memory_bank)
                participant = participant.model_copy(update={"memory_bank": [], "is_typing": False})
            roster.append(participant)

        # Ensure the human is always a participant
        if not any(isinstance(p, HumanParticipant) for p in roster):
            roster.insert(0, HUMAN_USER.model_copy())

        self.participants = roster
        self.messages = list(messages)
        logger.info(
            f"Loaded group {self.group.id}: {len(self.messages)} messages, "
            f"{len(self.agents)} agents"
        )

    def _roster_document(self) -> List[Participant]:
        document = []
        for participant in self.participants:
            if isinstance(participant, AgentParticipant):
                participant = participant.model_copy(
                    update={"memory_bank": self.memory.get_bank(participant.id)}
                )
            document.append(participant)
        return document

    async def _persist_roster(self):
        # Serialized so the last write always carries the newest state
        async with self._persist_lock:
            await self.store.save_participants(self.group.id, self._roster_document())

    async def _on_memory_change(self, agent_id: str):
        await self._emit(ChatEvent(
            kind=ChatEventKind.MEMORY_UPDATED,
            group_id=self.group.id,
            participant_id=agent_id
        ))
        await self._persist_roster()

    async def _commit_message(self, message: Message) -> Message:
        """
        Show a message immediately, then persist it.

        On success the temporary id is swapped for the stored one; on
        failure the message is withdrawn and PersistenceError raised.
        """
        self.messages.append(message)
        await self._emit(ChatEvent(
            kind=ChatEventKind.MESSAGE_ADDED,
            group_id=self.group.id,
            participant_id=message.author.id if message.author else None,
            message=message
        ))

        try:
            final_id = await self.store.add_message(self.group.id, message)
        except Exception as e:
            self.messages = [m for m in self.messages if m.id != message.id]
            await self._emit(ChatEvent(
                kind=ChatEventKind.MESSAGE_REMOVED,
                group_id=self.group.id,
                message=message
            ))
            raise PersistenceError(f"Failed to save message {message.id}: {e}") from e

        confirmed = message.model_copy(update={"id": final_id})
        self.messages = [confirmed if m.id == message.id else m for m in self.messages]
        await self._emit(ChatEvent(
            kind=ChatEventKind.MESSAGE_CONFIRMED,
            group_id=self.group.id,
            participant_id=confirmed.author.id if confirmed.author else None,
            message=confirmed,
            previous_id=message.id
        ))
        return confirmed

    # == Events and background work ==

    async def _emit(self, event: ChatEvent):
        if not self.listener:
            return
        try:
            result = self.listener(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Event listener failed on {event.kind.value}: {e}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background chat task failed", exc_info=error)

    async def wait_idle(self):
        """Wait until every scheduled reply cycle and memory update has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self):
        """Cancel outstanding background work."""
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # == Sending ==

    async def send_message(self, text: str, reply_to_id: Optional[str] = None) -> Message:
        """
        Send a message as the human and start a response cycle.

        Args:
            text: Message text
            reply_to_id: Optional id of the message being replied to

        Returns:
            The stored message

        Raises:
            ValueError: If the text is empty
            MessageSendError: If the message could not be saved
        """
        if not text or not text.strip():
            raise ValueError("Cannot send an empty message.")

        message = Message(
            id=new_id("msg-temp-user"),
            text=text.strip(),
            type=MessageType.USER,
            author=AuthorSnapshot.of(self.human),
            reply_to_id=reply_to_id
        )

        try:
            message = await self._commit_message(message)
        except PersistenceError as e:
            logger.error(f"Failed to send message: {e}")
            raise MessageSendError("Your message could not be sent.") from e

        self._spawn(self.process_ai_responses(message))
        return message

    # == Response cycle ==

    def _delay(self, delay_range: Tuple[float, float]) -> float:
        low, high = delay_range
        if high <= 0:
            return 0.0
        return self.rng.uniform(low, high)

    async def process_ai_responses(self, trigger: Message, depth: int = 0) -> List[Message]:
        """
        Run one response cycle for ``trigger``.

        Args:
            trigger: Message to respond to
            depth: 0 for human messages, +1 for each bot-triggered cycle

        Returns:
            AI messages delivered in this cycle (follow-up cycles run in the background)
        """
        if depth > self.settings.max_reply_depth:
            logger.debug(f"Reply depth {depth} exceeds limit; not responding to {trigger.id}")
            return []

        if trigger.type == MessageType.SYSTEM or trigger.author is None:
            return []

        # Agents added after this point do not take part in this round.
        # The author is never a candidate for its own message.
        author_id = trigger.author.id
        roster = [agent.model_copy(deep=True) for agent in self.agents if agent.id != author_id]
        if not roster:
            return []

        history = self.context.recent_history(self.messages)

        memories = await asyncio.gather(
            *(self.memory.retrieve_relevant(agent.id, trigger.text) for agent in roster)
        )
        candidates = [
            AgentCandidate(agent=agent, memories=agent_memories)
            for agent, agent_memories in zip(roster, memories)
        ]

        self.selection_rounds += 1
        responses = await self.selector.select_responders(trigger, history, candidates)
        for response in responses:
            if response.agent_id == author_id:
                logger.warning(f"Dropping self-reply from {author_id} to {trigger.id}")
        responses = [r for r in responses if r.agent_id != author_id]

        delivered = []
        # Sequential delivery keeps emission order equal to selection order
        for response in responses:
            message = await self._deliver_reply(response)
            if message is None:
                continue
            delivered.append(message)
            self._spawn(self._remember(message))
            self._spawn(self.process_ai_responses(message, depth + 1))

        return delivered

    async def _set_typing(self, agent: AgentParticipant, typing: bool):
        agent.is_typing = typing
        await self._emit(ChatEvent(
            kind=ChatEventKind.TYPING_STARTED if typing else ChatEventKind.TYPING_STOPPED,
            group_id=self.group.id,
            participant_id=agent.id
        ))

    async def _deliver_reply(self, response: SelectedResponse) -> Optional[Message]:
        await asyncio.sleep(self._delay(self.settings.thinking_delay_range))

        agent = self.find_agent(response.agent_id)
        if agent is None:
            logger.info(f"Agent {response.agent_id} left the group before replying")
            return None

        await self._set_typing(agent, True)
        try:
            await asyncio.sleep(self._delay(self.settings.typing_delay_range))
        finally:
            await self._set_typing(agent, False)

        if self.find_agent(agent.id) is None:
            logger.info(f"Agent {agent.id} left the group while typing")
            return None

        message = Message(
            id=new_id("msg-temp-ai"),
            text=response.reply,
            type=MessageType.AI,
            author=AuthorSnapshot.of(agent),
            reply_to_id=response.reply_to_id
        )

        try:
            return await self._commit_message(message)
        except PersistenceError as e:
            logger.error(f"Failed to send AI message from {agent.name}: {e}")
            return None

    async def _remember(self, message: Message):
        """Summarize the latest conversation into the author's memory."""
        agent = self.find_agent(message.author.id)
        if agent is None:
            return

        transcript = self.context.format_transcript(self.context.summary_slice(self.messages))
        await self.memory.summarize_and_store(agent.id, agent.persona.describe(), transcript)

    # == Roster edits ==

    async def add_agent(self, agent: AgentParticipant) -> AgentParticipant:
        """
        Add an assistant to the group with an empty, group-scoped memory.

        Raises:
            RosterError: If already present or the AI limit is reached
            PersistenceError: If the roster could not be saved
        """
        if any(p.id == agent.id for p in self.participants):
            raise RosterError(f"{agent.name} is already in the chat.")
        if len(self.agents) >= self.settings.ai_limit:
            raise RosterError(f"You can only add up to {self.settings.ai_limit} AI assistants.")

        member = agent.model_copy(deep=True, update={"memory_bank": [], "is_typing": False})
        self.participants.append(member)
        self.memory.load_bank(member.id, [])

        try:
            await self._persist_roster()
        except Exception as e:
            self.participants = [p for p in self.participants if p.id != member.id]
            self.memory.forget_agent(member.id)
            raise PersistenceError(f"Could not add {agent.name}: {e}") from e

        logger.info(f"Added {member.name} to group {self.group.id}")
        return member

    async def remove_agent(self, agent_id: str):
        """Remove an assistant (and its group memory) from the group."""
        agent = self._require_agent(agent_id)
        index = self.participants.index(agent)
        bank = self.memory.get_bank(agent_id)

        self.participants.pop(index)
        self.memory.forget_agent(agent_id)

        try:
            await self._persist_roster()
        except Exception as e:
            self.participants.insert(index, agent)
            self.memory.load_bank(agent_id, bank)
            raise PersistenceError(f"Could not remove {agent.name}: {e}") from e

        logger.info(f"Removed {agent.name} from group {self.group.id}")

    async def update_persona(self, agent_id: str, persona: Persona, name: Optional[str] = None) -> AgentParticipant:
        """Change an assistant's persona and optionally its name."""
        agent = self._require_agent(agent_id)
        previous_persona, previous_name = agent.persona, agent.name

        agent.persona = persona
        agent.name = name or agent.name

        try:
            await self._persist_roster()
        except Exception as e:
            agent.persona, agent.name = previous_persona, previous_name
            raise PersistenceError(f"Failed to update AI persona: {e}") from e

        return agent

    # == Manual memory edits ==

    async def _persist_memory_edit(self, agent_id: str, undo: Callable[[], Awaitable[None]]):
        try:
            await self._persist_roster()
        except Exception as e:
            await undo()
            raise PersistenceError(f"Could not save memory changes: {e}") from e

        await self._emit(ChatEvent(
            kind=ChatEventKind.MEMORY_UPDATED,
            group_id=self.group.id,
            participant_id=agent_id
        ))

    async def add_memory(self, agent_id: str, content: str) -> MemoryItem:
        self._require_agent(agent_id)
        item = await self.memory.add_memory(agent_id, content)

        async def undo():
            await self.memory.delete_memory(agent_id, item.id)

        await self._persist_memory_edit(agent_id, undo)
        return item

    async def update_memory(self, agent_id: str, memory_id: str, content: str) -> MemoryItem:
        self._require_agent(agent_id)
        previous = next((m.content for m in self.memory.get_bank(agent_id) if m.id == memory_id), None)
        item = await self.memory.update_memory(agent_id, memory_id, content)

        async def undo():
            await self.memory.update_memory(agent_id, memory_id, previous)

        await self._persist_memory_edit(agent_id, undo)
        return item

    async def delete_memory(self, agent_id: str, memory_id: str):
        self._require_agent(agent_id)
        bank = self.memory.get_bank(agent_id)
        index = next((i for i, m in enumerate(bank) if m.id == memory_id), None)
        await self.memory.delete_memory(agent_id, memory_id)

        async def undo():
            await self.memory.insert_memory(agent_id, index, bank[index])

        await self._persist_memory_edit(agent_id, undo)


class ChatOrchestrator:
    """Wires settings, persistence, credentials and agents; opens group sessions."""

    DEFAULT_GROUP_NAME = "General Chat"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[ChatStore] = None,
        gateway_factory: Optional[GatewayFactory] = None,
        listener: Optional[EventListener] = None
    ):
        """
        Initialize orchestrator.

        Args:
            settings: Application settings
            store: Chat store (default: SQLite at settings.db_path)
            gateway_factory: Gateway factory (default: built from settings)
            listener: Event listener handed to every group session
        """
        self.settings = settings or Settings()
        self.store = store or SQLiteChatStore(db_path=self.settings.db_path)
        self.gateway_factory = gateway_factory or self._init_gateway_factory()
        self.listener = listener

        self.selector = ResponderSelector(
            gateway_factory=self.gateway_factory,
            mode=self.settings.selection_mode
        )
        self.optimizer = PersonaPromptOptimizer(self.gateway_factory.system_gateway())
        self._sessions: Dict[str, TurnOrchestrator] = {}

    def _init_gateway_factory(self) -> GatewayFactory:
        """Credential pool from BOT_API_KEYS, else from keys kept in the store."""
        provider = LLMProvider(self.settings.llm_provider)

        if self.settings.bot_api_keys:
            credentials = [
                ApiCredential(id=f"bot-key-{i + 1}", name=f"Bot key {i + 1}", key=key, provider=provider)
                for i, key in enumerate(self.settings.bot_api_keys)
            ]
            pool = CredentialPool(credentials)
            logger.info(f"Using {len(credentials)} bot API keys from settings")
        else:
            pool = CredentialPool(loader=self._load_stored_credentials)

        return GatewayFactory(settings=self.settings, pool=pool)

    async def _load_stored_credentials(self) -> List[ApiCredential]:
        records = await self.store.get_api_keys()
        return [
            ApiCredential(
                id=record["id"],
                name=record["name"],
                key=record["key"],
                provider=LLMProvider(record.get("provider", self.settings.llm_provider))
            )
            for record in records
        ]

    async def create_group(self, name: str) -> ChatGroup:
        return await self.store.create_group(name)

    async def open_group(self, group_id: Optional[str] = None) -> TurnOrchestrator:
        """
        Open a group session, creating the default group if none exist.

        Args:
            group_id: Group to open (default: the first group)
        """
        if group_id is None:
            groups = await self.store.list_groups()
            group = groups[0] if groups else await self.store.create_group(self.DEFAULT_GROUP_NAME)
        else:
            group = await self.store.get_group(group_id)
            if group is None:
                raise KeyError(f"Unknown chat group: {group_id}")

        session = self._sessions.get(group.id)
        if session is None:
            session = TurnOrchestrator(
                group=group,
                store=self.store,
                selector=self.selector,
                memory_gateway=self.gateway_factory.system_gateway(),
                settings=self.settings,
                listener=self.listener
            )
            await session.load()
            self._sessions[group.id] = session

        return session

    async def optimize_persona(self, idea: str) -> str:
        return await self.optimizer.optimize(idea)

    async def close(self):
        for session in self._sessions.values():
            await session.close()
        await self.gateway_factory.close()
