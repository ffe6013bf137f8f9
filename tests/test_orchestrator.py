"""Tests for turn orchestration."""

import logging
import random
from unittest.mock import AsyncMock, Mock

import pytest

from agents.responder_selector import ResponderSelector
from config.settings import Settings
from llm.credentials import GatewayFactory
from llm.gateway import GenerationGateway
from memory.chat_store import InMemoryChatStore
from orchestrator import (
    ChatOrchestrator,
    MessageSendError,
    PersistenceError,
    RosterError,
    TurnOrchestrator,
)
from schemas.chat import (
    AgentParticipant,
    AuthorSnapshot,
    HUMAN_USER,
    MemoryItem,
    Message,
    MessageType,
    Persona,
)
from schemas.events import ChatEventKind
from schemas.responses import RelevantMemoriesOutput, SelectedResponse, SummarizeOutput


def make_agent(agent_id, name, expertise="General", memories=()):
    return AgentParticipant(
        id=agent_id,
        name=name,
        persona=Persona(tone="Friendly", expertise=expertise),
        memory_bank=[MemoryItem(content=m) for m in memories]
    )


def make_settings(**overrides):
    values = dict(
        openai_api_key="sk-test",
        bot_api_keys=["sk-bot"],
        thinking_delay_range=(0.0, 0.0),
        typing_delay_range=(0.0, 0.0),
    )
    values.update(overrides)
    return Settings(**values)


class TestTurnOrchestrator:
    """Test the response cycle, persistence and roster handling."""

    def setup_method(self):
        """Set up test fixtures."""
        self.store = InMemoryChatStore()
        self.settings = make_settings()
        self.events = []

        self.selector = Mock(spec=ResponderSelector)
        self.selector.select_responders = AsyncMock(return_value=[])

        self.memory_outputs = {
            SummarizeOutput: SummarizeOutput(new_memory=""),
            RelevantMemoriesOutput: RelevantMemoriesOutput(relevant_memories=[]),
        }

        async def memory_handler(prompt, schema, temperature=None):
            return self.memory_outputs[schema]

        self.memory_gateway = Mock(spec=GenerationGateway)
        self.memory_gateway.generate = AsyncMock(side_effect=memory_handler)

        self.mike = make_agent("ai-1", "Marketing Mike", "Marketing")
        self.tina = make_agent("ai-2", "Techie Tina", "Software Engineering")
        self.sam = make_agent("ai-3", "Support Sam", "Customer Support")

    async def make_chat(self, *agents, settings=None):
        group = await self.store.create_group("Test Group")
        await self.store.save_participants(group.id, [HUMAN_USER, *agents])
        chat = TurnOrchestrator(
            group=group,
            store=self.store,
            selector=self.selector,
            memory_gateway=self.memory_gateway,
            settings=settings or self.settings,
            listener=self.events.append,
            rng=random.Random(7)
        )
        await chat.load()
        return chat

    def replies_to_human(self, *agent_ids):
        """Selector stub: listed agents answer the human, nobody answers bots."""
        async def select(trigger, history, candidates):
            if trigger.author.is_ai:
                return []
            return [SelectedResponse(agent_id=a, reply=f"{a} here") for a in agent_ids]
        return select

    def kinds(self):
        return [e.kind for e in self.events]

    # == Sending ==

    @pytest.mark.asyncio
    async def test_send_message_is_confirmed(self):
        """Test a sent message is shown, stored and gets its final id."""
        chat = await self.make_chat(self.mike)

        message = await chat.send_message("  Hello team  ")
        await chat.wait_idle()

        assert message.text == "Hello team"
        assert message.id.startswith("msg-") and "temp" not in message.id
        assert [m.id for m in chat.messages] == [message.id]
        assert [m.id for m in self.store.messages[chat.group.id]] == [message.id]

        assert self.kinds()[:2] == [ChatEventKind.MESSAGE_ADDED, ChatEventKind.MESSAGE_CONFIRMED]
        confirmed = self.events[1]
        assert confirmed.previous_id == self.events[0].message.id
        assert confirmed.message.id == message.id

    @pytest.mark.asyncio
    async def test_send_failure_rolls_back(self):
        """Test a failed save removes the message and raises."""
        chat = await self.make_chat(self.mike)
        self.store.add_message = AsyncMock(side_effect=RuntimeError("disk full"))

        with pytest.raises(MessageSendError):
            await chat.send_message("Hello")
        await chat.wait_idle()

        assert chat.messages == []
        assert self.kinds() == [ChatEventKind.MESSAGE_ADDED, ChatEventKind.MESSAGE_REMOVED]
        self.selector.select_responders.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self):
        """Test blank messages are refused."""
        chat = await self.make_chat(self.mike)

        with pytest.raises(ValueError):
            await chat.send_message("   ")

    @pytest.mark.asyncio
    async def test_reply_to_is_kept(self):
        """Test a human reply carries its target id."""
        chat = await self.make_chat(self.mike)
        first = await chat.send_message("First")

        second = await chat.send_message("About that", reply_to_id=first.id)
        await chat.wait_idle()

        assert second.reply_to_id == first.id
        assert self.store.messages[chat.group.id][1].reply_to_id == first.id

    # == Response cycle ==

    @pytest.mark.asyncio
    async def test_replies_delivered_in_selection_order(self):
        """Test replies appear one after another in the selected order."""
        self.settings = make_settings(thinking_delay_range=(0.0, 0.01), typing_delay_range=(0.0, 0.01))
        self.selector.select_responders.side_effect = self.replies_to_human("ai-2", "ai-1", "ai-3")
        chat = await self.make_chat(self.mike, self.tina, self.sam)

        await chat.send_message("What should we build next?")
        await chat.wait_idle()

        ai_messages = [m for m in chat.messages if m.type == MessageType.AI]
        assert [m.author.id for m in ai_messages] == ["ai-2", "ai-1", "ai-3"]
        assert [m.text for m in ai_messages] == ["ai-2 here", "ai-1 here", "ai-3 here"]
        assert not any(agent.is_typing for agent in chat.agents)

        # Each agent types before its message is shown
        tina_events = [e.kind for e in self.events if e.participant_id == "ai-2"]
        assert tina_events[:3] == [
            ChatEventKind.TYPING_STARTED,
            ChatEventKind.TYPING_STOPPED,
            ChatEventKind.MESSAGE_ADDED,
        ]

    @pytest.mark.asyncio
    async def test_history_and_candidates_passed_to_selector(self):
        """Test the selector sees recent history and roster snapshots."""
        chat = await self.make_chat(self.mike, self.tina)
        for text in ["one", "two", "three", "four"]:
            await chat.send_message(text)
        await chat.wait_idle()

        calls = {c.args[0].text: c.args for c in self.selector.select_responders.call_args_list}
        trigger, history, candidates = calls["four"]
        assert trigger.text == "four"
        assert [m.text for m in history] == ["one", "two", "three", "four"]
        assert [c.agent.id for c in candidates] == ["ai-1", "ai-2"]

    @pytest.mark.asyncio
    async def test_relevant_memories_reach_selector(self):
        """Test each candidate carries its retrieved memories."""
        self.memory_outputs[RelevantMemoriesOutput] = RelevantMemoriesOutput(
            relevant_memories=["Client prefers bold colors"]
        )
        mike = make_agent("ai-1", "Marketing Mike", memories=["Client prefers bold colors", "Budget is small"])
        chat = await self.make_chat(mike)

        await chat.send_message("Design ideas for the banner?")
        await chat.wait_idle()

        candidates = self.selector.select_responders.call_args.args[2]
        assert candidates[0].memories == ["Client prefers bold colors"]

    @pytest.mark.asyncio
    async def test_bot_chain_is_bounded(self):
        """Test two agents answering each other stop after the depth limit."""
        async def first_candidate_replies(trigger, history, candidates):
            return [SelectedResponse(agent_id=candidates[0].agent.id, reply="And another thing")]

        self.selector.select_responders.side_effect = first_candidate_replies
        chat = await self.make_chat(self.mike, self.tina)

        await chat.send_message("Start")
        await chat.wait_idle()

        assert chat.selection_rounds == self.settings.max_reply_depth + 1
        ai_messages = [m for m in chat.messages if m.type == MessageType.AI]
        assert [m.author.id for m in ai_messages] == ["ai-1", "ai-2", "ai-1"]

    @pytest.mark.asyncio
    async def test_bot_chain_with_fan_out_is_bounded(self):
        """Test fan-out chains also stop at the depth limit."""
        async def always_reply(trigger, history, candidates):
            return [SelectedResponse(agent_id=c.agent.id, reply="More") for c in candidates]

        self.selector.select_responders.side_effect = always_reply
        chat = await self.make_chat(self.mike, self.tina)

        await chat.send_message("Start")
        await chat.wait_idle()

        # Rounds at depth 0, 1 and 2: 1 + 2 + 2
        assert chat.selection_rounds == 5
        assert len([m for m in chat.messages if m.type == MessageType.AI]) == 2 + 2 + 2

    @pytest.mark.asyncio
    async def test_author_not_offered_own_message(self):
        """Test an agent's message is offered only to the other agents."""
        mike = make_agent("ai-1", "Marketing Mike", memories=["Budget is small"])
        tina = make_agent("ai-2", "Techie Tina", memories=["Prefers Rust"])
        chat = await self.make_chat(mike, tina)
        message = Message(
            id="msg-ai-1",
            text="Launch on Monday",
            type=MessageType.AI,
            author=AuthorSnapshot.of(mike)
        )

        await chat.process_ai_responses(message, depth=1)

        candidates = self.selector.select_responders.call_args.args[2]
        assert [c.agent.id for c in candidates] == ["ai-2"]
        retrievals = [
            c.args[0] for c in self.memory_gateway.generate.call_args_list
            if c.args[1] is RelevantMemoriesOutput
        ]
        assert len(retrievals) == 1
        assert "Prefers Rust" in retrievals[0]

    @pytest.mark.asyncio
    async def test_self_reply_from_selector_dropped(self):
        """Test a selector answering for the author cannot make it reply to itself."""
        async def echo(trigger, history, candidates):
            return [
                SelectedResponse(agent_id="ai-1", reply="Me again"),
                SelectedResponse(agent_id="ai-2", reply="Sounds good"),
            ]

        self.selector.select_responders.side_effect = echo
        chat = await self.make_chat(self.mike, self.tina)
        message = Message(
            id="msg-ai-1",
            text="Launch on Monday",
            type=MessageType.AI,
            author=AuthorSnapshot.of(self.mike)
        )

        delivered = await chat.process_ai_responses(message, depth=self.settings.max_reply_depth)
        await chat.wait_idle()

        assert [(m.author.id, m.text) for m in delivered] == [("ai-2", "Sounds good")]

    @pytest.mark.asyncio
    async def test_author_alone_skips_selection(self):
        """Test an agent alone in the group gets no round for its own message."""
        chat = await self.make_chat(self.mike)
        message = Message(
            id="msg-ai-1",
            text="Anyone there?",
            type=MessageType.AI,
            author=AuthorSnapshot.of(self.mike)
        )

        assert await chat.process_ai_responses(message, depth=1) == []
        self.selector.select_responders.assert_not_awaited()
        assert chat.selection_rounds == 0

    @pytest.mark.asyncio
    async def test_too_deep_trigger_ignored(self):
        """Test triggers beyond the depth limit get no selection round."""
        chat = await self.make_chat(self.mike)
        message = await chat.send_message("Hi")
        await chat.wait_idle()
        self.selector.select_responders.reset_mock()

        assert await chat.process_ai_responses(message, depth=self.settings.max_reply_depth + 1) == []
        self.selector.select_responders.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_system_message_ignored(self):
        """Test system notices never trigger replies."""
        chat = await self.make_chat(self.mike)
        notice = Message(id="sys-1", text="Techie Tina joined", type=MessageType.SYSTEM)

        assert await chat.process_ai_responses(notice) == []
        self.selector.select_responders.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_roster_skips_selection(self):
        """Test a group without agents does not consult the selector."""
        chat = await self.make_chat()

        await chat.send_message("Anyone here?")
        await chat.wait_idle()

        self.selector.select_responders.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_ai_message_is_skipped(self, caplog):
        """Test an AI message that cannot be saved is withdrawn and logged."""
        self.selector.select_responders.side_effect = self.replies_to_human("ai-1", "ai-2")
        chat = await self.make_chat(self.mike, self.tina)
        save = self.store.add_message

        async def flaky_save(group_id, message):
            if message.author.id == "ai-1":
                raise RuntimeError("write conflict")
            return await save(group_id, message)

        self.store.add_message = flaky_save

        with caplog.at_level(logging.ERROR):
            await chat.send_message("Ideas?")
            await chat.wait_idle()

        assert [m.author.id for m in chat.messages] == ["human-user", "ai-2"]
        assert "Failed to send AI message from Marketing Mike" in caplog.text

    @pytest.mark.asyncio
    async def test_agent_removed_before_reply(self):
        """Test replies from agents no longer in the group are dropped."""
        self.selector.select_responders.side_effect = self.replies_to_human("ai-9", "ai-1")
        chat = await self.make_chat(self.mike)

        await chat.send_message("Hello")
        await chat.wait_idle()

        assert [m.author.id for m in chat.messages] == ["human-user", "ai-1"]

    @pytest.mark.asyncio
    async def test_speaker_memory_updated(self):
        """Test the agent that spoke summarizes the conversation into memory."""
        self.selector.select_responders.side_effect = self.replies_to_human("ai-2")
        self.memory_outputs[SummarizeOutput] = SummarizeOutput(new_memory="User is choosing a database.")
        chat = await self.make_chat(self.mike, self.tina)

        await chat.send_message("Postgres or MySQL?")
        await chat.wait_idle()

        assert chat.memory.get_contents("ai-2") == ["User is choosing a database."]
        assert chat.memory.get_contents("ai-1") == []

        prompts = [
            c.args[0] for c in self.memory_gateway.generate.call_args_list
            if c.args[1] is SummarizeOutput
        ]
        assert len(prompts) == 1
        assert "You: Postgres or MySQL?\nTechie Tina: ai-2 here" in prompts[0]

        saved = {p.id: p for p in self.store.participants[chat.group.id]}
        assert [m.content for m in saved["ai-2"].memory_bank] == ["User is choosing a database."]
        assert ChatEventKind.MEMORY_UPDATED in self.kinds()

    # == Loading and roster ==

    @pytest.mark.asyncio
    async def test_load_restores_roster_and_memories(self):
        """Test loading splits memory banks from the roster."""
        tina = make_agent("ai-2", "Techie Tina", memories=["Prefers Rust"])
        chat = await self.make_chat(tina)

        assert [p.id for p in chat.participants] == ["human-user", "ai-2"]
        assert chat.memory.get_contents("ai-2") == ["Prefers Rust"]
        assert chat.agents[0].memory_bank == []

    @pytest.mark.asyncio
    async def test_load_adds_missing_human(self):
        """Test the human participant is always present."""
        group = await self.store.create_group("Bots only")
        await self.store.save_participants(group.id, [self.mike])
        chat = TurnOrchestrator(group, self.store, self.selector, self.memory_gateway, self.settings)

        await chat.load()

        assert chat.participants[0].id == HUMAN_USER.id

    @pytest.mark.asyncio
    async def test_add_agent_limits(self):
        """Test duplicates and the AI limit are refused."""
        chat = await self.make_chat(settings=make_settings(ai_limit=2))

        await chat.add_agent(self.mike)
        await chat.add_agent(self.tina)

        with pytest.raises(RosterError):
            await chat.add_agent(self.mike)
        with pytest.raises(RosterError):
            await chat.add_agent(self.sam)

        saved = self.store.participants[chat.group.id]
        assert [p.id for p in saved] == ["human-user", "ai-1", "ai-2"]

    @pytest.mark.asyncio
    async def test_added_agent_starts_without_memories(self):
        """Test memories are scoped to the group an agent joins."""
        chat = await self.make_chat()

        await chat.add_agent(make_agent("ai-2", "Techie Tina", memories=["From another group"]))

        assert chat.memory.get_bank("ai-2") == []

    @pytest.mark.asyncio
    async def test_add_agent_rollback(self):
        """Test a failed roster save undoes the addition."""
        chat = await self.make_chat()
        self.store.save_participants = AsyncMock(side_effect=RuntimeError("offline"))

        with pytest.raises(PersistenceError):
            await chat.add_agent(self.mike)

        assert chat.agents == []

    @pytest.mark.asyncio
    async def test_removed_author_shows_as_deleted(self):
        """Test messages from removed agents stay but show a placeholder name."""
        self.selector.select_responders.side_effect = self.replies_to_human("ai-1")
        chat = await self.make_chat(self.mike)
        await chat.send_message("Hi Mike")
        await chat.wait_idle()

        await chat.remove_agent("ai-1")

        ai_message = chat.messages[-1]
        assert ai_message.author.name == "Marketing Mike"
        assert chat.display_author(ai_message).name == "Deleted User"
        assert chat.display_author(chat.messages[0]).name == "You"
        assert chat.memory.get_bank("ai-1") == []

    @pytest.mark.asyncio
    async def test_remove_unknown_agent(self):
        """Test removing an agent that is not present fails."""
        chat = await self.make_chat()

        with pytest.raises(RosterError):
            await chat.remove_agent("ai-404")

    @pytest.mark.asyncio
    async def test_update_persona(self):
        """Test persona changes are saved."""
        chat = await self.make_chat(self.mike)
        persona = Persona(tone="Blunt", expertise="Growth hacking", additional_instructions="Use data.")

        await chat.update_persona("ai-1", persona, name="Growth Mike")

        saved = self.store.participants[chat.group.id][1]
        assert saved.name == "Growth Mike"
        assert saved.persona.expertise == "Growth hacking"

    # == Manual memory edits ==

    @pytest.mark.asyncio
    async def test_manual_memory_edits_persist(self):
        """Test add, update and delete reach the store."""
        chat = await self.make_chat(self.mike)

        item = await chat.add_memory("ai-1", "Launch is in May")
        await chat.update_memory("ai-1", item.id, "Launch moved to June")
        saved = self.store.participants[chat.group.id][1]
        assert [m.content for m in saved.memory_bank] == ["Launch moved to June"]

        await chat.delete_memory("ai-1", item.id)
        saved = self.store.participants[chat.group.id][1]
        assert saved.memory_bank == []

    @pytest.mark.asyncio
    async def test_manual_memory_rollback(self):
        """Test failed saves undo manual memory edits."""
        chat = await self.make_chat(make_agent("ai-1", "Marketing Mike", memories=["Likes puns"]))
        original = chat.memory.get_bank("ai-1")
        self.store.save_participants = AsyncMock(side_effect=RuntimeError("offline"))

        with pytest.raises(PersistenceError):
            await chat.add_memory("ai-1", "New fact")
        with pytest.raises(PersistenceError):
            await chat.update_memory("ai-1", original[0].id, "Hates puns")
        with pytest.raises(PersistenceError):
            await chat.delete_memory("ai-1", original[0].id)

        assert chat.memory.get_contents("ai-1") == ["Likes puns"]

    @pytest.mark.asyncio
    async def test_memory_edit_for_unknown_agent(self):
        """Test memory edits require a current agent."""
        chat = await self.make_chat()

        with pytest.raises(RosterError):
            await chat.add_memory("ai-404", "fact")


class TestChatOrchestrator:
    """Test application wiring."""

    def setup_method(self):
        """Set up test fixtures."""
        self.store = InMemoryChatStore()
        self.factory = Mock(spec=GatewayFactory)
        self.factory.system_gateway = Mock(return_value=None)
        self.orchestrator = ChatOrchestrator(
            settings=make_settings(),
            store=self.store,
            gateway_factory=self.factory
        )

    @pytest.mark.asyncio
    async def test_open_creates_default_group(self):
        """Test the first open creates a general group."""
        chat = await self.orchestrator.open_group()

        assert chat.group.name == "General Chat"
        assert len(await self.store.list_groups()) == 1
        assert await self.orchestrator.open_group() is chat

    @pytest.mark.asyncio
    async def test_open_existing_group(self):
        """Test a group can be opened by id."""
        group = await self.orchestrator.create_group("Launch planning")

        chat = await self.orchestrator.open_group(group.id)

        assert chat.group.id == group.id

    @pytest.mark.asyncio
    async def test_open_unknown_group(self):
        """Test opening a missing group fails."""
        with pytest.raises(KeyError):
            await self.orchestrator.open_group("nope")

    @pytest.mark.asyncio
    async def test_stored_credentials_feed_pool(self, monkeypatch):
        """Test keys kept in the store back agents when none are configured."""
        monkeypatch.delenv("BOT_API_KEYS", raising=False)
        self.store.get_api_keys = AsyncMock(return_value=[
            {"id": "k1", "name": "Team key", "key": "sk-team", "provider": "openai"}
        ])
        orchestrator = ChatOrchestrator(
            settings=make_settings(bot_api_keys=[]),
            store=self.store
        )
        credential = await orchestrator.gateway_factory.pool.next_credential()

        assert credential.id == "k1"
        assert credential.key == "sk-team"
