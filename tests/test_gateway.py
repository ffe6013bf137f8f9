"""Tests for the structured-output generation gateway."""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from llm.base_client import BaseLLMClient, LLMResponse
from llm.gateway import GenerationGateway, GenerationError
from schemas.responses import ReplyDecision, ResponderSelectorOutput, SummarizeOutput


class TestGenerationGateway:
    """Test prompt-to-schema generation and its failure modes."""

    def setup_method(self):
        """Set up test fixtures."""
        self.client = Mock(spec=BaseLLMClient)
        self.client.chat = AsyncMock(
            return_value=LLMResponse(content='{"shouldReply": true, "reply": "Hi there"}')
        )
        self.gateway = GenerationGateway(self.client, timeout=1.0, temperature=0.5, label="test")

    def respond_with(self, content):
        self.client.chat.return_value = LLMResponse(content=content)

    @pytest.mark.asyncio
    async def test_parses_valid_json(self):
        """Test a valid JSON reply is validated into the schema."""
        result = await self.gateway.generate("Should you reply?", ReplyDecision)

        assert isinstance(result, ReplyDecision)
        assert result.should_reply is True
        assert result.reply == "Hi there"
        assert result.reply_to_id is None

    @pytest.mark.asyncio
    async def test_sends_schema_and_json_mode(self):
        """Test the schema goes into the system prompt and JSON mode is requested."""
        await self.gateway.generate("Should you reply?", ReplyDecision)

        kwargs = self.client.chat.call_args.kwargs
        system, user = kwargs["messages"]
        assert system.role == "system"
        assert "shouldReply" in system.content
        assert user.content == "Should you reply?"
        assert kwargs["json_mode"] is True
        assert kwargs["temperature"] == 0.5

    @pytest.mark.asyncio
    async def test_temperature_override(self):
        """Test a per-call temperature replaces the default."""
        await self.gateway.generate("prompt", ReplyDecision, temperature=0.1)
        assert self.client.chat.call_args.kwargs["temperature"] == 0.1

    @pytest.mark.asyncio
    async def test_strips_code_fence(self):
        """Test markdown-fenced JSON is accepted."""
        self.respond_with('```json\n{"newMemory": "User prefers Python"}\n```')

        result = await self.gateway.generate("Summarize", SummarizeOutput)
        assert result.new_memory == "User prefers Python"

    @pytest.mark.asyncio
    async def test_invalid_json_raises(self):
        """Test non-JSON output is a generation error."""
        self.respond_with("Sure! I would love to reply.")

        with pytest.raises(GenerationError):
            await self.gateway.generate("prompt", ReplyDecision)

    @pytest.mark.asyncio
    async def test_empty_content_raises(self):
        """Test an empty reply is a generation error."""
        self.respond_with("   ")

        with pytest.raises(GenerationError):
            await self.gateway.generate("prompt", ReplyDecision)

    @pytest.mark.asyncio
    async def test_null_result_raises(self):
        """Test a JSON null is a generation error."""
        self.respond_with("null")

        with pytest.raises(GenerationError):
            await self.gateway.generate("prompt", ReplyDecision)

    @pytest.mark.asyncio
    async def test_schema_mismatch_raises(self):
        """Test output that does not match the schema is rejected."""
        self.respond_with('{"responses": [{"reply": "missing responder"}]}')

        with pytest.raises(GenerationError):
            await self.gateway.generate("prompt", ResponderSelectorOutput)

    @pytest.mark.asyncio
    async def test_backend_error_raises(self):
        """Test backend exceptions are wrapped."""
        self.client.chat.side_effect = RuntimeError("rate limited")

        with pytest.raises(GenerationError, match="rate limited"):
            await self.gateway.generate("prompt", ReplyDecision)

    @pytest.mark.asyncio
    async def test_timeout_raises(self):
        """Test a slow backend times out."""
        async def slow_chat(**kwargs):
            await asyncio.sleep(1)
            return LLMResponse(content="{}")

        self.client.chat.side_effect = slow_chat
        gateway = GenerationGateway(self.client, timeout=0.01)

        with pytest.raises(GenerationError, match="timed out"):
            await gateway.generate("prompt", ReplyDecision)
