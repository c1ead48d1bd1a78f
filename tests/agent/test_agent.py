"""Unit tests for the chat agent, generation provider and title generation."""

import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, datetime

import pytest
from pydantic_ai.exceptions import ModelHTTPError
from pydantic_ai.messages import ModelMessage, ModelRequest, ModelResponse, TextPart
from pydantic_ai.models.function import AgentInfo, FunctionModel
from pydantic_ai.models.test import TestModel

from src.agent.agent import (
    AgentGenerationProvider,
    StreamUsage,
    build_chat_agent,
    build_title_agent,
    build_user_prompt,
    convert_history_to_pydantic_format,
    fallback_title,
    generate_conversation_title,
)
from src.rag_pipeline.errors import TransientProviderError
from src.rag_pipeline.providers import PermanentFailure, ProviderSuccess, TransientFailure
from src.rag_pipeline.schemas import Message


def make_message(role: str, content: str) -> Message:
    return Message(
        id=f"{role}-1",
        session_id="session_1",
        role=role,
        content=content,
        created_at=datetime(2026, 10, 19, tzinfo=UTC),
    )


def raise_status(status_code: int):
    def model_function(messages: list[ModelMessage], info: AgentInfo) -> ModelResponse:
        raise ModelHTTPError(status_code=status_code, model_name="gpt-4o-mini")

    return model_function


async def failing_stream(messages: list[ModelMessage], info: AgentInfo) -> AsyncIterator[str]:
    raise ModelHTTPError(status_code=503, model_name="gpt-4o-mini")
    yield ""


@pytest.mark.unit
class TestPromptHelpers:
    """Test prompt and history helpers."""

    def test_build_user_prompt(self) -> None:
        prompt = build_user_prompt("How do I price?", "[Source 1] Pricing @ 02:05\ntext")

        assert prompt.startswith("[Source 1]")
        assert prompt.endswith("Student question: How do I price?")

    def test_convert_history(self) -> None:
        history = [make_message("user", "Hi"), make_message("assistant", "Hello")]

        converted = convert_history_to_pydantic_format(history)

        assert isinstance(converted[0], ModelRequest)
        assert converted[0].parts[0].content == "Hi"
        assert isinstance(converted[1], ModelResponse)
        assert converted[1].parts[0] == TextPart(content="Hello")

    def test_convert_empty_history(self) -> None:
        assert convert_history_to_pydantic_format([]) == []


@pytest.mark.unit
class TestAgentGenerationProvider:
    """Test suite for AgentGenerationProvider class."""

    @pytest.mark.asyncio
    async def test_generate_success(self) -> None:
        agent = build_chat_agent(TestModel(custom_output_text="Price on value."))
        provider = AgentGenerationProvider(agent)

        result = await provider.generate("prompt", [make_message("user", "Earlier")])

        assert isinstance(result, ProviderSuccess)
        assert result.value.content == "Price on value."
        assert result.value.input_tokens > 0
        assert result.value.model == "test"

    @pytest.mark.asyncio
    async def test_generate_rate_limit_is_transient(self) -> None:
        provider = AgentGenerationProvider(build_chat_agent(FunctionModel(raise_status(429))))

        result = await provider.generate("prompt", [])

        assert isinstance(result, TransientFailure)
        assert result.status_code == 429

    @pytest.mark.asyncio
    async def test_generate_bad_request_is_permanent(self) -> None:
        provider = AgentGenerationProvider(build_chat_agent(FunctionModel(raise_status(400))))

        result = await provider.generate("prompt", [])

        assert isinstance(result, PermanentFailure)

    @pytest.mark.asyncio
    async def test_generate_timeout(self) -> None:
        async def slow(messages: list[ModelMessage], info: AgentInfo) -> ModelResponse:
            await asyncio.sleep(1)
            return ModelResponse(parts=[TextPart(content="late")])

        provider = AgentGenerationProvider(
            build_chat_agent(FunctionModel(slow)), timeout_seconds=0.01
        )

        assert await provider.generate("prompt", []) == TransientFailure(reason="timeout")

    @pytest.mark.asyncio
    async def test_stream_yields_deltas_and_usage(self) -> None:
        provider = AgentGenerationProvider(
            build_chat_agent(TestModel(custom_output_text="Price on value."))
        )
        usage = StreamUsage()

        deltas = [delta async for delta in provider.stream("prompt", [], usage)]

        assert "".join(deltas) == "Price on value."
        assert usage.input_tokens is not None
        assert usage.output_tokens is not None

    @pytest.mark.asyncio
    async def test_stream_failure_raises_classified_error(self) -> None:
        provider = AgentGenerationProvider(
            build_chat_agent(FunctionModel(stream_function=failing_stream))
        )

        with pytest.raises(TransientProviderError):
            async for _ in provider.stream("prompt", [], StreamUsage()):
                pass

    @pytest.mark.asyncio
    @pytest.mark.parametrize("chunks_before_stall", [0, 1])
    async def test_stream_timeout_is_transient(self, chunks_before_stall: int) -> None:
        """Test a stalled stream is cut off at the generation timeout."""

        async def stalling_stream(
            messages: list[ModelMessage], info: AgentInfo
        ) -> AsyncIterator[str]:
            for _ in range(chunks_before_stall):
                yield "Price "
            await asyncio.sleep(5)
            yield "on value."

        provider = AgentGenerationProvider(
            build_chat_agent(FunctionModel(stream_function=stalling_stream)),
            timeout_seconds=0.05,
        )
        usage = StreamUsage()

        with pytest.raises(TransientProviderError):
            async for _ in provider.stream("prompt", [], usage):
                pass

        assert usage.input_tokens is None


@pytest.mark.unit
class TestTitleGeneration:
    """Test suite for session title generation."""

    def test_fallback_title(self) -> None:
        assert fallback_title(datetime(2026, 10, 19, 9, 30, tzinfo=UTC)) == (
            "Chat from Oct 19, 2026"
        )

    @pytest.mark.asyncio
    async def test_title_strips_quotes(self) -> None:
        agent = build_title_agent(TestModel(custom_output_text='"Pricing strategy basics"'))

        title, generation = await generate_conversation_title(agent, "How do I price?")

        assert title == "Pricing strategy basics"
        assert generation is not None
        assert generation.model == "test"

    @pytest.mark.asyncio
    async def test_overlong_title_falls_back(self) -> None:
        agent = build_title_agent(TestModel(custom_output_text="x" * 150))

        title, generation = await generate_conversation_title(agent, "How do I price?")

        assert title.startswith("Chat from ")
        # The model still ran, so its usage is reported
        assert generation is not None

    @pytest.mark.asyncio
    async def test_model_failure_falls_back(self) -> None:
        agent = build_title_agent(FunctionModel(raise_status(500)))

        title, generation = await generate_conversation_title(agent, "How do I price?")

        assert title.startswith("Chat from ")
        assert generation is None

    @pytest.mark.asyncio
    async def test_timeout_falls_back(self) -> None:
        async def slow(messages: list[ModelMessage], info: AgentInfo) -> ModelResponse:
            await asyncio.sleep(1)
            return ModelResponse(parts=[TextPart(content="Too late")])

        agent = build_title_agent(FunctionModel(slow))

        title, generation = await generate_conversation_title(
            agent, "How do I price?", timeout_seconds=0.01
        )

        assert title.startswith("Chat from ")
        assert generation is None
