"""Chat and title agents plus the generation provider adapter.

The chat agent answers a learner's question from the retrieval context built
by the pipeline. It has no tools: retrieval happens before the model is
called, so every answer is grounded in the sources the context builder
selected and cited.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, aclosing
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

from pydantic_ai import Agent
from pydantic_ai.messages import (
    ModelMessage,
    ModelRequest,
    ModelResponse,
    TextPart,
    UserPromptPart,
)
from pydantic_ai.models import Model

from src.agent.config import get_model, get_model_name
from src.rag_pipeline.providers import (
    ProviderResult,
    ProviderSuccess,
    classify_exception,
    failure_to_error,
)
from src.rag_pipeline.schemas import GenerationResult, Message
from src.utils.logging import get_logger

logger = get_logger(__name__)

# ==============================================================================
# Instructions
# ==============================================================================

CHAT_INSTRUCTIONS = """You are a teaching assistant helping students learn from a creator's video courses.

Your role:
- Answer questions using the video excerpts provided with each question
- Explain clearly, with examples drawn from the excerpts
- Point students to the exact moment in a video where a topic is covered

Citations:
- When you use an excerpt, cite it inline as [Video Title @ MM:SS] using the title and
  timestamp shown in its [Source n] header
- Only cite sources that appear in the provided excerpts
- Never invent video titles, timestamps or quotes

When the excerpts do not cover the question:
- Say that the creator's videos don't seem to cover it
- Offer general guidance only if it is clearly labelled as not coming from the videos

Style:
- Short paragraphs, bullet points for steps
- Encouraging and direct
- End with a brief follow-up question when it helps the student go deeper
"""

TITLE_INSTRUCTIONS = """Generate a concise, descriptive title (3-6 words) for a chat session that starts with the given message.
Return ONLY the title, no quotes or extra text.

Examples:
- Questions about pricing strategy
- Editing workflow in Premiere
- Getting started with watercolor
"""

TITLE_MIN_CHARS = 3
TITLE_MAX_CHARS = 100


# ==============================================================================
# Agent Definitions
# ==============================================================================


def build_chat_agent(model: Model | None = None) -> Agent[None, str]:
    """Create the answer-generation agent."""
    return Agent(model or get_model(), instructions=CHAT_INSTRUCTIONS, output_type=str)


def build_title_agent(model: Model | None = None) -> Agent[None, str]:
    """Create the session title agent."""
    return Agent(model or get_model(), instructions=TITLE_INSTRUCTIONS, output_type=str)


def build_user_prompt(question: str, prompt_context: str) -> str:
    """Combine retrieval context and the learner's question."""
    return f"{prompt_context}\n\n---\n\nStudent question: {question}"


def convert_history_to_pydantic_format(history: list[Message]) -> list[ModelMessage]:
    """Convert stored messages to pydantic-ai message history."""
    messages: list[ModelMessage] = []
    for message in history:
        if message.role == "user":
            messages.append(ModelRequest(parts=[UserPromptPart(content=message.content)]))
        else:
            messages.append(ModelResponse(parts=[TextPart(content=message.content)]))
    return messages


# ==============================================================================
# Generation Provider
# ==============================================================================


@dataclass
class StreamUsage:
    """Filled in by ``AgentGenerationProvider.stream`` once the model reports usage."""

    input_tokens: int | None = None
    output_tokens: int | None = None


class GenerationProvider(Protocol):
    """Contract between the conversation service and a generation backend."""

    name: str

    @property
    def model_name(self) -> str: ...

    async def generate(
        self, prompt: str, history: list[Message]
    ) -> ProviderResult[GenerationResult]: ...

    def stream(
        self, prompt: str, history: list[Message], usage: StreamUsage
    ) -> AsyncIterator[str]: ...


class AgentGenerationProvider:
    """Adapter that runs the chat agent.

    ``generate`` returns a tagged result. ``stream`` yields text deltas and
    raises a classified ProviderError, since a stream has already produced
    output by the time it can fail.
    """

    name = "llm"

    def __init__(self, agent: Agent[None, str] | None = None, timeout_seconds: float = 60.0):
        self.agent = agent or build_chat_agent()
        self.timeout_seconds = timeout_seconds

    @property
    def model_name(self) -> str:
        model = self.agent.model
        name = getattr(model, "model_name", None)
        if isinstance(name, str):
            return name
        return get_model_name()

    async def generate(
        self, prompt: str, history: list[Message]
    ) -> ProviderResult[GenerationResult]:
        try:
            result = await asyncio.wait_for(
                self.agent.run(
                    prompt, message_history=convert_history_to_pydantic_format(history)
                ),
                timeout=self.timeout_seconds,
            )
        except Exception as e:
            failure = classify_exception(e)
            logger.warning(
                "generation_failed",
                error_type=type(e).__name__,
                reason=failure.reason,
                status_code=failure.status_code,
            )
            return failure

        usage = result.usage()
        return ProviderSuccess(
            GenerationResult(
                content=result.output,
                input_tokens=usage.input_tokens or 0,
                output_tokens=usage.output_tokens or 0,
                model=self.model_name,
            )
        )

    async def stream(
        self, prompt: str, history: list[Message], usage: StreamUsage
    ) -> AsyncIterator[str]:
        """Yield answer text deltas.

        The whole call, first response included, is capped at
        ``timeout_seconds``. The deadline is armed only around awaits on the
        model, never across a ``yield``.

        Raises:
            TransientProviderError: On rate limits, timeouts or outages.
            PermanentProviderError: On rejected requests.
        """
        deadline = asyncio.get_running_loop().time() + self.timeout_seconds
        try:
            async with AsyncExitStack() as stack:
                async with asyncio.timeout_at(deadline):
                    result = await stack.enter_async_context(
                        self.agent.run_stream(
                            prompt, message_history=convert_history_to_pydantic_format(history)
                        )
                    )
                deltas = await stack.enter_async_context(
                    aclosing(result.stream_text(delta=True))
                )
                while True:
                    async with asyncio.timeout_at(deadline):
                        delta = await anext(deltas, None)
                    if delta is None:
                        break
                    yield delta
                run_usage = result.usage()
                usage.input_tokens = run_usage.input_tokens or 0
                usage.output_tokens = run_usage.output_tokens or 0
        except Exception as e:
            failure = classify_exception(e)
            logger.warning(
                "generation_stream_failed",
                error_type=type(e).__name__,
                reason=failure.reason,
            )
            raise failure_to_error(failure, provider=self.name, operation="generation") from e


# ==============================================================================
# Title Generation
# ==============================================================================


def fallback_title(now: datetime | None = None) -> str:
    """Date based title, e.g. "Chat from Oct 19, 2026"."""
    now = now or datetime.now(UTC)
    return f"Chat from {now:%b} {now.day}, {now.year}"


async def generate_conversation_title(
    title_agent: Agent[None, str],
    first_message: str,
    timeout_seconds: float = 10.0,
) -> tuple[str, GenerationResult | None]:
    """Generate a short session title from the first message.

    Never raises for model problems: failures and timeouts fall back to a
    date based title.

    Returns:
        Tuple of (title, generation usage or None when the fallback was used).
    """
    try:
        result = await asyncio.wait_for(
            title_agent.run(f'Message: "{first_message[:500]}"'),
            timeout=timeout_seconds,
        )
    except TimeoutError:
        logger.warning("conversation_title_generation_timeout", timeout=timeout_seconds)
        return fallback_title(), None
    except Exception as e:
        logger.exception("conversation_title_generation_failed", error_type=type(e).__name__)
        return fallback_title(), None

    usage = result.usage()
    generation = GenerationResult(
        content=result.output,
        input_tokens=usage.input_tokens or 0,
        output_tokens=usage.output_tokens or 0,
        model=getattr(title_agent.model, "model_name", None) or get_model_name(),
    )

    title = result.output.strip().strip("\"'").strip()
    if not TITLE_MIN_CHARS <= len(title) <= TITLE_MAX_CHARS:
        logger.warning("conversation_title_rejected", length=len(title))
        return fallback_title(), generation
    return title, generation
