"""Conversation service: runs one question through the RAG pipeline.

Per exchange, under the session lock:

1. load trailing history and check the answer cache
2. on a miss, check the budget, persist the user message, embed the query,
   search, rank and build the context
3. generate the answer, record its cost, persist it with citations
4. cache the answer and bump engagement counters of cited videos

A session's first exchange also schedules a best-effort title.
"""

import asyncio
import weakref
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from src.agent.agent import (
    StreamUsage,
    build_user_prompt,
    fallback_title,
    generate_conversation_title,
)
from src.agent.deps import ChatDeps
from src.rag_pipeline.cache_service import make_cache_key
from src.rag_pipeline.errors import (
    InputValidationError,
    ProviderError,
    SessionNotFoundError,
)
from src.rag_pipeline.providers import ProviderSuccess, failure_to_error
from src.rag_pipeline.ranking_service import RankingContext
from src.rag_pipeline.schemas import (
    BuiltContext,
    CachedAnswer,
    ChatEvent,
    ChatResult,
    Citation,
    ContentDelta,
    ConversationSession,
    GenerationResult,
    Message,
    RetrievalStatus,
    SearchCandidate,
    SearchScope,
    StreamCompleted,
    Usage,
    VideoRecord,
)
from src.rag_pipeline.tokens import estimate_tokens
from src.utils.logging import get_logger

logger = get_logger(__name__)

MAX_MESSAGE_CHARS = 4000
MAX_SESSION_PAGE = 100


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class _Exchange:
    """State of one in-flight exchange."""

    session: ConversationSession
    scope: SearchScope
    question: str
    cache_key: str
    history: list[Message]
    is_first: bool
    user_message: Message | None = None
    cached: CachedAnswer | None = None
    context: BuiltContext | None = None
    prompt: str = ""
    retrieval_status: RetrievalStatus = "ok"
    embedding_cost: float = 0.0


class ConversationService:
    """Orchestrates chat exchanges for all sessions.

    Exchanges on the same session are serialized by a per-session lock held
    for the whole exchange. Different sessions share nothing but the usage
    ledger, whose updates are additive.
    """

    def __init__(self, deps: ChatDeps, clock: Callable[[], datetime] = _utcnow):
        self.deps = deps
        self.config = deps.config
        self.clock = clock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._background: set[asyncio.Task] = set()

    # ==========================================================================
    # Public API
    # ==========================================================================

    async def send_message(
        self,
        message: str,
        creator_id: str,
        session_id: str | None = None,
        student_id: str | None = None,
        course_id: str | None = None,
    ) -> ChatResult:
        """Answer one question and persist the exchange.

        Raises:
            InputValidationError: Empty message or missing creator.
            SessionNotFoundError: Unknown session or one owned by someone else.
            BudgetExceededError: The creator's spend limit is reached.
            TransientProviderError: Generation failed after retries.
            PermanentProviderError: Generation was rejected.
        """
        question = self._validate(message, creator_id)
        session = await self._resolve_session(session_id, creator_id, student_id, course_id)

        async with self._lock_for(session.id):
            exchange = await self._prepare(session, question, course_id)
            if exchange.cached is not None:
                return await self._finish_cached(exchange)

            outcome = await self.deps.generator.generate(exchange.prompt, exchange.context.history)
            if not isinstance(outcome, ProviderSuccess):
                logger.error(
                    "chat_generation_failed",
                    session_id=session.id,
                    reason=outcome.reason,
                )
                raise failure_to_error(
                    outcome, provider=self.deps.generator.name, operation="generation"
                )

            return await self._finish(exchange, outcome.value)

    async def stream_message(
        self,
        message: str,
        creator_id: str,
        session_id: str | None = None,
        student_id: str | None = None,
        course_id: str | None = None,
    ) -> AsyncIterator[ChatEvent]:
        """Stream an answer as content deltas followed by one completion event.

        If the consumer stops iterating early, the partial answer and its
        usage are still persisted and recorded.
        """
        question = self._validate(message, creator_id)
        session = await self._resolve_session(session_id, creator_id, student_id, course_id)

        lock = self._lock_for(session.id)
        await lock.acquire()
        handed_off = False
        try:
            exchange = await self._prepare(session, question, course_id)
            if exchange.cached is not None:
                result = await self._finish_cached(exchange)
                yield ContentDelta(delta=result.content)
                yield StreamCompleted(result=result)
                return

            usage = StreamUsage()
            parts: list[str] = []
            try:
                async with aclosing(
                    self.deps.generator.stream(exchange.prompt, exchange.context.history, usage)
                ) as deltas:
                    async for delta in deltas:
                        parts.append(delta)
                        yield ContentDelta(delta=delta)
            except ProviderError:
                raise
            except (GeneratorExit, asyncio.CancelledError):
                logger.warning(
                    "chat_stream_abandoned",
                    session_id=session.id,
                    partial_chars=sum(len(p) for p in parts),
                )
                generation = self._partial_generation(exchange, "".join(parts), usage)
                task = asyncio.ensure_future(self._finish(exchange, generation, partial=True))
                self._track(task)
                task.add_done_callback(lambda _: lock.release())
                handed_off = True
                await asyncio.shield(task)
                raise

            generation = GenerationResult(
                content="".join(parts),
                input_tokens=usage.input_tokens or 0,
                output_tokens=usage.output_tokens or 0,
                model=self.deps.generator.model_name,
            )
            if usage.input_tokens is None:
                generation = self._partial_generation(exchange, generation.content, usage)
            result = await self._finish(exchange, generation)
            yield StreamCompleted(result=result)
        finally:
            if not handed_off:
                lock.release()

    async def get_session_history(
        self, session_id: str, creator_id: str
    ) -> tuple[ConversationSession, list[Message]]:
        """Return a session and all its messages, oldest first."""
        session = await self.deps.session_store.get_conversation(session_id)
        if session is None or session.creator_id != creator_id:
            raise SessionNotFoundError(session_id)
        messages = await self.deps.session_store.fetch_conversation_history(session_id)
        return session, messages

    async def list_sessions(
        self,
        creator_id: str,
        student_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[ConversationSession]:
        """List a creator's sessions, most recent activity first.

        Raises:
            InputValidationError: Missing creator or a bad page window.
        """
        if not creator_id or not creator_id.strip():
            raise InputValidationError("creatorId is required.")
        if not 1 <= limit <= MAX_SESSION_PAGE:
            raise InputValidationError(f"limit must be between 1 and {MAX_SESSION_PAGE}.")
        if offset < 0:
            raise InputValidationError("offset cannot be negative.")
        return await self.deps.session_store.list_conversations(
            creator_id, student_id=student_id, limit=limit, offset=offset
        )

    async def delete_session(self, session_id: str, creator_id: str) -> None:
        """Delete a session and its messages.

        Waits for any exchange in flight on the session to finish first.

        Raises:
            SessionNotFoundError: Unknown session or one owned by another creator.
        """
        store = self.deps.session_store
        async with self._lock_for(session_id):
            session = await store.get_conversation(session_id)
            if session is None or session.creator_id != creator_id:
                raise SessionNotFoundError(session_id)
            await store.delete_conversation(session_id)
        logger.info("session_deleted", session_id=session_id, creator_id=creator_id)

    async def drain(self) -> None:
        """Wait for background work (titles, abandoned-stream finalizers)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ==========================================================================
    # Exchange steps
    # ==========================================================================

    def _validate(self, message: str, creator_id: str) -> str:
        if not creator_id or not creator_id.strip():
            raise InputValidationError("creatorId is required.")
        question = (message or "").strip()
        if not question:
            raise InputValidationError("Message cannot be empty.")
        if len(question) > MAX_MESSAGE_CHARS:
            raise InputValidationError(
                f"Message is too long (max {MAX_MESSAGE_CHARS} characters)."
            )
        return question

    async def _resolve_session(
        self,
        session_id: str | None,
        creator_id: str,
        student_id: str | None,
        course_id: str | None,
    ) -> ConversationSession:
        store = self.deps.session_store
        if not session_id:
            return await store.create_conversation(creator_id, student_id, course_id)

        session = await store.get_conversation(session_id)
        if (
            session is None
            or session.creator_id != creator_id
            or (session.student_id and student_id and session.student_id != student_id)
        ):
            logger.warning("session_not_found", session_id=session_id, creator_id=creator_id)
            raise SessionNotFoundError(session_id)
        return session

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    async def _prepare(
        self, session: ConversationSession, question: str, course_id: str | None
    ) -> _Exchange:
        store = self.deps.session_store
        scope = SearchScope(
            creator_id=session.creator_id,
            course_id=course_id or session.course_id,
        )
        history = await store.fetch_conversation_history(
            session.id, limit=self.config.history_message_limit
        )
        exchange = _Exchange(
            session=session,
            scope=scope,
            question=question,
            cache_key=make_cache_key(question, scope),
            history=history,
            is_first=session.message_count == 0,
        )

        exchange.cached = await self.deps.cache.get(exchange.cache_key)
        if exchange.cached is None:
            await self.deps.cost_tracker.ensure_within_budget(session.creator_id)

        last = history[-1].created_at if history else None
        exchange.user_message = await store.store_message(
            session.id, "user", question, created_at=self._next_timestamp(last)
        )
        logger.info(
            "chat_message_received",
            session_id=session.id,
            creator_id=session.creator_id,
            history_messages=len(history),
            cached=exchange.cached is not None,
        )
        if exchange.cached is not None:
            return exchange

        candidates, videos = await self._retrieve(exchange)
        ranked = self.deps.ranker.rank(
            candidates, RankingContext(now=self.clock(), videos=videos)
        )
        exchange.context = self.deps.context_builder.build(
            question,
            ranked,
            self.config.context_max_tokens,
            history=history,
            videos=videos,
        )
        if exchange.retrieval_status == "ok" and not exchange.context.citations:
            exchange.retrieval_status = "empty"
        exchange.prompt = build_user_prompt(question, exchange.context.prompt_context)
        return exchange

    async def _retrieve(
        self, exchange: _Exchange
    ) -> tuple[list[SearchCandidate], dict[str, VideoRecord]]:
        """Embed the question and search. Provider failures degrade to no sources."""
        creator_id = exchange.scope.creator_id
        try:
            query = await self.deps.embedding_service.embed_query(exchange.question)
            exchange.embedding_cost = await self.deps.cost_tracker.record_embedding(
                creator_id, query.model, query.tokens, query.cost
            )
            candidates = await asyncio.wait_for(
                self.deps.chunk_store.search(
                    query.embedding,
                    exchange.scope,
                    k=self.config.match_count,
                    threshold=self.config.similarity_threshold,
                ),
                timeout=self.config.search_timeout_seconds,
            )
        except (ProviderError, TimeoutError) as e:
            logger.warning(
                "retrieval_degraded",
                session_id=exchange.session.id,
                error_type=type(e).__name__,
            )
            exchange.retrieval_status = "unavailable"
            return [], {}

        video_ids = sorted({c.chunk.video_id for c in candidates})
        videos = await self.deps.chunk_store.get_videos(video_ids)
        return candidates, videos

    def _partial_generation(
        self, exchange: _Exchange, content: str, usage: StreamUsage
    ) -> GenerationResult:
        """Usage for a stream that ended without provider-reported counts."""
        input_tokens = usage.input_tokens
        if input_tokens is None:
            input_tokens = estimate_tokens(exchange.prompt) + sum(
                estimate_tokens(m.content) for m in exchange.context.history
            )
        output_tokens = usage.output_tokens
        if output_tokens is None:
            output_tokens = estimate_tokens(content)
        return GenerationResult(
            content=content,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=self.deps.generator.model_name,
            estimated=True,
        )

    async def _finish(
        self, exchange: _Exchange, generation: GenerationResult, partial: bool = False
    ) -> ChatResult:
        session = exchange.session
        context = exchange.context
        generation_cost = await self.deps.cost_tracker.record_generation(
            session.creator_id,
            generation.model,
            generation.input_tokens,
            generation.output_tokens,
        )
        usage = Usage(
            input_tokens=generation.input_tokens,
            output_tokens=generation.output_tokens,
            cost=generation_cost + exchange.embedding_cost,
        )

        assistant = await self.deps.session_store.store_message(
            session.id,
            "assistant",
            generation.content,
            created_at=self._next_timestamp(exchange.user_message.created_at),
            video_references=context.citations,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cost=usage.cost,
        )
        await self.deps.session_store.touch_conversation(session.id, assistant.created_at)

        if not partial and generation.content and exchange.retrieval_status != "unavailable":
            await self.deps.cache.set(
                exchange.cache_key,
                session.creator_id,
                CachedAnswer(
                    content=generation.content,
                    citations=context.citations,
                    model=generation.model,
                ),
            )
        if context.citations:
            await self._record_references(context.citations)
        if exchange.is_first:
            self._schedule_title(session, exchange.question)

        logger.info(
            "chat_message_completed",
            session_id=session.id,
            sources=len(context.citations),
            retrieval_status=exchange.retrieval_status,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cost=usage.cost,
            partial=partial,
            estimated_usage=generation.estimated,
        )
        return ChatResult(
            content=generation.content,
            session_id=session.id,
            message_id=assistant.id,
            video_references=context.citations,
            usage=usage,
            retrieval_status=exchange.retrieval_status,
        )

    async def _finish_cached(self, exchange: _Exchange) -> ChatResult:
        session = exchange.session
        cached = exchange.cached
        assistant = await self.deps.session_store.store_message(
            session.id,
            "assistant",
            cached.content,
            created_at=self._next_timestamp(exchange.user_message.created_at),
            video_references=cached.citations,
            cached=True,
        )
        await self.deps.session_store.touch_conversation(session.id, assistant.created_at)
        if exchange.is_first:
            self._schedule_title(session, exchange.question)

        logger.info("chat_message_served_from_cache", session_id=session.id)
        return ChatResult(
            content=cached.content,
            session_id=session.id,
            message_id=assistant.id,
            video_references=cached.citations,
            usage=Usage(),
            cached=True,
            retrieval_status="cached",
        )

    async def _record_references(self, citations: list[Citation]) -> None:
        try:
            await self.deps.chunk_store.record_references([c.video_id for c in citations])
        except Exception as e:
            logger.warning("video_references_update_failed", error_type=type(e).__name__)

    def _next_timestamp(self, last: datetime | None) -> datetime:
        """Current time, nudged past ``last`` so order within a session is strict."""
        now = self.clock()
        if last is not None and now <= last:
            return last + timedelta(microseconds=1)
        return now

    # ==========================================================================
    # Background work
    # ==========================================================================

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _schedule_title(self, session: ConversationSession, first_message: str) -> None:
        if session.title:
            return
        self._track(asyncio.ensure_future(self._generate_title(session, first_message)))

    async def _generate_title(self, session: ConversationSession, first_message: str) -> None:
        try:
            if self.deps.title_agent is None:
                title, generation = fallback_title(self.clock()), None
            else:
                title, generation = await generate_conversation_title(
                    self.deps.title_agent,
                    first_message,
                    timeout_seconds=self.config.title_timeout_seconds,
                )
            await self.deps.session_store.update_conversation_title(session.id, title)
            if generation is not None:
                await self.deps.cost_tracker.record_generation(
                    session.creator_id,
                    generation.model,
                    generation.input_tokens,
                    generation.output_tokens,
                )
            logger.info("conversation_title_generated", session_id=session.id, title=title)
        except Exception:
            logger.exception("conversation_title_update_failed", session_id=session.id)
