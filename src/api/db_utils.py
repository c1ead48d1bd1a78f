"""Conversation persistence: sessions and their messages.

``SupabaseSessionStore`` writes to the ``chat_sessions`` and
``chat_messages`` tables. ``InMemorySessionStore`` keeps the same data in
process memory for development and tests.
"""

import asyncio
import uuid
from datetime import UTC, datetime
from typing import Any, Protocol

from supabase import Client

from src.rag_pipeline.schemas import Citation, ConversationSession, Message, MessageRole
from src.utils.logging import get_logger

logger = get_logger(__name__)


def generate_session_id() -> str:
    return str(uuid.uuid4())


class SessionStore(Protocol):
    async def create_conversation(
        self, creator_id: str, student_id: str | None, course_id: str | None = None
    ) -> ConversationSession: ...

    async def get_conversation(self, session_id: str) -> ConversationSession | None: ...

    async def store_message(
        self,
        session_id: str,
        role: MessageRole,
        content: str,
        created_at: datetime,
        video_references: list[Citation] | None = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cost: float = 0.0,
        cached: bool = False,
    ) -> Message: ...

    async def fetch_conversation_history(
        self, session_id: str, limit: int | None = None
    ) -> list[Message]: ...

    async def touch_conversation(self, session_id: str, last_message_at: datetime) -> None: ...

    async def update_conversation_title(self, session_id: str, title: str) -> None: ...

    async def list_conversations(
        self,
        creator_id: str,
        student_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[ConversationSession]: ...

    async def delete_conversation(self, session_id: str) -> bool: ...


def _recency_key(session: ConversationSession) -> tuple:
    # Most recent activity first; sessions without messages go last
    return (
        session.last_message_at is not None,
        session.last_message_at or session.created_at,
        session.created_at,
    )


class InMemorySessionStore:
    """Session store held in process memory."""

    def __init__(self) -> None:
        self._sessions: dict[str, ConversationSession] = {}
        self._messages: dict[str, list[Message]] = {}

    async def create_conversation(
        self, creator_id: str, student_id: str | None, course_id: str | None = None
    ) -> ConversationSession:
        session = ConversationSession(
            id=generate_session_id(),
            creator_id=creator_id,
            student_id=student_id,
            course_id=course_id,
            created_at=datetime.now(UTC),
        )
        self._sessions[session.id] = session
        self._messages[session.id] = []
        logger.info("conversation_created", session_id=session.id, creator_id=creator_id)
        return session.model_copy()

    async def get_conversation(self, session_id: str) -> ConversationSession | None:
        session = self._sessions.get(session_id)
        return session.model_copy() if session else None

    async def store_message(
        self,
        session_id: str,
        role: MessageRole,
        content: str,
        created_at: datetime,
        video_references: list[Citation] | None = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cost: float = 0.0,
        cached: bool = False,
    ) -> Message:
        if session_id not in self._sessions:
            raise KeyError(f"unknown session {session_id}")
        message = Message(
            id=str(uuid.uuid4()),
            session_id=session_id,
            role=role,
            content=content,
            video_references=video_references or [],
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
            cached=cached,
            created_at=created_at,
        )
        self._messages[session_id].append(message)
        session = self._sessions[session_id]
        session.message_count += 1
        return message

    async def fetch_conversation_history(
        self, session_id: str, limit: int | None = None
    ) -> list[Message]:
        messages = sorted(self._messages.get(session_id, []), key=lambda m: m.created_at)
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return list(messages)

    async def touch_conversation(self, session_id: str, last_message_at: datetime) -> None:
        self._sessions[session_id].last_message_at = last_message_at

    async def update_conversation_title(self, session_id: str, title: str) -> None:
        self._sessions[session_id].title = title

    async def list_conversations(
        self,
        creator_id: str,
        student_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[ConversationSession]:
        sessions = [
            s
            for s in self._sessions.values()
            if s.creator_id == creator_id and (student_id is None or s.student_id == student_id)
        ]
        sessions.sort(key=_recency_key, reverse=True)
        return [s.model_copy() for s in sessions[offset : offset + limit]]

    async def delete_conversation(self, session_id: str) -> bool:
        if self._sessions.pop(session_id, None) is None:
            return False
        messages = self._messages.pop(session_id, [])
        logger.info("conversation_deleted", session_id=session_id, messages=len(messages))
        return True


class SupabaseSessionStore:
    """Session store backed by Supabase tables.

    The Supabase client is synchronous, so every request runs in a worker
    thread through ``asyncio.to_thread``.
    """

    SESSION_COLUMNS = "id, creator_id, student_id, course_id, title, created_at, last_message_at"

    def __init__(self, client: Client):
        self.client = client

    async def create_conversation(
        self, creator_id: str, student_id: str | None, course_id: str | None = None
    ) -> ConversationSession:
        session = ConversationSession(
            id=generate_session_id(),
            creator_id=creator_id,
            student_id=student_id,
            course_id=course_id,
            created_at=datetime.now(UTC),
        )
        try:
            query = self.client.table("chat_sessions").insert(
                {
                    "id": session.id,
                    "creator_id": creator_id,
                    "student_id": student_id,
                    "course_id": course_id,
                    "created_at": session.created_at.isoformat(),
                }
            )
            await asyncio.to_thread(query.execute)
            logger.info("conversation_created", session_id=session.id, creator_id=creator_id)
            return session

        except Exception as e:
            logger.exception(
                "conversation_create_failed",
                creator_id=creator_id,
                error_type=type(e).__name__,
            )
            raise

    async def get_conversation(self, session_id: str) -> ConversationSession | None:
        query = (
            self.client.table("chat_sessions")
            .select(self.SESSION_COLUMNS)
            .eq("id", session_id)
        )
        response = await asyncio.to_thread(query.execute)
        if not response.data:
            return None

        count_query = (
            self.client.table("chat_messages")
            .select("id", count="exact")
            .eq("session_id", session_id)
            .limit(1)
        )
        count_response = await asyncio.to_thread(count_query.execute)
        return ConversationSession(**response.data[0], message_count=count_response.count or 0)

    async def store_message(
        self,
        session_id: str,
        role: MessageRole,
        content: str,
        created_at: datetime,
        video_references: list[Citation] | None = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cost: float = 0.0,
        cached: bool = False,
    ) -> Message:
        message = Message(
            id=str(uuid.uuid4()),
            session_id=session_id,
            role=role,
            content=content,
            video_references=video_references or [],
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
            cached=cached,
            created_at=created_at,
        )
        try:
            query = self.client.table("chat_messages").insert(self._to_row(message))
            await asyncio.to_thread(query.execute)
            logger.debug("message_stored", session_id=session_id, role=role)
            return message

        except Exception as e:
            logger.exception(
                "message_store_failed",
                session_id=session_id,
                role=role,
                error_type=type(e).__name__,
            )
            raise

    @staticmethod
    def _to_row(message: Message) -> dict[str, Any]:
        return {
            "id": message.id,
            "session_id": message.session_id,
            "role": message.role,
            "content": message.content,
            "video_references": [c.model_dump() for c in message.video_references],
            "input_tokens": message.input_tokens,
            "output_tokens": message.output_tokens,
            "cost": message.cost,
            "cached": message.cached,
            "created_at": message.created_at.isoformat(),
        }

    async def fetch_conversation_history(
        self, session_id: str, limit: int | None = None
    ) -> list[Message]:
        query = (
            self.client.table("chat_messages")
            .select("*")
            .eq("session_id", session_id)
            .order("created_at", desc=True)
        )
        if limit is not None:
            query = query.limit(limit)
        response = await asyncio.to_thread(query.execute)
        rows = list(reversed(response.data or []))
        return [Message(**row) for row in rows]

    async def touch_conversation(self, session_id: str, last_message_at: datetime) -> None:
        query = (
            self.client.table("chat_sessions")
            .update({"last_message_at": last_message_at.isoformat()})
            .eq("id", session_id)
        )
        await asyncio.to_thread(query.execute)

    async def update_conversation_title(self, session_id: str, title: str) -> None:
        query = self.client.table("chat_sessions").update({"title": title}).eq("id", session_id)
        await asyncio.to_thread(query.execute)

    async def list_conversations(
        self,
        creator_id: str,
        student_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[ConversationSession]:
        if limit <= 0:
            return []
        query = (
            self.client.table("chat_sessions")
            .select(f"{self.SESSION_COLUMNS}, chat_messages(count)")
            .eq("creator_id", creator_id)
        )
        if student_id is not None:
            query = query.eq("student_id", student_id)
        query = (
            query.order("last_message_at", desc=True, nullsfirst=False)
            .order("created_at", desc=True)
            .range(offset, offset + limit - 1)
        )
        response = await asyncio.to_thread(query.execute)

        sessions = []
        for row in response.data or []:
            counts = row.pop("chat_messages", None) or [{}]
            sessions.append(
                ConversationSession(**row, message_count=counts[0].get("count", 0))
            )
        return sessions

    async def delete_conversation(self, session_id: str) -> bool:
        # chat_messages rows go with it through ON DELETE CASCADE
        query = self.client.table("chat_sessions").delete().eq("id", session_id)
        response = await asyncio.to_thread(query.execute)
        deleted = bool(response.data)
        logger.info("conversation_deleted", session_id=session_id, deleted=deleted)
        return deleted
