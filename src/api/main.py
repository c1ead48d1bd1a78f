"""FastAPI application for creator video chat.

Provides the chat endpoint (JSON or server-sent events), session listing,
history and deletion, and a health check. Identity is resolved upstream;
``creatorId`` and ``studentId`` arrive already authorized and are used purely
as data filters.
"""

import json
import os
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.agent.conversation import ConversationService
from src.rag_pipeline.config import get_config
from src.rag_pipeline.errors import (
    BudgetExceededError,
    InputValidationError,
    PermanentProviderError,
    RAGError,
    SessionNotFoundError,
    TransientProviderError,
)
from src.rag_pipeline.schemas import (
    ChatEvent,
    ChatResult,
    Citation,
    ContentDelta,
    ConversationSession,
    Message,
    RetrievalStatus,
    Usage,
)
from src.utils.clients import build_chat_deps
from src.utils.logging import get_logger

logger = get_logger(__name__)

# Check if we're in production
is_production = os.getenv("ENVIRONMENT") == "production"

if not is_production:
    # Development: prioritize .env file
    project_root = Path(__file__).resolve().parent.parent.parent
    dotenv_path = project_root / ".env"
    load_dotenv(dotenv_path, override=True)
else:
    # Production: use cloud platform env vars only
    load_dotenv()

# Global service initialized in lifespan
conversation_service: ConversationService | None = None


# ==============================================================================
# Lifespan Management
# ==============================================================================


async def lifespan(app: FastAPI):  # type: ignore[misc]
    """Lifecycle manager for the FastAPI application.

    Handles initialization and cleanup of resources.
    """
    global conversation_service

    logger.info("application_startup_started")

    try:
        config = get_config()
        conversation_service = ConversationService(build_chat_deps(config))
        logger.info(
            "application_startup_completed",
            storage_backend=config.storage_backend,
            embedding_model=config.embedding_model,
        )

    except Exception:
        logger.exception("application_startup_failed")
        raise

    yield  # Application runs here

    logger.info("application_shutdown_started")

    if conversation_service:
        # Let titles and abandoned-stream finalizers complete
        await conversation_service.drain()

    logger.info("application_shutdown_completed")


# ==============================================================================
# FastAPI Application Setup
# ==============================================================================

app = FastAPI(
    title="Creator Video Chat API",
    description="Chat with a creator's video library, answers cited to video timestamps",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ==============================================================================
# Request/Response Models
# ==============================================================================


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatRequest(CamelModel):
    """Request model for the chat endpoint."""

    message: str
    creator_id: str = Field(min_length=1)
    session_id: str | None = None
    student_id: str | None = None
    course_id: str | None = None
    stream: bool = False


class ChatResponse(CamelModel):
    """Non-streaming chat response. ``usage`` keeps snake_case keys."""

    content: str
    session_id: str
    video_references: list[Citation]
    usage: Usage
    cached: bool = False
    retrieval_status: RetrievalStatus = "ok"

    @classmethod
    def from_result(cls, result: ChatResult) -> "ChatResponse":
        return cls(
            content=result.content,
            session_id=result.session_id,
            video_references=result.video_references,
            usage=result.usage,
            cached=result.cached,
            retrieval_status=result.retrieval_status,
        )


class SessionHistoryResponse(CamelModel):
    session: ConversationSession
    messages: list[Message]


class SessionListResponse(CamelModel):
    sessions: list[ConversationSession]
    limit: int
    offset: int


# ==============================================================================
# Error Handling
# ==============================================================================


def error_status(exc: RAGError) -> int:
    if isinstance(exc, SessionNotFoundError):
        return 404
    if isinstance(exc, InputValidationError):
        return 400
    if isinstance(exc, BudgetExceededError):
        return 402
    if isinstance(exc, TransientProviderError):
        return 503
    if isinstance(exc, PermanentProviderError):
        return 502
    return 500


@app.exception_handler(RAGError)
async def rag_error_handler(request: Request, exc: RAGError) -> JSONResponse:
    status_code = error_status(exc)
    log = logger.warning if status_code < 500 else logger.error
    log(
        "request_failed",
        path=request.url.path,
        status_code=status_code,
        error_code=exc.code,
        detail=str(exc),
    )
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    fields = [".".join(str(part) for part in err["loc"][1:]) for err in exc.errors()]
    logger.warning("request_validation_failed", path=request.url.path, fields=fields)
    return JSONResponse(
        status_code=400,
        content={
            "error": InputValidationError.code,
            "message": f"Invalid or missing fields: {', '.join(fields)}",
            "retryable": False,
        },
    )


# ==============================================================================
# Helper Functions
# ==============================================================================


def get_conversation_service() -> ConversationService:
    if conversation_service is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return conversation_service


def sse_event(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def format_chat_event(event: ChatEvent) -> str:
    if isinstance(event, ContentDelta):
        return sse_event("content", {"delta": event.delta})
    response = ChatResponse.from_result(event.result)
    return sse_event("done", response.model_dump(mode="json", by_alias=True))


async def stream_chat_events(
    first: ChatEvent, events: AsyncIterator[ChatEvent]
) -> AsyncIterator[str]:
    """Render service events as server-sent events.

    Errors after the stream has started become a final ``error`` event.
    """
    try:
        yield format_chat_event(first)
        async for event in events:
            yield format_chat_event(event)
    except RAGError as e:
        logger.warning("chat_stream_failed", error_code=e.code, detail=str(e))
        yield sse_event("error", e.to_dict())
    except Exception:
        logger.exception("chat_stream_failed")
        yield sse_event("error", RAGError().to_dict())
    finally:
        await events.aclose()


# ==============================================================================
# API Endpoints
# ==============================================================================


@app.get("/health")
async def health_check():
    """Health check endpoint.

    Returns:
        Health status and timestamp.
    """
    deps = conversation_service.deps if conversation_service else None
    return {
        "status": "healthy",
        "timestamp": datetime.now(UTC).isoformat(),
        "services": {
            "conversation_service": conversation_service is not None,
            "chunk_store": deps is not None,
            "session_store": deps is not None,
            "title_agent": bool(deps and deps.title_agent is not None),
        },
    }


@app.post("/api/chat")
async def chat_endpoint(request: ChatRequest):
    """Answer a question about the creator's videos.

    Returns JSON, or a ``text/event-stream`` of ``content`` events ending in
    one ``done`` (or ``error``) event when ``stream`` is true.
    """
    service = get_conversation_service()
    logger.info(
        "chat_request_started",
        creator_id=request.creator_id,
        session_id=request.session_id,
        stream=request.stream,
        message_length=len(request.message),
    )

    if not request.stream:
        result = await service.send_message(
            request.message,
            creator_id=request.creator_id,
            session_id=request.session_id,
            student_id=request.student_id,
            course_id=request.course_id,
        )
        return ChatResponse.from_result(result).model_dump(mode="json", by_alias=True)

    events = service.stream_message(
        request.message,
        creator_id=request.creator_id,
        session_id=request.session_id,
        student_id=request.student_id,
        course_id=request.course_id,
    )
    # Pull the first event so validation, session and budget errors map to
    # a proper HTTP status instead of an in-stream error.
    first = await anext(events)
    return StreamingResponse(
        stream_chat_events(first, events),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/api/chat/sessions/{session_id}")
async def get_session(session_id: str, creator_id: str = Query(alias="creatorId")):
    """Return a session with its messages, oldest first."""
    service = get_conversation_service()
    session, messages = await service.get_session_history(session_id, creator_id)
    return SessionHistoryResponse(session=session, messages=messages).model_dump(
        mode="json", by_alias=True
    )


@app.get("/api/chat/sessions")
async def list_sessions(
    creator_id: str = Query(alias="creatorId"),
    student_id: str | None = Query(default=None, alias="studentId"),
    limit: int = Query(default=20),
    offset: int = Query(default=0),
):
    """List a creator's sessions, most recent activity first."""
    service = get_conversation_service()
    sessions = await service.list_sessions(
        creator_id, student_id=student_id, limit=limit, offset=offset
    )
    return SessionListResponse(sessions=sessions, limit=limit, offset=offset).model_dump(
        mode="json", by_alias=True
    )


@app.delete("/api/chat/sessions/{session_id}")
async def delete_session(session_id: str, creator_id: str = Query(alias="creatorId")):
    """Delete a session and all of its messages."""
    service = get_conversation_service()
    await service.delete_session(session_id, creator_id)
    logger.info("session_delete_request_completed", session_id=session_id, creator_id=creator_id)
    return {"deleted": True, "sessionId": session_id}
