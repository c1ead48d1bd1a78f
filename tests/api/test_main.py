"""Unit tests for FastAPI application main endpoints.

The conversation service is replaced by a mock; its behavior is covered in
tests/agent/test_conversation.py.
"""

import json
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from src.api.main import app
from src.rag_pipeline.errors import (
    BudgetExceededError,
    InputValidationError,
    PermanentProviderError,
    SessionNotFoundError,
    TransientProviderError,
)
from src.rag_pipeline.schemas import (
    ChatResult,
    Citation,
    ContentDelta,
    ConversationSession,
    Message,
    StreamCompleted,
    Usage,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


def parse_sse(body: str) -> list[tuple[str, dict[str, Any]]]:
    events = []
    for block in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


@pytest.fixture
def chat_result() -> ChatResult:
    """Create a completed exchange with one citation."""
    return ChatResult(
        content="Price on value.",
        session_id="session_1",
        message_id="message_2",
        video_references=[
            Citation(
                video_id="video_1",
                video_title="Pricing Your Course",
                timestamp=125.0,
                timestamp_display="02:05",
                excerpt="Price your course on the value it creates.",
                chunk_index=0,
                similarity=0.91,
                url="https://youtube.com/watch?v=video_1&t=125s",
            )
        ],
        usage=Usage(input_tokens=100, output_tokens=20, cost=0.000027),
    )


@pytest.fixture
def service(chat_result: ChatResult) -> MagicMock:
    """Create mock conversation service."""
    mock_service = MagicMock()
    mock_service.deps.title_agent = None
    mock_service.send_message = AsyncMock(return_value=chat_result)
    mock_service.get_session_history = AsyncMock()
    mock_service.list_sessions = AsyncMock(return_value=[])
    mock_service.delete_session = AsyncMock()
    return mock_service


@pytest.fixture
def client(service: MagicMock):
    """Create test client with the mock service installed."""
    with patch("src.api.main.conversation_service", service):
        yield TestClient(app)


@pytest.mark.unit
class TestHealthEndpoint:
    """Test /health endpoint."""

    def test_health_check_returns_healthy_status(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        timestamp = datetime.fromisoformat(data["timestamp"])
        assert isinstance(timestamp, datetime)

    def test_health_check_includes_services_status(self, client: TestClient) -> None:
        """Test that health endpoint reports each service as a boolean."""
        services = client.get("/health").json()["services"]

        assert services == {
            "conversation_service": True,
            "chunk_store": True,
            "session_store": True,
            "title_agent": False,
        }

    def test_health_check_before_startup(self) -> None:
        with patch("src.api.main.conversation_service", None):
            services = TestClient(app).get("/health").json()["services"]

        assert not any(services.values())


@pytest.mark.unit
class TestChatEndpoint:
    """Test POST /api/chat."""

    def test_json_response(self, client: TestClient, service: MagicMock) -> None:
        response = client.post(
            "/api/chat",
            json={"message": "How should I price?", "creatorId": "creator_a", "courseId": "c1"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["content"] == "Price on value."
        assert data["sessionId"] == "session_1"
        assert data["videoReferences"][0]["video_id"] == "video_1"
        assert data["videoReferences"][0]["timestamp"] == 125.0
        assert data["usage"] == {"input_tokens": 100, "output_tokens": 20, "cost": 0.000027}
        assert data["retrievalStatus"] == "ok"
        service.send_message.assert_awaited_once_with(
            "How should I price?",
            creator_id="creator_a",
            session_id=None,
            student_id=None,
            course_id="c1",
        )

    def test_missing_creator_id(self, client: TestClient, service: MagicMock) -> None:
        response = client.post("/api/chat", json={"message": "Hi"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "invalid_request"
        assert "creatorId" in body["message"]
        service.send_message.assert_not_called()

    def test_empty_creator_id(self, client: TestClient) -> None:
        response = client.post("/api/chat", json={"message": "Hi", "creatorId": ""})

        assert response.status_code == 400

    @pytest.mark.parametrize(
        ("error", "status_code", "code"),
        [
            (SessionNotFoundError("missing"), 404, "session_not_found"),
            (BudgetExceededError("creator_a", "daily", 5.0, 5.2), 402, "budget_exceeded"),
            (TransientProviderError("rate limited", provider="llm"), 503, "provider_unavailable"),
            (PermanentProviderError("bad request", provider="llm"), 502, "provider_error"),
        ],
    )
    def test_error_mapping(
        self,
        client: TestClient,
        service: MagicMock,
        error: Exception,
        status_code: int,
        code: str,
    ) -> None:
        service.send_message.side_effect = error

        response = client.post("/api/chat", json={"message": "Hi", "creatorId": "creator_a"})

        assert response.status_code == status_code
        assert response.json()["error"] == code

    def test_provider_details_not_leaked(self, client: TestClient, service: MagicMock) -> None:
        service.send_message.side_effect = TransientProviderError(
            "generation failed: RateLimitError", provider="llm", status_code=429
        )

        body = client.post("/api/chat", json={"message": "Hi", "creatorId": "creator_a"}).json()

        assert body["retryable"] is True
        assert "RateLimitError" not in body["message"]

    def test_budget_error_includes_period(self, client: TestClient, service: MagicMock) -> None:
        service.send_message.side_effect = BudgetExceededError("creator_a", "monthly", 50.0, 51.0)

        body = client.post("/api/chat", json={"message": "Hi", "creatorId": "creator_a"}).json()

        assert body["period"] == "monthly"

    def test_service_not_initialized(self) -> None:
        with patch("src.api.main.conversation_service", None):
            response = TestClient(app).post(
                "/api/chat", json={"message": "Hi", "creatorId": "creator_a"}
            )

        assert response.status_code == 503


@pytest.mark.unit
class TestChatStreaming:
    """Test POST /api/chat with stream=true."""

    def test_stream_events(
        self, client: TestClient, service: MagicMock, chat_result: ChatResult
    ) -> None:
        async def events(*args: Any, **kwargs: Any) -> AsyncIterator:
            yield ContentDelta(delta="Price ")
            yield ContentDelta(delta="on value.")
            yield StreamCompleted(result=chat_result)

        service.stream_message = events

        response = client.post(
            "/api/chat",
            json={"message": "How should I price?", "creatorId": "creator_a", "stream": True},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        parsed = parse_sse(response.text)
        assert [name for name, _ in parsed] == ["content", "content", "done"]
        assert parsed[0][1] == {"delta": "Price "}
        done = parsed[-1][1]
        assert done["sessionId"] == "session_1"
        assert done["videoReferences"][0]["timestamp_display"] == "02:05"
        assert done["usage"]["output_tokens"] == 20

    def test_error_before_first_event_uses_status(
        self, client: TestClient, service: MagicMock
    ) -> None:
        """Test budget rejection maps to 402 rather than an in-stream error."""

        async def events(*args: Any, **kwargs: Any) -> AsyncIterator:
            raise BudgetExceededError("creator_a", "daily", 5.0, 5.0)
            yield

        service.stream_message = events

        response = client.post(
            "/api/chat", json={"message": "Hi", "creatorId": "creator_a", "stream": True}
        )

        assert response.status_code == 402
        assert response.json()["error"] == "budget_exceeded"

    def test_error_mid_stream_becomes_error_event(
        self, client: TestClient, service: MagicMock
    ) -> None:
        async def events(*args: Any, **kwargs: Any) -> AsyncIterator:
            yield ContentDelta(delta="Price ")
            raise TransientProviderError("stream dropped", provider="llm")

        service.stream_message = events

        response = client.post(
            "/api/chat", json={"message": "Hi", "creatorId": "creator_a", "stream": True}
        )

        parsed = parse_sse(response.text)
        assert [name for name, _ in parsed] == ["content", "error"]
        assert parsed[-1][1]["error"] == "provider_unavailable"
        assert parsed[-1][1]["retryable"] is True


@pytest.mark.unit
class TestSessionEndpoint:
    """Test GET /api/chat/sessions/{session_id}."""

    def test_returns_history(self, client: TestClient, service: MagicMock) -> None:
        session = ConversationSession(
            id="session_1",
            creator_id="creator_a",
            title="Pricing questions",
            created_at=NOW,
            message_count=1,
        )
        message = Message(
            id="message_1",
            session_id="session_1",
            role="user",
            content="How should I price?",
            created_at=NOW,
        )
        service.get_session_history.return_value = (session, [message])

        response = client.get("/api/chat/sessions/session_1", params={"creatorId": "creator_a"})

        assert response.status_code == 200
        data = response.json()
        assert data["session"]["title"] == "Pricing questions"
        assert [m["content"] for m in data["messages"]] == ["How should I price?"]
        service.get_session_history.assert_awaited_once_with("session_1", "creator_a")

    def test_unknown_session(self, client: TestClient, service: MagicMock) -> None:
        service.get_session_history.side_effect = SessionNotFoundError("missing")

        response = client.get("/api/chat/sessions/missing", params={"creatorId": "creator_a"})

        assert response.status_code == 404

    def test_creator_id_required(self, client: TestClient) -> None:
        response = client.get("/api/chat/sessions/session_1")

        assert response.status_code == 400


@pytest.mark.unit
class TestSessionListEndpoint:
    """Test GET /api/chat/sessions."""

    def test_lists_sessions(self, client: TestClient, service: MagicMock) -> None:
        service.list_sessions.return_value = [
            ConversationSession(
                id="session_1",
                creator_id="creator_a",
                student_id="student_1",
                title="Pricing questions",
                created_at=NOW,
                last_message_at=NOW,
                message_count=4,
            )
        ]

        response = client.get(
            "/api/chat/sessions",
            params={"creatorId": "creator_a", "studentId": "student_1", "limit": 5, "offset": 10},
        )

        assert response.status_code == 200
        data = response.json()
        assert [s["id"] for s in data["sessions"]] == ["session_1"]
        assert data["sessions"][0]["message_count"] == 4
        assert data["limit"] == 5
        assert data["offset"] == 10
        service.list_sessions.assert_awaited_once_with(
            "creator_a", student_id="student_1", limit=5, offset=10
        )

    def test_defaults(self, client: TestClient, service: MagicMock) -> None:
        client.get("/api/chat/sessions", params={"creatorId": "creator_a"})

        service.list_sessions.assert_awaited_once_with(
            "creator_a", student_id=None, limit=20, offset=0
        )

    def test_creator_id_required(self, client: TestClient, service: MagicMock) -> None:
        response = client.get("/api/chat/sessions")

        assert response.status_code == 400
        service.list_sessions.assert_not_called()

    def test_bad_page_window(self, client: TestClient, service: MagicMock) -> None:
        service.list_sessions.side_effect = InputValidationError("limit must be between 1 and 100.")

        response = client.get("/api/chat/sessions", params={"creatorId": "creator_a", "limit": 0})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"


@pytest.mark.unit
class TestSessionDeleteEndpoint:
    """Test DELETE /api/chat/sessions/{session_id}."""

    def test_deletes_session(self, client: TestClient, service: MagicMock) -> None:
        response = client.delete("/api/chat/sessions/session_1", params={"creatorId": "creator_a"})

        assert response.status_code == 200
        assert response.json() == {"deleted": True, "sessionId": "session_1"}
        service.delete_session.assert_awaited_once_with("session_1", "creator_a")

    def test_session_of_other_creator(self, client: TestClient, service: MagicMock) -> None:
        """Test another creator's session looks the same as a missing one."""
        service.delete_session.side_effect = SessionNotFoundError("session_1")

        response = client.delete("/api/chat/sessions/session_1", params={"creatorId": "creator_b"})

        assert response.status_code == 404
        assert response.json()["error"] == "session_not_found"

    def test_creator_id_required(self, client: TestClient, service: MagicMock) -> None:
        response = client.delete("/api/chat/sessions/session_1")

        assert response.status_code == 400
        service.delete_session.assert_not_called()
