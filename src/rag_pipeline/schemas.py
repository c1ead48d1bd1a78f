"""Pydantic schemas for the video chat RAG pipeline."""

from datetime import UTC, date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TranscriptSegment(BaseModel):
    """Single transcript segment with timestamps in seconds.

    Segments are produced by transcript acquisition and never modified here.
    """

    model_config = ConfigDict(frozen=True)

    text: str
    start_time: float = Field(ge=0)
    end_time: float = Field(ge=0)

    @model_validator(mode="after")
    def _check_time_range(self) -> "TranscriptSegment":
        if self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        return self


class ChunkingOptions(BaseModel):
    """Word bounds and overlap used when splitting a transcript."""

    model_config = ConfigDict(frozen=True)

    min_words: int = Field(default=500, ge=1)
    max_words: int = Field(default=1000, ge=1)
    overlap_words: int = Field(default=100, ge=0)
    preserve_sentence_boundaries: bool = True

    @model_validator(mode="after")
    def _check_bounds(self) -> "ChunkingOptions":
        if self.min_words > self.max_words:
            raise ValueError("min_words must not exceed max_words")
        if self.overlap_words >= self.max_words:
            raise ValueError("overlap_words must be smaller than max_words")
        return self


class Chunk(BaseModel):
    """Retrievable slice of a transcript.

    ``first_segment``/``last_segment`` are the inclusive indices of the input
    segments that contributed words, overlap included. They let the validator
    prove coverage without re-reading the transcript.
    """

    video_id: str
    chunk_index: int = Field(ge=0)
    text: str
    start_time: float
    end_time: float
    word_count: int
    overlap_word_count: int = 0
    first_segment: int = 0
    last_segment: int = 0
    oversized: bool = False
    embedding: list[float] | None = None

    def with_embedding(self, embedding: list[float]) -> "Chunk":
        """Return a copy carrying its embedding vector."""
        return self.model_copy(update={"embedding": embedding})


class ChunkingStats(BaseModel):
    """Summary of one chunking run."""

    total_chunks: int
    total_words: int
    avg_words_per_chunk: float
    min_words: int
    max_words: int
    chunks_with_overlap: int
    oversized_chunks: int


class VideoRecord(BaseModel):
    """Video owned by a creator, as the chunk store sees it."""

    id: str
    creator_id: str
    course_id: str | None = None
    title: str
    url: str | None = None
    published_at: datetime | None = None
    duration_seconds: float | None = None
    chunk_count: int = 0
    reference_count: int = 0


class SearchScope(BaseModel):
    """Tenant filter applied to every search.

    ``creator_id`` is mandatory; ``course_id`` and ``video_id`` narrow it.
    """

    creator_id: str = Field(min_length=1)
    course_id: str | None = None
    video_id: str | None = None

    def allows(self, creator_id: str, course_id: str | None, video_id: str) -> bool:
        if creator_id != self.creator_id:
            return False
        if self.course_id is not None and course_id != self.course_id:
            return False
        if self.video_id is not None and video_id != self.video_id:
            return False
        return True


class SearchCandidate(BaseModel):
    """Chunk returned by vector search, before and after ranking."""

    chunk: Chunk
    similarity_score: float
    rank_score: float = 0.0
    video_title: str
    creator_id: str
    course_id: str | None = None


class RankingWeights(BaseModel):
    """Weights of the composite ranking score."""

    similarity: float = Field(default=0.8, ge=0)
    recency: float = Field(default=0.1, ge=0)
    engagement: float = Field(default=0.05, ge=0)
    position: float = Field(default=0.05, ge=0)


class Citation(BaseModel):
    """Pointer from an answer back to a moment in a video."""

    video_id: str
    video_title: str
    timestamp: float
    timestamp_display: str
    excerpt: str
    chunk_index: int
    similarity: float
    url: str | None = None


MessageRole = Literal["user", "assistant"]


class Message(BaseModel):
    """Single message stored in a conversation session."""

    id: str
    session_id: str
    role: MessageRole
    content: str
    video_references: list[Citation] = Field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    cached: bool = False
    created_at: datetime


class ConversationSession(BaseModel):
    """Chat session between a learner and a creator's library."""

    id: str
    creator_id: str
    student_id: str | None = None
    course_id: str | None = None
    title: str | None = None
    created_at: datetime
    last_message_at: datetime | None = None
    message_count: int = 0

    @property
    def state(self) -> Literal["empty", "active"]:
        return "active" if self.message_count > 0 else "empty"


class BuiltContext(BaseModel):
    """Prompt context plus the citations for the sources it contains.

    ``citations[i]`` always describes ``[Source i+1]`` in ``prompt_context``.
    """

    prompt_context: str
    citations: list[Citation] = Field(default_factory=list)
    history: list[Message] = Field(default_factory=list)
    total_tokens: int = 0
    source_tokens: int = 0
    history_tokens: int = 0
    truncated: bool = False

    @property
    def source_count(self) -> int:
        return len(self.citations)


class EmbeddingBatchResult(BaseModel):
    """Vectors for a list of chunks plus what they cost."""

    embeddings: list[list[float]]
    total_tokens: int
    total_cost: float
    model: str


class QueryEmbedding(BaseModel):
    """Vector for a single search query."""

    embedding: list[float]
    tokens: int
    cost: float
    model: str


class GenerationResult(BaseModel):
    """Answer text and token usage reported by the generation provider."""

    content: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""
    estimated: bool = False


class Usage(BaseModel):
    """Token usage and dollar cost of one answer."""

    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0


class UsageRecord(BaseModel):
    """Per creator per day ledger row."""

    creator_id: str
    day: date
    embedding_tokens: int = 0
    generation_tokens: int = 0
    cost: float = 0.0


class CachedAnswer(BaseModel):
    """Answer stored in the response cache."""

    content: str
    citations: list[Citation] = Field(default_factory=list)
    model: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


RetrievalStatus = Literal["ok", "empty", "unavailable", "cached"]


class ChatResult(BaseModel):
    """Outcome of one exchange, returned to the HTTP layer."""

    content: str
    session_id: str
    message_id: str
    video_references: list[Citation] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    cached: bool = False
    retrieval_status: RetrievalStatus = "ok"


class ContentDelta(BaseModel):
    """Streamed piece of answer text."""

    type: Literal["content"] = "content"
    delta: str


class StreamCompleted(BaseModel):
    """Final event of a streamed answer."""

    type: Literal["done"] = "done"
    result: ChatResult


ChatEvent = ContentDelta | StreamCompleted


class IngestionResult(BaseModel):
    """Result of chunking, embedding and storing one video.

    Used by the ingestion CLI for reporting.
    """

    video_id: str
    chunks_created: int
    embedding_tokens: int = 0
    embedding_cost: float = 0.0
    model: str = ""
    stats: ChunkingStats | None = None
