"""Configuration module for the video chat RAG pipeline."""

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from .schemas import ChunkingOptions, RankingWeights

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_optional_float(name: str) -> float | None:
    value = os.getenv(name, "").strip()
    return float(value) if value else None


class RAGConfig(BaseModel):
    """Configuration for the chat RAG pipeline.

    Covers chunking, embedding, search, ranking, context assembly, caching,
    budgets and storage. All settings can be overridden via environment
    variables.
    """

    # Chunking settings (word-based)
    chunk_min_words: int = Field(
        default_factory=lambda: int(os.getenv("CHUNK_MIN_WORDS", "500"))
    )
    chunk_max_words: int = Field(
        default_factory=lambda: int(os.getenv("CHUNK_MAX_WORDS", "1000"))
    )
    chunk_overlap_words: int = Field(
        default_factory=lambda: int(os.getenv("CHUNK_OVERLAP_WORDS", "100"))
    )
    preserve_sentence_boundaries: bool = Field(
        default_factory=lambda: _env_bool("CHUNK_PRESERVE_SENTENCES", "true")
    )

    # Embedding settings
    embedding_provider: str = Field(
        default_factory=lambda: os.getenv("EMBEDDING_PROVIDER", "openai")
    )
    embedding_base_url: str = Field(
        default_factory=lambda: os.getenv(
            "EMBEDDING_BASE_URL", "https://api.openai.com/v1"
        )
    )
    embedding_api_key: str = Field(
        default_factory=lambda: os.getenv("EMBEDDING_API_KEY", "")
    )
    embedding_model: str = Field(
        default_factory=lambda: os.getenv(
            "EMBEDDING_MODEL_CHOICE", "text-embedding-3-small"
        )
    )
    embedding_dimensions: int = Field(
        default_factory=lambda: int(os.getenv("EMBEDDING_DIMENSIONS", "1536"))
    )
    embedding_batch_size: int = Field(
        default_factory=lambda: int(os.getenv("EMBEDDING_BATCH_SIZE", "10")),
        ge=1,
        le=100,
    )
    embedding_max_retries: int = Field(
        default_factory=lambda: int(os.getenv("EMBEDDING_MAX_RETRIES", "3")),
        ge=0,
    )
    embedding_retry_base_delay: float = Field(
        default_factory=lambda: float(os.getenv("EMBEDDING_RETRY_BASE_DELAY", "1.0"))
    )
    embedding_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("EMBEDDING_TIMEOUT_SECONDS", "30"))
    )
    embedding_price_per_million: float | None = Field(
        default_factory=lambda: _env_optional_float("EMBEDDING_PRICE_PER_MILLION")
    )

    # Search settings
    similarity_threshold: float = Field(
        default_factory=lambda: float(os.getenv("SIMILARITY_THRESHOLD", "0.7")),
        ge=0,
        le=1,
    )
    match_count: int = Field(
        default_factory=lambda: int(os.getenv("MATCH_COUNT", "5")),
        ge=1,
    )
    search_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("SEARCH_TIMEOUT_SECONDS", "10"))
    )

    # Ranking settings
    rank_similarity_weight: float = Field(
        default_factory=lambda: float(os.getenv("RANK_SIMILARITY_WEIGHT", "0.8"))
    )
    rank_recency_weight: float = Field(
        default_factory=lambda: float(os.getenv("RANK_RECENCY_WEIGHT", "0.1"))
    )
    rank_engagement_weight: float = Field(
        default_factory=lambda: float(os.getenv("RANK_ENGAGEMENT_WEIGHT", "0.05"))
    )
    rank_position_weight: float = Field(
        default_factory=lambda: float(os.getenv("RANK_POSITION_WEIGHT", "0.05"))
    )
    recency_decay_days: float = Field(
        default_factory=lambda: float(os.getenv("RECENCY_DECAY_DAYS", "90"))
    )
    long_video_chunk_threshold: int = Field(
        default_factory=lambda: int(os.getenv("LONG_VIDEO_CHUNK_THRESHOLD", "20"))
    )
    engagement_saturation: int = Field(
        default_factory=lambda: int(os.getenv("ENGAGEMENT_SATURATION", "10")),
        ge=1,
    )

    # Context settings
    context_max_tokens: int = Field(
        default_factory=lambda: int(os.getenv("CONTEXT_MAX_TOKENS", "4000"))
    )
    history_token_fraction: float = Field(
        default_factory=lambda: float(os.getenv("HISTORY_TOKEN_FRACTION", "0.25"))
    )
    history_message_limit: int = Field(
        default_factory=lambda: int(os.getenv("HISTORY_MESSAGE_LIMIT", "10"))
    )
    context_dedupe: bool = Field(
        default_factory=lambda: _env_bool("CONTEXT_DEDUPE", "true")
    )
    tokenizer_name: str = Field(
        default_factory=lambda: os.getenv("TOKENIZER_NAME", "")
    )

    # Cache and budget settings
    cache_ttl_seconds: int = Field(
        default_factory=lambda: int(os.getenv("CACHE_TTL_SECONDS", "3600")),
        ge=0,
    )
    daily_budget_usd: float | None = Field(
        default_factory=lambda: _env_optional_float("DAILY_BUDGET_USD")
    )
    monthly_budget_usd: float | None = Field(
        default_factory=lambda: _env_optional_float("MONTHLY_BUDGET_USD")
    )

    # Generation settings
    generation_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("GENERATION_TIMEOUT_SECONDS", "60"))
    )
    title_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("TITLE_TIMEOUT_SECONDS", "10"))
    )

    # Storage settings
    storage_backend: str = Field(
        default_factory=lambda: os.getenv("RAG_STORAGE_BACKEND", "supabase")
    )
    supabase_url: str = Field(default_factory=lambda: os.getenv("SUPABASE_URL", ""))
    supabase_key: str = Field(
        default_factory=lambda: os.getenv("SUPABASE_SERVICE_KEY", "")
    )

    @model_validator(mode="after")
    def _check_consistency(self) -> "RAGConfig":
        if self.chunk_min_words > self.chunk_max_words:
            raise ValueError("CHUNK_MIN_WORDS must not exceed CHUNK_MAX_WORDS")
        if self.chunk_overlap_words >= self.chunk_max_words:
            raise ValueError("CHUNK_OVERLAP_WORDS must be smaller than CHUNK_MAX_WORDS")
        if not 0 <= self.history_token_fraction < 1:
            raise ValueError("HISTORY_TOKEN_FRACTION must be in [0, 1)")
        if self.storage_backend not in ("supabase", "memory"):
            raise ValueError("RAG_STORAGE_BACKEND must be 'supabase' or 'memory'")
        return self

    @property
    def chunking_options(self) -> ChunkingOptions:
        return ChunkingOptions(
            min_words=self.chunk_min_words,
            max_words=self.chunk_max_words,
            overlap_words=self.chunk_overlap_words,
            preserve_sentence_boundaries=self.preserve_sentence_boundaries,
        )

    @property
    def ranking_weights(self) -> RankingWeights:
        return RankingWeights(
            similarity=self.rank_similarity_weight,
            recency=self.rank_recency_weight,
            engagement=self.rank_engagement_weight,
            position=self.rank_position_weight,
        )


def get_config() -> RAGConfig:
    """Get validated configuration instance.

    Returns:
        RAGConfig: Validated configuration object with all settings.

    Raises:
        ValidationError: If environment variables are missing or invalid.
    """
    return RAGConfig()
