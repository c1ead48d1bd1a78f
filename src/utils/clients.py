"""Client and service initialization utilities.

Builds the Supabase client and wires the chat services for the configured
storage backend (``supabase`` or ``memory``).
"""

from dataclasses import dataclass

from supabase import Client, create_client

from src.agent.agent import AgentGenerationProvider, build_chat_agent, build_title_agent
from src.agent.config import get_model
from src.agent.deps import ChatDeps
from src.api.db_utils import InMemorySessionStore, SessionStore, SupabaseSessionStore
from src.rag_pipeline.cache_service import (
    InMemoryResponseCache,
    ResponseCache,
    SupabaseResponseCache,
)
from src.rag_pipeline.config import RAGConfig
from src.rag_pipeline.context_builder import ContextBuilder
from src.rag_pipeline.cost_service import (
    CostTracker,
    InMemoryUsageLedger,
    SupabaseUsageLedger,
    UsageLedger,
)
from src.rag_pipeline.embedding_service import EmbeddingService
from src.rag_pipeline.ranking_service import RankingService
from src.rag_pipeline.storage_service import ChunkStore, InMemoryChunkStore, SupabaseChunkStore
from src.rag_pipeline.tokens import TokenCounter


def get_supabase_client(config: RAGConfig) -> Client:
    """Create a Supabase client from configuration.

    Raises:
        ValueError: If SUPABASE_URL or SUPABASE_SERVICE_KEY is missing.
    """
    if not config.supabase_url or not config.supabase_key:
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY environment variables are required")
    return create_client(config.supabase_url, config.supabase_key)


@dataclass
class Stores:
    """Persistence backends sharing one storage choice."""

    chunk_store: ChunkStore
    session_store: SessionStore
    ledger: UsageLedger
    cache: ResponseCache


def build_stores(config: RAGConfig) -> Stores:
    """Create all persistence backends for ``config.storage_backend``."""
    if config.storage_backend == "memory":
        return Stores(
            chunk_store=InMemoryChunkStore(),
            session_store=InMemorySessionStore(),
            ledger=InMemoryUsageLedger(),
            cache=InMemoryResponseCache(ttl_seconds=config.cache_ttl_seconds),
        )

    supabase = get_supabase_client(config)
    return Stores(
        chunk_store=SupabaseChunkStore(supabase),
        session_store=SupabaseSessionStore(supabase),
        ledger=SupabaseUsageLedger(supabase),
        cache=SupabaseResponseCache(supabase, ttl_seconds=config.cache_ttl_seconds),
    )


def build_cost_tracker(config: RAGConfig, ledger: UsageLedger) -> CostTracker:
    return CostTracker(
        ledger,
        daily_budget_usd=config.daily_budget_usd,
        monthly_budget_usd=config.monthly_budget_usd,
    )


def build_chat_deps(config: RAGConfig, stores: Stores | None = None) -> ChatDeps:
    """Wire every service the conversation service needs.

    Raises:
        ValueError: If the embedding API key or Supabase credentials are
            missing for the selected providers.
    """
    if config.embedding_provider != "ollama" and not config.embedding_api_key:
        raise ValueError("EMBEDDING_API_KEY environment variable is required")

    stores = stores or build_stores(config)
    model = get_model(config.generation_timeout_seconds)

    return ChatDeps(
        config=config,
        chunk_store=stores.chunk_store,
        session_store=stores.session_store,
        embedding_service=EmbeddingService(config),
        ranker=RankingService.from_config(config),
        context_builder=ContextBuilder(
            token_counter=TokenCounter(config.tokenizer_name),
            history_token_fraction=config.history_token_fraction,
            dedupe=config.context_dedupe,
        ),
        cost_tracker=build_cost_tracker(config, stores.ledger),
        cache=stores.cache,
        generator=AgentGenerationProvider(
            build_chat_agent(model), timeout_seconds=config.generation_timeout_seconds
        ),
        title_agent=build_title_agent(model),
    )
