"""Chat dependency definitions.

Defines the ChatDeps dataclass that holds the runtime services a
conversation needs.
"""

from dataclasses import dataclass

from pydantic_ai import Agent

from src.agent.agent import GenerationProvider
from src.api.db_utils import SessionStore
from src.rag_pipeline.cache_service import ResponseCache
from src.rag_pipeline.config import RAGConfig
from src.rag_pipeline.context_builder import ContextBuilder
from src.rag_pipeline.cost_service import CostTracker
from src.rag_pipeline.embedding_service import EmbeddingService
from src.rag_pipeline.ranking_service import RankingService
from src.rag_pipeline.storage_service import ChunkStore


@dataclass
class ChatDeps:
    """Runtime dependencies for the conversation service.

    Attributes:
        config: Pipeline configuration.
        chunk_store: Chunk persistence and vector search.
        session_store: Session and message persistence.
        embedding_service: Query embedding with retries and cost.
        ranker: Composite re-ranking of search hits.
        context_builder: Token-bounded context assembly.
        cost_tracker: Ledger recording and budget enforcement.
        cache: Answer cache.
        generator: Answer generation provider.
        title_agent: Agent used for session titles, None to always use
            the date based fallback.
    """

    config: RAGConfig
    chunk_store: ChunkStore
    session_store: SessionStore
    embedding_service: EmbeddingService
    ranker: RankingService
    context_builder: ContextBuilder
    cost_tracker: CostTracker
    cache: ResponseCache
    generator: GenerationProvider
    title_agent: Agent[None, str] | None = None
