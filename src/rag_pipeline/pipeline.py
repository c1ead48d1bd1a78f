"""Ingestion pipeline: transcript to searchable chunks."""

from src.utils.logging import get_logger

from .cache_service import ResponseCache
from .chunking_service import ChunkingService, get_chunking_stats
from .config import RAGConfig, get_config
from .cost_service import CostTracker
from .embedding_service import EmbeddingService
from .schemas import IngestionResult, TranscriptSegment, VideoRecord
from .storage_service import ChunkStore

logger = get_logger(__name__)


class VideoIngestionPipeline:
    """Orchestrates chunking, embedding and storage for one video at a time.

    Re-ingesting a video replaces its chunks. Embedding is all or nothing, so
    a failed run leaves the previously stored chunks untouched. Answers
    cached for the creator are dropped after every successful write, since
    they may cite chunks that no longer exist.
    """

    def __init__(
        self,
        chunk_store: ChunkStore,
        config: RAGConfig | None = None,
        embedding_service: EmbeddingService | None = None,
        cost_tracker: CostTracker | None = None,
        cache: ResponseCache | None = None,
    ):
        """Initialize pipeline with all required services.

        Args:
            chunk_store: Destination for videos and chunks.
            config: Configuration object. If None, loads from environment.
            embedding_service: Embedding service. Built from config when omitted.
            cost_tracker: Records embedding spend against the creator, if given.
            cache: Answer cache to invalidate after writes, if given.
        """
        self.config = config or get_config()
        self.chunk_store = chunk_store
        self.chunking_service = ChunkingService(self.config.chunking_options)
        self.embedding_service = embedding_service or EmbeddingService(self.config)
        self.cost_tracker = cost_tracker
        self.cache = cache

        logger.info(
            "pipeline_initialized",
            embedding_model=self.config.embedding_model,
            min_words=self.config.chunk_min_words,
            max_words=self.config.chunk_max_words,
        )

    async def ingest_video(
        self, video: VideoRecord, segments: list[TranscriptSegment]
    ) -> IngestionResult:
        """Chunk, embed and store one video's transcript.

        Args:
            video: Video metadata, including the owning creator.
            segments: Transcript segments with timestamps.

        Returns:
            IngestionResult with chunk counts, embedding usage and stats.

        Raises:
            TransientProviderError: Embedding failed after retries.
            PermanentProviderError: Embedding was rejected or malformed.
            BudgetExceededError: The creator has no budget left for embedding.
        """
        logger.info("processing_video", video_id=video.id, creator_id=video.creator_id)

        chunks = self.chunking_service.chunk_transcript(video.id, segments)
        stats = get_chunking_stats(chunks)
        if not chunks:
            logger.warning("video_transcript_empty", video_id=video.id)
            return IngestionResult(video_id=video.id, chunks_created=0, stats=stats)

        if self.cost_tracker is not None:
            await self.cost_tracker.ensure_within_budget(video.creator_id)

        embedded = await self.embedding_service.embed(chunks)
        embedding_cost = embedded.total_cost
        if self.cost_tracker is not None:
            embedding_cost = await self.cost_tracker.record_embedding(
                video.creator_id, embedded.model, embedded.total_tokens, embedded.total_cost
            )

        chunks = [
            chunk.with_embedding(vector)
            for chunk, vector in zip(chunks, embedded.embeddings, strict=True)
        ]

        await self.chunk_store.upsert_video(video.model_copy(update={"chunk_count": len(chunks)}))
        await self.chunk_store.upsert_chunks(video.id, chunks)
        await self._invalidate(video.creator_id)

        logger.info(
            "video_processed",
            video_id=video.id,
            chunks=len(chunks),
            embedding_tokens=embedded.total_tokens,
            embedding_cost=embedding_cost,
        )
        return IngestionResult(
            video_id=video.id,
            chunks_created=len(chunks),
            embedding_tokens=embedded.total_tokens,
            embedding_cost=embedding_cost,
            model=embedded.model,
            stats=stats,
        )

    async def delete_video(self, video_id: str, creator_id: str) -> None:
        """Remove a video and all its chunks."""
        await self.chunk_store.delete_video(video_id)
        await self._invalidate(creator_id)
        logger.info("video_deleted", video_id=video_id, creator_id=creator_id)

    async def _invalidate(self, creator_id: str) -> None:
        if self.cache is None:
            return
        removed = await self.cache.invalidate_creator(creator_id)
        logger.debug("answer_cache_invalidated", creator_id=creator_id, entries=removed)
