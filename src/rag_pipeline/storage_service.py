"""Chunk store: persistence and tenant-scoped vector search over chunks.

Two implementations share one protocol. ``SupabaseChunkStore`` keeps chunks
in Postgres with pgvector and an HNSW index. ``InMemoryChunkStore`` does an
exact numpy scan and is meant for development and tests.
"""

import asyncio
from datetime import UTC, datetime
from typing import Any, Protocol

import numpy as np
from supabase import Client

from src.utils.logging import get_logger

from .providers import classify_exception, failure_to_error
from .schemas import Chunk, SearchCandidate, SearchScope, VideoRecord

logger = get_logger(__name__)


class ChunkStore(Protocol):
    """Storage contract used by ingestion and retrieval."""

    async def upsert_video(self, video: VideoRecord) -> None: ...

    async def upsert_chunks(self, video_id: str, chunks: list[Chunk]) -> None: ...

    async def search(
        self,
        query_embedding: list[float],
        scope: SearchScope,
        k: int,
        threshold: float,
    ) -> list[SearchCandidate]: ...

    async def get_videos(self, video_ids: list[str]) -> dict[str, VideoRecord]: ...

    async def record_references(self, video_ids: list[str]) -> None: ...

    async def delete_video(self, video_id: str) -> None: ...


def enforce_scope(
    candidates: list[SearchCandidate], scope: SearchScope, threshold: float, k: int
) -> list[SearchCandidate]:
    """Drop rows outside the tenant scope or below threshold, keep top k.

    Runs on every store's output regardless of how the store filtered.
    """
    kept: list[SearchCandidate] = []
    for candidate in candidates:
        if not scope.allows(candidate.creator_id, candidate.course_id, candidate.chunk.video_id):
            logger.error(
                "out_of_scope_row_discarded",
                scope_creator_id=scope.creator_id,
                row_creator_id=candidate.creator_id,
                video_id=candidate.chunk.video_id,
            )
            continue
        if candidate.similarity_score < threshold:
            continue
        kept.append(candidate)

    # Stable sort keeps store order for equal similarity
    kept.sort(key=lambda c: -c.similarity_score)
    return kept[:k]


def _require_embeddings(chunks: list[Chunk]) -> None:
    missing = [c.chunk_index for c in chunks if c.embedding is None]
    if missing:
        raise ValueError(f"chunks without embeddings: {missing}")


class SupabaseChunkStore:
    """Chunk store backed by Supabase Postgres and pgvector.

    Similarity search runs in the ``match_video_chunks`` RPC, which filters
    by creator, course and video inside the query and orders by cosine
    distance over the HNSW index.
    """

    def __init__(self, client: Client):
        """Initialize the store.

        Args:
            client: Supabase client with service role credentials.
        """
        self.client = client
        logger.info("chunk_store_initialized", backend="supabase")

    async def upsert_video(self, video: VideoRecord) -> None:
        try:
            data = {
                "id": video.id,
                "creator_id": video.creator_id,
                "course_id": video.course_id,
                "title": video.title,
                "url": video.url,
                "published_at": (
                    video.published_at.isoformat() if video.published_at else None
                ),
                "duration_seconds": video.duration_seconds,
                "updated_at": datetime.now(UTC).isoformat(),
            }
            await asyncio.to_thread(self.client.table("videos").upsert(data).execute)
            logger.info("video_saved", video_id=video.id, creator_id=video.creator_id)

        except Exception as e:
            logger.exception(
                "video_save_failed",
                video_id=video.id,
                error_type=type(e).__name__,
            )
            raise

    async def upsert_chunks(self, video_id: str, chunks: list[Chunk]) -> None:
        """Replace all chunks of a video in one transaction.

        The ``replace_video_chunks`` RPC deletes the old rows, inserts the new
        ones and updates ``videos.chunk_count`` together, so a failed call
        leaves the previous chunks in place.

        Raises:
            ValueError: If any chunk has no embedding yet.
        """
        _require_embeddings(chunks)
        rows = [
            {
                "chunk_index": chunk.chunk_index,
                "chunk_text": chunk.text,
                "start_time": chunk.start_time,
                "end_time": chunk.end_time,
                "word_count": chunk.word_count,
                "embedding": chunk.embedding,
            }
            for chunk in chunks
        ]
        try:
            await asyncio.to_thread(
                self.client.rpc(
                    "replace_video_chunks", {"p_video_id": video_id, "p_chunks": rows}
                ).execute
            )
            logger.info("chunks_saved", video_id=video_id, count=len(chunks))

        except Exception as e:
            logger.exception(
                "chunks_save_failed",
                video_id=video_id,
                count=len(chunks),
                error_type=type(e).__name__,
            )
            raise

    async def search(
        self,
        query_embedding: list[float],
        scope: SearchScope,
        k: int,
        threshold: float,
    ) -> list[SearchCandidate]:
        """Search for similar chunks inside the caller's scope.

        Raises:
            TransientProviderError: If the database is unreachable.
            PermanentProviderError: If the RPC call is rejected.
        """
        params = {
            "query_embedding": query_embedding,
            "match_count": k,
            "match_threshold": threshold,
            "filter_creator_id": scope.creator_id,
            "filter_course_id": scope.course_id,
            "filter_video_id": scope.video_id,
        }
        try:
            response = await asyncio.to_thread(
                self.client.rpc("match_video_chunks", params).execute
            )
        except Exception as e:
            logger.exception(
                "vector_search_failed",
                creator_id=scope.creator_id,
                error_type=type(e).__name__,
            )
            raise failure_to_error(
                classify_exception(e), provider="supabase", operation="vector search"
            ) from e

        rows: list[dict[str, Any]] = response.data or []
        candidates = enforce_scope([self._to_candidate(row) for row in rows], scope, threshold, k)
        logger.info(
            "vector_search_completed",
            creator_id=scope.creator_id,
            rows=len(rows),
            results=len(candidates),
            match_count=k,
        )
        return candidates

    @staticmethod
    def _to_candidate(row: dict[str, Any]) -> SearchCandidate:
        chunk = Chunk(
            video_id=row["video_id"],
            chunk_index=row["chunk_index"],
            text=row["chunk_text"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            word_count=row.get("word_count") or len(row["chunk_text"].split()),
        )
        return SearchCandidate(
            chunk=chunk,
            similarity_score=float(row["similarity"]),
            video_title=row.get("video_title") or "Untitled video",
            creator_id=row["creator_id"],
            course_id=row.get("course_id"),
        )

    async def get_videos(self, video_ids: list[str]) -> dict[str, VideoRecord]:
        if not video_ids:
            return {}
        query = (
            self.client.table("videos")
            .select(
                "id, creator_id, course_id, title, url, published_at, "
                "duration_seconds, chunk_count, reference_count"
            )
            .in_("id", video_ids)
        )
        response = await asyncio.to_thread(query.execute)
        return {row["id"]: VideoRecord(**row) for row in response.data or []}

    async def record_references(self, video_ids: list[str]) -> None:
        if not video_ids:
            return
        await asyncio.to_thread(
            self.client.rpc(
                "increment_video_references", {"p_video_ids": sorted(set(video_ids))}
            ).execute
        )
        logger.debug("video_references_recorded", videos=len(set(video_ids)))

    async def delete_video(self, video_id: str) -> None:
        # video_chunks rows go with it through ON DELETE CASCADE
        query = self.client.table("videos").delete().eq("id", video_id)
        await asyncio.to_thread(query.execute)
        logger.info("video_deleted", video_id=video_id)


class InMemoryChunkStore:
    """Chunk store held in memory with an exact cosine scan.

    There is no ANN index here; every search scans the creator's chunks and
    emits a ``linear_scan_fallback`` warning so the path shows up in logs.
    """

    def __init__(self) -> None:
        self._videos: dict[str, VideoRecord] = {}
        self._chunks: dict[str, list[Chunk]] = {}
        logger.info("chunk_store_initialized", backend="memory")

    async def upsert_video(self, video: VideoRecord) -> None:
        existing = self._videos.get(video.id)
        if existing is not None:
            video = video.model_copy(
                update={
                    "chunk_count": existing.chunk_count,
                    "reference_count": existing.reference_count,
                }
            )
        self._videos[video.id] = video

    async def upsert_chunks(self, video_id: str, chunks: list[Chunk]) -> None:
        _require_embeddings(chunks)
        if video_id not in self._videos:
            raise KeyError(f"unknown video {video_id}")
        self._chunks[video_id] = sorted(chunks, key=lambda c: c.chunk_index)
        self._videos[video_id] = self._videos[video_id].model_copy(
            update={"chunk_count": len(chunks)}
        )
        logger.info("chunks_saved", video_id=video_id, count=len(chunks))

    async def search(
        self,
        query_embedding: list[float],
        scope: SearchScope,
        k: int,
        threshold: float,
    ) -> list[SearchCandidate]:
        pool: list[tuple[VideoRecord, Chunk]] = [
            (video, chunk)
            for video in self._videos.values()
            if scope.allows(video.creator_id, video.course_id, video.id)
            for chunk in self._chunks.get(video.id, [])
        ]
        logger.warning("linear_scan_fallback", corpus_size=len(pool), creator_id=scope.creator_id)
        if not pool:
            return []

        matrix = np.asarray([chunk.embedding for _, chunk in pool], dtype=np.float64)
        query = np.asarray(query_embedding, dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        similarities = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

        candidates = [
            SearchCandidate(
                chunk=chunk.model_copy(update={"embedding": None}),
                similarity_score=float(similarity),
                video_title=video.title,
                creator_id=video.creator_id,
                course_id=video.course_id,
            )
            for (video, chunk), similarity in zip(pool, similarities, strict=True)
        ]
        results = enforce_scope(candidates, scope, threshold, k)
        logger.info(
            "vector_search_completed",
            creator_id=scope.creator_id,
            rows=len(pool),
            results=len(results),
            match_count=k,
        )
        return results

    async def get_videos(self, video_ids: list[str]) -> dict[str, VideoRecord]:
        return {vid: self._videos[vid] for vid in video_ids if vid in self._videos}

    async def record_references(self, video_ids: list[str]) -> None:
        for video_id in set(video_ids):
            video = self._videos.get(video_id)
            if video is not None:
                self._videos[video_id] = video.model_copy(
                    update={"reference_count": video.reference_count + 1}
                )

    async def delete_video(self, video_id: str) -> None:
        self._videos.pop(video_id, None)
        self._chunks.pop(video_id, None)
        logger.info("video_deleted", video_id=video_id)
