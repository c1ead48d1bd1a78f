"""Ranking service: re-scores vector search candidates."""

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime

from src.utils.logging import get_logger

from .config import RAGConfig
from .schemas import RankingWeights, SearchCandidate, VideoRecord

logger = get_logger(__name__)


@dataclass
class RankingContext:
    """Signals the ranker needs beyond the candidates themselves.

    Attributes:
        now: Reference time for recency.
        videos: Owning video of each candidate, keyed by video id. Missing
            videos contribute no recency, engagement or position signal.
    """

    now: datetime = field(default_factory=lambda: datetime.now(UTC))
    videos: dict[str, VideoRecord] = field(default_factory=dict)


class RankingService:
    """Composite re-ranking of search candidates.

    score = w_sim * similarity
          + w_recency * exp(-age_days / decay_days)
          + w_engagement * min(references / saturation, 1)
          - w_position * depth * rarity

    ``depth`` is the chunk's relative position inside a long video and
    ``rarity`` is ``1 / (1 + references)``, so only deep chunks of rarely
    referenced long videos are discounted. The output has the same members
    as the input; equal scores keep their input order.
    """

    def __init__(
        self,
        weights: RankingWeights | None = None,
        recency_decay_days: float = 90.0,
        long_video_chunk_threshold: int = 20,
        engagement_saturation: int = 10,
    ):
        self.weights = weights or RankingWeights()
        self.recency_decay_days = recency_decay_days
        self.long_video_chunk_threshold = long_video_chunk_threshold
        self.engagement_saturation = engagement_saturation

    @classmethod
    def from_config(cls, config: RAGConfig) -> "RankingService":
        return cls(
            weights=config.ranking_weights,
            recency_decay_days=config.recency_decay_days,
            long_video_chunk_threshold=config.long_video_chunk_threshold,
            engagement_saturation=config.engagement_saturation,
        )

    def rank(
        self, candidates: list[SearchCandidate], context: RankingContext | None = None
    ) -> list[SearchCandidate]:
        """Reorder candidates by composite score.

        Args:
            candidates: Search results, in similarity order.
            context: Reference time and video records.

        Returns:
            New candidate objects with ``rank_score`` set, best first.
        """
        context = context or RankingContext()
        scored = [
            candidate.model_copy(update={"rank_score": self.score(candidate, context)})
            for candidate in candidates
        ]
        # Python's sort is stable, ties keep similarity order
        ranked = sorted(scored, key=lambda c: -c.rank_score)

        logger.debug(
            "candidates_ranked",
            count=len(ranked),
            top_score=ranked[0].rank_score if ranked else None,
        )
        return ranked

    def score(self, candidate: SearchCandidate, context: RankingContext) -> float:
        similarity = min(max(candidate.similarity_score, 0.0), 1.0)
        total = self.weights.similarity * similarity

        video = context.videos.get(candidate.chunk.video_id)
        if video is None:
            return total

        total += self.weights.recency * self._recency(video, context.now)
        total += self.weights.engagement * min(
            video.reference_count / self.engagement_saturation, 1.0
        )
        total -= self.weights.position * self._position_penalty(candidate, video)
        return total

    def _recency(self, video: VideoRecord, now: datetime) -> float:
        if video.published_at is None:
            return 0.0
        published = video.published_at
        if published.tzinfo is None:
            published = published.replace(tzinfo=UTC)
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)
        age_days = max((now - published).total_seconds() / 86400, 0.0)
        return math.exp(-age_days / self.recency_decay_days)

    def _position_penalty(self, candidate: SearchCandidate, video: VideoRecord) -> float:
        if video.chunk_count < max(self.long_video_chunk_threshold, 2):
            return 0.0
        depth = min(candidate.chunk.chunk_index / (video.chunk_count - 1), 1.0)
        rarity = 1.0 / (1 + video.reference_count)
        return depth * rarity
