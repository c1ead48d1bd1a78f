"""Context builder: token-bounded prompt context with aligned citations."""

from src.utils.formatting import format_timestamp, format_video_url
from src.utils.logging import get_logger

from .schemas import BuiltContext, Citation, Message, SearchCandidate, VideoRecord
from .tokens import TokenCounter

logger = get_logger(__name__)

SOURCES_HEADER = "Relevant excerpts from the creator's videos:\n\n"
NO_SOURCES_NOTICE = (
    "No relevant content was found in the creator's videos for this question. "
    "Say so plainly and do not invent video references."
)
EXCERPT_CHARS = 200


class ContextBuilder:
    """Assembles the retrieval context handed to the generation model.

    When there is conversation history, ``history_token_fraction`` of the
    budget is reserved for the most recent turns first. Sources then fill the
    rest greedily in rank order, stopping at the first one that would not
    fit. A source block and its citation are produced together, so
    ``citations[i]`` always matches ``[Source i+1]``.
    """

    def __init__(
        self,
        token_counter: TokenCounter | None = None,
        history_token_fraction: float = 0.25,
        dedupe: bool = True,
    ):
        self.token_counter = token_counter or TokenCounter()
        self.history_token_fraction = history_token_fraction
        self.dedupe = dedupe

    def build(
        self,
        query: str,
        ranked: list[SearchCandidate],
        max_tokens: int,
        history: list[Message] | None = None,
        videos: dict[str, VideoRecord] | None = None,
    ) -> BuiltContext:
        """Build the prompt context.

        Args:
            query: The learner's question, used only for logging.
            ranked: Candidates, best first.
            max_tokens: Upper bound for history plus sources.
            history: Earlier messages of the session, oldest first.
            videos: Video records used to build citation links.

        Returns:
            BuiltContext whose ``total_tokens`` never exceeds ``max_tokens``.
        """
        count = self.token_counter.count
        videos = videos or {}

        kept_history: list[Message] = []
        history_tokens = 0
        if history:
            history_budget = int(max_tokens * self.history_token_fraction)
            for message in reversed(history):
                tokens = count(message.content)
                if history_tokens + tokens > history_budget:
                    break
                kept_history.insert(0, message)
                history_tokens += tokens

        source_budget = max_tokens - history_tokens
        candidates = self._dedupe(ranked) if self.dedupe else list(ranked)

        blocks: list[str] = []
        citations: list[Citation] = []
        source_tokens = 0
        truncated = False

        header_tokens = count(SOURCES_HEADER)
        if candidates and header_tokens <= source_budget:
            source_tokens = header_tokens
            for candidate in candidates:
                label = len(blocks) + 1
                chunk = candidate.chunk
                block = (
                    f"[Source {label}] {candidate.video_title} @ "
                    f"{format_timestamp(chunk.start_time)}\n{chunk.text}\n\n"
                )
                tokens = count(block)
                if source_tokens + tokens > source_budget:
                    truncated = True
                    break

                blocks.append(block)
                citations.append(self._citation(candidate, videos.get(chunk.video_id)))
                source_tokens += tokens
        elif candidates:
            truncated = True

        if blocks:
            prompt_context = SOURCES_HEADER + "".join(blocks).rstrip("\n")
        else:
            notice_tokens = count(NO_SOURCES_NOTICE)
            prompt_context = NO_SOURCES_NOTICE if notice_tokens <= source_budget else ""
            source_tokens = count(prompt_context)

        logger.info(
            "context_built",
            query_length=len(query),
            candidates=len(ranked),
            sources=len(citations),
            history_messages=len(kept_history),
            history_tokens=history_tokens,
            source_tokens=source_tokens,
            max_tokens=max_tokens,
            truncated=truncated,
        )
        return BuiltContext(
            prompt_context=prompt_context,
            citations=citations,
            history=kept_history,
            total_tokens=history_tokens + source_tokens,
            source_tokens=source_tokens,
            history_tokens=history_tokens,
            truncated=truncated,
        )

    @staticmethod
    def _dedupe(candidates: list[SearchCandidate]) -> list[SearchCandidate]:
        """Drop repeated chunks and identical text, keeping the first."""
        seen_chunks: set[tuple[str, int]] = set()
        seen_text: set[str] = set()
        unique: list[SearchCandidate] = []
        for candidate in candidates:
            key = (candidate.chunk.video_id, candidate.chunk.chunk_index)
            text = " ".join(candidate.chunk.text.lower().split())
            if key in seen_chunks or text in seen_text:
                continue
            seen_chunks.add(key)
            seen_text.add(text)
            unique.append(candidate)
        return unique

    @staticmethod
    def _citation(candidate: SearchCandidate, video: VideoRecord | None) -> Citation:
        chunk = candidate.chunk
        excerpt = chunk.text
        if len(excerpt) > EXCERPT_CHARS:
            excerpt = excerpt[:EXCERPT_CHARS].rstrip() + "..."
        return Citation(
            video_id=chunk.video_id,
            video_title=candidate.video_title,
            timestamp=chunk.start_time,
            timestamp_display=format_timestamp(chunk.start_time),
            excerpt=excerpt,
            chunk_index=chunk.chunk_index,
            similarity=candidate.similarity_score,
            url=format_video_url(video.url if video else None, chunk.start_time),
        )
