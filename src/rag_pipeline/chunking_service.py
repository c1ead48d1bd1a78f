"""Chunking service for word-bounded, overlapping transcript segmentation."""

import re
from dataclasses import dataclass

from src.utils.logging import get_logger

from .errors import ChunkValidationError
from .schemas import Chunk, ChunkingOptions, ChunkingStats, TranscriptSegment

logger = get_logger(__name__)

SENTENCE_END = re.compile(r"[.!?]+[\"'\)\]]*$")

# Words ending in a period that do not close a sentence
ABBREVIATIONS = frozenset(
    {"dr.", "mr.", "mrs.", "ms.", "prof.", "sr.", "jr.", "vs.", "etc.", "e.g.", "i.e."}
)


@dataclass(frozen=True)
class _Word:
    text: str
    segment: int


class ChunkingService:
    """Service for splitting transcripts into retrievable chunks.

    Words are accumulated segment by segment until ``max_words`` new words
    are pending, then a chunk is closed, pulled back to a sentence end when
    sentence preservation is enabled. Each chunk after the first starts with
    the last ``overlap_words`` words of its predecessor so that context at the
    boundary is not lost. Chunking is pure and deterministic.
    """

    def __init__(self, options: ChunkingOptions | None = None):
        """Initialize chunking service.

        Args:
            options: Word bounds and overlap. Defaults to 500-1000 words with
                a 100 word overlap.
        """
        self.options = options or ChunkingOptions()
        logger.info(
            "chunking_service_initialized",
            min_words=self.options.min_words,
            max_words=self.options.max_words,
            overlap_words=self.options.overlap_words,
            preserve_sentences=self.options.preserve_sentence_boundaries,
        )

    def chunk_transcript(
        self, video_id: str, segments: list[TranscriptSegment]
    ) -> list[Chunk]:
        """Chunk a transcript while preserving time ranges.

        Args:
            video_id: Owning video.
            segments: Timestamped transcript segments.

        Returns:
            Ordered chunks. Empty when the transcript has no words.

        Raises:
            ChunkValidationError: If the produced chunks break coverage or
                size guarantees (a bug, never expected on valid input).
        """
        logger.info("chunking_started", video_id=video_id, segments=len(segments))

        ordered = sorted(segments, key=lambda s: s.start_time)
        builder = _ChunkBuilder(video_id, ordered, self.options.overlap_words)
        max_words = self.options.max_words
        pending: list[_Word] = []

        for index, segment in enumerate(ordered):
            words = [_Word(text, index) for text in segment.text.split()]
            if not words:
                continue

            # A segment that alone exceeds the bound becomes its own chunk
            if len(words) > max_words:
                if pending:
                    builder.emit(pending)
                    pending = []
                builder.emit(words, oversized=True)
                continue

            pending.extend(words)
            while len(pending) >= max_words:
                cut = self._find_cut(pending)
                builder.emit(pending[:cut])
                pending = pending[cut:]

        if pending:
            builder.emit(pending)

        chunks = builder.chunks
        self.validate_chunks(chunks, ordered)

        logger.info(
            "chunking_completed",
            video_id=video_id,
            chunks_created=len(chunks),
            oversized=sum(1 for c in chunks if c.oversized),
        )
        return chunks

    def _find_cut(self, pending: list[_Word]) -> int:
        """Return how many pending words go into the next chunk."""
        max_words = self.options.max_words
        if not self.options.preserve_sentence_boundaries:
            return max_words

        min_words = self.options.min_words
        for cut in range(max_words, min_words - 1, -1):
            if _ends_sentence(pending[cut - 1].text):
                return cut
        return max_words

    def validate_chunks(
        self, chunks: list[Chunk], segments: list[TranscriptSegment]
    ) -> None:
        """Check ordering, size and coverage of chunker output.

        Args:
            chunks: Chunks produced from ``segments``.
            segments: The time-ordered segments the chunks came from.

        Raises:
            ChunkValidationError: On the first violated guarantee.
        """
        word_counts = [len(s.text.split()) for s in segments]
        non_empty = [i for i, count in enumerate(word_counts) if count]
        # Blank segments carry no words, so adjacency is measured over the rest
        rank = {index: position for position, index in enumerate(non_empty)}

        if not non_empty:
            if chunks:
                raise ChunkValidationError("chunks produced from an empty transcript")
            return
        if not chunks:
            raise ChunkValidationError("non-empty transcript produced no chunks")

        upper = self.options.max_words + self.options.overlap_words
        previous: Chunk | None = None

        for position, chunk in enumerate(chunks):
            if chunk.chunk_index != position:
                raise ChunkValidationError(
                    f"chunk_index {chunk.chunk_index} at position {position}"
                )
            if chunk.word_count < 1:
                raise ChunkValidationError(f"chunk {position} is empty")
            if not chunk.oversized and chunk.word_count > upper:
                raise ChunkValidationError(
                    f"chunk {position} has {chunk.word_count} words, bound is {upper}"
                )
            if previous is not None:
                if chunk.start_time < previous.start_time:
                    raise ChunkValidationError(f"chunk {position} starts before its predecessor")
                if rank[chunk.first_segment] > rank[previous.last_segment] + 1:
                    raise ChunkValidationError(f"gap before chunk {position}")
            previous = chunk

        if chunks[0].first_segment != non_empty[0] or chunks[-1].last_segment != non_empty[-1]:
            raise ChunkValidationError("chunks do not span the whole transcript")

        new_words = sum(c.word_count - c.overlap_word_count for c in chunks)
        if new_words != sum(word_counts):
            raise ChunkValidationError(
                f"chunks cover {new_words} words, transcript has {sum(word_counts)}"
            )


class _ChunkBuilder:
    """Turns word runs into Chunk objects, prefixing the overlap tail."""

    def __init__(self, video_id: str, segments: list[TranscriptSegment], overlap_words: int):
        self.video_id = video_id
        self.segments = segments
        self.overlap_words = overlap_words
        self.chunks: list[Chunk] = []
        self._tail: list[_Word] = []

    def emit(self, new_words: list[_Word], oversized: bool = False) -> None:
        words = self._tail + new_words
        segment_ids = {w.segment for w in words}
        contributing = [self.segments[i] for i in segment_ids]

        self.chunks.append(
            Chunk(
                video_id=self.video_id,
                chunk_index=len(self.chunks),
                text=" ".join(w.text for w in words),
                start_time=min(s.start_time for s in contributing),
                end_time=max(s.end_time for s in contributing),
                word_count=len(words),
                overlap_word_count=len(self._tail),
                first_segment=min(segment_ids),
                last_segment=max(segment_ids),
                oversized=oversized,
            )
        )
        self._tail = words[-self.overlap_words :] if self.overlap_words else []


def _ends_sentence(word: str) -> bool:
    if word.lower() in ABBREVIATIONS:
        return False
    return bool(SENTENCE_END.search(word))


def get_chunking_stats(chunks: list[Chunk]) -> ChunkingStats:
    """Summarize a chunking run for logs and the ingestion CLI."""
    if not chunks:
        return ChunkingStats(
            total_chunks=0,
            total_words=0,
            avg_words_per_chunk=0.0,
            min_words=0,
            max_words=0,
            chunks_with_overlap=0,
            oversized_chunks=0,
        )

    counts = [c.word_count for c in chunks]
    return ChunkingStats(
        total_chunks=len(chunks),
        total_words=sum(counts),
        avg_words_per_chunk=round(sum(counts) / len(counts), 1),
        min_words=min(counts),
        max_words=max(counts),
        chunks_with_overlap=sum(1 for c in chunks if c.overlap_word_count > 0),
        oversized_chunks=sum(1 for c in chunks if c.oversized),
    )
