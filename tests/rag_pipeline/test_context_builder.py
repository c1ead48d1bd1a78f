"""Unit tests for context builder."""

from datetime import UTC, datetime, timedelta

import pytest

from src.rag_pipeline.context_builder import NO_SOURCES_NOTICE, SOURCES_HEADER, ContextBuilder
from src.rag_pipeline.schemas import Chunk, Message, SearchCandidate, VideoRecord
from src.rag_pipeline.tokens import estimate_tokens


def make_candidate(
    video_id: str, index: int, text: str | None = None, start: float = 125.0
) -> SearchCandidate:
    return SearchCandidate(
        chunk=Chunk(
            video_id=video_id,
            chunk_index=index,
            text=text or f"Content of {video_id} part {index}. " * 10,
            start_time=start,
            end_time=start + 60,
            word_count=50,
        ),
        similarity_score=0.9 - index * 0.01,
        video_title=f"Video {video_id}",
        creator_id="creator_a",
    )


def make_history(count: int, chars: int = 400) -> list[Message]:
    base = datetime(2026, 10, 19, tzinfo=UTC)
    return [
        Message(
            id=f"m{i}",
            session_id="s1",
            role="user" if i % 2 == 0 else "assistant",
            content=f"{i}" + "x" * (chars - 1),
            created_at=base + timedelta(seconds=i),
        )
        for i in range(count)
    ]


@pytest.mark.unit
class TestContextBuilder:
    """Test suite for ContextBuilder class."""

    @pytest.fixture
    def builder(self) -> ContextBuilder:
        """Create builder using the chars/4 token heuristic."""
        return ContextBuilder()

    def test_citations_align_with_source_labels(self, builder: ContextBuilder) -> None:
        """Test citation i describes [Source i+1]."""
        ranked = [make_candidate("v1", 0), make_candidate("v2", 3, start=3725.0)]

        context = builder.build("question", ranked, max_tokens=4000)

        assert context.source_count == 2
        assert context.prompt_context.startswith(SOURCES_HEADER)
        for position, citation in enumerate(context.citations, start=1):
            header = (
                f"[Source {position}] {citation.video_title} @ {citation.timestamp_display}"
            )
            assert header in context.prompt_context
        assert context.citations[0].timestamp_display == "02:05"
        assert context.citations[1].timestamp_display == "1:02:05"
        assert context.citations[1].chunk_index == 3

    def test_total_tokens_never_exceed_budget(self, builder: ContextBuilder) -> None:
        """Test the bound holds for a range of budgets."""
        ranked = [make_candidate(f"v{i}", i) for i in range(8)]
        history = make_history(6)

        for max_tokens in (0, 10, 50, 120, 300, 700, 2000):
            context = builder.build("question", ranked, max_tokens, history=history)

            assert context.total_tokens <= max_tokens
            assert estimate_tokens(context.prompt_context) <= context.source_tokens
            assert len(context.citations) == context.prompt_context.count("[Source ")

    def test_greedy_fill_stops_at_first_overflow(self, builder: ContextBuilder) -> None:
        """Test sources are added in rank order until one does not fit."""
        ranked = [make_candidate(f"v{i}", i) for i in range(6)]

        context = builder.build("question", ranked, max_tokens=300)

        assert context.truncated
        assert 0 < context.source_count < 6
        assert [c.video_id for c in context.citations] == [
            f"v{i}" for i in range(context.source_count)
        ]

    def test_zero_candidates_uses_notice(self, builder: ContextBuilder) -> None:
        """Test an empty search tells the model there are no sources."""
        context = builder.build("question", [], max_tokens=4000)

        assert context.prompt_context == NO_SOURCES_NOTICE
        assert context.citations == []
        assert not context.truncated

    def test_tiny_budget_gives_empty_context(self, builder: ContextBuilder) -> None:
        """Test nothing is emitted when even the notice does not fit."""
        context = builder.build("question", [make_candidate("v1", 0)], max_tokens=5)

        assert context.prompt_context == ""
        assert context.citations == []
        assert context.total_tokens == 0

    def test_history_reserve_keeps_newest_messages(self, builder: ContextBuilder) -> None:
        """Test history gets its share of the budget, newest first."""
        history = make_history(5)  # 100 tokens each

        context = builder.build("question", [], max_tokens=1000, history=history)

        # 25% of 1000 fits two messages
        assert [m.id for m in context.history] == ["m3", "m4"]
        assert context.history_tokens == 200

    def test_sources_use_what_history_leaves(self, builder: ContextBuilder) -> None:
        """Test the source budget shrinks by the history actually kept."""
        ranked = [make_candidate(f"v{i}", i) for i in range(20)]
        without = builder.build("question", ranked, max_tokens=1000)
        with_history = builder.build(
            "question", ranked, max_tokens=1000, history=make_history(5)
        )

        assert with_history.source_count < without.source_count
        assert with_history.total_tokens <= 1000

    def test_no_history_fraction_drops_history(self) -> None:
        builder = ContextBuilder(history_token_fraction=0.0)

        context = builder.build("question", [], max_tokens=1000, history=make_history(3))

        assert context.history == []

    def test_duplicates_are_removed(self, builder: ContextBuilder) -> None:
        """Test repeated chunks and identical text appear once."""
        ranked = [
            make_candidate("v1", 0),
            make_candidate("v1", 0),
            make_candidate("v2", 1, text="Same words here."),
            make_candidate("v3", 2, text="same   WORDS here."),
        ]

        context = builder.build("question", ranked, max_tokens=4000)

        assert [(c.video_id, c.chunk_index) for c in context.citations] == [
            ("v1", 0),
            ("v2", 1),
        ]

    def test_dedupe_can_be_disabled(self) -> None:
        builder = ContextBuilder(dedupe=False)
        ranked = [make_candidate("v1", 0), make_candidate("v1", 0)]

        context = builder.build("question", ranked, max_tokens=4000)

        assert context.source_count == 2

    def test_citation_excerpt_and_url(self, builder: ContextBuilder) -> None:
        """Test excerpts are shortened and links jump to the timestamp."""
        videos = {
            "v1": VideoRecord(
                id="v1",
                creator_id="creator_a",
                title="Video v1",
                url="https://youtube.com/watch?v=abc",
            )
        }

        context = builder.build(
            "question", [make_candidate("v1", 0)], max_tokens=4000, videos=videos
        )

        citation = context.citations[0]
        assert citation.excerpt.endswith("...")
        assert len(citation.excerpt) <= 203
        assert citation.url == "https://youtube.com/watch?v=abc&t=125s"
        assert citation.similarity == pytest.approx(0.9)
