"""Unit tests for the response cache."""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from src.rag_pipeline.cache_service import (
    InMemoryResponseCache,
    SupabaseResponseCache,
    make_cache_key,
    normalize_query,
)
from src.rag_pipeline.schemas import CachedAnswer, SearchScope


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self) -> None:
        self.now = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.mark.unit
class TestCacheKey:
    """Test cache key derivation."""

    def test_normalization(self) -> None:
        assert normalize_query("  How do I   PRICE\tmy course? ") == "how do i price my course?"

    def test_equivalent_questions_share_key(self) -> None:
        scope = SearchScope(creator_id="creator_a")

        assert make_cache_key("How do I price?", scope) == make_cache_key(
            "  how do i   price? ", scope
        )

    def test_scope_changes_key(self) -> None:
        """Test the same question under another tenant never collides."""
        question = "How do I price?"

        keys = {
            make_cache_key(question, SearchScope(creator_id="creator_a")),
            make_cache_key(question, SearchScope(creator_id="creator_b")),
            make_cache_key(question, SearchScope(creator_id="creator_a", course_id="c1")),
        }

        assert len(keys) == 3


@pytest.mark.unit
class TestInMemoryResponseCache:
    """Test suite for the in-memory cache."""

    @pytest.fixture
    def clock(self) -> FakeClock:
        return FakeClock()

    @pytest.fixture
    def answer(self) -> CachedAnswer:
        return CachedAnswer(content="Price on value.", model="gpt-4o-mini")

    @pytest.mark.asyncio
    async def test_hit_within_ttl(self, clock: FakeClock, answer: CachedAnswer) -> None:
        cache = InMemoryResponseCache(ttl_seconds=3600, clock=clock)
        await cache.set("key", "creator_a", answer)
        clock.advance(3599)

        assert await cache.get("key") == answer
        assert cache.stats()["hits"] == 1

    @pytest.mark.asyncio
    async def test_expired_entry_is_a_miss(self, clock: FakeClock, answer: CachedAnswer) -> None:
        cache = InMemoryResponseCache(ttl_seconds=3600, clock=clock)
        await cache.set("key", "creator_a", answer)
        clock.advance(3600)

        assert await cache.get("key") is None
        assert cache.stats()["entries"] == 0

    @pytest.mark.asyncio
    async def test_zero_ttl_disables_cache(self, answer: CachedAnswer) -> None:
        cache = InMemoryResponseCache(ttl_seconds=0)
        await cache.set("key", "creator_a", answer)

        assert await cache.get("key") is None
        assert not cache.enabled

    @pytest.mark.asyncio
    async def test_invalidate_creator(self, answer: CachedAnswer) -> None:
        """Test invalidation only drops the creator's own entries."""
        cache = InMemoryResponseCache()
        await cache.set("a1", "creator_a", answer)
        await cache.set("a2", "creator_a", answer)
        await cache.set("b1", "creator_b", answer)

        removed = await cache.invalidate_creator("creator_a")

        assert removed == 2
        assert await cache.get("a1") is None
        assert await cache.get("b1") == answer

    @pytest.mark.asyncio
    async def test_stats_hit_rate(self, answer: CachedAnswer) -> None:
        cache = InMemoryResponseCache()
        await cache.set("key", "creator_a", answer)

        await cache.get("key")
        await cache.get("other")

        assert cache.stats()["hit_rate"] == 0.5

    @pytest.mark.asyncio
    async def test_expired_entries_are_evicted_on_write(
        self, clock: FakeClock, answer: CachedAnswer
    ) -> None:
        """Test the cache stays bounded when every entry outlives its TTL."""
        cache = InMemoryResponseCache(ttl_seconds=60, clock=clock)

        for i in range(1000):
            await cache.set(f"key_{i}", "creator_a", answer)
            clock.advance(61)

        assert cache.stats()["entries"] == 0
        await cache.set("fresh", "creator_a", answer)
        assert cache.stats()["entries"] == 1
        assert await cache.invalidate_creator("creator_a") == 1

    @pytest.mark.asyncio
    async def test_maxsize_evicts_oldest(self, answer: CachedAnswer) -> None:
        cache = InMemoryResponseCache(maxsize=2)
        await cache.set("a1", "creator_a", answer)
        await cache.set("a2", "creator_a", answer)
        await cache.set("b1", "creator_b", answer)

        assert cache.stats()["entries"] == 2
        assert await cache.get("a1") is None
        assert await cache.invalidate_creator("creator_a") == 1


@pytest.mark.unit
class TestSupabaseResponseCache:
    """Test suite for the Supabase cache."""

    @pytest.mark.asyncio
    async def test_read_failure_is_a_miss(self) -> None:
        """Test a cache outage never fails the request."""
        mock_client = MagicMock()
        mock_client.table.side_effect = ConnectionError("down")
        cache = SupabaseResponseCache(mock_client)

        assert await cache.get("key") is None

    @pytest.mark.asyncio
    async def test_set_writes_expiry(self) -> None:
        mock_client = MagicMock()
        clock = FakeClock()
        cache = SupabaseResponseCache(mock_client, ttl_seconds=60, clock=clock)

        await cache.set("key", "creator_a", CachedAnswer(content="hi"))

        row = mock_client.table.return_value.upsert.call_args.args[0]
        assert row["cache_key"] == "key"
        assert row["creator_id"] == "creator_a"
        assert row["expires_at"] == (clock.now + timedelta(seconds=60)).isoformat()

    @pytest.mark.asyncio
    async def test_get_returns_cached_answer(self) -> None:
        mock_client = MagicMock()
        query = (
            mock_client.table.return_value.select.return_value.eq.return_value.gt.return_value
        )
        query.execute.return_value = MagicMock(
            data=[
                {
                    "content": "hi",
                    "citations": [],
                    "model": "gpt-4o-mini",
                    "created_at": "2026-10-19T12:00:00+00:00",
                }
            ]
        )
        cache = SupabaseResponseCache(mock_client)

        answer = await cache.get("key")

        assert answer is not None
        assert answer.content == "hi"
