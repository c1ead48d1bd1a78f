"""Response cache keyed by normalized question and search scope."""

import asyncio
import hashlib
import json
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

from cachetools import TTLCache
from supabase import Client

from src.utils.logging import get_logger

from .schemas import CachedAnswer, SearchScope

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def normalize_query(query: str) -> str:
    """Lowercase and collapse whitespace."""
    return " ".join(query.lower().split())


def make_cache_key(query: str, scope: SearchScope) -> str:
    """Hash the normalized question together with the tenant scope."""
    payload = json.dumps(
        {
            "query": normalize_query(query),
            "creator_id": scope.creator_id,
            "course_id": scope.course_id,
            "video_id": scope.video_id,
        },
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ResponseCache(Protocol):
    """Answer cache with a fixed TTL."""

    async def get(self, key: str) -> CachedAnswer | None: ...

    async def set(self, key: str, creator_id: str, answer: CachedAnswer) -> None: ...

    async def invalidate_creator(self, creator_id: str) -> int: ...


@dataclass
class _Entry:
    creator_id: str
    answer: CachedAnswer


class InMemoryResponseCache:
    """Process-local cache backed by ``cachetools.TTLCache``.

    A TTL of zero disables caching. Entries past their TTL are evicted on the
    next write, and the oldest entries go once ``maxsize`` is reached.
    """

    def __init__(
        self,
        ttl_seconds: int = 3600,
        clock: Callable[[], datetime] = _utcnow,
        maxsize: int = 10_000,
    ):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: TTLCache = TTLCache(
            maxsize=maxsize,
            ttl=max(ttl_seconds, 1),
            timer=lambda: self.clock().timestamp(),
        )
        self._by_creator: dict[str, set[str]] = defaultdict(set)
        self.hits = 0
        self.misses = 0

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds > 0

    async def get(self, key: str) -> CachedAnswer | None:
        if not self.enabled:
            return None
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            logger.debug("cache_miss", key=key[:12])
            return None
        self.hits += 1
        logger.info("cache_hit", key=key[:12], creator_id=entry.creator_id)
        return entry.answer

    async def set(self, key: str, creator_id: str, answer: CachedAnswer) -> None:
        if not self.enabled:
            return
        self._expire()
        previous = self._entries.pop(key, None)
        if previous is not None:
            self._unindex(key, previous.creator_id)
        if len(self._entries) >= self._entries.maxsize:
            evicted_key, evicted = self._entries.popitem()
            self._unindex(evicted_key, evicted.creator_id)
        self._entries[key] = _Entry(creator_id=creator_id, answer=answer)
        self._by_creator[creator_id].add(key)

    async def invalidate_creator(self, creator_id: str) -> int:
        removed = 0
        for key in self._by_creator.pop(creator_id, set()):
            if self._entries.pop(key, None) is not None:
                removed += 1
        logger.info("cache_invalidated", creator_id=creator_id, entries=removed)
        return removed

    def stats(self) -> dict[str, float]:
        self._expire()
        total = self.hits + self.misses
        return {
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else 0.0,
        }

    def _expire(self) -> None:
        for key, entry in self._entries.expire():
            self._unindex(key, entry.creator_id)

    def _unindex(self, key: str, creator_id: str) -> None:
        keys = self._by_creator.get(creator_id)
        if keys is None:
            return
        keys.discard(key)
        if not keys:
            del self._by_creator[creator_id]


class SupabaseResponseCache:
    """Cache stored in the ``chat_response_cache`` table.

    Expired rows are ignored on read; they are overwritten by the next set
    for the same key.
    """

    def __init__(
        self,
        client: Client,
        ttl_seconds: int = 3600,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.client = client
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock

    async def get(self, key: str) -> CachedAnswer | None:
        if self.ttl.total_seconds() <= 0:
            return None
        try:
            query = (
                self.client.table("chat_response_cache")
                .select("content, citations, model, created_at")
                .eq("cache_key", key)
                .gt("expires_at", self.clock().isoformat())
            )
            response = await asyncio.to_thread(query.execute)
        except Exception as e:
            # A cache outage degrades to a miss
            logger.warning("cache_read_failed", error_type=type(e).__name__)
            return None

        if not response.data:
            logger.debug("cache_miss", key=key[:12])
            return None
        logger.info("cache_hit", key=key[:12])
        return CachedAnswer(**response.data[0])

    async def set(self, key: str, creator_id: str, answer: CachedAnswer) -> None:
        if self.ttl.total_seconds() <= 0:
            return
        now = self.clock()
        try:
            query = self.client.table("chat_response_cache").upsert(
                {
                    "cache_key": key,
                    "creator_id": creator_id,
                    "content": answer.content,
                    "citations": [c.model_dump() for c in answer.citations],
                    "model": answer.model,
                    "created_at": now.isoformat(),
                    "expires_at": (now + self.ttl).isoformat(),
                }
            )
            await asyncio.to_thread(query.execute)
        except Exception as e:
            logger.warning("cache_write_failed", error_type=type(e).__name__)

    async def invalidate_creator(self, creator_id: str) -> int:
        query = self.client.table("chat_response_cache").delete().eq("creator_id", creator_id)
        response = await asyncio.to_thread(query.execute)
        removed = len(response.data or [])
        logger.info("cache_invalidated", creator_id=creator_id, entries=removed)
        return removed
