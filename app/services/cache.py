# =============================================================================
# Read Cache — Backends and Cache-Aside Policy
# =============================================================================
#
# Architecture:
#
#   CacheBackend (Protocol)
#   ├── RedisCache      — redis.asyncio, JSON values, db 2
#   └── MemoryCache     — in-process TTL dict (cache_backend="memory", tests)
#
#   CachePolicy         — the single place that knows key names, TTLs and
#                         which keys a given write invalidates
#
# DESIGN DECISION: Graceful degradation. Every Redis failure is logged as a
# warning and reported as a miss (reads) or a no-op (writes). PostgreSQL is
# the source of truth; the cache only ever loses latency, never data.
#
# KEYS & TTLS:
#   workflow:{id}                     3600 s
#   workflow:{id}:documents           3600 s
#   workflow:{id}:results             1800 s
#   workflow:{id}:requirements        3600 s
#   workflow:{id}:questions           3600 s
#   workflow:{id}:answers             3600 s
#   workflows:list:{limit}:{offset}    300 s
#   workflow:statistics                300 s
# =============================================================================

from __future__ import annotations

import fnmatch
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class CacheBackend(Protocol):
    """Async key/value cache holding JSON-serialisable values."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl: int) -> None: ...

    async def delete(self, *keys: str) -> None: ...

    async def delete_pattern(self, pattern: str) -> None: ...


# ---------------------------------------------------------------------------
# Implementation 1: Redis
# ---------------------------------------------------------------------------


class RedisCache:
    """
    Redis-backed cache.

    The client is created lazily on first use so constructing the cache
    never opens a connection.
    """

    def __init__(self, url: str, client=None) -> None:
        self._url = url
        self._client = client

    def _get_client(self):
        if self._client is None:
            import redis.asyncio as aioredis

            self._client = aioredis.from_url(self._url, decode_responses=True)
        return self._client

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._get_client().get(key)
        except RedisError as e:
            logger.warning("Cache read failed for %s (Redis error): %s", key, e)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable cache entry %s", key)
            return None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self._get_client().set(key, json.dumps(value, default=str), ex=ttl)
        except RedisError as e:
            logger.warning("Cache write failed for %s (Redis error): %s", key, e)

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self._get_client().delete(*keys)
        except RedisError as e:
            logger.warning("Cache delete failed for %s (Redis error): %s", keys, e)

    async def delete_pattern(self, pattern: str) -> None:
        try:
            client = self._get_client()
            matched = [key async for key in client.scan_iter(match=pattern)]
            if matched:
                await client.delete(*matched)
        except RedisError as e:
            logger.warning(
                "Cache pattern delete failed for %s (Redis error): %s", pattern, e,
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# ---------------------------------------------------------------------------
# Implementation 2: In-Process Memory
# ---------------------------------------------------------------------------


class MemoryCache:
    """
    TTL dict with the same interface as RedisCache.

    Values are round-tripped through JSON on write, so callers get the same
    shapes back that Redis would return.
    """

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, str]] = {}

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, raw = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        self._entries[key] = (self._clock() + ttl, json.dumps(value, default=str))

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._entries.pop(key, None)

    async def delete_pattern(self, pattern: str) -> None:
        for key in [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]:
            del self._entries[key]

    def ttl_of(self, key: str) -> float | None:
        """Remaining lifetime of a key in seconds (None if absent)."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        return entry[0] - self._clock()

    def keys(self) -> list[str]:
        return list(self._entries)


# ---------------------------------------------------------------------------
# Cache-Aside Policy
# ---------------------------------------------------------------------------

WORKFLOW = "workflow"
DOCUMENTS = "documents"
RESULTS = "results"
REQUIREMENTS = "requirements"
QUESTIONS = "questions"
ANSWERS = "answers"
LIST = "list"
STATISTICS = "statistics"

LIST_PATTERN = "workflows:list:*"
STATISTICS_KEY = "workflow:statistics"


@dataclass(frozen=True)
class CachePolicy:
    """
    Key builders, TTL table and write-invalidation map.

    `invalidation` maps the entity that was written to the cache entries
    that become stale: per-workflow key kinds plus the flags "list" and
    "statistics".
    """

    ttl: dict[str, int] = field(default_factory=lambda: {
        WORKFLOW: 3600,
        DOCUMENTS: 3600,
        RESULTS: 1800,
        REQUIREMENTS: 3600,
        QUESTIONS: 3600,
        ANSWERS: 3600,
        LIST: 300,
        STATISTICS: 300,
    })
    invalidation: dict[str, tuple[str, ...]] = field(default_factory=lambda: {
        WORKFLOW: (WORKFLOW, LIST, STATISTICS),
        DOCUMENTS: (DOCUMENTS, STATISTICS),
        REQUIREMENTS: (REQUIREMENTS, STATISTICS),
        QUESTIONS: (QUESTIONS, STATISTICS),
        ANSWERS: (ANSWERS,),
        RESULTS: (RESULTS,),
    })

    @staticmethod
    def key(kind: str, workflow_id: str) -> str:
        if kind == WORKFLOW:
            return f"workflow:{workflow_id}"
        return f"workflow:{workflow_id}:{kind}"

    @staticmethod
    def list_key(limit: int, offset: int) -> str:
        return f"workflows:list:{limit}:{offset}"

    @staticmethod
    def statistics_key() -> str:
        return STATISTICS_KEY

    def stale_keys(self, written: str, workflow_id: str) -> tuple[list[str], list[str]]:
        """
        Resolve a write into (exact keys, glob patterns) to invalidate.

        Raises:
            KeyError: If `written` is not a known entity kind.
        """
        keys: list[str] = []
        patterns: list[str] = []
        for target in self.invalidation[written]:
            if target == LIST:
                patterns.append(LIST_PATTERN)
            elif target == STATISTICS:
                keys.append(STATISTICS_KEY)
            else:
                keys.append(self.key(target, workflow_id))
        return keys, patterns

    def all_keys_for(self, workflow_id: str) -> list[str]:
        """Every per-workflow key; used when a workflow is deleted."""
        return [
            self.key(kind, workflow_id)
            for kind in (WORKFLOW, DOCUMENTS, RESULTS, REQUIREMENTS, QUESTIONS, ANSWERS)
        ] + [STATISTICS_KEY]


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def create_cache(backend: str, redis_url: str) -> RedisCache | MemoryCache:
    """Build the configured cache backend ("redis" or "memory")."""
    if backend == "memory":
        logger.info("Using in-process memory cache")
        return MemoryCache()
    logger.info("Using Redis cache at %s", redis_url)
    return RedisCache(redis_url)
