"""
Short-TTL Redis cache for leaderboard responses.
Several users watching the same map in one cycle share a single API call. Fail-open: no Redis, no caching.
"""

from __future__ import annotations

import json
import logging

from record_alerts.config import settings
from record_alerts.core.metrics import LEADERBOARD_CACHE
from record_alerts.schemas.leaderboard import LeaderboardEntry

logger = logging.getLogger(__name__)

# Lazy singleton for async Redis client
_redis_client = None


def cache_key(group: str, map_uid: str, length: int | None) -> str:
    return f"leaderboard:{group}:{map_uid}:{length if length is not None else 'all'}"


def get_redis():
    """Return async Redis client (lazy connect). Returns None if caching is disabled or Redis is unavailable."""
    global _redis_client
    if not settings.leaderboard_cache_enabled:
        return None
    if _redis_client is not None:
        return _redis_client
    try:
        from redis.asyncio import from_url
        _redis_client = from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        return _redis_client
    except Exception as e:
        logger.warning("Leaderboard cache: Redis unavailable (%s), caching disabled", e)
        return None


async def close_redis() -> None:
    """Close Redis connection (app shutdown)."""
    global _redis_client
    if _redis_client is not None:
        try:
            await _redis_client.aclose()
        except Exception as e:
            logger.warning("Leaderboard cache: error closing Redis: %s", e)
        _redis_client = None


async def get_cached(group: str, map_uid: str, length: int | None) -> list[LeaderboardEntry] | None:
    redis_client = get_redis()
    if redis_client is None:
        return None
    try:
        raw = await redis_client.get(cache_key(group, map_uid, length))
    except Exception as e:
        logger.warning("Leaderboard cache read failed for %s: %s", map_uid, e)
        LEADERBOARD_CACHE.labels(result="error").inc()
        return None
    if raw is None:
        LEADERBOARD_CACHE.labels(result="miss").inc()
        return None
    LEADERBOARD_CACHE.labels(result="hit").inc()
    return [LeaderboardEntry.model_validate(item) for item in json.loads(raw)]


async def set_cached(group: str, map_uid: str, length: int | None, entries: list[LeaderboardEntry]) -> None:
    redis_client = get_redis()
    if redis_client is None:
        return
    payload = json.dumps([e.model_dump() for e in entries])
    try:
        await redis_client.set(cache_key(group, map_uid, length), payload, ex=settings.leaderboard_cache_ttl_seconds)
    except Exception as e:
        logger.warning("Leaderboard cache write failed for %s: %s", map_uid, e)
