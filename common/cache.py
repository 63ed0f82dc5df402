# common/cache.py
import json
import logging
import os
from datetime import datetime
from typing import Any, Optional

import redis

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """
    Return a Redis client if REDIS_URL is configured, otherwise None.

    Caching is best-effort: an unreachable server disables it instead of
    failing the request.
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    redis_url = os.getenv("REDIS_URL")
    if not redis_url:
        return None

    try:
        client = redis.from_url(redis_url, decode_responses=True)
        client.ping()
    except redis.RedisError as exc:
        logger.warning("Redis unavailable at %s, caching disabled: %s", redis_url, exc)
        return None

    _redis_client = client
    return _redis_client


def availability_key(room_id: int, start: datetime, end: datetime) -> str:
    return f"reservations:availability:{room_id}:{start.isoformat()}:{end.isoformat()}"


def get_cached_json(key: str) -> Optional[Any]:
    client = get_redis_client()
    if client is None:
        return None

    try:
        raw = client.get(key)
    except redis.RedisError as exc:
        logger.warning("Cache read failed for %s: %s", key, exc)
        return None
    if raw is None:
        return None
    return json.loads(raw)


def set_cached_json(key: str, value: Any, ttl_seconds: int = 60) -> None:
    client = get_redis_client()
    if client is None:
        return

    try:
        client.setex(key, ttl_seconds, json.dumps(value, default=str))
    except redis.RedisError as exc:
        logger.warning("Cache write failed for %s: %s", key, exc)


def delete_prefix(prefix: str) -> int:
    """
    Delete all keys starting with prefix.

    Returns
    -------
    int
        Number of keys removed (0 when caching is disabled).
    """
    client = get_redis_client()
    if client is None:
        return 0

    removed = 0
    try:
        for key in client.scan_iter(prefix + "*"):
            removed += client.delete(key)
    except redis.RedisError as exc:
        logger.warning("Cache invalidation failed for prefix %s: %s", prefix, exc)
    return removed
