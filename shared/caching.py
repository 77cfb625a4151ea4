"""
Catalog listing cache

Caches catalog reference data (building and room listings) that every
portal page reads. Reservation data is never cached: every admission
check and aggregation re-reads the database.

Features:
- Catalog listing caching
- Invalidation on every catalog mutation
- Entries expire after CACHE_TTL seconds
- Cache failures degrade to a database read
"""

import redis
import pickle
from typing import Optional, Callable
from functools import wraps
import hashlib
import logging
import os

logger = logging.getLogger(__name__)

CACHE_ENABLED = os.getenv("CACHE_ENABLED", "true").lower() == "true"

redis_client = redis.Redis(
    host=os.getenv('REDIS_HOST', 'localhost'),
    port=int(os.getenv('REDIS_PORT', 6379)),
    db=1,
    decode_responses=False,
    socket_connect_timeout=0.5,
    socket_timeout=0.5,
)

CACHE_TTL = {
    "building": 300,
    "room": 300,
    "floor": 300,
}


def generate_cache_key(prefix: str, *args, **kwargs) -> str:
    """
    Build a Redis key from a cache type and call arguments.

    Args:
        prefix: Cache key prefix (e.g., "room", "building")
        *args: Values that identify the call
        **kwargs: Named values, order independent

    Returns:
        str: ``cache:<prefix>:<digest>``
    """
    key_parts = [prefix]

    for arg in args:
        key_parts.append(str(arg))

    for k, v in sorted(kwargs.items()):
        key_parts.append(f"{k}={v}")

    key_string = ":".join(key_parts)
    key_hash = hashlib.md5(key_string.encode()).hexdigest()[:16]

    return f"cache:{prefix}:{key_hash}"


def cache_response(cache_type: str, ttl: Optional[int] = None):
    """
    Cache the pickled return value of a listing function.

    Only keyword arguments that are plain values take part in the key, so
    the decorated function may also receive a session object.

    Args:
        cache_type: Type of cache (building, room, floor)
        ttl: Seconds to keep the entry, CACHE_TTL otherwise

    Example:
        @cache_response("building")
        def list_buildings(db, include_disabled=False):
            ...
    """
    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs):
            if not CACHE_ENABLED:
                return func(*args, **kwargs)

            key_kwargs = {k: v for k, v in kwargs.items() if isinstance(v, (str, int, float, bool, type(None)))}
            cache_key = generate_cache_key(cache_type, func.__name__, **key_kwargs)

            try:
                cached_data = redis_client.get(cache_key)
                if cached_data:
                    return pickle.loads(cached_data)
            except Exception as e:
                logger.warning(f"Cache read error: {e}")

            result = func(*args, **kwargs)

            try:
                cache_ttl = ttl or CACHE_TTL.get(cache_type, 300)
                redis_client.setex(cache_key, cache_ttl, pickle.dumps(result))
            except Exception as e:
                logger.warning(f"Cache write error: {e}")

            return result
        return wrapper
    return decorator


def invalidate_cache_pattern(pattern: str) -> int:
    """
    Invalidate all cache entries of one cache type.

    Args:
        pattern: Cache type (e.g., "room")

    Returns:
        int: Keys removed

    Example:
        # after a room is renamed
        invalidate_cache_pattern("room")
    """
    if not CACHE_ENABLED:
        return 0
    try:
        keys = redis_client.keys(f"cache:{pattern}:*")
        if keys:
            return redis_client.delete(*keys)
        return 0
    except Exception as e:
        logger.warning(f"Pattern invalidation error: {e}")
        return 0


def invalidate_catalog() -> int:
    """Drop every cached catalog listing."""
    return sum(invalidate_cache_pattern(cache_type) for cache_type in CACHE_TTL)


def get_cache_stats() -> dict:
    """
    Hit rate and size of the cache database.

    Returns:
        dict: ``{"enabled": False}`` when caching is off
    """
    if not CACHE_ENABLED:
        return {"enabled": False}
    try:
        info = redis_client.info()

        hits = info.get('keyspace_hits', 0)
        misses = info.get('keyspace_misses', 0)
        hit_rate = (hits / (hits + misses)) * 100 if hits + misses > 0 else 0

        return {
            "enabled": True,
            "total_keys": redis_client.dbsize(),
            "memory_used": info.get('used_memory_human', 'N/A'),
            "hit_rate_percent": round(hit_rate, 2),
            "hits": hits,
            "misses": misses,
        }
    except Exception as e:
        return {"enabled": True, "error": str(e)}
