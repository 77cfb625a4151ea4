"""
Tests for the catalog listing cache.
"""

import pickle
import pytest
from unittest.mock import Mock, patch
import redis

import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shared import caching
from shared.caching import (
    cache_response,
    generate_cache_key,
    get_cache_stats,
    invalidate_cache_pattern,
    invalidate_catalog,
)


@pytest.fixture
def fake_redis():
    """In-process stand-in for the Redis client, with caching switched on."""
    store = {}
    client = Mock()
    client.get.side_effect = store.get
    client.setex.side_effect = lambda key, ttl, value: store.__setitem__(key, value)
    client.keys.side_effect = lambda pattern: [k for k in store if k.startswith(pattern.rstrip("*"))]

    def delete(*keys):
        for key in keys:
            store.pop(key, None)
        return len(keys)

    client.delete.side_effect = delete
    client.store = store

    with patch.object(caching, "redis_client", client), patch.object(caching, "CACHE_ENABLED", True):
        yield client


def test_generate_cache_key():
    """Test cache key generation."""
    key1 = generate_cache_key("room", 1)
    key2 = generate_cache_key("room", 1)
    key3 = generate_cache_key("room", 2)

    # Same arguments should produce same key
    assert key1 == key2

    # Different arguments should produce different keys
    assert key1 != key3

    # Keys should have correct prefix
    assert key1.startswith("cache:room:")


def test_cache_key_with_kwargs():
    """Keyword order does not matter, values do."""
    key1 = generate_cache_key("room", building_id=1, floor_no=2)
    key2 = generate_cache_key("room", floor_no=2, building_id=1)
    key3 = generate_cache_key("room", building_id=2, floor_no=1)

    assert key1 == key2
    assert key1 != key3


def test_cache_disabled_always_calls_function():
    call_count = 0

    @cache_response("room")
    def list_rooms(building_id=None):
        nonlocal call_count
        call_count += 1
        return [building_id]

    list_rooms(building_id=1)
    list_rooms(building_id=1)
    assert call_count == 2


def test_cache_response_hits_cache(fake_redis):
    call_count = 0

    @cache_response("room", ttl=60)
    def list_rooms(db, building_id=None, floor_no=None):
        nonlocal call_count
        call_count += 1
        return [{"building_id": building_id, "floor_no": floor_no}]

    session = object()
    assert list_rooms(session, building_id=1, floor_no=3) == [{"building_id": 1, "floor_no": 3}]
    assert list_rooms(session, building_id=1, floor_no=3) == [{"building_id": 1, "floor_no": 3}]
    assert call_count == 1

    # A different session does not change the key.
    list_rooms(object(), building_id=1, floor_no=3)
    assert call_count == 1

    list_rooms(session, building_id=1, floor_no=4)
    assert call_count == 2
    key, ttl, value = fake_redis.setex.call_args[0]
    assert ttl == 60
    assert pickle.loads(value) == [{"building_id": 1, "floor_no": 4}]


def test_cache_read_failure_falls_back_to_function(fake_redis):
    fake_redis.get.side_effect = redis.ConnectionError("down")
    fake_redis.setex.side_effect = redis.ConnectionError("down")

    @cache_response("building")
    def list_buildings():
        return ["Main Library"]

    assert list_buildings() == ["Main Library"]


def test_invalidate_cache_pattern(fake_redis):
    fake_redis.store[generate_cache_key("room", "portal_rooms", building_id=1)] = b"x"
    fake_redis.store[generate_cache_key("room", "portal_rooms", building_id=2)] = b"x"
    fake_redis.store[generate_cache_key("building", "portal_buildings")] = b"x"

    assert invalidate_cache_pattern("room") == 2
    assert len(fake_redis.store) == 1


def test_invalidate_catalog(fake_redis):
    fake_redis.store[generate_cache_key("room", "portal_rooms")] = b"x"
    fake_redis.store[generate_cache_key("floor", "portal_floors", building_id=1)] = b"x"
    fake_redis.store[generate_cache_key("building", "portal_buildings")] = b"x"

    assert invalidate_catalog() == 3
    assert fake_redis.store == {}


def test_invalidate_when_disabled():
    assert invalidate_cache_pattern("room") == 0


def test_invalidate_handles_errors(fake_redis):
    fake_redis.keys.side_effect = redis.ConnectionError("down")
    assert invalidate_cache_pattern("room") == 0


def test_cache_stats_disabled():
    assert get_cache_stats() == {"enabled": False}


def test_cache_stats(fake_redis):
    fake_redis.info.return_value = {"keyspace_hits": 3, "keyspace_misses": 1, "used_memory_human": "1M"}
    fake_redis.dbsize.return_value = 7

    stats = get_cache_stats()

    assert stats["enabled"] is True
    assert stats["total_keys"] == 7
    assert stats["hit_rate_percent"] == 75.0
