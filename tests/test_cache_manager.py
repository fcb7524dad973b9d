# =============================================================================
# File: tests/test_cache_manager.py
# Description: ChatCacheManager over an in-memory async Redis stand-in
# =============================================================================

import json
from typing import Dict, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from engage.infra.persistence.cache_manager import ChatCacheManager


class InMemoryRedis:
    """The slice of redis.asyncio.Redis the cache manager uses."""

    def __init__(self):
        self.strings: Dict[str, str] = {}
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.expiry: Dict[str, int] = {}
        self.down = False

    def _check(self):
        if self.down:
            raise RedisConnectionError("connection refused")

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self.strings.get(key)

    async def set(self, key: str, value: str) -> bool:
        self._check()
        self.strings[key] = value
        return True

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self._check()
        self.strings[key] = value
        self.expiry[key] = ttl
        return True

    async def delete(self, key: str) -> int:
        self._check()
        existed = key in self.strings or key in self.hashes
        self.strings.pop(key, None)
        self.hashes.pop(key, None)
        return int(existed)

    async def hset(self, key: str, mapping: Dict[str, str]) -> int:
        self._check()
        self.hashes.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def expire(self, key: str, ttl: int) -> bool:
        self._check()
        self.expiry[key] = ttl
        return True

    async def hget(self, key: str, field: str) -> Optional[str]:
        self._check()
        return self.hashes.get(key, {}).get(field)

    async def hgetall(self, key: str) -> Dict[str, str]:
        self._check()
        return dict(self.hashes.get(key, {}))


@pytest.fixture
def redis_client() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture
def manager(redis_client) -> ChatCacheManager:
    return ChatCacheManager(redis_client, key_prefix="engage")


async def test_set_and_get_json(manager, redis_client):
    assert await manager.set("chat_group", "CH_GRP1", {"name": "Ops"}, ttl_seconds=60)

    assert await manager.get("chat_group", "CH_GRP1") == {"name": "Ops"}
    assert redis_client.expiry["engage:chat_group:CH_GRP1"] == 60
    assert manager.metrics.hits == 1


async def test_set_without_ttl(manager, redis_client):
    await manager.set("acs_token", "root", {"token": "t"})

    assert "engage:acs_token:root" not in redis_client.expiry


async def test_miss_and_invalid_json(manager, redis_client):
    redis_client.strings["engage:chat_group:bad"] = "{not json"

    assert await manager.get("chat_group", "missing") is None
    assert await manager.get("chat_group", "bad") is None
    assert manager.metrics.misses == 2


async def test_delete(manager):
    await manager.set("chat_group", "CH_GRP1", {"name": "Ops"})

    assert await manager.delete("chat_group", "CH_GRP1") is True
    assert await manager.delete("chat_group", "CH_GRP1") is False


async def test_read_marker_hash(manager, redis_client):
    await manager.hset("chat_read", "CH_GRP1", "F1", {"message_id": "m-1"}, ttl_seconds=600)
    await manager.hset("chat_read", "CH_GRP1", "F2", {"message_id": "m-2"})
    redis_client.hashes["engage:chat_read:CH_GRP1"]["F3"] = "garbage{"

    assert await manager.hget("chat_read", "CH_GRP1", "F1") == {"message_id": "m-1"}
    assert await manager.hgetall("chat_read", "CH_GRP1") == {"F1": {"message_id": "m-1"}, "F2": {"message_id": "m-2"}}
    assert redis_client.expiry["engage:chat_read:CH_GRP1"] == 600
    assert json.loads(redis_client.hashes["engage:chat_read:CH_GRP1"]["F2"]) == {"message_id": "m-2"}


async def test_redis_outage_degrades_to_misses(manager, redis_client):
    redis_client.down = True

    assert await manager.get("chat_group", "CH_GRP1") is None
    assert await manager.set("chat_group", "CH_GRP1", {"name": "Ops"}) is False
    assert await manager.delete("chat_group", "CH_GRP1") is False
    assert await manager.hset("chat_read", "CH_GRP1", "F1", {"message_id": "m"}) is False
    assert await manager.hget("chat_read", "CH_GRP1", "F1") is None
    assert await manager.hgetall("chat_read", "CH_GRP1") == {}
    assert manager.get_metrics()["errors"] == 2


async def test_disabled_cache_never_touches_redis(redis_client):
    manager = ChatCacheManager(redis_client, key_prefix="engage", enabled=False)
    redis_client.down = True

    assert await manager.set("chat_group", "CH_GRP1", {"name": "Ops"}) is False
    assert await manager.get("chat_group", "CH_GRP1") is None
