# engage/infra/persistence/cache_manager.py

"""
Cache management for the chat domain.

Implements KeyValueCachePort over Redis. The cache is best-effort: every
Redis failure is logged and reported as a miss (or False), never raised.
"""
import asyncio
import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from redis.exceptions import RedisError

from engage.config.logging_config import get_logger
from engage.config.redis_config import get_redis_config

logger = get_logger("engage.infra.persistence.cache_manager")

SLOW_OPERATION_THRESHOLD_MS = 20.0


class CacheMetrics:
    """Track cache performance metrics"""

    def __init__(self):
        self.hits = 0
        self.misses = 0
        self.errors = 0
        self.slow_operations = 0
        self.total_operations = 0
        self.total_latency_ms = 0.0
        self.reset_time = datetime.now(timezone.utc)

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0

    @property
    def avg_latency_ms(self) -> float:
        return (self.total_latency_ms / self.total_operations) if self.total_operations > 0 else 0

    def to_dict(self) -> Dict:
        return {
            'hits': self.hits,
            'misses': self.misses,
            'errors': self.errors,
            'hit_rate': round(self.hit_rate, 2),
            'slow_operations': self.slow_operations,
            'total_operations': self.total_operations,
            'avg_latency_ms': round(self.avg_latency_ms, 2),
            'uptime_seconds': (datetime.now(timezone.utc) - self.reset_time).total_seconds()
        }


class ChatCacheManager:
    """
    JSON cache over Redis.

    Key patterns follow: {prefix}:{namespace}:{key}
    Examples:
    - engage:chat_group:{group_id}
    - engage:acs_token:{root_user_id}
    - engage:chat_read:{group_id}   (hash of employee_id -> read marker)
    """

    def __init__(self, redis_client, key_prefix: Optional[str] = None, enabled: bool = True):
        self.redis = redis_client
        self.key_prefix = key_prefix or get_redis_config().key_prefix
        self.enabled = enabled
        self.metrics = CacheMetrics()

        logger.info(f"Cache manager initialized (enabled={self.enabled}, prefix={self.key_prefix})")

    def make_key(self, namespace: str, key: str) -> str:
        return f"{self.key_prefix}:{namespace}:{key}"

    def _track_operation(self, operation: str, start_time: float,
                         success: bool = True, hit: Optional[bool] = None) -> None:
        elapsed_ms = (time.time() - start_time) * 1000
        self.metrics.total_operations += 1
        self.metrics.total_latency_ms += elapsed_ms

        if not success:
            self.metrics.errors += 1
        elif hit is True:
            self.metrics.hits += 1
        elif hit is False:
            self.metrics.misses += 1

        if elapsed_ms > SLOW_OPERATION_THRESHOLD_MS:
            self.metrics.slow_operations += 1
            logger.warning(f"Slow cache operation: {operation} took {elapsed_ms:.1f}ms")

    @staticmethod
    def _decode(raw: Optional[str], full_key: str) -> Optional[Any]:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.error(f"Invalid JSON in cache for {full_key}")
            return None

    # === KV ===

    async def get(self, namespace: str, key: str) -> Optional[Any]:
        if not self.enabled:
            return None

        full_key = self.make_key(namespace, key)
        start = time.time()
        try:
            raw = await self.redis.get(full_key)
        except (RedisError, OSError) as e:
            logger.error(f"Cache get error for {full_key}: {e}")
            self._track_operation(f"GET {full_key}", start, False)
            return None

        value = self._decode(raw, full_key)
        self._track_operation(f"GET {full_key}", start, True, value is not None)
        return value

    async def set(self, namespace: str, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        if not self.enabled:
            return False

        full_key = self.make_key(namespace, key)
        start = time.time()
        try:
            data = await asyncio.to_thread(json.dumps, value, default=str)
            if ttl_seconds:
                result = await self.redis.setex(full_key, ttl_seconds, data)
            else:
                result = await self.redis.set(full_key, data)
        except (TypeError, ValueError) as e:
            logger.error(f"JSON encoding error for {full_key}: {e}")
            return False
        except (RedisError, OSError) as e:
            logger.error(f"Cache set error for {full_key}: {e}")
            self._track_operation(f"SET {full_key}", start, False)
            return False

        self._track_operation(f"SET {full_key}", start, True)
        return bool(result)

    async def delete(self, namespace: str, key: str) -> bool:
        if not self.enabled:
            return False

        full_key = self.make_key(namespace, key)
        try:
            return await self.redis.delete(full_key) > 0
        except (RedisError, OSError) as e:
            logger.error(f"Cache delete error for {full_key}: {e}")
            return False

    # === Hash ===

    async def hset(
        self,
        namespace: str,
        key: str,
        field: str,
        value: Any,
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        if not self.enabled:
            return False

        full_key = self.make_key(namespace, key)
        try:
            data = json.dumps(value, default=str)
            await self.redis.hset(full_key, mapping={field: data})
            if ttl_seconds:
                await self.redis.expire(full_key, ttl_seconds)
        except (TypeError, ValueError) as e:
            logger.error(f"JSON encoding error for {full_key}.{field}: {e}")
            return False
        except (RedisError, OSError) as e:
            logger.error(f"Cache hset error for {full_key}.{field}: {e}")
            return False
        return True

    async def hget(self, namespace: str, key: str, field: str) -> Optional[Any]:
        if not self.enabled:
            return None

        full_key = self.make_key(namespace, key)
        try:
            raw = await self.redis.hget(full_key, field)
        except (RedisError, OSError) as e:
            logger.error(f"Cache hget error for {full_key}.{field}: {e}")
            return None
        return self._decode(raw, f"{full_key}.{field}")

    async def hgetall(self, namespace: str, key: str) -> Dict[str, Any]:
        if not self.enabled:
            return {}

        full_key = self.make_key(namespace, key)
        try:
            raw = await self.redis.hgetall(full_key)
        except (RedisError, OSError) as e:
            logger.error(f"Cache hgetall error for {full_key}: {e}")
            return {}

        result = {}
        for field, data in (raw or {}).items():
            value = self._decode(data, f"{full_key}.{field}")
            if value is not None:
                result[field] = value
        return result

    def get_metrics(self) -> Dict:
        return self.metrics.to_dict()

    def reset_metrics(self):
        self.metrics = CacheMetrics()
