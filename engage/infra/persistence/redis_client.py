# =============================================================================
# File: engage/infra/persistence/redis_client.py
# Description: Async Redis client for the chat cache layer
# =============================================================================
# • Global singleton client built from RedisConfig, PING tested on init.
# • ping() retries transient errors and degrades to False.
# • ChatCacheManager wraps the client for JSON KV and hash access.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError

from engage.config.redis_config import RedisConfig, get_redis_config
from engage.config.reliability_config import ReliabilityConfigs
from engage.infra.reliability.retry import retry_async

log = logging.getLogger("engage.infra.persistence.redis_client")

T = TypeVar("T")

SLOW_COMMAND_THRESHOLD_MS = 20.0

_MAIN_REDIS_CLIENT: Optional[redis.Redis] = None
_CLIENT_INIT_LOCK = asyncio.Lock()


def _build_redis_client_from_config(config: RedisConfig, **kwargs: Any) -> redis.Redis:
    opts = config.get_connection_kwargs()
    opts.update(kwargs)

    if config.socket_keepalive:
        keepalive_opts = config.get_socket_keepalive_options()
        if keepalive_opts:
            opts["socket_keepalive_options"] = keepalive_opts

    return redis.from_url(config.redis_url, **opts)


async def init_global_client(config: Optional[RedisConfig] = None, **kwargs: Any) -> redis.Redis:
    """Idempotent global singleton init, PING tested."""
    global _MAIN_REDIS_CLIENT

    if _MAIN_REDIS_CLIENT is not None:
        try:
            await _MAIN_REDIS_CLIENT.ping()
            return _MAIN_REDIS_CLIENT
        except (RedisError, OSError):
            await close_global_client()

    async with _CLIENT_INIT_LOCK:
        if _MAIN_REDIS_CLIENT is None:
            client = _build_redis_client_from_config(config or get_redis_config(), **kwargs)
            try:
                await retry_async(
                    client.ping,
                    retry_config=ReliabilityConfigs.redis_retry(),
                    context="Redis init ping"
                )
            except (RedisError, OSError) as e:
                log.error(f"Failed to initialize Redis client: {e}")
                await client.aclose()
                raise
            _MAIN_REDIS_CLIENT = client
            log.info("Global Redis client initialized and ping OK.")

    return _MAIN_REDIS_CLIENT


async def close_global_client() -> None:
    global _MAIN_REDIS_CLIENT
    if _MAIN_REDIS_CLIENT:
        try:
            await _MAIN_REDIS_CLIENT.aclose()
            log.info("Global Redis client closed.")
        except (RedisError, OSError) as e:
            log.warning(f"Error closing global Redis client: {e}", exc_info=True)
    _MAIN_REDIS_CLIENT = None


def get_global_client() -> redis.Redis:
    if _MAIN_REDIS_CLIENT is None:
        raise RuntimeError("Redis client not initialized. Call init_global_client() first.")
    return _MAIN_REDIS_CLIENT


async def _safe(
        command: str,
        key: str,
        operation: Callable[[], Awaitable[T]],
        default: T,
) -> T:
    """Run one command with retry; a failure is logged and returns `default`."""
    start_time = time.time()
    try:
        result = await retry_async(
            operation,
            retry_config=ReliabilityConfigs.redis_retry(),
            context=f"Redis {command} {key}"
        )
    except (RedisError, OSError, RuntimeError) as e:
        log.warning(f"Redis {command} failed for '{key}': {e}")
        return default

    elapsed_ms = (time.time() - start_time) * 1000
    if elapsed_ms > SLOW_COMMAND_THRESHOLD_MS:
        log.warning(f"[SLOW REDIS] {command} took {elapsed_ms:.1f}ms: {key[:100]}")
    return result


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------
async def ping(r: Optional[redis.Redis] = None) -> bool:
    r = r or get_global_client()
    return await _safe("PING", "-", r.ping, False)


