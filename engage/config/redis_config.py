# =============================================================================
# File: engage/config/redis_config.py
# Description: Configuration for the Redis cache client
# =============================================================================

import socket
from functools import lru_cache
from typing import Any, Dict

from pydantic import Field
from pydantic_settings import SettingsConfigDict

from engage.common.base.base_config import BaseConfig, BASE_CONFIG_DICT


class RedisConfig(BaseConfig):
    """
    Redis client configuration.

    Redis backs the non-authoritative cache layer only (group-by-id, root
    vendor tokens, per-user read markers); a cache outage degrades to
    store reads.
    """

    model_config = SettingsConfigDict(
        **BASE_CONFIG_DICT,
        env_prefix='REDIS_',
    )

    redis_url: str = Field(
        default="redis://localhost:6379/1",
        description="Redis connection URL"
    )
    key_prefix: str = Field(default="engage", description="Prefix for every cache key")

    max_connections: int = Field(default=50, description="Maximum number of connections in the pool")
    socket_timeout: float = Field(default=15.0)
    socket_connect_timeout: float = Field(default=5.0)
    socket_keepalive: bool = Field(default=True)
    socket_keepalive_interval: int = Field(default=60)
    health_check_interval: int = Field(default=30)

    def get_connection_kwargs(self) -> Dict[str, Any]:
        return {
            "decode_responses": True,
            "max_connections": self.max_connections,
            "socket_timeout": self.socket_timeout,
            "socket_connect_timeout": self.socket_connect_timeout,
            "socket_keepalive": self.socket_keepalive,
            "health_check_interval": self.health_check_interval,
        }

    def get_socket_keepalive_options(self) -> Dict[int, int]:
        opts = {}
        if hasattr(socket, "TCP_KEEPIDLE"):
            opts[socket.TCP_KEEPIDLE] = self.socket_keepalive_interval
        if hasattr(socket, "TCP_KEEPINTVL"):
            opts[socket.TCP_KEEPINTVL] = max(1, self.socket_keepalive_interval // 3)
        if hasattr(socket, "TCP_KEEPCNT"):
            opts[socket.TCP_KEEPCNT] = 3
        return opts


@lru_cache(maxsize=1)
def get_redis_config() -> RedisConfig:
    """Get Redis configuration singleton (cached)."""
    return RedisConfig()


def reset_redis_config() -> None:
    """Reset config singleton (for testing)."""
    get_redis_config.cache_clear()
