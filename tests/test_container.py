# =============================================================================
# File: tests/test_container.py
# Description: Process wiring releases opened resources when startup fails
# =============================================================================

from typing import List

import pytest

from engage.common.exceptions.exceptions import InfrastructureError
from engage.core import container


class StubDirectoryClient:
    def __init__(self, events: List[str]):
        self.events = events

    async def close(self) -> None:
        self.events.append("directory.close")


@pytest.fixture
def events(monkeypatch) -> List[str]:
    recorded: List[str] = []

    async def init_db_pool(*args, **kwargs):
        recorded.append("pg.init")

    async def close_db_pool():
        recorded.append("pg.close")

    async def init_global_client(*args, **kwargs):
        recorded.append("redis.init")
        return object()

    async def close_global_client():
        recorded.append("redis.close")

    monkeypatch.setattr(container.pg_client, "init_db_pool", init_db_pool)
    monkeypatch.setattr(container.pg_client, "close_db_pool", close_db_pool)
    monkeypatch.setattr(container.redis_client, "init_global_client", init_global_client)
    monkeypatch.setattr(container.redis_client, "close_global_client", close_global_client)
    monkeypatch.setattr(container, "HttpDirectoryClient", lambda: StubDirectoryClient(recorded))
    return recorded


async def test_credential_failure_closes_pools_and_directory(monkeypatch, events):
    async def no_credentials(config, secrets=None):
        raise InfrastructureError("ACS is not configured")

    monkeypatch.setattr(container, "resolve_acs_credentials", no_credentials)

    with pytest.raises(InfrastructureError):
        await container.build_container()

    assert events == ["pg.init", "redis.init", "directory.close", "redis.close", "pg.close"]


async def test_redis_failure_closes_postgres_pool(monkeypatch, events):
    async def redis_down(*args, **kwargs):
        raise ConnectionError("redis unavailable")

    monkeypatch.setattr(container.redis_client, "init_global_client", redis_down)

    with pytest.raises(ConnectionError):
        await container.build_container()

    assert events == ["pg.init", "redis.close", "pg.close"]
