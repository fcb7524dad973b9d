# =============================================================================
# File: tests/test_credentials.py
# Description: Root credential caching, refresh margin and invalidation
# =============================================================================

import asyncio
from datetime import datetime, timedelta, timezone

from engage.chat.cache_keys import VENDOR_TOKEN_NAMESPACE
from engage.chat.credentials import RootCredential
from engage.chat.value_objects import RootToken

from tests.fakes import FakeCache, FakeThreadProvider


def cache_key(defaults) -> str:
    return f"{VENDOR_TOKEN_NAMESPACE}:{defaults.root_user_id}"


async def test_token_is_issued_once_and_cached(credential, provider, cache, defaults):
    first = await credential.get_token()
    second = await credential.get_token()

    assert first is second
    assert provider.get_call_count("issue_root_token") == 1
    assert cache.values[cache_key(defaults)]["token"] == first.token
    assert cache.ttls[cache_key(defaults)] == defaults.root_token_ttl_seconds


async def test_cached_token_is_reused_across_instances(credential, provider, cache, defaults):
    issued = await credential.get_token()

    other = RootCredential(provider, cache, defaults)
    reused = await other.get_token()

    assert reused.token == issued.token
    assert provider.get_call_count("issue_root_token") == 1


async def test_token_inside_refresh_margin_is_replaced(provider, cache, defaults):
    provider.token_lifetime = timedelta(seconds=defaults.root_token_refresh_margin_seconds - 10)
    credential = RootCredential(provider, cache, defaults)

    await credential.get_token()
    await credential.get_token()

    assert provider.get_call_count("issue_root_token") == 2


async def test_invalidate_drops_memory_and_cache(credential, provider, cache, defaults):
    await credential.get_token()

    await credential.invalidate()
    await credential.get_token()

    assert cache.was_called("delete")
    assert provider.get_call_count("issue_root_token") == 2


async def test_malformed_cached_token_is_discarded(provider, cache, defaults):
    cache.values[cache_key(defaults)] = {"token": "x"}
    credential = RootCredential(provider, cache, defaults)

    token = await credential.get_token()

    assert token.identity == provider.root_identity
    assert provider.get_call_count("issue_root_token") == 1


async def test_expired_cached_token_is_not_used(provider, cache, defaults):
    stale = RootToken(token="old", identity="acs-root", expires_on=datetime.now(timezone.utc) - timedelta(minutes=1))
    cache.values[cache_key(defaults)] = stale.to_cache()
    credential = RootCredential(provider, cache, defaults)

    token = await credential.get_token()

    assert token.token != "old"


async def test_works_without_cache(provider, defaults):
    credential = RootCredential(provider, None, defaults)

    await credential.get_token()
    await credential.invalidate()

    assert provider.get_call_count("issue_root_token") == 1


async def test_concurrent_callers_share_one_issue(defaults):
    provider = FakeThreadProvider()
    credential = RootCredential(provider, FakeCache(), defaults)

    tokens = await asyncio.gather(*(credential.get_token() for _ in range(5)))

    assert len({t.token for t in tokens}) == 1
    assert provider.get_call_count("issue_root_token") == 1
