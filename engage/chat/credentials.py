# =============================================================================
# File: engage/chat/credentials.py
# Description: Root vendor credential with caching and proactive refresh
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from engage.chat.cache_keys import VENDOR_TOKEN_NAMESPACE
from engage.chat.ports.capability_ports import KeyValueCachePort
from engage.chat.ports.thread_provider_port import ThreadProviderPort
from engage.chat.value_objects import RootToken
from engage.config.chat_config import ChatDefaults

log = logging.getLogger("engage.chat.credentials")


class RootCredential:
    """
    Hands out a valid root token to the reconciler and service.

    Lookup order: in-process token, cached token, freshly issued token.
    A token expiring within the refresh margin counts as expired, so
    business logic never sees a token that dies mid-operation.
    """

    def __init__(
        self,
        provider: ThreadProviderPort,
        cache: Optional[KeyValueCachePort],
        defaults: ChatDefaults,
    ):
        self._provider = provider
        self._cache = cache
        self._defaults = defaults
        self._token: Optional[RootToken] = None
        self._lock = asyncio.Lock()

    @property
    def cache_key(self) -> str:
        return self._defaults.root_user_id

    def _is_usable(self, token: Optional[RootToken]) -> bool:
        return token is not None and not token.expires_within(self._defaults.root_token_refresh_margin_seconds)

    async def get_token(self) -> RootToken:
        if self._is_usable(self._token):
            return self._token

        async with self._lock:
            if self._is_usable(self._token):
                return self._token

            cached = await self._load_cached()
            if self._is_usable(cached):
                self._token = cached
                return cached

            self._token = await self._issue()
            return self._token

    async def invalidate(self) -> None:
        """Drop the current token (e.g., after the vendor rejected it)."""
        self._token = None
        if self._cache is not None:
            await self._cache.delete(VENDOR_TOKEN_NAMESPACE, self.cache_key)

    async def _load_cached(self) -> Optional[RootToken]:
        if self._cache is None:
            return None
        data = await self._cache.get(VENDOR_TOKEN_NAMESPACE, self.cache_key)
        if not data:
            return None
        try:
            return RootToken.from_cache(data)
        except (KeyError, TypeError, ValueError) as e:
            log.warning(f"Discarding malformed cached root token: {e}")
            return None

    async def _issue(self) -> RootToken:
        token = await self._provider.issue_root_token()
        log.info(f"Issued root vendor token for identity {token.identity}, expires {token.expires_on.isoformat()}")

        if self._cache is not None:
            await self._cache.set(
                VENDOR_TOKEN_NAMESPACE,
                self.cache_key,
                token.to_cache(),
                ttl_seconds=self._defaults.root_token_ttl_seconds,
            )
        return token
