# =============================================================================
# File: engage/core/container.py
# Description: Wires configuration and adapters into ChatGroupService
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from engage.chat.credentials import RootCredential
from engage.chat.service import ChatGroupService
from engage.common.exceptions.exceptions import InfrastructureError
from engage.config.acs_config import AcsConfig, get_acs_config, parse_connection_string
from engage.config.chat_config import ChatDefaults, get_chat_config
from engage.infra.acs.thread_provider import AcsThreadProvider
from engage.infra.directory.http_directory_client import HttpDirectoryClient
from engage.infra.persistence import pg_client, redis_client
from engage.infra.persistence.cache_manager import ChatCacheManager
from engage.infra.read_repos.chat_group_repo import PgChatGroupStore
from engage.infra.secrets.aws_secret_provider import AwsSecretProvider
from engage.infra.storage.s3_blob_store import S3BlobStore

log = logging.getLogger("engage.core.container")


@dataclass
class ChatContainer:
    """Everything a process needs to run chat operations, plus teardown."""
    service: ChatGroupService
    defaults: ChatDefaults
    directory: HttpDirectoryClient
    provider: AcsThreadProvider
    blob_store: S3BlobStore
    cache: ChatCacheManager

    async def close(self) -> None:
        await self.provider.close()
        await self.directory.close()
        await self.blob_store.close()
        await redis_client.close_global_client()
        await pg_client.close_db_pool()
        log.info("Chat container closed")


async def resolve_acs_credentials(
    config: AcsConfig,
    secrets: Optional[AwsSecretProvider] = None,
) -> Tuple[str, str]:
    """Static endpoint + key win; otherwise the connection string secret is read."""
    if config.has_static_credentials():
        return config.endpoint, config.get_access_key()
    if not config.connection_string_secret_name:
        raise InfrastructureError("ACS is not configured (no access key and no connection string secret)")

    secrets = secrets or AwsSecretProvider()
    connection_string = await secrets.get_secret(config.connection_string_secret_name)
    return parse_connection_string(connection_string)


async def resolve_root_identity(
    config: AcsConfig,
    directory: HttpDirectoryClient,
    defaults: ChatDefaults,
) -> str:
    if config.root_identity:
        return config.root_identity

    root_user = await directory.get_by_id(defaults.root_user_id)
    if root_user is None or not root_user.vendor_user_id:
        raise InfrastructureError(
            f"Root user {defaults.root_user_id} has no ACS identity; set ACS_ROOT_IDENTITY"
        )
    return root_user.vendor_user_id


async def _release_partial(directory: Optional[HttpDirectoryClient]) -> None:
    if directory is not None:
        await directory.close()
    await redis_client.close_global_client()
    await pg_client.close_db_pool()


async def build_container(*, apply_schema: bool = False) -> ChatContainer:
    """
    Initialize PostgreSQL and Redis, then assemble the chat service.

    A failure after the pools are up (schema, Redis, ACS credentials, root
    identity) closes whatever was already opened before re-raising.
    """
    defaults = get_chat_config().to_defaults()
    acs_config = get_acs_config()

    await pg_client.init_db_pool()
    directory: Optional[HttpDirectoryClient] = None
    try:
        if apply_schema:
            await pg_client.run_schema_from_file()

        redis = await redis_client.init_global_client()
        cache = ChatCacheManager(redis)

        directory = HttpDirectoryClient()
        endpoint, access_key = await resolve_acs_credentials(acs_config)
        root_identity = await resolve_root_identity(acs_config, directory, defaults)
    except Exception as e:
        log.error(f"Chat container startup failed, releasing opened resources: {e}")
        await _release_partial(directory)
        raise

    provider = AcsThreadProvider(
        endpoint,
        access_key,
        root_identity,
        config=acs_config,
        page_ceiling=defaults.participant_page_ceiling,
    )

    blob_store = S3BlobStore(signed_url_ttl_seconds=defaults.signed_url_ttl_seconds)
    store = PgChatGroupStore(cache, insert_batch_size=defaults.member_insert_batch_size)
    credential = RootCredential(provider, cache, defaults)

    service = ChatGroupService(
        store,
        directory,
        provider,
        credential,
        defaults,
        cache=cache,
        blob_store=blob_store,
    )
    log.info(f"Chat container ready (ACS endpoint {endpoint}, {len(defaults.system_groups)} system group(s))")

    return ChatContainer(
        service=service,
        defaults=defaults,
        directory=directory,
        provider=provider,
        blob_store=blob_store,
        cache=cache,
    )
