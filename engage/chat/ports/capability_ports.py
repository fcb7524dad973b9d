# =============================================================================
# File: engage/chat/ports/capability_ports.py
# Description: Port interfaces for cache, blob storage and secrets
# Pattern: Hexagonal Architecture / Ports & Adapters
# =============================================================================

from __future__ import annotations

from typing import Protocol, Any, Dict, Optional, Sequence, runtime_checkable

from engage.chat.value_objects import CompletedPart, MultipartUpload


@runtime_checkable
class KeyValueCachePort(Protocol):
    """
    Port: Key/Value Cache (best-effort, non-authoritative)

    Implemented by: ChatCacheManager (engage/infra/persistence/cache_manager.py)

    Values are JSON-serializable. Failures degrade to a miss; mutations
    invalidate entries rather than updating them in place.
    """

    async def get(self, namespace: str, key: str) -> Optional[Any]:
        ...

    async def set(self, namespace: str, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        ...

    async def delete(self, namespace: str, key: str) -> bool:
        ...

    async def hset(
        self,
        namespace: str,
        key: str,
        field: str,
        value: Any,
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        ...

    async def hget(self, namespace: str, key: str, field: str) -> Optional[Any]:
        ...

    async def hgetall(self, namespace: str, key: str) -> Dict[str, Any]:
        ...


@runtime_checkable
class BlobStorePort(Protocol):
    """
    Port: Attachment Blob Store

    Implemented by: S3BlobStore (engage/infra/storage/s3_blob_store.py)
    """

    async def put_object(self, key: str, body: bytes, content_type: str) -> str:
        """Upload in one shot; returns a signed GET url."""
        ...

    async def initiate_multipart_upload(
        self,
        key: str,
        part_count: int,
        content_type: Optional[str] = None,
    ) -> MultipartUpload:
        ...

    async def complete_multipart_upload(
        self,
        upload_id: str,
        key: str,
        parts: Sequence[CompletedPart],
    ) -> str:
        """Finish the upload; returns a signed GET url."""
        ...

    async def get_signed_url(self, key: str, expires_in: Optional[int] = None) -> str:
        ...


@runtime_checkable
class SecretProviderPort(Protocol):
    """
    Port: Secrets

    Implemented by: AwsSecretProvider (engage/infra/secrets/aws_secret_provider.py)
    """

    async def get_secret(self, name: str) -> str:
        ...
