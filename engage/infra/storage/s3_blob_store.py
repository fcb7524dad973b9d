# =============================================================================
# File: engage/infra/storage/s3_blob_store.py
# Description: S3 BlobStore for chat attachments
# =============================================================================

from __future__ import annotations

from contextlib import AsyncExitStack
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

import aioboto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from engage.chat.value_objects import CompletedPart, MultipartUpload, PartUploadUrl
from engage.common.exceptions.exceptions import InfrastructureError
from engage.config.logging_config import get_logger
from engage.config.reliability_config import ReliabilityConfigs
from engage.config.storage_config import StorageConfig, get_storage_config
from engage.infra.reliability.retry import retry_async

log = get_logger("engage.infra.storage.s3")

T = TypeVar("T")


class StorageError(InfrastructureError):
    """Blob store call failed"""
    pass


class S3BlobStore:
    """
    S3 attachment store.

    Works with both MinIO (development) and AWS S3 (production). Uses a
    persistent aioboto3 client; retries come from the reliability package,
    botocore's own retries are disabled.
    """

    def __init__(self, config: Optional[StorageConfig] = None, signed_url_ttl_seconds: int = 3600):
        self.config = config or get_storage_config()
        self.signed_url_ttl_seconds = signed_url_ttl_seconds
        self.session = aioboto3.Session()

        self._boto_config = BotoConfig(
            signature_version="s3v4",
            connect_timeout=self.config.connect_timeout,
            read_timeout=self.config.read_timeout,
            max_pool_connections=self.config.max_pool_connections,
            retries={"max_attempts": 0},
        )
        self._retry_config = ReliabilityConfigs.storage_retry()

        self._client: Optional[Any] = None
        self._exit_stack: Optional[AsyncExitStack] = None

    async def _get_client(self) -> Any:
        """Get or create persistent S3 client (connection reuse)"""
        if self._client is None:
            self._exit_stack = AsyncExitStack()
            self._client = await self._exit_stack.enter_async_context(
                self.session.client(
                    service_name="s3",
                    endpoint_url=self.config.endpoint_url,
                    aws_access_key_id=self.config.get_access_key(),
                    aws_secret_access_key=self.config.get_secret_key(),
                    region_name=self.config.region,
                    config=self._boto_config,
                )
            )
            log.info("S3 client initialized (persistent connection)")
        return self._client

    async def close(self) -> None:
        if self._exit_stack is not None:
            await self._exit_stack.aclose()
            self._client = None
            self._exit_stack = None
            log.info("S3 client closed")

    async def _call(self, context: str, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await retry_async(operation, retry_config=self._retry_config, context=context)
        except (ClientError, BotoCoreError) as e:
            log.error(f"S3 error in {context}: {e}")
            raise StorageError(f"{context} failed: {e}") from e

    async def get_signed_url(self, key: str, expires_in: Optional[int] = None) -> str:
        s3 = await self._get_client()
        return await s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.config.bucket_name, "Key": key},
            ExpiresIn=expires_in or self.signed_url_ttl_seconds,
        )

    async def put_object(self, key: str, body: bytes, content_type: str) -> str:
        async def _do_upload() -> None:
            s3 = await self._get_client()
            await s3.put_object(Bucket=self.config.bucket_name, Key=key, Body=body, ContentType=content_type)

        await self._call("storage.put_object", _do_upload)
        log.info(f"Attachment uploaded: {key} ({len(body)} bytes)")
        return await self.get_signed_url(key)

    async def initiate_multipart_upload(
        self,
        key: str,
        part_count: int,
        content_type: Optional[str] = None,
    ) -> MultipartUpload:
        async def _do_create() -> str:
            s3 = await self._get_client()
            extra = {"ContentType": content_type} if content_type else {}
            response = await s3.create_multipart_upload(Bucket=self.config.bucket_name, Key=key, **extra)
            return response["UploadId"]

        upload_id = await self._call("storage.create_multipart_upload", _do_create)

        s3 = await self._get_client()
        part_urls = []
        for part_number in range(1, part_count + 1):
            url = await s3.generate_presigned_url(
                "upload_part",
                Params={
                    "Bucket": self.config.bucket_name,
                    "Key": key,
                    "UploadId": upload_id,
                    "PartNumber": part_number,
                },
                ExpiresIn=self.config.part_url_ttl_seconds,
            )
            part_urls.append(PartUploadUrl(part_number=part_number, url=url))

        return MultipartUpload(upload_id=upload_id, key=key, part_urls=tuple(part_urls))

    async def complete_multipart_upload(
        self,
        upload_id: str,
        key: str,
        parts: Sequence[CompletedPart],
    ) -> str:
        async def _do_complete() -> None:
            s3 = await self._get_client()
            await s3.complete_multipart_upload(
                Bucket=self.config.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": [{"ETag": p.etag, "PartNumber": p.part_number} for p in parts]},
            )

        await self._call("storage.complete_multipart_upload", _do_complete)
        log.info(f"Multipart upload {upload_id} completed: {key} ({len(parts)} parts)")
        return await self.get_signed_url(key)
