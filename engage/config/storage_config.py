# =============================================================================
# File: engage/config/storage_config.py
# Description: S3 attachment storage and secrets manager configuration
# =============================================================================

from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr
from pydantic_settings import SettingsConfigDict

from engage.common.base.base_config import BaseConfig, BASE_CONFIG_DICT


class StorageConfig(BaseConfig):
    """
    Storage configuration for chat attachments (S3 or MinIO in development).
    """

    model_config = SettingsConfigDict(
        **BASE_CONFIG_DICT,
        env_prefix='STORAGE_',
    )

    endpoint_url: Optional[str] = Field(default=None, description="Override endpoint (MinIO)")
    access_key: Optional[SecretStr] = Field(default=None, description="Access key (None = default chain)")
    secret_key: Optional[SecretStr] = Field(default=None, description="Secret key")
    region: str = Field(default="us-east-1", description="AWS region")
    bucket_name: str = Field(default="engage-chat-attachments", description="Bucket name")

    # Performance settings
    connect_timeout: int = Field(default=5, description="Connection timeout (seconds)")
    read_timeout: int = Field(default=30, description="Read timeout (seconds)")
    max_pool_connections: int = Field(default=25, description="Max connection pool size")
    part_url_ttl_seconds: int = Field(default=3600, description="Presigned upload_part URL TTL")

    def get_access_key(self) -> Optional[str]:
        """Get access key as plain string"""
        return self.access_key.get_secret_value() if self.access_key else None

    def get_secret_key(self) -> Optional[str]:
        """Get secret key as plain string"""
        return self.secret_key.get_secret_value() if self.secret_key else None


class SecretsConfig(BaseConfig):
    """AWS Secrets Manager configuration."""

    model_config = SettingsConfigDict(
        **BASE_CONFIG_DICT,
        env_prefix='SECRETS_',
    )

    region: str = Field(default="us-east-1")
    endpoint_url: Optional[str] = Field(default=None, description="Override endpoint (localstack)")


@lru_cache(maxsize=1)
def get_storage_config() -> StorageConfig:
    """Get storage configuration singleton (cached)."""
    return StorageConfig()


def reset_storage_config() -> None:
    """Reset config singleton (for testing)."""
    get_storage_config.cache_clear()


@lru_cache(maxsize=1)
def get_secrets_config() -> SecretsConfig:
    """Get secrets configuration singleton (cached)."""
    return SecretsConfig()


def reset_secrets_config() -> None:
    """Reset config singleton (for testing)."""
    get_secrets_config.cache_clear()
