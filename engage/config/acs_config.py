# =============================================================================
# File: engage/config/acs_config.py
# Description: Azure Communication Services configuration
# =============================================================================

from functools import lru_cache
from typing import Optional, Tuple

from pydantic import Field, SecretStr
from pydantic_settings import SettingsConfigDict

from engage.common.base.base_config import BaseConfig, BASE_CONFIG_DICT


class AcsConfig(BaseConfig):
    """
    ACS configuration.

    Credentials come either from ACS_ENDPOINT + ACS_ACCESS_KEY or from a
    connection string stored in the secrets manager under
    ACS_CONNECTION_STRING_SECRET_NAME.
    """

    model_config = SettingsConfigDict(
        **BASE_CONFIG_DICT,
        env_prefix='ACS_',
    )

    endpoint: str = Field(default="", description="https://<resource>.communication.azure.com")
    access_key: SecretStr = Field(default=SecretStr(""), description="Base64 resource access key")
    connection_string_secret_name: Optional[str] = Field(
        default=None,
        description="Secret holding 'endpoint=...;accesskey=...'"
    )

    root_identity: str = Field(
        default="",
        description="ACS identity of the root user; empty = resolve from the directory"
    )

    identity_api_version: str = Field(default="2023-10-01")
    chat_api_version: str = Field(default="2021-09-07")
    token_scopes: Tuple[str, ...] = Field(default=("chat",))
    token_expires_in_minutes: int = Field(default=1440, ge=60, le=1440)
    participant_page_size: int = Field(default=200, ge=1, le=250)

    timeout_seconds: float = Field(default=30.0)
    connect_timeout_seconds: float = Field(default=5.0)
    enable_retry: bool = Field(default=True)

    def get_access_key(self) -> str:
        """Get access key as plain string"""
        return self.access_key.get_secret_value()

    def has_static_credentials(self) -> bool:
        return bool(self.endpoint and self.get_access_key())


def parse_connection_string(connection_string: str) -> Tuple[str, str]:
    """Split 'endpoint=https://...;accesskey=...' into (endpoint, access_key)."""
    parts = {}
    for item in connection_string.split(";"):
        if not item.strip() or "=" not in item:
            continue
        key, value = item.split("=", 1)
        parts[key.strip().lower()] = value.strip()

    endpoint = parts.get("endpoint", "").rstrip("/")
    access_key = parts.get("accesskey", "")
    if not endpoint or not access_key:
        raise ValueError("ACS connection string must contain endpoint and accesskey")
    return endpoint, access_key


def is_acs_configured() -> bool:
    config = get_acs_config()
    return config.has_static_credentials() or bool(config.connection_string_secret_name)


@lru_cache(maxsize=1)
def get_acs_config() -> AcsConfig:
    """Get ACS configuration singleton (cached)."""
    return AcsConfig()


def reset_acs_config() -> None:
    """Reset config singleton (for testing)."""
    get_acs_config.cache_clear()
