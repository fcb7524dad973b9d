# =============================================================================
# File: engage/config/directory_config.py
# Description: Employee/branch/job directory service configuration
# =============================================================================

from functools import lru_cache

from pydantic import Field, SecretStr
from pydantic_settings import SettingsConfigDict

from engage.common.base.base_config import BaseConfig, BASE_CONFIG_DICT


class DirectoryConfig(BaseConfig):
    """Directory (HR master data) HTTP service configuration."""

    model_config = SettingsConfigDict(
        **BASE_CONFIG_DICT,
        env_prefix='DIRECTORY_',
    )

    base_url: str = Field(default="http://localhost:8081/api/v1")
    api_key: SecretStr = Field(default=SecretStr(""))
    timeout_seconds: float = Field(default=15.0)
    enable_retry: bool = Field(default=True)

    def get_api_key(self) -> str:
        return self.api_key.get_secret_value()


@lru_cache(maxsize=1)
def get_directory_config() -> DirectoryConfig:
    """Get directory configuration singleton (cached)."""
    return DirectoryConfig()


def reset_directory_config() -> None:
    """Reset config singleton (for testing)."""
    get_directory_config.cache_clear()
