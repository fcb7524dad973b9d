# =============================================================================
# File: engage/infra/secrets/aws_secret_provider.py
# Description: SecretProvider over AWS Secrets Manager
# =============================================================================

from __future__ import annotations

import asyncio
from typing import Dict, Optional

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from engage.common.exceptions.exceptions import InfrastructureError
from engage.config.logging_config import get_logger
from engage.config.reliability_config import ReliabilityConfigs
from engage.config.storage_config import SecretsConfig, get_secrets_config
from engage.infra.reliability.retry import retry_async

log = get_logger("engage.infra.secrets.aws")

TERMINAL_ERROR_CODES = frozenset({"ResourceNotFoundException", "AccessDeniedException", "InvalidParameterException"})


def _is_transient(error: Exception) -> bool:
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code") not in TERMINAL_ERROR_CODES
    return True


class SecretNotFoundError(InfrastructureError):
    def __init__(self, name: str):
        super().__init__(f"Secret not found or empty: {name}")
        self.name = name


class AwsSecretProvider:
    """Reads secret strings once per process; values are memoized."""

    def __init__(self, config: Optional[SecretsConfig] = None):
        self.config = config or get_secrets_config()
        self.session = aioboto3.Session()
        self._values: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get_secret(self, name: str) -> str:
        if name in self._values:
            return self._values[name]

        async with self._lock:
            if name not in self._values:
                self._values[name] = await self._fetch(name)
        return self._values[name]

    async def _fetch(self, name: str) -> str:
        async def _do_fetch() -> Optional[str]:
            async with self.session.client(
                service_name="secretsmanager",
                region_name=self.config.region,
                endpoint_url=self.config.endpoint_url,
            ) as client:
                response = await client.get_secret_value(SecretId=name)
                return response.get("SecretString")

        try:
            value = await retry_async(
                _do_fetch,
                retry_config=ReliabilityConfigs.secrets_retry().model_copy(update={"retry_condition": _is_transient}),
                context=f"secretsmanager {name}"
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ResourceNotFoundException":
                raise SecretNotFoundError(name) from e
            log.error(f"Failed to read secret {name}: {e}")
            raise InfrastructureError(f"Failed to read secret {name}: {e}") from e
        except BotoCoreError as e:
            log.error(f"Failed to read secret {name}: {e}")
            raise InfrastructureError(f"Failed to read secret {name}: {e}") from e

        if not value:
            raise SecretNotFoundError(name)

        log.info(f"Secret {name} loaded")
        return value
