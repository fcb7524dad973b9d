# =============================================================================
# File: engage/config/reliability_config.py
# Description: Retry configuration for vendor, storage and persistence calls
# =============================================================================

from typing import Optional, Callable

from pydantic import BaseModel, ConfigDict


class RetryConfig(BaseModel):
    """Retry configuration."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    max_attempts: int = 3
    initial_delay_ms: int = 100
    max_delay_ms: int = 10000
    backoff_factor: float = 2.0
    jitter: bool = True
    exponential_base: Optional[float] = None
    jitter_type: str = "full"
    retry_condition: Optional[Callable[[Exception], bool]] = None


# =============================================================================
# Pre-configured Settings
# =============================================================================

class ReliabilityConfigs:
    """Pre-configured retry settings per integration"""

    @staticmethod
    def acs_retry() -> RetryConfig:
        # ACS throttles per resource; back off generously on 429
        return RetryConfig(
            max_attempts=3,
            initial_delay_ms=500,
            max_delay_ms=15000,
            backoff_factor=2.0,
            jitter=True,
            jitter_type="full"
        )

    @staticmethod
    def directory_retry() -> RetryConfig:
        return RetryConfig(
            max_attempts=3,
            initial_delay_ms=200,
            max_delay_ms=5000,
            backoff_factor=2.0,
            jitter=True
        )

    @staticmethod
    def storage_retry() -> RetryConfig:
        return RetryConfig(
            max_attempts=3,
            initial_delay_ms=200,
            max_delay_ms=5000,
            backoff_factor=2.0,
            jitter=True,
            jitter_type="equal"
        )

    @staticmethod
    def secrets_retry() -> RetryConfig:
        return RetryConfig(
            max_attempts=3,
            initial_delay_ms=200,
            max_delay_ms=3000,
            backoff_factor=2.0,
            jitter=True
        )

    @staticmethod
    def postgres_retry() -> RetryConfig:
        return RetryConfig(
            max_attempts=3,
            initial_delay_ms=100,
            max_delay_ms=5000,
            backoff_factor=2.0,
            jitter=True
        )

    @staticmethod
    def redis_retry() -> RetryConfig:
        return RetryConfig(
            max_attempts=2,
            initial_delay_ms=50,
            max_delay_ms=1000,
            backoff_factor=2.0,
            jitter=True
        )

    @staticmethod
    def vendor_confirm_retry(attempts: int, delay_ms: int) -> RetryConfig:
        """Re-list confirmation after a participant add (attempts excludes the first listing)."""
        return RetryConfig(
            max_attempts=attempts + 1,
            initial_delay_ms=delay_ms,
            max_delay_ms=delay_ms * 8,
            backoff_factor=2.0,
            jitter=False
        )
