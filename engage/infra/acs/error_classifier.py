# =============================================================================
# File: engage/infra/acs/error_classifier.py
# Description: Error classification for the ACS REST API
# =============================================================================

from engage.infra.acs.exceptions import (
    AcsAuthenticationError,
    AcsBadRequestError,
    AcsClientError,
    AcsNetworkError,
    AcsNotFoundError,
    AcsRateLimitError,
    AcsServerError,
    AcsTimeoutError,
)


def classify_acs_error(error: Exception) -> str:
    """
    Classify an ACS error for the retry decision.

    Returns:
        One of "auth_error", "validation_error", "not_found", "rate_limit",
        "server_error", "network_error", "timeout", "client_error", "unknown"
    """
    if isinstance(error, AcsAuthenticationError):
        return "auth_error"

    if isinstance(error, AcsBadRequestError):
        return "validation_error"

    if isinstance(error, AcsNotFoundError):
        return "not_found"

    if isinstance(error, AcsRateLimitError):
        return "rate_limit"

    if isinstance(error, AcsClientError):
        return "client_error"

    if isinstance(error, AcsServerError):
        return "server_error"

    if isinstance(error, AcsNetworkError):
        return "network_error"

    if isinstance(error, AcsTimeoutError):
        return "timeout"

    return "unknown"


def should_retry_acs(error: Exception) -> bool:
    """
    Retry throttling, server errors, network errors and timeouts only.

    Anything else (including unknown errors) is terminal: a blind retry of
    a participant add or thread create could duplicate vendor state.
    """
    return classify_acs_error(error) in ("rate_limit", "server_error", "network_error", "timeout")
