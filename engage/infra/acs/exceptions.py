# =============================================================================
# File: engage/infra/acs/exceptions.py
# Description: Exception hierarchy for the Azure Communication Services REST API
# =============================================================================

from typing import Optional


class AcsError(Exception):
    """Base exception for ACS API errors"""

    def __init__(self, message: str, status_code: Optional[int] = None, retry_after: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


# =============================================================================
# Client Errors (4xx) - Don't retry
# =============================================================================

class AcsClientError(AcsError):
    """Base class for 4xx client errors"""
    pass


class AcsBadRequestError(AcsClientError):
    """400 Bad Request"""
    pass


class AcsAuthenticationError(AcsClientError):
    """401/403 - signature, access key or bearer token rejected"""
    pass


class AcsNotFoundError(AcsClientError):
    """404 Not Found - identity or thread doesn't exist"""
    pass


class AcsRateLimitError(AcsClientError):
    """429 Too Many Requests (retry with backoff)"""
    pass


# =============================================================================
# Server / Network Errors - Retry
# =============================================================================

class AcsServerError(AcsError):
    """5xx server errors"""
    pass


class AcsNetworkError(AcsError):
    """Network connectivity errors"""
    pass


class AcsTimeoutError(AcsError):
    """Request timeout"""
    pass
