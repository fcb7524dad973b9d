# engage/common/exceptions/exceptions.py
# =============================================================================
# Custom exceptions for the Engage platform
# =============================================================================


class EngageException(Exception):
    """Base exception for Engage platform"""
    pass


class ValidationError(EngageException):
    """Raised when validation fails"""
    pass


class NotFoundError(EngageException):
    """Raised when a resource is not found"""
    pass


# Alias for compatibility
ResourceNotFoundError = NotFoundError


class ConflictError(EngageException):
    """Raised when there's a conflict (e.g., duplicate)"""
    pass


class DomainError(EngageException):
    """Raised for domain-specific errors"""
    pass


class InfrastructureError(EngageException):
    """Raised for infrastructure errors"""
    pass
