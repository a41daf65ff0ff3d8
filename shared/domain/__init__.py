"""
Domain Primitives

Exception hierarchy and clock shared by the enrollment components.
"""

from shared.domain.clock import Clock, utc_now
from shared.domain.exceptions import (
    AuthorizationError,
    BusinessRuleViolationError,
    ConfigurationError,
    DomainException,
    EntityNotFoundError,
    ErrorCategory,
    ErrorCode,
    ExternalServiceError,
    InvalidStateTransitionError,
    StoreTimeoutError,
    StoreUnavailableError,
    ValidationError,
)

__all__ = [
    "Clock",
    "utc_now",
    "DomainException",
    "ErrorCode",
    "ErrorCategory",
    "ValidationError",
    "BusinessRuleViolationError",
    "EntityNotFoundError",
    "InvalidStateTransitionError",
    "AuthorizationError",
    "ExternalServiceError",
    "StoreUnavailableError",
    "StoreTimeoutError",
    "ConfigurationError",
]
