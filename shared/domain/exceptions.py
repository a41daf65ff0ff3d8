"""
Rich Domain Exceptions

Exception hierarchy for enrollment domain errors. Each exception carries an
error code, a coarse category used by callers to map it to a typed result,
and whether a retry may succeed.
"""

from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class ErrorCode(str, Enum):
    """Standard error codes for domain exceptions."""

    # Domain errors
    DOMAIN_VALIDATION_ERROR = "DOMAIN_VALIDATION_ERROR"
    BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"
    ENTITY_NOT_FOUND = "ENTITY_NOT_FOUND"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"

    # Authorization
    AUTHORIZATION_DENIED = "AUTHORIZATION_DENIED"

    # External collaborators
    EXTERNAL_SERVICE_TIMEOUT = "EXTERNAL_SERVICE_TIMEOUT"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"

    # Backing store
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    STORE_TIMEOUT = "STORE_TIMEOUT"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


class ErrorCategory(str, Enum):
    """Caller-facing error categories."""

    VALIDATION = "validation"
    ELIGIBILITY = "eligibility"
    CONFLICT = "conflict"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    SYSTEM = "system"


class DomainException(Exception):
    """
    Base class for all domain exceptions.

    Provides structured error information with error codes, context, and metadata.
    """

    category: ErrorCategory = ErrorCategory.SYSTEM
    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        """
        Initialize domain exception.

        Args:
            message: Human-readable error message
            error_code: Standard error code
            context: Additional context data
            cause: Underlying exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.context = context or {}
        self.cause = cause

        log = logger.error if self.category is ErrorCategory.SYSTEM else logger.warning
        log(
            "Domain exception raised",
            error_code=error_code.value,
            category=self.category.value,
            message=message,
            context=context,
            exception_type=type(self).__name__,
        )

    @property
    def code(self) -> str:
        """Lower-case machine code exposed in typed results."""
        return self.context.get("code") or self.error_code.value.lower()

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for result payloads."""
        result = {
            "error": self.error_code.value,
            "category": self.category.value,
            "message": self.message,
            "retryable": self.retryable,
            "type": type(self).__name__,
        }
        if self.context:
            result["context"] = self.context
        return result


class ValidationError(DomainException):
    """Raised when domain validation fails."""

    category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        field: str | None = None,
        value: Any | None = None,
        code: str | None = None,
        **kwargs
    ):
        context = kwargs.pop("context", {})
        if field:
            context["field"] = field
        if value is not None:
            context["value"] = str(value)
        if code:
            context["code"] = code

        super().__init__(
            message=message,
            error_code=ErrorCode.DOMAIN_VALIDATION_ERROR,
            context=context,
            **kwargs
        )


class BusinessRuleViolationError(DomainException):
    """Raised when a business rule is violated."""

    category = ErrorCategory.CONFLICT

    def __init__(
        self,
        message: str,
        rule_name: str | None = None,
        **kwargs
    ):
        context = kwargs.pop("context", {})
        if rule_name:
            context["rule_name"] = rule_name
            context.setdefault("code", rule_name)

        super().__init__(
            message=message,
            error_code=ErrorCode.BUSINESS_RULE_VIOLATION,
            context=context,
            **kwargs
        )


class EntityNotFoundError(DomainException):
    """Raised when an entity is not found."""

    category = ErrorCategory.NOT_FOUND

    def __init__(
        self,
        entity_type: str,
        entity_id: str | None = None,
        **kwargs
    ):
        message = kwargs.pop("message", None) or f"{entity_type} not found"
        if entity_id:
            message += f" (ID: {entity_id})"

        context = kwargs.pop("context", {})
        context["entity_type"] = entity_type
        context.setdefault("code", f"{entity_type.lower().replace(' ', '_')}_not_found")
        if entity_id:
            context["entity_id"] = entity_id

        super().__init__(
            message=message,
            error_code=ErrorCode.ENTITY_NOT_FOUND,
            context=context,
            **kwargs
        )


class InvalidStateTransitionError(DomainException):
    """Raised when an operation does not apply to the entity's current state."""

    category = ErrorCategory.CONFLICT

    def __init__(
        self,
        message: str,
        current_state: str | None = None,
        code: str | None = None,
        **kwargs
    ):
        context = kwargs.pop("context", {})
        if current_state:
            context["current_state"] = current_state
        if code:
            context["code"] = code

        super().__init__(
            message=message,
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            context=context,
            **kwargs
        )


class AuthorizationError(DomainException):
    """Raised when authorization is denied."""

    category = ErrorCategory.AUTHORIZATION

    def __init__(
        self,
        message: str = "Authorization denied",
        resource: str | None = None,
        action: str | None = None,
        **kwargs
    ):
        context = kwargs.pop("context", {})
        if resource:
            context["resource"] = resource
        if action:
            context["action"] = action

        super().__init__(
            message=message,
            error_code=ErrorCode.AUTHORIZATION_DENIED,
            context=context,
            **kwargs
        )


class ExternalServiceError(DomainException):
    """Raised when an external collaborator (facts provider) fails or times out."""

    retryable = True

    def __init__(
        self,
        service_name: str,
        message: str | None = None,
        timeout: bool = False,
        **kwargs
    ):
        error_code = ErrorCode.EXTERNAL_SERVICE_TIMEOUT if timeout else ErrorCode.EXTERNAL_SERVICE_ERROR
        default_message = f"{service_name} service {'timed out' if timeout else 'returned an error'}"

        context = kwargs.pop("context", {})
        context["service_name"] = service_name
        context["timeout"] = timeout

        super().__init__(
            message=message or default_message,
            error_code=error_code,
            context=context,
            **kwargs
        )
        self.service_name = service_name
        self.timeout = timeout


class StoreUnavailableError(DomainException):
    """Raised when the backing store rejects or fails an operation."""

    retryable = True

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        **kwargs
    ):
        context = kwargs.pop("context", {})
        if operation:
            context["operation"] = operation

        super().__init__(
            message=message,
            error_code=ErrorCode.STORE_UNAVAILABLE,
            context=context,
            **kwargs
        )


class StoreTimeoutError(DomainException):
    """Raised when a store call or a class lock wait exceeds its bound."""

    retryable = True

    def __init__(
        self,
        operation: str,
        timeout_seconds: float,
        **kwargs
    ):
        context = kwargs.pop("context", {})
        context["operation"] = operation
        context["timeout_seconds"] = timeout_seconds

        super().__init__(
            message=f"Store operation '{operation}' exceeded {timeout_seconds}s",
            error_code=ErrorCode.STORE_TIMEOUT,
            context=context,
            **kwargs
        )


class ConfigurationError(DomainException):
    """Raised when the engine is wired with an unusable configuration."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.CONFIGURATION_ERROR,
            **kwargs
        )
