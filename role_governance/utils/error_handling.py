"""
Error handling and exception hierarchy for the role governance engine.

This module provides the exception taxonomy used by every engine component:
- Validation errors for malformed input outside the role-change workflow
- Authorization ("forbidden") errors, always raised before any mutation
- Not-found errors for unknown requests, assignments and suspicious activities
- Storage errors wrapping persistence failures with the failing operation
- Consistency errors for the revoke-succeeded/assign-failed emergency

Role-change *validation* failures are deliberately not part of this hierarchy:
they are reported as structured data on the validation result.

Integration Points:
- role_governance.utils.logging for structured error logging
- the host API layer, which maps ``status_code`` onto HTTP responses and uses
  ``user_message`` so storage errors never leak internal detail
"""

import uuid
from contextlib import contextmanager
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar

from .datetime import now_utc
from .logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


class ErrorSeverity(Enum):
    """Error severity levels for monitoring and alerting."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for classification and handling."""
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    BUSINESS_LOGIC = "business_logic"
    DATABASE = "database"
    CONSISTENCY = "consistency"
    CONFIGURATION = "configuration"


# ==================== CUSTOM EXCEPTION HIERARCHY ====================

class GovernanceError(Exception):
    """
    Base exception class for all governance engine errors.

    Provides common error attributes so the surrounding API layer can translate
    any engine failure into a response without inspecting concrete types.
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.BUSINESS_LOGIC,
        user_message: Optional[str] = None,
        status_code: int = 500,
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        self.severity = severity
        self.category = category
        self.user_message = user_message or "An error occurred while processing your request"
        self.status_code = status_code
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self.timestamp = now_utc()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for logging and response."""
        return {
            'error_code': self.error_code,
            'message': self.message,
            'user_message': self.user_message,
            'severity': self.severity.value,
            'category': self.category.value,
            'status_code': self.status_code,
            'correlation_id': self.correlation_id,
            'timestamp': self.timestamp.isoformat(),
            'details': self.details,
            'type': self.__class__.__name__,
        }


class ValidationError(GovernanceError):
    """Raised when input outside the role-change workflow is malformed."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.LOW)
        kwargs.setdefault('user_message', message)
        super().__init__(
            message=message,
            category=ErrorCategory.VALIDATION,
            status_code=400,
            **kwargs
        )


class BulkCheckLimitExceededError(ValidationError):
    """Raised before any evaluation when a bulk permission check is too large."""

    def __init__(self, limit: int, requested: int, **kwargs):
        super().__init__(f"Bulk check limit exceeded: {limit}", **kwargs)
        self.limit = limit
        self.requested = requested
        self.details.update({'limit': limit, 'requested': requested})


class AuthorizationError(GovernanceError):
    """Raised when the acting user lacks the permission for an operation."""

    def __init__(self, message: str = "Access denied", permission: Optional[str] = None, **kwargs):
        super().__init__(
            message=message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.AUTHORIZATION,
            status_code=403,
            user_message="You don't have permission to perform this action",
            **kwargs
        )
        if permission:
            self.details['required_permission'] = permission


class NotFoundError(GovernanceError):
    """Raised when a referenced record does not exist."""

    def __init__(self, message: str, resource_type: Optional[str] = None,
                 resource_id: Optional[str] = None, **kwargs):
        super().__init__(
            message=message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.NOT_FOUND,
            status_code=404,
            user_message="The requested record was not found",
            **kwargs
        )
        if resource_type:
            self.details['resource_type'] = resource_type
        if resource_id:
            self.details['resource_id'] = resource_id


class RoleRequestStateError(GovernanceError):
    """Raised when a role request is not in a state that allows the operation."""

    def __init__(self, message: str, request_id: Optional[str] = None,
                 status: Optional[str] = None, **kwargs):
        super().__init__(
            message=message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.BUSINESS_LOGIC,
            status_code=409,
            user_message=message,
            **kwargs
        )
        if request_id:
            self.details['request_id'] = request_id
        if status:
            self.details['status'] = status


class StorageError(GovernanceError):
    """Raised when the persistence layer fails."""

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        super().__init__(
            message=message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.DATABASE,
            status_code=500,
            user_message="A storage error occurred. Please try again later",
            **kwargs
        )
        self.operation = operation
        if operation:
            self.details['operation'] = operation


class RoleChangeConsistencyError(GovernanceError):
    """
    Raised when a role change revoked the old assignment but could neither
    create the new assignment nor restore the old one.

    The subject user is left without the role they held; this requires manual
    intervention and is always logged at critical level.
    """

    def __init__(self, message: str, user_id: Optional[str] = None,
                 revoked_assignment_id: Optional[str] = None, **kwargs):
        super().__init__(
            message=message,
            severity=ErrorSeverity.CRITICAL,
            category=ErrorCategory.CONSISTENCY,
            status_code=500,
            user_message="A role change could not be completed. An administrator has been alerted",
            **kwargs
        )
        self.user_id = user_id
        self.revoked_assignment_id = revoked_assignment_id
        self.details.update({
            'user_id': user_id,
            'revoked_assignment_id': revoked_assignment_id,
        })


class ConfigurationError(GovernanceError):
    """Raised for invalid engine configuration."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message=message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            status_code=500,
            **kwargs
        )


# ==================== STORAGE ERROR WRAPPING ====================

def storage_error_message(operation: str, error: BaseException) -> str:
    return f"Failed to {operation}: {error}"


@contextmanager
def storage_operation(operation: str) -> Iterator[None]:
    """
    Context manager converting persistence failures into ``StorageError``.

    Governance errors raised inside the block pass through untouched so that
    not-found and consistency errors keep their distinct kinds.

    Example:
        with storage_operation("store role audit entry"):
            repository.insert_entry(entry)
    """
    try:
        yield
    except GovernanceError:
        raise
    except Exception as exc:
        logger.error("Storage operation failed", operation=operation,
                     error_type=type(exc).__name__, error=str(exc))
        raise StorageError(storage_error_message(operation, exc), operation=operation) from exc


def wrap_storage_errors(operation: str) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator form of :func:`storage_operation`."""

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            with storage_operation(operation):
                return func(*args, **kwargs)
        return wrapper
    return decorator
