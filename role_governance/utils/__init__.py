"""
Shared utilities for the role governance engine: configuration, structured
logging, the exception hierarchy, timestamps and Prometheus metrics.
"""

from .config import GovernanceConfig, get_config
from .error_handling import (
    AuthorizationError,
    BulkCheckLimitExceededError,
    ConfigurationError,
    GovernanceError,
    NotFoundError,
    RoleChangeConsistencyError,
    RoleRequestStateError,
    StorageError,
    ValidationError,
    storage_operation,
    wrap_storage_errors,
)
from .logging import bind_request_context, clear_request_context, configure_logging, get_logger
from .monitoring import GovernanceMetrics

__all__ = [
    'GovernanceConfig',
    'get_config',
    'GovernanceError',
    'ValidationError',
    'BulkCheckLimitExceededError',
    'AuthorizationError',
    'NotFoundError',
    'RoleRequestStateError',
    'StorageError',
    'RoleChangeConsistencyError',
    'ConfigurationError',
    'storage_operation',
    'wrap_storage_errors',
    'configure_logging',
    'get_logger',
    'bind_request_context',
    'clear_request_context',
    'GovernanceMetrics',
]
