"""Utility modules for logging, errors and retries."""

from vmship.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    VmshipError,
    ConfigurationError,
    DependencyError,
    CycleError,
    UnresolvedReferenceError,
    DuplicateResourceError,
    StateError,
    ConflictError,
    NotFoundError,
    ConcurrentModificationError,
    ProviderError,
    ProviderTimeoutError,
    ResourceNotFoundError,
    ChannelError,
    ChannelTimeoutError,
    DeploymentError,
    HealthCheckError,
    TargetResolutionError,
    ErrorHandler,
    error_handler
)
from vmship.utils.logging import get_logger, log_context, setup_logging
from vmship.utils.retry import RetryPolicy

__all__ = [
    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'VmshipError',
    'ConfigurationError',
    'DependencyError',
    'CycleError',
    'UnresolvedReferenceError',
    'DuplicateResourceError',
    'StateError',
    'ConflictError',
    'NotFoundError',
    'ConcurrentModificationError',
    'ProviderError',
    'ProviderTimeoutError',
    'ResourceNotFoundError',
    'ChannelError',
    'ChannelTimeoutError',
    'DeploymentError',
    'HealthCheckError',
    'TargetResolutionError',
    'ErrorHandler',
    'error_handler',

    # Logging
    'get_logger',
    'setup_logging',
    'log_context',

    # Retry
    'RetryPolicy',
]
