"""Error handling framework for planning, execution and deployment."""

from typing import Optional, Dict, Any, List, TYPE_CHECKING
from enum import Enum
from dataclasses import dataclass, asdict
from vmship.utils.logging import get_logger

if TYPE_CHECKING:
    from vmship.orchestrator.executor import ExecutionReport

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """Categories of errors that can occur."""
    CONFIGURATION = "configuration"
    DEPENDENCY = "dependency"
    STATE = "state"
    PROVIDER = "provider"
    NETWORK = "network"
    CHANNEL = "channel"
    DEPLOYMENT = "deployment"
    HEALTH = "health"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Run cannot continue
    ERROR = "error"  # Action failed but independent work can continue
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"  # Informational message


@dataclass
class ErrorContext:
    """Context information for an error."""
    resource_id: Optional[str] = None
    resource_kind: Optional[str] = None
    operation: Optional[str] = None
    remote_id: Optional[str] = None
    host: Optional[str] = None
    provider_code: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class VmshipError(Exception):
    """Base exception for all engine errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize error.

        Args:
            message: Human-readable error message
            category: Error category
            severity: Error severity
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"{self.severity.value.upper()}: {self.message}"]

        if self.context.resource_id:
            lines.append(f"   Resource: {self.context.resource_id}")
        if self.context.host:
            lines.append(f"   Host: {self.context.host}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")
        if self.cause:
            lines.append(f"   Cause: {self.cause}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization.

        Returns:
            Dictionary representation of the error
        """
        return {
            'type': type(self).__name__,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'context': {k: v for k, v in asdict(self.context).items() if v is not None},
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ConfigurationError(VmshipError):
    """Error in configuration file or settings."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class DependencyError(VmshipError):
    """Error in the declared resource graph. Raised before any remote call."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        super().__init__(
            message,
            category=ErrorCategory.DEPENDENCY,
            **kwargs
        )


class CycleError(DependencyError):
    """The declared resources form a dependency cycle."""

    def __init__(self, cycle: List[str], **kwargs):
        self.cycle = cycle
        super().__init__(
            f"Circular dependency detected: {' -> '.join(cycle)}",
            context=ErrorContext(resource_id=cycle[0] if cycle else None),
            suggestions=['Remove one of the depends_on entries or references along the cycle'],
            **kwargs
        )


class UnresolvedReferenceError(DependencyError):
    """A resource depends on or references an identifier that is not declared."""

    def __init__(self, missing_id: str, resource_id: Optional[str] = None, **kwargs):
        self.missing_id = missing_id
        self.resource_id = resource_id
        if resource_id:
            message = f"Resource '{resource_id}' references undeclared resource '{missing_id}'"
        else:
            message = f"Reference to undeclared resource '{missing_id}'"
        kwargs.setdefault('context', ErrorContext(resource_id=resource_id))
        super().__init__(message, **kwargs)


class DuplicateResourceError(DependencyError):
    """Two declared resources share a logical identifier."""

    def __init__(self, resource_id: str, **kwargs):
        self.resource_id = resource_id
        super().__init__(
            f"Resource '{resource_id}' is declared more than once",
            context=ErrorContext(resource_id=resource_id),
            **kwargs
        )


class StateError(VmshipError):
    """Error related to state management."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ConflictError(StateError):
    """Stored version does not match the version the caller expected."""

    def __init__(self, resource_id: str, expected_version: int, actual_version: int, **kwargs):
        self.resource_id = resource_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"State conflict on '{resource_id}': expected version {expected_version}, "
            f"found {actual_version}",
            context=ErrorContext(resource_id=resource_id),
            **kwargs
        )


class NotFoundError(StateError):
    """No state record exists for the identifier."""

    def __init__(self, resource_id: str, **kwargs):
        self.resource_id = resource_id
        super().__init__(
            f"No state record for '{resource_id}'",
            context=ErrorContext(resource_id=resource_id),
            **kwargs
        )


class ConcurrentModificationError(VmshipError):
    """Another run modified the state concurrently; the apply was aborted."""

    def __init__(
        self,
        conflict: ConflictError,
        report: Optional['ExecutionReport'] = None,
        **kwargs
    ):
        self.conflict = conflict
        self.report = report
        super().__init__(
            f"Concurrent modification detected: {conflict.message}",
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.CRITICAL,
            context=conflict.context,
            cause=conflict,
            suggestions=[
                'Another apply is running against the same state',
                'Re-run plan and apply from a fresh state load once it has finished',
            ],
            **kwargs
        )


class ProviderError(VmshipError):
    """Failure of a remote provider call."""

    def __init__(self, message: str, retryable: bool = False, **kwargs):
        self.retryable = retryable
        kwargs.setdefault('category', ErrorCategory.PROVIDER)
        super().__init__(message, **kwargs)


class ProviderTimeoutError(ProviderError):
    """A provider call did not finish within the caller's timeout."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('retryable', True)
        kwargs.setdefault('category', ErrorCategory.NETWORK)
        super().__init__(message, **kwargs)


class ResourceNotFoundError(ProviderError):
    """The remote resource does not exist."""


class ChannelError(VmshipError):
    """Failure of the remote execution channel."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.CHANNEL)
        super().__init__(message, **kwargs)


class ChannelTimeoutError(ChannelError):
    """A remote command did not finish within its timeout."""


class DeploymentError(VmshipError):
    """Failure while replacing the container on the target host."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.DEPLOYMENT)
        super().__init__(message, **kwargs)


class HealthCheckError(DeploymentError):
    """The service did not become healthy within the probe budget."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.HEALTH)
        super().__init__(message, **kwargs)


class TargetResolutionError(DeploymentError):
    """The target host could not be discovered from state."""


class ErrorHandler:
    """Converts arbitrary exceptions raised during execution into engine errors."""

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> VmshipError:
        """Handle an exception and convert to VmshipError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            VmshipError with categorization and suggestions
        """
        context = context or ErrorContext()

        if isinstance(error, VmshipError):
            # Fill in identifiers the raiser did not know about
            if error.context.resource_id is None:
                error.context.resource_id = context.resource_id
            if error.context.operation is None:
                error.context.operation = context.operation
            return error

        if isinstance(error, (ConnectionError, TimeoutError)):
            return ProviderError(
                f"Network error: {error}",
                retryable=True,
                category=ErrorCategory.NETWORK,
                context=context,
                cause=error,
                suggestions=[
                    'Check network connectivity to the provider endpoint',
                    'Enable a retry policy for transient failures',
                ]
            )

        logger.debug(f"Unclassified {type(error).__name__}", exc_info=error)
        return ProviderError(
            f"{type(error).__name__}: {error}",
            context=context,
            cause=error,
            suggestions=['Check logs for more details']
        )


# Global error handler instance
error_handler = ErrorHandler()
