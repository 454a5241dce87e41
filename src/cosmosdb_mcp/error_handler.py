"""Error handling for CosmosDB MCP.

This module provides the exception hierarchy shared by every component and the
boundary handler that turns any exception into a uniform tool result.

Key Features:
- Custom exception hierarchy with structured metadata
- Conversion of driver and unexpected exceptions into ``BackendError``
- Structured error logging and error metrics
- ``{"success": False, "error": ...}`` results so no exception reaches the transport
"""

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


class ErrorCategory(Enum):
    """Categories of errors for classification and handling."""
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    NOT_ACTIVE = "not_active"
    NO_DEFAULT = "no_default"
    MODIFICATIONS_DISABLED = "modifications_disabled"
    SCHEMA = "schema"
    BACKEND = "backend"


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class CosmosMCPError(Exception):
    """Base exception for all CosmosDB MCP errors.

    Carries structured error information: category, severity, the connection
    the failure belongs to and free-form metadata.
    """

    def __init__(self,
                 message: str,
                 category: ErrorCategory,
                 severity: ErrorSeverity = ErrorSeverity.MEDIUM,
                 connection_id: Optional[str] = None,
                 metadata: Optional[Dict[str, Any]] = None,
                 cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.connection_id = connection_id
        self.metadata = metadata or {}
        self.cause = cause
        self.timestamp = time.time()

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging and serialization."""
        return {
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'connection_id': self.connection_id,
            'metadata': self.metadata,
            'cause': str(self.cause) if self.cause else None,
            'timestamp': self.timestamp
        }

    def __str__(self) -> str:
        return f"[{self.category.value.upper()}] {self.message}"


class ConfigError(CosmosMCPError):
    """Malformed or unreadable configuration source."""

    def __init__(self, message: str, source: Optional[str] = None, **kwargs):
        metadata = kwargs.pop('metadata', {})
        if source:
            metadata['source'] = source
        super().__init__(
            message=message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.HIGH,
            metadata=metadata,
            **kwargs
        )


class ValidationError(CosmosMCPError):
    """Missing or invalid required fields on a registration or a write payload."""

    def __init__(self, message: str, field_name: Optional[str] = None, **kwargs):
        metadata = kwargs.pop('metadata', {})
        if field_name:
            metadata['field'] = field_name
        super().__init__(
            message=message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.LOW,
            metadata=metadata,
            **kwargs
        )


class NotFoundError(CosmosMCPError):
    """Unknown connection id, container or document."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message=message, category=ErrorCategory.NOT_FOUND,
                         severity=ErrorSeverity.LOW, **kwargs)


class NotActiveError(CosmosMCPError):
    """The connection id is registered but has no live connection."""

    def __init__(self, connection_id: str, active_ids: List[str], **kwargs):
        active = ", ".join(active_ids) if active_ids else "none"
        super().__init__(
            message=(f"Connection '{connection_id}' is not connected. "
                     f"Active connections: {active}"),
            category=ErrorCategory.NOT_ACTIVE,
            connection_id=connection_id,
            metadata={'active_ids': list(active_ids)},
            **kwargs
        )


class NoDefaultError(CosmosMCPError):
    """No connection id was given and no default connection exists."""

    def __init__(self, message: str = "No connection_id given and no default connection is configured",
                 **kwargs):
        super().__init__(message=message, category=ErrorCategory.NO_DEFAULT,
                         severity=ErrorSeverity.HIGH, **kwargs)


class ModificationsDisabledError(CosmosMCPError):
    """A write operation was blocked by the modification policy."""

    def __init__(self, connection_id: str, operation: str, **kwargs):
        super().__init__(
            message=(f"Modifications are disabled for connection '{connection_id}': "
                     f"operation '{operation}' is not allowed. Set allowModifications "
                     f"for this connection or COSMOS_ALLOW_MODIFICATIONS=true to enable writes."),
            category=ErrorCategory.MODIFICATIONS_DISABLED,
            severity=ErrorSeverity.HIGH,
            connection_id=connection_id,
            metadata={'operation': operation},
            **kwargs
        )
        self.operation = operation


class SchemaError(CosmosMCPError):
    """The container lacks a structure an operation depends on (partition key)."""

    def __init__(self, message: str, container_id: Optional[str] = None, **kwargs):
        metadata = kwargs.pop('metadata', {})
        if container_id:
            metadata['container_id'] = container_id
        super().__init__(message=message, category=ErrorCategory.SCHEMA,
                         metadata=metadata, **kwargs)


class BackendError(CosmosMCPError):
    """The underlying driver failed: network, auth, malformed query, conflict."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        metadata = kwargs.pop('metadata', {})
        if status_code is not None:
            metadata['status_code'] = status_code
        super().__init__(message=message, category=ErrorCategory.BACKEND,
                         severity=kwargs.pop('severity', ErrorSeverity.HIGH),
                         metadata=metadata, **kwargs)
        self.status_code = status_code


# ============================================================================
# Error logging and boundary conversion
# ============================================================================

@dataclass
class ErrorMetrics:
    """Running error statistics."""
    total_errors: int = 0
    errors_by_category: Dict[ErrorCategory, int] = field(default_factory=lambda: defaultdict(int))
    errors_by_connection: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    recent_errors: Deque[Dict[str, Any]] = field(default_factory=lambda: deque(maxlen=100))
    last_error_time: Optional[float] = None


class ErrorLogger:
    """Structured error logging with running statistics."""

    def __init__(self):
        self.metrics = ErrorMetrics()
        self.lock = threading.RLock()

    def log_error(self, error: CosmosMCPError, extra_context: Optional[Dict[str, Any]] = None):
        """Log an error with its category, connection and metadata."""
        with self.lock:
            self.metrics.total_errors += 1
            self.metrics.errors_by_category[error.category] += 1
            if error.connection_id:
                self.metrics.errors_by_connection[error.connection_id] += 1
            self.metrics.last_error_time = error.timestamp
            self.metrics.recent_errors.append({
                'timestamp': error.timestamp,
                'category': error.category.value,
                'severity': error.severity.value,
                'message': error.message,
                'connection_id': error.connection_id
            })

        log_context = {
            'error_category': error.category.value,
            'error_severity': error.severity.value,
            'connection_id': error.connection_id,
            'error_metadata': error.metadata
        }
        if extra_context:
            log_context.update(extra_context)

        if error.severity in (ErrorSeverity.CRITICAL, ErrorSeverity.HIGH):
            logger.error(error.message, **log_context)
        elif error.severity == ErrorSeverity.MEDIUM:
            logger.warning(error.message, **log_context)
        else:
            logger.info(error.message, **log_context)

    def get_error_statistics(self) -> Dict[str, Any]:
        """Get error statistics."""
        with self.lock:
            return {
                'total_errors': self.metrics.total_errors,
                'errors_by_category': {
                    category.value: count
                    for category, count in self.metrics.errors_by_category.items()
                },
                'errors_by_connection': dict(self.metrics.errors_by_connection),
                'recent_errors': list(self.metrics.recent_errors)[-10:],
                'last_error_time': self.metrics.last_error_time
            }


class ErrorHandler:
    """Converts exceptions raised below the tool boundary into tool results."""

    def __init__(self):
        self.logger = ErrorLogger()

    def handle_error(self, error: Exception,
                     context: Optional[Dict[str, Any]] = None) -> CosmosMCPError:
        """Normalize, log and count an error.

        Args:
            error: The exception that occurred
            context: Additional context (tool name, connection id, container id)

        Returns:
            CosmosMCPError: The processed error
        """
        context = context or {}

        if isinstance(error, CosmosMCPError):
            processed_error = error
        else:
            processed_error = self._convert_to_cosmos_error(error, context)

        if processed_error.connection_id is None and context.get('connection_id'):
            processed_error.connection_id = context['connection_id']

        from .logging_manager import get_logging_manager

        self.logger.log_error(processed_error, context)
        get_logging_manager().metrics.record_error(
            type(processed_error).__name__, context.get('tool', 'unknown'))

        return processed_error

    def to_result(self, error: Exception,
                  context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Handle an error and render the failure result of a tool call."""
        processed_error = self.handle_error(error, context)
        return {'success': False, 'error': processed_error.message}

    def _convert_to_cosmos_error(self, error: Exception, context: Dict[str, Any]) -> CosmosMCPError:
        """Convert a foreign exception to a BackendError."""
        error_type = type(error).__name__
        status_code = getattr(error, 'status_code', None)
        if not isinstance(status_code, int):
            status_code = None

        return BackendError(
            message=f"{error_type}: {error}",
            status_code=status_code,
            connection_id=context.get('connection_id'),
            metadata={'original_error_type': error_type},
            cause=error
        )


# Global error handler instance
_error_handler: Optional[ErrorHandler] = None


def get_error_handler() -> ErrorHandler:
    """Get or create global error handler instance."""
    global _error_handler
    if _error_handler is None:
        _error_handler = ErrorHandler()
    return _error_handler
