"""Structured logging and monitoring system for CosmosDB MCP.

Provides JSON-based structured logging with tool-call metrics, connection
metrics and security events using structlog and prometheus_client. Console
output goes to stderr because stdout carries the MCP stdio transport.
"""

import sys
import uuid
import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field

import structlog
from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry
from prometheus_client import generate_latest

from .config_manager import LoggingConfig, LogLevel


@dataclass
class LogContext:
    """Context information for structured logging."""
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    operation: Optional[str] = None
    component: Optional[str] = None
    connection_id: Optional[str] = None
    container_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert context to dictionary for logging."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


class MetricsCollector:
    """Prometheus metrics collector for CosmosDB MCP."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize metrics collector.

        Args:
            registry: Prometheus registry to use. A private registry is created if None.
        """
        self.registry = registry or CollectorRegistry()

        self.tool_counter = Counter(
            'cosmosdb_mcp_tool_calls_total',
            'Total number of tool invocations',
            ['tool', 'status'],
            registry=self.registry
        )

        self.tool_duration = Histogram(
            'cosmosdb_mcp_tool_duration_seconds',
            'Tool execution time in seconds',
            ['tool'],
            buckets=[0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
            registry=self.registry
        )

        self.active_connections = Gauge(
            'cosmosdb_mcp_active_connections',
            'Number of live backend connections',
            registry=self.registry
        )

        self.connection_attempts = Counter(
            'cosmosdb_mcp_connection_attempts_total',
            'Connection attempts by outcome',
            ['connection_id', 'status'],
            registry=self.registry
        )

        self.error_counter = Counter(
            'cosmosdb_mcp_errors_total',
            'Total number of errors',
            ['error_type', 'component'],
            registry=self.registry
        )

        self.blocked_modifications = Counter(
            'cosmosdb_mcp_blocked_modifications_total',
            'Write operations rejected by the modification guard',
            ['connection_id', 'operation'],
            registry=self.registry
        )

    def record_tool_call(self, tool: str, duration: float, status: str):
        """Record tool invocation metrics."""
        self.tool_counter.labels(tool=tool, status=status).inc()
        self.tool_duration.labels(tool=tool).observe(duration)

    def record_connection_attempt(self, connection_id: str, status: str):
        """Record a connect attempt."""
        self.connection_attempts.labels(connection_id=connection_id, status=status).inc()

    def record_error(self, error_type: str, component: str):
        """Record error metrics."""
        self.error_counter.labels(error_type=error_type, component=component).inc()

    def record_blocked_modification(self, connection_id: str, operation: str):
        """Record a write rejected by policy."""
        self.blocked_modifications.labels(connection_id=connection_id, operation=operation).inc()

    def set_active_connections(self, count: int):
        """Update the live connection gauge."""
        self.active_connections.set(count)

    def get_metrics(self) -> bytes:
        """Get metrics in Prometheus exposition format."""
        return generate_latest(self.registry)


_current_context: ContextVar[Optional[LogContext]] = ContextVar('cosmosdb_mcp_log_context', default=None)


class LoggingManager:
    """Configures structlog once per process and carries per-task log context.

    Context set with ``context()`` lives in a ``ContextVar``, so concurrent
    tool calls on the event loop each see only their own fields.
    """

    _instance: Optional['LoggingManager'] = None
    _lock = threading.Lock()

    def __new__(cls, *args, **kwargs):
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
            return cls._instance

    def __init__(self, config: Optional[LoggingConfig] = None):
        # Only the first construction configures logging
        if getattr(self, '_initialized', False):
            return

        self.config = config or LoggingConfig()
        self.metrics = MetricsCollector()
        self._initialized = True

        structlog.configure(
            processors=self._processors(),
            wrapper_class=structlog.stdlib.BoundLogger,
            logger_factory=structlog.stdlib.LoggerFactory(),
            context_class=dict,
            cache_logger_on_first_use=True,
        )
        self._install_handlers()

        self.logger = structlog.get_logger()
        self.logger.debug("Logging configured",
                          level=self.config.level.value,
                          file_path=self.config.file_path)

    def _processors(self) -> List[Any]:
        processors: List[Any] = [
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            self._add_context,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
        ]
        if self.config.level == LogLevel.DEBUG:
            processors.append(structlog.dev.ConsoleRenderer(colors=False))
        else:
            processors.append(structlog.processors.format_exc_info)
            processors.append(structlog.processors.JSONRenderer(default=str))
        return processors

    def _install_handlers(self):
        """Route stdlib logging to stderr and the optional rotating file."""
        level = getattr(logging, self.config.level.name)
        handlers: List[logging.Handler] = []

        if self.config.console_output:
            handlers.append(logging.StreamHandler(sys.stderr))

        if self.config.file_path:
            log_path = Path(self.config.file_path)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.handlers.RotatingFileHandler(
                log_path,
                maxBytes=self.config.max_file_size,
                backupCount=self.config.backup_count
            ))

        root = logging.getLogger()
        root.handlers.clear()
        root.setLevel(level)
        for handler in handlers:
            handler.setLevel(level)
            handler.setFormatter(logging.Formatter('%(message)s'))
            root.addHandler(handler)

        # The Azure SDK logs every HTTP request at INFO
        logging.getLogger('azure').setLevel(logging.WARNING)

    @staticmethod
    def _add_context(logger, method_name, event_dict):
        current = _current_context.get()
        if current is not None:
            for key, value in current.to_dict().items():
                event_dict.setdefault(key, value)
        return event_dict

    @contextmanager
    def context(self, **kwargs):
        """Bind fields to every log entry emitted inside the block.

        Nested blocks inherit the outer fields and may override them.

        Example:
            with logging_manager.context(operation="mcp_get_container_stats", connection_id="a"):
                logger.info("Sampling container")
        """
        outer = _current_context.get()
        fields = {**outer.__dict__, **kwargs} if outer is not None else kwargs
        bound = LogContext(**fields)

        token = _current_context.set(bound)
        try:
            yield bound
        finally:
            _current_context.reset(token)

    def current_context(self) -> Optional[LogContext]:
        return _current_context.get()

    def log_security_event(self, event_type: str, severity: str,
                           description: str, **context):
        """Log security events.

        Args:
            event_type: Type of security event
            severity: Severity level (low, medium, high, critical)
            description: Event description
            **context: Additional context
        """
        self.logger.warning(
            f"Security event: {description}",
            event_type=event_type,
            severity=severity,
            **context
        )

    def log_tool_call(self, tool: str, duration: float, success: bool,
                      connection_id: Optional[str] = None):
        """Log a completed tool call and record its metrics."""
        status = "success" if success else "error"
        self.logger.info(
            "Tool call completed",
            tool=tool,
            connection_id=connection_id,
            duration=round(duration, 4),
            status=status
        )
        self.metrics.record_tool_call(tool, duration, status)

    def get_metrics(self) -> bytes:
        """Get Prometheus metrics."""
        return self.metrics.get_metrics()

    def get_logger(self, name: Optional[str] = None):
        """Get structured logger instance."""
        return structlog.get_logger(name)


# Global logging manager instance
_logging_manager: Optional[LoggingManager] = None


def get_logging_manager(config: Optional[LoggingConfig] = None) -> LoggingManager:
    """Get global logging manager instance.

    Args:
        config: Logging configuration, only used on first call

    Returns:
        Global LoggingManager instance
    """
    global _logging_manager

    if _logging_manager is None:
        _logging_manager = LoggingManager(config)

    return _logging_manager


def get_logger(name: Optional[str] = None):
    """Get structured logger instance.

    Args:
        name: Logger name

    Returns:
        Structured logger instance
    """
    return structlog.get_logger(name)
