"""
Utilities Package for the Ontology Engine
"""
from .logging import (
    setup_logging,
    get_logger,
    set_correlation_id,
    get_correlation_id,
    clear_context,
    log_context,
    log_operation,
)

from .errors import (
    ErrorSeverity,
    ErrorCategory,
    ErrorContext,
    OntologyEngineError,
    DatabaseConnectionError,
    ProfilingError,
    LLMError,
    MalformedOutputError,
    ValidationError,
    ConfigurationError,
    InvalidTransitionError,
    LeaseError,
    NotFoundError,
    PermanentError,
    TimeoutError,
    MaxRetriesExceededError,
    is_retryable,
    is_permanent,
    classify_database_error,
)

from .metrics import (
    MetricsCollector,
    get_metrics_collector,
    counter,
    gauge,
    histogram,
    timer,
    time_operation,
    OntologyMetrics,
)

from .hashing import content_hash, value_fingerprint, schema_fingerprint
from .retry import RetryPolicy, retry_call
from .heartbeat import Heartbeat
from .clock import utc_now, parse_datetime, format_datetime

__all__ = [
    # Logging
    "setup_logging",
    "get_logger",
    "set_correlation_id",
    "get_correlation_id",
    "clear_context",
    "log_context",
    "log_operation",
    # Errors
    "ErrorSeverity",
    "ErrorCategory",
    "ErrorContext",
    "OntologyEngineError",
    "DatabaseConnectionError",
    "ProfilingError",
    "LLMError",
    "MalformedOutputError",
    "ValidationError",
    "ConfigurationError",
    "InvalidTransitionError",
    "LeaseError",
    "NotFoundError",
    "PermanentError",
    "TimeoutError",
    "MaxRetriesExceededError",
    "is_retryable",
    "is_permanent",
    "classify_database_error",
    # Metrics
    "MetricsCollector",
    "get_metrics_collector",
    "counter",
    "gauge",
    "histogram",
    "timer",
    "time_operation",
    "OntologyMetrics",
    # Hashing
    "content_hash",
    "value_fingerprint",
    "schema_fingerprint",
    # Retry
    "RetryPolicy",
    "retry_call",
    # Heartbeat
    "Heartbeat",
    # Clock
    "utc_now",
    "parse_datetime",
    "format_datetime",
]
