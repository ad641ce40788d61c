"""
Error Handling Module for the Ontology Engine
Defines custom exceptions and error classification utilities
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorSeverity(str, Enum):
    """Error severity levels"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Error categories for classification"""
    DATABASE = "database"
    PROFILING = "profiling"
    LLM = "llm"
    MALFORMED_OUTPUT = "malformed_output"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    STATE = "state"
    LEASE = "lease"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    AUTHENTICATION = "authentication"
    INTERNAL = "internal"


@dataclass
class ErrorContext:
    """Additional context for errors"""
    project_id: Optional[str] = None
    datasource_id: Optional[str] = None
    dag_id: Optional[str] = None
    node_name: Optional[str] = None
    workflow_id: Optional[str] = None
    table_name: Optional[str] = None
    column_name: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "datasource_id": self.datasource_id,
            "dag_id": self.dag_id,
            "node_name": self.node_name,
            "workflow_id": self.workflow_id,
            "table_name": self.table_name,
            "column_name": self.column_name,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }


class OntologyEngineError(Exception):
    """Base exception for the Ontology Engine"""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[ErrorContext] = None,
        recoverable: bool = True,
        suggestions: Optional[List[str]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.recoverable = recoverable
        self.suggestions = suggestions or []
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "suggestions": self.suggestions,
            "context": self.context.to_dict(),
            "original_error": str(self.original_error) if self.original_error else None,
        }

    def __str__(self) -> str:
        return f"[{self.category.value}] {self.message}"


class DatabaseConnectionError(OntologyEngineError):
    """Datasource unreachable; treated as permanent for the current node"""

    def __init__(
        self,
        message: str,
        context: Optional[ErrorContext] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.DATABASE,
            severity=ErrorSeverity.HIGH,
            context=context,
            recoverable=False,
            suggestions=[
                "Check datasource path or host configuration",
                "Verify datasource credentials",
                "Ensure the database server is running",
            ],
            original_error=original_error
        )


class ProfilingError(OntologyEngineError):
    """A statistics query against the datasource failed"""

    def __init__(
        self,
        message: str,
        table_name: Optional[str] = None,
        column_name: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        original_error: Optional[Exception] = None
    ):
        context = context or ErrorContext()
        context.table_name = context.table_name or table_name
        context.column_name = context.column_name or column_name

        suggestions = ["Verify table/column names exist in the datasource"]
        if table_name:
            suggestions.append(f"Check if table '{table_name}' exists")
        if column_name:
            suggestions.append(f"Check if column '{column_name}' exists")

        super().__init__(
            message=message,
            category=ErrorCategory.PROFILING,
            severity=ErrorSeverity.MEDIUM,
            context=context,
            recoverable=True,
            suggestions=suggestions,
            original_error=original_error
        )
        self.table_name = table_name
        self.column_name = column_name


class LLMError(OntologyEngineError):
    """LLM-related errors"""

    def __init__(
        self,
        message: str,
        model_id: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        recoverable: bool = True,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.LLM,
            severity=ErrorSeverity.HIGH,
            context=context,
            recoverable=recoverable,
            suggestions=[
                "Check AWS credentials and permissions",
                "Verify Bedrock model availability",
                "Check for rate limiting",
            ],
            original_error=original_error
        )
        self.model_id = model_id


class MalformedOutputError(OntologyEngineError):
    """Model output could not be coerced into the expected structure"""

    def __init__(
        self,
        message: str,
        raw_content: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.MALFORMED_OUTPUT,
            severity=ErrorSeverity.LOW,
            context=context,
            recoverable=True,
            suggestions=["Inspect the logged conversation for the raw response"],
            original_error=original_error
        )
        self.raw_content = raw_content


class ValidationError(OntologyEngineError):
    """Input validation errors"""

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        original_error: Optional[Exception] = None
    ):
        suggestions = ["Check input data format"]
        if field_name:
            suggestions.append(f"Check value of '{field_name}'")

        super().__init__(
            message=message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.MEDIUM,
            context=context,
            recoverable=False,
            suggestions=suggestions,
            original_error=original_error
        )
        self.field_name = field_name


class ConfigurationError(OntologyEngineError):
    """Configuration errors"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        original_error: Optional[Exception] = None
    ):
        suggestions = ["Review configuration settings"]
        if config_key:
            suggestions.append(f"Check configuration for key: {config_key}")

        super().__init__(
            message=message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.HIGH,
            context=context,
            recoverable=False,
            suggestions=suggestions,
            original_error=original_error
        )
        self.config_key = config_key


class InvalidTransitionError(OntologyEngineError):
    """A state machine was asked for a transition it does not allow"""

    def __init__(
        self,
        from_state: str,
        to_state: str,
        subject: str = "entity",
        context: Optional[ErrorContext] = None
    ):
        super().__init__(
            message=f"invalid {subject} transition: {from_state} -> {to_state}",
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.MEDIUM,
            context=context,
            recoverable=False,
        )
        self.from_state = from_state
        self.to_state = to_state


class LeaseError(OntologyEngineError):
    """Ownership of a DAG or workflow could not be claimed"""

    def __init__(
        self,
        message: str,
        owner_id: Optional[str] = None,
        context: Optional[ErrorContext] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.LEASE,
            severity=ErrorSeverity.MEDIUM,
            context=context,
            recoverable=True,
            suggestions=["Another instance holds a live lease; retry after it goes stale"],
        )
        self.owner_id = owner_id


class NotFoundError(OntologyEngineError):
    """A requested record does not exist in the current project scope"""

    def __init__(
        self,
        message: str,
        context: Optional[ErrorContext] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.NOT_FOUND,
            severity=ErrorSeverity.LOW,
            context=context,
            recoverable=False,
        )


class PermanentError(OntologyEngineError):
    """Non-retryable failure such as an authentication error"""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        context: Optional[ErrorContext] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            category=category,
            severity=ErrorSeverity.CRITICAL,
            context=context,
            recoverable=False,
            original_error=original_error
        )


class TimeoutError(OntologyEngineError):
    """Timeout errors"""

    def __init__(
        self,
        message: str,
        timeout_seconds: Optional[float] = None,
        operation: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        original_error: Optional[Exception] = None
    ):
        suggestions = ["Increase timeout configuration"]
        if operation:
            suggestions.append(f"Review '{operation}' operation performance")

        super().__init__(
            message=message,
            category=ErrorCategory.TIMEOUT,
            severity=ErrorSeverity.MEDIUM,
            context=context,
            recoverable=True,
            suggestions=suggestions,
            original_error=original_error
        )
        self.timeout_seconds = timeout_seconds
        self.operation = operation


class MaxRetriesExceededError(OntologyEngineError):
    """Maximum retries exceeded"""

    def __init__(
        self,
        message: str,
        max_retries: int,
        last_error: Optional[Exception] = None,
        context: Optional[ErrorContext] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.INTERNAL,
            severity=ErrorSeverity.HIGH,
            context=context,
            recoverable=False,
            suggestions=[
                f"Maximum retries ({max_retries}) exceeded",
                "Review underlying error cause",
            ],
            original_error=last_error
        )
        self.max_retries = max_retries


_RETRYABLE_PATTERNS = (
    "throttling",
    "rate limit",
    "too many requests",
    "service unavailable",
    "timeout",
    "timed out",
    "connection reset",
    "temporary",
    "database is locked",
)

_PERMANENT_PATTERNS = (
    "access denied",
    "accessdenied",
    "unauthorized",
    "authentication",
    "invalid credentials",
    "unable to open database",
)


def is_retryable(error: BaseException) -> bool:
    """
    Decide whether an error is transient.

    Engine errors carry an explicit ``recoverable`` flag; malformed model output is
    recoverable per item but never worth retrying the whole unit for. Anything else
    is classified by message.
    """
    if isinstance(error, MalformedOutputError):
        return False
    if isinstance(error, OntologyEngineError):
        if not error.recoverable:
            return False
        if error.original_error is not None:
            return is_retryable(error.original_error) or isinstance(error, (LLMError, TimeoutError, LeaseError))
        return True

    error_str = str(error).lower()
    if any(pattern in error_str for pattern in _PERMANENT_PATTERNS):
        return False
    return any(pattern in error_str for pattern in _RETRYABLE_PATTERNS)


def is_permanent(error: BaseException) -> bool:
    """Permanent errors fail a node immediately instead of consuming retries"""
    if isinstance(error, OntologyEngineError):
        return not error.recoverable
    error_str = str(error).lower()
    return any(pattern in error_str for pattern in _PERMANENT_PATTERNS)


def classify_database_error(error: Exception, db_type: str) -> OntologyEngineError:
    """Classify a raw database error into the appropriate OntologyEngineError subclass"""
    error_str = str(error).lower()
    context = ErrorContext(metadata={"db_type": db_type})

    if any(term in error_str for term in _PERMANENT_PATTERNS):
        return PermanentError(
            message=str(error),
            category=ErrorCategory.AUTHENTICATION,
            context=context,
            original_error=error
        )

    if any(term in error_str for term in ['unable to open', 'connection refused', 'could not connect']):
        return DatabaseConnectionError(
            message=str(error),
            context=context,
            original_error=error
        )

    if any(term in error_str for term in ['timeout', 'timed out', 'locked']):
        return TimeoutError(
            message=str(error),
            operation="profiling",
            context=context,
            original_error=error
        )

    return ProfilingError(
        message=str(error),
        context=context,
        original_error=error
    )
