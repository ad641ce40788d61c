"""
Structured logging for extraction runs

Every record carries the extraction scope active on the current thread
(project, DAG, workflow, node) plus any ``extra_fields`` the caller attaches.
JSON output is for deployments; the console format is for local runs.
"""
from __future__ import annotations

import json
import logging
import sys
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Generator, Optional

SCOPE_FIELDS = ("correlation_id", "project_id", "dag_id", "workflow_id", "node")

# Short labels used in console prefixes; the correlation id is shown untagged
_CONSOLE_TAGS = {"dag_id": "dag", "workflow_id": "wf", "node": "node"}

_QUIET_LIBRARIES = ("boto3", "botocore", "urllib3", "s3transfer")

_scope = threading.local()


def current_scope() -> Dict[str, str]:
    """Scope fields set on this thread, in declaration order"""
    values = getattr(_scope, "values", None) or {}
    return {name: values[name] for name in SCOPE_FIELDS if values.get(name)}


def _set_scope(values: Dict[str, str]) -> None:
    _scope.values = values


class StructuredFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(current_scope())
        entry.update(getattr(record, "extra_fields", None) or {})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Coloured single-line output with the scope as a short prefix"""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:8s}"
        if self.use_color:
            level = f"{self.LEVEL_COLORS.get(record.levelname, '')}{level}{self.RESET}"
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%H:%M:%S.%f")[:-3]

        line = f"{stamp} {level} {record.name:32s} {self._prefix()}{record.getMessage()}"
        extra = getattr(record, "extra_fields", None)
        if extra:
            line += "  " + " ".join(f"{k}={v}" for k, v in extra.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line

    def _prefix(self) -> str:
        tags = []
        for name, value in current_scope().items():
            if name == "project_id":
                continue
            tag = _CONSOLE_TAGS.get(name)
            # Node names are short already; ids are truncated
            shown = value if name == "node" else value[:8]
            tags.append(f"[{tag}:{shown}]" if tag else f"[{shown}]")
        return " ".join(tags) + " " if tags else ""


class ContextLogger(logging.LoggerAdapter):
    """Adapter that copies the thread's extraction scope onto each record"""

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(kwargs.get("extra") or {})
        for name, value in current_scope().items():
            extra.setdefault(name, value)
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure the root logger

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_format: JSON records on stdout instead of the console format
        log_file: Optional path; the file always receives JSON records
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper()))
    root.handlers.clear()

    stdout = logging.StreamHandler(sys.stdout)
    stdout.setFormatter(StructuredFormatter() if json_format else ConsoleFormatter(use_color=sys.stdout.isatty()))
    root.addHandler(stdout)

    if log_file:
        to_file = logging.FileHandler(log_file)
        to_file.setFormatter(StructuredFormatter())
        root.addHandler(to_file)

    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), {})


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Tag this thread's records; a new id is generated when none is given"""
    correlation_id = correlation_id or uuid.uuid4().hex
    values = dict(getattr(_scope, "values", None) or {})
    values["correlation_id"] = correlation_id
    _set_scope(values)
    return correlation_id


def get_correlation_id() -> Optional[str]:
    return current_scope().get("correlation_id")


def clear_context() -> None:
    _set_scope({})


@contextmanager
def log_context(**fields: Optional[str]) -> Generator[None, None, None]:
    """
    Scope every record logged inside the block

    Nested blocks add to the outer scope and restore it on exit.

    Usage:
        with log_context(project_id=dag.project_id, dag_id=dag.id):
            logger.info("Executing node")
    """
    unknown = sorted(set(fields) - set(SCOPE_FIELDS))
    if unknown:
        raise ValueError(f"Unknown log context fields: {unknown}")

    outer = dict(getattr(_scope, "values", None) or {})
    inner = dict(outer)
    inner.update({k: str(v) for k, v in fields.items() if v})
    _set_scope(inner)
    try:
        yield
    finally:
        _set_scope(outer)


@contextmanager
def log_operation(
    logger: ContextLogger,
    operation: str,
    **extra_fields: Any,
) -> Generator[Dict[str, Any], None, None]:
    """
    Log the start and outcome of an operation with its duration

    The yielded dict is logged with the outcome, so callers can attach counts.

    Usage:
        with log_operation(logger, "relationship_discovery", datasource_id=ds) as ctx:
            ctx["candidates"] = len(candidates)
    """
    fields: Dict[str, Any] = {"operation": operation, **extra_fields}
    started = time.perf_counter()
    logger.info(f"Starting {operation}", extra={"extra_fields": dict(fields)})
    try:
        yield fields
    except Exception as e:
        fields.update(
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
            status="error",
            error=str(e),
            error_type=type(e).__name__,
        )
        logger.error(f"Failed {operation}", extra={"extra_fields": fields}, exc_info=True)
        raise
    fields.update(duration_ms=round((time.perf_counter() - started) * 1000, 2), status="success")
    logger.info(f"Completed {operation}", extra={"extra_fields": fields})
