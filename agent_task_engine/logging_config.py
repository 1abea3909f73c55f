"""
Structured Logging for the Agent Task Engine

JSON or console output through structlog, with request/task context
carried in contextvars and optional rotating log files.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any, List, Optional, Union

import structlog

if TYPE_CHECKING:
    from .config import LoggingConfig

LOGGER_NAME = "agent_task_engine"


class TaskContextFilter(logging.Filter):
    """Make sure stdlib records always carry the engine context fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key in ("agent_id", "session_id", "task_id"):
            if not hasattr(record, key):
                setattr(record, key, None)
        return True


def configure_logging(
    level: Union[str, int] = "INFO",
    json_format: bool = True,
    log_file: Optional[Union[str, Path]] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console_output: bool = True,
    additional_processors: Optional[List] = None,
) -> structlog.BoundLogger:
    """
    Configure structured logging for the engine.

    Args:
        level: Log level name or number
        json_format: Render JSON lines instead of colored console output
        log_file: Optional path of a rotating log file
        max_bytes: Size at which the log file rotates
        backup_count: Number of rotated files to keep
        console_output: Also log to stdout
        additional_processors: Extra structlog processors, run before rendering

    Returns:
        Configured structlog logger

    Example:
        >>> logger = configure_logging(level="DEBUG", json_format=False)
        >>> logger.info("engine_started", session_id="s1")
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    processors: List = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if additional_processors:
        processors.extend(additional_processors)

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True, pad_event=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )

    handlers: List[logging.Handler] = []

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.addFilter(TaskContextFilter())
        handlers.append(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.addFilter(TaskContextFilter())
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        handlers=handlers,
        format="%(message)s" if json_format else "%(asctime)s [%(levelname)s] %(message)s",
        force=True,
    )

    return structlog.get_logger(LOGGER_NAME)


def configure_from_config(config: LoggingConfig) -> structlog.BoundLogger:
    """Configure logging from a ``LoggingConfig`` section."""
    return configure_logging(
        level=config.level.value,
        json_format=config.format == "json",
        log_file=config.file,
        max_bytes=config.max_size_mb * 1024 * 1024,
        backup_count=config.backup_count,
        console_output=config.console,
    )


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """Get a structlog logger, named after the engine by default."""
    return structlog.get_logger(name or LOGGER_NAME)


class LogContext:
    """
    Context manager that binds key/value pairs to every log line inside it.

    Example:
        >>> with LogContext(session_id="s1", task_id="task_0_ab12cd34"):
        ...     logger.info("task_started")
    """

    def __init__(self, **context: Any):
        self.context = context

    def __enter__(self) -> LogContext:
        structlog.contextvars.bind_contextvars(**self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())


def bind_context(**kwargs: Any) -> None:
    """Bind context variables to all subsequent log calls."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Unbind context variables."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()


def _compact(data: dict) -> dict:
    return {k: v for k, v in data.items() if v is not None}


def log_task_event(
    event_type: str,
    task_id: str,
    task_type: Optional[str] = None,
    state: Optional[str] = None,
    duration_ms: Optional[float] = None,
    error: Optional[str] = None,
    **extra: Any,
) -> None:
    """
    Log a standardized task lifecycle event.

    Failures are logged at error level, start/complete at info, anything
    else at debug.
    """
    event_data = _compact({
        "event_type": event_type,
        "task_id": task_id,
        "task_type": task_type,
        "state": state,
        "duration_ms": duration_ms,
        "error": error,
        **extra,
    })

    logger = get_logger()
    if error or state == "fail":
        logger.error("task_event", **event_data)
    elif event_type in ("start", "complete"):
        logger.info("task_event", **event_data)
    else:
        logger.debug("task_event", **event_data)


def log_capability_call(
    capability: str,
    task_id: Optional[str] = None,
    duration_ms: Optional[float] = None,
    success: bool = True,
    error: Optional[str] = None,
    **kwargs: Any,
) -> None:
    """Log a capability invocation."""
    event_data = _compact({
        "event_type": "capability_call",
        "capability": capability,
        "task_id": task_id,
        "duration_ms": duration_ms,
        "success": success,
        "error": error,
        **kwargs,
    })

    logger = get_logger()
    if not success or error:
        logger.warning("capability_call", **event_data)
    else:
        logger.debug("capability_call", **event_data)


def log_oracle_request(
    model: str,
    message_count: int,
    **kwargs: Any,
) -> None:
    """Log an outgoing reasoning oracle request."""
    get_logger().debug(
        "oracle_request",
        **_compact({"model": model, "message_count": message_count, **kwargs}),
    )


def log_oracle_response(
    model: str,
    input_tokens: Optional[int] = None,
    output_tokens: Optional[int] = None,
    duration_ms: Optional[float] = None,
    **kwargs: Any,
) -> None:
    """Log a reasoning oracle response."""
    get_logger().debug(
        "oracle_response",
        **_compact({
            "model": model,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "duration_ms": duration_ms,
            **kwargs,
        }),
    )
