"""
Structured logging configuration for the adaptive OCR stage.
Provides JSON-structured logging with run id support.
"""

import logging
import sys
from typing import Any, Dict, Optional

import structlog
from structlog.typing import FilteringBoundLogger

from .config import ExecutorConfig


def configure_logging(config: Optional[ExecutorConfig] = None) -> None:
    """Configure structured logging for a run."""
    log_level = (config.log_level if config else "INFO").upper()
    log_format = config.log_format if config else "json"
    level = getattr(logging, log_level, logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=level,
    )
    logging.getLogger().setLevel(level)

    # Quiet noisy libraries
    logging.getLogger("PIL").setLevel(logging.WARNING)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if log_format == "console":
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend([
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def bind_run_id(run_id: str) -> None:
    """Bind the run id to the logging context."""
    structlog.contextvars.bind_contextvars(run_id=run_id)


def clear_run_context() -> None:
    """Clear run-scoped values from the logging context."""
    structlog.contextvars.clear_contextvars()


def log_error_with_context(
    logger: FilteringBoundLogger,
    error: Exception,
    context: Dict[str, Any],
) -> None:
    """Log an error with additional context."""
    logger.error(
        "Error occurred",
        error=str(error),
        error_type=type(error).__name__,
        **context,
    )
