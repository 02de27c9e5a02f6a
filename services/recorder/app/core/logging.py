"""Logging configuration for the bot recorder service."""

import logging
import sys
from typing import Any, Dict, Optional

import structlog

from .config import settings


def configure_logging() -> None:
    """Configure structured logging."""

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if settings.log_format == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance."""
    return structlog.get_logger(name)


def log_request(request_id: str, method: str, path: str, **kwargs: Any) -> None:
    """Log incoming request."""
    logger = get_logger("request")
    logger.info(
        "Request received",
        request_id=request_id,
        method=method,
        path=path,
        **kwargs
    )


def log_response(request_id: str, status_code: int, duration_ms: float, **kwargs: Any) -> None:
    """Log outgoing response."""
    logger = get_logger("response")
    logger.info(
        "Response sent",
        request_id=request_id,
        status_code=status_code,
        duration_ms=duration_ms,
        **kwargs
    )


def log_bot_event(
    logger: structlog.stdlib.BoundLogger,
    event: str,
    bot_id: str,
    source: str = "system",
    **kwargs: Any
) -> None:
    """Log a bot lifecycle event with context."""
    logger.info(
        event,
        bot_id=bot_id,
        source=source,
        service=settings.service_name,
        **kwargs
    )


def log_error(
    logger: structlog.stdlib.BoundLogger,
    error: Exception,
    context: Optional[Dict[str, Any]] = None
) -> None:
    """Log an error with full context."""
    logger.error(
        "Error occurred",
        service=settings.service_name,
        error_type=type(error).__name__,
        error_message=str(error),
        **(context or {})
    )
