"""
Structured logging configuration with request tracking and rotation.
"""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from structlog.types import EventDict, Processor


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application context to all log entries."""
    event_dict["app"] = "movie-api"
    return event_dict


def mask_key(raw_key: Optional[str]) -> str:
    """Mask a credential down to its first 8 characters."""
    if not raw_key:
        return "***"
    return f"{raw_key[:8]}..." if len(raw_key) > 8 else "***"


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None,
    log_max_bytes: int = 10485760,  # 10MB
    log_backup_count: int = 5,
) -> None:
    """
    Configure structured logging with rotation.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format ('json' or 'console')
        log_file: Optional log file path
        log_max_bytes: Max log file size before rotation
        log_backup_count: Number of backup files to keep
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_app_context,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]

    if log_format == "json":
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=True)
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=log_max_bytes,
            backupCount=log_backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(numeric_level)
        logging.getLogger().addHandler(file_handler)


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return structlog.get_logger(name)


def log_request_start(
    method: str,
    path: str,
    request_id: str,
    client_ip: Optional[str] = None,
    **kwargs
) -> None:
    """Log incoming API request."""
    logger = get_logger("api")
    logger.info(
        "request_start",
        method=method,
        path=path,
        request_id=request_id,
        client_ip=client_ip,
        **kwargs
    )


def log_request_end(
    method: str,
    path: str,
    request_id: str,
    status_code: int,
    duration_ms: float,
    **kwargs
) -> None:
    """Log completed API request."""
    logger = get_logger("api")
    logger.info(
        "request_end",
        method=method,
        path=path,
        request_id=request_id,
        status_code=status_code,
        duration_ms=duration_ms,
        **kwargs
    )


def log_admission_denied(
    api_key: Optional[str],
    reason: str,
    endpoint: str,
    status_code: int,
    **kwargs
) -> None:
    """
    Log a request the admission gate refused.

    Args:
        api_key: Raw API key (masked before logging)
        reason: Denial reason value
        endpoint: Logical route the caller hit
        status_code: HTTP status the caller will receive
        **kwargs: Additional context
    """
    logger = get_logger("admission")
    logger.warning(
        "admission_denied",
        api_key=mask_key(api_key),
        reason=reason,
        endpoint=endpoint,
        status_code=status_code,
        **kwargs
    )


def log_signature_rejected(
    api_key: str,
    reason: str,
    method: str,
    path: str,
    **kwargs
) -> None:
    """Log a failed HMAC request signature check."""
    logger = get_logger("signatures")
    logger.warning(
        "signature_rejected",
        api_key=mask_key(api_key),
        reason=reason,
        method=method,
        path=path,
        **kwargs
    )


def log_cleanup_run(
    key_id: int,
    cutoff: str,
    deleted_rows: int,
    **kwargs
) -> None:
    """Log a usage-log retention sweep."""
    logger = get_logger("retention")
    logger.info(
        "usage_log_cleanup",
        key_id=key_id,
        cutoff=cutoff,
        deleted_rows=deleted_rows,
        **kwargs
    )


def log_admin_login(
    success: bool,
    client_ip: Optional[str] = None,
    expired_sessions_removed: Optional[int] = None,
    **kwargs
) -> None:
    """Log an admin login attempt."""
    logger = get_logger("admin_auth")
    if success:
        logger.info(
            "admin_login",
            client_ip=client_ip,
            expired_sessions_removed=expired_sessions_removed,
            **kwargs
        )
    else:
        logger.warning("admin_login_failed", client_ip=client_ip, **kwargs)


def log_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    **kwargs
) -> None:
    """
    Log exception with full context.

    Args:
        exception: Exception instance
        context: Additional context dictionary
        **kwargs: Additional context
    """
    logger = get_logger("exception")

    log_data = {
        "exception_type": type(exception).__name__,
        "exception_message": str(exception),
        **(context or {}),
        **kwargs
    }

    logger.exception(
        "exception_occurred",
        **log_data
    )
