"""
Structured logging for the API process and the background workers.

JSON lines in stage and prod, a readable console renderer in development.
Values bound with ``structlog.contextvars`` (the worker binds the job name
and task id) are merged into every event.
"""

import logging
import sys

import structlog
from structlog.stdlib import LoggerFactory

_NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "uvicorn.access")


def setup_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """
    Configure structlog and route it through stdlib logging on stdout.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Render JSON; False renders for a terminal
    """
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)
    """
    return structlog.get_logger(name)


def log_health_check(service: str, healthy: bool, latency_ms: float, error: str = None):
    """Log a readiness probe result with consistent fields."""
    logger = get_logger("health")

    log_data = {"service": service, "healthy": healthy, "latency_ms": latency_ms}
    if error:
        log_data["error"] = error

    if healthy:
        logger.info("Health check passed", **log_data)
    else:
        logger.error("Health check failed", **log_data)


def log_request(
    method: str, path: str, status_code: int, duration_ms: float, request_id: str = None
):
    """Log one HTTP request; 5xx responses at error level."""
    logger = get_logger("http")

    log_data = {
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
    }
    if request_id:
        log_data["request_id"] = request_id

    if status_code >= 500:
        logger.error("HTTP request failed", **log_data)
    else:
        logger.info("HTTP request completed", **log_data)
