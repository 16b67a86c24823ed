"""
Logging utilities for the CEP range crawler.

Provides structured logging with JSON output for better observability.
"""

import logging
import sys
from typing import Any, Optional

import structlog


def setup_crawler_logger(name: str, level: str = "INFO", json_logs: bool = True) -> structlog.stdlib.BoundLogger:
    """
    Set up structured logging for the crawler processes.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_logs: Whether to output JSON format logs

    Returns:
        Configured structlog logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    if json_logs:
        processors = [
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger(name)


def get_crawler_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


class WorkerLoggerAdapter:
    """
    Logger adapter that binds the worker id to every item lifecycle event.
    """

    def __init__(self, logger: structlog.stdlib.BoundLogger, worker_id: str):
        self.logger = logger.bind(worker_id=worker_id)
        self.worker_id = worker_id

    def log_item_started(self, job_id: str, item_key: str, **kwargs: Any) -> None:
        self.logger.debug("item_started", job_id=job_id, item_key=item_key, **kwargs)

    def log_item_completed(self, job_id: str, item_key: str, provider: str, **kwargs: Any) -> None:
        self.logger.info("item_completed", job_id=job_id, item_key=item_key, provider=provider, **kwargs)

    def log_item_failed(
        self, job_id: str, item_key: str, error_type: str, error_message: Optional[str], **kwargs: Any
    ) -> None:
        self.logger.warning(
            "item_failed",
            job_id=job_id,
            item_key=item_key,
            error_type=error_type,
            error_message=error_message,
            **kwargs,
        )

    def log_item_deferred(self, job_id: str, item_key: str, reason: str, **kwargs: Any) -> None:
        self.logger.warning("item_deferred", job_id=job_id, item_key=item_key, reason=reason, **kwargs)

    def log_rate_limited(self, wait_time: float, **kwargs: Any) -> None:
        self.logger.debug("rate_limited", wait_time=wait_time, **kwargs)
