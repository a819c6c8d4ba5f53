# download_service/core/logging.py
import logging
import sys
from typing import Any, MutableMapping

import structlog

# held at WARNING or above
NOISY_LOGGERS = ("httpx", "httpcore", "botocore")


def service_name_processor(service: str):
    """structlog processor stamping every event with the emitting process."""

    def add_service(
        _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
    ) -> MutableMapping[str, Any]:
        event_dict.setdefault("service", service)
        return event_dict

    return add_service


def setup_logging(
    log_level: str = "INFO",
    enable_json: bool = False,
    service: str = "download-service",
) -> None:
    """
    Setup structured logging for the API server or the dashboard client.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        enable_json: Whether to output JSON formatted logs
        service: Value of the ``service`` key on every event

    Values bound with ``structlog.contextvars`` (trace_id, span_id) are merged
    into every event, so each line can be matched to its trace.
    """
    level = getattr(logging, log_level.upper())

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        service_name_processor(service),
        structlog.processors.StackInfoRenderer(),
    ]

    if enable_json:
        # ConsoleRenderer formats exc_info itself
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class LoggerMixin:
    """Mixin to add logger to any class."""

    @property
    def logger(self) -> structlog.stdlib.BoundLogger:
        if not hasattr(self, "_logger"):
            self._logger = get_logger(self.__class__.__name__)
        return self._logger
