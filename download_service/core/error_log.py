# download_service/core/error_log.py
"""
Client-visible error log and the error-tracking reporter that feeds it.

Both the API server and the dashboard client keep one of these. Every entry
carries the trace id of the call that failed under ``tags["traceId"]`` so a
user can jump from a UI error to the exact distributed trace.
"""

import uuid
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterator, List, Optional

import sentry_sdk
from pydantic import BaseModel, Field
from sentry_sdk.integrations.logging import LoggingIntegration

from download_service.core.logging import LoggerMixin, get_logger
from download_service.core.tracing import current_trace_id


class ErrorEvent(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    message: str
    level: str = "error"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    tags: Dict[str, str] = Field(default_factory=dict)
    extra: Dict[str, Any] = Field(default_factory=dict)

    @property
    def trace_id(self) -> Optional[str]:
        return self.tags.get("traceId") or None


class ErrorLog:
    """Bounded, most-recent-first list of error events."""

    def __init__(self, limit: int = 50) -> None:
        self._events: Deque[ErrorEvent] = deque(maxlen=limit)

    def record(self, event: ErrorEvent) -> ErrorEvent:
        self._events.appendleft(event)
        return event

    def list(self) -> List[ErrorEvent]:
        return list(self._events)

    def find_by_trace(self, trace_id: str) -> List[ErrorEvent]:
        return [e for e in self._events if e.tags.get("traceId") == trace_id]

    def clear(self) -> None:
        self._events.clear()

    def __len__(self) -> int:
        return len(self._events)


logger = get_logger(__name__)


def init_error_tracking(dsn: Optional[str], environment: str, release: Optional[str] = None) -> bool:
    """Start the Sentry client when a DSN is configured. Returns whether it was started."""
    if not dsn:
        logger.info("Error tracking disabled, no SENTRY_DSN configured")
        return False
    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=release,
        traces_sample_rate=0.0,
        # ErrorReporter sends events itself; log records only become breadcrumbs
        integrations=[LoggingIntegration(event_level=None)],
    )
    logger.info("Error tracking enabled", environment=environment)
    return True


class ErrorReporter(LoggerMixin):
    """Reports failures to the structured log, to Sentry and to an ErrorLog.

    Sentry calls are no-ops until ``init_error_tracking`` has started a client,
    so the local ErrorLog is always the source for ``/v1/errors``.
    """

    def __init__(self, error_log: ErrorLog, source: str = "server") -> None:
        self.error_log = error_log
        self.source = source

    def capture_exception(
        self,
        exc: BaseException,
        tags: Optional[Dict[str, Any]] = None,
        extra: Optional[Dict[str, Any]] = None,
        trace_id: Optional[str] = None,
        message: Optional[str] = None,
    ) -> ErrorEvent:
        event = self._build_event(
            message or str(exc) or type(exc).__name__, "error", tags, extra, trace_id
        )
        event.extra.setdefault("exceptionType", type(exc).__name__)
        self.logger.error(
            "Exception captured",
            error_id=event.id,
            error=str(exc),
            error_type=type(exc).__name__,
            tags=event.tags,
            exc_info=exc,
        )
        with self._scope(event):
            sentry_sdk.capture_exception(exc)
        return self.error_log.record(event)

    def capture_message(
        self,
        message: str,
        level: str = "error",
        tags: Optional[Dict[str, Any]] = None,
        extra: Optional[Dict[str, Any]] = None,
        trace_id: Optional[str] = None,
    ) -> ErrorEvent:
        event = self._build_event(message, level, tags, extra, trace_id)
        self.logger.warning(
            "Message captured", error_id=event.id, message=message, tags=event.tags
        )
        with self._scope(event):
            sentry_sdk.capture_message(message, level=level)
        return self.error_log.record(event)

    @staticmethod
    @contextmanager
    def _scope(event: ErrorEvent) -> Iterator[None]:
        with sentry_sdk.new_scope() as scope:
            for key, value in event.tags.items():
                scope.set_tag(key, value)
            scope.set_context("error_log", {"id": event.id, **event.extra})
            yield

    def _build_event(
        self,
        message: str,
        level: str,
        tags: Optional[Dict[str, Any]],
        extra: Optional[Dict[str, Any]],
        trace_id: Optional[str],
    ) -> ErrorEvent:
        str_tags = {k: "" if v is None else str(v) for k, v in (tags or {}).items()}
        str_tags["source"] = self.source
        str_tags["traceId"] = trace_id or current_trace_id() or ""
        return ErrorEvent(message=message, level=level, tags=str_tags, extra=dict(extra or {}))
