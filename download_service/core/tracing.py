# download_service/core/tracing.py
"""
Trace-context propagation shared by the API server and the dashboard client.

Spans come from the OpenTelemetry SDK. A trace crosses the process boundary
in the W3C ``traceparent`` header (``version-traceid-spanid-flags``), encoded
and decoded by OpenTelemetry's TraceContext propagator. The active trace is
the OpenTelemetry context; ``use_trace`` and ``Tracer.span`` also bind it
into structlog's context vars, so every log line written while it is active
carries ``trace_id`` and ``span_id``. Correlation between the client, the
server and the error logs is plain string equality on the 32-hex trace id.

Finished spans are always logged and kept in a bounded in-memory buffer;
they are additionally shipped over OTLP/HTTP once ``export_to`` is given a
collector endpoint.
"""

from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Deque, Dict, Iterator, List, Optional, Sequence

import structlog
from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SimpleSpanProcessor,
    SpanExporter,
    SpanExportResult,
)
from opentelemetry.sdk.trace.id_generator import RandomIdGenerator
from opentelemetry.trace import NonRecordingSpan, SpanContext, TraceFlags
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from download_service.core.logging import get_logger

logger = get_logger(__name__)

TRACEPARENT_HEADER = "traceparent"

_propagator = TraceContextTextMapPropagator()
_ids = RandomIdGenerator()


@dataclass(frozen=True)
class TraceContext:
    trace_id: str
    span_id: str
    flags: int = 0x01

    @property
    def sampled(self) -> bool:
        return bool(self.flags & 0x01)

    def child(self) -> "TraceContext":
        """Same trace, fresh span id."""
        return replace(self, span_id=new_span_id())


def new_trace_id() -> str:
    return trace.format_trace_id(_ids.generate_trace_id())


def new_span_id() -> str:
    return trace.format_span_id(_ids.generate_span_id())


def new_trace() -> TraceContext:
    return TraceContext(trace_id=new_trace_id(), span_id=new_span_id())


def _from_span_context(span_context: SpanContext) -> Optional[TraceContext]:
    if not span_context.is_valid:
        return None
    return TraceContext(
        trace_id=trace.format_trace_id(span_context.trace_id),
        span_id=trace.format_span_id(span_context.span_id),
        flags=int(span_context.trace_flags),
    )


def _to_span_context(ctx: TraceContext) -> SpanContext:
    return SpanContext(
        trace_id=int(ctx.trace_id, 16),
        span_id=int(ctx.span_id, 16),
        is_remote=True,
        trace_flags=TraceFlags(ctx.flags),
    )


def trace_context_of(span: trace.Span) -> TraceContext:
    return _from_span_context(span.get_span_context())


def parse_traceparent(header: Optional[str]) -> Optional[TraceContext]:
    """Decode a ``traceparent`` header. Returns None for anything malformed."""
    if not header:
        return None
    extracted = _propagator.extract({TRACEPARENT_HEADER: header.strip().lower()})
    return _from_span_context(trace.get_current_span(extracted).get_span_context())


def format_traceparent(ctx: TraceContext) -> str:
    carrier: Dict[str, str] = {}
    _propagator.inject(
        carrier, context=trace.set_span_in_context(NonRecordingSpan(_to_span_context(ctx)))
    )
    return carrier[TRACEPARENT_HEADER]


def trace_id_from_header(header: Optional[str]) -> Optional[str]:
    """Second dash-separated field of a traceparent value, unvalidated."""
    if not header:
        return None
    parts = str(header).split("-")
    if len(parts) < 2 or not parts[1]:
        return None
    return parts[1]


def current_trace() -> Optional[TraceContext]:
    return _from_span_context(trace.get_current_span().get_span_context())


def current_trace_id() -> Optional[str]:
    ctx = current_trace()
    return ctx.trace_id if ctx else None


def ensure_trace() -> TraceContext:
    """Reuse the active trace, or mint a new one if none is active."""
    return current_trace() or new_trace()


@contextmanager
def _bound_to_logs(ctx: TraceContext) -> Iterator[None]:
    bound = structlog.contextvars.bind_contextvars(
        trace_id=ctx.trace_id, span_id=ctx.span_id
    )
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**bound)


@contextmanager
def use_trace(ctx: TraceContext) -> Iterator[TraceContext]:
    """Make ``ctx`` the active (remote parent) trace for the enclosed block."""
    token = otel_context.attach(
        trace.set_span_in_context(NonRecordingSpan(_to_span_context(ctx)))
    )
    try:
        with _bound_to_logs(ctx):
            yield ctx
    finally:
        otel_context.detach(token)


class RecentSpanExporter(SpanExporter):
    """Logs every finished span and keeps the most recent ones in memory."""

    def __init__(self, keep: int = 200):
        self._spans: Deque[ReadableSpan] = deque(maxlen=keep)

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        for span in spans:
            self._spans.appendleft(span)
            logger.info(
                "Span finished",
                span=span.name,
                span_trace_id=trace.format_trace_id(span.context.trace_id),
                span_status=span.status.status_code.name,
                duration_ms=round((span.end_time - span.start_time) / 1e6, 3),
                attributes=dict(span.attributes or {}),
            )
        return SpanExportResult.SUCCESS

    def shutdown(self) -> None:
        self._spans.clear()

    def finished_spans(self) -> List[ReadableSpan]:
        return list(self._spans)

    def clear(self) -> None:
        self._spans.clear()


class Tracer:
    """Owns the service's TracerProvider and opens spans under the active trace."""

    def __init__(self, service_name: str, keep: int = 200):
        self.service_name = service_name
        self.provider = TracerProvider(resource=Resource.create({SERVICE_NAME: service_name}))
        self.recent = RecentSpanExporter(keep)
        self.provider.add_span_processor(SimpleSpanProcessor(self.recent))
        self._tracer = self.provider.get_tracer("download_service")
        self._otlp_endpoint: Optional[str] = None

    def export_to(self, endpoint: Optional[str]) -> None:
        """Ship spans to an OTLP/HTTP collector; a no-op without an endpoint."""
        if not endpoint or self._otlp_endpoint:
            return
        self._otlp_endpoint = endpoint.rstrip("/")
        exporter = OTLPSpanExporter(endpoint=f"{self._otlp_endpoint}/v1/traces")
        self.provider.add_span_processor(BatchSpanProcessor(exporter))
        logger.info("OTLP span export enabled", endpoint=self._otlp_endpoint)

    @contextmanager
    def span(self, name: str, **attributes: Any) -> Iterator[trace.Span]:
        with self._tracer.start_as_current_span(
            name,
            attributes=attributes,
            record_exception=True,
            set_status_on_exception=True,
        ) as span:
            with _bound_to_logs(trace_context_of(span)):
                yield span

    def force_flush(self) -> None:
        self.provider.force_flush()

    def finished_spans(self) -> List[ReadableSpan]:
        return self.recent.finished_spans()

    def clear(self) -> None:
        self.recent.clear()


tracer = Tracer("download-service")
