"""
Tests for trace-context propagation
"""
from unittest.mock import MagicMock

import pytest
import structlog
from opentelemetry import trace
from opentelemetry.trace import StatusCode

from download_service.core import tracing
from download_service.core.tracing import (
    TraceContext,
    Tracer,
    current_trace,
    current_trace_id,
    ensure_trace,
    format_traceparent,
    new_trace,
    parse_traceparent,
    trace_context_of,
    trace_id_from_header,
    tracer,
    use_trace,
)

from conftest import PARENT_SPAN_ID, TRACE_ID, TRACEPARENT


class TestTraceparentCodec:
    """Tests for parsing and formatting the traceparent header"""

    def test_parse_valid_header(self):
        ctx = parse_traceparent(TRACEPARENT)

        assert ctx == TraceContext(trace_id=TRACE_ID, span_id=PARENT_SPAN_ID, flags=1)
        assert ctx.sampled

    def test_format_is_inverse_of_parse(self):
        assert format_traceparent(parse_traceparent(TRACEPARENT)) == TRACEPARENT

    def test_unsampled_flag(self):
        ctx = parse_traceparent(f"00-{TRACE_ID}-{PARENT_SPAN_ID}-00")

        assert not ctx.sampled

    @pytest.mark.parametrize(
        "header",
        [
            None,
            "",
            "garbage",
            f"00-{TRACE_ID}-{PARENT_SPAN_ID}",
            f"00-{TRACE_ID[:-1]}-{PARENT_SPAN_ID}-01",
            f"ff-{TRACE_ID}-{PARENT_SPAN_ID}-01",
            f"00-{'0' * 32}-{PARENT_SPAN_ID}-01",
            f"00-{TRACE_ID}-{'0' * 16}-01",
            f"00-{'z' * 32}-{PARENT_SPAN_ID}-01",
        ],
    )
    def test_malformed_headers_are_rejected(self, header):
        assert parse_traceparent(header) is None

    def test_new_trace_ids_have_w3c_lengths(self):
        ctx = new_trace()

        assert len(ctx.trace_id) == 32
        assert len(ctx.span_id) == 16
        assert parse_traceparent(format_traceparent(ctx)) == ctx

    def test_child_keeps_trace_id(self):
        ctx = new_trace()
        child = ctx.child()

        assert child.trace_id == ctx.trace_id
        assert child.span_id != ctx.span_id

    def test_trace_id_from_header_takes_second_field(self):
        assert trace_id_from_header(TRACEPARENT) == TRACE_ID
        assert trace_id_from_header("a-b-c") == "b"
        assert trace_id_from_header("nodashes") is None
        assert trace_id_from_header(None) is None


class TestActiveTrace:
    """Tests for the active-trace context variable"""

    def test_no_trace_by_default(self):
        assert current_trace() is None
        assert current_trace_id() is None

    def test_use_trace_sets_and_restores(self):
        outer = new_trace()
        inner = new_trace()

        with use_trace(outer):
            assert current_trace() == outer
            with use_trace(inner):
                assert current_trace_id() == inner.trace_id
            assert current_trace() == outer
        assert current_trace() is None

    def test_use_trace_binds_log_context(self):
        ctx = new_trace()

        with use_trace(ctx):
            bound = structlog.contextvars.get_contextvars()
            assert bound["trace_id"] == ctx.trace_id
            assert bound["span_id"] == ctx.span_id
        assert "trace_id" not in structlog.contextvars.get_contextvars()

    def test_ensure_trace_reuses_active_trace(self):
        ctx = new_trace()

        with use_trace(ctx):
            assert ensure_trace() == ctx
        assert ensure_trace() != ctx


class TestTracer:
    """Tests for span recording"""

    def test_span_is_child_of_active_trace(self):
        parent = parse_traceparent(TRACEPARENT)

        with use_trace(parent):
            with tracer.span("work", item=1) as span:
                assert current_trace() == trace_context_of(span)

        finished = tracer.finished_spans()[0]
        assert finished.context.span_id == span.get_span_context().span_id
        assert trace.format_trace_id(finished.context.trace_id) == TRACE_ID
        assert trace.format_span_id(finished.parent.span_id) == PARENT_SPAN_ID
        assert finished.attributes["item"] == 1
        assert finished.resource.attributes["service.name"] == "download-service"
        assert finished.end_time >= finished.start_time

    def test_span_records_exceptions(self):
        with pytest.raises(RuntimeError):
            with tracer.span("failing"):
                raise RuntimeError("boom")

        finished = tracer.finished_spans()[0]
        assert finished.status.status_code == StatusCode.ERROR
        event = finished.events[0]
        assert event.name == "exception"
        assert event.attributes["exception.type"] == "RuntimeError"
        assert event.attributes["exception.message"] == "boom"

    def test_span_without_active_trace_starts_one(self):
        with tracer.span("root") as span:
            pass

        assert len(trace_context_of(span).trace_id) == 32
        assert tracer.finished_spans()[0].parent is None
        assert current_trace() is None

    def test_span_binds_log_context(self):
        with tracer.span("logged") as span:
            bound = structlog.contextvars.get_contextvars()

        assert bound["span_id"] == trace_context_of(span).span_id
        assert "span_id" not in structlog.contextvars.get_contextvars()


class TestOtlpExport:
    def test_no_endpoint_adds_no_exporter(self, monkeypatch):
        local = Tracer("export-test")
        created = []
        monkeypatch.setattr(tracing, "OTLPSpanExporter", lambda **kw: created.append(kw))

        local.export_to(None)
        local.export_to("")

        assert created == []

    def test_endpoint_is_configured_once(self, monkeypatch):
        local = Tracer("export-test")
        exporter = MagicMock()
        created = []

        def fake_exporter(**kwargs):
            created.append(kwargs)
            return exporter

        monkeypatch.setattr(tracing, "OTLPSpanExporter", fake_exporter)

        local.export_to("http://collector:4318/")
        local.export_to("http://other:4318")
        with local.span("shipped"):
            pass
        local.force_flush()

        assert created == [{"endpoint": "http://collector:4318/v1/traces"}]
        exported = [
            span
            for call in exporter.export.call_args_list
            for span in (call.args or tuple(call.kwargs.values()))[0]
        ]
        assert [span.name for span in exported] == ["shipped"]
