"""
Tests for settings validation and the error log
"""
from unittest.mock import MagicMock

import pytest

from download_service.core.config import DashboardSettings, Settings
from download_service.core.error_log import ErrorLog, ErrorReporter, init_error_tracking
from download_service.core.exceptions import ConfigurationError
from download_service.core.tracing import new_trace, use_trace


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.PORT == 3000
        assert settings.DOWNLOAD_DELAY_ENABLED is True
        assert settings.DOWNLOAD_DELAY_MIN_MS == 10_000
        assert settings.DOWNLOAD_DELAY_MAX_MS == 200_000
        assert settings.mock_storage

    def test_min_above_max_is_rejected(self):
        with pytest.raises(ConfigurationError):
            Settings(_env_file=None, DOWNLOAD_DELAY_MIN_MS=5_000, DOWNLOAD_DELAY_MAX_MS=1_000)

    def test_negative_delay_is_rejected(self):
        with pytest.raises(ConfigurationError):
            Settings(_env_file=None, DOWNLOAD_DELAY_MIN_MS=-1)

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("DOWNLOAD_DELAY_ENABLED", "false")
        monkeypatch.setenv("CORS_ORIGINS", "http://a.test, http://b.test")

        settings = Settings(_env_file=None)

        assert settings.DOWNLOAD_DELAY_ENABLED is False
        assert settings.cors_origins == ["http://a.test", "http://b.test"]

    def test_half_configured_credentials_fail_runtime_validation(self):
        settings = Settings(_env_file=None, S3_BUCKET_NAME="files", S3_ACCESS_KEY_ID="key")

        with pytest.raises(ConfigurationError, match="S3_SECRET_ACCESS_KEY"):
            settings.validate_runtime_dependencies()

    def test_bucket_with_ambient_credentials_passes_runtime_validation(self):
        Settings(_env_file=None, S3_BUCKET_NAME="files").validate_runtime_dependencies()

    @pytest.mark.parametrize(
        "overrides",
        [
            {"REQUEST_TIMEOUT_MS": 999},
            {"RATE_LIMIT_WINDOW_MS": 0},
            {"RATE_LIMIT_MAX_REQUESTS": 0},
        ],
    )
    def test_guard_bounds_are_rejected(self, overrides):
        with pytest.raises(ConfigurationError):
            Settings(_env_file=None, **overrides)

    def test_rate_limit_notation(self):
        settings = Settings(
            _env_file=None, RATE_LIMIT_MAX_REQUESTS=5, RATE_LIMIT_WINDOW_MS=90_000
        )

        assert settings.rate_limit == "5 per 90 seconds"

    def test_empty_optional_urls_are_unset(self, monkeypatch):
        monkeypatch.setenv("SENTRY_DSN", "")
        monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")

        settings = Settings(_env_file=None)

        assert settings.SENTRY_DSN is None
        assert settings.OTEL_EXPORTER_OTLP_ENDPOINT is None

    def test_dashboard_settings_use_prefix(self, monkeypatch):
        monkeypatch.setenv("DASHBOARD_POLL_INTERVAL_MS", "500")

        settings = DashboardSettings(_env_file=None)

        assert settings.POLL_INTERVAL_MS == 500
        assert settings.PROGRESS_INTERVAL_MS == 100
        assert settings.average_delay_ms == 105_000


class TestErrorLog:
    """Tests for the bounded error log and its reporter"""

    def test_most_recent_first_and_bounded(self):
        log = ErrorLog(limit=3)
        reporter = ErrorReporter(log, source="dashboard")

        for i in range(5):
            reporter.capture_message(f"error {i}")

        assert [e.message for e in log.list()] == ["error 4", "error 3", "error 2"]

    def test_explicit_trace_id_wins(self):
        log = ErrorLog()
        reporter = ErrorReporter(log)

        with use_trace(new_trace()):
            event = reporter.capture_message("boom", trace_id="abc")

        assert event.trace_id == "abc"
        assert log.find_by_trace("abc") == [event]

    def test_active_trace_is_used_by_default(self):
        log = ErrorLog()
        ctx = new_trace()

        with use_trace(ctx):
            event = ErrorReporter(log).capture_exception(RuntimeError("boom"), tags={"status": 500})

        assert event.trace_id == ctx.trace_id
        assert event.tags["status"] == "500"
        assert event.tags["source"] == "server"
        assert event.extra["exceptionType"] == "RuntimeError"
        assert event.message == "boom"

    def test_no_trace_leaves_empty_tag(self):
        event = ErrorReporter(ErrorLog()).capture_message("boom")

        assert event.tags["traceId"] == ""
        assert event.trace_id is None


class TestSentryForwarding:
    """Tests for forwarding captured errors to Sentry"""

    @pytest.fixture
    def sentry(self, monkeypatch):
        fake = MagicMock()
        monkeypatch.setattr("download_service.core.error_log.sentry_sdk", fake)
        return fake

    def test_exception_is_sent_with_trace_tag(self, sentry):
        ctx = new_trace()
        error = RuntimeError("boom")

        with use_trace(ctx):
            event = ErrorReporter(ErrorLog()).capture_exception(error, tags={"status": 500})

        sentry.capture_exception.assert_called_once_with(error)
        scope = sentry.new_scope.return_value.__enter__.return_value
        scope.set_tag.assert_any_call("traceId", ctx.trace_id)
        scope.set_tag.assert_any_call("status", "500")
        scope.set_context.assert_called_once_with(
            "error_log", {"id": event.id, "exceptionType": "RuntimeError"}
        )

    def test_message_is_sent_with_level(self, sentry):
        ErrorReporter(ErrorLog(), source="dashboard").capture_message("slow", level="warning")

        sentry.capture_message.assert_called_once_with("slow", level="warning")
        scope = sentry.new_scope.return_value.__enter__.return_value
        scope.set_tag.assert_any_call("source", "dashboard")

    def test_local_log_is_kept_alongside_sentry(self, sentry):
        log = ErrorLog()

        ErrorReporter(log).capture_message("boom")

        assert len(log) == 1

    def test_tracking_disabled_without_dsn(self, sentry):
        assert init_error_tracking(None, "test") is False
        sentry.init.assert_not_called()

    def test_tracking_enabled_with_dsn(self, sentry):
        dsn = "https://public@o0.ingest.sentry.io/0"

        assert init_error_tracking(dsn, "production", release="1.0.0") is True

        kwargs = sentry.init.call_args.kwargs
        assert kwargs["dsn"] == dsn
        assert kwargs["environment"] == "production"
        assert kwargs["release"] == "1.0.0"
