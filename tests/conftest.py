"""
Pytest fixtures and configuration for download service tests
"""
import random

import pytest
from fastapi.testclient import TestClient

from download_service.core.config import DashboardSettings, Settings, get_settings
from download_service.core.dependencies import reset_dependencies
from download_service.core.jobs import JobStore
from download_service.core.middleware import limiter
from download_service.core.tracing import tracer
from download_service.main import app
from download_service.services.download_engine import DownloadEngine
from download_service.services.storage_service import MockStorageOracle


AVAILABLE_FILE_ID = 70007  # divisible by 7
MISSING_FILE_ID = 70001
TRACE_ID = "4bf92f3577b34da6a3ce929d0e0e4736"
PARENT_SPAN_ID = "00f067aa0ba902b7"
TRACEPARENT = f"00-{TRACE_ID}-{PARENT_SPAN_ID}-01"


class FakeClock:
    """Monotonic clock that only moves when a fake sleep advances it."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def settings():
    """Server settings with the simulated latency turned off"""
    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        DOWNLOAD_DELAY_ENABLED=False,
        DOWNLOAD_DELAY_MIN_MS=10_000,
        DOWNLOAD_DELAY_MAX_MS=200_000,
    )


@pytest.fixture
def delayed_settings():
    """Server settings with a short, enabled latency window"""
    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        DOWNLOAD_DELAY_ENABLED=True,
        DOWNLOAD_DELAY_MIN_MS=2_000,
        DOWNLOAD_DELAY_MAX_MS=4_000,
    )


@pytest.fixture
def dashboard_settings():
    """Dashboard settings with fast timers"""
    return DashboardSettings(
        _env_file=None,
        API_URL="http://testserver",
        POLL_INTERVAL_MS=20,
        PROGRESS_INTERVAL_MS=5,
        PROMOTE_AFTER_MS=0,
        EXPECTED_DELAY_MIN_MS=1_000,
        EXPECTED_DELAY_MAX_MS=3_000,
    )


@pytest.fixture
def store():
    return JobStore()


@pytest.fixture
def oracle():
    return MockStorageOracle(rng=random.Random(7))


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def engine(delayed_settings, store, oracle, fake_clock):
    """Engine whose sleeps advance a fake clock instead of waiting"""
    return DownloadEngine(
        settings=delayed_settings,
        store=store,
        oracle=oracle,
        sleep=fake_clock.sleep,
        clock=fake_clock,
        rng=random.Random(42),
    )


@pytest.fixture(autouse=True)
def clean_tracer():
    tracer.clear()
    yield
    tracer.clear()


@pytest.fixture
def test_app(settings):
    """The FastAPI app wired to fresh process-wide dependencies"""
    reset_dependencies()
    limiter.reset()
    app.dependency_overrides[get_settings] = lambda: settings
    yield app
    app.dependency_overrides.clear()
    limiter.reset()
    reset_dependencies()


@pytest.fixture
def client(test_app):
    with TestClient(test_app) as c:
        yield c
