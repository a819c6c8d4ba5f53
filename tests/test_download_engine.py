"""
Tests for the simulated download engine
"""
import asyncio
import random

import pytest
from opentelemetry.trace import StatusCode

from download_service.core.exceptions import StorageError, ValidationError
from download_service.core.tracing import tracer
from download_service.schemas.download import Availability
from download_service.schemas.job import JobStatus
from download_service.services.download_engine import FILE_NOT_FOUND_ERROR, DownloadEngine
from download_service.services.storage_service import AvailabilityOracle

from conftest import AVAILABLE_FILE_ID, MISSING_FILE_ID, FakeClock


class BrokenOracle(AvailabilityOracle):
    async def check(self, file_id):
        raise StorageError("storage unreachable")

    async def health(self):
        return False


class TestStartDownload:
    """Tests for DownloadEngine.start"""

    def test_available_file_completes(self, engine, store):
        result = asyncio.run(engine.start(AVAILABLE_FILE_ID))

        assert result.status == "completed"
        assert result.downloadUrl.startswith("https://storage.example.com/70007.zip?token=")
        assert 1000 <= result.size <= 10_000_999
        assert result.message.startswith("Download ready after ")

        record = store.get(AVAILABLE_FILE_ID)
        assert record.status is JobStatus.COMPLETED
        assert record.download_url == result.downloadUrl
        assert record.completed_at is not None
        assert record.error is None

    def test_missing_file_fails(self, engine, store):
        result = asyncio.run(engine.start(MISSING_FILE_ID))

        assert result.status == "failed"
        assert result.downloadUrl is None
        assert result.size is None
        assert result.message.startswith("File not found after ")

        record = store.get(MISSING_FILE_ID)
        assert record.status is JobStatus.FAILED
        assert record.error == FILE_NOT_FOUND_ERROR
        assert record.download_url is None

    def test_processing_time_stays_within_latency_window(self, engine, store, delayed_settings):
        for _ in range(10):
            result = asyncio.run(engine.start(AVAILABLE_FILE_ID))
            assert delayed_settings.DOWNLOAD_DELAY_MIN_MS <= result.processingTimeMs
            assert result.processingTimeMs <= delayed_settings.DOWNLOAD_DELAY_MAX_MS
            assert store.get(AVAILABLE_FILE_ID).duration == result.processingTimeMs

    def test_message_reports_seconds_with_one_decimal(self, engine):
        result = asyncio.run(engine.start(MISSING_FILE_ID))

        seconds = result.processingTimeMs / 1000
        assert result.message == f"File not found after {seconds:.1f} seconds of processing"

    def test_disabled_latency_answers_immediately(self, settings, store, oracle):
        clock = FakeClock()
        engine = DownloadEngine(
            settings=settings, store=store, oracle=oracle, sleep=clock.sleep, clock=clock
        )

        result = asyncio.run(engine.start(AVAILABLE_FILE_ID))

        assert result.processingTimeMs == 0
        assert clock.sleeps == [0]

    def test_job_is_in_progress_while_sleeping(self, delayed_settings, store, oracle):
        seen = []

        async def observing_sleep(seconds):
            seen.append(store.get(AVAILABLE_FILE_ID).status)

        engine = DownloadEngine(
            settings=delayed_settings, store=store, oracle=oracle, sleep=observing_sleep
        )
        asyncio.run(engine.start(AVAILABLE_FILE_ID))

        assert seen == [JobStatus.IN_PROGRESS]
        assert store.get(AVAILABLE_FILE_ID).status is JobStatus.COMPLETED

    def test_oracle_failure_counts_as_unavailable(self, delayed_settings, store, fake_clock):
        engine = DownloadEngine(
            settings=delayed_settings,
            store=store,
            oracle=BrokenOracle(),
            sleep=fake_clock.sleep,
            clock=fake_clock,
        )

        result = asyncio.run(engine.start(AVAILABLE_FILE_ID))

        assert result.status == "failed"
        assert store.get(AVAILABLE_FILE_ID).error == FILE_NOT_FOUND_ERROR

    def test_new_start_replaces_previous_job(self, engine, store):
        asyncio.run(engine.start(AVAILABLE_FILE_ID))
        first_job = store.get(AVAILABLE_FILE_ID).job_id

        asyncio.run(engine.start(AVAILABLE_FILE_ID))

        assert store.get(AVAILABLE_FILE_ID).job_id != first_job
        assert len(store) == 1

    @pytest.mark.parametrize("file_id", [9_999, 100_000_001, -5])
    def test_out_of_range_file_id_is_rejected(self, engine, store, file_id):
        with pytest.raises(ValidationError):
            asyncio.run(engine.start(file_id))
        assert len(store) == 0

    def test_start_is_recorded_as_span(self, engine):
        asyncio.run(engine.start(AVAILABLE_FILE_ID))

        spans = [s for s in tracer.finished_spans() if s.name == "download.start"]
        assert len(spans) == 1
        assert spans[0].attributes["file_id"] == AVAILABLE_FILE_ID
        assert spans[0].attributes["download.status"] == "completed"
        assert spans[0].status.status_code != StatusCode.ERROR


class TestLatency:
    """Tests for latency selection"""

    def test_latency_bounds(self, engine, delayed_settings):
        picks = [engine.pick_latency_ms() for _ in range(200)]

        assert min(picks) >= delayed_settings.DOWNLOAD_DELAY_MIN_MS
        assert max(picks) <= delayed_settings.DOWNLOAD_DELAY_MAX_MS
        assert all(isinstance(p, int) for p in picks)

    def test_disabled_latency_is_zero(self, settings, store, oracle):
        engine = DownloadEngine(settings=settings, store=store, oracle=oracle)

        assert engine.pick_latency_ms() == 0


class TestCheckAvailability:
    """Tests for availability checks"""

    def test_available(self, engine):
        result = asyncio.run(engine.check_availability(AVAILABLE_FILE_ID))

        assert result.available is True
        assert result.s3Key == "70007.zip"

    def test_missing(self, engine):
        result = asyncio.run(engine.check_availability(MISSING_FILE_ID))

        assert result == Availability(available=False)

    def test_check_does_not_create_jobs(self, engine, store):
        asyncio.run(engine.check_availability(AVAILABLE_FILE_ID))

        assert len(store) == 0


class TestInitiate:
    def test_initiate_acknowledges_batch(self, engine, store):
        result = engine.initiate([70007, 70014, 70001])

        assert result.status == "queued"
        assert result.totalFileIds == 3
        assert result.jobId
        assert len(store) == 0


class TestShutdown:
    def test_shutdown_cancels_unfinished_downloads(self, delayed_settings, store, oracle):
        async def scenario():
            engine = DownloadEngine(
                settings=delayed_settings,
                store=store,
                oracle=oracle,
                rng=random.Random(1),
            )
            caller = asyncio.ensure_future(engine.start(AVAILABLE_FILE_ID))
            await asyncio.sleep(0.01)
            await engine.shutdown(timeout=0.01)
            with pytest.raises(asyncio.CancelledError):
                await caller

        asyncio.run(scenario())
        assert store.get(AVAILABLE_FILE_ID).status is JobStatus.IN_PROGRESS
