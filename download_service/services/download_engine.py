# download_service/services/download_engine.py
import asyncio
import random
import time
import uuid
from typing import Awaitable, Callable, List, Optional, Set

from download_service.core.config import FILE_ID_MAX, FILE_ID_MIN, Settings
from download_service.core.exceptions import ValidationError
from download_service.core.jobs import JobStore
from download_service.core.logging import LoggerMixin
from download_service.core.metrics import (
    availability_checks_total,
    download_jobs_in_progress,
    download_jobs_total,
    download_processing_seconds,
)
from download_service.core.tracing import tracer
from download_service.schemas.download import (
    Availability,
    InitiateResponse,
    StartDownloadResponse,
)
from download_service.schemas.job import JobRecord, JobStatus, utcnow
from download_service.services.storage_service import AvailabilityOracle


FILE_NOT_FOUND_ERROR = "File not found in storage"


def validate_file_id(file_id: int) -> None:
    if not isinstance(file_id, int) or not FILE_ID_MIN <= file_id <= FILE_ID_MAX:
        raise ValidationError(
            f"file_id must be an integer between {FILE_ID_MIN} and {FILE_ID_MAX}",
            {"file_id": file_id},
        )


class DownloadEngine(LoggerMixin):
    """Runs one simulated download per ``start`` call, from creation to terminal state.

    The caller only gets an answer once the simulated latency has elapsed and
    the oracle has been consulted. The job itself runs in its own task, so a
    caller that goes away does not cut the latency short.
    """

    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        oracle: AvailabilityOracle,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings
        self.store = store
        self.oracle = oracle
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._running: Set[asyncio.Task] = set()

    def pick_latency_ms(self) -> int:
        """Uniform integer in [min, max]; 0 when the simulation is disabled."""
        if not self.settings.DOWNLOAD_DELAY_ENABLED:
            return 0
        return self._rng.randint(
            self.settings.DOWNLOAD_DELAY_MIN_MS, self.settings.DOWNLOAD_DELAY_MAX_MS
        )

    async def check_availability(self, file_id: int) -> Availability:
        validate_file_id(file_id)
        with tracer.span("download.check", file_id=file_id) as span:
            result = await self._lookup(file_id)
            span.set_attribute("download.available", result.available)
            return result

    def initiate(self, file_ids: List[int]) -> InitiateResponse:
        job_id = str(uuid.uuid4())
        self.logger.info("Batch download acknowledged", job_id=job_id, total=len(file_ids))
        return InitiateResponse(jobId=job_id, status="queued", totalFileIds=len(file_ids))

    async def start(self, file_id: int) -> StartDownloadResponse:
        validate_file_id(file_id)
        task = asyncio.ensure_future(self._run(file_id))
        self._running.add(task)
        task.add_done_callback(self._running.discard)
        return await asyncio.shield(task)

    async def _run(self, file_id: int) -> StartDownloadResponse:
        job_id = str(uuid.uuid4())
        started = self._clock()

        with tracer.span("download.start", file_id=file_id, job_id=job_id) as span:
            # pending first, so a status read in between sees a defined state
            record = self.store.create(file_id, job_id)
            self.store.update(file_id, job_id, status=JobStatus.IN_PROGRESS)

            delay_ms = self.pick_latency_ms()
            self.logger.info(
                "Starting download",
                file_id=file_id,
                job_id=job_id,
                delay_s=round(delay_ms / 1000, 1),
                min_s=self.settings.DOWNLOAD_DELAY_MIN_MS // 1000,
                max_s=self.settings.DOWNLOAD_DELAY_MAX_MS // 1000,
                enabled=self.settings.DOWNLOAD_DELAY_ENABLED,
            )

            download_jobs_in_progress.inc()
            try:
                await self._sleep(delay_ms / 1000)
                availability = await self._lookup(file_id)
            finally:
                download_jobs_in_progress.dec()

            processing_time_ms = int(round((self._clock() - started) * 1000))
            final = self._finalize(record, availability, processing_time_ms)
            self.store.put(final)

            span.set_attribute("download.status", final.status.value)
            span.set_attribute("download.available", availability.available)
            span.set_attribute("download.processing_time_ms", processing_time_ms)
            download_jobs_total.labels(status=final.status.value).inc()
            download_processing_seconds.observe(processing_time_ms / 1000)

            self.logger.info(
                "Download finished",
                file_id=file_id,
                job_id=job_id,
                status=final.status.value,
                processing_time_ms=processing_time_ms,
                available=availability.available,
            )

            seconds = processing_time_ms / 1000
            if final.status is JobStatus.COMPLETED:
                message = f"Download ready after {seconds:.1f} seconds"
            else:
                message = f"File not found after {seconds:.1f} seconds of processing"

            return StartDownloadResponse(
                file_id=file_id,
                status=final.status.value,
                downloadUrl=final.download_url,
                size=final.size,
                processingTimeMs=processing_time_ms,
                message=message,
            )

    def _finalize(
        self, record: JobRecord, availability: Availability, processing_time_ms: int
    ) -> JobRecord:
        terminal = {
            "completed_at": utcnow(),
            "duration": processing_time_ms,
            "processing_time_ms": processing_time_ms,
        }
        if availability.available:
            token = uuid.uuid4()
            terminal.update(
                status=JobStatus.COMPLETED,
                download_url=f"{self.settings.DOWNLOAD_BASE_URL.rstrip('/')}/{availability.s3Key or ''}?token={token}",
                size=availability.size,
            )
        else:
            terminal.update(status=JobStatus.FAILED, error=FILE_NOT_FOUND_ERROR)
        return record.model_copy(update=terminal)

    async def _lookup(self, file_id: int) -> Availability:
        """One oracle call; any failure counts as unavailable."""
        try:
            result = await self.oracle.check(file_id)
        except Exception as e:
            self.logger.warning("Availability lookup failed", file_id=file_id, error=str(e))
            availability_checks_total.labels(result="error").inc()
            return Availability(available=False)
        availability_checks_total.labels(
            result="available" if result.available else "missing"
        ).inc()
        return result

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Give sleeping jobs ``timeout`` seconds to finish, then cancel the rest."""
        if not self._running:
            return
        _, pending = await asyncio.wait(set(self._running), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            self.logger.warning("Cancelled unfinished downloads on shutdown", count=len(pending))
            await asyncio.gather(*pending, return_exceptions=True)
