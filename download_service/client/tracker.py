# download_service/client/tracker.py

import asyncio
import time
from typing import Callable, Dict, List, Optional

from download_service.client.api import DownloadApiClient
from download_service.client.state import (
    ClientJob,
    apply_status,
    expire,
    mark_poll_failure,
    new_job,
    tick_progress,
    view_from_start_response,
)
from download_service.core.config import DashboardSettings
from download_service.core.exceptions import TransportError
from download_service.core.logging import LoggerMixin
from download_service.core.tracing import ensure_trace, use_trace


Listener = Callable[[ClientJob], None]


class JobTracker(LoggerMixin):
    """Tracks downloads started from the dashboard.

    Each tracked file id gets two independent repeating timers on the event
    loop: a fast one estimating progress from elapsed time and a slow one
    polling the status endpoint. Both are cancelled as soon as a terminal
    status or a poll failure is observed. All state changes happen on the
    loop thread and go through the pure functions in ``client.state``.
    """

    def __init__(
        self,
        api: DownloadApiClient,
        settings: DashboardSettings,
        clock: Callable[[], float] = time.time,
    ):
        self.api = api
        self.settings = settings
        self._clock = clock
        self._jobs: Dict[int, ClientJob] = {}
        self._order: List[int] = []
        self._timers: Dict[int, List[asyncio.Task]] = {}
        self._requests: Dict[int, asyncio.Task] = {}
        self._done: Dict[int, asyncio.Event] = {}
        self._listeners: List[Listener] = []

    @property
    def jobs(self) -> List[ClientJob]:
        """Tracked jobs, most recent first."""
        return [self._jobs[file_id] for file_id in self._order]

    def get(self, file_id: int) -> Optional[ClientJob]:
        return self._jobs.get(file_id)

    def is_tracking(self, file_id: int) -> bool:
        return file_id in self._timers

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def start(self, file_id: int) -> ClientJob:
        """Track a new download. Must be called from the running event loop."""
        self._stop_timers(file_id)
        previous = self._requests.pop(file_id, None)
        if previous is not None:
            previous.cancel()

        job = new_job(file_id, self._clock())
        if file_id in self._order:
            self._order.remove(file_id)
        self._order.insert(0, file_id)
        self._set(job)
        self._done[file_id] = asyncio.Event()

        self.logger.info("Tracking download", file_id=file_id)

        # one trace for the whole user action; tasks inherit it
        with use_trace(ensure_trace()):
            self._timers[file_id] = [
                asyncio.create_task(self._progress_loop(file_id), name=f"progress-{file_id}"),
                asyncio.create_task(self._poll_loop(file_id), name=f"poll-{file_id}"),
            ]
            self._requests[file_id] = asyncio.create_task(
                self._request_start(file_id), name=f"start-{file_id}"
            )

        self._tick(file_id)
        return self._jobs[file_id]

    async def wait(self, file_id: int) -> Optional[ClientJob]:
        """Wait until the job's timers have stopped; returns its final state."""
        done = self._done.get(file_id)
        if done is not None:
            await done.wait()
        return self._jobs.get(file_id)

    async def close(self) -> None:
        tasks = [t for timers in self._timers.values() for t in timers]
        tasks.extend(self._requests.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)
        for file_id in list(self._timers):
            self._stop_timers(file_id)
        self._requests.clear()

    def _set(self, job: ClientJob) -> ClientJob:
        self._jobs[job.file_id] = job
        for listener in self._listeners:
            listener(job)
        return job

    def _stop_timers(self, file_id: int) -> None:
        timers = self._timers.pop(file_id, [])
        current = asyncio.current_task()
        for task in timers:
            if task is not current:
                task.cancel()
        done = self._done.get(file_id)
        if done is not None:
            done.set()

    def _tick(self, file_id: int) -> bool:
        job = self._jobs.get(file_id)
        if job is None or job.is_terminal:
            return False
        updated = tick_progress(
            job,
            self._clock(),
            self.settings.average_delay_ms,
            self.settings.PROMOTE_AFTER_MS,
        )
        if updated is not job:
            self._set(updated)
        return True

    async def _progress_loop(self, file_id: int) -> None:
        interval = self.settings.PROGRESS_INTERVAL_MS / 1000
        while True:
            await asyncio.sleep(interval)
            if not self._tick(file_id):
                return

    async def _poll_loop(self, file_id: int) -> None:
        interval = self.settings.POLL_INTERVAL_MS / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                view = await self.api.get_status(file_id)
                job = self._set(apply_status(self._jobs[file_id], view))
            except TransportError as e:
                self.logger.warning(
                    "Status polling failed, giving up on job",
                    file_id=file_id,
                    error=e.message,
                    trace_id=e.trace_id,
                )
                self._give_up(file_id, e.message)
                return
            except Exception as e:
                self.logger.exception("Status polling crashed, giving up on job", file_id=file_id)
                self._give_up(file_id, f"{type(e).__name__}: {e}")
                return

            if not job.is_terminal and self._expired(job):
                job = self._set(expire(job))
            if job.is_terminal:
                self.logger.info(
                    "Download resolved",
                    file_id=file_id,
                    status=job.status,
                    progress=job.progress,
                )
                self._stop_timers(file_id)
                return

    def _give_up(self, file_id: int, message: str) -> None:
        self._set(mark_poll_failure(self._jobs[file_id], message))
        self._stop_timers(file_id)

    def _expired(self, job: ClientJob) -> bool:
        limit = self.settings.TRACK_TIMEOUT_MS
        return limit > 0 and (self._clock() - job.start_time) * 1000 > limit

    async def _request_start(self, file_id: int) -> None:
        try:
            data = await self.api.start_download(file_id)
        except TransportError as e:
            # the server keeps working; polling decides the outcome
            self.logger.warning(
                "Start request failed, relying on status polling",
                file_id=file_id,
                error=e.message,
                trace_id=e.trace_id,
            )
            return
        finally:
            if self._requests.get(file_id) is asyncio.current_task():
                del self._requests[file_id]

        job = self._jobs.get(file_id)
        if job is None or not self.is_tracking(file_id):
            return
        job = self._set(apply_status(job, view_from_start_response(data)))
        if job.is_terminal:
            self.logger.info(
                "Download resolved by start response", file_id=file_id, status=job.status
            )
            self._stop_timers(file_id)
