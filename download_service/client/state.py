# download_service/client/state.py
"""
Client-side view of one tracked download and the rules for merging the two
signals that update it.

A tracked job is either ``Optimistic`` (nothing heard from the server yet,
status inferred locally) or ``Confirmed`` (last server answer). The progress
timer only refines ``progress`` and promotes an optimistic ``pending`` to
``in_progress``; every server answer replaces the state wholesale. Once the
status is terminal nothing changes any more.

All functions here are pure: they take a ClientJob and return a new one.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional, Union

PENDING = "pending"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
FAILED = "failed"
TIMEOUT = "timeout"
NOT_FOUND = "not_found"

TERMINAL_STATUSES = frozenset({COMPLETED, FAILED, TIMEOUT, NOT_FOUND})

# 100 is reserved for a confirmed completion
ESTIMATE_CEILING = 95.0


@dataclass(frozen=True)
class Optimistic:
    status: str = PENDING


@dataclass(frozen=True)
class Confirmed:
    view: Mapping[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> str:
        return str(self.view.get("status") or "unknown")


JobState = Union[Optimistic, Confirmed]


@dataclass(frozen=True)
class ClientJob:
    file_id: int
    start_time: float
    progress: float = 0.0
    state: JobState = field(default_factory=Optimistic)
    poll_error: Optional[str] = None

    @property
    def status(self) -> str:
        return self.state.status

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def confirmed(self) -> bool:
        return isinstance(self.state, Confirmed)

    def server_field(self, name: str) -> Any:
        if isinstance(self.state, Confirmed):
            return self.state.view.get(name)
        return None

    @property
    def job_id(self) -> Optional[str]:
        return self.server_field("jobId")

    @property
    def error(self) -> Optional[str]:
        return self.server_field("error")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if isinstance(self.state, Confirmed):
            data.update(self.state.view)
        data.update(
            fileId=self.file_id,
            status=self.status,
            progress=self.progress,
            startTime=self.start_time,
        )
        if self.poll_error:
            data["pollError"] = self.poll_error
        return data


def new_job(file_id: int, now: float) -> ClientJob:
    """Optimistic job created the instant the user acts."""
    return ClientJob(file_id=file_id, start_time=now)


def estimate_progress(elapsed_ms: float, average_ms: float) -> float:
    if average_ms <= 0:
        return ESTIMATE_CEILING
    estimate = elapsed_ms / average_ms * 100
    return round(min(ESTIMATE_CEILING, max(0.0, estimate)), 1)


def tick_progress(
    job: ClientJob, now: float, average_ms: float, promote_after_ms: float
) -> ClientJob:
    """Progress-timer update. Never lowers progress, never touches a terminal job."""
    if job.is_terminal:
        return job

    elapsed_ms = (now - job.start_time) * 1000
    progress = max(job.progress, estimate_progress(elapsed_ms, average_ms))

    state = job.state
    if isinstance(state, Optimistic) and state.status == PENDING and elapsed_ms > promote_after_ms:
        state = Optimistic(IN_PROGRESS)

    if progress == job.progress and state is job.state:
        return job
    return replace(job, progress=progress, state=state)


def apply_status(job: ClientJob, view: Mapping[str, Any]) -> ClientJob:
    """Server answer. Its status always wins over the local one."""
    if job.is_terminal:
        return job

    state = Confirmed(dict(view))
    progress = job.progress
    if state.status == COMPLETED:
        progress = 100.0
    # failed / not_found freeze progress where it was
    return replace(job, state=state, progress=progress)


def mark_poll_failure(job: ClientJob, message: str) -> ClientJob:
    """Keep the last known state and show that it will not resolve further."""
    return replace(job, poll_error=message)


def expire(job: ClientJob) -> ClientJob:
    """Give up on a job that stayed unresolved for too long."""
    if job.is_terminal:
        return job
    return replace(job, state=Optimistic(TIMEOUT))


def view_from_start_response(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Shape a start-download answer like a status answer."""
    status = data.get("status") or COMPLETED
    view: Dict[str, Any] = {
        "file_id": data.get("file_id"),
        "status": status,
        "downloadUrl": data.get("downloadUrl"),
        "size": data.get("size"),
        "processingTimeMs": data.get("processingTimeMs"),
        "duration": data.get("processingTimeMs"),
        "message": data.get("message"),
    }
    if status == FAILED:
        view["error"] = "File not found in storage"
    return view
