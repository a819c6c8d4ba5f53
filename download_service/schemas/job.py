# download_service/schemas/job.py

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    """Server-authoritative job vocabulary."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Reported for a file id that never had a job; never stored.
NOT_FOUND = "not_found"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobRecord(BaseModel):
    """Lifecycle state of the newest job for one file id."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="jobId")
    file_id: int
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")
    duration: Optional[int] = None
    processing_time_ms: Optional[int] = Field(default=None, alias="processingTimeMs")
    error: Optional[str] = None
    download_url: Optional[str] = Field(default=None, alias="downloadUrl")
    size: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_response(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MissingJob(BaseModel):
    """Status answer for a file id without any recorded job."""

    model_config = ConfigDict(frozen=True)

    file_id: int
    status: Literal["not_found"] = NOT_FOUND

    def to_response(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
