# download_service/schemas/download.py

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt

from download_service.core.config import FILE_ID_MAX, FILE_ID_MIN


FileId = Annotated[
    StrictInt, Field(ge=FILE_ID_MIN, le=FILE_ID_MAX, description="File ID (10K to 100M)")
]


class FileIdRequest(BaseModel):
    file_id: FileId


class InitiateRequest(BaseModel):
    file_ids: List[FileId] = Field(min_length=1, max_length=1000)


class InitiateResponse(BaseModel):
    jobId: str
    status: Literal["queued", "processing"]
    totalFileIds: int


class Availability(BaseModel):
    available: bool
    s3Key: Optional[str] = None
    size: Optional[int] = None


class CheckAvailabilityResponse(Availability):
    file_id: int


class StartDownloadResponse(BaseModel):
    file_id: int
    status: Literal["completed", "failed"]
    downloadUrl: Optional[str]
    size: Optional[int]
    processingTimeMs: int
    message: str


class DownloadStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_id: int
    status: Literal["pending", "in_progress", "completed", "failed", "not_found"]
    job_id: Optional[str] = Field(default=None, alias="jobId")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")
    duration: Optional[int] = None
    error: Optional[str] = None
    download_url: Optional[str] = Field(default=None, alias="downloadUrl")
    size: Optional[int] = None
    processing_time_ms: Optional[int] = Field(default=None, alias="processingTimeMs")


class HealthChecks(BaseModel):
    storage: Literal["ok", "error"]


class HealthResponse(BaseModel):
    status: Literal["healthy", "unhealthy"]
    checks: HealthChecks


class ErrorResponse(BaseModel):
    error: str
    message: str
    requestId: Optional[str] = None
    traceId: Optional[str] = None


class ErrorLogResponse(BaseModel):
    total: int
    errors: List[Dict[str, Any]]
