# download_service/core/dependencies.py
"""
Centralized dependency injection for FastAPI.
The job store, oracle and error log are process-wide; tests override
these providers through ``app.dependency_overrides``.
"""

from typing import Annotated, Optional
from fastapi import Depends

from download_service.core.config import Settings, get_settings
from download_service.core.error_log import ErrorLog, ErrorReporter
from download_service.core.jobs import JobStore
from download_service.core.logging import get_logger
from download_service.services.download_engine import DownloadEngine
from download_service.services.status_service import StatusQueryService
from download_service.services.storage_service import AvailabilityOracle, build_oracle

logger = get_logger(__name__)


_job_store: Optional[JobStore] = None
_oracle: Optional[AvailabilityOracle] = None
_error_log: Optional[ErrorLog] = None
_engine: Optional[DownloadEngine] = None


def get_job_store() -> JobStore:
    global _job_store
    if _job_store is None:
        logger.info("Creating job store")
        _job_store = JobStore()
    return _job_store


def get_oracle(
    settings: Annotated[Settings, Depends(get_settings)],
) -> AvailabilityOracle:
    global _oracle
    if _oracle is None:
        logger.info(
            "Creating availability oracle",
            mock=settings.mock_storage,
            bucket=settings.S3_BUCKET_NAME or None,
        )
        _oracle = build_oracle(settings)
    return _oracle


def get_error_log(
    settings: Annotated[Settings, Depends(get_settings)],
) -> ErrorLog:
    global _error_log
    if _error_log is None:
        _error_log = ErrorLog(limit=settings.ERROR_LOG_LIMIT)
    return _error_log


def get_error_reporter(
    error_log: Annotated[ErrorLog, Depends(get_error_log)],
) -> ErrorReporter:
    return ErrorReporter(error_log, source="server")


def get_download_engine(
    settings: Annotated[Settings, Depends(get_settings)],
    store: Annotated[JobStore, Depends(get_job_store)],
    oracle: Annotated[AvailabilityOracle, Depends(get_oracle)],
) -> DownloadEngine:
    """One engine per process so in-flight jobs can be drained on shutdown."""
    global _engine
    if _engine is None:
        logger.debug("Creating download engine")
        _engine = DownloadEngine(settings=settings, store=store, oracle=oracle)
    return _engine


def get_status_service(
    store: Annotated[JobStore, Depends(get_job_store)],
) -> StatusQueryService:
    return StatusQueryService(store)


def reset_dependencies() -> None:
    """Forget every process-wide instance; the next request builds fresh ones."""
    global _job_store, _oracle, _error_log, _engine
    _job_store = _oracle = _error_log = _engine = None


async def shutdown_dependencies() -> None:
    """Stop running jobs and release the oracle's HTTP client."""
    if _engine is not None:
        await _engine.shutdown()
    if _oracle is not None:
        await _oracle.aclose()
    reset_dependencies()
