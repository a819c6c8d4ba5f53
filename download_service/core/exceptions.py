# download_service/core/exceptions.py
"""
Custom exceptions for the download service.
Provides structured error handling with clear error types and messages.
"""

from typing import Optional, Dict, Any
from fastapi import HTTPException


class DownloadServiceError(Exception):
    """Base exception for all download service operations."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(DownloadServiceError):
    """Raised when input validation fails."""

    pass


class ConfigurationError(DownloadServiceError):
    """Raised when application configuration is invalid."""

    pass


class StorageError(DownloadServiceError):
    """Raised when the content store lookup fails."""

    pass


class TransportError(DownloadServiceError):
    """Raised by the dashboard client when the API cannot be reached or answers non-2xx."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        trace_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code
        self.trace_id = trace_id


# HTTP Exception factories for FastAPI
def create_http_exception(
    status_code: int, message: str, details: Optional[Dict[str, Any]] = None
) -> HTTPException:
    """Create a structured HTTP exception."""
    detail = {"message": message}
    if details:
        detail["details"] = details
    return HTTPException(status_code=status_code, detail=detail)


def validation_http_error(
    message: str, details: Optional[Dict[str, Any]] = None
) -> HTTPException:
    """Create a 400 validation error."""
    return create_http_exception(400, message, details)


def error_payload(
    error: str,
    message: str,
    request_id: Optional[str] = None,
    trace_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Body for errors raised outside route handlers (timeouts, rate limits, crashes)."""
    return {
        "error": error,
        "message": message,
        "requestId": request_id,
        "traceId": trace_id,
    }


def internal_error_payload(
    message: str,
    request_id: Optional[str] = None,
    trace_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Body returned for unexpected server failures."""
    return error_payload("Internal Server Error", message, request_id, trace_id)
