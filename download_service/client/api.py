# download_service/client/api.py
"""
HTTP client used by the dashboard.

Every outgoing request gets a ``traceparent`` header, taken from the active
trace when there is one. Every failed call (non-2xx answer or transport
error) is written to the client's ErrorLog with the trace id read back from
that request's own header, so the entry can be matched with the server side.
"""

from typing import Any, Dict, Iterable, Optional

import httpx

from download_service.core.config import DashboardSettings
from download_service.core.error_log import ErrorLog, ErrorReporter
from download_service.core.exceptions import TransportError
from download_service.core.logging import LoggerMixin
from download_service.core.tracing import (
    TRACEPARENT_HEADER,
    current_trace,
    format_traceparent,
    new_trace,
    trace_id_from_header,
)


async def inject_traceparent(request: httpx.Request) -> None:
    """Request hook: attach the active trace, or start a new one."""
    if TRACEPARENT_HEADER in request.headers:
        return
    active = current_trace()
    ctx = active.child() if active else new_trace()
    request.headers[TRACEPARENT_HEADER] = format_traceparent(ctx)


class DownloadApiClient(LoggerMixin):
    def __init__(
        self,
        settings: DashboardSettings,
        error_log: Optional[ErrorLog] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.error_log = error_log or ErrorLog(limit=settings.ERROR_LOG_LIMIT)
        self.reporter = ErrorReporter(self.error_log, source="dashboard")
        self._client = httpx.AsyncClient(
            base_url=settings.API_URL,
            headers={"Content-Type": "application/json"},
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            event_hooks={"request": [inject_traceparent]},
            transport=transport,
        )

    async def __aenter__(self) -> "DownloadApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        url: str,
        allow_status: Iterable[int] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            trace_id = self._trace_id_of(e)
            self.reporter.capture_exception(
                e,
                tags={"error_type": "network_error", "endpoint": url, "method": method.lower()},
                trace_id=trace_id,
                message="Network Error",
            )
            raise TransportError(
                f"{method} {url} failed: {e}", trace_id=trace_id
            ) from e

        if response.is_error and response.status_code not in allow_status:
            trace_id = trace_id_from_header(response.request.headers.get(TRACEPARENT_HEADER))
            message = f"Request failed with status code {response.status_code}"
            self.reporter.capture_message(
                message,
                tags={
                    "endpoint": url,
                    "method": method.lower(),
                    "status": response.status_code,
                },
                extra={"responseData": _body_of(response)},
                trace_id=trace_id,
            )
            raise TransportError(message, status_code=response.status_code, trace_id=trace_id)
        return response

    def _json(self, response: httpx.Response, method: str, url: str) -> Dict[str, Any]:
        """Decoded JSON object body; anything else is recorded and raised as a TransportError."""
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            return data

        trace_id = trace_id_from_header(response.request.headers.get(TRACEPARENT_HEADER))
        message = "Invalid response body"
        self.reporter.capture_message(
            message,
            tags={
                "error_type": "invalid_response",
                "endpoint": url,
                "method": method.lower(),
                "status": response.status_code,
            },
            extra={"responseData": response.text[:500]},
            trace_id=trace_id,
        )
        raise TransportError(message, status_code=response.status_code, trace_id=trace_id)

    @staticmethod
    def _trace_id_of(error: httpx.RequestError) -> Optional[str]:
        try:
            request = error.request
        except RuntimeError:
            return None
        return trace_id_from_header(request.headers.get(TRACEPARENT_HEADER))

    async def health(self) -> Dict[str, Any]:
        response = await self._request(
            "GET", "/health", allow_status=(503,), timeout=self.settings.POLL_TIMEOUT_SECONDS
        )
        return self._json(response, "GET", "/health")

    async def check_availability(self, file_id: int, error_test: bool = False) -> Dict[str, Any]:
        params = {"error_test": "true"} if error_test else None
        response = await self._request(
            "POST",
            "/v1/download/check",
            json={"file_id": file_id},
            params=params,
            timeout=self.settings.POLL_TIMEOUT_SECONDS,
        )
        return self._json(response, "POST", "/v1/download/check")

    async def start_download(self, file_id: int) -> Dict[str, Any]:
        """Resolves only once the server has finished the simulated download."""
        response = await self._request("POST", "/v1/download/start", json={"file_id": file_id})
        return self._json(response, "POST", "/v1/download/start")

    async def get_status(self, file_id: int) -> Dict[str, Any]:
        response = await self._request(
            "GET",
            f"/v1/download/status/{file_id}",
            allow_status=(404,),
            timeout=self.settings.POLL_TIMEOUT_SECONDS,
        )
        if response.status_code == 404:
            return {"file_id": file_id, "status": "not_found", "error": "Job not found"}
        return self._json(response, "GET", f"/v1/download/status/{file_id}")

    async def server_errors(self) -> Dict[str, Any]:
        response = await self._request(
            "GET", "/v1/errors", timeout=self.settings.POLL_TIMEOUT_SECONDS
        )
        return self._json(response, "GET", "/v1/errors")


def _body_of(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text
