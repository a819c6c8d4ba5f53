from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response
import time

# API Metrics
http_requests_total = Counter(
    "download_service_http_requests_total", "Total HTTP requests", ["method", "endpoint", "status_code"]
)

http_request_duration_seconds = Histogram(
    "download_service_http_request_duration_seconds",
    "HTTP request duration",
    ["method", "endpoint"],
    buckets=(0.1, 0.5, 1.0, 5.0, 30.0, 120.0, 300.0),
)

# Download job metrics
download_jobs_total = Counter("download_service_jobs_total", "Finished download jobs", ["status"])

download_jobs_in_progress = Gauge("download_service_jobs_in_progress", "Download jobs currently waiting on latency")

download_processing_seconds = Histogram(
    "download_service_processing_seconds",
    "Wall-clock time from job creation to terminal state",
    buckets=(1, 5, 10, 30, 60, 120, 200, 300),
)

availability_checks_total = Counter(
    "download_service_availability_checks_total", "Availability oracle lookups", ["result"]
)

errors_captured_total = Counter("download_service_errors_captured_total", "Exceptions reported to the error log")


# label for requests that matched no route
UNMATCHED_ENDPOINT = "unknown"


class RequestTimer:
    """Context manager recording one request in the HTTP metrics.

    Example:
        with RequestTimer("GET", "/health") as timer:
            response = await call_next(request)
            timer.status_code = response.status_code
    """

    def __init__(self, method: str, endpoint: str):
        self.method = method
        self.endpoint = endpoint
        self.status_code = 500

    def __enter__(self):
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        http_request_duration_seconds.labels(method=self.method, endpoint=self.endpoint).observe(
            time.perf_counter() - self._start
        )
        http_requests_total.labels(
            method=self.method, endpoint=self.endpoint, status_code=str(self.status_code)
        ).inc()
        return False


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
