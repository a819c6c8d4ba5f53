# download_service/main.py

import uuid
from contextlib import asynccontextmanager, nullcontext
from typing import Annotated, Optional

import anyio
from fastapi import Depends, FastAPI, Path, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.trace import Status, StatusCode
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from download_service.core.config import FILE_ID_MAX, FILE_ID_MIN, get_settings
from download_service.core.dependencies import (
    get_download_engine,
    get_error_log,
    get_error_reporter,
    get_oracle,
    get_status_service,
    shutdown_dependencies,
)
from download_service.core.error_log import ErrorLog, init_error_tracking
from download_service.core.exceptions import (
    ConfigurationError,
    ValidationError,
    error_payload,
    internal_error_payload,
    validation_http_error,
)
from download_service.core.logging import get_logger, setup_logging
from download_service.core.metrics import (
    UNMATCHED_ENDPOINT,
    RequestTimer,
    errors_captured_total,
    metrics_response,
)
from download_service.core.middleware import (
    limiter,
    rate_limit_exceeded,
    resolve_settings,
    security_headers,
)
from download_service.core.tracing import (
    TRACEPARENT_HEADER,
    format_traceparent,
    parse_traceparent,
    trace_context_of,
    tracer,
    use_trace,
)
from download_service.schemas.download import (
    CheckAvailabilityResponse,
    DownloadStatusResponse,
    ErrorLogResponse,
    ErrorResponse,
    FileIdRequest,
    HealthChecks,
    HealthResponse,
    InitiateRequest,
    InitiateResponse,
    StartDownloadResponse,
)
from download_service.services.download_engine import DownloadEngine
from download_service.services.status_service import StatusQueryService
from download_service.services.storage_service import AvailabilityOracle


logger = get_logger(__name__)

REQUEST_ID_HEADER = "x-request-id"


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Application lifespan - startup and shutdown"""
    settings = get_settings()
    setup_logging(log_level=settings.LOG_LEVEL, enable_json=settings.LOG_JSON)
    logger.info("Starting download service", environment=settings.ENVIRONMENT)

    try:
        settings.validate_runtime_dependencies()
        logger.info(
            "Configuration validated successfully",
            mock_storage=settings.mock_storage,
            delay_enabled=settings.DOWNLOAD_DELAY_ENABLED,
            delay_min_ms=settings.DOWNLOAD_DELAY_MIN_MS,
            delay_max_ms=settings.DOWNLOAD_DELAY_MAX_MS,
            request_timeout_ms=settings.REQUEST_TIMEOUT_MS,
            rate_limit=settings.rate_limit,
        )
        init_error_tracking(settings.SENTRY_DSN, settings.ENVIRONMENT, release=app.version)
        tracer.export_to(settings.OTEL_EXPORTER_OTLP_ENDPOINT)

        yield

    except ConfigurationError as e:
        logger.error("Configuration error during startup", error=str(e))
        raise
    finally:
        logger.info("Shutting down download service")
        await shutdown_dependencies()
        tracer.force_flush()


app = FastAPI(
    title="Download Service",
    description="Simulated long-running downloads with pollable job status",
    version="1.0.0",
    lifespan=lifespan,
)

# Middleware added last runs first: CORS, security headers, tracing,
# timeout, then rate limiting right in front of the routes.
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded)
app.add_middleware(SlowAPIMiddleware)


@app.middleware("http")
async def enforce_timeout(request: Request, call_next):
    """Answer 504 once REQUEST_TIMEOUT_MS has passed.

    Only the response is abandoned; a download started by the request keeps
    running and its outcome stays readable through the status endpoint.
    """
    timeout_ms = resolve_settings(request).REQUEST_TIMEOUT_MS
    with anyio.move_on_after(timeout_ms / 1000):
        return await call_next(request)
    logger.warning("Request timed out", path=request.url.path, timeout_ms=timeout_ms)
    span_trace = getattr(request.state, "trace", None)
    return JSONResponse(
        status_code=504,
        content=error_payload(
            "Gateway Timeout",
            f"Request did not complete within {timeout_ms} ms",
            request_id=getattr(request.state, "request_id", None),
            trace_id=span_trace.trace_id if span_trace else None,
        ),
    )


@app.middleware("http")
async def trace_requests(request: Request, call_next):
    """Continue the caller's trace (or start one) for the whole request.

    Unexpected exceptions are reported here, while the trace is still active,
    and answered with a generic 500 body.
    """
    incoming = parse_traceparent(request.headers.get(TRACEPARENT_HEADER))
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    request.state.request_id = request_id

    with use_trace(incoming) if incoming else nullcontext(), tracer.span(
        f"{request.method} {request.url.path}",
        **{"http.method": request.method, "http.target": request.url.path, "request_id": request_id},
    ) as span, RequestTimer(request.method, UNMATCHED_ENDPOINT) as timer:
        request.state.trace = trace_context_of(span)
        try:
            response = await call_next(request)
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            response = _report_unexpected(request, exc)
        route = request.scope.get("route")
        route_path = getattr(route, "path", None)
        if route_path:
            timer.endpoint = route_path
            span.set_attribute("http.route", route_path)
        timer.status_code = response.status_code
        span.set_attribute("http.status_code", response.status_code)

    response.headers[REQUEST_ID_HEADER] = request_id
    response.headers[TRACEPARENT_HEADER] = format_traceparent(request.state.trace)
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    for name, value in security_headers(resolve_settings(request).ENVIRONMENT).items():
        response.headers.setdefault(name, value)
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID", TRACEPARENT_HEADER],
    expose_headers=["X-Request-ID", TRACEPARENT_HEADER],
    max_age=86400,
)


def _report_unexpected(request: Request, exc: Exception) -> JSONResponse:
    settings = resolve_settings(request)
    reporter = get_error_reporter(get_error_log(settings))
    event = reporter.capture_exception(
        exc,
        tags={
            "endpoint": request.url.path,
            "method": request.method,
            "status": 500,
            "requestId": request.state.request_id,
        },
    )
    errors_captured_total.inc()
    message = str(exc) if settings.ENVIRONMENT == "development" else "An unexpected error occurred"
    return JSONResponse(
        status_code=500,
        content=internal_error_payload(
            message, request_id=request.state.request_id, trace_id=event.trace_id
        ),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    logger.warning("Request validation failed", path=request.url.path, errors=len(exc.errors()))
    http_exc = validation_http_error(
        "Invalid request", {"errors": jsonable_encoder(exc.errors())}
    )
    return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail})


@app.exception_handler(ValidationError)
async def service_validation_handler(request: Request, exc: ValidationError):
    logger.warning("Validation failed", path=request.url.path, error=exc.message)
    http_exc = validation_http_error(exc.message, exc.details)
    return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail})


@app.get("/", summary="Root endpoint")
async def root():
    return {"message": "Download service is running"}


@app.get(
    "/health",
    summary="Health check endpoint",
    response_model=HealthResponse,
    responses={503: {"model": HealthResponse}},
)
async def health(
    oracle: Annotated[AvailabilityOracle, Depends(get_oracle)],
):
    storage_ok = await oracle.health()
    body = HealthResponse(
        status="healthy" if storage_ok else "unhealthy",
        checks=HealthChecks(storage="ok" if storage_ok else "error"),
    )
    if not storage_ok:
        logger.warning("Storage health check failed")
    return JSONResponse(status_code=200 if storage_ok else 503, content=body.model_dump())


@app.get("/metrics", summary="Prometheus metrics", include_in_schema=False)
async def metrics():
    return metrics_response()


@app.post(
    "/v1/download/initiate",
    summary="Acknowledge a batch download",
    response_model=InitiateResponse,
)
async def initiate_download(
    body: InitiateRequest,
    engine: Annotated[DownloadEngine, Depends(get_download_engine)],
):
    return engine.initiate(body.file_ids)


@app.post(
    "/v1/download/check",
    summary="Check download availability",
    response_model=CheckAvailabilityResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def check_availability(
    body: FileIdRequest,
    engine: Annotated[DownloadEngine, Depends(get_download_engine)],
    error_test: Annotated[
        Optional[str], Query(description="Set to 'true' to raise an intentional error")
    ] = None,
):
    if error_test == "true":
        raise RuntimeError(
            f"Test error triggered for file_id={body.file_id}"
        )
    result = await engine.check_availability(body.file_id)
    return CheckAvailabilityResponse(file_id=body.file_id, **result.model_dump())


@app.post(
    "/v1/download/start",
    summary="Start file download (long-running)",
    description=(
        "Answers only after the simulated processing delay has elapsed. "
        "Proxies with short timeouts in front of this endpoint will cut it off."
    ),
    response_model=StartDownloadResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def start_download(
    body: FileIdRequest,
    engine: Annotated[DownloadEngine, Depends(get_download_engine)],
):
    logger.info("Download requested", file_id=body.file_id)
    return await engine.start(body.file_id)


@app.get(
    "/v1/download/status/{file_id}",
    summary="Get download job status",
    response_model=DownloadStatusResponse,
    response_model_exclude_none=True,
)
async def get_download_status(
    file_id: Annotated[int, Path(ge=FILE_ID_MIN, le=FILE_ID_MAX)],
    service: Annotated[StatusQueryService, Depends(get_status_service)],
):
    return service.get(file_id).to_response()


@app.get("/v1/errors", summary="Recently captured errors", response_model=ErrorLogResponse)
async def list_errors(
    error_log: Annotated[ErrorLog, Depends(get_error_log)],
):
    errors = [e.model_dump(mode="json") for e in error_log.list()]
    return ErrorLogResponse(total=len(errors), errors=errors)
