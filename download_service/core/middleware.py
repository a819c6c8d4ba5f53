# download_service/core/middleware.py
"""
Request guards applied to every route: security headers, a per-request
timeout and per-client rate limiting.
"""

from typing import Dict

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded

from download_service.core.config import Settings, get_settings
from download_service.core.exceptions import error_payload


SECURE_HEADERS: Dict[str, str] = {
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
    "Origin-Agent-Cluster": "?1",
}

# cross-origin isolation would block the dashboard in development
PRODUCTION_ONLY_HEADERS: Dict[str, str] = {
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
}


def resolve_settings(request: Request) -> Settings:
    """Settings as route dependencies see them, test overrides included."""
    provider = request.app.dependency_overrides.get(get_settings, get_settings)
    return provider()


def security_headers(environment: str) -> Dict[str, str]:
    headers = dict(SECURE_HEADERS)
    if environment == "production":
        headers.update(PRODUCTION_ONLY_HEADERS)
    return headers


def client_key(request: Request) -> str:
    """First hop of X-Forwarded-For, then X-Real-IP; callers without either share a bucket."""
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    return request.headers.get("x-real-ip") or "anonymous"


limiter = Limiter(key_func=client_key, default_limits=[get_settings().rate_limit])


def rate_limit_exceeded(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    # slowapi calls this synchronously from its middleware
    trace = getattr(request.state, "trace", None)
    return JSONResponse(
        status_code=429,
        content=error_payload(
            "Too Many Requests",
            f"Rate limit exceeded: {exc.detail}",
            request_id=getattr(request.state, "request_id", None),
            trace_id=trace.trace_id if trace else None,
        ),
    )
