from __future__ import annotations

import re
import uuid
from collections.abc import Iterable

import structlog
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware
from starlette.requests import Request

from .config import Settings
from .metrics import server_errors_total
from .models import make_error_result

log = structlog.get_logger()

HSTS_VALUE = "max-age=31536000; includeSubDomains; preload"

STATIC_SECURITY_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
    "Permissions-Policy": "geolocation=()",
    "X-Frame-Options": "DENY",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-site",
}


def build_content_security_policy(allowed_endpoints: Iterable[str], *, allow_data_images: bool = True) -> str:
    connect_src = " ".join(["'self'", *(e.strip() for e in allowed_endpoints if e.strip())])
    img_src = "'self' data:" if allow_data_images else "'self'"
    return (
        "default-src 'self'; "
        f"connect-src {connect_src}; "
        "style-src 'self' 'unsafe-inline'; "
        "script-src 'self'; "
        f"img-src {img_src}; "
        "object-src 'none'; "
        "base-uri 'self'"
    )


def security_headers(settings: Settings) -> dict[str, str]:
    """The full header set for a deployment; computed once at startup."""
    headers = dict(STATIC_SECURITY_HEADERS)
    headers["Content-Security-Policy"] = build_content_security_policy(
        settings.security.allowed_api_endpoints,
        allow_data_images=settings.security.csp_allow_data_images,
    )
    if settings.security.enable_hsts:
        headers["Strict-Transport-Security"] = HSTS_VALUE
    return headers


_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{8,128}$")


def coerce_request_id(value: str | None) -> str:
    if value and _REQUEST_ID_RE.fullmatch(value):
        return value
    return uuid.uuid4().hex


def _is_api_path(path: str) -> bool:
    return path.startswith("/api/")


def install_middlewares(app, *, settings: Settings) -> None:
    """
    Install the relay's middleware stack.

    Outermost first: request id, security headers, trusted hosts, panic
    recovery, body size limit. Security headers sit outside everything that
    can short-circuit so that every response carries them.
    """
    headers = security_headers(settings)

    class RequestIdMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            request_id = coerce_request_id(request.headers.get("x-request-id"))
            request.state.request_id = request_id
            structlog.contextvars.bind_contextvars(request_id=request_id)
            try:
                response = await call_next(request)
            finally:
                structlog.contextvars.clear_contextvars()
            response.headers.setdefault("X-Request-Id", request_id)
            return response

    class SecurityHeadersMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            response = await call_next(request)
            for name, value in headers.items():
                response.headers[name] = value
            if _is_api_path(request.url.path):
                response.headers.setdefault("Cache-Control", "no-store")
                response.headers.setdefault("Pragma", "no-cache")
            return response

    class RecoveryMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            try:
                return await call_next(request)
            except Exception:
                server_errors_total.labels(type="internal_error").inc()
                log.exception("relay_unexpected_error", method=request.method, path=request.url.path)
                return JSONResponse(status_code=500, content=make_error_result("Internal server error"))

    class MaxBodySizeMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            limit = settings.validation.max_request_body_bytes
            # Keyless requests go straight to the handler, which rejects them with "API key required".
            has_key = bool(request.headers.get("x-api-key"))
            if (
                limit > 0
                and has_key
                and request.method in ("POST", "PUT", "PATCH")
                and _is_api_path(request.url.path)
            ):
                content_length = request.headers.get("content-length")
                too_large = bool(content_length and content_length.isdigit() and int(content_length) > limit)
                if not too_large:
                    too_large = len(await request.body()) > limit
                if too_large:
                    server_errors_total.labels(type="body_too_large").inc()
                    return JSONResponse(status_code=413, content=make_error_result("Request body too large"))
            return await call_next(request)

    app.add_middleware(MaxBodySizeMiddleware)
    app.add_middleware(RecoveryMiddleware)

    allowed_hosts = list(settings.server.allowed_hosts)
    if allowed_hosts and allowed_hosts != ["*"]:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts)

    app.add_middleware(SecurityHeadersMiddleware)
    # Must be outermost to ensure `X-Request-Id` is set even when inner middleware short-circuits.
    app.add_middleware(RequestIdMiddleware)
