from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from . import __version__
from .config import Settings, get_environment, load_settings
from .errors import ConfigurationError, RelayError, RequestTimeoutError, RequestValidationError, UpstreamError
from .http_security import install_middlewares
from .logging import configure_logging
from .metrics import maybe_start_metrics, server_errors_total, server_request_latency_seconds, server_requests_total
from .models import make_error_result
from .relay import MessageRelay

log = structlog.get_logger()

T = TypeVar("T")

CONFIG_CACHE_CONTROL = "public, max-age=300"
MODELS_PATH = "/api/models"
MESSAGES_PATH = "/api/messages"

# /config.js is a read of static data and deliberately accepts any method.
_ANY_METHOD = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def client_config(settings: Settings) -> dict[str, Any]:
    """Non-secret settings the browser client needs. Never keys, ports or HSTS state."""
    provider = settings.provider()
    return {
        "providers": [{"name": p.name, "displayName": p.display_name} for p in settings.providers],
        "api": {
            "anthropicKeyPrefix": provider.key_prefix,
            "preferredModelId": provider.default_model,
            "endpoints": {"models": MODELS_PATH, "messages": MESSAGES_PATH},
        },
        "validation": {
            "maxMessageLength": settings.validation.max_message_length,
            "minApiKeyLength": settings.security.api_key_min_length,
        },
        "version": __version__,
    }


def build_config_script(settings: Settings) -> str:
    payload = json.dumps(client_config(settings), separators=(",", ":"))
    return f"window.MantoConfig = {payload};"


def create_app(settings: Settings | None = None, relay: MessageRelay | None = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(
        level=settings.logging.level,
        fmt=settings.logging.format,
        include_timestamp=settings.logging.include_timestamp,
        include_source=settings.logging.include_source,
        secrets=settings.secrets(),
        key_prefixes=[p.key_prefix for p in settings.providers],
    )
    relay = relay or MessageRelay(settings)
    config_script = build_config_script(settings)

    def _observe(path: str, status_code: int, started_at: float) -> None:
        server_requests_total.labels(path=path, status=str(status_code)).inc()
        server_request_latency_seconds.labels(path=path).observe(max(0.0, time.monotonic() - started_at))

    async def _with_deadline(awaitable: Awaitable[T]) -> T:
        # Cancelling the wait also cancels the in-flight upstream call.
        try:
            return await asyncio.wait_for(awaitable, timeout=settings.server.request_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError() from e

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        maybe_start_metrics(
            enable=settings.metrics.enabled,
            bind=settings.metrics.bind,
            port=settings.metrics.port,
        )
        try:
            yield
        finally:
            await relay.close()

    app = FastAPI(
        title="manto-web",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    install_middlewares(app, settings=settings)

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(_request: Request, exc: RequestValidationError):
        server_errors_total.labels(type="invalid_request").inc()
        return JSONResponse(status_code=400, content=make_error_result(exc.message, exc.details))

    @app.exception_handler(UpstreamError)
    async def _upstream_error_handler(request: Request, exc: UpstreamError):
        server_errors_total.labels(type="upstream_error").inc()
        log.warning(
            "relay_upstream_error",
            path=request.url.path,
            error_type=type(exc).__name__,
            status_code=getattr(exc, "status_code", None),
            message=exc.message,
        )
        return JSONResponse(status_code=400, content=make_error_result(exc.message, exc.details))

    @app.exception_handler(RequestTimeoutError)
    async def _timeout_error_handler(request: Request, exc: RequestTimeoutError):
        server_errors_total.labels(type="timeout").inc()
        log.warning("relay_request_timeout", path=request.url.path)
        return JSONResponse(status_code=504, content=make_error_result(exc.message))

    @app.exception_handler(ConfigurationError)
    async def _config_error_handler(request: Request, exc: ConfigurationError):
        server_errors_total.labels(type="configuration_error").inc()
        log.error("relay_configuration_error", path=request.url.path, message=exc.message)
        return JSONResponse(status_code=500, content=make_error_result("Internal server error"))

    @app.exception_handler(RelayError)
    async def _relay_error_handler(request: Request, exc: RelayError):
        server_errors_total.labels(type="relay_error").inc()
        log.error("relay_error", path=request.url.path, error_type=type(exc).__name__, message=exc.message)
        return JSONResponse(status_code=500, content=make_error_result("Internal server error"))

    @app.get("/healthz", status_code=204)
    async def healthz() -> Response:
        return Response(status_code=204)

    @app.api_route("/config.js", methods=_ANY_METHOD)
    async def config_js() -> Response:
        return Response(
            content=config_script,
            media_type="application/javascript",
            headers={"Cache-Control": CONFIG_CACHE_CONTROL},
        )

    @app.get(MODELS_PATH)
    async def list_models(request: Request) -> Response:
        started_at = time.monotonic()
        body = await _with_deadline(relay.list_models(request.headers.get("x-api-key")))
        _observe(MODELS_PATH, 200, started_at)
        return Response(content=body, media_type="application/json")

    @app.post(MESSAGES_PATH)
    async def send_message(request: Request) -> Response:
        started_at = time.monotonic()
        api_key = request.headers.get("x-api-key")
        body = await request.body()
        message = await _with_deadline(relay.send_message(api_key, body))
        _observe(MESSAGES_PATH, 200, started_at)
        return JSONResponse(content=message.model_dump(mode="json", exclude_unset=True))

    return app


def main() -> None:  # pragma: no cover
    import uvicorn

    settings = load_settings()
    app = create_app(settings)
    log.info("manto_starting", port=settings.server.port, environment=get_environment())
    uvicorn.run(app, host=settings.server.host, port=settings.server.port)


if __name__ == "__main__":  # pragma: no cover
    main()
