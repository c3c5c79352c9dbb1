from __future__ import annotations

import time
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from . import __version__
from .config import ProviderConfig
from .errors import (
    UpstreamProtocolError,
    UpstreamStatusError,
    UpstreamTimeoutError,
    UpstreamTransportError,
)
from .metrics import upstream_latency_seconds, upstream_requests_total
from .models import MessageRequest, MessageResponse, UpstreamErrorBody

log = structlog.get_logger()

DEFAULT_USER_AGENT = f"Manto/{__version__}"

_STATUS_MESSAGES = {
    400: "invalid request format",
    401: "invalid API key",
    429: "rate limit exceeded",
    500: "service temporarily unavailable",
}


def upstream_error_message(status_code: int, body: str) -> str:
    """Prefer the provider's own error message, falling back to a fixed per-status phrase."""
    try:
        parsed = UpstreamErrorBody.model_validate_json(body)
    except ValidationError:
        parsed = None
    if parsed is not None and parsed.error.message:
        return parsed.error.message
    return _STATUS_MESSAGES.get(status_code, "failed to send message")


class AnthropicClient:
    """
    Thin async client for the Anthropic HTTP API.

    Every call makes exactly one request: there is no retry loop, and every
    failure (transport, non-2xx, undecodable body) is raised to the caller as
    an ``UpstreamError``. The caller's key is injected per call and never
    stored on the instance.
    """

    def __init__(
        self,
        provider: ProviderConfig,
        *,
        client: httpx.AsyncClient | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.provider = provider
        self._client = client or httpx.AsyncClient(timeout=provider.timeout_seconds)
        self._base_url = provider.base_url
        self._user_agent = user_agent

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self, api_key: str) -> dict[str, str]:
        return {
            "x-api-key": api_key,
            "anthropic-version": self.provider.api_version,
            "User-Agent": self._user_agent,
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        api_key: str,
        *,
        json: Any = None,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        url = f"{self._base_url}{endpoint}"
        headers = {**self._headers(api_key), **(extra_headers or {})}
        started = time.monotonic()
        outcome = "error"
        try:
            resp = await self._client.request(method, url, headers=headers, json=json)
            outcome = str(resp.status_code)
            return resp
        except httpx.TimeoutException as e:
            outcome = "timeout"
            log.warning("anthropic_upstream_timeout", endpoint=endpoint)
            raise UpstreamTimeoutError(
                "Request timed out", details="The request to the upstream provider timed out"
            ) from e
        except httpx.HTTPError as e:
            log.warning("anthropic_upstream_network_error", endpoint=endpoint, error_type=type(e).__name__)
            raise UpstreamTransportError(
                "Network error", details="Could not reach the upstream provider"
            ) from e
        finally:
            upstream_requests_total.labels(provider=self.provider.name, endpoint=endpoint, outcome=outcome).inc()
            upstream_latency_seconds.labels(provider=self.provider.name, endpoint=endpoint).observe(
                max(0.0, time.monotonic() - started)
            )

    async def list_models(self, api_key: str) -> str:
        resp = await self._request("GET", "/v1/models", api_key)
        body = resp.text
        if not resp.is_success:
            log.warning("anthropic_models_error", status_code=resp.status_code, body=body[:500])
            raise UpstreamStatusError(
                f"API error (status {resp.status_code})",
                status_code=resp.status_code,
                details=body,
            )
        return body

    async def send_message(self, api_key: str, request: MessageRequest) -> MessageResponse:
        resp = await self._request(
            "POST",
            "/v1/messages",
            api_key,
            json=request.to_upstream_payload(),
            extra_headers={"Content-Type": "application/json"},
        )
        body = resp.text
        if not resp.is_success:
            log.warning("anthropic_messages_error", status_code=resp.status_code, body=body[:500])
            raise UpstreamStatusError(
                upstream_error_message(resp.status_code, body),
                status_code=resp.status_code,
                details=body,
            )

        try:
            message = MessageResponse.model_validate_json(body)
        except ValidationError as e:
            log.error("anthropic_messages_decode_failed", body=body[:500])
            raise UpstreamProtocolError(
                "Invalid response format", details="Failed to parse message response"
            ) from e

        log.debug(
            "anthropic_message_ok",
            model=message.model,
            input_tokens=message.usage.input_tokens,
            output_tokens=message.usage.output_tokens,
        )
        return message
