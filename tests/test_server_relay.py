import json

import httpx
import pytest

from manto_web.anthropic_client import AnthropicClient
from manto_web.config import ProviderConfig, Settings
from manto_web.relay import MessageRelay

KEY = "sk-ant-api03-test-key"

MESSAGE_BODY = {
    "id": "msg_01",
    "type": "message",
    "role": "assistant",
    "content": [{"type": "text", "text": "Hi! How can I help?"}],
    "model": "claude-3-haiku",
    "stop_reason": "end_turn",
    "stop_sequence": None,
    "usage": {"input_tokens": 8, "output_tokens": 9},
}


def _make_app(handler, settings: Settings | None = None):
    from manto_web.server import create_app

    settings = settings or Settings()
    client = AnthropicClient(settings.provider(), client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    return create_app(settings=settings, relay=MessageRelay(settings, client=client))


def _unreachable(_: httpx.Request) -> httpx.Response:
    raise AssertionError("upstream must not be called")


def _payload(**overrides) -> dict:
    payload = {
        "model": "claude-3-haiku",
        "messages": [{"role": "user", "content": "hello"}],
        "max_tokens": 100,
    }
    payload.update(overrides)
    return payload


@pytest.mark.asyncio
async def test_send_message_round_trip_applies_server_overrides():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content.decode("utf-8"))
        return httpx.Response(200, json=MESSAGE_BODY)

    app = _make_app(handler)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post("/api/messages", headers={"x-api-key": KEY}, json=_payload())

    assert resp.status_code == 200
    data = resp.json()
    assert data["role"] == "assistant"
    assert data["content"]
    assert data["usage"] == {"input_tokens": 8, "output_tokens": 9}
    assert "stop_sequence" in data

    assert seen["headers"]["x-api-key"] == KEY
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    assert seen["body"]["max_tokens"] == 1024
    assert seen["body"]["temperature"] == 0.7
    assert seen["body"]["system"].startswith("Be concise")


@pytest.mark.asyncio
async def test_missing_key_is_reported_even_for_malformed_json():
    app = _make_app(_unreachable)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post(
            "/api/messages",
            content=b"{this is not json",
            headers={"Content-Type": "application/json"},
        )
    assert resp.status_code == 400
    assert resp.json() == {"error": "API key required"}


@pytest.mark.asyncio
async def test_send_message_validation_failures_are_400():
    app = _make_app(_unreachable)
    transport = httpx.ASGITransport(app=app)
    cases = [
        ({"x-api-key": "sk-openai-123456"}, _payload(), "Invalid API key format"),
        ({"x-api-key": KEY}, _payload(model=""), "Model is required"),
        ({"x-api-key": KEY}, _payload(messages=[]), "Messages are required"),
        (
            {"x-api-key": KEY},
            _payload(messages=[{"role": "user", "content": "x" * 5000}]),
            "Message too long (max 4000 characters)",
        ),
        ({"x-api-key": KEY}, _payload(max_tokens=0), "MaxTokens must be greater than 0"),
    ]
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        for headers, payload, expected in cases:
            resp = await client.post("/api/messages", headers=headers, json=payload)
            assert resp.status_code == 400
            assert resp.json()["error"] == expected


@pytest.mark.asyncio
async def test_invalid_json_body_is_400_with_error_shape():
    app = _make_app(_unreachable)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post(
            "/api/messages",
            headers={"x-api-key": KEY, "Content-Type": "application/json"},
            content=b'{"model": "m", "messages": "nope"}',
        )
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "Invalid JSON format"
    assert set(body) <= {"error", "details"}


@pytest.mark.asyncio
async def test_max_tokens_one_passes_validation():
    app = _make_app(lambda _: httpx.Response(200, json=MESSAGE_BODY))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post("/api/messages", headers={"x-api-key": KEY}, json=_payload(max_tokens=1))
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_upstream_error_is_400_with_details():
    upstream = {"type": "error", "error": {"type": "authentication_error", "message": "invalid x-api-key"}}
    app = _make_app(lambda _: httpx.Response(401, json=upstream))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post("/api/messages", headers={"x-api-key": KEY}, json=_payload())
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "invalid x-api-key"
    assert "authentication_error" in body["details"]


@pytest.mark.asyncio
async def test_models_requires_key_and_forwards_raw_body():
    raw = '{"data":[{"type":"model","id":"claude-3-haiku","display_name":"Claude 3 Haiku"}],"has_more":false}'

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/models"
        return httpx.Response(200, text=raw)

    app = _make_app(handler)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        missing = await client.get("/api/models")
        bad = await client.get("/api/models", headers={"x-api-key": "sk-ant-12"})
        ok = await client.get("/api/models", headers={"x-api-key": KEY})

    assert missing.status_code == 400
    assert missing.json() == {"error": "API key required"}
    assert bad.status_code == 400
    assert bad.json() == {"error": "Invalid API key format"}
    assert ok.status_code == 200
    assert ok.headers["content-type"].startswith("application/json")
    assert ok.text == raw


@pytest.mark.asyncio
async def test_models_upstream_failure_is_400():
    app = _make_app(lambda _: httpx.Response(403, text="forbidden"))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.get("/api/models", headers={"x-api-key": KEY})
    assert resp.status_code == 400
    assert resp.json() == {"error": "API error (status 403)", "details": "forbidden"}


@pytest.mark.asyncio
async def test_network_failure_is_400_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    app = _make_app(handler)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post("/api/messages", headers={"x-api-key": KEY}, json=_payload())
    assert resp.status_code == 400
    assert resp.json()["error"] == "Network error"
    assert "refused" not in resp.text


@pytest.mark.asyncio
async def test_custom_provider_base_url_is_used():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        return httpx.Response(200, text="{}")

    settings = Settings(providers=(ProviderConfig(base_url="https://proxy.internal.test/"),))
    app = _make_app(handler, settings)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.get("/api/models", headers={"x-api-key": KEY})
    assert resp.status_code == 200
    assert seen["url"] == "https://proxy.internal.test/v1/models"
