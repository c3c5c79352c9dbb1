from __future__ import annotations

import structlog

from .anthropic_client import AnthropicClient
from .config import DEFAULT_PROVIDER, ProviderConfig, Settings
from .models import MessageRequest, MessageResponse
from .validation import RequestValidator

log = structlog.get_logger()


def apply_generation_overrides(request: MessageRequest, provider: ProviderConfig) -> MessageRequest:
    """
    Replace the caller's generation parameters with the server's.

    The server owns max_tokens, temperature and the system prompt; the caller
    only chooses the model and the conversation. The caller's max_tokens is
    still validated before this runs.
    """
    return request.model_copy(
        update={
            "max_tokens": provider.max_tokens,
            "temperature": provider.temperature,
            "system": provider.system_message,
        }
    )


class MessageRelay:
    def __init__(
        self,
        settings: Settings,
        *,
        provider: str = DEFAULT_PROVIDER,
        client: AnthropicClient | None = None,
        validator: RequestValidator | None = None,
    ):
        self.settings = settings
        self.provider = settings.provider(provider)
        self.client = client or AnthropicClient(self.provider)
        self.validator = validator or RequestValidator(settings, provider=provider)

    async def close(self) -> None:
        await self.client.close()

    async def list_models(self, api_key: str | None) -> str:
        key = self.validator.check_api_key(api_key)
        return await self.client.list_models(key)

    async def send_message(self, api_key: str | None, body: bytes | str) -> MessageResponse:
        key = self.validator.check_api_key(api_key)
        request = self.validator.check_message_request(self.validator.parse_message_request(body))
        upstream_request = apply_generation_overrides(request, self.provider)
        log.debug(
            "relay_send_message",
            model=upstream_request.model,
            messages=len(upstream_request.messages),
            max_tokens=upstream_request.max_tokens,
        )
        return await self.client.send_message(key, upstream_request)
