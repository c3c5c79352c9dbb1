from __future__ import annotations

import json

from pydantic import ValidationError

from .config import DEFAULT_PROVIDER, Settings
from .errors import RequestValidationError
from .models import MessageRequest


def _summarize(exc: ValidationError, limit: int = 3) -> str:
    parts = []
    for err in exc.errors()[:limit]:
        loc = ".".join(str(p) for p in err["loc"]) or "body"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


class RequestValidator:
    """
    Ordered, side-effect free checks on inbound relay requests.

    Checks run in a fixed order so a request with several problems always
    reports the same one: key presence, key format, body shape, model,
    messages, message length, then max_tokens.
    """

    def __init__(self, settings: Settings, *, provider: str = DEFAULT_PROVIDER):
        provider_cfg = settings.provider(provider)
        self.key_prefix = provider_cfg.key_prefix
        self.min_key_length = settings.security.api_key_min_length
        self.max_message_length = settings.validation.max_message_length

    def is_valid_api_key(self, api_key: str | None) -> bool:
        if not api_key:
            return False
        return len(api_key) >= self.min_key_length and api_key.startswith(self.key_prefix)

    def check_api_key(self, api_key: str | None) -> str:
        if not api_key:
            raise RequestValidationError("API key required")
        if not self.is_valid_api_key(api_key):
            raise RequestValidationError("Invalid API key format")
        return api_key

    def parse_message_request(self, body: bytes | str) -> MessageRequest:
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise RequestValidationError("Invalid JSON format") from e
        if not isinstance(data, dict):
            raise RequestValidationError("Invalid JSON format", details="Request body must be a JSON object.")
        try:
            return MessageRequest.model_validate(data)
        except ValidationError as e:
            raise RequestValidationError("Invalid JSON format", details=_summarize(e)) from e

    def check_message_request(self, request: MessageRequest) -> MessageRequest:
        if not request.model:
            raise RequestValidationError("Model is required")
        if not request.messages:
            raise RequestValidationError("Messages are required")
        for message in request.messages:
            if len(message.content) > self.max_message_length:
                raise RequestValidationError(f"Message too long (max {self.max_message_length} characters)")
        if request.max_tokens <= 0:
            raise RequestValidationError("MaxTokens must be greater than 0")
        return request
