from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class MessageRequest(BaseModel):
    # Missing fields fall back to empty values so the ordered validator reports them.
    model: str = ""
    messages: list[ChatMessage] = Field(default_factory=list)
    max_tokens: int = 0
    temperature: float | None = None
    system: str | None = None

    @field_validator("model", "messages", mode="before")
    @classmethod
    def _null_is_empty(cls, v: Any, info) -> Any:
        if v is None:
            return "" if info.field_name == "model" else []
        return v

    def to_upstream_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ContentBlock(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    text: str | None = None


class Usage(BaseModel):
    model_config = ConfigDict(extra="allow")

    input_tokens: int = 0
    output_tokens: int = 0


class MessageResponse(BaseModel):
    """Upstream message body; unknown fields are kept so the relay passes it through verbatim."""

    model_config = ConfigDict(extra="allow")

    id: str
    type: str = "message"
    role: str
    content: list[ContentBlock]
    model: str
    stop_reason: str | None = None
    usage: Usage = Field(default_factory=Usage)


class UpstreamErrorDetail(BaseModel):
    type: str = ""
    message: str = ""


class UpstreamErrorBody(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = "error"
    error: UpstreamErrorDetail


class ErrorResult(BaseModel):
    error: str
    details: str | None = None


def make_error_result(message: str, details: str | None = None) -> dict[str, Any]:
    return ErrorResult(error=message, details=details).model_dump(exclude_none=True)
