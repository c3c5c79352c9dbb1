from __future__ import annotations


class RelayError(Exception):
    """Base error for relay failures that map to a client-facing error body."""

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigurationError(RelayError):
    pass


class RequestValidationError(RelayError):
    """Inbound request rejected before any upstream call."""


class RequestTimeoutError(RelayError):
    """Server-side request deadline exceeded."""

    def __init__(self, message: str = "Request timed out", details: str | None = None):
        super().__init__(message, details)


class UpstreamError(RelayError):
    """The upstream provider call failed."""


class UpstreamStatusError(UpstreamError):
    def __init__(self, message: str, *, status_code: int, details: str | None = None):
        super().__init__(message, details)
        self.status_code = status_code


class UpstreamTimeoutError(UpstreamError):
    pass


class UpstreamTransportError(UpstreamError):
    pass


class UpstreamProtocolError(UpstreamError):
    """Unexpected upstream response shape / contract mismatch."""
