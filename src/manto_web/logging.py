from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping, MutableMapping, Sequence
from typing import Any, TypeAlias, cast

import structlog


_SENSITIVE_KEYS = {
    "authorization",
    "proxy-authorization",
    "cookie",
    "set-cookie",
    "x-api-key",
    "api_key",
    "apikey",
    "anthropic_api_key",
    "token",
    "access_token",
    "refresh_token",
    "id_token",
    "secret",
    "client_secret",
    "password",
}

# Names accepted by LOG_LEVEL, mapped onto stdlib levels.
_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_BEARER_RE = re.compile(r"(?i)\bBearer\s+([A-Za-z0-9._-]{6,})")

ProcessorReturn: TypeAlias = Mapping[str, Any] | str | bytes | bytearray | tuple[Any, ...]
Processor: TypeAlias = Callable[[Any, str, MutableMapping[str, Any]], ProcessorReturn]


def _prefix_pattern(prefixes: Sequence[str]) -> re.Pattern[str] | None:
    prefixes = [p for p in prefixes if p]
    if not prefixes:
        return None
    alternatives = "|".join(re.escape(p) for p in prefixes)
    return re.compile(rf"(?:{alternatives})[A-Za-z0-9._-]+")


def _redact_str(value: str, *, secrets: list[str], key_re: re.Pattern[str] | None) -> str:
    out = value
    for secret in secrets:
        if secret and secret in out:
            out = out.replace(secret, "[REDACTED]")
    out = _BEARER_RE.sub("Bearer [REDACTED]", out)
    if key_re is not None:
        out = key_re.sub("[REDACTED]", out)
    return out


def _redact_obj(obj: Any, *, secrets: list[str], key_re: re.Pattern[str] | None) -> Any:
    if obj is None:
        return None
    if isinstance(obj, str):
        return _redact_str(obj, secrets=secrets, key_re=key_re)
    if isinstance(obj, (int, float, bool)):
        return obj
    if isinstance(obj, list):
        return [_redact_obj(v, secrets=secrets, key_re=key_re) for v in obj]
    if isinstance(obj, tuple):
        return tuple(_redact_obj(v, secrets=secrets, key_re=key_re) for v in obj)
    if isinstance(obj, dict):
        redacted: dict[Any, Any] = {}
        for k, v in obj.items():
            key_str = str(k).lower()
            if key_str in _SENSITIVE_KEYS or key_str.endswith(("api_key", "_secret", "_password")):
                redacted[k] = "[REDACTED]"
            else:
                redacted[k] = _redact_obj(v, secrets=secrets, key_re=key_re)
        return redacted
    return obj


def make_redaction_processor(*, secrets: Sequence[str], key_prefixes: Sequence[str] = ()) -> Processor:
    secrets_norm = [s for s in secrets if isinstance(s, str) and s]
    key_re = _prefix_pattern(key_prefixes)

    def _processor(_logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]) -> ProcessorReturn:
        return cast(dict[str, Any], _redact_obj(event_dict, secrets=secrets_norm, key_re=key_re))

    return _processor


def configure_logging(
    level: str = "info",
    fmt: str = "json",
    *,
    include_timestamp: bool = True,
    include_source: bool = False,
    secrets: Sequence[str] | None = None,
    key_prefixes: Sequence[str] = (),
) -> None:
    log_level = _LEVELS.get(level.lower(), logging.INFO)
    logging.basicConfig(level=log_level)

    processors: list[Processor] = [
        cast(Processor, structlog.contextvars.merge_contextvars),
        cast(Processor, structlog.processors.add_log_level),
    ]
    if include_timestamp:
        processors.append(cast(Processor, structlog.processors.TimeStamper(fmt="iso")))
    if include_source:
        processors.append(
            cast(
                Processor,
                structlog.processors.CallsiteParameterAdder(
                    {
                        structlog.processors.CallsiteParameter.MODULE,
                        structlog.processors.CallsiteParameter.FUNC_NAME,
                        structlog.processors.CallsiteParameter.LINENO,
                    }
                ),
            )
        )

    # Caller keys pass through every request, so prefix-based scrubbing is always on.
    processors.append(make_redaction_processor(secrets=list(secrets or []), key_prefixes=key_prefixes))

    if fmt == "json":
        processors.append(cast(Processor, structlog.processors.JSONRenderer()))
    else:
        processors.append(cast(Processor, structlog.dev.ConsoleRenderer()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        cache_logger_on_first_use=True,
    )
