from __future__ import annotations

import os
import re
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Literal

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError

DEFAULT_PROVIDER = "anthropic"
DEFAULT_SYSTEM_MESSAGE = (
    "Be concise in your responses unless asked otherwise. Prefer tables and short paragraphs."
)


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


_TRUE = {"1", "true", "t", "yes", "y", "on"}
_FALSE = {"0", "false", "f", "no", "n", "off"}


def _parse_bool(value: str) -> bool:
    v = value.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ValueError(f"not a boolean: {value!r}")


_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str) -> float:
    """Parse ``"45"``, ``"30s"``, ``"1m30s"`` or ``"500ms"`` into seconds."""
    v = value.strip()
    try:
        return float(v)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for match in _DURATION_PART_RE.finditer(v):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(v):
        raise ValueError(f"not a duration: {value!r}")
    return total


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ServerSettings(_Frozen):
    port: int = Field(default=8080, ge=1, le=65535)
    host: str = "0.0.0.0"
    request_timeout_seconds: float = Field(default=60.0, gt=0)
    allowed_hosts: tuple[str, ...] = ("*",)


class SecuritySettings(_Frozen):
    enable_hsts: bool = True
    allowed_api_endpoints: tuple[str, ...] = ("https://api.anthropic.com",)
    api_key_min_length: int = Field(default=10, ge=1)
    csp_allow_data_images: bool = True


class LoggingSettings(_Frozen):
    level: Literal["debug", "info", "warn", "error"] = "info"
    format: Literal["json", "console"] = "json"
    include_timestamp: bool = True
    include_source: bool = False


class ProviderConfig(_Frozen):
    name: str = DEFAULT_PROVIDER
    display_name: str = "Anthropic"
    base_url: str = "https://api.anthropic.com"
    api_version: str = "2023-06-01"
    key_prefix: str = "sk-ant-"
    default_model: str = "claude-3-5-haiku"
    max_tokens: int = Field(default=1024, ge=1)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    system_message: str = DEFAULT_SYSTEM_MESSAGE
    timeout_seconds: float = Field(default=60.0, gt=0)
    # Only used to scrub logs; the relay always forwards the caller's key.
    api_key: str | None = Field(default=None, repr=False)

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must be an http(s) URL.")
        return v


class ValidationSettings(_Frozen):
    max_message_length: int = Field(default=4000, ge=1)
    max_request_body_bytes: int = Field(default=10 * 1024 * 1024, ge=0)


class MetricsSettings(_Frozen):
    enabled: bool = False
    bind: str = "127.0.0.1"
    port: int = Field(default=9109, ge=1, le=65535)


class Settings(_Frozen):
    server: ServerSettings = Field(default_factory=ServerSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    providers: tuple[ProviderConfig, ...] = (ProviderConfig(),)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)

    def provider(self, name: str = DEFAULT_PROVIDER) -> ProviderConfig:
        for p in self.providers:
            if p.name == name:
                return p
        raise ConfigurationError(f"Provider {name!r} is not configured.")

    def secrets(self) -> list[str]:
        return [p.api_key for p in self.providers if p.api_key]


# (env var, section, field, parser). The "provider" section targets the default provider.
_ENV_OVERRIDES: tuple[tuple[str, str, str, Callable[[str], Any]], ...] = (
    ("PORT", "server", "port", int),
    ("HOST", "server", "host", str),
    ("REQUEST_TIMEOUT", "server", "request_timeout_seconds", parse_duration),
    ("ALLOWED_HOSTS", "server", "allowed_hosts", _parse_csv),
    ("ENABLE_HSTS", "security", "enable_hsts", _parse_bool),
    ("ALLOWED_API_ENDPOINTS", "security", "allowed_api_endpoints", _parse_csv),
    ("API_KEY_MIN_LENGTH", "security", "api_key_min_length", int),
    ("CSP_ALLOW_DATA_IMAGES", "security", "csp_allow_data_images", _parse_bool),
    ("LOG_LEVEL", "logging", "level", str.lower),
    ("LOG_FORMAT", "logging", "format", str.lower),
    ("LOG_INCLUDE_TIMESTAMP", "logging", "include_timestamp", _parse_bool),
    ("LOG_INCLUDE_SOURCE", "logging", "include_source", _parse_bool),
    ("ANTHROPIC_API_KEY", "provider", "api_key", str),
    ("ANTHROPIC_BASE_URL", "provider", "base_url", str),
    ("ANTHROPIC_API_VERSION", "provider", "api_version", str),
    ("ANTHROPIC_TIMEOUT", "provider", "timeout_seconds", parse_duration),
    ("ANTHROPIC_KEY_PREFIX", "provider", "key_prefix", str),
    ("ANTHROPIC_DEFAULT_MODEL", "provider", "default_model", str),
    ("ANTHROPIC_MAX_TOKENS", "provider", "max_tokens", int),
    ("ANTHROPIC_TEMPERATURE", "provider", "temperature", float),
    ("ANTHROPIC_SYSTEM_MESSAGE", "provider", "system_message", str),
    ("MAX_MESSAGE_LENGTH", "validation", "max_message_length", int),
    ("MAX_REQUEST_BODY_BYTES", "validation", "max_request_body_bytes", int),
    ("ENABLE_METRICS", "metrics", "enabled", _parse_bool),
    ("METRICS_BIND", "metrics", "bind", str),
    ("METRICS_PORT", "metrics", "port", int),
)


def get_environment(environ: Mapping[str, str] | None = None) -> str:
    environ = os.environ if environ is None else environ
    return (environ.get("MANTO_ENV") or environ.get("ENVIRONMENT") or "production").lower()


def load_env_files(environment: str, directory: str | Path | None = None) -> dict[str, str]:
    """
    Read the ``.env`` cascade for ``environment``.

    Files earlier in the cascade win, mirroring dotenv's "never override" rule.
    """
    base = Path(directory) if directory is not None else Path.cwd()
    names = (f".env.{environment}.local", f".env.{environment}", ".env.local", ".env")
    merged: dict[str, str] = {}
    for name in names:
        path = base / name
        if not path.is_file():
            continue
        for key, value in dotenv_values(path).items():
            if value is not None:
                merged.setdefault(key, value)
    return merged


def env_overrides(environ: Mapping[str, str]) -> dict[str, dict[str, Any]]:
    overrides: dict[str, dict[str, Any]] = {}
    for env_name, section, field, parser in _ENV_OVERRIDES:
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            value = parser(raw)
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {env_name}: {raw!r}") from e
        overrides.setdefault(section, {})[field] = value
    return overrides


def merge_overrides(defaults: Settings, overrides: Mapping[str, Mapping[str, Any]]) -> Settings:
    """Return a new validated ``Settings`` with per-section overrides applied."""
    data = defaults.model_dump()
    for section, values in overrides.items():
        if section == "provider":
            providers = data["providers"] = list(data["providers"])
            for entry in providers:
                if entry["name"] == DEFAULT_PROVIDER:
                    entry.update(values)
                    break
            else:
                providers.append({**ProviderConfig().model_dump(), **values})
            continue
        if section not in data:
            raise ConfigurationError(f"Unknown configuration section: {section!r}")
        data[section].update(values)
    try:
        return Settings.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError("Configuration validation failed", details=problems) from e


def load_settings(
    environ: Mapping[str, str] | None = None,
    *,
    env_dir: str | Path | None = None,
) -> Settings:
    """
    Build the process-wide settings from defaults, ``.env`` files and the environment.

    With an explicit ``environ`` the ``.env`` cascade is only read when ``env_dir`` is given.
    """
    if environ is None:
        environ = os.environ
        read_files = True
    else:
        read_files = env_dir is not None

    merged: dict[str, str] = {}
    if read_files:
        merged.update(load_env_files(get_environment(environ), env_dir))
    merged.update(environ)
    return merge_overrides(Settings(), env_overrides(merged))
