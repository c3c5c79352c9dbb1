from __future__ import annotations

__version__ = "2.0.0"

from .anthropic_client import AnthropicClient  # noqa: E402
from .config import ProviderConfig, Settings, load_settings  # noqa: E402
from .relay import MessageRelay  # noqa: E402
from .validation import RequestValidator  # noqa: E402

__all__ = [
    "AnthropicClient",
    "MessageRelay",
    "ProviderConfig",
    "RequestValidator",
    "Settings",
    "load_settings",
    "__version__",
]
