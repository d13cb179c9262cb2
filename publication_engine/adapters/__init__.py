"""Platform dispatch adapters: one per publishing platform, looked up by name."""

from publication_engine.adapters.base import (
    AdapterRegistry,
    DispatchAdapter,
    build_adapter_registry,
    raise_for_platform_response,
)
from publication_engine.adapters.twitter import TwitterAdapter
from publication_engine.adapters.webhook import WebhookAdapter
from publication_engine.adapters.wordpress import WordPressAdapter

__all__ = [
    "AdapterRegistry",
    "DispatchAdapter",
    "build_adapter_registry",
    "raise_for_platform_response",
    "TwitterAdapter",
    "WebhookAdapter",
    "WordPressAdapter",
]
