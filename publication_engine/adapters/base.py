"""
Dispatch adapter base class, registry and HTTP error normalization.

Every platform adapter sends a job's payload with ``httpx`` and reports
failures as one of the ``DispatchError`` subclasses, so the scheduler never
needs to know which platform produced them.

Status mapping applied by ``raise_for_platform_response``:

    401, 403                      -> AuthError
    429                           -> RateLimitedError (with retry hint)
    400, 404, 409, 413, 415, 422  -> PlatformValidationError
    5xx                           -> TransientError
    any other non-2xx             -> UnknownDispatchError
"""

import logging
import os
import time
from typing import Any, Dict, Iterator, List, Optional

import httpx

from publication_engine.exceptions import (
    AuthError,
    PlatformValidationError,
    RateLimitedError,
    TransientError,
    UnknownDispatchError,
)
from publication_engine.utils import normalize_platform

logger = logging.getLogger(__name__)

VALIDATION_STATUSES = frozenset({400, 404, 409, 413, 415, 422})

# Response bodies are echoed into error messages, truncated to this length
MAX_ERROR_BODY = 200


# ======================================================================
# ERROR NORMALIZATION
# ======================================================================


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    retry_after = response.headers.get("Retry-After")
    if retry_after:
        try:
            return max(float(retry_after), 0.0)
        except ValueError:
            pass  # HTTP-date form, fall through to the reset header
    reset = response.headers.get("x-rate-limit-reset")
    if reset:
        try:
            return max(float(reset) - time.time(), 0.0)
        except ValueError:
            return None
    return None


def _error_detail(response: httpx.Response) -> str:
    body = response.text.strip()
    if len(body) > MAX_ERROR_BODY:
        body = body[:MAX_ERROR_BODY] + "..."
    return f"HTTP {response.status_code}" + (f": {body}" if body else "")


def raise_for_platform_response(response: httpx.Response, platform: str) -> None:
    """Raise the normalized ``DispatchError`` for a non-2xx *response*.

    Does nothing for 2xx responses.
    """
    status = response.status_code
    if 200 <= status < 300:
        return

    detail = _error_detail(response)
    if status in (401, 403):
        raise AuthError(detail, platform)
    if status == 429:
        raise RateLimitedError(detail, platform, _retry_after_seconds(response))
    if status in VALIDATION_STATUSES:
        raise PlatformValidationError(detail, platform)
    if status >= 500:
        raise TransientError(detail, platform)
    raise UnknownDispatchError(detail, platform)


# ======================================================================
# ADAPTER BASE CLASS
# ======================================================================


class DispatchAdapter:
    """Base class for platform dispatch adapters.

    Subclasses set ``platform`` and implement :meth:`publish`.

    Args:
        timeout: Timeout in seconds for each HTTP request.
        transport: Optional ``httpx`` transport (tests pass an
            ``httpx.MockTransport``).
    """

    platform: str = ""

    def __init__(
        self,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout
        self.transport = transport

    async def publish(
        self,
        job: "PublicationJob",  # noqa: F821
        secret: Dict[str, Any],
    ) -> str:
        """Publish *job* using *secret* and return the published item's URL.

        Raises:
            DispatchError: One of its subclasses on failure.
        """
        raise NotImplementedError

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request and normalize transport and status failures."""
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientError(
                f"Request to {url} timed out", self.platform
            ) from exc
        except httpx.TransportError as exc:
            raise TransientError(
                f"Request to {url} failed: {exc}", self.platform
            ) from exc
        raise_for_platform_response(response, self.platform)
        return response

    def _json(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise UnknownDispatchError(
                f"Unparseable response: {_error_detail(response)}", self.platform
            ) from exc
        if not isinstance(data, dict):
            raise UnknownDispatchError(
                f"Unexpected response shape: {type(data).__name__}", self.platform
            )
        return data

    @staticmethod
    def _bearer(token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}


# ======================================================================
# REGISTRY
# ======================================================================


class AdapterRegistry:
    """Maps normalized platform identifiers to adapter instances."""

    def __init__(self) -> None:
        self._adapters: Dict[str, DispatchAdapter] = {}

    def register(self, adapter: DispatchAdapter) -> None:
        platform = normalize_platform(adapter.platform)
        if platform in self._adapters:
            logger.warning("[DISPATCH] Replacing adapter for %s", platform)
        self._adapters[platform] = adapter

    def get(self, platform: str) -> Optional[DispatchAdapter]:
        return self._adapters.get(normalize_platform(platform))

    @property
    def platforms(self) -> List[str]:
        return sorted(self._adapters)

    def __contains__(self, platform: object) -> bool:
        return isinstance(platform, str) and self.get(platform) is not None

    def __iter__(self) -> Iterator[DispatchAdapter]:
        return iter(self._adapters.values())

    def __len__(self) -> int:
        return len(self._adapters)


def build_adapter_registry(
    settings: "Settings",  # noqa: F821
    token_saver: Optional[Any] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AdapterRegistry:
    """Build the registry of every supported platform.

    Args:
        settings: Engine settings (HTTP timeout, webhook platforms).
        token_saver: Optional ``async (tenant_id, bundle)`` callable that
            persists refreshed Twitter tokens.
        transport: Optional ``httpx`` transport shared by all adapters.
    """
    from publication_engine.adapters.twitter import TwitterAdapter
    from publication_engine.adapters.webhook import WebhookAdapter
    from publication_engine.adapters.wordpress import WordPressAdapter

    timeout = settings.http_timeout_seconds
    registry = AdapterRegistry()
    registry.register(WordPressAdapter(timeout=timeout, transport=transport))
    registry.register(
        TwitterAdapter(
            client_id=os.environ.get("TWITTER_CLIENT_ID"),
            token_saver=token_saver,
            timeout=timeout,
            transport=transport,
        )
    )
    for platform in settings.webhook_platforms:
        registry.register(
            WebhookAdapter(platform=platform, timeout=timeout, transport=transport)
        )

    logger.info("[DISPATCH] Adapters registered: %s", ", ".join(registry.platforms))
    return registry


__all__ = [
    "DispatchAdapter",
    "AdapterRegistry",
    "build_adapter_registry",
    "raise_for_platform_response",
]
