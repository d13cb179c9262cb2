"""
Automation webhook dispatch adapter (Make.com and similar relays).

The relay scenario does the actual posting and answers with the URL of the
published item.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from publication_engine.adapters.base import DispatchAdapter
from publication_engine.exceptions import AuthError, UnknownDispatchError
from publication_engine.utils import normalize_platform

logger = logging.getLogger(__name__)

RESULT_URL_KEYS = ("url", "resultUrl", "result_url")


class WebhookAdapter(DispatchAdapter):
    """Relays a job to a tenant's automation webhook.

    The secret is ``{"webhook_url": ...}``.  The relay receives
    ``platform``, ``content``, ``contentId`` and ``media``.
    """

    def __init__(
        self,
        platform: str = "make",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(timeout=timeout, transport=transport)
        self.platform = normalize_platform(platform)

    async def publish(self, job: "PublicationJob", secret: Dict[str, Any]) -> str:  # noqa: F821
        webhook_url = secret.get("webhook_url")
        if not webhook_url:
            raise AuthError("Webhook credential has no webhook_url", self.platform)

        body = {
            "platform": job.platform,
            "content": job.payload.text,
            "contentId": job.id,
            "media": list(job.payload.media),
        }
        async with self._client() as client:
            response = await self._request(client, "POST", webhook_url, json=body)

        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            for key in RESULT_URL_KEYS:
                if data.get(key):
                    logger.info("[DISPATCH] Webhook accepted job %s", job.id)
                    return str(data[key])

        raise UnknownDispatchError(
            "Webhook response did not include a result URL", self.platform
        )


__all__ = [
    "WebhookAdapter",
]
