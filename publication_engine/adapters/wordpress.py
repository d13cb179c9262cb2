"""
WordPress.com dispatch adapter.

Publishes a job as a new post through the WordPress.com REST API v1.1 with
an OAuth access token obtained by the connect flow.
"""

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from publication_engine.adapters.base import DispatchAdapter
from publication_engine.exceptions import (
    AuthError,
    PlatformValidationError,
    UnknownDispatchError,
)

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 80


def _site_identifier(secret: Dict[str, Any]) -> Optional[str]:
    blog_id = secret.get("blog_id")
    if blog_id:
        return str(blog_id)
    blog_url = secret.get("blog_url")
    if blog_url:
        return urlparse(blog_url).netloc or str(blog_url).strip("/")
    return None


def build_title(text: str) -> str:
    """First non-empty line of *text*, cut to ``TITLE_MAX_LENGTH`` characters."""
    for line in text.splitlines():
        line = line.strip()
        if line:
            return line[:TITLE_MAX_LENGTH]
    return ""


class WordPressAdapter(DispatchAdapter):
    """Publishes to a WordPress.com site.

    The secret is the OAuth bundle stored by the connect flow:
    ``access_token`` plus ``blog_id`` or ``blog_url``.
    """

    platform = "wordpress"
    BASE_URL: str = "https://public-api.wordpress.com/rest/v1.1"

    async def publish(self, job: "PublicationJob", secret: Dict[str, Any]) -> str:  # noqa: F821
        access_token = secret.get("access_token")
        if not access_token:
            raise AuthError("WordPress credential has no access_token", self.platform)
        site = _site_identifier(secret)
        if not site:
            raise AuthError("WordPress credential has no blog_id or blog_url", self.platform)

        text = job.payload.text or ""
        media = list(job.payload.media)
        if not text.strip() and not media:
            raise PlatformValidationError("Nothing to publish", self.platform)

        body: Dict[str, Any] = {
            "title": build_title(text),
            "content": text,
            "status": "publish",
        }
        if media:
            body["media_urls"] = media

        async with self._client() as client:
            response = await self._request(
                client,
                "POST",
                f"{self.BASE_URL}/sites/{site}/posts/new",
                headers=self._bearer(access_token),
                json=body,
            )
        data = self._json(response)

        url = data.get("URL")
        if not url:
            raise UnknownDispatchError(
                "WordPress response did not include the post URL", self.platform
            )
        logger.info(
            "[DISPATCH] WordPress post %s created for job %s", data.get("ID"), job.id
        )
        return url


__all__ = [
    "WordPressAdapter",
    "build_title",
]
