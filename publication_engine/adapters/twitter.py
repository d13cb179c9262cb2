"""
X/Twitter API v2 dispatch adapter.

Posts a tweet on behalf of a tenant using the OAuth 2.0 user token bundle
stored by the connect flow.  Tokens that are about to expire are refreshed
first and the new bundle is handed to ``token_saver`` so it can be written
back to the credential store.

Image media is downloaded and uploaded before the tweet is created.  Video
is not supported.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlparse

import httpx

from publication_engine.adapters.base import DispatchAdapter
from publication_engine.exceptions import (
    AuthError,
    PlatformValidationError,
    UnknownDispatchError,
    ValidationError,
)
from publication_engine.utils import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

# Refresh when the access token expires within this window
REFRESH_MARGIN = timedelta(minutes=5)

# API limit for images attached to one tweet
MAX_IMAGES = 4

TokenSaver = Callable[[str, Dict[str, Any]], Awaitable[None]]


class TwitterAdapter(DispatchAdapter):
    """Publishes tweets with a tenant's OAuth 2.0 token bundle.

    The secret carries ``accessToken``, ``refreshToken``, ``expiresAt``
    (ISO-8601) and ``twitterUsername``.

    Args:
        client_id: OAuth client id used for the refresh grant
            (``TWITTER_CLIENT_ID``).
        token_saver: Optional ``async (tenant_id, bundle)`` callable invoked
            after a successful refresh.
        clock: Returns the current UTC time.
    """

    platform = "twitter"
    BASE_URL: str = "https://api.twitter.com/2"

    def __init__(
        self,
        client_id: Optional[str] = None,
        token_saver: Optional[TokenSaver] = None,
        clock: Callable[[], datetime] = utc_now,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(timeout=timeout, transport=transport)
        self.client_id = client_id
        self.token_saver = token_saver
        self.clock = clock

    async def publish(self, job: "PublicationJob", secret: Dict[str, Any]) -> str:  # noqa: F821
        if job.content_type.has_video:
            raise PlatformValidationError(
                "Video media is not supported for Twitter", self.platform
            )

        text = job.payload.text or ""
        media = list(job.payload.media)
        if not text.strip() and not media:
            raise PlatformValidationError("Nothing to publish", self.platform)
        if len(media) > MAX_IMAGES:
            raise PlatformValidationError(
                f"At most {MAX_IMAGES} images per tweet, got {len(media)}",
                self.platform,
            )

        async with self._client() as client:
            secret = await self._ensure_fresh_token(client, job.tenant_id, secret)
            access_token = secret["accessToken"]

            media_ids: List[str] = []
            for item in media:
                media_ids.append(await self._upload_image(client, access_token, item))

            payload: Dict[str, Any] = {"text": text}
            if media_ids:
                payload["media"] = {"media_ids": media_ids}

            response = await self._request(
                client,
                "POST",
                f"{self.BASE_URL}/tweets",
                headers=self._bearer(access_token),
                json=payload,
            )
        tweet_id = (self._json(response).get("data") or {}).get("id")
        if not tweet_id:
            raise UnknownDispatchError(
                "Twitter response did not include the tweet id", self.platform
            )

        username = secret.get("twitterUsername")
        if username:
            url = f"https://twitter.com/{username}/status/{tweet_id}"
        else:
            url = f"https://twitter.com/i/web/status/{tweet_id}"
        logger.info("[DISPATCH] Tweet %s posted for job %s", tweet_id, job.id)
        return url

    # ------------------------------------------------------------------
    # Token refresh
    # ------------------------------------------------------------------

    async def _ensure_fresh_token(
        self,
        client: httpx.AsyncClient,
        tenant_id: str,
        secret: Dict[str, Any],
    ) -> Dict[str, Any]:
        if not secret.get("accessToken"):
            raise AuthError("Twitter credential has no accessToken", self.platform)

        try:
            expires_at = parse_timestamp(secret.get("expiresAt"))
        except ValidationError:
            expires_at = None
        if expires_at is None or expires_at - self.clock() > REFRESH_MARGIN:
            return secret

        if not secret.get("refreshToken") or not self.client_id:
            raise AuthError(
                "Twitter access token expired and cannot be refreshed", self.platform
            )

        logger.info("[DISPATCH] Refreshing Twitter token for tenant %s", tenant_id)
        try:
            response = await self._request(
                client,
                "POST",
                f"{self.BASE_URL}/oauth2/token",
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": secret["refreshToken"],
                    "client_id": self.client_id,
                },
            )
        except PlatformValidationError as exc:
            # invalid_grant comes back as 400
            raise AuthError(
                f"Twitter token refresh rejected: {exc.message}", self.platform
            ) from exc
        data = self._json(response)

        access_token = data.get("access_token")
        if not access_token:
            raise AuthError("Twitter token refresh returned no access_token", self.platform)
        expires_in = int(data.get("expires_in") or 7200)

        refreshed = dict(secret)
        refreshed.update(
            {
                "accessToken": access_token,
                "refreshToken": data.get("refresh_token") or secret["refreshToken"],
                "expiresIn": expires_in,
                "expiresAt": (self.clock() + timedelta(seconds=expires_in)).isoformat(),
            }
        )

        if self.token_saver is not None:
            try:
                await self.token_saver(tenant_id, refreshed)
            except Exception as exc:
                # The new token is still valid for this dispatch
                logger.error(
                    "[DISPATCH] Failed to persist refreshed Twitter token for %s: %s",
                    tenant_id,
                    exc,
                )
        return refreshed

    # ------------------------------------------------------------------
    # Media upload
    # ------------------------------------------------------------------

    async def _upload_image(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        media: str,
    ) -> str:
        # Bare numeric strings are media ids uploaded earlier
        if media.isdigit():
            return media

        download = await self._request(client, "GET", media)
        filename = urlparse(media).path.rsplit("/", 1)[-1] or "image"
        content_type = download.headers.get("content-type", "application/octet-stream")

        response = await self._request(
            client,
            "POST",
            f"{self.BASE_URL}/media/upload",
            headers=self._bearer(access_token),
            files={"media": (filename, download.content, content_type)},
            data={"media_category": "tweet_image"},
        )
        media_id = (self._json(response).get("data") or {}).get("id")
        if not media_id:
            raise UnknownDispatchError(
                "Twitter media upload did not return a media id", self.platform
            )
        return str(media_id)


__all__ = [
    "TwitterAdapter",
]
