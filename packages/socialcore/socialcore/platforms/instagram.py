from __future__ import annotations

import time
from typing import Callable

import httpx

from ..config import PublishSettings
from ..errors import PublishFailure, ValidationError
from ..interfaces import PlatformAccount, PublishContent, PublishReceipt
from ..media import is_video_url, resolve_public_media_url
from ..models import InstagramContentType
from .graph import CREATE_TIMEOUT_SECONDS, GraphApiClient

GRAPH_BASE_URL = "https://graph.facebook.com"
POLL_MAX_ATTEMPTS = 8
POLL_DELAY_SECONDS = 3.0
STATUS_FIELDS = "status_code,status"


class InstagramPublisher(GraphApiClient):
    platform = "instagram"

    def __init__(
        self,
        settings: PublishSettings,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(f"{GRAPH_BASE_URL}/{settings.instagram_graph_version}", http_client, sleep)
        self._public_base_url = settings.public_base_url

    def publish(self, content: PublishContent, account: PlatformAccount) -> PublishReceipt:
        if not account.access_token:
            raise ValidationError(
                "Instagram access token is missing. Reconnect Instagram.",
                code="INSTAGRAM_TOKEN_MISSING",
                platform=self.platform,
            )
        media_urls = [resolve_public_media_url(url, self._public_base_url, platform=self.platform) for url in content.media_urls]
        if not media_urls:
            raise ValidationError(
                "Instagram needs at least one media item.", code="INSTAGRAM_MEDIA_REQUIRED", platform=self.platform
            )

        content_type = content.content_type or InstagramContentType.feed.value
        if content_type == InstagramContentType.carousel.value:
            creation_id = self._create_carousel(account, media_urls, content.caption)
        else:
            creation_id = self._create_single(account, media_urls[0], content.caption, content_type)

        payload = self._request(
            "POST",
            f"{account.external_account_id}/media_publish",
            access_token=account.access_token,
            data={"creation_id": creation_id},
            timeout=CREATE_TIMEOUT_SECONDS,
        )
        published_id = str(payload.get("id") or "")
        if not published_id:
            raise PublishFailure(
                "Instagram publish response missing media id.", code="INSTAGRAM_PUBLISH_FAILED", platform=self.platform
            )
        return PublishReceipt(external_id=published_id)

    def _create_container(self, account: PlatformAccount, data: dict[str, object]) -> str:
        payload = self._request(
            "POST",
            f"{account.external_account_id}/media",
            access_token=account.access_token or "",
            data=data,
            timeout=CREATE_TIMEOUT_SECONDS,
        )
        container_id = str(payload.get("id") or "")
        if not container_id:
            raise PublishFailure(
                "Instagram container response missing id.", code="INSTAGRAM_CONTAINER_FAILED", platform=self.platform
            )
        return container_id

    def _wait(self, account: PlatformAccount, container_id: str) -> None:
        self._wait_until_ready(
            container_id,
            access_token=account.access_token or "",
            fields=STATUS_FIELDS,
            max_attempts=POLL_MAX_ATTEMPTS,
            delay_seconds=POLL_DELAY_SECONDS,
        )

    def _create_single(self, account: PlatformAccount, media_url: str, caption: str, content_type: str) -> str:
        video = is_video_url(media_url)
        data: dict[str, object] = {"caption": caption or None}
        if content_type == InstagramContentType.reel.value:
            if not video:
                raise ValidationError(
                    "Instagram reels need a video.", code="INSTAGRAM_REEL_VIDEO_REQUIRED", platform=self.platform
                )
            data.update(media_type="REELS", video_url=media_url)
        elif content_type == InstagramContentType.story.value:
            data.update(media_type="STORIES")
            data.pop("caption")
            data["video_url" if video else "image_url"] = media_url
        elif video:
            data.update(media_type="VIDEO", video_url=media_url)
        else:
            data["image_url"] = media_url

        container_id = self._create_container(account, data)
        if video or content_type in {InstagramContentType.reel.value, InstagramContentType.story.value}:
            self._wait(account, container_id)
        return container_id

    def _create_carousel(self, account: PlatformAccount, media_urls: list[str], caption: str) -> str:
        if len(media_urls) < 2:
            raise ValidationError(
                "Instagram carousels need at least two media items.",
                code="INSTAGRAM_CAROUSEL_MEDIA_REQUIRED",
                platform=self.platform,
            )
        children: list[str] = []
        for media_url in media_urls:
            data: dict[str, object] = {"is_carousel_item": "true"}
            if is_video_url(media_url):
                data.update(media_type="VIDEO", video_url=media_url)
            else:
                data["image_url"] = media_url
            child_id = self._create_container(account, data)
            if is_video_url(media_url):
                self._wait(account, child_id)
            children.append(child_id)

        parent_id = self._create_container(
            account,
            {"media_type": "CAROUSEL", "children": ",".join(children), "caption": caption or None},
        )
        self._wait(account, parent_id)
        return parent_id
