from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Callable

import httpx

from ..config import PublishSettings
from ..error_mapper import RESOURCE_NOT_FOUND_PATTERNS, map_publish_error, provider_message
from ..errors import ProviderError, PublishFailure, ResourceNotFoundError, ValidationError
from ..events import log_event
from ..interfaces import PlatformAccount, PublishContent, PublishReceipt
from ..media import is_video_url, resolve_public_media_url
from ..models import ThreadsContentType
from .graph import CREATE_TIMEOUT_SECONDS, GraphApiClient

THREADS_BASE_URL = "https://graph.threads.net"
VIDEO_POLL_MAX_ATTEMPTS = 10
VIDEO_POLL_DELAY_SECONDS = 3.0
PUBLISH_RETRY_DELAY_SECONDS = 1.2

THREADS_POST_ID_RE = re.compile(r"^[0-9_]+$")


def looks_like_threads_post_id(value: object) -> bool:
    text = str(value or "").strip()
    return len(text) >= 6 and bool(THREADS_POST_ID_RE.match(text))


def _is_missing_resource(error: ProviderError) -> bool:
    message = provider_message(error)
    return any(pattern.search(message) for pattern in RESOURCE_NOT_FOUND_PATTERNS)


@dataclass
class ThreadsDeleteResult:
    deleted_ids: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class ThreadsPublisher(GraphApiClient):
    platform = "threads"

    def __init__(
        self,
        settings: PublishSettings,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(f"{THREADS_BASE_URL}/{settings.threads_api_version}", http_client, sleep)
        self._public_base_url = settings.public_base_url
        self._text_limit = settings.threads_text_max_chars

    def resolve_account_id(self, account: PlatformAccount) -> str:
        try:
            payload = self._request("GET", "me", access_token=account.access_token or "", params={"fields": "id"})
        except ProviderError as exc:
            log_event(
                "threads_account_lookup_failed",
                level="warning",
                connection_id=account.connection_id,
                error=exc.message,
            )
            return account.external_account_id
        return str(payload.get("id") or account.external_account_id)

    def publish(self, content: PublishContent, account: PlatformAccount) -> PublishReceipt:
        if not account.access_token:
            raise ValidationError(
                "Threads access token is missing. Reconnect Threads.", code="THREADS_TOKEN_MISSING", platform=self.platform
            )
        account_id = self.resolve_account_id(account)

        if content.content_type == ThreadsContentType.thread.value:
            return self._publish_chain(account, account_id, list(content.thread_parts))

        text = (content.caption or "").strip()
        self._check_length(text)
        media_urls = [resolve_public_media_url(url, self._public_base_url, platform=self.platform) for url in content.media_urls]
        content_type = content.content_type or ThreadsContentType.text.value
        if content_type == ThreadsContentType.video.value:
            video_url = next((url for url in media_urls if is_video_url(url)), None)
            if not video_url:
                raise ValidationError(
                    "Threads video posts need a video.", code="THREADS_MEDIA_REQUIRED", platform=self.platform
                )
            data = {"media_type": "VIDEO", "video_url": video_url, "text": text or None}
        elif content_type == ThreadsContentType.image.value:
            image_url = next((url for url in media_urls if not is_video_url(url)), None)
            if not image_url:
                raise ValidationError(
                    "Threads image posts need an image.", code="THREADS_MEDIA_REQUIRED", platform=self.platform
                )
            data = {"media_type": "IMAGE", "image_url": image_url, "text": text or None}
        else:
            data = {"media_type": "TEXT", "text": text}

        creation_id = self._create_container(account, account_id, data)
        if data["media_type"] == "VIDEO":
            self._wait_until_ready(
                creation_id,
                access_token=account.access_token,
                fields="status",
                max_attempts=VIDEO_POLL_MAX_ATTEMPTS,
                delay_seconds=VIDEO_POLL_DELAY_SECONDS,
            )
        return PublishReceipt(external_id=self._publish_container(account, account_id, creation_id))

    def _check_length(self, text: str) -> None:
        if len(text) > self._text_limit:
            raise ValidationError(
                f"Threads posts are limited to {self._text_limit} characters.",
                code="THREADS_TEXT_TOO_LONG",
                platform=self.platform,
            )

    def _publish_chain(self, account: PlatformAccount, account_id: str, parts: list[str]) -> PublishReceipt:
        if len(parts) < 2:
            raise ValidationError(
                "A thread chain needs at least two posts.", code="THREADS_CHAIN_TOO_SHORT", platform=self.platform
            )
        for part in parts:
            self._check_length(part)

        published: list[str] = []
        try:
            for part in parts:
                data = {"media_type": "TEXT", "text": part, "reply_to_id": published[-1] if published else None}
                creation_id = self._create_container(account, account_id, data)
                published.append(self._publish_container(account, account_id, creation_id))
        except Exception as exc:
            if not published:
                raise
            log_event("threads_chain_interrupted", level="error", published=published, parts=len(parts))
            error = map_publish_error(exc, platform=self.platform)
            error.partial_ids = tuple(published)
            if error is exc:
                raise
            raise error from exc
        return PublishReceipt(external_id=published[0], chain_ids=tuple(published))

    def _create_container(self, account: PlatformAccount, account_id: str, data: dict[str, object]) -> str:
        try:
            payload = self._request(
                "POST",
                f"{account_id}/threads",
                access_token=account.access_token or "",
                data=data,
                timeout=CREATE_TIMEOUT_SECONDS,
            )
        except ProviderError as exc:
            if _is_missing_resource(exc):
                raise ResourceNotFoundError(
                    "Threads account could not be found. Reconnect Threads and try again.",
                    code="THREADS_ACCOUNT_RESOURCE_NOT_FOUND",
                    platform=self.platform,
                ) from exc
            raise
        creation_id = str(payload.get("id") or "")
        if not creation_id:
            raise PublishFailure(
                "Threads container response missing id.", code="THREADS_CONTAINER_FAILED", platform=self.platform
            )
        return creation_id

    def _publish_container(self, account: PlatformAccount, account_id: str, creation_id: str) -> str:
        def _attempt() -> dict[str, object]:
            return self._request(
                "POST",
                f"{account_id}/threads_publish",
                access_token=account.access_token or "",
                data={"creation_id": creation_id},
                timeout=CREATE_TIMEOUT_SECONDS,
            )

        try:
            payload = _attempt()
        except ProviderError as exc:
            if not _is_missing_resource(exc):
                raise
            log_event("threads_publish_retry", level="warning", creation_id=creation_id, error=exc.message)
            self._sleep(PUBLISH_RETRY_DELAY_SECONDS)
            try:
                payload = _attempt()
            except ProviderError as retry_exc:
                if not _is_missing_resource(retry_exc):
                    raise
                raise ResourceNotFoundError(
                    "Threads could not publish the post. Reconnect Threads and try again.",
                    code="THREADS_PUBLISH_RESOURCE_NOT_FOUND",
                    platform=self.platform,
                ) from retry_exc

        post_id = str(payload.get("id") or "")
        if not post_id:
            raise PublishFailure(
                "Threads publish response missing post id.", code="THREADS_PUBLISH_FAILED", platform=self.platform
            )
        return post_id

    def delete_posts(self, account: PlatformAccount, post_ids: list[str]) -> ThreadsDeleteResult:
        result = ThreadsDeleteResult()
        for post_id in post_ids:
            try:
                self._request("DELETE", post_id, access_token=account.access_token or "")
            except ProviderError as exc:
                if exc.status_code in {400, 404} and _is_missing_resource(exc):
                    result.deleted_ids.append(post_id)
                    continue
                result.failed[post_id] = exc.message
                continue
            result.deleted_ids.append(post_id)
        return result
