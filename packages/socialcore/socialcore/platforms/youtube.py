from __future__ import annotations

import os
import re
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Iterator

import httpx

from ..config import PublishSettings
from ..errors import ProviderError, PublishFailure, TokenExpiredError, ValidationError
from ..events import log_event
from ..interfaces import PlatformAccount, PublishContent, PublishReceipt
from ..media import guess_mime_type, is_remote_url, is_video_url
from ..models import YoutubeContentType
from ..timeutil import as_utc, utc_now

UPLOAD_URL = "https://www.googleapis.com/upload/youtube/v3/videos"
TOKEN_URL = "https://oauth2.googleapis.com/token"
SESSION_TIMEOUT_SECONDS = 30.0
TOKEN_TIMEOUT_SECONDS = 15.0
CHUNK_SIZE = 1024 * 1024
TITLE_MAX_CHARS = 100
DEFAULT_TITLE = "Social Publisher Upload"
CATEGORY_ID = "22"


def build_video_title(caption: str | None) -> str:
    for line in (caption or "").splitlines():
        title = re.sub(r"\s+", " ", line).strip()
        if title:
            if len(title) > TITLE_MAX_CHARS:
                return title[: TITLE_MAX_CHARS - 3].rstrip() + "..."
            return title
    return DEFAULT_TITLE


def build_video_description(caption: str | None, content_type: str | None, max_chars: int = 5000) -> str:
    description = (caption or "").strip()
    if content_type == YoutubeContentType.short.value and "#shorts" not in description.lower():
        description = f"{description}\n\n#Shorts".strip()
    return description[:max_chars]


@dataclass
class _MediaSource:
    chunks: Iterator[bytes]
    size: int | None
    mime_type: str


class YoutubePublisher:
    platform = "youtube"

    def __init__(
        self,
        settings: PublishSettings,
        http_client: httpx.Client | None = None,
        on_token_refreshed: Callable[..., None] | None = None,
    ) -> None:
        self._settings = settings
        self._http_client = http_client or httpx.Client(timeout=SESSION_TIMEOUT_SECONDS)
        self._on_token_refreshed = on_token_refreshed
        self._upload_timeout = settings.youtube_upload_timeout_ms / 1000
        self._refresh_skew = timedelta(seconds=settings.youtube_refresh_skew_seconds)

    def publish(self, content: PublishContent, account: PlatformAccount) -> PublishReceipt:
        video_url = next((url for url in content.media_urls if is_video_url(url)), None)
        if not video_url:
            raise ValidationError("YouTube needs a video media item.", code="YOUTUBE_VIDEO_REQUIRED", platform=self.platform)

        metadata = {
            "snippet": {
                "title": build_video_title(content.caption),
                "description": build_video_description(
                    content.caption, content.content_type, self._settings.youtube_description_max_chars
                ),
                "categoryId": CATEGORY_ID,
            },
            "status": {
                "privacyStatus": self._settings.youtube_default_privacy,
                "selfDeclaredMadeForKids": False,
            },
        }

        access_token = self.ensure_access_token(account)
        try:
            video_id = self._upload(video_url, metadata, access_token)
        except ProviderError as exc:
            if exc.status_code != 401 or not account.refresh_token:
                raise
            log_event("youtube_upload_unauthorized_retry", level="warning", connection_id=account.connection_id)
            access_token = self.ensure_access_token(account, force_refresh=True)
            video_id = self._upload(video_url, metadata, access_token)
        return PublishReceipt(external_id=video_id)

    def ensure_access_token(self, account: PlatformAccount, *, force_refresh: bool = False) -> str:
        now = utc_now()
        expires_at = as_utc(account.token_expires_at)
        expired = expires_at is not None and expires_at <= now
        should_refresh = (
            force_refresh or not account.access_token or (expires_at is not None and expires_at - now <= self._refresh_skew)
        )
        if not should_refresh:
            return account.access_token
        if not account.refresh_token:
            if account.access_token and not force_refresh and not expired:
                return account.access_token
            raise TokenExpiredError(
                "YouTube access token expired. Reconnect YouTube.", code="YOUTUBE_TOKEN_EXPIRED", platform=self.platform
            )
        return self._refresh_access_token(account)

    def _refresh_access_token(self, account: PlatformAccount) -> str:
        if not self._settings.google_client_id or not self._settings.google_client_secret:
            raise PublishFailure(
                "YouTube token refresh is not configured.", code="YOUTUBE_OAUTH_NOT_CONFIGURED", platform=self.platform
            )
        try:
            response = self._http_client.post(
                TOKEN_URL,
                data={
                    "grant_type": "refresh_token",
                    "client_id": self._settings.google_client_id,
                    "client_secret": self._settings.google_client_secret,
                    "refresh_token": account.refresh_token,
                },
                timeout=TOKEN_TIMEOUT_SECONDS,
            )
        except httpx.RequestError as exc:
            raise ProviderError(
                f"youtube token refresh failed: network_error={exc.__class__.__name__}", transient=True
            ) from exc
        if response.status_code in {400, 401}:
            raise TokenExpiredError(
                "YouTube refresh token was rejected. Reconnect YouTube.",
                code="YOUTUBE_TOKEN_EXPIRED",
                platform=self.platform,
            )
        if response.status_code >= 400:
            raise ProviderError(f"youtube token refresh failed: status={response.status_code}", status_code=response.status_code)

        payload = response.json()
        access_token = str(payload.get("access_token") or "")
        if not access_token:
            raise PublishFailure(
                "YouTube token refresh response missing access_token.",
                code="YOUTUBE_TOKEN_REFRESH_FAILED",
                platform=self.platform,
            )
        expires_in = int(payload.get("expires_in") or 3600)
        expires_at = utc_now() + timedelta(seconds=expires_in)
        account.access_token = access_token
        account.token_expires_at = expires_at
        if self._on_token_refreshed is not None:
            self._on_token_refreshed(account, access_token, expires_at)
        log_event("youtube_token_refreshed", connection_id=account.connection_id, expires_at=expires_at)
        return access_token

    @contextmanager
    def _open_media(self, url: str) -> Iterator[_MediaSource]:
        mime_type = guess_mime_type(url)
        if is_remote_url(url):
            try:
                with self._http_client.stream("GET", url, timeout=self._upload_timeout) as response:
                    if response.status_code >= 400:
                        raise ProviderError(
                            f"youtube media download failed: status={response.status_code}",
                            status_code=response.status_code,
                        )
                    length = response.headers.get("content-length")
                    yield _MediaSource(
                        chunks=response.iter_bytes(CHUNK_SIZE),
                        size=int(length) if length and length.isdigit() else None,
                        mime_type=response.headers.get("content-type", mime_type).split(";")[0] or mime_type,
                    )
            except httpx.RequestError as exc:
                raise ProviderError(
                    f"youtube media download failed: network_error={exc.__class__.__name__}", transient=True
                ) from exc
            return

        path = self._local_path(url)
        with open(path, "rb") as handle:
            yield _MediaSource(chunks=_iter_file(handle), size=os.path.getsize(path), mime_type=mime_type)

    def _local_path(self, url: str) -> str:
        relative = url.split("?", 1)[0].lstrip("/")
        if relative.startswith("uploads/"):
            relative = relative[len("uploads/"):]
        root = os.path.abspath(self._settings.media_upload_root)
        path = os.path.abspath(os.path.join(root, relative))
        if not path.startswith(root + os.sep) or not os.path.isfile(path):
            raise ValidationError(
                "YouTube video file could not be found.", code="YOUTUBE_MEDIA_NOT_FOUND", platform=self.platform
            )
        return path

    def _upload(self, video_url: str, metadata: dict[str, object], access_token: str) -> str:
        with self._open_media(video_url) as media:
            session_headers = {
                "Authorization": f"Bearer {access_token}",
                "X-Upload-Content-Type": media.mime_type,
            }
            if media.size is not None:
                session_headers["X-Upload-Content-Length"] = str(media.size)
            try:
                session = self._http_client.post(
                    UPLOAD_URL,
                    params={"uploadType": "resumable", "part": "snippet,status"},
                    json=metadata,
                    headers=session_headers,
                    timeout=SESSION_TIMEOUT_SECONDS,
                )
            except httpx.RequestError as exc:
                raise ProviderError(
                    f"youtube upload session failed: network_error={exc.__class__.__name__}", transient=True
                ) from exc
            if session.status_code >= 400:
                raise _youtube_error(session)
            location = session.headers.get("location")
            if not location:
                raise PublishFailure(
                    "YouTube did not return an upload session.", code="YOUTUBE_UPLOAD_SESSION_FAILED", platform=self.platform
                )

            upload_headers = {"Authorization": f"Bearer {access_token}", "Content-Type": media.mime_type}
            if media.size is not None:
                upload_headers["Content-Length"] = str(media.size)
            try:
                uploaded = self._http_client.put(
                    location, content=media.chunks, headers=upload_headers, timeout=self._upload_timeout
                )
            except httpx.TimeoutException as exc:
                raise ProviderError("youtube upload timed out", transient=True) from exc
            except httpx.RequestError as exc:
                raise ProviderError(
                    f"youtube upload failed: network_error={exc.__class__.__name__}", transient=True
                ) from exc
            if uploaded.status_code >= 400:
                raise _youtube_error(uploaded)

        video_id = str(uploaded.json().get("id") or "")
        if not video_id:
            raise PublishFailure(
                "YouTube upload response missing video id.", code="YOUTUBE_UPLOAD_FAILED", platform=self.platform
            )
        return video_id


def _iter_file(handle) -> Iterator[bytes]:
    while True:
        chunk = handle.read(CHUNK_SIZE)
        if not chunk:
            return
        yield chunk


def _youtube_error(response: httpx.Response) -> ProviderError:
    message = response.text or f"status={response.status_code}"
    reason = None
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        error = payload["error"]
        message = str(error.get("message") or message)
        details = error.get("errors")
        if isinstance(details, list) and details and isinstance(details[0], dict):
            reason = details[0].get("reason")
    return ProviderError(message, status_code=response.status_code, provider_code=reason)
