from __future__ import annotations

import mimetypes
import os
from urllib.parse import urlparse

from .errors import ValidationError

VIDEO_EXTENSIONS = {".mp4", ".mov", ".m4v", ".webm", ".avi", ".mkv"}


def _extension(url: str) -> str:
    path = urlparse(url).path or url
    return os.path.splitext(path.lower())[1]


def is_video_url(url: str) -> bool:
    return _extension(url) in VIDEO_EXTENSIONS


def guess_mime_type(url: str) -> str:
    mime_type, _ = mimetypes.guess_type(urlparse(url).path or url)
    if mime_type:
        return mime_type
    return "video/mp4" if is_video_url(url) else "application/octet-stream"


def is_remote_url(url: str) -> bool:
    return urlparse(url).scheme in {"http", "https"}


def resolve_public_media_url(url: str, public_base_url: str | None, *, platform: str | None = None) -> str:
    value = (url or "").strip()
    if not value:
        raise ValidationError("Media URL is empty.", code="MEDIA_URL_INVALID", platform=platform)
    if is_remote_url(value):
        return value
    if not public_base_url:
        raise ValidationError(
            "Media must be publicly reachable. Configure PUBLIC_BASE_URL for uploaded media.",
            code="MEDIA_URL_NOT_PUBLIC",
            platform=platform,
        )
    return f"{public_base_url.rstrip('/')}/{value.lstrip('/')}"
