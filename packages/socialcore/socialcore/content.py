from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .config import PublishSettings
from .errors import ChainTooLongError, ValidationError
from .interfaces import PublishContent
from .media import is_video_url
from .models import (
    PLATFORM_ORDER,
    InstagramContentType,
    Platform,
    Post,
    ThreadsContentType,
    YoutubeContentType,
)
from .thread_chain import normalize_chain_parts, split_into_chain

CROSSPOST_TARGETS = ("x", "linkedin")


@dataclass(frozen=True)
class Issue:
    code: str
    message: str
    platform: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "platform": self.platform}


@dataclass
class PostRequest:
    caption: str = ""
    media_urls: list[str] = field(default_factory=list)
    platforms: list[str] = field(default_factory=list)
    instagram_content_type: str | None = None
    threads_content_type: str | None = None
    youtube_content_type: str | None = None
    thread_parts: list[str] | None = None
    schedule: bool = False
    scheduled_for: datetime | None = None
    crosspost_targets: dict[str, bool] = field(default_factory=dict)
    crosspost_routing: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PostDraft:
    caption: str
    media_urls: tuple[str, ...]
    platforms: tuple[str, ...]
    content_types: dict[str, str]
    thread_parts: tuple[str, ...] = ()
    scheduled_for: datetime | None = None
    crosspost_targets: dict[str, bool] = field(default_factory=dict)
    crosspost_routing: dict[str, Any] = field(default_factory=dict)

    @property
    def cross_post(self) -> bool:
        return any(self.crosspost_targets.values())

    @property
    def is_threads_chain(self) -> bool:
        return self.content_types.get(Platform.threads.value) == ThreadsContentType.thread.value

    def content_for(self, platform: str) -> PublishContent:
        return PublishContent(
            caption=self.caption,
            media_urls=self.media_urls,
            content_type=self.content_types.get(platform),
            thread_parts=self.thread_parts if platform == Platform.threads.value else (),
        )


def normalize_platforms(raw: list[str] | tuple[str, ...] | None) -> tuple[tuple[str, ...], list[str]]:
    requested: list[str] = []
    unknown: list[str] = []
    known = {platform.value for platform in Platform}
    for value in raw or []:
        name = str(value or "").strip().lower()
        if not name:
            continue
        if name not in known:
            if name not in unknown:
                unknown.append(name)
            continue
        if name not in requested:
            requested.append(name)
    ordered = tuple(platform.value for platform in PLATFORM_ORDER if platform.value in requested)
    return ordered, unknown


def _pick_type(raw: str | None, allowed: type, default: str) -> str | None:
    value = (raw or "").strip().lower()
    if not value:
        return default
    if value in {member.value for member in allowed}:
        return value
    return None


def _infer_threads_type(media_urls: tuple[str, ...]) -> str:
    if any(is_video_url(url) for url in media_urls):
        return ThreadsContentType.video.value
    if media_urls:
        return ThreadsContentType.image.value
    return ThreadsContentType.text.value


def build_draft(request: PostRequest, settings: PublishSettings) -> tuple[PostDraft, list[Issue]]:
    issues: list[Issue] = []
    caption = (request.caption or "").strip()
    media_urls = tuple(url.strip() for url in request.media_urls or [] if url and url.strip())

    platforms, unknown = normalize_platforms(request.platforms)
    for name in unknown:
        issues.append(Issue("UNSUPPORTED_PLATFORM", f"Platform '{name}' is not supported."))

    content_types: dict[str, str] = {}
    thread_parts: tuple[str, ...] = ()

    if Platform.instagram.value in platforms:
        default = InstagramContentType.carousel.value if len(media_urls) > 1 else InstagramContentType.feed.value
        picked = _pick_type(request.instagram_content_type, InstagramContentType, default)
        if picked is None:
            issues.append(Issue("INVALID_CONTENT_TYPE", "Unknown Instagram content type.", "instagram"))
        else:
            content_types[Platform.instagram.value] = picked

    if Platform.youtube.value in platforms:
        picked = _pick_type(request.youtube_content_type, YoutubeContentType, YoutubeContentType.video.value)
        if picked is None:
            issues.append(Issue("INVALID_CONTENT_TYPE", "Unknown YouTube content type.", "youtube"))
        else:
            content_types[Platform.youtube.value] = picked

    if Platform.threads.value in platforms:
        explicit_parts = normalize_chain_parts(request.thread_parts)
        if explicit_parts:
            picked = ThreadsContentType.thread.value
        else:
            picked = _pick_type(request.threads_content_type, ThreadsContentType, _infer_threads_type(media_urls))
        if picked is None:
            issues.append(Issue("INVALID_CONTENT_TYPE", "Unknown Threads content type.", "threads"))
        else:
            limit = settings.threads_text_max_chars
            auto_split = (
                picked == ThreadsContentType.text.value
                and not media_urls
                and limit < len(caption) <= settings.threads_auto_split_max_chars
            )
            if explicit_parts:
                thread_parts = tuple(explicit_parts)
            elif picked == ThreadsContentType.thread.value or auto_split:
                picked = ThreadsContentType.thread.value
                try:
                    thread_parts = tuple(split_into_chain(caption, limit, settings.threads_max_chain_posts))
                except ChainTooLongError as exc:
                    issues.append(Issue(exc.code, exc.message, "threads"))
            content_types[Platform.threads.value] = picked

    if request.schedule and request.scheduled_for is None:
        issues.append(Issue("SCHEDULED_FOR_REQUIRED", "Scheduled posts need a scheduled time."))

    targets = {
        target: bool(request.crosspost_targets.get(target, False))
        for target in CROSSPOST_TARGETS
        if target in (request.crosspost_targets or {})
    }
    draft = PostDraft(
        caption=caption,
        media_urls=media_urls,
        platforms=platforms,
        content_types=content_types,
        thread_parts=thread_parts,
        scheduled_for=request.scheduled_for if request.schedule else None,
        crosspost_targets=targets,
        crosspost_routing=dict(request.crosspost_routing or {}),
    )
    issues.extend(validate_draft(draft, settings))
    return draft, issues


def validate_draft(draft: PostDraft, settings: PublishSettings) -> list[Issue]:
    issues: list[Issue] = []
    caption = draft.caption
    media = draft.media_urls
    videos = [url for url in media if is_video_url(url)]

    if not draft.platforms:
        issues.append(Issue("PLATFORMS_REQUIRED", "Select at least one platform."))

    if not caption and not media and not draft.thread_parts:
        issues.append(Issue("CONTENT_REQUIRED", "Add a caption or at least one media item."))

    instagram_type = draft.content_types.get(Platform.instagram.value)
    if instagram_type:
        if len(caption) > settings.instagram_caption_max_chars:
            issues.append(
                Issue(
                    "INSTAGRAM_CAPTION_TOO_LONG",
                    f"Instagram captions are limited to {settings.instagram_caption_max_chars} characters.",
                    "instagram",
                )
            )
        if not media:
            issues.append(Issue("INSTAGRAM_MEDIA_REQUIRED", "Instagram needs at least one media item.", "instagram"))
        elif instagram_type == InstagramContentType.carousel.value and len(media) < 2:
            issues.append(
                Issue("INSTAGRAM_CAROUSEL_MEDIA_REQUIRED", "Carousels need at least two media items.", "instagram")
            )
        elif instagram_type == InstagramContentType.reel.value and not videos:
            issues.append(Issue("INSTAGRAM_REEL_VIDEO_REQUIRED", "Reels need a video.", "instagram"))

    if draft.content_types.get(Platform.youtube.value):
        if len(caption) > settings.youtube_description_max_chars:
            issues.append(
                Issue(
                    "YOUTUBE_CAPTION_TOO_LONG",
                    f"YouTube descriptions are limited to {settings.youtube_description_max_chars} characters.",
                    "youtube",
                )
            )
        if not videos:
            issues.append(Issue("YOUTUBE_VIDEO_REQUIRED", "YouTube needs a video media item.", "youtube"))

    threads_type = draft.content_types.get(Platform.threads.value)
    limit = settings.threads_text_max_chars
    if threads_type == ThreadsContentType.thread.value:
        if len(draft.thread_parts) < 2:
            issues.append(Issue("THREADS_CHAIN_TOO_SHORT", "A thread chain needs at least two posts.", "threads"))
        if len(draft.thread_parts) > settings.threads_max_chain_posts:
            issues.append(
                Issue(
                    "THREADS_CHAIN_TOO_LONG",
                    f"A thread chain is limited to {settings.threads_max_chain_posts} posts.",
                    "threads",
                )
            )
        if any(len(part) > limit for part in draft.thread_parts):
            issues.append(
                Issue("THREADS_CHAIN_PART_TOO_LONG", f"Each thread post is limited to {limit} characters.", "threads")
            )
    elif threads_type:
        if len(caption) > limit:
            issues.append(Issue("THREADS_TEXT_TOO_LONG", f"Threads posts are limited to {limit} characters.", "threads"))
        if threads_type == ThreadsContentType.video.value and not videos:
            issues.append(Issue("THREADS_MEDIA_REQUIRED", "Threads video posts need a video.", "threads"))
        if threads_type == ThreadsContentType.image.value and not [url for url in media if url not in videos]:
            issues.append(Issue("THREADS_MEDIA_REQUIRED", "Threads image posts need an image.", "threads"))
        if threads_type == ThreadsContentType.text.value and not caption:
            issues.append(Issue("CONTENT_REQUIRED", "Threads text posts need a caption.", "threads"))

    return issues


def raise_for_issues(issues: list[Issue]) -> None:
    if issues:
        first = issues[0]
        raise ValidationError(first.message, code=first.code, platform=first.platform)


def draft_from_post(post: Post) -> PostDraft:
    content_types = {}
    for platform, value in (
        (Platform.instagram.value, post.instagram_content_type),
        (Platform.threads.value, post.threads_content_type),
        (Platform.youtube.value, post.youtube_content_type),
    ):
        if platform in (post.platforms or []) and value:
            content_types[platform] = value
    platforms, _ = normalize_platforms(post.platforms)
    crosspost = (post.post_metadata or {}).get("cross_post") or {}
    return PostDraft(
        caption=post.caption or "",
        media_urls=tuple(post.media_urls or []),
        platforms=platforms,
        content_types=content_types,
        thread_parts=tuple(post.threads_parts or []),
        scheduled_for=post.scheduled_for,
        crosspost_targets={key: bool(value) for key, value in (crosspost.get("targets") or {}).items()},
        crosspost_routing=dict(crosspost.get("routing") or {}),
    )
