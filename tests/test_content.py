from __future__ import annotations

from datetime import datetime, timezone

from socialcore.config import PublishSettings
from socialcore.content import PostRequest, build_draft


def _codes(issues) -> list[str]:
    return [issue.code for issue in issues]


def test_platforms_are_deduplicated_and_ordered() -> None:
    draft, issues = build_draft(
        PostRequest(
            caption="hello",
            media_urls=["https://cdn.example.com/a.mp4"],
            platforms=["YouTube", "threads", "instagram", "threads"],
        ),
        PublishSettings(),
    )
    assert issues == []
    assert draft.platforms == ("instagram", "threads", "youtube")
    assert draft.content_types["threads"] == "video"


def test_unknown_and_empty_platforms_are_reported() -> None:
    _, issues = build_draft(PostRequest(caption="hello", platforms=["myspace"]), PublishSettings())
    assert "UNSUPPORTED_PLATFORM" in _codes(issues)
    assert "PLATFORMS_REQUIRED" in _codes(issues)


def test_long_threads_text_is_auto_split_into_chain() -> None:
    caption = "Sentence number one is here. " * 40
    draft, issues = build_draft(PostRequest(caption=caption, platforms=["threads"]), PublishSettings())
    assert issues == []
    assert draft.is_threads_chain
    assert len(draft.thread_parts) >= 2
    assert all(len(part) <= 500 for part in draft.thread_parts)


def test_explicit_thread_parts_win() -> None:
    draft, issues = build_draft(
        PostRequest(caption="ignored", platforms=["threads"], thread_parts=["one", " ", "two"]),
        PublishSettings(),
    )
    assert issues == []
    assert draft.thread_parts == ("one", "two")


def test_single_thread_part_is_too_short() -> None:
    _, issues = build_draft(
        PostRequest(caption="x", platforms=["threads"], thread_parts=["only one"]),
        PublishSettings(),
    )
    assert "THREADS_CHAIN_TOO_SHORT" in _codes(issues)


def test_platform_media_rules() -> None:
    _, issues = build_draft(PostRequest(caption="hello", platforms=["instagram", "youtube"]), PublishSettings())
    assert "INSTAGRAM_MEDIA_REQUIRED" in _codes(issues)
    assert "YOUTUBE_VIDEO_REQUIRED" in _codes(issues)

    _, issues = build_draft(
        PostRequest(
            caption="hello",
            media_urls=["https://cdn.example.com/a.jpg"],
            platforms=["instagram"],
            instagram_content_type="reel",
        ),
        PublishSettings(),
    )
    assert _codes(issues) == ["INSTAGRAM_REEL_VIDEO_REQUIRED"]


def test_multiple_media_default_to_carousel() -> None:
    draft, issues = build_draft(
        PostRequest(
            caption="hello",
            media_urls=["https://cdn.example.com/a.jpg", "https://cdn.example.com/b.jpg"],
            platforms=["instagram"],
        ),
        PublishSettings(),
    )
    assert issues == []
    assert draft.content_types["instagram"] == "carousel"


def test_scheduled_requires_time() -> None:
    _, issues = build_draft(PostRequest(caption="hi", platforms=["threads"], schedule=True), PublishSettings())
    assert _codes(issues) == ["SCHEDULED_FOR_REQUIRED"]

    when = datetime(2026, 11, 1, tzinfo=timezone.utc)
    draft, issues = build_draft(
        PostRequest(caption="hi", platforms=["threads"], schedule=True, scheduled_for=when), PublishSettings()
    )
    assert issues == []
    assert draft.scheduled_for == when
