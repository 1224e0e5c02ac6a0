from __future__ import annotations

from .instagram import InstagramPublisher
from .threads import ThreadsDeleteResult, ThreadsPublisher, looks_like_threads_post_id
from .youtube import YoutubePublisher, build_video_description, build_video_title

__all__ = [
    "InstagramPublisher",
    "ThreadsDeleteResult",
    "ThreadsPublisher",
    "YoutubePublisher",
    "build_video_description",
    "build_video_title",
    "looks_like_threads_post_id",
]
