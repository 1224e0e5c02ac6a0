from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}
LEASE_MARGIN = timedelta(minutes=5)

DEFAULT_CREDIT_COSTS = {
    "social_ai_caption_generation": Decimal("1.20"),
    "social_post_create": Decimal("1.00"),
    "social_post_schedule": Decimal("1.00"),
    "platform_extra": Decimal("0.50"),
    "cross_post_extra": Decimal("0.50"),
}


def _env_str(name: str, default: str | None = None) -> str | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _env_int(name: str, default: int, minimum: int | None = None) -> int:
    raw = os.getenv(name)
    try:
        value = int(raw) if raw is not None and raw.strip() else default
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if raw in TRUE_VALUES:
        return True
    if raw in FALSE_VALUES:
        return False
    return default


def _env_decimal(name: str, default: Decimal) -> Decimal:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = Decimal(raw.strip())
    except InvalidOperation:
        return default
    return value if value >= 0 else default


def _credit_costs_from_env() -> dict[str, Decimal]:
    return {
        operation: _env_decimal(f"CREDIT_COST_{operation.upper()}", cost)
        for operation, cost in DEFAULT_CREDIT_COSTS.items()
    }


@dataclass(frozen=True)
class PublishSettings:
    worker_enabled: bool = True
    worker_poll_ms: int = 15000
    worker_batch_size: int = 5
    publishing_stale_minutes: int = 30
    max_publish_attempts: int = 3

    threads_text_max_chars: int = 500
    threads_max_chain_posts: int = 30
    threads_auto_split_max_chars: int = 10000
    instagram_caption_max_chars: int = 2200
    youtube_description_max_chars: int = 5000

    instagram_graph_version: str = "v23.0"
    threads_api_version: str = "v1.0"
    public_base_url: str | None = None
    media_upload_root: str = "./uploads"

    google_client_id: str | None = None
    google_client_secret: str | None = None
    youtube_refresh_skew_seconds: int = 60
    youtube_upload_timeout_ms: int = 900000
    youtube_default_privacy: str = "public"

    credit_costs: dict[str, Decimal] = field(default_factory=lambda: dict(DEFAULT_CREDIT_COSTS))
    credit_use_platform_api: bool = False
    platform_api_url: str | None = None
    credit_fallback_to_local: bool = True
    team_credits_enabled: bool = True

    tweet_genie_url: str | None = None
    linkedin_genie_url: str | None = None
    internal_api_key: str | None = None
    crosspost_timeout_ms: int = 10000

    @property
    def publishing_lease(self) -> timedelta:
        # a single YouTube publish may run two full uploads (401 retry)
        longest_publish = timedelta(milliseconds=2 * self.youtube_upload_timeout_ms) + LEASE_MARGIN
        return max(timedelta(minutes=self.publishing_stale_minutes), longest_publish)

    @classmethod
    def from_env(cls) -> "PublishSettings":
        privacy = (_env_str("YOUTUBE_DEFAULT_PRIVACY_STATUS", "public") or "public").lower()
        if privacy not in {"public", "unlisted", "private"}:
            privacy = "public"
        public_base_url = _env_str("PUBLIC_BASE_URL")
        return cls(
            worker_enabled=_env_bool("SOCIAL_SCHEDULE_WORKER_ENABLED", True),
            worker_poll_ms=_env_int("SOCIAL_SCHEDULE_WORKER_POLL_MS", 15000, minimum=5000),
            worker_batch_size=_env_int("SOCIAL_SCHEDULE_WORKER_BATCH_SIZE", 5, minimum=1),
            publishing_stale_minutes=_env_int("SOCIAL_PUBLISHING_STALE_MINUTES", 30, minimum=5),
            max_publish_attempts=_env_int("SOCIAL_MAX_PUBLISH_ATTEMPTS", 3, minimum=1),
            threads_text_max_chars=_env_int("THREADS_TEXT_MAX_CHARS", 500, minimum=120),
            threads_max_chain_posts=_env_int("THREADS_MAX_CHAIN_POSTS", 30, minimum=2),
            threads_auto_split_max_chars=_env_int("THREADS_AUTO_SPLIT_MAX_CHARS", 10000, minimum=500),
            instagram_caption_max_chars=_env_int("INSTAGRAM_CAPTION_MAX_CHARS", 2200, minimum=1),
            youtube_description_max_chars=_env_int("YOUTUBE_DESCRIPTION_MAX_CHARS", 5000, minimum=1),
            instagram_graph_version=_env_str("INSTAGRAM_GRAPH_VERSION", "v23.0") or "v23.0",
            threads_api_version=_env_str("THREADS_API_VERSION", "v1.0") or "v1.0",
            public_base_url=public_base_url.rstrip("/") if public_base_url else None,
            media_upload_root=_env_str("MEDIA_UPLOAD_ROOT", "./uploads") or "./uploads",
            google_client_id=_env_str("GOOGLE_CLIENT_ID"),
            google_client_secret=_env_str("GOOGLE_CLIENT_SECRET"),
            youtube_refresh_skew_seconds=_env_int("YOUTUBE_TOKEN_REFRESH_SKEW_SECONDS", 60, minimum=30),
            youtube_upload_timeout_ms=_env_int("YOUTUBE_UPLOAD_TIMEOUT_MS", 900000, minimum=30000),
            youtube_default_privacy=privacy,
            credit_costs=_credit_costs_from_env(),
            credit_use_platform_api=_env_bool("CREDIT_USE_PLATFORM_API", False),
            platform_api_url=_env_str("PLATFORM_API_URL"),
            credit_fallback_to_local=_env_bool("CREDIT_FALLBACK_TO_LOCAL_DB", True),
            team_credits_enabled=_env_bool("ENABLE_TEAM_CREDITS", True),
            tweet_genie_url=_env_str("TWEET_GENIE_URL"),
            linkedin_genie_url=_env_str("LINKEDIN_GENIE_URL"),
            internal_api_key=_env_str("INTERNAL_API_KEY"),
            crosspost_timeout_ms=_env_int("CROSSPOST_TIMEOUT_MS", 10000, minimum=1000),
        )
