from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from .config import PublishSettings
from .content import CROSSPOST_TARGETS, PostDraft
from .events import log_event
from .interfaces import OwnerScope
from .media import is_remote_url

CROSSPOST_METADATA_VERSION = 1
INTERNAL_CALLER = "social-publisher-api"
MAX_CROSSPOST_MEDIA = 4

TARGET_PATHS = {
    "x": "/api/internal/twitter/cross-post",
    "linkedin": "/api/internal/cross-post",
}


class CrossPostStatus(str, enum.Enum):
    disabled = "disabled"
    skipped = "skipped"
    posted = "posted"
    failed = "failed"
    timeout = "timeout"
    not_connected = "not_connected"


@dataclass(frozen=True)
class CrossPostTargetResult:
    enabled: bool
    status: CrossPostStatus
    external_id: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"enabled": self.enabled, "status": self.status.value, "external_id": self.external_id}
        if self.reason:
            payload["reason"] = self.reason
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "CrossPostTargetResult":
        try:
            status = CrossPostStatus(payload.get("status"))
        except ValueError:
            status = CrossPostStatus.failed
        return cls(
            enabled=bool(payload.get("enabled")),
            status=status,
            external_id=payload.get("external_id"),
            reason=payload.get("reason"),
        )


def crosspost_media(media_urls: tuple[str, ...], public_base_url: str | None) -> list[str]:
    resolved: list[str] = []
    for url in media_urls:
        if is_remote_url(url):
            resolved.append(url)
        elif public_base_url:
            resolved.append(f"{public_base_url.rstrip('/')}/{url.lstrip('/')}")
    return resolved[:MAX_CROSSPOST_MEDIA]


def build_crosspost_metadata(
    existing: dict[str, Any] | None,
    draft: PostDraft,
    results: dict[str, CrossPostTargetResult] | None = None,
    attempted_at: datetime | None = None,
) -> dict[str, Any]:
    metadata = dict(existing or {})
    if not draft.crosspost_targets:
        return metadata
    section = dict(metadata.get("cross_post") or {})
    section.update(
        version=CROSSPOST_METADATA_VERSION,
        source="threads",
        targets=dict(draft.crosspost_targets),
        routing=dict(draft.crosspost_routing),
    )
    if results is not None:
        section["last_attempted_at"] = attempted_at.isoformat() if attempted_at else None
        section["last_result"] = {target: result.to_dict() for target, result in results.items()}
    metadata["cross_post"] = section
    return metadata


class CrossPostClient:
    def __init__(self, settings: PublishSettings, http_client: httpx.Client | None = None) -> None:
        self._settings = settings
        self._timeout = settings.crosspost_timeout_ms / 1000
        self._http_client = http_client or httpx.Client(timeout=self._timeout)
        self._base_urls = {"x": settings.tweet_genie_url, "linkedin": settings.linkedin_genie_url}

    def fan_out(self, scope: OwnerScope, draft: PostDraft) -> dict[str, CrossPostTargetResult]:
        results: dict[str, CrossPostTargetResult] = {}
        for target in CROSSPOST_TARGETS:
            enabled = draft.crosspost_targets.get(target, False)
            if not enabled:
                results[target] = CrossPostTargetResult(enabled=False, status=CrossPostStatus.disabled)
            elif draft.is_threads_chain:
                results[target] = CrossPostTargetResult(
                    enabled=True, status=CrossPostStatus.skipped, reason="individual_only"
                )
            else:
                results[target] = self._post_target(target, scope, draft)
        return results

    def _headers(self, scope: OwnerScope) -> dict[str, str]:
        headers = {
            "x-internal-api-key": self._settings.internal_api_key or "",
            "x-internal-caller": INTERNAL_CALLER,
            "x-platform-user-id": scope.user_id,
        }
        if scope.team_id:
            headers["x-platform-team-id"] = scope.team_id
        return headers

    def _post_target(self, target: str, scope: OwnerScope, draft: PostDraft) -> CrossPostTargetResult:
        base_url = self._base_urls.get(target)
        if not base_url or not self._settings.internal_api_key:
            return CrossPostTargetResult(enabled=True, status=CrossPostStatus.skipped, reason="not_configured")

        payload: dict[str, Any] = {
            "content": draft.caption,
            "media": crosspost_media(draft.media_urls, self._settings.public_base_url),
            "mode": "single",
            "sourcePlatform": "threads",
        }
        routing = draft.crosspost_routing.get(target) or {}
        if isinstance(routing, dict) and routing.get("target_account_id"):
            payload["targetAccountId"] = str(routing["target_account_id"])

        try:
            response = self._http_client.post(
                f"{base_url.rstrip('/')}{TARGET_PATHS[target]}",
                json=payload,
                headers=self._headers(scope),
                timeout=self._timeout,
            )
        except httpx.TimeoutException:
            log_event("crosspost_target_timeout", level="warning", target=target, user_id=scope.user_id)
            return CrossPostTargetResult(enabled=True, status=CrossPostStatus.timeout)
        except httpx.RequestError as exc:
            log_event("crosspost_target_failed", level="warning", target=target, error=exc.__class__.__name__)
            return CrossPostTargetResult(enabled=True, status=CrossPostStatus.failed, reason="network_error")

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.status_code >= 400:
            code = str(body.get("code") or "").upper()
            if response.status_code in {404, 409} and "NOT_CONNECTED" in code:
                return CrossPostTargetResult(enabled=True, status=CrossPostStatus.not_connected)
            if response.status_code == 401 and "TOKEN_EXPIRED" in code:
                return CrossPostTargetResult(enabled=True, status=CrossPostStatus.not_connected)
            log_event(
                "crosspost_target_failed",
                level="warning",
                target=target,
                status_code=response.status_code,
                code=code or None,
            )
            reason = "too_long" if code.endswith("POST_TOO_LONG") else None
            return CrossPostTargetResult(enabled=True, status=CrossPostStatus.failed, reason=reason)

        external_id = body.get("tweetId") or body.get("linkedinPostId") or body.get("externalId")
        return CrossPostTargetResult(
            enabled=True,
            status=CrossPostStatus.posted,
            external_id=str(external_id) if external_id else None,
        )
