from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from .config import PublishSettings
from .content import Issue, PostDraft, raise_for_issues, validate_draft
from .crosspost import CrossPostClient, build_crosspost_metadata
from .error_mapper import PLATFORM_LABELS, map_publish_error
from .errors import MissingConnectionError, PublishError, TokenExpiredError
from .events import log_event
from .interfaces import ConnectedAccountResolver, OwnerScope, PlatformAccount, PlatformPublisher, PublishReceipt
from .models import Platform
from .timeutil import as_utc, utc_now


class PlatformResultStatus(str, enum.Enum):
    succeeded = "succeeded"
    failed = "failed"
    skipped = "skipped"


class OutcomeKind(str, enum.Enum):
    all_succeeded = "all_succeeded"
    partial = "partial"
    all_failed = "all_failed"


@dataclass(frozen=True)
class PlatformResult:
    platform: str
    status: PlatformResultStatus
    receipt: PublishReceipt | None = None
    error: PublishError | None = None


@dataclass(frozen=True)
class PublishOutcome:
    results: tuple[PlatformResult, ...]

    @property
    def successes(self) -> list[PlatformResult]:
        return [result for result in self.results if result.status == PlatformResultStatus.succeeded]

    @property
    def failures(self) -> list[PlatformResult]:
        return [result for result in self.results if result.status == PlatformResultStatus.failed]

    @property
    def kind(self) -> OutcomeKind:
        if not self.failures and all(result.status == PlatformResultStatus.succeeded for result in self.results):
            return OutcomeKind.all_succeeded
        if self.successes:
            return OutcomeKind.partial
        return OutcomeKind.all_failed

    @property
    def first_error(self) -> PublishError | None:
        failures = self.failures
        return failures[0].error if failures else None

    def receipt_for(self, platform: str) -> PublishReceipt | None:
        for result in self.results:
            if result.platform == platform and result.receipt is not None:
                return result.receipt
        return None

    def external_ids(self) -> dict[str, str]:
        return {result.platform: result.receipt.external_id for result in self.successes if result.receipt}

    def partial_publish(self) -> dict[str, Any]:
        published: dict[str, Any] = dict(self.external_ids())
        for result in self.failures:
            if result.error is not None and result.error.partial_ids:
                published[result.platform] = result.error.partial_ids[0]
                published[f"{result.platform}_chain"] = list(result.error.partial_ids)
        return published


@dataclass(frozen=True)
class PublishPlan:
    scope: OwnerScope
    draft: PostDraft
    accounts: dict[str, PlatformAccount] = field(default_factory=dict)


class PublishOrchestrator:
    def __init__(
        self,
        *,
        publishers: Mapping[str, PlatformPublisher],
        accounts: ConnectedAccountResolver,
        settings: PublishSettings,
        crossposter: CrossPostClient | None = None,
    ) -> None:
        self._publishers = dict(publishers)
        self._accounts = accounts
        self._settings = settings
        self._crossposter = crossposter

    def account_error(self, platform: str, account: PlatformAccount | None, now: datetime) -> PublishError | None:
        label = PLATFORM_LABELS.get(platform, platform)
        prefix = platform.upper()
        if account is None:
            return MissingConnectionError(
                f"No connected {label} account. Connect {label} and try again.", platform=platform
            )
        expires_at = as_utc(account.token_expires_at)
        expired = expires_at is not None and expires_at <= now
        if platform == Platform.youtube.value:
            if account.refresh_token:
                return None
            if not account.access_token or expired:
                return TokenExpiredError(
                    f"{label} access token expired. Reconnect {label}.", code=f"{prefix}_TOKEN_EXPIRED", platform=platform
                )
            return None
        if not account.access_token:
            return MissingConnectionError(
                f"{label} access token is missing. Reconnect {label}.", code=f"{prefix}_TOKEN_MISSING", platform=platform
            )
        if expired:
            return TokenExpiredError(
                f"{label} access token expired. Reconnect {label}.", code=f"{prefix}_TOKEN_EXPIRED", platform=platform
            )
        return None

    def resolve_accounts(
        self, scope: OwnerScope, platforms: tuple[str, ...], now: datetime | None = None
    ) -> tuple[dict[str, PlatformAccount], list[PublishError]]:
        current = now or utc_now()
        accounts: dict[str, PlatformAccount] = {}
        errors: list[PublishError] = []
        for platform in platforms:
            account = self._accounts.get(scope, platform)
            error = self.account_error(platform, account, current)
            if error is not None:
                errors.append(error)
            elif account is not None:
                accounts[platform] = account
        return accounts, errors

    def account_issues(self, scope: OwnerScope, platforms: tuple[str, ...], now: datetime | None = None) -> list[Issue]:
        _, errors = self.resolve_accounts(scope, platforms, now)
        return [Issue(error.code, error.message, error.platform) for error in errors]

    def prepare(self, scope: OwnerScope, draft: PostDraft, now: datetime | None = None) -> PublishPlan:
        raise_for_issues(validate_draft(draft, self._settings))
        accounts, errors = self.resolve_accounts(scope, draft.platforms, now)
        if errors:
            raise errors[0]
        return PublishPlan(scope=scope, draft=draft, accounts=accounts)

    def execute(self, plan: PublishPlan, *, post_id: str | None = None) -> PublishOutcome:
        results: list[PlatformResult] = []
        halted = False
        for platform in plan.draft.platforms:
            if halted:
                results.append(PlatformResult(platform=platform, status=PlatformResultStatus.skipped))
                continue
            publisher = self._publishers.get(platform)
            try:
                if publisher is None:
                    raise MissingConnectionError(f"Publishing to {platform} is not available.", platform=platform)
                receipt = publisher.publish(plan.draft.content_for(platform), plan.accounts[platform])
            except Exception as exc:  # noqa: BLE001
                error = map_publish_error(exc, platform=platform)
                log_event(
                    "platform_publish_failed",
                    level="error",
                    post_id=post_id,
                    platform=platform,
                    code=error.code,
                    error=error.message,
                )
                results.append(PlatformResult(platform=platform, status=PlatformResultStatus.failed, error=error))
                halted = True
                continue
            log_event("platform_published", post_id=post_id, platform=platform, external_id=receipt.external_id)
            results.append(PlatformResult(platform=platform, status=PlatformResultStatus.succeeded, receipt=receipt))
        return PublishOutcome(results=tuple(results))

    def crosspost(
        self,
        scope: OwnerScope,
        draft: PostDraft,
        outcome: PublishOutcome,
        metadata: dict[str, Any] | None,
        *,
        post_id: str | None = None,
    ) -> dict[str, Any]:
        merged = build_crosspost_metadata(metadata, draft)
        threads_published = outcome.receipt_for(Platform.threads.value) is not None
        if self._crossposter is None or not draft.cross_post or not threads_published:
            return merged
        attempted_at = utc_now()
        try:
            results = self._crossposter.fan_out(scope, draft)
        except Exception as exc:  # noqa: BLE001
            log_event("crosspost_failed", level="warning", post_id=post_id, error=str(exc))
            return merged
        log_event(
            "crosspost_completed",
            post_id=post_id,
            results={target: result.status.value for target, result in results.items()},
        )
        return build_crosspost_metadata(merged, draft, results, attempted_at)
