from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from .config import PublishSettings
from .content import Issue, PostDraft, PostRequest, build_draft, raise_for_issues
from .crosspost import build_crosspost_metadata
from .db.retry import run_with_db_retry
from .error_mapper import map_publish_error
from .errors import (
    InsufficientCreditsError,
    InvalidPostStateError,
    MissingConnectionError,
    PostNotFoundError,
    PublishFailure,
    ResourceNotFoundError,
    ValidationError,
)
from .events import log_event
from .interfaces import OwnerScope
from .ledger import ZERO, CreditLedger
from .models import Platform, Post, PostStatus
from .orchestrator import OutcomeKind, PublishOrchestrator, PublishOutcome
from .platforms.threads import ThreadsPublisher, looks_like_threads_post_id
from .timeutil import utc_now

RESCHEDULABLE_STATUSES = {PostStatus.draft, PostStatus.scheduled, PostStatus.failed}
SCHEDULE_LIST_STATUSES = {
    "scheduled": (PostStatus.scheduled,),
    "failed": (PostStatus.failed,),
    "publishing": (PostStatus.publishing,),
    "all": (PostStatus.scheduled, PostStatus.failed, PostStatus.publishing),
}


@dataclass(frozen=True)
class PreflightReport:
    ok: bool
    issues: list[Issue]
    cost: Decimal
    available: Decimal | None
    platforms: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "issues": [issue.to_dict() for issue in self.issues],
            "cost": float(self.cost),
            "available": float(self.available) if self.available is not None else None,
            "platforms": list(self.platforms),
        }


@dataclass(frozen=True)
class DeleteResult:
    post_id: str
    already_deleted: bool = False
    remote_deleted_ids: list[str] = field(default_factory=list)


def threads_ids_for(post: Post) -> list[str]:
    candidates = [post.threads_post_id, *(post.threads_sequence or [])]
    ids: list[str] = []
    for candidate in candidates:
        value = str(candidate or "").strip()
        if looks_like_threads_post_id(value) and value not in ids:
            ids.append(value)
    return ids


def _remote_deleted_ids(post: Post) -> list[str]:
    remote = (post.post_metadata or {}).get("remote_deletion") or {}
    return list((remote.get("threads") or {}).get("deleted_ids") or [])


def apply_outcome(post: Post, draft: PostDraft, outcome: PublishOutcome) -> None:
    instagram = outcome.receipt_for(Platform.instagram.value)
    threads = outcome.receipt_for(Platform.threads.value)
    youtube = outcome.receipt_for(Platform.youtube.value)
    if instagram is not None:
        post.instagram_post_id = instagram.external_id
    if youtube is not None:
        post.youtube_video_id = youtube.external_id
    if threads is not None:
        post.threads_post_id = threads.external_id
        if draft.is_threads_chain:
            post.threads_sequence = list(threads.chain_ids)


class PostService:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        orchestrator: PublishOrchestrator,
        ledger: CreditLedger,
        settings: PublishSettings,
        threads: ThreadsPublisher | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._orchestrator = orchestrator
        self._ledger = ledger
        self._settings = settings
        self._threads = threads
        self._retry_kwargs = {"sleep": sleep} if sleep is not None else {}

    def _operation(self, request: PostRequest) -> str:
        return "social_post_schedule" if request.schedule else "social_post_create"

    def _cost(self, request: PostRequest, draft: PostDraft) -> Decimal:
        return self._ledger.calculate_cost(
            self._operation(request), platform_count=len(draft.platforms), cross_post=draft.cross_post
        )

    def preflight(
        self, scope: OwnerScope, request: PostRequest, *, user_token: str | None = None, now: datetime | None = None
    ) -> PreflightReport:
        draft, issues = build_draft(request, self._settings)
        if draft.platforms:
            issues.extend(self._orchestrator.account_issues(scope, draft.platforms, now))
        cost = self._cost(request, draft)
        check = self._ledger.check_credits(scope, cost, user_token=user_token)
        if not check.success:
            issues.append(
                Issue("INSUFFICIENT_CREDITS", f"This post needs {check.required} credits; {check.available} available.")
            )
        return PreflightReport(
            ok=not issues,
            issues=issues,
            cost=cost,
            available=check.available if check.source != "none" else None,
            platforms=draft.platforms,
        )

    def create_post(
        self, scope: OwnerScope, request: PostRequest, *, user_token: str | None = None, now: datetime | None = None
    ) -> Post:
        current = now or utc_now()
        draft, issues = build_draft(request, self._settings)
        raise_for_issues(issues)
        plan = self._orchestrator.prepare(scope, draft, current)

        cost = self._cost(request, draft)
        check = self._ledger.check_credits(scope, cost, user_token=user_token)
        if not check.success:
            raise InsufficientCreditsError(required=check.required, available=check.available)
        operation = self._operation(request)
        deduction = self._ledger.deduct_credits(
            scope,
            cost,
            operation,
            description=f"Social post ({', '.join(draft.platforms)})",
            user_token=user_token,
        )
        if not deduction.success:
            raise InsufficientCreditsError(
                required=deduction.required or cost, available=deduction.remaining if deduction.remaining is not None else ZERO
            )

        post_id = str(uuid.uuid4())
        try:
            if request.schedule:
                post = self._persist(scope, draft, post_id, status=PostStatus.scheduled, metadata=None)
                log_event("post_scheduled", post_id=post_id, scheduled_for=draft.scheduled_for, platforms=draft.platforms)
                return post

            outcome = self._orchestrator.execute(plan, post_id=post_id)
            if outcome.kind != OutcomeKind.all_succeeded:
                partial = outcome.partial_publish()
                if partial:
                    log_event(
                        "publish_partial_discarded",
                        level="warning",
                        post_id=post_id,
                        published=partial,
                        failed=[result.platform for result in outcome.failures],
                    )
                raise outcome.first_error or PublishFailure("Social publish failed.")

            metadata = self._orchestrator.crosspost(scope, draft, outcome, None, post_id=post_id)
            post = self._persist(
                scope, draft, post_id, status=PostStatus.posted, metadata=metadata, outcome=outcome, posted_at=current
            )
            log_event("post_published", post_id=post_id, external_ids=outcome.external_ids())
            return post
        except Exception as exc:
            self._ledger.refund_credits(
                scope,
                deduction.amount,
                reason=f"post {post_id} failed",
                user_token=user_token,
                source=deduction.source,
            )
            mapped = map_publish_error(exc)
            log_event("post_create_failed", level="error", post_id=post_id, code=mapped.code, platform=mapped.platform)
            if mapped is exc:
                raise
            raise mapped from exc

    def _persist(
        self,
        scope: OwnerScope,
        draft: PostDraft,
        post_id: str,
        *,
        status: PostStatus,
        metadata: dict[str, Any] | None,
        outcome: PublishOutcome | None = None,
        posted_at: datetime | None = None,
    ) -> Post:
        post = Post(
            id=post_id,
            user_id=scope.user_id,
            team_id=scope.team_id,
            caption=draft.caption,
            media_urls=list(draft.media_urls),
            platforms=list(draft.platforms),
            cross_post=draft.cross_post,
            instagram_content_type=draft.content_types.get(Platform.instagram.value),
            threads_content_type=draft.content_types.get(Platform.threads.value),
            youtube_content_type=draft.content_types.get(Platform.youtube.value),
            status=status,
            scheduled_for=draft.scheduled_for if status == PostStatus.scheduled else None,
            posted_at=posted_at,
            threads_parts=list(draft.thread_parts) if draft.is_threads_chain else None,
            post_metadata=metadata if metadata is not None else build_crosspost_metadata(None, draft),
            created_at=utc_now(),
        )
        if outcome is not None:
            apply_outcome(post, draft, outcome)
        with self._session_factory() as session:
            session.add(post)
            session.commit()
            session.refresh(post)
            return post

    def _scoped(self, scope: OwnerScope, query: Select) -> Select:
        if scope.is_team:
            return query.where(Post.team_id == scope.team_id)
        return query.where(Post.user_id == scope.user_id, Post.team_id.is_(None))

    def _load(self, session: Session, scope: OwnerScope, post_id: str) -> Post:
        post = session.scalar(self._scoped(scope, select(Post).where(Post.id == post_id)))
        if post is None:
            raise PostNotFoundError("Post not found.")
        return post

    def get_post(self, scope: OwnerScope, post_id: str) -> Post:
        with self._session_factory() as session:
            return self._load(session, scope, post_id)

    def cancel_post(self, scope: OwnerScope, post_id: str) -> Post:
        with self._session_factory() as session:
            post = self._load(session, scope, post_id)
            if post.status == PostStatus.posted:
                raise InvalidPostStateError("Published posts cannot be cancelled.", code="POST_NOT_CANCELLABLE")
            if post.status == PostStatus.deleted:
                return post
            post.status = PostStatus.deleted
            session.commit()
            session.refresh(post)
            log_event("post_cancelled", post_id=post_id)
            return post

    def reschedule_post(self, scope: OwnerScope, post_id: str, scheduled_for: datetime | None) -> Post:
        if scheduled_for is None:
            raise ValidationError("A new scheduled time is required.", code="SCHEDULED_FOR_REQUIRED")
        return self._requeue(scope, post_id, scheduled_for, code="POST_NOT_RESCHEDULABLE", event="post_rescheduled")

    def retry_post(
        self, scope: OwnerScope, post_id: str, scheduled_for: datetime | None = None, *, now: datetime | None = None
    ) -> Post:
        return self._requeue(
            scope, post_id, scheduled_for or now or utc_now(), code="POST_NOT_RETRYABLE", event="post_retry_queued"
        )

    def _requeue(self, scope: OwnerScope, post_id: str, scheduled_for: datetime, *, code: str, event: str) -> Post:
        with self._session_factory() as session:
            post = self._load(session, scope, post_id)
            if post.status not in RESCHEDULABLE_STATUSES:
                raise InvalidPostStateError(f"Posts that are {post.status.value} cannot be scheduled again.", code=code)
            post.status = PostStatus.scheduled
            post.scheduled_for = scheduled_for
            post.claimed_at = None
            post.publish_attempts = 0
            post.last_error = None
            session.commit()
            session.refresh(post)
            log_event(event, post_id=post_id, scheduled_for=scheduled_for)
            return post

    def list_scheduled(self, scope: OwnerScope, *, status: str = "scheduled", limit: int = 100) -> list[Post]:
        statuses = SCHEDULE_LIST_STATUSES.get(status)
        if statuses is None:
            raise ValidationError(f"Unknown schedule status '{status}'.", code="INVALID_STATUS_FILTER")
        query = self._scoped(scope, select(Post).where(Post.status.in_(statuses)))
        query = query.order_by(Post.scheduled_for.asc()).limit(limit)
        with self._session_factory() as session:
            return list(session.scalars(query))

    def list_history(
        self,
        scope: OwnerScope,
        *,
        status: str | None = None,
        platform: str | None = None,
        days: int | None = None,
        limit: int = 50,
        include_deleted: bool = False,
        now: datetime | None = None,
    ) -> list[Post]:
        query = self._scoped(scope, select(Post))
        if status:
            try:
                query = query.where(Post.status == PostStatus(status))
            except ValueError as exc:
                raise ValidationError(f"Unknown status '{status}'.", code="INVALID_STATUS_FILTER") from exc
        elif not include_deleted:
            query = query.where(Post.status != PostStatus.deleted)
        if days:
            query = query.where(Post.created_at >= (now or utc_now()) - timedelta(days=days))
        query = query.order_by(Post.created_at.desc())
        with self._session_factory() as session:
            posts = list(session.scalars(query))
        if platform:
            posts = [post for post in posts if platform.lower() in (post.platforms or [])]
        return posts[:limit]

    def delete_post(self, scope: OwnerScope, post_id: str) -> DeleteResult:
        post = run_with_db_retry(lambda: self.get_post(scope, post_id), label="delete_lookup", **self._retry_kwargs)
        targets_threads = Platform.threads.value in (post.platforms or [])
        known_ids = threads_ids_for(post) if targets_threads else []
        already_removed = _remote_deleted_ids(post)
        unresolved = [value for value in known_ids if value not in already_removed]

        if post.status == PostStatus.deleted and not unresolved:
            return DeleteResult(post_id=post_id, already_deleted=True)

        remote_deleted: list[str] = []
        if targets_threads and (post.status == PostStatus.posted or (post.status == PostStatus.deleted and unresolved)):
            if not known_ids:
                raise ResourceNotFoundError(
                    "Threads post id is missing; the post cannot be removed from Threads.",
                    code="THREADS_DELETE_ID_MISSING",
                    platform=Platform.threads.value,
                )
            remote_deleted = self._delete_remote_threads(scope, post_id, unresolved, already_removed)

        def _mark_deleted() -> None:
            with self._session_factory() as session:
                row = self._load(session, scope, post_id)
                row.status = PostStatus.deleted
                session.commit()

        run_with_db_retry(_mark_deleted, label="delete_mark", **self._retry_kwargs)
        log_event("post_deleted", post_id=post_id, remote_deleted=len(remote_deleted))
        return DeleteResult(
            post_id=post_id, already_deleted=post.status == PostStatus.deleted, remote_deleted_ids=remote_deleted
        )

    def _delete_remote_threads(
        self, scope: OwnerScope, post_id: str, unresolved: list[str], already_removed: list[str]
    ) -> list[str]:
        accounts, _ = self._orchestrator.resolve_accounts(scope, (Platform.threads.value,))
        account = accounts.get(Platform.threads.value)
        if account is None or self._threads is None:
            raise MissingConnectionError(
                "Threads account is not connected; reconnect Threads to delete this post.",
                code="THREADS_TOKEN_MISSING",
                platform=Platform.threads.value,
            )
        result = self._threads.delete_posts(account, unresolved)

        def _record() -> None:
            with self._session_factory() as session:
                row = self._load(session, scope, post_id)
                metadata = dict(row.post_metadata or {})
                remote = dict(metadata.get("remote_deletion") or {})
                remote["threads"] = {
                    "deleted_ids": already_removed + [value for value in result.deleted_ids if value not in already_removed],
                    "deleted_at": utc_now().isoformat(),
                }
                metadata["remote_deletion"] = remote
                row.post_metadata = metadata
                session.commit()

        if result.deleted_ids:
            run_with_db_retry(_record, label="delete_record_remote", **self._retry_kwargs)
        if not result.ok:
            log_event("threads_delete_failed", level="error", post_id=post_id, failed=result.failed)
            raise PublishFailure(
                "Some Threads posts could not be deleted. Try again.",
                code="THREADS_DELETE_FAILED",
                platform=Platform.threads.value,
            )
        return result.deleted_ids
