from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import Update, or_, select, update
from sqlalchemy.orm import Session

from socialcore.content import draft_from_post
from socialcore.db.retry import run_with_db_retry
from socialcore.error_mapper import map_publish_error
from socialcore.errors import DatabaseUnavailableError, PublishFailure
from socialcore.events import log_event
from socialcore.interfaces import OwnerScope
from socialcore.models import Platform, Post, PostStatus
from socialcore.orchestrator import OutcomeKind, PublishOrchestrator, PublishOutcome

LEASE_EXPIRED = "PUBLISH_LEASE_EXPIRED"
FINALIZE_FAILED = "PUBLISH_FINALIZE_FAILED"


def due_posts_claim_statement(
    current: datetime,
    *,
    batch_size: int,
    for_update_skip_locked: bool,
    claim_token: str | None = None,
) -> Update:
    due_ids = (
        select(Post.id)
        .where(
            Post.status == PostStatus.scheduled,
            Post.scheduled_for.is_not(None),
            Post.scheduled_for <= current,
        )
        .order_by(Post.scheduled_for.asc(), Post.id.asc())
        .limit(batch_size)
    )
    if for_update_skip_locked:
        due_ids = due_ids.with_for_update(skip_locked=True)
    return (
        update(Post)
        .where(Post.id.in_(due_ids), Post.status == PostStatus.scheduled)
        .values(
            status=PostStatus.publishing,
            claimed_at=current,
            claim_token=claim_token,
            publish_attempts=Post.publish_attempts + 1,
            updated_at=current,
        )
        .returning(Post.id)
        .execution_options(synchronize_session=False)
    )


def claim_due_posts(
    session: Session, current: datetime, *, batch_size: int, claim_token: str | None = None
) -> list[str]:
    use_skip_locked = session.get_bind().dialect.name == "postgresql"
    stmt = due_posts_claim_statement(
        current, batch_size=batch_size, for_update_skip_locked=use_skip_locked, claim_token=claim_token
    )
    claimed = set(session.execute(stmt).scalars().all())
    if not claimed:
        return []
    ordered = session.scalars(
        select(Post.id).where(Post.id.in_(claimed)).order_by(Post.scheduled_for.asc(), Post.id.asc())
    ).all()
    return list(ordered)


def renew_lease(session: Session, post_id: str, claim_token: str, current: datetime) -> bool:
    """Extend the claim on a post this worker still owns."""
    result = session.execute(
        update(Post)
        .where(Post.id == post_id, Post.status == PostStatus.publishing, Post.claim_token == claim_token)
        .values(claimed_at=current)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


def requeue_stale_publishing(
    session: Session,
    current: datetime,
    *,
    stale_after: timedelta,
    max_attempts: int,
) -> dict[str, int]:
    cutoff = current - stale_after
    stale = (
        Post.status == PostStatus.publishing,
        or_(Post.claimed_at.is_(None), Post.claimed_at < cutoff),
    )
    expired = session.execute(
        update(Post)
        .where(*stale, Post.publish_attempts >= max_attempts)
        .values(
            status=PostStatus.failed, last_error=LEASE_EXPIRED, claimed_at=None, claim_token=None, updated_at=current
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    requeued = session.execute(
        update(Post)
        .where(*stale)
        .values(status=PostStatus.scheduled, claimed_at=None, claim_token=None, updated_at=current)
        .execution_options(synchronize_session=False)
    ).rowcount
    if expired or requeued:
        log_event("stale_publishing_swept", level="warning", requeued=requeued, expired=expired)
    return {"requeued": requeued or 0, "expired": expired or 0}


def _finalize(session: Session, post_id: str, values: dict[str, Any], claim_token: str | None) -> bool:
    conditions = [Post.id == post_id, Post.status == PostStatus.publishing]
    if claim_token is not None:
        conditions.append(Post.claim_token == claim_token)
    result = session.execute(
        update(Post)
        .where(*conditions)
        .values(claimed_at=None, claim_token=None, **values)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


def mark_posted(
    session: Session,
    post_id: str,
    outcome: PublishOutcome,
    metadata: dict[str, Any],
    current: datetime,
    *,
    chain: bool,
    claim_token: str | None = None,
) -> bool:
    values: dict[str, Any] = {
        "status": PostStatus.posted,
        "posted_at": current,
        "last_error": None,
        "post_metadata": metadata,
        "updated_at": current,
    }
    columns = {
        Platform.instagram.value: "instagram_post_id",
        Platform.threads.value: "threads_post_id",
        Platform.youtube.value: "youtube_video_id",
    }
    for platform, column in columns.items():
        receipt = outcome.receipt_for(platform)
        if receipt is not None:
            values[column] = receipt.external_id
    threads_receipt = outcome.receipt_for(Platform.threads.value)
    if chain and threads_receipt is not None:
        values["threads_sequence"] = list(threads_receipt.chain_ids)
    return _finalize(session, post_id, values, claim_token)


def mark_failed(
    session: Session,
    post_id: str,
    error_code: str,
    current: datetime,
    *,
    metadata: dict[str, Any] | None = None,
    claim_token: str | None = None,
) -> bool:
    values: dict[str, Any] = {
        "status": PostStatus.failed,
        "last_error": error_code,
        "updated_at": current,
    }
    if metadata is not None:
        values["post_metadata"] = metadata
    return _finalize(session, post_id, values, claim_token)


def _log_posting_error(post_id: str, error_payload: dict[str, Any]) -> None:
    log_event("posting_job_error", level="error", post_id=post_id, error=error_payload)


def process_claimed_post(
    session_factory: Callable[[], Session],
    orchestrator: PublishOrchestrator,
    post_id: str,
    current: datetime,
    *,
    claim_token: str | None = None,
    sleep: Callable[[float], None] | None = None,
) -> dict[str, Any]:
    retry_kwargs = {"sleep": sleep} if sleep is not None else {}

    def _load() -> tuple[str | None, Any]:
        with session_factory() as session:
            if claim_token is not None and not renew_lease(session, post_id, claim_token, current):
                session.rollback()
                return "lease_lost", None
            post = session.get(Post, post_id)
            if post is None:
                return "post_missing", None
            loaded = (
                OwnerScope(user_id=post.user_id, team_id=post.team_id),
                draft_from_post(post),
                dict(post.post_metadata or {}),
            )
            session.commit()
            return None, loaded

    skip_reason, loaded = run_with_db_retry(_load, label="load_claimed_post", **retry_kwargs)
    if skip_reason is not None:
        log_event("posting_job_skipped", level="warning", post_id=post_id, reason=skip_reason)
        return {"post_id": post_id, "status": "skipped", "reason": skip_reason}
    scope, draft, metadata = loaded

    def _fail(code: str) -> bool:
        with session_factory() as session:
            finalized = mark_failed(session, post_id, code, current, metadata=metadata, claim_token=claim_token)
            session.commit()
            return finalized

    outcome: PublishOutcome | None = None
    try:
        plan = orchestrator.prepare(scope, draft, current)
        outcome = orchestrator.execute(plan, post_id=post_id)
        if outcome.kind != OutcomeKind.all_succeeded:
            raise outcome.first_error or PublishFailure("Social publish failed.")
        metadata = orchestrator.crosspost(scope, draft, outcome, metadata, post_id=post_id)
    except Exception as exc:  # noqa: BLE001
        error = map_publish_error(exc)
        _log_posting_error(post_id, {"code": error.code, "platform": error.platform, "message": error.message})
        partial = outcome.partial_publish() if outcome is not None else {}
        if partial:
            metadata["partial_publish"] = partial
        run_with_db_retry(lambda: _fail(error.code), label="finalize_failed", **retry_kwargs)
        return {"post_id": post_id, "status": "failed", "code": error.code, "platform": error.platform}

    def _posted() -> bool:
        with session_factory() as session:
            finalized = mark_posted(
                session, post_id, outcome, metadata, current, chain=draft.is_threads_chain, claim_token=claim_token
            )
            session.commit()
            return finalized

    try:
        finalized = run_with_db_retry(_posted, label="finalize_posted", **retry_kwargs)
    except DatabaseUnavailableError:
        # the row must not go back to the queue once the platforms have the post
        log_event(
            "posting_job_finalize_failed",
            level="error",
            post_id=post_id,
            external_ids=outcome.external_ids(),
        )
        metadata["partial_publish"] = outcome.partial_publish()
        run_with_db_retry(lambda: _fail(FINALIZE_FAILED), label="finalize_failed", **retry_kwargs)
        return {"post_id": post_id, "status": "failed", "code": FINALIZE_FAILED, "platform": None}
    if not finalized:
        log_event("posting_job_finalize_skipped", level="warning", post_id=post_id)
        return {"post_id": post_id, "status": "skipped", "reason": "post_no_longer_publishing"}
    return {"post_id": post_id, "status": "posted", "external_ids": outcome.external_ids()}
