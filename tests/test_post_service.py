from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from socialcore.accounts import SqlConnectedAccountResolver
from socialcore.config import PublishSettings
from socialcore.content import PostRequest
from socialcore.crosspost import CrossPostClient
from socialcore.db import Base
from socialcore.errors import (
    InsufficientCreditsError,
    InvalidPostStateError,
    MissingConnectionError,
    PostNotFoundError,
    ProviderError,
    PublishFailure,
    TokenExpiredError,
    ValidationError,
)
from socialcore.interfaces import OwnerScope, PublishReceipt
from socialcore.ledger import CreditLedger, DelegatedCreditLedger, LocalCreditLedger
from socialcore.models import (
    ConnectedAccount,
    CreditBalance,
    CreditTransaction,
    CreditTransactionType,
    Platform,
    Post,
    PostStatus,
)
from socialcore.orchestrator import PublishOrchestrator
from socialcore.platforms.threads import ThreadsDeleteResult
from socialcore.posts import PostService

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
SCOPE = OwnerScope(user_id="u1")


def _setup_db():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def _seed(session_factory, *platforms: Platform, balance: str = "10.00") -> None:
    with session_factory() as session:
        session.add(CreditBalance(user_id="u1", credits_remaining=Decimal(balance)))
        for platform in platforms:
            session.add(
                ConnectedAccount(
                    user_id="u1", platform=platform, account_id=f"{platform.value}-acct", access_token="token-1"
                )
            )
        session.commit()


def _seed_post(session_factory, **overrides) -> str:
    values = {
        "user_id": "u1",
        "caption": "hello",
        "platforms": ["threads"],
        "threads_content_type": "text",
        "status": PostStatus.scheduled,
        "scheduled_for": NOW + timedelta(hours=1),
        "post_metadata": {},
        "created_at": NOW,
    }
    values.update(overrides)
    with session_factory() as session:
        post = Post(**values)
        session.add(post)
        session.commit()
        return post.id


class FakePublisher:
    def __init__(self, platform: str, *, error: Exception | None = None) -> None:
        self.platform = platform
        self.error = error
        self.calls: list[tuple[object, object]] = []

    def publish(self, content, account) -> PublishReceipt:
        self.calls.append((content, account))
        if self.error is not None:
            raise self.error
        return PublishReceipt(external_id=f"1800000{len(self.calls)}")


class FakeThreadsDeleter:
    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.calls: list[list[str]] = []

    def delete_posts(self, account, post_ids: list[str]) -> ThreadsDeleteResult:
        self.calls.append(list(post_ids))
        result = ThreadsDeleteResult()
        for post_id in post_ids:
            if post_id in self.failing:
                result.failed[post_id] = "boom"
            else:
                result.deleted_ids.append(post_id)
        return result


def _service(session_factory, *publishers, threads=None, settings=None, crossposter=None) -> PostService:
    settings = settings or PublishSettings()
    orchestrator = PublishOrchestrator(
        publishers={publisher.platform: publisher for publisher in publishers},
        accounts=SqlConnectedAccountResolver(session_factory),
        settings=settings,
        crossposter=crossposter,
    )
    ledger = CreditLedger(LocalCreditLedger(session_factory), costs=dict(settings.credit_costs))
    return PostService(
        session_factory=session_factory,
        orchestrator=orchestrator,
        ledger=ledger,
        settings=settings,
        threads=threads,
        sleep=lambda _: None,
    )


def _balance(session_factory) -> Decimal:
    with session_factory() as session:
        return session.scalar(select(CreditBalance.credits_remaining).where(CreditBalance.user_id == "u1"))


def test_immediate_post_publishes_and_charges_credits() -> None:
    session_factory = _setup_db()
    _seed(session_factory, Platform.threads)
    threads = FakePublisher("threads")
    service = _service(session_factory, threads)

    post = service.create_post(SCOPE, PostRequest(caption="hello", platforms=["threads"]), now=NOW)

    assert post.status == PostStatus.posted
    assert post.threads_post_id == "18000001"
    assert post.posted_at is not None
    assert len(threads.calls) == 1
    assert _balance(session_factory) == Decimal("9.00")


def test_partial_publish_refunds_and_persists_nothing() -> None:
    session_factory = _setup_db()
    _seed(session_factory, Platform.instagram, Platform.threads)
    instagram = FakePublisher("instagram")
    threads = FakePublisher("threads", error=ProviderError("Error validating access token: Session has expired"))
    service = _service(session_factory, instagram, threads)

    with pytest.raises(TokenExpiredError) as exc_info:
        service.create_post(
            SCOPE,
            PostRequest(
                caption="launch day",
                media_urls=["https://cdn.example.com/a.jpg"],
                platforms=["threads", "instagram"],
            ),
            now=NOW,
        )

    assert exc_info.value.code == "THREADS_TOKEN_EXPIRED"
    assert exc_info.value.platform == "threads"
    assert len(instagram.calls) == 1
    assert _balance(session_factory) == Decimal("10.00")
    with session_factory() as session:
        assert session.scalars(select(Post)).all() == []
        entry_types = sorted(entry.type.value for entry in session.scalars(select(CreditTransaction)))
    assert entry_types == [CreditTransactionType.refund.value, CreditTransactionType.usage.value]


def test_scheduled_post_is_stored_without_publishing() -> None:
    session_factory = _setup_db()
    _seed(session_factory, Platform.threads)
    threads = FakePublisher("threads")
    service = _service(session_factory, threads)
    when = NOW + timedelta(hours=2)

    post = service.create_post(
        SCOPE, PostRequest(caption="later", platforms=["threads"], schedule=True, scheduled_for=when), now=NOW
    )

    assert post.status == PostStatus.scheduled
    assert threads.calls == []
    assert _balance(session_factory) == Decimal("9.00")


def test_long_threads_caption_is_stored_as_chain() -> None:
    session_factory = _setup_db()
    _seed(session_factory, Platform.threads)
    service = _service(session_factory, FakePublisher("threads"))

    post = service.create_post(
        SCOPE,
        PostRequest(
            caption="A sentence worth reading. " * 40,
            platforms=["threads"],
            schedule=True,
            scheduled_for=NOW + timedelta(hours=1),
        ),
        now=NOW,
    )

    assert post.threads_content_type == "thread"
    assert len(post.threads_parts) >= 2
    assert all(len(part) <= 500 for part in post.threads_parts)


def test_missing_connection_fails_before_charging() -> None:
    session_factory = _setup_db()
    _seed(session_factory)
    service = _service(session_factory, FakePublisher("threads"))

    with pytest.raises(MissingConnectionError) as exc_info:
        service.create_post(SCOPE, PostRequest(caption="hello", platforms=["threads"]), now=NOW)

    assert exc_info.value.platform == "threads"
    assert _balance(session_factory) == Decimal("10.00")
    with session_factory() as session:
        assert session.scalars(select(CreditTransaction)).all() == []


def test_insufficient_credits_rejects_post() -> None:
    session_factory = _setup_db()
    _seed(session_factory, Platform.threads, balance="0.50")
    threads = FakePublisher("threads")
    service = _service(session_factory, threads)

    with pytest.raises(InsufficientCreditsError) as exc_info:
        service.create_post(SCOPE, PostRequest(caption="hello", platforms=["threads"]), now=NOW)

    assert exc_info.value.status == 402
    assert exc_info.value.to_dict()["creditsRequired"] == 1.0
    assert exc_info.value.to_dict()["creditsAvailable"] == 0.5
    assert threads.calls == []


def test_validation_error_short_circuits() -> None:
    session_factory = _setup_db()
    _seed(session_factory, Platform.threads)
    service = _service(session_factory, FakePublisher("threads"))

    with pytest.raises(ValidationError) as exc_info:
        service.create_post(SCOPE, PostRequest(caption="hello", platforms=[]), now=NOW)

    assert exc_info.value.code == "PLATFORMS_REQUIRED"
    assert _balance(session_factory) == Decimal("10.00")


def test_preflight_reports_issues_and_cost() -> None:
    session_factory = _setup_db()
    _seed(session_factory, Platform.threads)
    service = _service(session_factory, FakePublisher("threads"))

    report = service.preflight(
        SCOPE,
        PostRequest(caption="hello", media_urls=["https://cdn.example.com/a.jpg"], platforms=["threads", "instagram"]),
        now=NOW,
    )

    assert not report.ok
    assert [issue.code for issue in report.issues] == ["MISSING_CONNECTED_ACCOUNT"]
    assert report.cost == Decimal("1.50")
    assert report.available == Decimal("10.00")
    assert report.to_dict()["platforms"] == ["instagram", "threads"]


def test_crosspost_results_are_recorded_in_metadata() -> None:
    session_factory = _setup_db()
    _seed(session_factory, Platform.threads)
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"tweetId": "x-123"})

    settings = PublishSettings(tweet_genie_url="https://tweets.example.com", internal_api_key="secret")
    crossposter = CrossPostClient(settings, http_client=httpx.Client(transport=httpx.MockTransport(handler)))
    service = _service(session_factory, FakePublisher("threads"), settings=settings, crossposter=crossposter)

    post = service.create_post(
        SCOPE,
        PostRequest(caption="hello", platforms=["threads"], crosspost_targets={"x": True, "linkedin": False}),
        now=NOW,
    )

    assert requests[0].url.path == "/api/internal/twitter/cross-post"
    assert requests[0].headers["x-internal-api-key"] == "secret"
    section = post.post_metadata["cross_post"]
    assert section["last_result"]["x"] == {"enabled": True, "status": "posted", "external_id": "x-123"}
    assert section["last_result"]["linkedin"]["status"] == "disabled"
    assert post.cross_post is True
    assert _balance(session_factory) == Decimal("8.50")


def test_cancel_rules() -> None:
    session_factory = _setup_db()
    service = _service(session_factory)
    posted = _seed_post(session_factory, status=PostStatus.posted, scheduled_for=None)
    scheduled = _seed_post(session_factory)
    failed = _seed_post(session_factory, status=PostStatus.failed)

    with pytest.raises(InvalidPostStateError) as exc_info:
        service.cancel_post(SCOPE, posted)
    assert exc_info.value.code == "POST_NOT_CANCELLABLE"

    assert service.cancel_post(SCOPE, scheduled).status == PostStatus.deleted
    assert service.cancel_post(SCOPE, failed).status == PostStatus.deleted


def test_posts_are_scoped_to_owner() -> None:
    session_factory = _setup_db()
    service = _service(session_factory)
    post_id = _seed_post(session_factory)

    with pytest.raises(PostNotFoundError):
        service.get_post(OwnerScope(user_id="someone-else"), post_id)
    with pytest.raises(PostNotFoundError):
        service.get_post(OwnerScope(user_id="u1", team_id="team-1"), post_id)


def test_reschedule_and_retry() -> None:
    session_factory = _setup_db()
    service = _service(session_factory)
    failed = _seed_post(
        session_factory, status=PostStatus.failed, last_error="THREADS_TOKEN_EXPIRED", publish_attempts=2
    )
    posted = _seed_post(session_factory, status=PostStatus.posted)

    with pytest.raises(ValidationError) as exc_info:
        service.reschedule_post(SCOPE, failed, None)
    assert exc_info.value.code == "SCHEDULED_FOR_REQUIRED"

    with pytest.raises(InvalidPostStateError) as exc_info:
        service.reschedule_post(SCOPE, posted, NOW + timedelta(days=1))
    assert exc_info.value.code == "POST_NOT_RESCHEDULABLE"

    with pytest.raises(InvalidPostStateError) as exc_info:
        service.retry_post(SCOPE, posted, now=NOW)
    assert exc_info.value.code == "POST_NOT_RETRYABLE"

    retried = service.retry_post(SCOPE, failed, now=NOW)
    assert retried.status == PostStatus.scheduled
    assert retried.last_error is None
    assert retried.publish_attempts == 0

    moved = service.reschedule_post(SCOPE, failed, NOW + timedelta(days=1))
    assert moved.status == PostStatus.scheduled


def test_list_scheduled_and_history() -> None:
    session_factory = _setup_db()
    service = _service(session_factory)
    soon = _seed_post(session_factory, scheduled_for=NOW + timedelta(hours=1))
    later = _seed_post(session_factory, scheduled_for=NOW + timedelta(hours=3))
    failed = _seed_post(session_factory, status=PostStatus.failed)
    _seed_post(session_factory, status=PostStatus.deleted)
    _seed_post(session_factory, status=PostStatus.posted, platforms=["instagram"])

    assert [post.id for post in service.list_scheduled(SCOPE)] == [soon, later]
    assert [post.id for post in service.list_scheduled(SCOPE, status="failed")] == [failed]
    with pytest.raises(ValidationError):
        service.list_scheduled(SCOPE, status="bogus")

    history = service.list_history(SCOPE, now=NOW)
    assert len(history) == 4
    assert all(post.status != PostStatus.deleted for post in history)
    assert len(service.list_history(SCOPE, platform="instagram", now=NOW)) == 1
    assert len(service.list_history(SCOPE, include_deleted=True, now=NOW)) == 5


def test_delete_removes_threads_posts_once() -> None:
    session_factory = _setup_db()
    _seed(session_factory, Platform.threads)
    deleter = FakeThreadsDeleter()
    service = _service(session_factory, threads=deleter)
    post_id = _seed_post(
        session_factory,
        status=PostStatus.posted,
        threads_content_type="thread",
        threads_post_id="18000001",
        threads_sequence=["18000001", "18000002"],
    )

    first = service.delete_post(SCOPE, post_id)
    second = service.delete_post(SCOPE, post_id)

    assert first.remote_deleted_ids == ["18000001", "18000002"]
    assert not first.already_deleted
    assert second.already_deleted
    assert deleter.calls == [["18000001", "18000002"]]
    post = service.get_post(SCOPE, post_id)
    assert post.status == PostStatus.deleted
    assert post.post_metadata["remote_deletion"]["threads"]["deleted_ids"] == ["18000001", "18000002"]


def test_delete_partial_failure_keeps_post_and_resumes() -> None:
    session_factory = _setup_db()
    _seed(session_factory, Platform.threads)
    deleter = FakeThreadsDeleter(failing={"18000002"})
    service = _service(session_factory, threads=deleter)
    post_id = _seed_post(
        session_factory,
        status=PostStatus.posted,
        threads_post_id="18000001",
        threads_sequence=["18000001", "18000002"],
    )

    with pytest.raises(PublishFailure) as exc_info:
        service.delete_post(SCOPE, post_id)
    assert exc_info.value.code == "THREADS_DELETE_FAILED"
    assert service.get_post(SCOPE, post_id).status == PostStatus.posted

    deleter.failing.clear()
    result = service.delete_post(SCOPE, post_id)

    assert deleter.calls == [["18000001", "18000002"], ["18000002"]]
    assert result.remote_deleted_ids == ["18000002"]
    post = service.get_post(SCOPE, post_id)
    assert post.status == PostStatus.deleted
    assert post.post_metadata["remote_deletion"]["threads"]["deleted_ids"] == ["18000001", "18000002"]


def test_delete_scheduled_post_skips_remote_calls() -> None:
    session_factory = _setup_db()
    deleter = FakeThreadsDeleter()
    service = _service(session_factory, threads=deleter)
    post_id = _seed_post(session_factory)

    result = service.delete_post(SCOPE, post_id)

    assert result.remote_deleted_ids == []
    assert deleter.calls == []
    assert service.get_post(SCOPE, post_id).status == PostStatus.deleted


def test_failed_publish_refunds_the_store_that_was_charged() -> None:
    session_factory = _setup_db()
    _seed(session_factory, Platform.threads)
    service_state = {"up": False}
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if not service_state["up"]:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"success": True, "balance": 50})

    class RecoveringPublisher(FakePublisher):
        def publish(self, content, account) -> PublishReceipt:
            service_state["up"] = True
            return super().publish(content, account)

    settings = PublishSettings()
    publisher = RecoveringPublisher(
        "threads", error=ProviderError("Error validating access token: Session has expired", status_code=401)
    )
    orchestrator = PublishOrchestrator(
        publishers={"threads": publisher},
        accounts=SqlConnectedAccountResolver(session_factory),
        settings=settings,
    )
    ledger = CreditLedger(
        LocalCreditLedger(session_factory),
        DelegatedCreditLedger(
            "https://platform.example.com/api",
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        ),
        costs=dict(settings.credit_costs),
        fallback_to_local=True,
    )
    service = PostService(
        session_factory=session_factory, orchestrator=orchestrator, ledger=ledger, settings=settings
    )

    with pytest.raises(TokenExpiredError):
        service.create_post(
            SCOPE, PostRequest(platforms=["threads"], caption="hello"), user_token="user-token", now=NOW
        )

    assert _balance(session_factory) == Decimal("10.00")
    assert "/api/credits/add" not in calls
