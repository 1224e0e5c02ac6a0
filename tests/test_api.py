from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from apps.api.app import main
from socialcore.accounts import SqlConnectedAccountResolver
from socialcore.config import PublishSettings
from socialcore.db import Base
from socialcore.interfaces import PublishReceipt
from socialcore.ledger import CreditLedger, LocalCreditLedger
from socialcore.models import ConnectedAccount, CreditBalance, Platform, Post, PostStatus
from socialcore.orchestrator import PublishOrchestrator
from socialcore.posts import PostService
from socialcore.services import PublishServices

HEADERS = {"x-user-id": "u1"}


class FakeThreads:
    platform = "threads"

    def __init__(self) -> None:
        self.calls = 0

    def publish(self, content, account) -> PublishReceipt:
        self.calls += 1
        return PublishReceipt(external_id=f"1800000{self.calls}")


def _setup_services(*, balance: str = "10.00", connected: bool = True):
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    session_factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    with session_factory() as session:
        session.add(CreditBalance(user_id="u1", credits_remaining=Decimal(balance)))
        if connected:
            session.add(
                ConnectedAccount(user_id="u1", platform=Platform.threads, account_id="th-acct", access_token="token-1")
            )
        session.commit()

    settings = PublishSettings()
    orchestrator = PublishOrchestrator(
        publishers={"threads": FakeThreads()},
        accounts=SqlConnectedAccountResolver(session_factory),
        settings=settings,
    )
    ledger = CreditLedger(LocalCreditLedger(session_factory), costs=dict(settings.credit_costs))
    posts = PostService(session_factory=session_factory, orchestrator=orchestrator, ledger=ledger, settings=settings)
    services = PublishServices(settings=settings, orchestrator=orchestrator, ledger=ledger, posts=posts, threads=None)
    return services, session_factory


@pytest.fixture
def client_factory():
    def _build(**kwargs):
        services, session_factory = _setup_services(**kwargs)
        main.app.dependency_overrides[main.get_services] = lambda: services
        return TestClient(main.app), session_factory

    yield _build
    main.app.dependency_overrides.clear()


def _seed_post(session_factory, **overrides) -> str:
    values = {
        "user_id": "u1",
        "caption": "hello",
        "platforms": ["threads"],
        "threads_content_type": "text",
        "status": PostStatus.scheduled,
        "scheduled_for": datetime.now(timezone.utc) + timedelta(hours=1),
        "post_metadata": {},
    }
    values.update(overrides)
    with session_factory() as session:
        post = Post(**values)
        session.add(post)
        session.commit()
        return post.id


def test_health() -> None:
    response = TestClient(main.app).get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_requests_without_user_are_rejected(client_factory) -> None:
    client, _ = client_factory()

    response = client.post("/api/posts", json={"caption": "hi", "platforms": ["threads"]})

    assert response.status_code == 401
    assert response.json() == {"detail": "user_id_required"}


def test_create_post_publishes_immediately(client_factory) -> None:
    client, _ = client_factory()

    response = client.post("/api/posts", json={"caption": "hello", "platforms": ["threads"]}, headers=HEADERS)

    assert response.status_code == 201
    payload = response.json()
    assert payload["success"] is True
    assert payload["post"]["status"] == "posted"
    assert payload["post"]["threads_post_id"] == "18000001"

    balance = client.get("/api/credits/balance", headers=HEADERS).json()
    assert balance == {"balance": 9.0, "scope": "user"}

    history = client.get("/api/credits/history", headers=HEADERS).json()["transactions"]
    assert [entry["type"] for entry in history] == ["usage"]
    assert history[0]["credits_amount"] == -1.0


def test_create_post_schedules_for_later(client_factory) -> None:
    client, _ = client_factory()

    response = client.post(
        "/api/posts",
        json={
            "caption": "later",
            "platforms": ["threads"],
            "post_now": False,
            "scheduled_for": "2030-01-01T09:00:00Z",
        },
        headers=HEADERS,
    )

    assert response.status_code == 201
    assert response.json()["post"]["status"] == "scheduled"
    listed = client.get("/api/schedule", headers=HEADERS).json()["posts"]
    assert [post["caption"] for post in listed] == ["later"]


def test_missing_connection_maps_to_400(client_factory) -> None:
    client, _ = client_factory(connected=False)

    response = client.post("/api/posts", json={"caption": "hello", "platforms": ["threads"]}, headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["code"] == "MISSING_CONNECTED_ACCOUNT"
    assert response.json()["platform"] == "threads"


def test_insufficient_credits_maps_to_402(client_factory) -> None:
    client, _ = client_factory(balance="0.25")

    response = client.post("/api/posts", json={"caption": "hello", "platforms": ["threads"]}, headers=HEADERS)

    assert response.status_code == 402
    body = response.json()
    assert body["code"] == "INSUFFICIENT_CREDITS"
    assert body["creditsRequired"] == 1.0
    assert body["creditsAvailable"] == 0.25


def test_preflight_lists_issues(client_factory) -> None:
    client, _ = client_factory()

    response = client.post(
        "/api/posts/preflight", json={"caption": "", "platforms": ["instagram"]}, headers=HEADERS
    )

    assert response.status_code == 200
    codes = [issue["code"] for issue in response.json()["issues"]]
    assert "INSTAGRAM_MEDIA_REQUIRED" in codes
    assert "MISSING_CONNECTED_ACCOUNT" in codes


def test_schedule_management_routes(client_factory) -> None:
    client, session_factory = client_factory()
    failed = _seed_post(session_factory, status=PostStatus.failed, last_error="THREADS_TOKEN_EXPIRED")
    posted = _seed_post(session_factory, status=PostStatus.posted)

    rescheduled = client.patch(
        f"/api/schedule/{failed}", json={"scheduled_for": "2030-02-01T10:00:00Z"}, headers=HEADERS
    )
    assert rescheduled.status_code == 200
    assert rescheduled.json()["post"]["status"] == "scheduled"

    retried = client.post(f"/api/schedule/{failed}/retry", json={}, headers=HEADERS)
    assert retried.status_code == 200
    assert retried.json()["post"]["last_error"] is None

    rejected = client.delete(f"/api/schedule/{posted}", headers=HEADERS)
    assert rejected.status_code == 400
    assert rejected.json()["code"] == "POST_NOT_CANCELLABLE"

    cancelled = client.delete(f"/api/schedule/{failed}", headers=HEADERS)
    assert cancelled.status_code == 200
    assert cancelled.json()["post"]["status"] == "deleted"


def test_unknown_post_returns_404(client_factory) -> None:
    client, _ = client_factory()

    response = client.delete("/api/posts/does-not-exist", headers=HEADERS)

    assert response.status_code == 404
    assert response.json()["code"] == "POST_NOT_FOUND"


def test_history_filters_by_platform(client_factory) -> None:
    client, session_factory = client_factory()
    _seed_post(session_factory, status=PostStatus.posted, platforms=["threads"])
    _seed_post(session_factory, status=PostStatus.posted, platforms=["instagram"], threads_content_type=None)

    response = client.get("/api/posts/history", params={"platform": "instagram"}, headers=HEADERS)

    assert response.status_code == 200
    assert [post["platforms"] for post in response.json()["posts"]] == [["instagram"]]
