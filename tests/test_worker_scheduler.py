from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from socialcore.accounts import SqlConnectedAccountResolver
from socialcore.config import PublishSettings
from socialcore.db import Base
from socialcore.errors import ProviderError
from socialcore.interfaces import PublishReceipt
from socialcore.models import ConnectedAccount, Platform, Post, PostStatus
from socialcore.orchestrator import PublishOrchestrator

from apps.worker.scheduler import JOB_ID, ScheduledPostWorker

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _setup_db():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def _seed(session_factory, *captions: str) -> list[str]:
    ids: list[str] = []
    with session_factory() as session:
        session.add(
            ConnectedAccount(user_id="u1", platform=Platform.instagram, account_id="ig-acct", access_token="token-1")
        )
        for offset, caption in enumerate(captions):
            post = Post(
                user_id="u1",
                caption=caption,
                media_urls=["https://cdn.example.com/a.jpg"],
                platforms=["instagram"],
                instagram_content_type="feed",
                status=PostStatus.scheduled,
                scheduled_for=NOW - timedelta(minutes=10 - offset),
                post_metadata={},
            )
            session.add(post)
            session.flush()
            ids.append(post.id)
        session.commit()
    return ids


class FakeInstagram:
    platform = "instagram"

    def __init__(self, *, fail_on: str | None = None, on_publish=None) -> None:
        self.fail_on = fail_on
        self.on_publish = on_publish
        self.calls: list[str] = []

    def publish(self, content, account) -> PublishReceipt:
        self.calls.append(content.caption)
        if self.on_publish is not None:
            self.on_publish()
        if content.caption == self.fail_on:
            raise ProviderError("Application does not have permission for this action", status_code=403)
        return PublishReceipt(external_id=f"ig-{len(self.calls)}")


class FakeScheduler:
    def __init__(self) -> None:
        self.jobs: list[dict] = []
        self.running = False

    def add_job(self, func, **kwargs) -> None:
        self.jobs.append({"func": func, **kwargs})

    def start(self) -> None:
        self.running = True

    def shutdown(self, wait: bool = True) -> None:
        self.running = False


def _worker(session_factory, publisher, **settings_overrides) -> ScheduledPostWorker:
    settings = PublishSettings(**settings_overrides)
    orchestrator = PublishOrchestrator(
        publishers={"instagram": publisher},
        accounts=SqlConnectedAccountResolver(session_factory),
        settings=settings,
    )
    return ScheduledPostWorker(
        orchestrator=orchestrator,
        settings=settings,
        session_factory=session_factory,
        scheduler=FakeScheduler(),
        clock=lambda: NOW,
        sleep=lambda _: None,
    )


def test_tick_publishes_due_scheduled_post() -> None:
    session_factory = _setup_db()
    (post_id,) = _seed(session_factory, "hello")
    worker = _worker(session_factory, FakeInstagram())

    summary = worker.tick()

    assert summary["claimed"] == 1
    assert summary["posted"] == 1
    with session_factory() as session:
        post = session.get(Post, post_id)
    assert post.status == PostStatus.posted
    assert post.instagram_post_id == "ig-1"


def test_tick_isolates_per_post_failures() -> None:
    session_factory = _setup_db()
    first, second = _seed(session_factory, "boom", "fine")
    publisher = FakeInstagram(fail_on="boom")
    worker = _worker(session_factory, publisher)

    summary = worker.tick()

    assert publisher.calls == ["boom", "fine"]
    assert summary["posted"] == 1
    assert summary["failed"] == 1
    assert [result["status"] for result in summary["results"]] == ["failed", "posted"]
    with session_factory() as session:
        failed = session.get(Post, first)
        posted = session.get(Post, second)
    assert failed.status == PostStatus.failed
    assert failed.last_error == "INSTAGRAM_PERMISSION_MISSING"
    assert posted.status == PostStatus.posted


def test_tick_is_single_flight() -> None:
    session_factory = _setup_db()
    _seed(session_factory, "hello")
    nested: list[object] = []
    publisher = FakeInstagram()
    worker = _worker(session_factory, publisher)
    publisher.on_publish = lambda: nested.append(worker.tick())

    summary = worker.tick()

    assert summary["posted"] == 1
    assert nested == [None]


def test_tick_reports_database_outage_without_raising() -> None:
    attempts: list[int] = []

    def broken_session_factory():
        attempts.append(1)
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    worker = _worker(broken_session_factory, FakeInstagram())

    summary = worker.tick()

    assert summary["claimed"] == 0
    assert "Database connection was interrupted" in summary["error"]
    assert len(attempts) == 2


def test_start_registers_single_interval_job() -> None:
    session_factory = _setup_db()
    worker = _worker(session_factory, FakeInstagram(), worker_poll_ms=20000)

    assert worker.start() is True
    assert worker.start() is True

    scheduler = worker._scheduler
    assert scheduler.running
    assert len(scheduler.jobs) == 1
    job = scheduler.jobs[0]
    assert job["id"] == JOB_ID
    assert job["seconds"] == 20.0
    assert job["max_instances"] == 1
    assert job["coalesce"] is True
    assert job["replace_existing"] is True

    worker.stop()
    assert not scheduler.running
    assert not worker.started


def test_start_is_noop_when_disabled() -> None:
    session_factory = _setup_db()
    worker = _worker(session_factory, FakeInstagram(), worker_enabled=False)

    assert worker.start() is False
    assert worker._scheduler.jobs == []


def test_second_worker_leaves_in_flight_batch_alone() -> None:
    session_factory = _setup_db()
    first, second = _seed(session_factory, "one", "two")
    publisher_a = FakeInstagram()
    publisher_b = FakeInstagram()
    worker_a = _worker(session_factory, publisher_a)
    worker_b = _worker(session_factory, publisher_b)
    overlapping: list[dict] = []

    def run_second_worker() -> None:
        if not overlapping:
            overlapping.append(worker_b.tick(NOW + timedelta(minutes=31)))

    publisher_a.on_publish = run_second_worker

    summary = worker_a.tick()

    assert overlapping[0]["requeued"] == 0
    assert overlapping[0]["claimed"] == 0
    assert publisher_a.calls == ["one", "two"]
    assert publisher_b.calls == []
    assert summary["posted"] == 2
    with session_factory() as session:
        for post_id in (first, second):
            post = session.get(Post, post_id)
            assert post.status == PostStatus.posted
            assert post.claim_token is None
