from __future__ import annotations

import argparse
import json
import signal
import threading
import uuid
from datetime import datetime
from typing import Any, Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from sqlalchemy.orm import Session

from socialcore.config import PublishSettings
from socialcore.db import SessionLocal, get_database_url
from socialcore.db.retry import run_with_db_retry
from socialcore.events import log_event
from socialcore.orchestrator import PublishOrchestrator
from socialcore.services import build_services
from socialcore.timeutil import utc_now

from .posting_jobs import claim_due_posts, process_claimed_post, requeue_stale_publishing

JOB_ID = "social-scheduled-posts"


class ScheduledPostWorker:
    def __init__(
        self,
        *,
        orchestrator: PublishOrchestrator,
        settings: PublishSettings,
        session_factory: Callable[[], Session],
        scheduler: BaseScheduler | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._settings = settings
        self._session_factory = session_factory
        self._scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self._clock = clock
        self._retry_kwargs = {"sleep": sleep} if sleep is not None else {}
        self._tick_lock = threading.Lock()
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> bool:
        if not self._settings.worker_enabled:
            log_event("worker_disabled")
            return False
        if self._started:
            return True
        self._scheduler.add_job(
            self.tick,
            trigger="interval",
            seconds=self._settings.worker_poll_ms / 1000,
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=self._clock(),
        )
        self._started = True
        log_event(
            "worker_started",
            poll_ms=self._settings.worker_poll_ms,
            batch_size=self._settings.worker_batch_size,
        )
        self._scheduler.start()
        return True

    def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        log_event("worker_stopped")

    def _sweep(self, current: datetime) -> dict[str, int]:
        with self._session_factory() as session:
            swept = requeue_stale_publishing(
                session,
                current,
                stale_after=self._settings.publishing_lease,
                max_attempts=self._settings.max_publish_attempts,
            )
            session.commit()
            return swept

    def _claim(self, current: datetime, claim_token: str) -> list[str]:
        with self._session_factory() as session:
            claimed = claim_due_posts(
                session, current, batch_size=self._settings.worker_batch_size, claim_token=claim_token
            )
            session.commit()
            return claimed

    def sweep(self, now: datetime | None = None) -> dict[str, int]:
        current = now or self._clock()
        return run_with_db_retry(lambda: self._sweep(current), label="stale_sweep", **self._retry_kwargs)

    def tick(self, now: datetime | None = None) -> dict[str, Any] | None:
        if not self._tick_lock.acquire(blocking=False):
            log_event("worker_tick_skipped", level="debug", reason="tick_in_progress")
            return None
        try:
            clock = self._clock if now is None else (lambda: now)
            return self._run_tick(clock)
        finally:
            self._tick_lock.release()

    def _run_tick(self, clock: Callable[[], datetime]) -> dict[str, Any]:
        summary: dict[str, Any] = {"claimed": 0, "posted": 0, "failed": 0, "skipped": 0, "requeued": 0, "expired": 0}
        current = clock()
        claim_token = str(uuid.uuid4())
        try:
            swept = self.sweep(current)
            claimed = run_with_db_retry(
                lambda: self._claim(current, claim_token), label="claim", **self._retry_kwargs
            )
        except Exception as exc:  # noqa: BLE001
            log_event("worker_tick_failed", level="error", error=str(exc), error_type=type(exc).__name__)
            summary["error"] = str(exc)
            return summary

        summary.update(swept)
        summary["claimed"] = len(claimed)
        results: list[dict[str, Any]] = []
        for post_id in claimed:
            try:
                result = process_claimed_post(
                    self._session_factory,
                    self._orchestrator,
                    post_id,
                    clock(),
                    claim_token=claim_token,
                    **self._retry_kwargs,
                )
            except Exception as exc:  # noqa: BLE001
                log_event("posting_job_unhandled_error", level="error", post_id=post_id, error=str(exc))
                result = {"post_id": post_id, "status": "error", "error": str(exc)}
            results.append(result)
            if result["status"] in {"posted", "failed", "skipped"}:
                summary[result["status"]] += 1
        summary["results"] = results
        if claimed:
            log_event(
                "worker_tick_completed",
                claimed=summary["claimed"],
                posted=summary["posted"],
                failed=summary["failed"],
            )
        return summary


def build_worker(scheduler: BaseScheduler | None = None) -> ScheduledPostWorker:
    get_database_url()
    settings = PublishSettings.from_env()
    services = build_services(settings, SessionLocal)
    return ScheduledPostWorker(
        orchestrator=services.orchestrator,
        settings=settings,
        session_factory=SessionLocal,
        scheduler=scheduler,
    )


def run_scheduler() -> None:
    worker = build_worker(BlockingScheduler(timezone="UTC"))

    def _shutdown(signum: int, frame: object) -> None:
        del frame
        log_event("worker_signal", signal=signum)
        worker.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)
    worker.start()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the scheduled post publishing worker")
    parser.add_argument("--once", action="store_true", help="Run a single worker tick and exit")
    parser.add_argument("--sweep-only", action="store_true", help="Requeue stale publishing posts and exit")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    if args.once:
        summary = build_worker().tick()
        print(json.dumps({"event": "worker_tick", **(summary or {})}, ensure_ascii=True, default=str))
        return
    if args.sweep_only:
        swept = build_worker().sweep()
        print(json.dumps({"event": "worker_sweep", **swept}, ensure_ascii=True))
        return
    run_scheduler()


if __name__ == "__main__":
    main()
