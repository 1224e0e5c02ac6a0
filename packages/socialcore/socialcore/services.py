from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import httpx
from sqlalchemy.orm import Session

from .accounts import SqlConnectedAccountResolver
from .config import PublishSettings
from .crosspost import CrossPostClient
from .ledger import CreditLedger, DelegatedCreditLedger, LocalCreditLedger
from .orchestrator import PublishOrchestrator
from .platforms import InstagramPublisher, ThreadsPublisher, YoutubePublisher
from .posts import PostService


@dataclass(frozen=True)
class PublishServices:
    settings: PublishSettings
    orchestrator: PublishOrchestrator
    ledger: CreditLedger
    posts: PostService
    threads: ThreadsPublisher


def build_ledger(
    settings: PublishSettings, session_factory: Callable[[], Session], http_client: httpx.Client | None = None
) -> CreditLedger:
    delegated = None
    if settings.credit_use_platform_api and settings.platform_api_url:
        delegated = DelegatedCreditLedger(settings.platform_api_url, http_client=http_client)
    return CreditLedger(
        LocalCreditLedger(session_factory, team_credits_enabled=settings.team_credits_enabled),
        delegated,
        costs=settings.credit_costs,
        fallback_to_local=settings.credit_fallback_to_local,
    )


def build_services(
    settings: PublishSettings,
    session_factory: Callable[[], Session],
    *,
    http_client: httpx.Client | None = None,
) -> PublishServices:
    accounts = SqlConnectedAccountResolver(session_factory)
    threads = ThreadsPublisher(settings, http_client=http_client)
    publishers = {
        "instagram": InstagramPublisher(settings, http_client=http_client),
        "threads": threads,
        "youtube": YoutubePublisher(settings, http_client=http_client, on_token_refreshed=accounts.record_refreshed_token),
    }
    orchestrator = PublishOrchestrator(
        publishers=publishers,
        accounts=accounts,
        settings=settings,
        crossposter=CrossPostClient(settings, http_client=http_client),
    )
    ledger = build_ledger(settings, session_factory, http_client)
    posts = PostService(
        session_factory=session_factory,
        orchestrator=orchestrator,
        ledger=ledger,
        settings=settings,
        threads=threads,
    )
    return PublishServices(settings=settings, orchestrator=orchestrator, ledger=ledger, posts=posts, threads=threads)
