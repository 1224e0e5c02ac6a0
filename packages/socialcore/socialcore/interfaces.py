from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol


@dataclass(frozen=True)
class OwnerScope:
    user_id: str
    team_id: str | None = None

    @property
    def is_team(self) -> bool:
        return bool(self.team_id)


@dataclass
class PlatformAccount:
    connection_id: str
    platform: str
    external_account_id: str
    access_token: str | None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    username: str | None = None


@dataclass(frozen=True)
class PublishContent:
    caption: str
    media_urls: tuple[str, ...] = ()
    content_type: str | None = None
    thread_parts: tuple[str, ...] = ()


@dataclass(frozen=True)
class PublishReceipt:
    external_id: str
    chain_ids: tuple[str, ...] = field(default_factory=tuple)


class PlatformPublisher(Protocol):
    platform: str

    def publish(self, content: PublishContent, account: PlatformAccount) -> PublishReceipt: ...


class ConnectedAccountResolver(Protocol):
    def get(self, scope: OwnerScope, platform: str) -> PlatformAccount | None: ...

    def record_refreshed_token(
        self, account: PlatformAccount, access_token: str, expires_at: datetime | None
    ) -> None: ...
