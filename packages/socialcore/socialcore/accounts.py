from __future__ import annotations

from datetime import datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from .interfaces import OwnerScope, PlatformAccount
from .models import ConnectedAccount, Platform


def _to_platform_account(row: ConnectedAccount) -> PlatformAccount:
    return PlatformAccount(
        connection_id=row.id,
        platform=row.platform.value,
        external_account_id=row.account_id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        token_expires_at=row.token_expires_at,
        username=row.account_username,
    )


class SqlConnectedAccountResolver:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def get(self, scope: OwnerScope, platform: str) -> PlatformAccount | None:
        query = select(ConnectedAccount).where(
            ConnectedAccount.platform == Platform(platform),
            ConnectedAccount.is_active.is_(True),
        )
        if scope.is_team:
            query = query.where(ConnectedAccount.team_id == scope.team_id)
        else:
            query = query.where(ConnectedAccount.user_id == scope.user_id, ConnectedAccount.team_id.is_(None))
        query = query.order_by(ConnectedAccount.updated_at.desc()).limit(1)
        with self._session_factory() as session:
            row = session.scalar(query)
            return _to_platform_account(row) if row is not None else None

    def record_refreshed_token(self, account: PlatformAccount, access_token: str, expires_at: datetime | None) -> None:
        with self._session_factory() as session:
            row = session.get(ConnectedAccount, account.connection_id)
            if row is None:
                return
            row.access_token = access_token
            row.token_expires_at = expires_at
            session.commit()
