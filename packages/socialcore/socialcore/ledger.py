from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Protocol, TypeVar

import httpx
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .errors import ProviderError, TransientProviderError
from .events import log_event
from .interfaces import OwnerScope
from .models import CreditBalance, CreditTransaction, CreditTransactionType
from .timeutil import utc_now

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
UNKNOWN_OPERATION_COST = Decimal("1.00")
DELEGATED_TIMEOUT_SECONDS = 10.0

T = TypeVar("T")


def to_credits(value: Any) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        return ZERO
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_cost(
    operation: str,
    costs: dict[str, Decimal],
    *,
    platform_count: int = 1,
    cross_post: bool = False,
) -> Decimal:
    base = costs.get(operation, UNKNOWN_OPERATION_COST)
    extra_platforms = max(0, platform_count - 1)
    total = Decimal(base) + Decimal(extra_platforms) * costs.get("platform_extra", ZERO)
    if cross_post:
        total += costs.get("cross_post_extra", ZERO)
    return to_credits(total)


@dataclass(frozen=True)
class CreditCheck:
    success: bool
    available: Decimal
    required: Decimal
    source: str


@dataclass(frozen=True)
class CreditResult:
    success: bool
    amount: Decimal
    remaining: Decimal | None
    source: str
    transaction_id: str | None = None
    error: str | None = None
    required: Decimal | None = None


class LedgerBackend(Protocol):
    source: str

    def balance(self, scope: OwnerScope, *, user_token: str | None = None) -> Decimal: ...

    def deduct(
        self, scope: OwnerScope, amount: Decimal, operation: str, description: str, *, user_token: str | None = None
    ) -> CreditResult:
        del user_token
        with self._session_factory() as session, session.begin():
            row = self._balance_row(session, scope, lock=True)
            debited = 0
            if row is not None:
                # conditional decrement keeps concurrent deducts from overdrawing
                debited = session.execute(
                    update(CreditBalance)
                    .where(CreditBalance.id == row.id, CreditBalance.credits_remaining >= amount)
                    .values(credits_remaining=CreditBalance.credits_remaining - amount)
                    .execution_options(synchronize_session=False)
                ).rowcount
            if not debited:
                available = self._remaining(session, row.id) if row is not None else ZERO
                return CreditResult(
                    success=False,
                    amount=ZERO,
                    remaining=available,
                    source=self.source,
                    error="INSUFFICIENT_CREDITS",
                    required=amount,
                )
            entry = CreditTransaction(
                user_id=scope.user_id,
                team_id=row.team_id,
                type=CreditTransactionType.usage,
                credits_amount=-amount,
                operation=operation,
                description=description,
                created_at=utc_now(),
            )
            session.add(entry)
            session.flush()
            return CreditResult(
                success=True,
                amount=amount,
                remaining=self._remaining(session, row.id),
                source=self.source,
                transaction_id=entry.id,
            )

    def refund(
        self, scope: OwnerScope, amount: Decimal, description: str, *, user_token: str | None = None
    ) -> CreditResult:
        del user_token
        with self._session_factory() as session, session.begin():
            row = self._balance_row(session, scope, lock=True)
            if row is None:
                row = CreditBalance(user_id=scope.user_id, credits_remaining=ZERO)
                session.add(row)
                session.flush()
            session.execute(
                update(CreditBalance)
                .where(CreditBalance.id == row.id)
                .values(credits_remaining=CreditBalance.credits_remaining + amount)
                .execution_options(synchronize_session=False)
            )
            entry = CreditTransaction(
                user_id=scope.user_id,
                team_id=row.team_id,
                type=CreditTransactionType.refund,
                credits_amount=amount,
                operation="refund",
                description=description,
                created_at=utc_now(),
            )
            session.add(entry)
            session.flush()
            return CreditResult(
                success=True,
                amount=amount,
                remaining=self._remaining(session, row.id),
                source=self.source,
                transaction_id=entry.id,
            )

    @staticmethod
    def _remaining(session: Session, balance_id: int) -> Decimal:
        value = session.scalar(select(CreditBalance.credits_remaining).where(CreditBalance.id == balance_id))
        return to_credits(value) if value is not None else ZERO

    def history(self, scope: OwnerScope, *, limit: int = 50, offset: int = 0) -> list[CreditTransaction]:
        query = select(CreditTransaction).where(CreditTransaction.user_id == scope.user_id)
        if scope.is_team:
            query = query.where(CreditTransaction.team_id == scope.team_id)
        else:
            query = query.where(CreditTransaction.team_id.is_(None))
        query = query.order_by(CreditTransaction.created_at.desc()).limit(limit).offset(offset)
        with self._session_factory() as session:
            return list(session.scalars(query))


_AMOUNT_PATTERNS = {
    "required": re.compile(r"required[^0-9]*([0-9]+(?:\.[0-9]+)?)", re.IGNORECASE),
    "available": re.compile(r"available[^0-9]*([0-9]+(?:\.[0-9]+)?)", re.IGNORECASE),
}


def _parse_amount(message: str, key: str) -> Decimal | None:
    match = _AMOUNT_PATTERNS[key].search(message)
    return to_credits(match.group(1)) if match else None


class DelegatedCreditLedger:
    source = "platform_api"

    def __init__(self, base_url: str, http_client: httpx.Client | None = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._http_client = http_client or httpx.Client(timeout=DELEGATED_TIMEOUT_SECONDS)

    def _headers(self, scope: OwnerScope, user_token: str | None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {user_token or ''}"}
        if scope.team_id:
            headers["x-team-id"] = scope.team_id
        return headers

    def _call(self, method: str, path: str, scope: OwnerScope, user_token: str | None, body: dict[str, Any] | None = None) -> httpx.Response:
        try:
            response = self._http_client.request(
                method,
                f"{self._base_url}/{path.lstrip('/')}",
                headers=self._headers(scope, user_token),
                json=body,
            )
        except httpx.RequestError as exc:
            raise ProviderError(
                f"credit service request failed: {path} network_error={exc.__class__.__name__}", transient=True
            ) from exc
        if response.status_code >= 500:
            raise ProviderError(
                f"credit service request failed: {path} status={response.status_code}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}

    def balance(self, scope: OwnerScope, *, user_token: str | None = None) -> Decimal:
        response = self._call("GET", "/credits/balance", scope, user_token)
        if response.status_code >= 400:
            raise ProviderError(
                f"credit service balance failed: status={response.status_code}", status_code=response.status_code
            )
        payload = self._json(response)
        raw = payload.get("balance", payload.get("credits", payload.get("creditsRemaining", 0)))
        return to_credits(raw)

    def deduct(
        self, scope: OwnerScope, amount: Decimal, operation: str, description: str, *, user_token: str | None = None
    ) -> CreditResult:
        response = self._call(
            "POST",
            "/credits/deduct",
            scope,
            user_token,
            {"operation": operation, "cost": float(amount), "description": description},
        )
        payload = self._json(response)
        if response.status_code >= 400:
            message = str(payload.get("error") or payload.get("message") or response.text)
            if response.status_code in {400, 402} and "insufficient" in message.lower():
                return CreditResult(
                    success=False,
                    amount=ZERO,
                    remaining=_parse_amount(message, "available"),
                    source=self.source,
                    error="INSUFFICIENT_CREDITS",
                    required=_parse_amount(message, "required") or amount,
                )
            raise ProviderError(
                f"credit service deduct failed: {message}", status_code=response.status_code
            )
        remaining = payload.get("remainingCredits")
        return CreditResult(
            success=bool(payload.get("success", True)),
            amount=to_credits(payload.get("creditsDeducted", amount)),
            remaining=to_credits(remaining) if remaining is not None else None,
            source=self.source,
            transaction_id=payload.get("transactionId"),
        )

    def refund(
        self, scope: OwnerScope, amount: Decimal, description: str, *, user_token: str | None = None
    ) -> CreditResult:
        response = self._call(
            "POST", "/credits/add", scope, user_token, {"amount": float(amount), "description": description}
        )
        if response.status_code >= 400:
            raise ProviderError(
                f"credit service refund failed: status={response.status_code}", status_code=response.status_code
            )
        payload = self._json(response)
        remaining = payload.get("remainingCredits", payload.get("balance"))
        return CreditResult(
            success=True,
            amount=amount,
            remaining=to_credits(remaining) if remaining is not None else None,
            source=self.source,
        )


class CreditLedger:
    """Credit operations routed to the delegated service or the local store.

    The delegated service is used only when one is configured and the caller
    supplies a user token. Transport failures and 5xx responses fall back to
    the local store when ``fallback_to_local`` is set; an insufficient-funds
    answer from the delegated service never does.
    """

    def __init__(
        self,
        local: LedgerBackend,
        delegated: LedgerBackend | None = None,
        *,
        costs: dict[str, Decimal],
        fallback_to_local: bool = True,
    ) -> None:
        self.local = local
        self.delegated = delegated
        self.costs = costs
        self.fallback_to_local = fallback_to_local

    def calculate_cost(self, operation: str, *, platform_count: int = 1, cross_post: bool = False) -> Decimal:
        return calculate_cost(operation, self.costs, platform_count=platform_count, cross_post=cross_post)

    def _backend(self, source: str | None) -> LedgerBackend | None:
        if source is None:
            return None
        if source == self.local.source:
            return self.local
        if self.delegated is not None and source == self.delegated.source:
            return self.delegated
        return None

    def _route(self, action: str, user_token: str | None, call: Callable[[LedgerBackend], T]) -> T:
        if self.delegated is None or not user_token:
            return call(self.local)
        try:
            return call(self.delegated)
        except ProviderError as exc:
            if not self.fallback_to_local:
                raise TransientProviderError(
                    "Credit service is unavailable. Please retry.", code="CREDIT_SERVICE_UNAVAILABLE"
                ) from exc
            log_event("credit_delegated_fallback", level="warning", action=action, error=exc.message)
            return call(self.local)

    def get_balance(self, scope: OwnerScope, *, user_token: str | None = None) -> Decimal:
        return self._route("balance", user_token, lambda backend: backend.balance(scope, user_token=user_token))

    def check_credits(self, scope: OwnerScope, amount: Decimal, *, user_token: str | None = None) -> CreditCheck:
        required = to_credits(amount)
        if required <= ZERO:
            return CreditCheck(success=True, available=ZERO, required=ZERO, source="none")
        source = "local" if self.delegated is None or not user_token else "platform_api"
        available = self.get_balance(scope, user_token=user_token)
        return CreditCheck(success=available >= required, available=available, required=required, source=source)

    def deduct_credits(
        self,
        scope: OwnerScope,
        amount: Decimal,
        operation: str,
        *,
        description: str | None = None,
        user_token: str | None = None,
    ) -> CreditResult:
        value = to_credits(amount)
        if value <= ZERO:
            return CreditResult(success=True, amount=ZERO, remaining=None, source="none")
        text = description or f"Social publisher: {operation}"
        result = self._route(
            "deduct",
            user_token,
            lambda backend: backend.deduct(scope, value, operation, text, user_token=user_token),
        )
        log_event(
            "credit_deducted" if result.success else "credit_deduct_rejected",
            user_id=scope.user_id,
            team_id=scope.team_id,
            operation=operation,
            amount=value,
            remaining=result.remaining,
            source=result.source,
        )
        return result

    def refund_credits(
        self,
        scope: OwnerScope,
        amount: Decimal,
        *,
        reason: str,
        user_token: str | None = None,
        source: str | None = None,
    ) -> CreditResult:
        """Return credits to the backend that took them.

        ``source`` is the ``CreditResult.source`` of the original deduction. A
        refund for a deduct that fell back to the local store goes to the local
        store even when the delegated service has recovered since.
        """
        value = to_credits(amount)
        if value <= ZERO:
            return CreditResult(success=True, amount=ZERO, remaining=None, source="none")
        text = f"Refund: {reason}"
        backend = self._backend(source)
        try:
            if backend is not None:
                result = backend.refund(scope, value, text, user_token=user_token)
            else:
                result = self._route(
                    "refund", user_token, lambda routed: routed.refund(scope, value, text, user_token=user_token)
                )
        except Exception as exc:  # noqa: BLE001
            log_event(
                "credit_refund_failed",
                level="error",
                user_id=scope.user_id,
                team_id=scope.team_id,
                amount=value,
                reason=reason,
                error=str(exc),
            )
            return CreditResult(success=False, amount=ZERO, remaining=None, source="none", error=str(exc))
        log_event(
            "credit_refunded",
            user_id=scope.user_id,
            team_id=scope.team_id,
            amount=value,
            reason=reason,
            source=result.source,
        )
        return result

    def history(self, scope: OwnerScope, *, limit: int = 50, offset: int = 0) -> list[CreditTransaction]:
        if not isinstance(self.local, LocalCreditLedger):
            return []
        return self.local.history(scope, limit=limit, offset=offset)
