from __future__ import annotations

from decimal import Decimal
from typing import Any


class PublishError(RuntimeError):
    status = 500
    default_code = "SOCIAL_PUBLISH_FAILED"
    # remote ids already created before the failure, e.g. the head of a chain
    partial_ids: tuple[str, ...] = ()

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        platform: str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.platform = platform
        if status is not None:
            self.status = status

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.platform:
            payload["platform"] = self.platform
        return payload


class ValidationError(PublishError):
    status = 400
    default_code = "VALIDATION_FAILED"


class ChainTooLongError(ValidationError):
    default_code = "THREADS_CHAIN_TOO_LONG"


class InvalidPostStateError(ValidationError):
    default_code = "POST_STATE_INVALID"


class MissingConnectionError(PublishError):
    status = 400
    default_code = "MISSING_CONNECTED_ACCOUNT"


class TokenExpiredError(PublishError):
    status = 401
    default_code = "SOCIAL_TOKEN_EXPIRED"


class PermissionMissingError(PublishError):
    status = 403
    default_code = "SOCIAL_PERMISSION_MISSING"


class ResourceNotFoundError(PublishError):
    status = 409
    default_code = "SOCIAL_RESOURCE_NOT_FOUND"


class TransientProviderError(PublishError):
    status = 503
    default_code = "SOCIAL_PROVIDER_UNAVAILABLE"


class PublishFailure(PublishError):
    status = 500
    default_code = "SOCIAL_PUBLISH_FAILED"


class InsufficientCreditsError(PublishError):
    status = 402
    default_code = "INSUFFICIENT_CREDITS"

    def __init__(self, *, required: Decimal, available: Decimal, message: str | None = None) -> None:
        super().__init__(message or f"Insufficient credits: required {required}, available {available}")
        self.required = required
        self.available = available

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["creditsRequired"] = float(self.required)
        payload["creditsAvailable"] = float(self.available)
        return payload


class PostNotFoundError(PublishError):
    status = 404
    default_code = "POST_NOT_FOUND"


class DatabaseUnavailableError(PublishError):
    status = 503
    default_code = "DB_CONNECTION_INTERRUPTED"


class ProviderError(RuntimeError):
    """Raw failure reported by a platform or collaborator HTTP endpoint."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        provider_code: str | int | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.provider_code = provider_code
        self.transient = transient or (status_code is not None and status_code >= 500)
