from __future__ import annotations

import re

import httpx

from .errors import (
    PermissionMissingError,
    ProviderError,
    PublishError,
    PublishFailure,
    ResourceNotFoundError,
    TokenExpiredError,
    TransientProviderError,
)

TOKEN_EXPIRED_PATTERNS = (
    re.compile(r"token.*expired", re.IGNORECASE),
    re.compile(r"session has expired", re.IGNORECASE),
    re.compile(r"invalid oauth access token", re.IGNORECASE),
    re.compile(r"error validating access token", re.IGNORECASE),
)

PERMISSION_PATTERNS = (
    re.compile(r"application does not have permission", re.IGNORECASE),
    re.compile(r"not authorized", re.IGNORECASE),
    re.compile(r"permissions? error", re.IGNORECASE),
    re.compile(r"permission denied", re.IGNORECASE),
    re.compile(r"insufficient permissions?", re.IGNORECASE),
)

RESOURCE_NOT_FOUND_PATTERNS = (
    re.compile(r"requested resource does not exist", re.IGNORECASE),
    re.compile(r"unsupported get request", re.IGNORECASE),
    re.compile(r"resource not found", re.IGNORECASE),
    re.compile(r"does not exist", re.IGNORECASE),
)

PLATFORM_LABELS = {"instagram": "Instagram", "threads": "Threads", "youtube": "YouTube"}


def _matches(patterns: tuple[re.Pattern[str], ...], message: str) -> bool:
    return any(pattern.search(message) for pattern in patterns)


def provider_message(error: BaseException) -> str:
    if isinstance(error, (ProviderError, PublishError)):
        return error.message
    if isinstance(error, httpx.HTTPStatusError):
        try:
            body = error.response.json()
        except ValueError:
            return error.response.text or str(error)
        if isinstance(body, dict):
            nested = body.get("error")
            if isinstance(nested, dict) and nested.get("message"):
                return str(nested["message"])
            if isinstance(nested, str):
                return nested
            if body.get("message"):
                return str(body["message"])
        return error.response.text or str(error)
    return str(error) or error.__class__.__name__


def _is_transient(error: BaseException) -> bool:
    if isinstance(error, ProviderError):
        return error.transient
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code >= 500
    return isinstance(error, (httpx.TimeoutException, httpx.TransportError))


def map_publish_error(error: BaseException, *, platform: str | None = None) -> PublishError:
    if isinstance(error, PublishError):
        if platform and not error.platform:
            error.platform = platform
        return error

    message = provider_message(error)
    prefix = platform.upper() if platform else "SOCIAL"
    label = PLATFORM_LABELS.get(platform or "", "Social account")

    if _matches(TOKEN_EXPIRED_PATTERNS, message):
        return TokenExpiredError(
            f"{label} access token expired. Reconnect {label} and try again.",
            code=f"{prefix}_TOKEN_EXPIRED",
            platform=platform,
        )
    if _matches(PERMISSION_PATTERNS, message):
        return PermissionMissingError(
            f"{label} permissions are missing. Reconnect {label} and approve all requested permissions.",
            code=f"{prefix}_PERMISSION_MISSING" if platform else "SOCIAL_PERMISSION_MISSING",
            platform=platform,
        )
    if _matches(RESOURCE_NOT_FOUND_PATTERNS, message):
        return ResourceNotFoundError(
            f"{label} could not find the requested resource. Reconnect {label} and try again.",
            code=f"{prefix}_RESOURCE_NOT_FOUND",
            platform=platform,
        )
    if _is_transient(error):
        return TransientProviderError(
            f"{label} is temporarily unavailable: {message}",
            code=f"{prefix}_PROVIDER_UNAVAILABLE",
            platform=platform,
        )
    return PublishFailure(f"Social publish failed: {message}", platform=platform)
