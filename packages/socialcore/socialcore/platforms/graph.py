from __future__ import annotations

import time
from typing import Any, Callable

import httpx

from ..errors import ProviderError, PublishFailure, TransientProviderError

SHORT_TIMEOUT_SECONDS = 15.0
CREATE_TIMEOUT_SECONDS = 25.0

READY_STATUSES = {"FINISHED", "PUBLISHED", "READY"}
FAILED_STATUSES = {"ERROR", "EXPIRED"}


def _graph_error(response: httpx.Response) -> ProviderError:
    message = response.text or f"status={response.status_code}"
    provider_code: str | int | None = None
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            message = str(error.get("error_user_msg") or error.get("message") or message)
            provider_code = error.get("code")
        elif isinstance(error, str):
            message = error
    return ProviderError(message, status_code=response.status_code, provider_code=provider_code)


class GraphApiClient:
    """Thin request wrapper shared by the Meta Graph style adapters."""

    platform = "social"

    def __init__(
        self,
        base_url: str,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._http_client = http_client or httpx.Client(timeout=SHORT_TIMEOUT_SECONDS)
        self._sleep = sleep

    def _request(
        self,
        method: str,
        path: str,
        *,
        access_token: str,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        timeout: float = SHORT_TIMEOUT_SECONDS,
    ) -> dict[str, Any]:
        query = {key: value for key, value in (params or {}).items() if value is not None}
        query["access_token"] = access_token
        body = {key: value for key, value in (data or {}).items() if value is not None} or None
        try:
            response = self._http_client.request(
                method,
                f"{self._base_url}/{path.lstrip('/')}",
                params=query,
                data=body,
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            raise ProviderError(f"{self.platform} request timed out: {path}", transient=True) from exc
        except httpx.RequestError as exc:
            raise ProviderError(
                f"{self.platform} request failed: {path} network_error={exc.__class__.__name__}",
                transient=True,
            ) from exc
        if response.status_code >= 400:
            raise _graph_error(response)
        try:
            payload = response.json()
        except ValueError:
            return {}
        if not isinstance(payload, dict):
            return {}
        return payload

    def _wait_until_ready(
        self,
        container_id: str,
        *,
        access_token: str,
        fields: str,
        max_attempts: int,
        delay_seconds: float,
    ) -> None:
        for attempt in range(max_attempts):
            payload = self._request("GET", container_id, access_token=access_token, params={"fields": fields})
            status = str(payload.get("status_code") or payload.get("status") or "").upper()
            if status in READY_STATUSES:
                return
            if status in FAILED_STATUSES:
                raise PublishFailure(
                    f"{self.platform} media processing failed with status {status}.",
                    code=f"{self.platform.upper()}_MEDIA_PROCESSING_FAILED",
                    platform=self.platform,
                )
            if attempt < max_attempts - 1:
                self._sleep(delay_seconds)
        raise TransientProviderError(
            f"{self.platform} media processing did not finish in time.",
            code=f"{self.platform.upper()}_MEDIA_PROCESSING_TIMEOUT",
            platform=self.platform,
            status=408,
        )
