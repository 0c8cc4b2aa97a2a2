"""Shared async HTTP plumbing for REST-based provider adapters.

Adapters authenticate with a bearer token resolved by the credential
collaborator. Calls are single-shot: timeouts, 429 and 5xx are raised as
``TransientProviderError`` and left to the deployment runner's retry policy.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..errors import TransientProviderError, classify_status_code

logger = logging.getLogger(__name__)


# ── Module-level shared client ───────────────────────────────────

_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


# ── Client ───────────────────────────────────────────────────────


class HttpProviderClient:
    """Bearer-token JSON client with provider error classification."""

    provider_name = "http"

    def __init__(
        self,
        *,
        token: str,
        base_url: str,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        if not token:
            raise ValueError("token is required")

        self._token = token
        self._base_url = base_url.rstrip("/")
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    def _raise_for_status(self, resp: httpx.Response, operation: str) -> None:
        if resp.status_code < 400:
            return

        body = resp.text
        message = body[:200] if body else f"HTTP {resp.status_code}"

        try:
            payload = resp.json()
            if isinstance(payload, dict):
                message = _extract_error_message(payload) or message
        except ValueError:
            pass

        error_cls = classify_status_code(resp.status_code)
        raise error_cls(
            f"{self.provider_name} {operation} failed "
            f"({resp.status_code}): {message}",
            provider=self.provider_name,
            operation=operation,
            status_code=resp.status_code,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json: Any | None = None,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send one request and raise a classified error on failure."""
        url = path if path.startswith("https://") else f"{self._base_url}{path}"
        try:
            resp = await self._client.request(
                method,
                url,
                headers=self._auth_headers(),
                json=json,
                params=params,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            raise TransientProviderError(
                f"{self.provider_name} {operation} timed out",
                provider=self.provider_name,
                operation=operation,
            ) from e
        except httpx.TransportError as e:
            raise TransientProviderError(
                f"{self.provider_name} {operation} transport error: {e}",
                provider=self.provider_name,
                operation=operation,
            ) from e

        logger.debug(
            "%s %s -> %d",
            method,
            path,
            resp.status_code,
            extra={"provider": self.provider_name, "operation": operation},
        )
        self._raise_for_status(resp, operation)
        return resp

    async def aclose(self) -> None:
        # The shared client outlives individual adapters.
        return None


def _extract_error_message(payload: dict[str, Any]) -> str | None:
    error = payload.get("error")
    if isinstance(error, dict):
        return error.get("message") or error.get("code")
    if isinstance(error, str):
        return payload.get("message") or error
    message = payload.get("message")
    return message if isinstance(message, str) else None
