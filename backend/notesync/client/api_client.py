"""HTTP transport between a client replica and the sync API.

A thin wrapper around ``httpx.AsyncClient`` that attaches the bearer token
and turns every failure into one of three exceptions the coordinator
understands:

- :class:`NetworkFailure` -- no usable answer (connection error, timeout, 5xx)
- :class:`AuthFailure`    -- the token was refused (401 / 403)
- :class:`SyncApiError`   -- any other unexpected response

Usage::

    async with SyncApiClient("https://notes.example.com/api", token) as api:
        delta = await api.pull(last_sync_at, device_id)
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx

from notesync.config import get_settings
from notesync.utils.datetime_utils import datetime_to_iso

logger = logging.getLogger(__name__)


class SyncApiError(Exception):
    """Raised when the sync API answers with an unexpected response.

    Attributes:
        status_code: HTTP status of the response, or ``None`` when no
            response was received.
        message: A human-readable description of the failure.
    """

    def __init__(self, status_code: int | None, message: str | None = None) -> None:
        self.status_code = status_code
        self.message = message or f"Sync API error (status: {status_code})"
        super().__init__(self.message)


class NetworkFailure(SyncApiError):
    """Raised when the server could not be reached or failed to answer."""


class AuthFailure(SyncApiError):
    """Raised when the server rejects the session's credentials."""

    def __init__(self, status_code: int, message: str | None = None) -> None:
        super().__init__(status_code, message or f"Authentication required (status: {status_code})")


class SyncApiClient:
    """Async client for the ``/sync`` endpoints.

    Args:
        base_url: API root, e.g. ``http://localhost:8000/api``.  Defaults to
            ``SYNC_SERVER_URL``.
        token: Bearer token sent with every request.
        timeout: Per-request timeout in seconds.  Defaults to
            ``SYNC_REQUEST_TIMEOUT``.
        transport: Optional httpx transport (ASGI or mock transports in tests).
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._base_url = (base_url or settings.SYNC_SERVER_URL).rstrip("/")
        self._token = token
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout if timeout is not None else settings.SYNC_REQUEST_TIMEOUT,
            transport=transport,
        )

    async def __aenter__(self) -> SyncApiClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    def set_token(self, token: str | None) -> None:
        self._token = token

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Sync endpoints
    # ------------------------------------------------------------------

    async def pull(self, last_sync_at: datetime | None, device_id: str | None = None) -> dict:
        """Fetch the delta since ``last_sync_at`` (``None`` for a full pull)."""
        return await self._request(
            "POST",
            "/sync/pull",
            json={"lastSyncAt": datetime_to_iso(last_sync_at), "deviceId": device_id},
        )

    async def push(
        self,
        notes: list[dict[str, Any]],
        folders: list[dict[str, Any]],
        device_id: str | None = None,
    ) -> dict:
        """Send a batch of pending changes and return the per-item results."""
        return await self._request(
            "POST",
            "/sync/push",
            json={"notes": notes, "folders": folders, "deviceId": device_id},
        )

    async def offline_notes(self) -> list[dict]:
        """Fetch every note flagged for offline use."""
        data = await self._request("GET", "/sync/offline")
        return data.get("notes", [])

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, json: dict | None = None) -> dict:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}

        try:
            response = await self._client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("Sync request %s %s timed out", method, path)
            raise NetworkFailure(None, f"Request timed out: {method} {path}") from exc
        except httpx.TransportError as exc:
            logger.warning("Sync request %s %s failed: %s", method, path, exc)
            raise NetworkFailure(None, f"Network error: {exc}") from exc

        status_code = response.status_code
        if status_code in (401, 403):
            raise AuthFailure(status_code)
        if status_code >= 500:
            raise NetworkFailure(status_code, f"Server error (status: {status_code})")
        if status_code >= 400:
            raise SyncApiError(status_code, _error_detail(response))

        try:
            data = response.json()
        except ValueError as exc:
            raise SyncApiError(status_code, "Response is not valid JSON") from exc
        if not isinstance(data, dict):
            raise SyncApiError(status_code, "Unexpected response shape")
        return data


def _error_detail(response: httpx.Response) -> str:
    try:
        detail = response.json().get("detail")
    except (ValueError, AttributeError):
        detail = None
    if detail:
        return f"Sync API error (status: {response.status_code}): {detail}"
    return f"Sync API error (status: {response.status_code})"
