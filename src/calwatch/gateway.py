"""Calendar gateway: the provider contract the core depends on.

This module defines:
- ``CalendarGateway``: list-since-cursor, watch and stop-watch contract
- ``CalendarGatewayFactory``: account-scoped gateway construction
- ``GoogleCalendarGateway``: Google Calendar v3 implementation over httpx
- ``GoogleGatewayFactory``: builds Google gateways from stored refresh tokens
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx

from calwatch.models import EventSnapshot, StopResult, WatchRegistration

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

# Largest page size Google accepts for events.list.
MAX_PAGE_SIZE = 2500

RefreshTokenLookup = Callable[[str], Awaitable[str | None]]


class GatewayError(RuntimeError):
    """Base error raised by calendar gateway helpers."""


class GatewayCredentialError(GatewayError):
    """Raised when no usable OAuth credentials exist for an account."""


class GatewayTokenRefreshError(GatewayError):
    """Raised when refresh-token exchange fails."""


class GatewayRequestError(GatewayError):
    """Raised when a Google Calendar API request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


class CursorExpiredError(GatewayError):
    """Raised when the sync cursor is too old to compute a delta from (HTTP 410)."""


class CalendarGateway(abc.ABC):
    """Account-scoped calendar provider contract."""

    @abc.abstractmethod
    async def initial_cursor(self, calendar_id: str) -> str:
        """Return a sync cursor marking "now" without transferring event data."""
        ...

    @abc.abstractmethod
    async def list_events_since(
        self, calendar_id: str, cursor: str
    ) -> tuple[list[EventSnapshot], str]:
        """Return every event changed since *cursor* and the cursor to use next.

        Raises:
            ``CursorExpiredError`` when the provider can no longer compute a
            delta from *cursor*.
        """
        ...

    @abc.abstractmethod
    async def watch(self, calendar_id: str, channel_id: str, address: str) -> WatchRegistration:
        """Register a push channel delivering change notifications to *address*."""
        ...

    @abc.abstractmethod
    async def stop_watch(self, channel_id: str, resource_id: str) -> StopResult:
        """Stop a push channel; a channel the provider no longer knows is ``already_absent``."""
        ...

    async def aclose(self) -> None:
        """Release gateway resources."""
        return None


class CalendarGatewayFactory(abc.ABC):
    """Builds gateways authenticated as a given account."""

    @abc.abstractmethod
    async def for_account(self, account_id: str) -> CalendarGateway: ...

    async def aclose(self) -> None:
        return None


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


class GoogleOAuthClient:
    """Refresh-token OAuth helper with lightweight access-token caching."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._http_client = http_client
        self._access_token: str | None = None
        self._access_token_expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token_is_fresh():
            assert self._access_token is not None
            return self._access_token

        async with self._refresh_lock:
            if not force_refresh and self._token_is_fresh():
                assert self._access_token is not None
                return self._access_token

            await self._refresh_access_token()
            assert self._access_token is not None
            return self._access_token

    def _token_is_fresh(self) -> bool:
        if self._access_token is None or self._access_token_expires_at is None:
            return False
        return datetime.now(UTC) < self._access_token_expires_at

    async def _refresh_access_token(self) -> None:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": self._refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise GatewayTokenRefreshError(
                f"Google OAuth token refresh request failed: {exc}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise GatewayTokenRefreshError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {_safe_google_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayTokenRefreshError(
                "Google OAuth token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise GatewayTokenRefreshError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        expires_in_raw = payload.get("expires_in") if isinstance(payload, dict) else None
        # Refresh early to avoid edge-of-expiration failures.
        refresh_ttl_seconds = max(_coerce_expires_in_seconds(expires_in_raw) - 60, 30)

        self._access_token = access_token.strip()
        self._access_token_expires_at = datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)


class GoogleCalendarGateway(CalendarGateway):
    """Google Calendar v3 gateway authenticated as a single account."""

    def __init__(self, oauth: GoogleOAuthClient, http_client: httpx.AsyncClient) -> None:
        self._oauth = oauth
        self._http_client = http_client

    async def initial_cursor(self, calendar_id: str) -> str:
        # Ask for no event fields at all: only the paging and sync tokens come back.
        params: dict[str, Any] = {
            "maxResults": MAX_PAGE_SIZE,
            "fields": "nextPageToken,nextSyncToken",
        }
        _, next_sync_token = await self._page_events(calendar_id, params, collect=False)
        return next_sync_token

    async def list_events_since(
        self, calendar_id: str, cursor: str
    ) -> tuple[list[EventSnapshot], str]:
        params: dict[str, Any] = {"syncToken": cursor, "maxResults": MAX_PAGE_SIZE}
        return await self._page_events(calendar_id, params, collect=True)

    async def watch(self, calendar_id: str, channel_id: str, address: str) -> WatchRegistration:
        payload = await self._request_json(
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events/watch",
            json_body={"id": channel_id, "type": "web_hook", "address": address},
        )
        try:
            return WatchRegistration.from_google(payload)
        except ValueError as exc:
            raise GatewayError(
                f"Google watch response for '{calendar_id}' is invalid: {exc}"
            ) from exc

    async def stop_watch(self, channel_id: str, resource_id: str) -> StopResult:
        response = await self._request_with_bearer(
            method="POST",
            path="/channels/stop",
            json_body={"id": channel_id, "resourceId": resource_id},
        )
        if response.status_code == 404:
            return StopResult.already_absent
        if response.status_code < 200 or response.status_code >= 300:
            raise GatewayRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )
        return StopResult.stopped

    async def _page_events(
        self,
        calendar_id: str,
        params: dict[str, Any],
        *,
        collect: bool,
    ) -> tuple[list[EventSnapshot], str]:
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        events: list[EventSnapshot] = []
        next_page_token: str | None = None
        next_sync_token: str | None = None

        while True:
            if next_page_token is not None:
                params["pageToken"] = next_page_token
            else:
                params.pop("pageToken", None)

            response = await self._request_with_bearer(method="GET", path=path, params=params)

            # 410 Gone: the sync token is too old, a full re-sync would be required.
            if response.status_code == 410:
                raise CursorExpiredError(f"Sync token expired for calendar '{calendar_id}'")

            payload = self._decode_json(response)

            if collect:
                items = payload.get("items")
                if isinstance(items, list):
                    for item in items:
                        if not isinstance(item, dict):
                            continue
                        try:
                            events.append(EventSnapshot.from_google(item))
                        except ValueError as exc:
                            raise GatewayError(
                                f"Invalid event in listing for '{calendar_id}': {exc}"
                            ) from exc

            candidate_sync_token = payload.get("nextSyncToken")
            if isinstance(candidate_sync_token, str) and candidate_sync_token.strip():
                next_sync_token = candidate_sync_token.strip()

            candidate_page_token = payload.get("nextPageToken")
            if isinstance(candidate_page_token, str) and candidate_page_token.strip():
                next_page_token = candidate_page_token
            else:
                break

        if next_sync_token is None:
            raise GatewayError(
                f"Google Calendar listing for '{calendar_id}' did not return nextSyncToken"
            )
        return events, next_sync_token

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            method=method, path=path, params=params, json_body=json_body
        )
        return self._decode_json(response)

    @staticmethod
    def _decode_json(response: httpx.Response) -> dict[str, Any]:
        if response.status_code < 200 or response.status_code >= 300:
            raise GatewayRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )
        if response.status_code == 204:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc
        if not isinstance(payload, dict):
            raise GatewayError("Google Calendar API returned an unexpected JSON payload shape")
        return payload

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{path}"

        response = await self._request_once(
            method=method, url=url, params=params, json_body=json_body, force_refresh=False
        )
        if response.status_code == 401:
            response = await self._request_once(
                method=method, url=url, params=params, json_body=json_body, force_refresh=True
            )

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(
                method=method, url=url, params=params, json_body=json_body, force_refresh=False
            )
            retry += 1

        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._oauth.get_access_token(force_refresh=force_refresh)
        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            return await self._http_client.request(
                method,
                url,
                params=dict(params) if params is not None else None,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise GatewayError(f"Google Calendar request failed: {exc}") from exc


class GoogleGatewayFactory(CalendarGatewayFactory):
    """Creates per-account Google gateways sharing one HTTP client.

    OAuth clients are cached per account so access tokens survive across
    webhook cycles and renewals.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        refresh_token_lookup: RefreshTokenLookup,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token_lookup = refresh_token_lookup
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._oauth_clients: dict[str, GoogleOAuthClient] = {}

    async def for_account(self, account_id: str) -> CalendarGateway:
        oauth = self._oauth_clients.get(account_id)
        if oauth is None:
            refresh_token = await self._refresh_token_lookup(account_id)
            if not refresh_token:
                raise GatewayCredentialError(
                    f"No Google OAuth refresh token stored for account '{account_id}'"
                )
            oauth = GoogleOAuthClient(
                client_id=self._client_id,
                client_secret=self._client_secret,
                refresh_token=refresh_token,
                http_client=self._http_client,
            )
            self._oauth_clients[account_id] = oauth
        return GoogleCalendarGateway(oauth, self._http_client)

    def forget_account(self, account_id: str) -> None:
        """Drop cached credentials, e.g. after the account's token was replaced."""
        self._oauth_clients.pop(account_id, None)

    async def aclose(self) -> None:
        self._oauth_clients.clear()
        if self._owns_http_client:
            await self._http_client.aclose()
