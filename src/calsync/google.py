"""Google Calendar HTTP client used by the token manager, fetcher and pusher.

Every call is a single attempt with a bounded timeout.  Transport errors and
non-2xx responses surface as ``ProviderUnavailableError``; a refresh-token
exchange the provider rejects as revoked/invalid surfaces as
``TokenRevokedError`` so the token manager can deactivate the credential.
Error messages are sanitized before they reach logs or the audit table.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx

from calsync.config import GoogleConfig
from calsync.errors import CalendarSyncError, ProviderUnavailableError
from calsync.models import CreatedEvent, TokenGrant

logger = logging.getLogger(__name__)

# OAuth error codes meaning the refresh token itself is unusable.
REVOKED_TOKEN_ERROR_CODES = frozenset({"invalid_grant", "unauthorized_client", "invalid_client"})
_DEFAULT_EXPIRES_IN_SECONDS = 3600


class TokenRevokedError(CalendarSyncError):
    """Raised when the token endpoint rejects the refresh token."""

    def __init__(self, error_code: str, message: str) -> None:
        self.error_code = error_code
        self.message = message
        super().__init__(f"Refresh token rejected ({error_code}): {message}")


def google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return _DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else _DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else _DEFAULT_EXPIRES_IN_SECONDS
    return _DEFAULT_EXPIRES_IN_SECONDS


def redact_credential_values(message: str) -> str:
    """Redact token and secret values from an error message."""
    redacted = message
    # key=value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._\-]+", "Bearer [REDACTED]", redacted)
    return redacted


def sanitize_error_message(message: str) -> str:
    """Redact credentials, collapse whitespace and truncate to 200 chars."""
    return " ".join(redact_credential_values(message).split())[:200]


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
                return sanitize_error_message(message)
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return sanitize_error_message(f"{error_payload}: {description}")
            return sanitize_error_message(error_payload)

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_error_message(raw_text)
    return "Request failed without an error payload"


def _oauth_error_code(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, str) and error.strip():
        return error.strip()
    return None


class GoogleCalendarClient:
    """Thin async wrapper over the Google OAuth token and Calendar v3 endpoints."""

    def __init__(self, config: GoogleConfig, http_client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.request_timeout_s)
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Exchange *refresh_token* for a fresh access token."""
        try:
            response = await self._http_client.post(
                self._config.token_url,
                data={
                    "client_id": self._config.client_id,
                    "client_secret": self._config.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(
                f"token refresh request failed: {sanitize_error_message(str(exc))}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            error_code = _oauth_error_code(response)
            message = _safe_google_error_message(response)
            if response.status_code in (400, 401) and error_code in REVOKED_TOKEN_ERROR_CODES:
                raise TokenRevokedError(error_code, message)
            raise ProviderUnavailableError(
                f"token refresh failed: {message}", status_code=response.status_code
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderUnavailableError("token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise ProviderUnavailableError("token response is missing a non-empty access_token")

        return TokenGrant(
            access_token=access_token.strip(),
            expires_in=_coerce_expires_in_seconds(payload.get("expires_in")),
        )

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        access_token: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._config.api_base_url}{path}"
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        try:
            response = await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(
                f"{method} {path} failed: {sanitize_error_message(str(exc))}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderUnavailableError(
                _safe_google_error_message(response), status_code=response.status_code
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderUnavailableError(
                f"{method} {path} returned invalid JSON for a successful response"
            ) from exc

        if not isinstance(payload, dict):
            raise ProviderUnavailableError(f"{method} {path} returned an unexpected payload shape")
        return payload

    async def list_events_page(
        self,
        *,
        access_token: str,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        max_results: int,
        page_token: str | None = None,
    ) -> dict[str, Any]:
        """Fetch one page of events, including cancelled ones."""
        params: dict[str, Any] = {
            "timeMin": google_rfc3339(time_min),
            "timeMax": google_rfc3339(time_max),
            "singleEvents": "true",
            "orderBy": "startTime",
            "showDeleted": "true",
            "maxResults": max_results,
        }
        if page_token is not None:
            params["pageToken"] = page_token

        return await self._request_json(
            "GET",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            access_token=access_token,
            params=params,
        )

    async def create_event(
        self,
        *,
        access_token: str,
        calendar_id: str,
        body: dict[str, Any],
    ) -> CreatedEvent:
        payload = await self._request_json(
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            access_token=access_token,
            json_body=body,
        )
        event_id = payload.get("id")
        if not isinstance(event_id, str) or not event_id.strip():
            raise ProviderUnavailableError("event create response is missing a non-empty id")

        html_link = payload.get("htmlLink")
        meet_link = payload.get("hangoutLink")
        return CreatedEvent(
            id=event_id.strip(),
            html_link=html_link if isinstance(html_link, str) else None,
            meet_link=meet_link if isinstance(meet_link, str) else None,
        )
