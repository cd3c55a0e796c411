import logging
from dataclasses import dataclass
from typing import Any

import httpx

from calendar_connector.infrastructure.observability.metrics import record_provider_call

logger = logging.getLogger(__name__)

PROVIDER_NAME = "google_calendar"

GOOGLE_OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_OAUTH_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_CALENDAR_LIST_URL = "https://www.googleapis.com/calendar/v3/users/me/calendarList"

GOOGLE_CALENDAR_SCOPES = (
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/userinfo.email",
)

DEFAULT_TIMEOUT_SECONDS = 10.0


class ProviderError(RuntimeError):
    retryable: bool = True
    error_code: str = "provider_error"


class ProviderUnavailableError(ProviderError):
    retryable = True
    error_code = "provider_unavailable"


class ProviderHTTPError(ProviderError):
    retryable = False

    def __init__(self, status_code: int, error_code: str, message: str) -> None:
        super().__init__(f"{error_code}: {message}" if message else error_code)
        self.status_code = status_code
        self.error_code = error_code
        self.message = message


@dataclass(frozen=True)
class OAuthClientCredentials:
    client_id: str
    client_secret: str


@dataclass(frozen=True)
class BestEffort:
    """Outcome of a non-critical provider call. Failures are carried, never raised."""

    ok: bool
    value: Any = None
    error: str | None = None


def _parse_error(response: httpx.Response) -> tuple[str, str]:
    try:
        body = response.json()
    except ValueError:
        return f"http_{response.status_code}", response.text[:500]

    if not isinstance(body, dict):
        return f"http_{response.status_code}", response.text[:500]
    error = body.get("error")
    if isinstance(error, dict):
        code = str(error.get("status") or f"http_{response.status_code}")
        return code, str(error.get("message") or "")
    if error:
        return str(error), str(body.get("error_description") or "")
    return f"http_{response.status_code}", response.text[:500]


def _json_body(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError as exc:
        raise ProviderHTTPError(response.status_code, "invalid_response", "Provider returned a non-JSON body") from exc
    if not isinstance(body, dict):
        raise ProviderHTTPError(response.status_code, "invalid_response", "Provider returned an unexpected body")
    return body


class GoogleCalendarClient:
    provider = PROVIDER_NAME

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self.transport = transport

    def _request(self, operation: str, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            record_provider_call(operation=operation, outcome="timeout")
            raise ProviderUnavailableError(f"Google {operation} timed out") from exc
        except httpx.TransportError as exc:
            record_provider_call(operation=operation, outcome="network_error")
            raise ProviderUnavailableError(f"Google {operation} failed: {type(exc).__name__}") from exc

        if response.status_code >= 400:
            record_provider_call(operation=operation, outcome=f"http_{response.status_code}")
            error_code, message = _parse_error(response)
            raise ProviderHTTPError(response.status_code, error_code, message)

        record_provider_call(operation=operation, outcome="success")
        return response

    @staticmethod
    def build_authorization_url(
        *,
        client_id: str,
        redirect_uri: str,
        state: str,
        scopes: tuple[str, ...] = GOOGLE_CALENDAR_SCOPES,
        prompt: str = "consent select_account",
    ) -> str:
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(scopes),
            "access_type": "offline",
            "include_granted_scopes": "true",
            "prompt": prompt,
            "state": state,
        }
        return str(httpx.URL(GOOGLE_OAUTH_AUTHORIZE_URL, params=params))

    def exchange_code(self, *, code: str, redirect_uri: str, credentials: OAuthClientCredentials) -> dict:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": credentials.client_id,
            "client_secret": credentials.client_secret,
        }
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        response = self._request("token_exchange", "POST", GOOGLE_OAUTH_TOKEN_URL, data=data, headers=headers)
        return _json_body(response)

    def refresh_access_token(self, *, refresh_token: str, credentials: OAuthClientCredentials) -> dict:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": credentials.client_id,
            "client_secret": credentials.client_secret,
        }
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        response = self._request("token_refresh", "POST", GOOGLE_OAUTH_TOKEN_URL, data=data, headers=headers)
        return _json_body(response)

    def revoke_token(self, token: str) -> BestEffort:
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        try:
            self._request("revoke", "POST", GOOGLE_OAUTH_REVOKE_URL, data={"token": token}, headers=headers)
        except ProviderError as exc:
            logger.warning("google_token_revoke_failed error=%s", type(exc).__name__)
            return BestEffort(ok=False, error=exc.error_code)
        return BestEffort(ok=True)

    def fetch_account_email(self, access_token: str) -> BestEffort:
        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            response = self._request("userinfo", "GET", GOOGLE_USERINFO_URL, headers=headers)
            email = str(response.json().get("email") or "")
        except (ProviderError, ValueError, AttributeError) as exc:
            logger.warning("google_userinfo_fetch_failed error=%s", type(exc).__name__)
            return BestEffort(ok=False, error=getattr(exc, "error_code", "invalid_response"))
        return BestEffort(ok=True, value=email or None)

    def list_calendars(self, access_token: str) -> list[dict]:
        headers = {"Authorization": f"Bearer {access_token}"}
        response = self._request("calendar_list", "GET", GOOGLE_CALENDAR_LIST_URL, headers=headers)
        items = _json_body(response).get("items") or []
        return [
            {
                "id": item.get("id"),
                "summary": item.get("summary"),
                "primary": bool(item.get("primary", False)),
            }
            for item in items
        ]
