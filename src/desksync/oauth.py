"""Summary: OAuth helper utilities for the Microsoft identity platform.

Importance: Builds authorization URLs and performs code exchanges and refreshes.
Alternatives: Use MSAL or another provider SDK.
"""

from __future__ import annotations

import json
import secrets
import socket
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
import urllib.error
import urllib.parse
import urllib.request

from desksync.config import AppConfig
from desksync.errors import ProviderError, TokenRefreshError


MAILBOX_SCOPES = (
    "https://graph.microsoft.com/Mail.Read "
    "https://graph.microsoft.com/Mail.ReadWrite "
    "https://graph.microsoft.com/Mail.Send offline_access"
)
CALENDAR_SCOPES = (
    "https://graph.microsoft.com/Calendars.ReadWrite "
    "https://graph.microsoft.com/User.Read offline_access"
)
REQUEST_TIMEOUT_SECONDS = 10


@dataclass(frozen=True)
class OAuthTokenResult:
    """Summary: Normalized OAuth token response data.

    Importance: Provides a consistent token representation for storage and refresh logic.
    Alternatives: Store the raw provider response without normalization.
    """

    access_token: str
    refresh_token: str | None
    expires_at: datetime | None
    token_type: str | None
    raw: dict[str, Any]

    @staticmethod
    def from_response(payload: dict[str, Any], now: datetime | None = None) -> "OAuthTokenResult":
        """Summary: Build an OAuthTokenResult from a provider payload.

        Importance: Turns the relative expires_in into an absolute expiry.
        Alternatives: Keep expires_in and compute expiry at every use.
        """

        issued_at = now or datetime.now(timezone.utc)
        expires_in = payload.get("expires_in")
        expires_at = None
        if expires_in is not None:
            expires_at = issued_at + timedelta(seconds=int(expires_in))
        return OAuthTokenResult(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_at=expires_at,
            token_type=payload.get("token_type"),
            raw=payload,
        )


def create_state_token() -> str:
    """Summary: Generate a CSRF state token.

    Importance: Protects OAuth flows from CSRF attacks.
    Alternatives: Use server-side session storage with pre-generated tokens.
    """

    return secrets.token_urlsafe(24)


def scopes_for(scope_type: str) -> str:
    """Return the permission set requested for a tenant mailbox or a user calendar."""

    if scope_type == "tenant":
        return MAILBOX_SCOPES
    if scope_type == "user":
        return CALENDAR_SCOPES
    raise ValueError(f"Unknown credential scope: {scope_type}")


def build_authorization_url(
    config: AppConfig, scope_type: str, state: str, login_hint: str | None = None
) -> str:
    """Summary: Build a Microsoft OAuth authorization URL.

    Importance: Starts mailbox (tenant) or calendar (user) authorization.
    Alternatives: Use Microsoft Graph SDK helpers.
    """

    params = {
        "client_id": config.microsoft_client_id,
        "redirect_uri": config.oauth_redirect_uri,
        "response_type": "code",
        "response_mode": "query",
        "scope": scopes_for(scope_type),
        "state": state,
    }
    if login_hint:
        params["login_hint"] = login_hint
    else:
        params["prompt"] = "select_account"
    return config.microsoft_authorize_url + "?" + urllib.parse.urlencode(params)


def exchange_oauth_code(
    config: AppConfig, scope_type: str, code: str, now: datetime | None = None
) -> OAuthTokenResult:
    """Summary: Exchange an OAuth authorization code for tokens.

    Importance: Creates the credential that the sync engines keep alive.
    Alternatives: Use provider SDKs or external auth services.
    """

    _ensure_oauth_config(config)
    payload = {
        "client_id": config.microsoft_client_id,
        "client_secret": config.microsoft_client_secret,
        "code": code,
        "grant_type": "authorization_code",
        "redirect_uri": config.oauth_redirect_uri,
        "scope": scopes_for(scope_type),
    }
    response = _post_form(config.microsoft_token_url, payload)
    return OAuthTokenResult.from_response(response, now=now)


def refresh_oauth_token(
    config: AppConfig, scope_type: str, refresh_token: str, now: datetime | None = None
) -> OAuthTokenResult:
    """Summary: Redeem a refresh token for a new access token.

    Importance: Keeps polling working without a human re-authorizing.
    Alternatives: Force re-authorization once the access token expires.
    """

    _ensure_oauth_config(config)
    payload = _refresh_payload(config, scope_type, refresh_token)
    response = _post_form(config.microsoft_token_url, payload)
    return OAuthTokenResult.from_response(response, now=now)


def _refresh_payload(config: AppConfig, scope_type: str, refresh_token: str) -> dict[str, str]:
    return {
        "client_id": config.microsoft_client_id,
        "client_secret": config.microsoft_client_secret,
        "refresh_token": refresh_token,
        "grant_type": "refresh_token",
        "scope": scopes_for(scope_type),
    }


def _ensure_oauth_config(config: AppConfig) -> None:
    """Summary: Validate that OAuth credentials exist.

    Importance: Prevents confusing token endpoint errors when credentials are missing.
    Alternatives: Allow requests to fail at the provider endpoint.
    """

    if not config.microsoft_client_id or not config.microsoft_client_secret:
        raise ValueError("Missing OAuth client credentials for microsoft")


def _post_form(url: str, payload: dict[str, str]) -> dict[str, Any]:
    """Summary: Send a form-encoded POST request and parse JSON.

    Importance: HTTP errors become TokenRefreshError, network errors ProviderError.
    Alternatives: Use requests or a provider SDK.
    """

    data = urllib.parse.urlencode(payload).encode("utf-8")
    request = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=REQUEST_TIMEOUT_SECONDS) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        error_body = exc.read().decode("utf-8", errors="ignore")
        raise TokenRefreshError(
            f"Token request failed: {_error_description(error_body) or exc.reason}",
            status=exc.code,
        ) from exc
    except (urllib.error.URLError, socket.timeout) as exc:
        raise ProviderError(f"Token endpoint unreachable: {exc}") from exc
    return json.loads(raw)


def _error_description(body: str) -> str:
    try:
        payload = json.loads(body)
    except ValueError:
        return body
    if isinstance(payload, dict):
        return payload.get("error_description") or payload.get("error") or body
    return body
