"""Summary: Minimal Microsoft Graph HTTP client.

Importance: Shared request handling for mailbox, calendar, and profile calls.
Alternatives: Use the msgraph SDK.
"""

from __future__ import annotations

import json
import socket
from typing import Any
import urllib.error
import urllib.request

from desksync.errors import ProviderAuthError, ProviderError


REQUEST_TIMEOUT_SECONDS = 10


def graph_request(
    method: str,
    url: str,
    access_token: str,
    payload: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Summary: Perform one Graph request and decode the JSON response.

    Importance: Maps 401 to ProviderAuthError so callers can disconnect the scope.
    Alternatives: Return status codes and let every caller interpret them.
    """

    request_headers = {"Authorization": f"Bearer {access_token}"}
    if headers:
        request_headers.update(headers)
    data = None
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
        request_headers["Content-Type"] = "application/json"
    request = urllib.request.Request(url, data=data, headers=request_headers, method=method)
    try:
        with urllib.request.urlopen(request, timeout=REQUEST_TIMEOUT_SECONDS) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        error_body = exc.read().decode("utf-8", errors="ignore")
        message = f"Microsoft Graph request failed: {_graph_error_message(error_body) or exc.reason}"
        if exc.code == 401:
            raise ProviderAuthError(message, status=exc.code) from exc
        raise ProviderError(message, status=exc.code) from exc
    except (urllib.error.URLError, socket.timeout) as exc:
        raise ProviderError(f"Microsoft Graph unreachable: {exc}") from exc
    if not raw.strip():
        return {}
    return json.loads(raw)


def fetch_connected_identity(base_url: str, access_token: str) -> str | None:
    """Summary: Resolve the mailbox address behind an access token.

    Importance: Shows which account a tenant or user actually authorized.
    Alternatives: Trust the login hint sent with the authorization request.
    """

    payload = graph_request("GET", f"{base_url.rstrip('/')}/me", access_token)
    return payload.get("mail") or payload.get("userPrincipalName")


def _graph_error_message(body: str) -> str:
    try:
        payload = json.loads(body)
    except ValueError:
        return body
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return error.get("message") or error.get("code") or body
    return body
