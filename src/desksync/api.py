"""Summary: FastAPI application for DeskSync.

Importance: Exposes the scheduled triggers, OAuth flows, and ticket operations over HTTP.
Alternatives: Use a CLI-only workflow or a different web framework.
"""

from __future__ import annotations

from dataclasses import asdict
import html
import logging
import secrets
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, Field

from desksync.app import AppServices, build_services
from desksync.config import AppConfig
from desksync.errors import (
    AuthorizationStateError,
    DeskSyncError,
    InvalidTransitionError,
    NotFoundError,
    ProviderError,
    TokenRefreshError,
)
from desksync.models import CredentialScope


logger = logging.getLogger(__name__)


class ReplyRequest(BaseModel):
    """Summary: Request payload for an agent reply.

    Importance: Replies are stored and then sent from the tenant mailbox.
    Alternatives: Accept raw MIME messages.
    """

    author_id: int
    content: str = Field(min_length=1)
    cc: list[str] = Field(default_factory=list)


class NoteRequest(BaseModel):
    """Request payload for an internal note."""

    author_id: int
    content: str = Field(min_length=1)


class StatusRequest(BaseModel):
    """Summary: Request payload for a manual status change.

    Importance: Only forward moves are accepted.
    Alternatives: Dedicated endpoints per transition.
    """

    status: str


class AssignRequest(BaseModel):
    user_id: int | None = None


class ConnectRequest(BaseModel):
    """Optional login hint for the Microsoft consent screen."""

    login_hint: str | None = None


def create_app(config: AppConfig, services: AppServices | None = None) -> FastAPI:
    """Summary: Create a FastAPI app wired to DeskSync services.

    Importance: One service bundle per app keeps the reminder cache alive between triggers.
    Alternatives: Instantiate services globally outside the factory.
    """

    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    app = FastAPI(title="DeskSync API", version="0.1.0")
    services = services or build_services(config)

    def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
        """Summary: Enforce API key authentication when configured.

        Importance: Adds a minimal security layer for admin routes.
        Alternatives: Use OAuth or session-based authentication.
        """

        if not config.api_key:
            return
        if x_api_key != config.api_key:
            raise HTTPException(status_code=401, detail="Invalid API key")

    def require_cron_secret(
        authorization: str | None = Header(default=None),
        secret: str | None = Query(default=None),
    ) -> None:
        """Summary: Authorize scheduler calls by bearer header or query secret.

        Importance: Triggers run privileged jobs and must never be open.
        Alternatives: Restrict triggers by source IP.
        """

        expected = config.cron_secret
        if not expected:
            raise HTTPException(status_code=401, detail="Cron secret not configured")
        provided = secret
        if authorization and authorization.startswith("Bearer "):
            provided = authorization[len("Bearer "):]
        if not provided or not secrets.compare_digest(provided, expected):
            raise HTTPException(status_code=401, detail="Unauthorized")

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.api_route(
        "/cron/sync-mail", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)]
    )
    def cron_sync_mail() -> dict[str, Any]:
        """Summary: Scheduled mail-to-ticket sync for every auto-sync tenant.

        Importance: The entry point an external scheduler calls every few minutes.
        Alternatives: Run an in-process scheduler thread.
        """

        return services.mail_sync.sync_all(scheduled=True).to_dict()

    @app.api_route(
        "/cron/calendar-reminders",
        methods=["GET", "POST"],
        dependencies=[Depends(require_cron_secret)],
    )
    def cron_calendar_reminders() -> dict[str, Any]:
        """Summary: Reminder sweep across connected calendars.

        Importance: Called every few minutes so each event falls in the window once.
        Alternatives: Subscribe to Graph change notifications.
        """

        return services.reminders.run().to_dict()

    @app.post("/tenants/{tenant_id}/sync", dependencies=[Depends(require_api_key)])
    def sync_tenant(tenant_id: int) -> dict[str, Any]:
        """Manual sync resuming exactly from the tenant's cursor."""

        return services.mail_sync.run(tenant_id, scheduled=False).to_dict()

    @app.get("/tenants/{tenant_id}/sync-status", dependencies=[Depends(require_api_key)])
    def tenant_sync_status(tenant_id: int) -> dict[str, Any]:
        """Summary: Mailbox connection state and cursor for a tenant.

        Importance: Tells admins when a mailbox needs to be reconnected.
        Alternatives: Surface disconnections only in logs.
        """

        try:
            tenant = services.tenants.get_tenant(tenant_id)
        except DeskSyncError as exc:
            raise _http_error(exc) from exc
        status = services.tokens.status(CredentialScope.tenant(tenant.id))
        return {
            "tenant_id": tenant.id,
            "support_email": tenant.support_email,
            "auto_sync": tenant.auto_sync,
            "last_synced_at": services.store.get_sync_cursor(tenant.id),
            **status,
        }

    @app.get("/users/{user_id}/calendar-status", dependencies=[Depends(require_api_key)])
    def user_calendar_status(user_id: int) -> dict[str, Any]:
        try:
            user = services.users.get_user(user_id)
        except DeskSyncError as exc:
            raise _http_error(exc) from exc
        return {
            "user_id": user.id,
            "chat_id": user.chat_id,
            **services.tokens.status(CredentialScope.user(user.id)),
        }

    @app.post("/oauth/mailbox/{tenant_id}/connect", dependencies=[Depends(require_api_key)])
    def connect_mailbox(tenant_id: int, payload: ConnectRequest | None = None) -> dict[str, str]:
        """Summary: Start consent for a tenant's support mailbox.

        Importance: Returns the URL an administrator opens to authorize Graph access.
        Alternatives: Use admin consent with application permissions.
        """

        try:
            tenant = services.tenants.get_tenant(tenant_id)
            hint = payload.login_hint if payload and payload.login_hint else tenant.support_email
            url = services.tokens.begin_authorization(CredentialScope.tenant(tenant.id), hint)
        except (DeskSyncError, ValueError) as exc:
            raise _http_error(exc) from exc
        return {"url": url}

    @app.post("/oauth/calendar/{user_id}/connect", dependencies=[Depends(require_api_key)])
    def connect_calendar(user_id: int, payload: ConnectRequest | None = None) -> dict[str, str]:
        try:
            user = services.users.get_user(user_id)
            hint = payload.login_hint if payload and payload.login_hint else None
            url = services.tokens.begin_authorization(CredentialScope.user(user.id), hint)
        except (DeskSyncError, ValueError) as exc:
            raise _http_error(exc) from exc
        return {"url": url}

    @app.post("/oauth/mailbox/{tenant_id}/disconnect", dependencies=[Depends(require_api_key)])
    def disconnect_mailbox(tenant_id: int) -> dict[str, Any]:
        try:
            tenant = services.tenants.get_tenant(tenant_id)
        except DeskSyncError as exc:
            raise _http_error(exc) from exc
        services.tokens.disconnect(CredentialScope.tenant(tenant.id))
        return {"tenant_id": tenant.id, "connected": False}

    @app.post("/oauth/calendar/{user_id}/disconnect", dependencies=[Depends(require_api_key)])
    def disconnect_calendar(user_id: int) -> dict[str, Any]:
        try:
            user = services.users.get_user(user_id)
        except DeskSyncError as exc:
            raise _http_error(exc) from exc
        services.tokens.disconnect(CredentialScope.user(user.id))
        return {"user_id": user.id, "connected": False}

    @app.get("/oauth/callback", response_class=HTMLResponse)
    def oauth_callback(
        state: str,
        code: str | None = None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> str:
        """Summary: Complete an OAuth flow started by a connect route.

        Importance: Exchanges the code and stores the credential for the state's scope.
        Alternatives: Let clients post the code back themselves.
        """

        if error or not code:
            detail = error_description or error or "Missing authorization code"
            raise HTTPException(status_code=400, detail=detail)
        try:
            credential = services.tokens.complete_authorization(state, code)
        except (DeskSyncError, ValueError) as exc:
            raise _http_error(exc) from exc
        identity = html.escape(credential.connected_identity or "your account")
        return f"<h1>DeskSync connected</h1><p>Connected as {identity}. You can close this window.</p>"

    @app.get("/tickets", dependencies=[Depends(require_api_key)])
    def list_tickets(
        tenant_id: int | None = None, status: str | None = None, limit: int = 50
    ) -> list[dict[str, Any]]:
        try:
            tickets = services.tickets.list_tickets(tenant_id=tenant_id, status=status, limit=limit)
        except ValueError as exc:
            raise _http_error(exc) from exc
        return [asdict(ticket) for ticket in tickets]

    @app.get("/tickets/{ticket_id}", dependencies=[Depends(require_api_key)])
    def get_ticket(ticket_id: int) -> dict[str, Any]:
        try:
            return asdict(services.tickets.get_ticket(ticket_id))
        except DeskSyncError as exc:
            raise _http_error(exc) from exc

    @app.get("/tickets/{ticket_id}/messages", dependencies=[Depends(require_api_key)])
    def list_ticket_messages(ticket_id: int) -> list[dict[str, Any]]:
        try:
            messages = services.tickets.list_messages(ticket_id)
        except DeskSyncError as exc:
            raise _http_error(exc) from exc
        return [asdict(message) for message in messages]

    @app.post("/tickets/{ticket_id}/replies", dependencies=[Depends(require_api_key)])
    def reply_to_ticket(ticket_id: int, payload: ReplyRequest) -> dict[str, Any]:
        """Summary: Record and send an agent reply.

        Importance: Delivery failures are reported on the message, not as HTTP errors.
        Alternatives: Fail the request when the mailbox is unreachable.
        """

        try:
            message = services.tickets.add_reply(
                ticket_id, payload.author_id, payload.content, payload.cc or None
            )
        except (DeskSyncError, ValueError) as exc:
            raise _http_error(exc) from exc
        return asdict(message)

    @app.post("/tickets/{ticket_id}/notes", dependencies=[Depends(require_api_key)])
    def add_ticket_note(ticket_id: int, payload: NoteRequest) -> dict[str, Any]:
        try:
            message = services.tickets.add_note(ticket_id, payload.author_id, payload.content)
        except (DeskSyncError, ValueError) as exc:
            raise _http_error(exc) from exc
        return asdict(message)

    @app.post("/tickets/{ticket_id}/status", dependencies=[Depends(require_api_key)])
    def change_ticket_status(ticket_id: int, payload: StatusRequest) -> dict[str, Any]:
        try:
            ticket = services.tickets.change_status(ticket_id, payload.status)
        except (DeskSyncError, ValueError) as exc:
            raise _http_error(exc) from exc
        return asdict(ticket)

    @app.post("/tickets/{ticket_id}/assign", dependencies=[Depends(require_api_key)])
    def assign_ticket(ticket_id: int, payload: AssignRequest) -> dict[str, Any]:
        try:
            ticket = services.tickets.assign(ticket_id, payload.user_id)
        except DeskSyncError as exc:
            raise _http_error(exc) from exc
        return asdict(ticket)

    return app


def _http_error(exc: Exception) -> HTTPException:
    """Summary: Map domain exceptions onto HTTP status codes.

    Importance: Keeps handlers short and status codes consistent.
    Alternatives: Register FastAPI exception handlers per type.
    """

    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (AuthorizationStateError, ValueError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (TokenRefreshError, ProviderError)):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def build_default_app() -> FastAPI:
    """Summary: Build the app from environment configuration.

    Importance: Serves as the factory for `uvicorn --factory desksync.api:build_default_app`.
    Alternatives: Build the app at import time.
    """

    return create_app(AppConfig.from_env())
