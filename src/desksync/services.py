"""Summary: Core application services for DeskSync.

Importance: Orchestrates token lifecycle, mail ingestion, ticket work, and reminders.
Alternatives: Build a full service layer with dependency injection framework.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from desksync.calendar import CalendarProvider, OutlookCalendarProvider, resolve_timezone
from desksync.config import AppConfig
from desksync.email import MailboxProvider, OutlookMailboxProvider, is_self_sent
from desksync.errors import (
    AuthorizationStateError,
    DeskSyncError,
    DuplicateMessageError,
    NotFoundError,
    NotificationError,
    ProviderAuthError,
    ProviderError,
    TicketConflictError,
    TokenRefreshError,
)
from desksync.graph import fetch_connected_identity
from desksync.models import (
    Client,
    Credential,
    CredentialScope,
    InboundEmail,
    InternalNote,
    MailMessage,
    NewTicket,
    NotifiedEventKey,
    OutboundEmail,
    SyncResult,
    SystemNote,
    Tenant,
    User,
)
from desksync.notifications import Notifier, format_reminder
from desksync.oauth import (
    OAuthTokenResult,
    build_authorization_url,
    create_state_token,
    exchange_oauth_code,
    refresh_oauth_token,
)
from desksync.reminder_cache import NotifiedEventStore
from desksync.storage.sqlite_store import (
    SqliteStore,
    StoredClient,
    StoredCredential,
    StoredTenant,
    StoredTicket,
    StoredTicketMessage,
    StoredUser,
)
from desksync.tickets import TicketStatus
from desksync.token_codec import TokenCodec


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

REFRESH_BUFFER = timedelta(minutes=5)
OAUTH_STATE_TTL = timedelta(minutes=15)
INITIAL_LOOKBACK = timedelta(days=7)
SCHEDULED_LOOKBACK = timedelta(hours=24)
MAIL_PAGE_SIZE = 50
REMINDER_HORIZON = timedelta(minutes=15)
REMINDER_MIN_MINUTES = 8
REMINDER_MAX_MINUTES = 12
REMINDER_PAGE_SIZE = 5
DEFAULT_SUBJECT = "(no subject)"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TenantService:
    """Summary: Manages tenants and the clients mail can be linked to.

    Importance: Provides onboarding for the CLI and admin API.
    Alternatives: Seed tenants directly in SQL.
    """

    store: SqliteStore

    def create_tenant(self, name: str, support_email: str, auto_sync: bool = True) -> int:
        tenant_id = self.store.create_tenant(Tenant(name, support_email, auto_sync))
        logger.info("Created tenant %s (%s)", tenant_id, name)
        return tenant_id

    def get_tenant(self, tenant_id: int) -> StoredTenant:
        tenant = self.store.get_tenant(tenant_id)
        if not tenant:
            raise NotFoundError(f"Tenant {tenant_id} not found")
        return tenant

    def list_tenants(self) -> list[StoredTenant]:
        return self.store.list_tenants()

    def add_client(self, tenant_id: int, company_name: str, email: str) -> int:
        self.get_tenant(tenant_id)
        return self.store.create_client(Client(tenant_id, company_name, email))

    def find_client(self, tenant_id: int, email: str) -> StoredClient | None:
        return self.store.find_client_by_email(tenant_id, email)


@dataclass(frozen=True)
class UserService:
    """Summary: Manages back-office user records.

    Importance: Users own calendar credentials and receive reminders.
    Alternatives: Use an external identity provider.
    """

    store: SqliteStore

    def create_user(
        self,
        tenant_id: int,
        display_name: str,
        email: str,
        chat_id: str | None = None,
        is_active: bool = True,
    ) -> int:
        return self.store.create_user(User(tenant_id, display_name, email, chat_id, is_active))

    def get_user(self, user_id: int) -> StoredUser:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return user


@dataclass(frozen=True)
class TokenService:
    """Summary: Keeps OAuth credentials usable for every scope.

    Importance: The only component that refreshes, persists, or clears tokens.
    Alternatives: Refresh tokens inside each engine.
    """

    store: SqliteStore
    codec: TokenCodec
    config: AppConfig
    clock: Clock = utc_now

    def load(self, scope: CredentialScope) -> Credential | None:
        """Summary: Load and decode the credential for a scope.

        Importance: Gives callers plaintext tokens and parsed timestamps.
        Alternatives: Decode tokens at each call site.
        """

        record = self.store.get_credential(scope.scope_type, scope.scope_id)
        if not record:
            return None
        return Credential(
            scope=scope,
            access_token=self.codec.decode(record.access_token),
            refresh_token=self.codec.decode(record.refresh_token),
            expires_at=_parse_timestamp(record.expires_at),
            connected_identity=record.connected_identity,
            connected_at=_parse_timestamp(record.connected_at),
        )

    def get_valid_token(self, scope: CredentialScope) -> str | None:
        """Summary: Return an access token that is good for at least five more minutes.

        Importance: Refreshes ahead of expiry and disconnects the scope on rejection.
        Alternatives: Wait for a 401 and refresh reactively.
        """

        credential = self.load(scope)
        if credential is None or not credential.refresh_token:
            return None
        now = self.clock()
        if (
            credential.access_token
            and credential.expires_at is not None
            and credential.expires_at > now + REFRESH_BUFFER
        ):
            return credential.access_token
        try:
            result = refresh_oauth_token(
                self.config, scope.scope_type, credential.refresh_token, now=now
            )
        except TokenRefreshError as exc:
            logger.warning("Token refresh rejected for %s, disconnecting: %s", scope, exc)
            self.disconnect(scope)
            return None
        self._persist(
            scope,
            result,
            fallback_refresh=credential.refresh_token,
            identity=credential.connected_identity,
            connected_at=credential.connected_at,
        )
        logger.info("Refreshed access token for %s", scope)
        return result.access_token

    def begin_authorization(self, scope: CredentialScope, login_hint: str | None = None) -> str:
        """Summary: Create a state token and return the consent URL for a scope.

        Importance: Binds the later callback to the tenant or user that started it.
        Alternatives: Encode the scope in the state parameter unsigned.
        """

        state = create_state_token()
        self.store.save_oauth_state(state, scope.scope_type, scope.scope_id, self.clock())
        return build_authorization_url(self.config, scope.scope_type, state, login_hint)

    def complete_authorization(self, state: str, code: str) -> Credential:
        """Summary: Resolve the callback state and store the exchanged credential.

        Importance: States expire after fifteen minutes and are single use.
        Alternatives: Accept callbacks without state validation.
        """

        pending = self.store.consume_oauth_state(state)
        if pending is None:
            raise AuthorizationStateError("Unknown OAuth state")
        scope_type, scope_id, created_at = pending
        if self.clock() - created_at > OAUTH_STATE_TTL:
            raise AuthorizationStateError("OAuth state expired")
        return self.store_authorization(CredentialScope(scope_type, scope_id), code)

    def store_authorization(self, scope: CredentialScope, code: str) -> Credential:
        """Summary: Exchange an authorization code and persist the credential.

        Importance: Creates the credential every later refresh builds on.
        Alternatives: Store only the access token and re-consent on expiry.
        """

        now = self.clock()
        result = exchange_oauth_code(self.config, scope.scope_type, code, now=now)
        if not result.refresh_token:
            logger.warning("No refresh token returned for %s; offline_access missing?", scope)
        identity = None
        try:
            identity = fetch_connected_identity(
                self.config.microsoft_graph_base_url, result.access_token
            )
        except ProviderError as exc:
            logger.warning("Could not resolve connected identity for %s: %s", scope, exc)
        self._persist(scope, result, fallback_refresh=None, identity=identity, connected_at=now)
        logger.info("Connected %s as %s", scope, identity or "unknown account")
        credential = self.load(scope)
        assert credential is not None
        return credential

    def disconnect(self, scope: CredentialScope) -> None:
        self.store.clear_credential(scope.scope_type, scope.scope_id)
        logger.info("Cleared credential for %s", scope)

    def status(self, scope: CredentialScope) -> dict[str, Any]:
        """Report whether a scope is connected and as whom."""

        credential = self.load(scope)
        connected = bool(credential and credential.is_connected)
        return {
            "connected": connected,
            "connected_identity": credential.connected_identity if connected else None,
            "connected_at": _format_timestamp(credential.connected_at) if connected else None,
            "expires_at": _format_timestamp(credential.expires_at) if connected else None,
        }

    def _persist(
        self,
        scope: CredentialScope,
        result: OAuthTokenResult,
        fallback_refresh: str | None,
        identity: str | None,
        connected_at: datetime | None,
    ) -> None:
        self.store.save_credential(
            StoredCredential(
                scope_type=scope.scope_type,
                scope_id=scope.scope_id,
                access_token=self.codec.encode(result.access_token),
                refresh_token=self.codec.encode(result.refresh_token or fallback_refresh),
                expires_at=_format_timestamp(result.expires_at),
                connected_identity=identity,
                connected_at=_format_timestamp(connected_at),
            )
        )


@dataclass(frozen=True)
class MailSyncService:
    """Summary: Turns new support mail into tickets exactly once.

    Importance: The mail-to-ticket pipeline behind the scheduled sync job.
    Alternatives: Forward support mail into a third-party helpdesk.
    """

    store: SqliteStore
    tokens: TokenService
    config: AppConfig
    mailbox_factory: Callable[[str], MailboxProvider] | None = None
    clock: Clock = utc_now

    def sync_all(self, scheduled: bool = True) -> SyncResult:
        """Summary: Run a mail sync for every tenant with automatic sync enabled.

        Importance: Entry point of the scheduled trigger.
        Alternatives: Schedule one trigger per tenant.
        """

        try:
            tenants = self.store.list_tenants(auto_sync_only=True)
        except Exception as exc:
            logger.exception("Could not list tenants for mail sync")
            return SyncResult(False, f"Mail sync failed: {exc}")
        totals = {"tenants": len(tenants), "created": 0, "updated": 0, "skipped": 0, "errors": 0}
        details: list[dict[str, Any]] = []
        failures = 0
        for tenant in tenants:
            result = self.run(tenant.id, scheduled=scheduled)
            if not result.success:
                failures += 1
            for key in ("created", "updated", "skipped", "errors"):
                totals[key] += result.stats.get(key, 0)
            details.append({"tenant_id": tenant.id, **result.to_dict()})
        totals["failed_tenants"] = failures
        message = (
            f"Synced {len(tenants) - failures}/{len(tenants)} tenants: "
            f"{totals['created']} created, {totals['updated']} updated"
        )
        return SyncResult(True, message, totals, details)

    def run(self, tenant_id: int, scheduled: bool = True) -> SyncResult:
        """Summary: Ingest one page of new mail for a tenant.

        Importance: Never raises; the trigger always gets a structured result.
        Alternatives: Let failures propagate to the scheduler.
        """

        try:
            return self._run(tenant_id, scheduled)
        except Exception as exc:
            logger.exception("Mail sync failed for tenant %s", tenant_id)
            return SyncResult(False, f"Mail sync failed: {exc}", _empty_mail_stats())

    def _run(self, tenant_id: int, scheduled: bool) -> SyncResult:
        stats = _empty_mail_stats()
        tenant = self.store.get_tenant(tenant_id)
        if not tenant:
            return SyncResult(False, f"Tenant {tenant_id} not found", stats)
        scope = CredentialScope.tenant(tenant.id)
        token = self.tokens.get_valid_token(scope)
        if not token:
            return SyncResult(False, "Mailbox not connected", stats)
        now = self.clock()
        since = self._window_start(tenant.id, now, scheduled)
        mailbox = self._mailbox(token)
        try:
            messages = mailbox.fetch_since(since, MAIL_PAGE_SIZE, self.config.mail_unread_only)
        except ProviderAuthError:
            logger.warning("Mailbox rejected token for tenant %s, disconnecting", tenant.id)
            self.tokens.disconnect(scope)
            return SyncResult(False, "Mailbox authorization revoked, reconnect required", stats)
        except ProviderError as exc:
            logger.warning("Mailbox fetch failed for tenant %s: %s", tenant.id, exc)
            return SyncResult(False, f"Mailbox fetch failed: {exc}", stats)

        stats["total"] = len(messages)
        for message in messages:
            try:
                outcome = self._ingest(tenant, message, now)
            except Exception:
                logger.exception("Failed to ingest message %s", message.provider_message_id)
                stats["errors"] += 1
                continue
            stats[outcome] += 1
            if outcome != "skipped":
                self._mark_read(mailbox, message)

        self.store.advance_sync_cursor(tenant.id, now)
        logger.info(
            "Tenant %s mail sync: %s created, %s updated, %s skipped, %s errors",
            tenant.id,
            stats["created"],
            stats["updated"],
            stats["skipped"],
            stats["errors"],
        )
        return SyncResult(
            True,
            f"{stats['created']} created, {stats['updated']} updated, {stats['skipped']} skipped",
            stats,
        )

    def _window_start(self, tenant_id: int, now: datetime, scheduled: bool) -> datetime:
        """Summary: Compute where this run starts reading mail.

        Importance: Scheduled runs never reach back more than a day.
        Alternatives: Always resume exactly from the cursor.
        """

        cursor = _parse_timestamp(self.store.get_sync_cursor(tenant_id))
        if cursor is None:
            return now - INITIAL_LOOKBACK
        if scheduled:
            return max(cursor, now - SCHEDULED_LOOKBACK)
        return cursor

    def _ingest(self, tenant: StoredTenant, message: MailMessage, now: datetime) -> str:
        """Summary: Dedup, thread, and store one inbound message.

        Importance: Returns the outcome bucket the run statistics count.
        Alternatives: Create one ticket per message and merge later.
        """

        sender = message.sender.address
        if not sender:
            logger.info("Skipping message %s with no sender address", message.provider_message_id)
            return "skipped"
        if is_self_sent(sender, tenant.support_email, self.config.self_sent_policy):
            logger.debug("Skipping self-sent message %s", message.provider_message_id)
            return "skipped"
        if self.store.message_exists(message.provider_message_id):
            return "skipped"
        client = self.store.find_client_by_email(tenant.id, sender)
        inbound = InboundEmail(
            content=message.content,
            from_email=sender,
            external_message_id=message.provider_message_id,
            from_name=message.sender.name,
            client_id=client.id if client else None,
            received_at=message.received_at,
        )
        target = self.store.find_ticket_by_conversation(
            tenant.id, message.conversation_id
        ) or self.store.find_open_ticket_by_sender(tenant.id, sender)
        try:
            if target:
                self.store.append_message(target.id, inbound, now)
                return "updated"
            new_ticket = NewTicket(
                tenant_id=tenant.id,
                subject=message.subject or DEFAULT_SUBJECT,
                sender_email=sender,
                sender_name=message.sender.name or sender,
                conversation_key=message.conversation_id,
                client_id=client.id if client else None,
            )
            try:
                self.store.create_ticket(new_ticket, inbound, now)
                return "created"
            except TicketConflictError as conflict:
                logger.info(
                    "Conversation %s claimed by ticket %s, appending",
                    message.conversation_id,
                    conflict.ticket_id,
                )
                self.store.append_message(conflict.ticket_id, inbound, now)
                return "updated"
        except DuplicateMessageError:
            return "skipped"

    def _mark_read(self, mailbox: MailboxProvider, message: MailMessage) -> None:
        try:
            mailbox.mark_read(message.provider_message_id)
        except ProviderError as exc:
            logger.warning("Could not mark %s as read: %s", message.provider_message_id, exc)

    def _mailbox(self, token: str) -> MailboxProvider:
        if self.mailbox_factory:
            return self.mailbox_factory(token)
        return OutlookMailboxProvider(token, self.config.microsoft_graph_base_url)


@dataclass(frozen=True)
class TicketService:
    """Summary: Agent-side ticket operations.

    Importance: Replies, notes, assignment, and status changes share the state machine.
    Alternatives: Let the API mutate ticket rows directly.
    """

    store: SqliteStore
    tokens: TokenService
    config: AppConfig
    mailbox_factory: Callable[[str], MailboxProvider] | None = None
    clock: Clock = utc_now

    def get_ticket(self, ticket_id: int) -> StoredTicket:
        ticket = self.store.get_ticket(ticket_id)
        if not ticket:
            raise NotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    def list_tickets(
        self, tenant_id: int | None = None, status: str | None = None, limit: int = 50
    ) -> list[StoredTicket]:
        if status is not None:
            status = TicketStatus(status).value
        return self.store.list_tickets(tenant_id=tenant_id, status=status, limit=limit)

    def list_messages(self, ticket_id: int) -> list[StoredTicketMessage]:
        self.get_ticket(ticket_id)
        return self.store.list_ticket_messages(ticket_id)

    def assign(self, ticket_id: int, user_id: int | None) -> StoredTicket:
        self.get_ticket(ticket_id)
        if user_id is not None and not self.store.get_user(user_id):
            raise NotFoundError(f"User {user_id} not found")
        self.store.assign_ticket(ticket_id, user_id)
        return self.get_ticket(ticket_id)

    def add_note(self, ticket_id: int, author_id: int, content: str) -> StoredTicketMessage:
        self.get_ticket(ticket_id)
        author = self.store.get_user(author_id)
        note = InternalNote(content, author_id, author.display_name if author else "")
        return self.store.append_message(ticket_id, note, self.clock())

    def change_status(self, ticket_id: int, status: str) -> StoredTicket:
        """Summary: Move a ticket forward and log the change on its thread.

        Importance: Rejects backward moves with InvalidTransitionError.
        Alternatives: Allow free-form status edits.
        """

        target = TicketStatus(status)
        self.get_ticket(ticket_id)
        note = SystemNote(f"Status changed to {target.value}")
        return self.store.transition_ticket(ticket_id, target, note, self.clock())

    def add_reply(
        self, ticket_id: int, author_id: int, content: str, cc: list[str] | None = None
    ) -> StoredTicketMessage:
        """Summary: Record an agent reply and try to send it from the support mailbox.

        Importance: The reply is stored even when delivery fails; the message records why.
        Alternatives: Refuse to store replies that cannot be sent.
        """

        ticket = self.get_ticket(ticket_id)
        tenant = self.store.get_tenant(ticket.tenant_id)
        author = self.store.get_user(author_id)
        reply = OutboundEmail(
            content=content,
            author_id=author_id,
            to_email=ticket.sender_email,
            from_email=tenant.support_email if tenant else "",
            from_name=author.display_name if author else "",
        )
        stored = self.store.append_message(ticket.id, reply, self.clock())
        error = self._deliver(ticket, content, cc)
        self.store.mark_message_email_status(stored.id, error is None, error)
        return replace(stored, email_sent=error is None, email_error=error)

    def _deliver(self, ticket: StoredTicket, content: str, cc: list[str] | None) -> str | None:
        token = self.tokens.get_valid_token(CredentialScope.tenant(ticket.tenant_id))
        if not token:
            return "Mailbox not connected"
        reply_to = None
        for message in reversed(self.store.list_ticket_messages(ticket.id)):
            if message.message_type == InboundEmail.message_type and message.external_message_id:
                reply_to = message.external_message_id
                break
        mailbox = self._mailbox(token)
        try:
            mailbox.send_reply(
                ticket.sender_email,
                f"Re: {ticket.subject} [{ticket.ticket_number}]",
                content,
                reply_to_message_id=reply_to,
                cc=cc,
            )
        except DeskSyncError as exc:
            logger.warning("Reply on %s not delivered: %s", ticket.ticket_number, exc)
            return str(exc)
        return None

    def _mailbox(self, token: str) -> MailboxProvider:
        if self.mailbox_factory:
            return self.mailbox_factory(token)
        return OutlookMailboxProvider(token, self.config.microsoft_graph_base_url)


@dataclass(frozen=True)
class ReminderService:
    """Summary: Sends chat reminders shortly before calendar events.

    Importance: Each event occurrence is announced once, ten minutes ahead.
    Alternatives: Depend on native calendar pop-ups.
    """

    store: SqliteStore
    tokens: TokenService
    config: AppConfig
    notified: NotifiedEventStore
    notifier: Notifier
    calendar_factory: Callable[[str], CalendarProvider] | None = None
    clock: Clock = utc_now

    def run(self) -> SyncResult:
        """Summary: Sweep every reminder candidate once.

        Importance: One user's failure never stops the sweep for the others.
        Alternatives: Stop at the first provider error.
        """

        stats = {"users": 0, "notifications_sent": 0, "failed": 0}
        try:
            users = self.store.list_reminder_candidates()
        except Exception as exc:
            logger.exception("Could not list reminder candidates")
            return SyncResult(False, f"Reminder sweep failed: {exc}", stats)
        stats["users"] = len(users)
        now = self.clock()
        for user in users:
            try:
                sent, failed = self._sweep_user(user, now)
            except ProviderAuthError:
                logger.warning("Calendar rejected token for user %s, disconnecting", user.id)
                self.tokens.disconnect(CredentialScope.user(user.id))
                stats["failed"] += 1
                continue
            except Exception:
                logger.exception("Reminder sweep failed for user %s", user.id)
                stats["failed"] += 1
                continue
            stats["notifications_sent"] += sent
            stats["failed"] += failed
        return SyncResult(
            True,
            f"{stats['notifications_sent']} reminders sent to {stats['users']} users",
            stats,
        )

    def _sweep_user(self, user: StoredUser, now: datetime) -> tuple[int, int]:
        token = self.tokens.get_valid_token(CredentialScope.user(user.id))
        if not token:
            return 0, 0
        events = self._calendar(token).fetch_window(now, now + REMINDER_HORIZON, REMINDER_PAGE_SIZE)
        display_zone = resolve_timezone(self.config.calendar_timezone)
        sent = failed = 0
        for event in events:
            if event.is_all_day:
                continue
            minutes = minutes_until(event.start, now)
            if not REMINDER_MIN_MINUTES <= minutes <= REMINDER_MAX_MINUTES:
                continue
            key = NotifiedEventKey(user.id, event.event_id, event.raw_start or event.start.isoformat())
            if self.notified.seen(key, now):
                continue
            self.notified.mark(key, now)
            try:
                self.notifier.send(user.chat_id or "", format_reminder(event, minutes, display_zone))
            except NotificationError as exc:
                logger.warning("Reminder for user %s not delivered: %s", user.id, exc)
                failed += 1
                continue
            sent += 1
        return sent, failed

    def _calendar(self, token: str) -> CalendarProvider:
        if self.calendar_factory:
            return self.calendar_factory(token)
        return OutlookCalendarProvider(
            token, self.config.microsoft_graph_base_url, self.config.calendar_timezone
        )


def minutes_until(start: datetime, now: datetime) -> int:
    """Whole minutes from now to start, halves rounded up."""

    return math.floor((start - now).total_seconds() / 60 + 0.5)


def _empty_mail_stats() -> dict[str, int]:
    return {"created": 0, "updated": 0, "skipped": 0, "errors": 0, "total": 0}


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()
