"""Summary: Domain model dataclasses for DeskSync.

Importance: Defines the entities shared across engines, storage, and the API.
Alternatives: Use Pydantic models or ORM classes directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Union


TENANT_SCOPE = "tenant"
USER_SCOPE = "user"


@dataclass(frozen=True)
class CredentialScope:
    """Summary: Identifies who owns an OAuth credential.

    Importance: Tenants own the support mailbox, users own their calendars.
    Alternatives: Keep separate token columns on tenant and user rows.
    """

    scope_type: str
    scope_id: int

    def __post_init__(self) -> None:
        if self.scope_type not in {TENANT_SCOPE, USER_SCOPE}:
            raise ValueError(f"Unknown credential scope: {self.scope_type}")

    @staticmethod
    def tenant(tenant_id: int) -> "CredentialScope":
        return CredentialScope(TENANT_SCOPE, tenant_id)

    @staticmethod
    def user(user_id: int) -> "CredentialScope":
        return CredentialScope(USER_SCOPE, user_id)

    def __str__(self) -> str:
        return f"{self.scope_type}:{self.scope_id}"


@dataclass(frozen=True)
class Credential:
    """Summary: Decoded OAuth credential for one scope.

    Importance: Carries everything the token manager needs to decide on a refresh.
    Alternatives: Pass raw database rows around.
    """

    scope: CredentialScope
    access_token: str | None
    refresh_token: str | None
    expires_at: datetime | None
    connected_identity: str | None = None
    connected_at: datetime | None = None

    @property
    def is_connected(self) -> bool:
        return bool(self.refresh_token)


@dataclass(frozen=True)
class Tenant:
    """Summary: A customer organisation with its own support mailbox.

    Importance: Owns the mailbox credential, the sync cursor, and its tickets.
    Alternatives: Run a single implicit tenant from configuration.
    """

    name: str
    support_email: str
    auto_sync: bool = True


@dataclass(frozen=True)
class User:
    """Summary: A back-office user who may connect a personal calendar.

    Importance: Reminder delivery is per user and per chat channel.
    Alternatives: Send reminders to one shared channel.
    """

    tenant_id: int
    display_name: str
    email: str
    chat_id: str | None = None
    is_active: bool = True


@dataclass(frozen=True)
class Client:
    """Summary: A CRM client that support mail can be linked to.

    Importance: Lets tickets point at the customer record behind a sender.
    Alternatives: Store only the sender address on tickets.
    """

    tenant_id: int
    company_name: str
    email: str


@dataclass(frozen=True)
class EmailAddress:
    """Address and display name as reported by the provider."""

    address: str
    name: str = ""


@dataclass(frozen=True)
class MailMessage:
    """Summary: An inbound email as returned by the mailbox provider.

    Importance: Normalizes Graph payloads before the ingestion engine sees them.
    Alternatives: Work on raw JSON dictionaries in the engine.
    """

    provider_message_id: str
    subject: str
    sender: EmailAddress
    body: str
    body_preview: str
    received_at: datetime
    conversation_id: str
    is_read: bool = False

    @property
    def content(self) -> str:
        return self.body or self.body_preview


@dataclass(frozen=True)
class CalendarEvent:
    """Summary: A calendar event observed during one reminder sweep.

    Importance: Transient input to the reminder window check; never persisted.
    Alternatives: Store events locally and diff between sweeps.
    """

    event_id: str
    subject: str
    start: datetime
    end: datetime
    location: str | None = None
    is_all_day: bool = False
    raw_start: str = ""


@dataclass(frozen=True)
class NotifiedEventKey:
    """Identity of one reminder occurrence: user, event, and start time."""

    user_id: int
    event_id: str
    event_start: str


@dataclass(frozen=True)
class NewTicket:
    """Summary: Fields needed to open a ticket from an inbound email.

    Importance: Keeps ticket creation inputs explicit for the store.
    Alternatives: Pass keyword arguments straight into SQL helpers.
    """

    tenant_id: int
    subject: str
    sender_email: str
    sender_name: str
    conversation_key: str
    client_id: int | None = None
    priority: str = "normal"


@dataclass(frozen=True)
class InboundEmail:
    """Summary: Email received from a customer.

    Importance: The only variant that carries the provider dedup key.
    Alternatives: One flat message class with a free-form type string.
    """

    message_type: ClassVar[str] = "email_in"

    content: str
    from_email: str
    external_message_id: str
    from_name: str = ""
    client_id: int | None = None
    received_at: datetime | None = None

    def __post_init__(self) -> None:
        if not self.from_email:
            raise ValueError("Inbound email requires a sender address")
        if not self.external_message_id:
            raise ValueError("Inbound email requires a provider message id")


@dataclass(frozen=True)
class OutboundEmail:
    """Summary: Reply sent by an agent to the customer.

    Importance: Drives first-response tracking and the new to open transition.
    Alternatives: Infer direction from the presence of a user id.
    """

    message_type: ClassVar[str] = "email_out"

    content: str
    author_id: int
    to_email: str
    from_email: str = ""
    from_name: str = ""

    def __post_init__(self) -> None:
        if not self.to_email:
            raise ValueError("Outbound email requires a recipient")


@dataclass(frozen=True)
class InternalNote:
    """Agent note that is never sent to the customer."""

    message_type: ClassVar[str] = "note"

    content: str
    author_id: int
    from_name: str = ""


@dataclass(frozen=True)
class SystemNote:
    """Message written by DeskSync itself, such as a status change."""

    message_type: ClassVar[str] = "system"

    content: str


TicketMessageBody = Union[InboundEmail, OutboundEmail, InternalNote, SystemNote]


@dataclass
class SyncResult:
    """Summary: Structured outcome of one job invocation.

    Importance: Entry points always return this instead of raising.
    Alternatives: Let exceptions reach the scheduler and parse them there.
    """

    success: bool
    message: str
    stats: dict[str, int] = field(default_factory=dict)
    details: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "stats": dict(self.stats),
        }
        if self.details:
            payload["details"] = list(self.details)
        return payload
