"""Summary: Exception types shared by the sync engines and the HTTP layer.

Importance: Lets engines tell transient provider failures from revoked credentials.
Alternatives: Raise RuntimeError everywhere and inspect messages.
"""

from __future__ import annotations


class DeskSyncError(Exception):
    """Base class for DeskSync errors."""


class ProviderError(DeskSyncError):
    """Summary: A provider call failed or could not be completed.

    Importance: Marks transient failures that abort the current run for one scope.
    Alternatives: Return None from provider clients and lose the reason.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ProviderAuthError(ProviderError):
    """Summary: The provider rejected the access token (HTTP 401).

    Importance: Triggers the one-way transition to a disconnected credential.
    Alternatives: Treat 401 like any other provider failure and retry forever.
    """


class TokenRefreshError(DeskSyncError):
    """Summary: The token endpoint rejected a refresh or code exchange.

    Importance: Distinguishes a dead refresh token from a network hiccup.
    Alternatives: Check HTTP status codes at every call site.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotificationError(DeskSyncError):
    """Raised when a chat notification cannot be delivered."""


class InvalidTransitionError(DeskSyncError):
    """Raised when a ticket status change is not allowed."""


class DuplicateMessageError(DeskSyncError):
    """Summary: A message with the same external id is already stored.

    Importance: Surfaces the unique-constraint hit as a normal skip outcome.
    Alternatives: Let sqlite3.IntegrityError leak out of the store.
    """

    def __init__(self, external_message_id: str) -> None:
        super().__init__(f"Message {external_message_id} already ingested")
        self.external_message_id = external_message_id


class TicketConflictError(DeskSyncError):
    """Summary: Another run created a ticket for the same conversation first.

    Importance: Lets the ingestion engine re-resolve the thread instead of duplicating it.
    Alternatives: Allow duplicate tickets and merge them manually.
    """

    def __init__(self, ticket_id: int) -> None:
        super().__init__(f"Conversation already owned by ticket {ticket_id}")
        self.ticket_id = ticket_id


class NotFoundError(DeskSyncError):
    """Raised when a tenant, user, or ticket does not exist."""


class AuthorizationStateError(DeskSyncError):
    """Summary: An OAuth callback carried an unknown or expired state token.

    Importance: Rejects forged or replayed callbacks before any code exchange.
    Alternatives: Trust the state parameter and exchange the code anyway.
    """
