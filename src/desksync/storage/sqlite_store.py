"""Summary: SQLite storage implementation for DeskSync.

Importance: Holds credentials, sync cursors, tickets, and their messages.
Alternatives: Use an ORM or an external database immediately.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from desksync.errors import DuplicateMessageError, NotFoundError, TicketConflictError
from desksync.models import Client, NewTicket, Tenant, TicketMessageBody, User
from desksync.tickets import (
    INACTIVE_STATUSES,
    TicketStatus,
    apply_message,
    format_ticket_number,
    parse_ticket_sequence,
    ticket_number_prefix,
    validate_manual_transition,
)


logger = logging.getLogger(__name__)

TICKET_COLUMNS = """
    id, tenant_id, ticket_number, subject, sender_email, sender_name, status, client_id,
    conversation_key, priority, assignee_id, last_activity_at, first_response_at,
    response_count, created_at
"""
MESSAGE_COLUMNS = """
    id, ticket_id, message_type, content, from_email, from_name, to_email, author_id,
    external_message_id, email_sent, email_error, created_at
"""


@dataclass(frozen=True)
class StoredTenant:
    """Tenant record with database identifier."""

    id: int
    name: str
    support_email: str
    auto_sync: bool


@dataclass(frozen=True)
class StoredUser:
    """Summary: User record with database identifier.

    Importance: Reminder sweeps select users by activity and chat channel.
    Alternatives: Keep chat identifiers in a separate table.
    """

    id: int
    tenant_id: int
    display_name: str
    email: str
    chat_id: str | None
    is_active: bool


@dataclass(frozen=True)
class StoredClient:
    """Client record with database identifier."""

    id: int
    tenant_id: int
    company_name: str
    email: str


@dataclass(frozen=True)
class StoredCredential:
    """Summary: Credential row with tokens still encoded.

    Importance: Decoding stays in the token service that owns the codec.
    Alternatives: Decode inside the store and pass plaintext around.
    """

    scope_type: str
    scope_id: int
    access_token: str | None
    refresh_token: str | None
    expires_at: str | None
    connected_identity: str | None
    connected_at: str | None


@dataclass(frozen=True)
class StoredTicket:
    """Summary: Ticket record with database identifier.

    Importance: The unit agents work on and ingestion threads mail into.
    Alternatives: Derive tickets on the fly from message threads.
    """

    id: int
    tenant_id: int
    ticket_number: str
    subject: str
    sender_email: str
    sender_name: str
    status: str
    client_id: int | None
    conversation_key: str
    priority: str
    assignee_id: int | None
    last_activity_at: str
    first_response_at: str | None
    response_count: int
    created_at: str


@dataclass(frozen=True)
class StoredTicketMessage:
    """Ticket message record with database identifier."""

    id: int
    ticket_id: int
    message_type: str
    content: str
    from_email: str | None
    from_name: str | None
    to_email: str | None
    author_id: int | None
    external_message_id: str | None
    email_sent: bool | None
    email_error: str | None
    created_at: str


class SqliteStore:
    """Summary: SQLite-backed storage for DeskSync.

    Importance: Enables local-first persistence with minimal dependencies.
    Alternatives: Use Postgres and SQLAlchemy from day one.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = Path(db_path)

    def initialize(self) -> None:
        """Summary: Create tables if they do not exist.

        Importance: Ensures the database is ready for sync runs and queries.
        Alternatives: Run migrations using a dedicated migration tool.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS tenants (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    support_email TEXT NOT NULL,
                    auto_sync INTEGER NOT NULL DEFAULT 1
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id INTEGER NOT NULL,
                    display_name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    chat_id TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS clients (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id INTEGER NOT NULL,
                    company_name TEXT NOT NULL,
                    email TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS credentials (
                    scope_type TEXT NOT NULL,
                    scope_id INTEGER NOT NULL,
                    access_token TEXT,
                    refresh_token TEXT,
                    expires_at TEXT,
                    connected_identity TEXT,
                    connected_at TEXT,
                    PRIMARY KEY (scope_type, scope_id)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_cursors (
                    tenant_id INTEGER PRIMARY KEY,
                    last_synced_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS ticket_counters (
                    prefix TEXT PRIMARY KEY,
                    last_value INTEGER NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS tickets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id INTEGER NOT NULL,
                    ticket_number TEXT NOT NULL UNIQUE,
                    subject TEXT NOT NULL,
                    sender_email TEXT NOT NULL,
                    sender_name TEXT,
                    status TEXT NOT NULL,
                    client_id INTEGER,
                    conversation_key TEXT NOT NULL,
                    priority TEXT NOT NULL DEFAULT 'normal',
                    assignee_id INTEGER,
                    last_activity_at TEXT NOT NULL,
                    first_response_at TEXT,
                    response_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS ticket_messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ticket_id INTEGER NOT NULL,
                    message_type TEXT NOT NULL,
                    content TEXT NOT NULL,
                    from_email TEXT,
                    from_name TEXT,
                    to_email TEXT,
                    author_id INTEGER,
                    external_message_id TEXT UNIQUE,
                    email_sent INTEGER,
                    email_error TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS oauth_states (
                    state TEXT PRIMARY KEY,
                    scope_type TEXT NOT NULL,
                    scope_id INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_tickets_conversation "
                "ON tickets (tenant_id, conversation_key)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_tickets_sender ON tickets (tenant_id, sender_email)"
            )
            connection.commit()

    def create_tenant(self, tenant: Tenant) -> int:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "INSERT INTO tenants (name, support_email, auto_sync) VALUES (?, ?, ?)",
                (tenant.name, tenant.support_email.lower(), int(tenant.auto_sync)),
            )
            tenant_id = cursor.lastrowid
            connection.commit()
        return int(tenant_id)

    def get_tenant(self, tenant_id: int) -> StoredTenant | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "SELECT id, name, support_email, auto_sync FROM tenants WHERE id = ?",
                (tenant_id,),
            )
            row = cursor.fetchone()
        return _tenant_from_row(row) if row else None

    def list_tenants(self, auto_sync_only: bool = False) -> list[StoredTenant]:
        """Summary: Retrieve tenants, optionally only those with automatic sync.

        Importance: The scheduled mail job iterates over this list.
        Alternatives: Keep a separate schedule table per tenant.
        """

        query = "SELECT id, name, support_email, auto_sync FROM tenants"
        if auto_sync_only:
            query += " WHERE auto_sync = 1"
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(query + " ORDER BY id")
            rows = cursor.fetchall()
        return [_tenant_from_row(row) for row in rows]

    def create_user(self, user: User) -> int:
        """Summary: Ensure a user exists and return their ID.

        Importance: Re-running onboarding keeps a single record per address.
        Alternatives: Fail on duplicate emails.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT OR IGNORE INTO users (tenant_id, display_name, email, chat_id, is_active)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    user.tenant_id,
                    user.display_name,
                    user.email.lower(),
                    user.chat_id,
                    int(user.is_active),
                ),
            )
            if cursor.rowcount:
                user_id = cursor.lastrowid
            else:
                cursor.execute("SELECT id FROM users WHERE email = ?", (user.email.lower(),))
                row = cursor.fetchone()
                user_id = int(row[0]) if row else 0
            connection.commit()
        return int(user_id)

    def get_user(self, user_id: int) -> StoredUser | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT id, tenant_id, display_name, email, chat_id, is_active
                FROM users WHERE id = ?
                """,
                (user_id,),
            )
            row = cursor.fetchone()
        return _user_from_row(row) if row else None

    def list_reminder_candidates(self) -> list[StoredUser]:
        """Summary: Active users with a chat channel and a calendar refresh token.

        Importance: Limits the reminder sweep to users who can actually be notified.
        Alternatives: Sweep every user and skip inside the loop.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT u.id, u.tenant_id, u.display_name, u.email, u.chat_id, u.is_active
                FROM users u
                JOIN credentials c ON c.scope_type = 'user' AND c.scope_id = u.id
                WHERE u.is_active = 1
                  AND u.chat_id IS NOT NULL AND u.chat_id != ''
                  AND c.refresh_token IS NOT NULL
                ORDER BY u.id
                """
            )
            rows = cursor.fetchall()
        return [_user_from_row(row) for row in rows]

    def create_client(self, client: Client) -> int:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "INSERT INTO clients (tenant_id, company_name, email) VALUES (?, ?, ?)",
                (client.tenant_id, client.company_name, client.email.lower()),
            )
            client_id = cursor.lastrowid
            connection.commit()
        return int(client_id)

    def find_client_by_email(self, tenant_id: int, email: str) -> StoredClient | None:
        """Exact, case-insensitive match on the client's email address."""

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT id, tenant_id, company_name, email FROM clients
                WHERE tenant_id = ? AND lower(email) = ?
                ORDER BY id LIMIT 1
                """,
                (tenant_id, email.lower()),
            )
            row = cursor.fetchone()
        return StoredClient(*row) if row else None

    def get_credential(self, scope_type: str, scope_id: int) -> StoredCredential | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT scope_type, scope_id, access_token, refresh_token, expires_at,
                       connected_identity, connected_at
                FROM credentials WHERE scope_type = ? AND scope_id = ?
                """,
                (scope_type, scope_id),
            )
            row = cursor.fetchone()
        return StoredCredential(*row) if row else None

    def save_credential(self, credential: StoredCredential) -> None:
        """Summary: Insert or replace the credential for one scope.

        Importance: Called on code exchange and after every successful refresh.
        Alternatives: Keep a history of tokens per scope.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO credentials (
                    scope_type, scope_id, access_token, refresh_token, expires_at,
                    connected_identity, connected_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(scope_type, scope_id) DO UPDATE SET
                    access_token = excluded.access_token,
                    refresh_token = excluded.refresh_token,
                    expires_at = excluded.expires_at,
                    connected_identity = excluded.connected_identity,
                    connected_at = excluded.connected_at
                """,
                (
                    credential.scope_type,
                    credential.scope_id,
                    credential.access_token,
                    credential.refresh_token,
                    credential.expires_at,
                    credential.connected_identity,
                    credential.connected_at,
                ),
            )
            connection.commit()

    def clear_credential(self, scope_type: str, scope_id: int) -> None:
        """Summary: Null out every token field of a scope.

        Importance: A cleared scope stays disconnected until a human re-authorizes.
        Alternatives: Delete the row and lose the scope's history.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE credentials
                SET access_token = NULL, refresh_token = NULL, expires_at = NULL,
                    connected_identity = NULL, connected_at = NULL
                WHERE scope_type = ? AND scope_id = ?
                """,
                (scope_type, scope_id),
            )
            connection.commit()

    def get_sync_cursor(self, tenant_id: int) -> str | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "SELECT last_synced_at FROM sync_cursors WHERE tenant_id = ?", (tenant_id,)
            )
            row = cursor.fetchone()
        return row[0] if row else None

    def advance_sync_cursor(self, tenant_id: int, synced_at: datetime) -> bool:
        """Summary: Move a tenant's cursor forward, never backwards.

        Importance: A slow run finishing late cannot rewind a faster run's progress.
        Alternatives: Last writer wins.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO sync_cursors (tenant_id, last_synced_at) VALUES (?, ?)
                ON CONFLICT(tenant_id) DO UPDATE SET last_synced_at = excluded.last_synced_at
                WHERE excluded.last_synced_at > sync_cursors.last_synced_at
                """,
                (tenant_id, _iso(synced_at)),
            )
            advanced = cursor.rowcount > 0
            connection.commit()
        return advanced

    def save_oauth_state(self, state: str, scope_type: str, scope_id: int, now: datetime) -> None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "INSERT INTO oauth_states (state, scope_type, scope_id, created_at) VALUES (?, ?, ?, ?)",
                (state, scope_type, scope_id, _iso(now)),
            )
            connection.commit()

    def consume_oauth_state(self, state: str) -> tuple[str, int, datetime] | None:
        """Summary: Fetch and delete a pending OAuth state in one step.

        Importance: A state token can complete at most one authorization.
        Alternatives: Mark states as used and keep them for auditing.
        """

        with self._transaction() as cursor:
            cursor.execute(
                "SELECT scope_type, scope_id, created_at FROM oauth_states WHERE state = ?",
                (state,),
            )
            row = cursor.fetchone()
            if row:
                cursor.execute("DELETE FROM oauth_states WHERE state = ?", (state,))
        if not row:
            return None
        return row[0], int(row[1]), datetime.fromisoformat(row[2])

    def message_exists(self, external_message_id: str) -> bool:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "SELECT 1 FROM ticket_messages WHERE external_message_id = ?",
                (external_message_id,),
            )
            return cursor.fetchone() is not None

    def find_ticket_by_conversation(
        self, tenant_id: int, conversation_key: str
    ) -> StoredTicket | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {TICKET_COLUMNS} FROM tickets
                WHERE tenant_id = ? AND conversation_key = ?
                ORDER BY created_at DESC, id DESC LIMIT 1
                """,
                (tenant_id, conversation_key),
            )
            row = cursor.fetchone()
        return StoredTicket(*row) if row else None

    def find_open_ticket_by_sender(self, tenant_id: int, sender_email: str) -> StoredTicket | None:
        """Summary: Most recent ticket from a sender that is still being worked.

        Importance: Threads replies from clients that break the conversation id.
        Alternatives: Always open a new ticket when the conversation id differs.
        """

        inactive = tuple(status.value for status in INACTIVE_STATUSES)
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {TICKET_COLUMNS} FROM tickets
                WHERE tenant_id = ? AND lower(sender_email) = ?
                  AND status NOT IN ({", ".join("?" for _ in inactive)})
                ORDER BY created_at DESC, id DESC LIMIT 1
                """,
                (tenant_id, sender_email.lower(), *inactive),
            )
            row = cursor.fetchone()
        return StoredTicket(*row) if row else None

    def create_ticket(
        self, ticket: NewTicket, first_message: TicketMessageBody, now: datetime
    ) -> StoredTicket:
        """Summary: Create a ticket with its first message in one transaction.

        Importance: Number allocation, ticket, and message either all land or none do.
        Alternatives: Insert the ticket first and attach the message afterwards.
        """

        with self._transaction() as cursor:
            cursor.execute(
                "SELECT id FROM tickets WHERE tenant_id = ? AND conversation_key = ? LIMIT 1",
                (ticket.tenant_id, ticket.conversation_key),
            )
            existing = cursor.fetchone()
            if existing:
                raise TicketConflictError(int(existing[0]))
            ticket_number = self._next_ticket_number(cursor, ticket_number_prefix(now.year))
            update = apply_message(
                TicketStatus.NEW,
                first_message.message_type,
                now=now,
                first_response_at=None,
                response_count=0,
                has_assignee=False,
            )
            cursor.execute(
                """
                INSERT INTO tickets (
                    tenant_id, ticket_number, subject, sender_email, sender_name, status,
                    client_id, conversation_key, priority, assignee_id, last_activity_at,
                    first_response_at, response_count, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?, ?, ?)
                """,
                (
                    ticket.tenant_id,
                    ticket_number,
                    ticket.subject,
                    ticket.sender_email.lower(),
                    ticket.sender_name,
                    update.status.value,
                    ticket.client_id,
                    ticket.conversation_key,
                    ticket.priority,
                    _iso(update.last_activity_at),
                    _iso(update.first_response_at),
                    update.response_count,
                    _iso(now),
                ),
            )
            ticket_id = int(cursor.lastrowid)
            self._insert_message(cursor, ticket_id, first_message, now)
            cursor.execute(f"SELECT {TICKET_COLUMNS} FROM tickets WHERE id = ?", (ticket_id,))
            row = cursor.fetchone()
        logger.info("Created ticket %s for %s", ticket_number, ticket.sender_email)
        return StoredTicket(*row)

    def append_message(
        self, ticket_id: int, message: TicketMessageBody, now: datetime
    ) -> StoredTicketMessage:
        """Summary: Append a message and apply the resulting ticket transition.

        Importance: Status, activity, and counters move together with the message.
        Alternatives: Update ticket fields in a separate call.
        """

        with self._transaction() as cursor:
            current = self._locked_ticket(cursor, ticket_id)
            message_id = self._append(cursor, current, message, now, TicketStatus(current.status))
            cursor.execute(f"SELECT {MESSAGE_COLUMNS} FROM ticket_messages WHERE id = ?", (message_id,))
            row = cursor.fetchone()
        return _message_from_row(row)

    def transition_ticket(
        self, ticket_id: int, target: TicketStatus, note: TicketMessageBody, now: datetime
    ) -> StoredTicket:
        """Summary: Apply an agent status change and record it as a message.

        Importance: The status check and the write share one lock.
        Alternatives: Validate in the service and update without a transaction.
        """

        with self._transaction() as cursor:
            current = self._locked_ticket(cursor, ticket_id)
            validate_manual_transition(TicketStatus(current.status), target)
            self._append(cursor, current, note, now, target)
            cursor.execute(f"SELECT {TICKET_COLUMNS} FROM tickets WHERE id = ?", (ticket_id,))
            row = cursor.fetchone()
        return StoredTicket(*row)

    def assign_ticket(self, ticket_id: int, assignee_id: int | None) -> bool:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "UPDATE tickets SET assignee_id = ? WHERE id = ?", (assignee_id, ticket_id)
            )
            updated = cursor.rowcount > 0
            connection.commit()
        return updated

    def get_ticket(self, ticket_id: int) -> StoredTicket | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(f"SELECT {TICKET_COLUMNS} FROM tickets WHERE id = ?", (ticket_id,))
            row = cursor.fetchone()
        return StoredTicket(*row) if row else None

    def list_tickets(
        self, tenant_id: int | None = None, status: str | None = None, limit: int = 50
    ) -> list[StoredTicket]:
        """Summary: Retrieve tickets by most recent activity.

        Importance: Powers the CLI and API ticket queues.
        Alternatives: Paginate with keyset cursors.
        """

        clauses: list[str] = []
        params: list[object] = []
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {TICKET_COLUMNS} FROM tickets {where}
                ORDER BY last_activity_at DESC, id DESC LIMIT ?
                """,
                (*params, limit),
            )
            rows = cursor.fetchall()
        return [StoredTicket(*row) for row in rows]

    def list_ticket_messages(self, ticket_id: int) -> list[StoredTicketMessage]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {MESSAGE_COLUMNS} FROM ticket_messages
                WHERE ticket_id = ? ORDER BY created_at ASC, id ASC
                """,
                (ticket_id,),
            )
            rows = cursor.fetchall()
        return [_message_from_row(row) for row in rows]

    def mark_message_email_status(
        self, message_id: int, sent: bool, error: str | None = None
    ) -> None:
        """Record whether an outbound reply actually left the mailbox."""

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "UPDATE ticket_messages SET email_sent = ?, email_error = ? WHERE id = ?",
                (int(sent), error, message_id),
            )
            connection.commit()

    def _next_ticket_number(self, cursor: sqlite3.Cursor, prefix: str) -> str:
        """Summary: Allocate the next number for a prefix inside the caller's transaction.

        Importance: The counter row serializes allocation; UNIQUE catches anything else.
        Alternatives: Count existing tickets, which races under concurrent runs.
        """

        cursor.execute("SELECT last_value FROM ticket_counters WHERE prefix = ?", (prefix,))
        row = cursor.fetchone()
        if row:
            last_value = int(row[0])
        else:
            cursor.execute(
                "SELECT ticket_number FROM tickets WHERE ticket_number LIKE ?", (f"{prefix}%",)
            )
            last_value = max(
                (parse_ticket_sequence(number) for (number,) in cursor.fetchall()), default=0
            )
        next_value = last_value + 1
        cursor.execute(
            """
            INSERT INTO ticket_counters (prefix, last_value) VALUES (?, ?)
            ON CONFLICT(prefix) DO UPDATE SET last_value = excluded.last_value
            """,
            (prefix, next_value),
        )
        return format_ticket_number(prefix, next_value)

    def _locked_ticket(self, cursor: sqlite3.Cursor, ticket_id: int) -> StoredTicket:
        cursor.execute(f"SELECT {TICKET_COLUMNS} FROM tickets WHERE id = ?", (ticket_id,))
        row = cursor.fetchone()
        if not row:
            raise NotFoundError(f"Ticket {ticket_id} not found")
        return StoredTicket(*row)

    def _append(
        self,
        cursor: sqlite3.Cursor,
        ticket: StoredTicket,
        message: TicketMessageBody,
        now: datetime,
        status: TicketStatus,
    ) -> int:
        update = apply_message(
            status,
            message.message_type,
            now=now,
            first_response_at=_parse_iso(ticket.first_response_at),
            response_count=ticket.response_count,
            has_assignee=ticket.assignee_id is not None,
        )
        message_id = self._insert_message(cursor, ticket.id, message, now)
        cursor.execute(
            """
            UPDATE tickets
            SET status = ?, last_activity_at = ?, first_response_at = ?, response_count = ?
            WHERE id = ?
            """,
            (
                update.status.value,
                _iso(update.last_activity_at),
                _iso(update.first_response_at),
                update.response_count,
                ticket.id,
            ),
        )
        return message_id

    def _insert_message(
        self, cursor: sqlite3.Cursor, ticket_id: int, message: TicketMessageBody, now: datetime
    ) -> int:
        external_id = getattr(message, "external_message_id", None)
        # Inbound mail keeps its provider timestamp so threads read in mailbox order.
        created_at = getattr(message, "received_at", None) or now
        try:
            cursor.execute(
                """
                INSERT INTO ticket_messages (
                    ticket_id, message_type, content, from_email, from_name, to_email,
                    author_id, external_message_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    ticket_id,
                    message.message_type,
                    message.content,
                    getattr(message, "from_email", None),
                    getattr(message, "from_name", None),
                    getattr(message, "to_email", None),
                    getattr(message, "author_id", None),
                    external_id,
                    _iso(created_at),
                ),
            )
        except sqlite3.IntegrityError as exc:
            if external_id:
                raise DuplicateMessageError(external_id) from exc
            raise
        return int(cursor.lastrowid)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        """Summary: Run statements under a write lock taken up front.

        Importance: BEGIN IMMEDIATE serializes writers before they read counters.
        Alternatives: Deferred transactions that upgrade and may deadlock.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            try:
                yield cursor
            except BaseException:
                connection.rollback()
                raise
            connection.commit()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Summary: Context manager for SQLite connections.

        Importance: Ensures connections are closed cleanly after use.
        Alternatives: Keep a single long-lived connection.
        """

        connection = sqlite3.connect(self._db_path, timeout=10)
        try:
            yield connection
        finally:
            connection.close()


def _tenant_from_row(row: tuple) -> StoredTenant:
    return StoredTenant(int(row[0]), row[1], row[2], bool(row[3]))


def _user_from_row(row: tuple) -> StoredUser:
    return StoredUser(int(row[0]), int(row[1]), row[2], row[3], row[4], bool(row[5]))


def _message_from_row(row: tuple) -> StoredTicketMessage:
    values = list(row)
    if values[9] is not None:
        values[9] = bool(values[9])
    return StoredTicketMessage(*values)


def _iso(value: datetime | None) -> str | None:
    """Serialize datetimes as UTC ISO strings so text ordering matches time ordering."""

    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)
