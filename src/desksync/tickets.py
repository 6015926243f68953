"""Summary: Ticket status transitions and ticket number formatting.

Importance: Keeps every status rule in one place so ingestion and agents agree.
Alternatives: Scatter status checks across services and API handlers.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from desksync.errors import InvalidTransitionError


class TicketStatus(str, Enum):
    """Summary: Lifecycle states of a support ticket, in order.

    Importance: The ordering defines which manual moves count as forward.
    Alternatives: Store statuses as free-form strings.
    """

    NEW = "new"
    OPEN = "open"
    PENDING = "pending"
    RESOLVED = "resolved"
    CLOSED = "closed"


STATUS_ORDER = [
    TicketStatus.NEW,
    TicketStatus.OPEN,
    TicketStatus.PENDING,
    TicketStatus.RESOLVED,
    TicketStatus.CLOSED,
]

# Tickets in these states no longer match by sender during threading.
INACTIVE_STATUSES = frozenset({TicketStatus.RESOLVED, TicketStatus.CLOSED})

TICKET_NUMBER_WIDTH = 4
_NUMBER_SUFFIX = re.compile(r"(\d+)$")


@dataclass(frozen=True)
class TicketUpdate:
    """Summary: Field changes produced by appending one message to a ticket.

    Importance: Lets the store apply state-machine output without re-deriving it.
    Alternatives: Mutate ticket rows directly inside each service method.
    """

    status: TicketStatus
    last_activity_at: datetime
    first_response_at: datetime | None
    response_count: int


def status_after_inbound(current: TicketStatus, has_assignee: bool) -> TicketStatus:
    """Summary: Status after a customer email lands on an existing ticket.

    Importance: A closed ticket reopens; an assigned new ticket becomes open.
    Alternatives: Always reset the ticket to new on customer replies.
    """

    if current == TicketStatus.CLOSED:
        return TicketStatus.OPEN
    if current == TicketStatus.NEW and has_assignee:
        return TicketStatus.OPEN
    return current


def status_after_outbound(current: TicketStatus) -> TicketStatus:
    """Status after an agent reply; only a new ticket moves to open."""

    if current == TicketStatus.NEW:
        return TicketStatus.OPEN
    return current


def validate_manual_transition(current: TicketStatus, target: TicketStatus) -> TicketStatus:
    """Summary: Check an agent-driven status change.

    Importance: Agents may only move a ticket forward; reopening is reserved for inbound mail.
    Alternatives: Allow arbitrary status edits from the UI.
    """

    if STATUS_ORDER.index(target) <= STATUS_ORDER.index(current):
        raise InvalidTransitionError(
            f"Cannot move ticket from {current.value} to {target.value}"
        )
    return target


def apply_message(
    status: TicketStatus,
    message_type: str,
    *,
    now: datetime,
    first_response_at: datetime | None,
    response_count: int,
    has_assignee: bool,
) -> TicketUpdate:
    """Summary: Compute ticket fields after a message of the given type is appended.

    Importance: Single source for response counting and first-response stamping.
    Alternatives: Update counters in SQL triggers.
    """

    next_status = status
    next_first_response = first_response_at
    if message_type == "email_in":
        next_status = status_after_inbound(status, has_assignee)
    elif message_type == "email_out":
        next_status = status_after_outbound(status)
        if next_first_response is None:
            next_first_response = now
    return TicketUpdate(
        status=next_status,
        last_activity_at=now,
        first_response_at=next_first_response,
        response_count=response_count + 1,
    )


def ticket_number_prefix(year: int) -> str:
    return f"TKT-{year}-"


def format_ticket_number(prefix: str, sequence: int) -> str:
    return f"{prefix}{sequence:0{TICKET_NUMBER_WIDTH}d}"


def parse_ticket_sequence(ticket_number: str) -> int:
    """Return the trailing sequence of a ticket number, or 0 when absent."""

    match = _NUMBER_SUFFIX.search(ticket_number)
    return int(match.group(1)) if match else 0
