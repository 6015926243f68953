"""Summary: Tests for the ticket state machine and numbering helpers.

Importance: Ensures ingestion and agent actions move tickets consistently.
Alternatives: Cover transitions only through end-to-end sync runs.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from desksync.errors import InvalidTransitionError
from desksync.models import InboundEmail, OutboundEmail
from desksync.tickets import (
    TicketStatus,
    apply_message,
    format_ticket_number,
    parse_ticket_sequence,
    status_after_inbound,
    status_after_outbound,
    ticket_number_prefix,
    validate_manual_transition,
)


NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "current,assigned,expected",
    [
        (TicketStatus.CLOSED, False, TicketStatus.OPEN),
        (TicketStatus.NEW, True, TicketStatus.OPEN),
        (TicketStatus.NEW, False, TicketStatus.NEW),
        (TicketStatus.PENDING, True, TicketStatus.PENDING),
        (TicketStatus.RESOLVED, False, TicketStatus.RESOLVED),
    ],
)
def test_status_after_inbound(current, assigned, expected) -> None:
    assert status_after_inbound(current, assigned) == expected


def test_status_after_outbound_only_moves_new() -> None:
    assert status_after_outbound(TicketStatus.NEW) == TicketStatus.OPEN
    assert status_after_outbound(TicketStatus.PENDING) == TicketStatus.PENDING


def test_manual_transitions_move_forward_only() -> None:
    """Summary: Agents cannot move a ticket backwards or sideways.

    Importance: Reopening is reserved for customer mail.
    Alternatives: Allow any status edit and audit it.
    """

    assert validate_manual_transition(TicketStatus.NEW, TicketStatus.RESOLVED) == TicketStatus.RESOLVED
    with pytest.raises(InvalidTransitionError):
        validate_manual_transition(TicketStatus.CLOSED, TicketStatus.OPEN)
    with pytest.raises(InvalidTransitionError):
        validate_manual_transition(TicketStatus.OPEN, TicketStatus.OPEN)


def test_apply_outbound_stamps_first_response_once() -> None:
    first = apply_message(
        TicketStatus.NEW,
        OutboundEmail.message_type,
        now=NOW,
        first_response_at=None,
        response_count=1,
        has_assignee=False,
    )
    assert first.status == TicketStatus.OPEN
    assert first.first_response_at == NOW
    assert first.response_count == 2
    later = datetime(2026, 3, 11, tzinfo=timezone.utc)
    second = apply_message(
        first.status,
        OutboundEmail.message_type,
        now=later,
        first_response_at=first.first_response_at,
        response_count=first.response_count,
        has_assignee=False,
    )
    assert second.first_response_at == NOW
    assert second.last_activity_at == later


def test_apply_inbound_leaves_first_response_alone() -> None:
    update = apply_message(
        TicketStatus.CLOSED,
        InboundEmail.message_type,
        now=NOW,
        first_response_at=None,
        response_count=3,
        has_assignee=False,
    )
    assert update.status == TicketStatus.OPEN
    assert update.first_response_at is None
    assert update.response_count == 4


def test_ticket_number_format() -> None:
    prefix = ticket_number_prefix(2026)
    assert format_ticket_number(prefix, 7) == "TKT-2026-0007"
    assert format_ticket_number(prefix, 12345) == "TKT-2026-12345"
    assert parse_ticket_sequence("TKT-2026-0042") == 42
    assert parse_ticket_sequence("legacy") == 0


def test_message_variants_validate_required_fields() -> None:
    with pytest.raises(ValueError):
        InboundEmail(content="x", from_email="", external_message_id="m1")
    with pytest.raises(ValueError):
        InboundEmail(content="x", from_email="a@b.test", external_message_id="")
    with pytest.raises(ValueError):
        OutboundEmail(content="x", author_id=1, to_email="")
