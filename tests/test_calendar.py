"""Summary: Tests for calendar providers.

Importance: Ensures events resolve into aware datetimes in the right zone.
Alternatives: Validate calendar parsing manually.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

from desksync.calendar import (
    MockCalendarProvider,
    OutlookCalendarProvider,
    _parse_graph_event,
    parse_graph_datetime,
    resolve_timezone,
)


def _event(event_id: str, start: str, end: str, zone: str = "UTC", **extra) -> dict:
    payload = {
        "id": event_id,
        "subject": f"Meeting {event_id}",
        "start": {"dateTime": start, "timeZone": zone},
        "end": {"dateTime": end, "timeZone": zone},
        "location": {"displayName": "Room 4"},
        "isAllDay": False,
    }
    payload.update(extra)
    return payload


def test_parse_graph_datetime_truncates_seven_digit_fraction() -> None:
    """Summary: Graph reports seven fractional digits; parsing keeps six.

    Importance: datetime.fromisoformat rejects the seventh digit on older interpreters.
    Alternatives: Strip fractions entirely.
    """

    parsed = parse_graph_datetime("2026-03-10T09:10:00.1234567", "UTC")
    assert parsed == datetime(2026, 3, 10, 9, 10, 0, 123456, tzinfo=timezone.utc)


def test_parse_graph_datetime_attaches_reported_zone() -> None:
    parsed = parse_graph_datetime("2026-03-10T10:10:00.0000000", "Europe/Paris")
    assert parsed.tzinfo == ZoneInfo("Europe/Paris")
    assert parsed.astimezone(timezone.utc) == datetime(2026, 3, 10, 9, 10, tzinfo=timezone.utc)


def test_resolve_timezone_falls_back_to_utc() -> None:
    assert resolve_timezone(None) is timezone.utc
    assert resolve_timezone("utc") is timezone.utc
    assert resolve_timezone("Mars/Olympus") is timezone.utc


def test_parse_graph_event_fields() -> None:
    event = _parse_graph_event(
        _event("e1", "2026-03-10T09:10:00.0000000", "2026-03-10T09:40:00.0000000")
    )
    assert event.event_id == "e1"
    assert event.location == "Room 4"
    assert event.raw_start == "2026-03-10T09:10:00.0000000"
    assert event.end - event.start == timedelta(minutes=30)
    assert _parse_graph_event({"id": "e2", "start": {}}) is None


def test_outlook_calendar_requests_calendar_view(monkeypatch: pytest.MonkeyPatch) -> None:
    """Summary: Verify the calendar view request window and time zone header.

    Importance: Recurring meetings only show up through the calendar view.
    Alternatives: Query /me/events and expand recurrences locally.
    """

    captured = {}

    def _fake_request(method, url, access_token, payload=None, headers=None):
        captured.update(method=method, url=url, headers=headers)
        return {"value": [_event("e1", "2026-03-10T10:10:00.0000000", "2026-03-10T10:40:00.0000000", "Europe/Paris")]}

    monkeypatch.setattr("desksync.calendar.graph_request", _fake_request)
    provider = OutlookCalendarProvider("token", "https://graph.test", "Europe/Paris")
    start = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)
    events = provider.fetch_window(start, start + timedelta(minutes=15), 5)
    assert captured["method"] == "GET"
    assert captured["url"].startswith("https://graph.test/me/calendarview?")
    assert "startDateTime=2026-03-10T09:00:00Z" in captured["url"]
    assert "endDateTime=2026-03-10T09:15:00Z" in captured["url"]
    assert "$top=5" in captured["url"]
    assert captured["headers"] == {"Prefer": 'outlook.timezone="Europe/Paris"'}
    assert events[0].start.astimezone(timezone.utc) == datetime(2026, 3, 10, 9, 10, tzinfo=timezone.utc)


def test_mock_calendar_returns_overlapping_events(tmp_path: Path) -> None:
    fixture = tmp_path / "events.json"
    fixture.write_text(
        json.dumps(
            [
                _event("later", "2026-03-10T11:00:00", "2026-03-10T11:30:00"),
                _event("soon", "2026-03-10T09:10:00", "2026-03-10T09:40:00"),
                _event("ongoing", "2026-03-10T08:30:00", "2026-03-10T09:30:00"),
            ]
        ),
        encoding="utf-8",
    )
    start = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)
    events = MockCalendarProvider(fixture).fetch_window(start, start + timedelta(minutes=15), 5)
    assert [event.event_id for event in events] == ["ongoing", "soon"]
