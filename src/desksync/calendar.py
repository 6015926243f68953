"""Summary: Calendar provider interfaces and implementations.

Importance: Encapsulates read-only access to user calendars for reminders.
Alternatives: Use provider SDKs directly without a shared abstraction.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
import urllib.parse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from desksync.email import format_graph_datetime
from desksync.graph import graph_request
from desksync.models import CalendarEvent


logger = logging.getLogger(__name__)

EVENT_FIELDS = "id,subject,start,end,location,isAllDay"
_FRACTION = re.compile(r"\.(\d{6})\d+")


class CalendarProvider(ABC):
    """Summary: Abstract interface for calendar reads.

    Importance: Standardizes retrieval across mocked and real providers.
    Alternatives: Couple the reminder engine to a single calendar API.
    """

    @abstractmethod
    def fetch_window(self, start: datetime, end: datetime, limit: int) -> list[CalendarEvent]:
        """Summary: Fetch events whose occurrence overlaps [start, end], ordered by start.

        Importance: Drives the reminder sweep; recurring events arrive expanded.
        Alternatives: Fetch the next N events regardless of time.
        """


class OutlookCalendarProvider(CalendarProvider):
    """Summary: Reads calendar occurrences via the Microsoft Graph calendar view.

    Importance: The calendar view expands recurring series into individual occurrences.
    Alternatives: List /me/events and expand recurrences locally.
    """

    def __init__(self, access_token: str, base_url: str, timezone_name: str) -> None:
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._timezone_name = timezone_name

    def fetch_window(self, start: datetime, end: datetime, limit: int) -> list[CalendarEvent]:
        params = {
            "startDateTime": format_graph_datetime(start),
            "endDateTime": format_graph_datetime(end),
            "$orderby": "start/dateTime",
            "$top": str(limit),
            "$select": EVENT_FIELDS,
        }
        url = f"{self._base_url}/me/calendarview?" + urllib.parse.urlencode(
            params, safe="$,:/", quote_via=urllib.parse.quote
        )
        payload = graph_request(
            "GET",
            url,
            self._access_token,
            headers={"Prefer": f'outlook.timezone="{self._timezone_name}"'},
        )
        events: list[CalendarEvent] = []
        for item in payload.get("value", []):
            parsed = _parse_graph_event(item)
            if parsed:
                events.append(parsed)
        return events


class MockCalendarProvider(CalendarProvider):
    """Summary: Loads Graph-shaped events from a local JSON fixture.

    Importance: Supports offline demos and tests.
    Alternatives: Generate synthetic events in code.
    """

    def __init__(self, fixture_path: Path) -> None:
        self._fixture_path = fixture_path

    def fetch_window(self, start: datetime, end: datetime, limit: int) -> list[CalendarEvent]:
        data = json.loads(self._fixture_path.read_text(encoding="utf-8"))
        events = [event for event in map(_parse_graph_event, data) if event]
        events = [event for event in events if event.start <= end and event.end >= start]
        events.sort(key=lambda event: event.start)
        return events[:limit]


def _parse_graph_event(item: dict[str, Any]) -> CalendarEvent | None:
    """Summary: Parse a Microsoft Graph event payload into a CalendarEvent.

    Importance: Resolves Graph's naive dateTime plus timeZone pair into aware datetimes.
    Alternatives: Request UTC and convert for display only.
    """

    event_id = item.get("id")
    start_info = item.get("start") or {}
    end_info = item.get("end") or {}
    if not event_id or not start_info.get("dateTime"):
        return None
    start = parse_graph_datetime(start_info["dateTime"], start_info.get("timeZone"))
    end = start
    if end_info.get("dateTime"):
        end = parse_graph_datetime(end_info["dateTime"], end_info.get("timeZone"))
    location = (item.get("location") or {}).get("displayName") or None
    return CalendarEvent(
        event_id=event_id,
        subject=item.get("subject") or "(no subject)",
        start=start,
        end=end,
        location=location,
        is_all_day=bool(item.get("isAllDay", False)),
        raw_start=start_info["dateTime"],
    )


def parse_graph_datetime(value: str, timezone_name: str | None) -> datetime:
    """Summary: Parse a Graph dateTime in the zone it was reported in.

    Importance: Graph trims offsets and reports up to seven fractional digits.
    Alternatives: Assume every timestamp is UTC.
    """

    cleaned = _FRACTION.sub(r".\1", value.replace("Z", "+00:00"))
    parsed = datetime.fromisoformat(cleaned)
    if parsed.tzinfo is not None:
        return parsed
    return parsed.replace(tzinfo=resolve_timezone(timezone_name))


def resolve_timezone(timezone_name: str | None):
    """Return a tzinfo for an IANA zone name, falling back to UTC."""

    if not timezone_name or timezone_name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown time zone %s, assuming UTC", timezone_name)
        return timezone.utc
