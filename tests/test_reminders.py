"""Summary: Tests for calendar reminder sweeps.

Importance: Ensures each occurrence is announced once, about ten minutes ahead.
Alternatives: Rely on native calendar alerts.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from desksync.calendar import CalendarProvider
from desksync.errors import NotificationError, ProviderAuthError, ProviderError
from desksync.models import CalendarEvent, CredentialScope, NotifiedEventKey, Tenant, User
from desksync.notifications import LogNotifier, Notifier
from desksync.reminder_cache import NotifiedEventCache, NotifiedEventStore
from desksync.services import ReminderService, TokenService, minutes_until
from desksync.token_codec import TokenCodec


NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


class _FakeCalendar(CalendarProvider):
    def __init__(self, events: list[CalendarEvent] | None = None, error: Exception | None = None) -> None:
        self.events = events or []
        self.error = error
        self.windows: list[tuple[datetime, datetime, int]] = []

    def fetch_window(self, start: datetime, end: datetime, limit: int) -> list[CalendarEvent]:
        self.windows.append((start, end, limit))
        if self.error:
            raise self.error
        return list(self.events)


class _FailingNotifier(Notifier):
    def send(self, channel_id: str, text: str) -> None:
        raise NotificationError("chat not found")


def _event(event_id: str, minutes_ahead: float, all_day: bool = False) -> CalendarEvent:
    start = NOW + timedelta(minutes=minutes_ahead)
    return CalendarEvent(
        event_id=event_id,
        subject=f"Meeting {event_id}",
        start=start,
        end=start + timedelta(minutes=30),
        is_all_day=all_day,
        raw_start=start.replace(tzinfo=None).isoformat(),
    )


def _setup_user(store, seed_credential, chat_id: str = "100") -> int:
    tenant_id = store.create_tenant(Tenant("Acme", "help@acme.test"))
    user_id = store.create_user(User(tenant_id, "Ada", f"ada{chat_id}@acme.test", chat_id=chat_id))
    seed_credential(CredentialScope.user(user_id), expires_at=NOW + timedelta(hours=1))
    return user_id


def _service(store, config, calendar, notifier=None, notified=None, now: datetime = NOW):
    tokens = TokenService(store=store, codec=TokenCodec("secret"), config=config, clock=lambda: now)
    return ReminderService(
        store=store,
        tokens=tokens,
        config=config,
        notified=notified if notified is not None else NotifiedEventCache(),
        notifier=notifier or LogNotifier(),
        calendar_factory=lambda _token: calendar,
        clock=lambda: now,
    )


def test_only_events_in_window_are_announced(store, config, seed_credential) -> None:
    """Summary: Events 8 to 12 minutes out get a reminder; 7 and 13 do not.

    Importance: Sweeps run every few minutes; the window must catch each event once.
    Alternatives: Remind at the first sweep that sees the event.
    """

    _setup_user(store, seed_credential)
    calendar = _FakeCalendar([_event(str(m), m) for m in (7, 8, 10, 12, 13)])
    notifier = LogNotifier()
    result = _service(store, config, calendar, notifier).run()
    assert result.success
    assert result.stats == {"users": 1, "notifications_sent": 3, "failed": 0}
    assert [text.splitlines()[2] for _, text in notifier.sent] == [
        "*Meeting 8*",
        "*Meeting 10*",
        "*Meeting 12*",
    ]
    assert all(channel == "100" for channel, _ in notifier.sent)
    assert calendar.windows == [(NOW, NOW + timedelta(minutes=15), 5)]


def test_overlapping_sweeps_send_once(store, config, seed_credential) -> None:
    _setup_user(store, seed_credential)
    calendar = _FakeCalendar([_event("standup", 11)])
    notifier = LogNotifier()
    cache = NotifiedEventCache()
    _service(store, config, calendar, notifier, cache).run()
    second = _service(store, config, calendar, notifier, cache, now=NOW + timedelta(minutes=2)).run()
    assert len(notifier.sent) == 1
    assert second.stats["notifications_sent"] == 0


def test_moved_event_is_announced_again(store, config, seed_credential) -> None:
    _setup_user(store, seed_credential)
    notifier = LogNotifier()
    cache = NotifiedEventCache()
    _service(store, config, _FakeCalendar([_event("standup", 10)]), notifier, cache).run()
    _service(store, config, _FakeCalendar([_event("standup", 9)]), notifier, cache).run()
    assert len(notifier.sent) == 2


def test_all_day_events_are_ignored(store, config, seed_credential) -> None:
    _setup_user(store, seed_credential)
    notifier = LogNotifier()
    result = _service(store, config, _FakeCalendar([_event("holiday", 10, all_day=True)]), notifier).run()
    assert result.stats["notifications_sent"] == 0
    assert notifier.sent == []


def test_rejected_calendar_token_disconnects_user(store, config, seed_credential) -> None:
    """Summary: A 401 from the calendar clears the user's credential.

    Importance: Later sweeps skip the user until they reconnect.
    Alternatives: Keep retrying with the rejected token.
    """

    user_id = _setup_user(store, seed_credential)
    calendar = _FakeCalendar(error=ProviderAuthError("expired", status=401))
    result = _service(store, config, calendar).run()
    assert result.success
    assert result.stats["failed"] == 1
    assert store.get_credential("user", user_id).refresh_token is None
    assert store.list_reminder_candidates() == []


def test_one_user_failure_does_not_stop_others(store, config, seed_credential) -> None:
    _setup_user(store, seed_credential, chat_id="100")
    _setup_user(store, seed_credential, chat_id="200")
    calendars = iter([_FakeCalendar(error=ProviderError("boom")), _FakeCalendar([_event("a", 10)])])
    notifier = LogNotifier()
    tokens = TokenService(store=store, codec=TokenCodec("secret"), config=config, clock=lambda: NOW)
    service = ReminderService(
        store=store,
        tokens=tokens,
        config=config,
        notified=NotifiedEventCache(),
        notifier=notifier,
        calendar_factory=lambda _token: next(calendars),
        clock=lambda: NOW,
    )
    result = service.run()
    assert result.stats == {"users": 2, "notifications_sent": 1, "failed": 1}


def test_delivery_failure_is_counted_and_not_retried(store, config, seed_credential) -> None:
    _setup_user(store, seed_credential)
    cache = NotifiedEventCache()
    calendar = _FakeCalendar([_event("a", 10)])
    result = _service(store, config, calendar, _FailingNotifier(), cache).run()
    assert result.stats == {"users": 1, "notifications_sent": 0, "failed": 1}
    assert len(cache) == 1


@pytest.mark.parametrize(
    "seconds,expected",
    [(450, 8), (449, 7), (510, 9), (750, 13), (749, 12), (-30, 0)],
)
def test_minutes_until_rounds_half_up(seconds: int, expected: int) -> None:
    assert minutes_until(NOW + timedelta(seconds=seconds), NOW) == expected


def test_cache_entries_expire() -> None:
    cache = NotifiedEventCache(ttl=timedelta(minutes=30))
    key = NotifiedEventKey(1, "e1", "2026-03-10T09:10:00")
    cache.mark(key, NOW)
    assert cache.seen(key, NOW + timedelta(minutes=29))
    assert not cache.seen(key, NOW + timedelta(minutes=30))
    assert len(cache) == 0


def test_cache_is_bounded() -> None:
    """Summary: The cache evicts the oldest entries past its bound.

    Importance: Long-running processes must not grow without limit.
    Alternatives: Clear the cache on a timer.
    """

    cache = NotifiedEventCache(max_entries=2)
    keys = [NotifiedEventKey(1, f"e{i}", "start") for i in range(3)]
    for offset, key in enumerate(keys):
        cache.mark(key, NOW + timedelta(seconds=offset))
    assert len(cache) == 2
    assert not cache.seen(keys[0], NOW)
    assert cache.seen(keys[2], NOW)
    assert isinstance(cache, NotifiedEventStore)
    with pytest.raises(ValueError):
        NotifiedEventCache(max_entries=0)
