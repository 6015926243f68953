"""Summary: Bounded TTL memory of reminders already sent.

Importance: Stops overlapping reminder sweeps from notifying the same occurrence twice.
Alternatives: Persist notified keys in SQLite or Redis.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Protocol, runtime_checkable

from desksync.models import NotifiedEventKey


DEFAULT_TTL = timedelta(minutes=30)
DEFAULT_MAX_ENTRIES = 1000


@runtime_checkable
class NotifiedEventStore(Protocol):
    """Summary: Interface for the reminder dedup store.

    Importance: Lets deployments swap the in-process cache for a shared one.
    Alternatives: Hard-code a module-level dictionary.
    """

    def seen(self, key: NotifiedEventKey, now: datetime) -> bool:
        ...

    def mark(self, key: NotifiedEventKey, now: datetime) -> None:
        ...


class NotifiedEventCache:
    """Summary: In-process TTL cache keyed by reminder occurrence.

    Importance: Entries outlive the reminder window, so one occurrence is sent once.
    Alternatives: Keep keys forever and grow without bound.
    """

    def __init__(
        self, ttl: timedelta = DEFAULT_TTL, max_entries: int = DEFAULT_MAX_ENTRIES
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self._ttl = ttl
        self._max_entries = max_entries
        self._entries: OrderedDict[NotifiedEventKey, datetime] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def seen(self, key: NotifiedEventKey, now: datetime) -> bool:
        with self._lock:
            marked_at = self._entries.get(key)
            if marked_at is None:
                return False
            if now - marked_at >= self._ttl:
                del self._entries[key]
                return False
            return True

    def mark(self, key: NotifiedEventKey, now: datetime) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = now
            self._evict(now)

    def _evict(self, now: datetime) -> None:
        """Summary: Drop expired entries, then the oldest ones past the bound.

        Importance: Keeps memory flat across long-running API processes.
        Alternatives: Sweep on a background timer.
        """

        # Insertion order equals mark order, so expired keys sit at the front.
        while self._entries:
            oldest_key, marked_at = next(iter(self._entries.items()))
            if now - marked_at < self._ttl:
                break
            del self._entries[oldest_key]
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)
