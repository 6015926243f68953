"""Summary: Application factory wiring core services.

Importance: Centralizes dependency creation for the CLI and API layers.
Alternatives: Instantiate services manually in each entrypoint.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from desksync.calendar import CalendarProvider
from desksync.config import AppConfig
from desksync.email import MailboxProvider
from desksync.notifications import Notifier, NotifierFactory
from desksync.reminder_cache import NotifiedEventCache, NotifiedEventStore
from desksync.services import (
    Clock,
    MailSyncService,
    ReminderService,
    TenantService,
    TicketService,
    TokenService,
    UserService,
    utc_now,
)
from desksync.storage.sqlite_store import SqliteStore
from desksync.token_codec import TokenCodec


@dataclass(frozen=True)
class AppServices:
    """Summary: Bundle of core services for DeskSync.

    Importance: One construction shared by triggers, admin routes, and commands.
    Alternatives: Use a dependency injection container.
    """

    store: SqliteStore
    tenants: TenantService
    users: UserService
    tokens: TokenService
    mail_sync: MailSyncService
    tickets: TicketService
    reminders: ReminderService
    config: AppConfig


def build_services(
    config: AppConfig,
    notified: NotifiedEventStore | None = None,
    notifier: Notifier | None = None,
    mailbox_factory: Callable[[str], MailboxProvider] | None = None,
    calendar_factory: Callable[[str], CalendarProvider] | None = None,
    clock: Clock = utc_now,
) -> AppServices:
    """Summary: Build core services from configuration.

    Importance: The reminder cache lives as long as the returned bundle.
    Alternatives: Instantiate services directly within each entrypoint.
    """

    if not config.token_secret:
        raise ValueError("DESKSYNC_TOKEN_SECRET is required to store credentials")
    store = SqliteStore(config.db_path)
    store.initialize()
    tokens = TokenService(
        store=store,
        codec=TokenCodec(config.token_secret),
        config=config,
        clock=clock,
    )
    return AppServices(
        store=store,
        tenants=TenantService(store=store),
        users=UserService(store=store),
        tokens=tokens,
        mail_sync=MailSyncService(
            store=store,
            tokens=tokens,
            config=config,
            mailbox_factory=mailbox_factory,
            clock=clock,
        ),
        tickets=TicketService(
            store=store,
            tokens=tokens,
            config=config,
            mailbox_factory=mailbox_factory,
            clock=clock,
        ),
        reminders=ReminderService(
            store=store,
            tokens=tokens,
            config=config,
            notified=notified if notified is not None else NotifiedEventCache(),
            notifier=notifier or NotifierFactory(config).build(),
            calendar_factory=calendar_factory,
            clock=clock,
        ),
        config=config,
    )
