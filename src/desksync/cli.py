"""Summary: Command-line interface for DeskSync.

Importance: Runs the sync jobs and ticket operations without the HTTP layer.
Alternatives: Build a web UI or desktop client first.
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from desksync.app import build_services
from desksync.calendar import MockCalendarProvider
from desksync.config import AppConfig, parse_bool
from desksync.email import MockMailboxProvider
from desksync.models import CredentialScope


def build_parser() -> argparse.ArgumentParser:
    """Summary: Build the CLI argument parser.

    Importance: Defines supported commands for local operation and cron use.
    Alternatives: Use a CLI framework like Typer or Click.
    """

    parser = argparse.ArgumentParser(description="DeskSync CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the SQLite schema")

    add_tenant = subparsers.add_parser("add-tenant", help="Register a tenant")
    add_tenant.add_argument("name", type=str)
    add_tenant.add_argument("support_email", type=str)
    add_tenant.add_argument("--auto-sync", type=str, default="true")

    add_user = subparsers.add_parser("add-user", help="Register a back-office user")
    add_user.add_argument("tenant_id", type=int)
    add_user.add_argument("display_name", type=str)
    add_user.add_argument("email", type=str)
    add_user.add_argument("--chat-id", type=str, default=None)

    add_client = subparsers.add_parser("add-client", help="Register a client for sender matching")
    add_client.add_argument("tenant_id", type=int)
    add_client.add_argument("company_name", type=str)
    add_client.add_argument("email", type=str)

    sync_mail = subparsers.add_parser("sync-mail", help="Turn new support mail into tickets")
    sync_mail.add_argument("--tenant", type=int, default=None, help="Manual sync of one tenant")
    sync_mail.add_argument("--fixture", type=str, default=None, help="Graph-shaped JSON messages")

    reminders = subparsers.add_parser("calendar-reminders", help="Run one reminder sweep")
    reminders.add_argument("--fixture", type=str, default=None, help="Graph-shaped JSON events")

    mailbox_url = subparsers.add_parser("mailbox-auth-url", help="Print mailbox consent URL")
    mailbox_url.add_argument("tenant_id", type=int)

    calendar_url = subparsers.add_parser("calendar-auth-url", help="Print calendar consent URL")
    calendar_url.add_argument("user_id", type=int)

    complete_auth = subparsers.add_parser("complete-auth", help="Exchange a callback code")
    complete_auth.add_argument("state", type=str)
    complete_auth.add_argument("code", type=str)

    disconnect = subparsers.add_parser("disconnect-mailbox", help="Clear a tenant mailbox credential")
    disconnect.add_argument("tenant_id", type=int)

    list_tickets = subparsers.add_parser("list-tickets", help="List tickets")
    list_tickets.add_argument("--tenant", type=int, default=None)
    list_tickets.add_argument("--status", type=str, default=None)
    list_tickets.add_argument("--limit", type=int, default=20)

    show_ticket = subparsers.add_parser("show-ticket", help="Show a ticket thread")
    show_ticket.add_argument("ticket_id", type=int)

    reply = subparsers.add_parser("reply", help="Reply to a ticket")
    reply.add_argument("ticket_id", type=int)
    reply.add_argument("author_id", type=int)
    reply.add_argument("content", type=str)

    set_status = subparsers.add_parser("set-status", help="Move a ticket forward")
    set_status.add_argument("ticket_id", type=int)
    set_status.add_argument("status", type=str)

    return parser


def run_cli(argv: list[str] | None = None) -> None:
    """Summary: Execute CLI commands based on arguments.

    Importance: Lets system cron drive the sync jobs without the API running.
    Alternatives: Invoke services via an HTTP API.
    """

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)
    config = AppConfig.from_env()
    mailbox_factory = None
    calendar_factory = None
    fixture = getattr(args, "fixture", None)
    if fixture and args.command == "sync-mail":
        mailbox_factory = _always(MockMailboxProvider(Path(fixture)))
    if fixture and args.command == "calendar-reminders":
        calendar_factory = _always(MockCalendarProvider(Path(fixture)))
    services = build_services(
        config, mailbox_factory=mailbox_factory, calendar_factory=calendar_factory
    )

    if args.command == "init-db":
        print(f"Database ready at {config.db_path}.")
        return

    if args.command == "add-tenant":
        tenant_id = services.tenants.create_tenant(
            args.name, args.support_email, parse_bool(args.auto_sync)
        )
        print(f"Created tenant {tenant_id}.")
        return

    if args.command == "add-user":
        user_id = services.users.create_user(
            args.tenant_id, args.display_name, args.email, chat_id=args.chat_id
        )
        print(f"User {user_id} ready.")
        return

    if args.command == "add-client":
        client_id = services.tenants.add_client(args.tenant_id, args.company_name, args.email)
        print(f"Created client {client_id}.")
        return

    if args.command == "sync-mail":
        if args.tenant is not None:
            result = services.mail_sync.run(args.tenant, scheduled=False)
        else:
            result = services.mail_sync.sync_all(scheduled=True)
        print(json.dumps(result.to_dict(), indent=2))
        return

    if args.command == "calendar-reminders":
        print(json.dumps(services.reminders.run().to_dict(), indent=2))
        return

    if args.command == "mailbox-auth-url":
        tenant = services.tenants.get_tenant(args.tenant_id)
        print(
            services.tokens.begin_authorization(
                CredentialScope.tenant(tenant.id), tenant.support_email
            )
        )
        return

    if args.command == "calendar-auth-url":
        user = services.users.get_user(args.user_id)
        print(services.tokens.begin_authorization(CredentialScope.user(user.id), user.email))
        return

    if args.command == "complete-auth":
        credential = services.tokens.complete_authorization(args.state, args.code)
        print(f"Connected {credential.scope} as {credential.connected_identity or 'unknown'}.")
        return

    if args.command == "disconnect-mailbox":
        services.tokens.disconnect(CredentialScope.tenant(args.tenant_id))
        print(f"Mailbox for tenant {args.tenant_id} disconnected.")
        return

    if args.command == "list-tickets":
        for ticket in services.tickets.list_tickets(args.tenant, args.status, args.limit):
            print(
                f"{ticket.id} | {ticket.ticket_number} | {ticket.status} | "
                f"{ticket.sender_email} | {ticket.subject}"
            )
        return

    if args.command == "show-ticket":
        ticket = services.tickets.get_ticket(args.ticket_id)
        print(f"{ticket.ticket_number} [{ticket.status}] {ticket.subject}")
        print(f"From {ticket.sender_name} <{ticket.sender_email}>, {ticket.response_count} messages")
        for message in services.tickets.list_messages(ticket.id):
            author = message.from_name or message.from_email or "system"
            print(f"- {message.created_at} {message.message_type} {author}: {message.content[:120]}")
        return

    if args.command == "reply":
        message = services.tickets.add_reply(args.ticket_id, args.author_id, args.content)
        state = "sent" if message.email_sent else f"not sent ({message.email_error})"
        print(f"Reply {message.id} recorded, {state}.")
        return

    if args.command == "set-status":
        ticket = services.tickets.change_status(args.ticket_id, args.status)
        print(f"{ticket.ticket_number} is now {ticket.status}.")
        return


def _always(provider):
    """Provider factory that ignores the access token, for fixture runs."""

    return lambda _token: provider


if __name__ == "__main__":
    run_cli()
