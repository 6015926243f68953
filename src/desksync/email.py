"""Summary: Mailbox provider interfaces and implementations.

Importance: Encapsulates reading, marking, and replying to support mail.
Alternatives: Rely solely on provider SDKs with vendor lock-in.
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

from desksync.graph import graph_request
from desksync.models import EmailAddress, MailMessage


logger = logging.getLogger(__name__)

MESSAGE_FIELDS = "id,subject,from,bodyPreview,body,receivedDateTime,conversationId,isRead"


class MailboxProvider(ABC):
    """Summary: Abstract interface for the support mailbox.

    Importance: Lets the ingestion engine run against Graph or a local fixture.
    Alternatives: Call Graph directly from the engine.
    """

    @abstractmethod
    def fetch_since(self, since: datetime, limit: int, unread_only: bool) -> list[MailMessage]:
        """Summary: Fetch messages received at or after a point in time, newest first.

        Importance: The read side of every ingestion run; never mutates the mailbox.
        Alternatives: Use delta queries and persist a delta link.
        """

    @abstractmethod
    def mark_read(self, provider_message_id: str) -> None:
        """Mark one message as read."""

    @abstractmethod
    def send_reply(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        reply_to_message_id: str | None = None,
        cc: list[str] | None = None,
    ) -> None:
        """Summary: Send an agent reply from the support mailbox.

        Importance: Delivers ticket replies to customers.
        Alternatives: Send through SMTP with a separate account.
        """


class OutlookMailboxProvider(MailboxProvider):
    """Summary: Reads and answers support mail via Microsoft Graph.

    Importance: OAuth-based access to the tenant mailbox without IMAP passwords.
    Alternatives: Use IMAP with app passwords.
    """

    def __init__(self, access_token: str, base_url: str) -> None:
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")

    def fetch_since(self, since: datetime, limit: int, unread_only: bool) -> list[MailMessage]:
        """Summary: List messages received since a timestamp using Microsoft Graph.

        Importance: One bounded page per run keeps worst-case backlog predictable.
        Alternatives: Page through every result with @odata.nextLink.
        """

        filters = [f"receivedDateTime ge {format_graph_datetime(since)}"]
        if unread_only:
            filters.append("isRead eq false")
        params = {
            "$filter": " and ".join(filters),
            "$orderby": "receivedDateTime desc",
            "$top": str(limit),
            "$select": MESSAGE_FIELDS,
        }
        url = f"{self._base_url}/me/messages?" + urllib.parse.urlencode(
            params, safe="$,:", quote_via=urllib.parse.quote
        )
        payload = graph_request("GET", url, self._access_token)
        messages: list[MailMessage] = []
        for item in payload.get("value", []):
            parsed = _parse_outlook_message(item)
            if parsed:
                messages.append(parsed)
        return messages

    def mark_read(self, provider_message_id: str) -> None:
        url = f"{self._base_url}/me/messages/{urllib.parse.quote(provider_message_id, safe='')}"
        graph_request("PATCH", url, self._access_token, payload={"isRead": True})

    def send_reply(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        reply_to_message_id: str | None = None,
        cc: list[str] | None = None,
    ) -> None:
        """Summary: Reply in-thread when possible, otherwise send a new message.

        Importance: Keeps replies threaded in the customer's mail client.
        Alternatives: Always send a new message with a Re: subject.
        """

        if reply_to_message_id:
            url = (
                f"{self._base_url}/me/messages/"
                f"{urllib.parse.quote(reply_to_message_id, safe='')}/reply"
            )
            try:
                graph_request(
                    "POST",
                    url,
                    self._access_token,
                    payload={"message": {"body": {"contentType": "HTML", "content": html_body}}},
                )
                return
            except Exception as exc:
                logger.warning("Threaded reply failed, sending new message: %s", exc)
        message: dict[str, Any] = {
            "subject": subject,
            "body": {"contentType": "HTML", "content": html_body},
            "toRecipients": [{"emailAddress": {"address": to_email}}],
        }
        if cc:
            message["ccRecipients"] = [{"emailAddress": {"address": address}} for address in cc]
        graph_request(
            "POST",
            f"{self._base_url}/me/sendMail",
            self._access_token,
            payload={"message": message, "saveToSentItems": True},
        )


class MockMailboxProvider(MailboxProvider):
    """Summary: Serves Graph-shaped messages from a local JSON fixture.

    Importance: Supports offline demos and CLI dry runs of the ingestion engine.
    Alternatives: Record and replay real Graph responses.
    """

    def __init__(self, fixture_path: Path) -> None:
        self._fixture_path = fixture_path
        self.marked_read: list[str] = []
        self.sent: list[dict[str, Any]] = []

    def fetch_since(self, since: datetime, limit: int, unread_only: bool) -> list[MailMessage]:
        data = json.loads(self._fixture_path.read_text(encoding="utf-8"))
        messages = [message for message in map(_parse_outlook_message, data) if message]
        messages = [
            message
            for message in messages
            if message.received_at >= since and not (unread_only and message.is_read)
        ]
        messages.sort(key=lambda message: message.received_at, reverse=True)
        return messages[:limit]

    def mark_read(self, provider_message_id: str) -> None:
        self.marked_read.append(provider_message_id)

    def send_reply(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        reply_to_message_id: str | None = None,
        cc: list[str] | None = None,
    ) -> None:
        self.sent.append(
            {
                "to": to_email,
                "subject": subject,
                "body": html_body,
                "reply_to": reply_to_message_id,
                "cc": cc or [],
            }
        )


def _parse_outlook_message(message: dict[str, Any]) -> MailMessage | None:
    """Summary: Parse a Microsoft Graph message payload into a MailMessage.

    Importance: Normalizes Outlook payloads into the ingestion model.
    Alternatives: Store raw Outlook payloads and parse later.
    """

    message_id = message.get("id")
    if not message_id:
        return None
    sender_info = (message.get("from") or {}).get("emailAddress") or {}
    address = (sender_info.get("address") or "").strip().lower()
    body_info = message.get("body") or {}
    body = body_info.get("content") or ""
    if body_info.get("contentType", "").lower() == "html":
        body = clean_html_content(body)
    return MailMessage(
        provider_message_id=message_id,
        subject=message.get("subject") or "(no subject)",
        sender=EmailAddress(address=address, name=sender_info.get("name") or address),
        body=body,
        body_preview=message.get("bodyPreview") or "",
        received_at=_parse_iso_datetime(message.get("receivedDateTime")),
        conversation_id=message.get("conversationId") or message_id,
        is_read=bool(message.get("isRead", False)),
    )


def format_graph_datetime(value: datetime) -> str:
    """Format an aware datetime the way Graph OData filters expect."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_iso_datetime(value: str | None) -> datetime:
    """Summary: Parse ISO datetime strings from Graph payloads.

    Importance: Normalizes timestamps to aware UTC values.
    Alternatives: Store raw timestamp strings in the database.
    """

    if not value:
        return datetime.now(timezone.utc)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


_SCRIPT_TAGS = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_STYLE_TAGS = re.compile(r"<style\b[^<]*(?:(?!</style>)<[^<]*)*</style>", re.IGNORECASE)
_HEAD_SECTION = re.compile(r"<head\b[^<]*(?:(?!</head>)<[^<]*)*</head>", re.IGNORECASE)
_META_TAGS = re.compile(r"<meta[^>]*>", re.IGNORECASE)
_DOCUMENT_TAGS = re.compile(r"</?(?:html|body)[^>]*>", re.IGNORECASE)
_EVENT_HANDLERS = re.compile(r"\s*on\w+=(?:\"[^\"]*\"|'[^']*')", re.IGNORECASE)
_BLANK_RUNS = re.compile(r"\n\s*\n\s*\n")


def clean_html_content(html: str) -> str:
    """Summary: Strip active content from an HTML email body.

    Importance: Ticket views render stored bodies; scripts and handlers must not survive.
    Alternatives: Use a full sanitizer such as bleach.
    """

    if not html:
        return ""
    cleaned = _SCRIPT_TAGS.sub("", html)
    cleaned = _STYLE_TAGS.sub("", cleaned)
    cleaned = _HEAD_SECTION.sub("", cleaned)
    cleaned = _META_TAGS.sub("", cleaned)
    cleaned = _DOCUMENT_TAGS.sub("", cleaned)
    cleaned = _EVENT_HANDLERS.sub("", cleaned)
    cleaned = _BLANK_RUNS.sub("\n\n", cleaned)
    return cleaned.strip()


def sender_domain(address: str) -> str:
    return address.rsplit("@", 1)[-1].lower() if "@" in address else ""


def is_self_sent(sender: str, support_email: str, policy: str) -> bool:
    """Summary: Decide whether a message came from the tenant's own side.

    Importance: Drops auto-replies and mail loops before they become tickets.
    Alternatives: Filter on auto-reply headers only.
    """

    if policy == "off" or not sender or not support_email:
        return False
    if policy == "address":
        return sender.lower() == support_email.lower()
    return sender_domain(sender) == sender_domain(support_email)
