"""Summary: Tests for the Outlook mailbox provider.

Importance: Ensures Graph payloads and requests are shaped correctly.
Alternatives: Test against a live Microsoft 365 mailbox.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from desksync.email import (
    MockMailboxProvider,
    OutlookMailboxProvider,
    _parse_outlook_message,
    clean_html_content,
    format_graph_datetime,
    is_self_sent,
)
from desksync.errors import ProviderError


def _payload(message_id: str = "msg-1", **overrides) -> dict:
    payload = {
        "id": message_id,
        "subject": "Invoice question",
        "from": {"emailAddress": {"address": "Customer@Client.test", "name": "Dana"}},
        "bodyPreview": "Hello",
        "body": {"contentType": "text", "content": "Hello team"},
        "receivedDateTime": "2026-03-10T08:30:00Z",
        "conversationId": "conv-1",
        "isRead": False,
    }
    payload.update(overrides)
    return payload


def test_parse_outlook_message() -> None:
    """Summary: Verify Outlook payload parsing.

    Importance: Ensures Graph responses map into MailMessage records.
    Alternatives: Validate with live Outlook API calls.
    """

    parsed = _parse_outlook_message(_payload())
    assert parsed is not None
    assert parsed.provider_message_id == "msg-1"
    assert parsed.sender.address == "customer@client.test"
    assert parsed.sender.name == "Dana"
    assert parsed.content == "Hello team"
    assert parsed.conversation_id == "conv-1"
    assert parsed.received_at == datetime(2026, 3, 10, 8, 30, tzinfo=timezone.utc)


def test_parse_outlook_message_fills_gaps() -> None:
    parsed = _parse_outlook_message(
        _payload(subject=None, conversationId=None, body=None, bodyPreview="Preview only")
    )
    assert parsed.subject == "(no subject)"
    assert parsed.conversation_id == "msg-1"
    assert parsed.content == "Preview only"
    assert _parse_outlook_message({"subject": "no id"}) is None


def test_html_body_is_cleaned() -> None:
    html = (
        "<html><head><title>x</title></head><body onload=\"evil()\">"
        "<script>alert(1)</script><p onclick='x()'>Hi</p></body></html>"
    )
    parsed = _parse_outlook_message(_payload(body={"contentType": "html", "content": html}))
    assert parsed.body == "<p>Hi</p>"


def test_clean_html_content_strips_style_and_meta() -> None:
    assert clean_html_content("") == ""
    cleaned = clean_html_content('<meta charset="utf-8"><style>p{}</style><b>ok</b>')
    assert cleaned == "<b>ok</b>"


def test_fetch_since_builds_filtered_query(monkeypatch: pytest.MonkeyPatch) -> None:
    """Summary: Verify the message list request filters by time and read state.

    Importance: The query decides which mail an ingestion run can see.
    Alternatives: Fetch everything and filter locally.
    """

    calls = []

    def _fake_request(method, url, access_token, payload=None, headers=None):
        calls.append((method, url, access_token))
        return {"value": [_payload("msg-2"), {"subject": "missing id"}]}

    monkeypatch.setattr("desksync.email.graph_request", _fake_request)
    provider = OutlookMailboxProvider("token", "https://graph.microsoft.com/v1.0/")
    messages = provider.fetch_since(datetime(2026, 3, 3, 9, 0, tzinfo=timezone.utc), 50, True)
    method, url, token = calls[0]
    assert method == "GET"
    assert token == "token"
    assert url.startswith("https://graph.microsoft.com/v1.0/me/messages?")
    assert "$filter=receivedDateTime%20ge%202026-03-03T09:00:00Z%20and%20isRead%20eq%20false" in url
    assert "$orderby=receivedDateTime%20desc" in url
    assert "$top=50" in url
    assert [message.provider_message_id for message in messages] == ["msg-2"]


def test_fetch_since_without_unread_filter(monkeypatch: pytest.MonkeyPatch) -> None:
    captured = {}

    def _fake_request(method, url, access_token, payload=None, headers=None):
        captured["url"] = url
        return {}

    monkeypatch.setattr("desksync.email.graph_request", _fake_request)
    provider = OutlookMailboxProvider("token", "https://graph.microsoft.com/v1.0")
    assert provider.fetch_since(datetime(2026, 3, 3, tzinfo=timezone.utc), 10, False) == []
    assert "isRead" not in captured["url"].split("$select")[0]


def test_mark_read_patches_message(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = []
    monkeypatch.setattr(
        "desksync.email.graph_request",
        lambda method, url, token, payload=None, headers=None: calls.append((method, url, payload)),
    )
    OutlookMailboxProvider("token", "https://graph.test").mark_read("AAMk/1=")
    assert calls == [("PATCH", "https://graph.test/me/messages/AAMk%2F1%3D", {"isRead": True})]


def test_send_reply_falls_back_to_new_message(monkeypatch: pytest.MonkeyPatch) -> None:
    """Summary: A failed in-thread reply is retried as a new message.

    Importance: Replies still reach the customer when the original was deleted.
    Alternatives: Report the failure and drop the reply.
    """

    calls = []

    def _fake_request(method, url, access_token, payload=None, headers=None):
        calls.append((url, payload))
        if url.endswith("/reply"):
            raise ProviderError("Microsoft Graph request failed: not found", status=404)
        return {}

    monkeypatch.setattr("desksync.email.graph_request", _fake_request)
    provider = OutlookMailboxProvider("token", "https://graph.test")
    provider.send_reply(
        "customer@client.test", "Re: Invoice [TKT-2026-0001]", "<p>Done</p>", "msg-1", ["cc@x.test"]
    )
    assert calls[0][0] == "https://graph.test/me/messages/msg-1/reply"
    url, payload = calls[1]
    assert url == "https://graph.test/me/sendMail"
    assert payload["saveToSentItems"] is True
    message = payload["message"]
    assert message["subject"] == "Re: Invoice [TKT-2026-0001]"
    assert message["toRecipients"] == [{"emailAddress": {"address": "customer@client.test"}}]
    assert message["ccRecipients"] == [{"emailAddress": {"address": "cc@x.test"}}]


def test_mock_mailbox_filters_and_orders(tmp_path: Path) -> None:
    fixture = tmp_path / "mail.json"
    fixture.write_text(
        json.dumps(
            [
                _payload("old", receivedDateTime="2026-03-01T08:00:00Z"),
                _payload("read", receivedDateTime="2026-03-10T07:00:00Z", isRead=True),
                _payload("a", receivedDateTime="2026-03-10T07:30:00Z"),
                _payload("b", receivedDateTime="2026-03-10T08:30:00Z"),
            ]
        ),
        encoding="utf-8",
    )
    provider = MockMailboxProvider(fixture)
    since = datetime(2026, 3, 9, tzinfo=timezone.utc)
    assert [m.provider_message_id for m in provider.fetch_since(since, 50, True)] == ["b", "a"]
    assert [m.provider_message_id for m in provider.fetch_since(since, 1, False)] == ["b"]


def test_format_graph_datetime_normalizes_to_utc() -> None:
    value = datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc)
    assert format_graph_datetime(value) == "2026-03-10T10:00:00Z"


@pytest.mark.parametrize(
    "sender,policy,expected",
    [
        ("help@acme.test", "domain", True),
        ("alice@ACME.test", "domain", True),
        ("alice@sub.acme.test", "domain", False),
        ("alice@acme.test", "address", False),
        ("HELP@acme.test", "address", True),
        ("help@acme.test", "off", False),
        ("customer@client.test", "domain", False),
    ],
)
def test_is_self_sent(sender: str, policy: str, expected: bool) -> None:
    assert is_self_sent(sender, "help@acme.test", policy) is expected
