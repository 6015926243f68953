"""Summary: Chat notification channels for reminders.

Importance: Delivers calendar reminders to users outside the back-office UI.
Alternatives: Email reminders or rely on native calendar alerts.
"""

from __future__ import annotations

import json
import logging
import re
import socket
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import tzinfo
import urllib.error
import urllib.request

from desksync.config import AppConfig
from desksync.errors import NotificationError
from desksync.models import CalendarEvent


logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 10
MARKDOWN_SPECIAL = re.compile(r"([_*`\[])")


class Notifier(ABC):
    """Summary: Abstract interface for a chat channel.

    Importance: Lets the reminder engine stay ignorant of the delivery transport.
    Alternatives: Call the Telegram API directly from the engine.
    """

    @abstractmethod
    def send(self, channel_id: str, text: str) -> None:
        """Summary: Deliver one message, raising NotificationError on failure.

        Importance: Callers decide whether a failed delivery matters.
        Alternatives: Return a boolean and lose the failure reason.
        """


class TelegramNotifier(Notifier):
    """Summary: Sends Markdown messages through the Telegram Bot API.

    Importance: The chat channel back-office users already watch.
    Alternatives: Slack webhooks or SMS gateways.
    """

    def __init__(self, bot_token: str, api_url: str = "https://api.telegram.org") -> None:
        self._bot_token = bot_token
        self._api_url = api_url.rstrip("/")

    def send(self, channel_id: str, text: str) -> None:
        payload = {"chat_id": channel_id, "text": text, "parse_mode": "Markdown"}
        request = urllib.request.Request(
            url=f"{self._api_url}/bot{self._bot_token}/sendMessage",
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=REQUEST_TIMEOUT_SECONDS) as response:
                raw = json.loads(response.read().decode("utf-8") or "{}")
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="ignore")
            raise NotificationError(f"Telegram rejected message ({exc.code}): {detail}") from exc
        except (urllib.error.URLError, socket.timeout) as exc:
            raise NotificationError(f"Telegram request failed: {exc}") from exc
        if raw and not raw.get("ok", True):
            raise NotificationError(f"Telegram error: {raw.get('description', 'unknown')}")


class LogNotifier(Notifier):
    """Summary: Writes notifications to the log instead of a chat.

    Importance: Keeps reminders observable when no bot token is configured.
    Alternatives: Disable reminders entirely without a token.
    """

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def send(self, channel_id: str, text: str) -> None:
        self.sent.append((channel_id, text))
        logger.info("Notification for %s: %s", channel_id, text.replace("\n", " | "))


@dataclass(frozen=True)
class NotifierFactory:
    """Summary: Chooses the notification channel from configuration.

    Importance: Keeps channel selection out of the engines.
    Alternatives: Wire the notifier manually at every entry point.
    """

    config: AppConfig

    def build(self) -> Notifier:
        if self.config.telegram_bot_token:
            return TelegramNotifier(self.config.telegram_bot_token, self.config.telegram_api_url)
        logger.info("TELEGRAM_BOT_TOKEN not set, reminders go to the log")
        return LogNotifier()


def format_reminder(event: CalendarEvent, minutes: int, display_zone: tzinfo) -> str:
    """Summary: Render the reminder text for one upcoming event.

    Importance: Shows when and where in the user's local time.
    Alternatives: Send a plain one-line message.
    """

    local_start = event.start.astimezone(display_zone)
    lines = [
        f"*Reminder: meeting in {minutes} min*",
        "",
        f"*{escape_markdown(event.subject)}*",
        local_start.strftime("%H:%M"),
    ]
    if event.location:
        lines.append(f"_{escape_markdown(event.location)}_")
    return "\n".join(lines)


def escape_markdown(text: str) -> str:
    """Escape the characters Telegram's legacy Markdown mode treats as entities."""

    return MARKDOWN_SPECIAL.sub(r"\\\1", text)
