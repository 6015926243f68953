"""Summary: Application configuration for DeskSync.

Importance: Centralizes environment, .env, and config defaults for consistent behavior.
Alternatives: Use a dedicated settings library like Pydantic Settings.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from dataclasses import dataclass


SELF_SENT_POLICIES = {"domain", "address", "off"}


@dataclass(frozen=True)
class AppConfig:
    """Summary: Holds configuration values for providers, storage, and triggers.

    Importance: Ensures all services derive settings from a single source of truth.
    Alternatives: Store settings in per-tenant JSON blobs in the database.
    """

    db_path: str
    api_host: str
    api_port: int
    api_key: str
    cron_secret: str
    token_secret: str
    microsoft_client_id: str
    microsoft_client_secret: str
    microsoft_tenant_id: str
    microsoft_authority_url: str
    microsoft_graph_base_url: str
    oauth_redirect_uri: str
    telegram_bot_token: str
    telegram_api_url: str
    calendar_timezone: str
    mail_unread_only: bool
    self_sent_policy: str

    @property
    def microsoft_token_url(self) -> str:
        """Summary: Token endpoint for the configured directory tenant.

        Importance: Code exchange and refresh must hit the same authority.
        Alternatives: Configure the full token URL separately.
        """

        return (
            f"{self.microsoft_authority_url.rstrip('/')}/"
            f"{self.microsoft_tenant_id}/oauth2/v2.0/token"
        )

    @property
    def microsoft_authorize_url(self) -> str:
        return (
            f"{self.microsoft_authority_url.rstrip('/')}/"
            f"{self.microsoft_tenant_id}/oauth2/v2.0/authorize"
        )

    @staticmethod
    def from_env() -> "AppConfig":
        """Summary: Build configuration from defaults, .env, and environment.

        Importance: Keeps all variables defined in config defaults while allowing overrides.
        Alternatives: Parse only environment variables without a defaults file.
        """

        defaults = load_defaults(Path("config") / "defaults.json")
        load_dotenv(Path(".env"))
        self_sent_policy = os.getenv("DESKSYNC_SELF_SENT_POLICY", defaults["self_sent_policy"])
        if self_sent_policy not in SELF_SENT_POLICIES:
            raise ValueError(f"Unknown self-sent policy: {self_sent_policy}")
        return AppConfig(
            db_path=os.getenv("DESKSYNC_DB_PATH", defaults["db_path"]),
            api_host=os.getenv("DESKSYNC_API_HOST", defaults["api_host"]),
            api_port=int(os.getenv("DESKSYNC_API_PORT", defaults["api_port"])),
            api_key=os.getenv("DESKSYNC_API_KEY", defaults["api_key"]),
            cron_secret=os.getenv("CRON_SECRET", defaults["cron_secret"]),
            token_secret=os.getenv("DESKSYNC_TOKEN_SECRET", defaults["token_secret"]),
            microsoft_client_id=os.getenv("MICROSOFT_CLIENT_ID", defaults["microsoft_client_id"]),
            microsoft_client_secret=os.getenv(
                "MICROSOFT_CLIENT_SECRET", defaults["microsoft_client_secret"]
            ),
            microsoft_tenant_id=os.getenv("MICROSOFT_TENANT_ID", defaults["microsoft_tenant_id"]),
            microsoft_authority_url=os.getenv(
                "MICROSOFT_AUTHORITY_URL", defaults["microsoft_authority_url"]
            ),
            microsoft_graph_base_url=os.getenv(
                "MICROSOFT_GRAPH_BASE_URL", defaults["microsoft_graph_base_url"]
            ),
            oauth_redirect_uri=os.getenv(
                "DESKSYNC_OAUTH_REDIRECT_URI", defaults["oauth_redirect_uri"]
            ),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN", defaults["telegram_bot_token"]),
            telegram_api_url=os.getenv("TELEGRAM_API_URL", defaults["telegram_api_url"]),
            calendar_timezone=os.getenv(
                "DESKSYNC_CALENDAR_TIMEZONE", defaults["calendar_timezone"]
            ),
            mail_unread_only=parse_bool(
                os.getenv("DESKSYNC_MAIL_UNREAD_ONLY", defaults["mail_unread_only"])
            ),
            self_sent_policy=self_sent_policy,
        )


def parse_bool(value: str | bool) -> bool:
    """Interpret common truthy strings from env files."""

    if isinstance(value, bool):
        return value
    return value.strip().lower() in {"1", "true", "yes", "on"}


def load_defaults(path: Path) -> dict[str, str]:
    """Summary: Load configuration defaults from JSON.

    Importance: Ensures all variables exist in a single config file.
    Alternatives: Inline defaults in the AppConfig initializer.
    """

    if not path.exists():
        raise FileNotFoundError(f"Defaults file not found: {path}")
    return json.loads(path.read_text(encoding="utf-8"))


def load_dotenv(path: Path) -> None:
    """Summary: Load key-value pairs from a .env file into the environment.

    Importance: Keeps secrets out of code while supporting local workflows.
    Alternatives: Use python-dotenv or OS-specific secret stores.
    """

    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())
