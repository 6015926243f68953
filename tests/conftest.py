"""Summary: Shared fixtures for DeskSync tests.

Importance: Gives every test an isolated database and a fixed configuration.
Alternatives: Rebuild configuration inside each test module.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Callable

import pytest

from desksync.config import AppConfig
from desksync.models import CredentialScope
from desksync.storage.sqlite_store import SqliteStore, StoredCredential
from desksync.token_codec import TokenCodec


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    """Summary: Build an AppConfig for tests.

    Importance: Ensures tests use isolated storage and no real secrets.
    Alternatives: Load AppConfig from environment variables.
    """

    return AppConfig(
        db_path=str(tmp_path / "desksync.db"),
        api_host="127.0.0.1",
        api_port=8000,
        api_key="",
        cron_secret="cron-secret",
        token_secret="secret",
        microsoft_client_id="ms-client",
        microsoft_client_secret="ms-secret",
        microsoft_tenant_id="common",
        microsoft_authority_url="https://login.microsoftonline.com",
        microsoft_graph_base_url="https://graph.microsoft.com/v1.0",
        oauth_redirect_uri="http://localhost:8000/oauth/callback",
        telegram_bot_token="",
        telegram_api_url="https://api.telegram.org",
        calendar_timezone="Europe/Paris",
        mail_unread_only=True,
        self_sent_policy="domain",
    )


@pytest.fixture
def store(config: AppConfig) -> SqliteStore:
    sqlite_store = SqliteStore(config.db_path)
    sqlite_store.initialize()
    return sqlite_store


@pytest.fixture
def seed_credential(store: SqliteStore) -> Callable[..., None]:
    """Summary: Write an encoded credential row directly into the store.

    Importance: Lets tests start from a connected scope without an OAuth round trip.
    Alternatives: Drive the full authorization-code exchange in every test.
    """

    codec = TokenCodec("secret")

    def _seed(
        scope: CredentialScope,
        access_token: str | None = "access",
        refresh_token: str | None = "refresh",
        expires_at: datetime | None = None,
    ) -> None:
        store.save_credential(
            StoredCredential(
                scope_type=scope.scope_type,
                scope_id=scope.scope_id,
                access_token=codec.encode(access_token),
                refresh_token=codec.encode(refresh_token),
                expires_at=expires_at.isoformat() if expires_at else None,
                connected_identity="support@acme.test",
                connected_at=None,
            )
        )

    return _seed
