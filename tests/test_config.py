"""Summary: Tests for configuration loading.

Importance: Ensures defaults, .env, and environment overrides behave correctly.
Alternatives: Validate configuration manually during runtime.
"""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from desksync.config import AppConfig, load_defaults, load_dotenv, parse_bool


DEFAULTS = {
    "db_path": "test.db",
    "api_host": "127.0.0.1",
    "api_port": "8000",
    "api_key": "",
    "cron_secret": "",
    "token_secret": "",
    "microsoft_client_id": "",
    "microsoft_client_secret": "",
    "microsoft_tenant_id": "common",
    "microsoft_authority_url": "https://login.microsoftonline.com",
    "microsoft_graph_base_url": "https://graph.microsoft.com/v1.0",
    "oauth_redirect_uri": "http://localhost:8000/oauth/callback",
    "telegram_bot_token": "",
    "telegram_api_url": "https://api.telegram.org",
    "calendar_timezone": "Europe/Paris",
    "mail_unread_only": "true",
    "self_sent_policy": "domain",
}

ENV_KEYS = [
    "DESKSYNC_DB_PATH",
    "DESKSYNC_API_PORT",
    "DESKSYNC_SELF_SENT_POLICY",
    "DESKSYNC_MAIL_UNREAD_ONLY",
    "MICROSOFT_TENANT_ID",
    "CRON_SECRET",
]


def _write_defaults(root: Path) -> None:
    (root / "config").mkdir()
    (root / "config" / "defaults.json").write_text(json.dumps(DEFAULTS), encoding="utf-8")


def test_load_defaults_reads_json(tmp_path: Path) -> None:
    """Summary: Verify defaults are parsed from JSON.

    Importance: Confirms config file is the source of truth for variables.
    Alternatives: Hardcode defaults in the test.
    """

    defaults_path = tmp_path / "defaults.json"
    defaults_path.write_text("{\"db_path\": \"test.db\"}", encoding="utf-8")
    assert load_defaults(defaults_path)["db_path"] == "test.db"


def test_load_defaults_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_defaults(tmp_path / "absent.json")


def test_load_dotenv_does_not_override_environment(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Summary: Ensure .env fills gaps but never wins over real environment variables.

    Importance: Deployment secrets must beat a stale local .env file.
    Alternatives: Let .env values always take precedence.
    """

    env_path = tmp_path / ".env"
    env_path.write_text("# comment\nCRON_SECRET=from-file\nDESKSYNC_DB_PATH=file.db\n", encoding="utf-8")
    monkeypatch.setenv("CRON_SECRET", "from-env")
    monkeypatch.delenv("DESKSYNC_DB_PATH", raising=False)
    load_dotenv(env_path)
    assert os.getenv("CRON_SECRET") == "from-env"
    assert os.getenv("DESKSYNC_DB_PATH") == "file.db"


def test_app_config_uses_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Summary: Verify AppConfig honors defaults when env is absent.

    Importance: Confirms config file remains the baseline for variables.
    Alternatives: Inline defaults directly in the AppConfig class.
    """

    _write_defaults(tmp_path)
    monkeypatch.chdir(tmp_path)
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    config = AppConfig.from_env()
    assert config.db_path == "test.db"
    assert config.api_port == 8000
    assert config.mail_unread_only is True
    assert config.self_sent_policy == "domain"
    assert config.microsoft_token_url == (
        "https://login.microsoftonline.com/common/oauth2/v2.0/token"
    )
    assert config.microsoft_authorize_url.endswith("/common/oauth2/v2.0/authorize")


def test_app_config_environment_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write_defaults(tmp_path)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DESKSYNC_MAIL_UNREAD_ONLY", "no")
    monkeypatch.setenv("MICROSOFT_TENANT_ID", "contoso")
    monkeypatch.setenv("DESKSYNC_SELF_SENT_POLICY", "address")
    config = AppConfig.from_env()
    assert config.mail_unread_only is False
    assert config.self_sent_policy == "address"
    assert "/contoso/" in config.microsoft_token_url


def test_app_config_rejects_unknown_self_sent_policy(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _write_defaults(tmp_path)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DESKSYNC_SELF_SENT_POLICY", "subdomain")
    with pytest.raises(ValueError):
        AppConfig.from_env()


@pytest.mark.parametrize("raw,expected", [("1", True), ("YES", True), ("off", False), ("", False)])
def test_parse_bool(raw: str, expected: bool) -> None:
    assert parse_bool(raw) is expected
