"""Tests for configuration loading."""

from pathlib import Path

import pytest

from agent_desk.config import load_config

EXAMPLE = Path(__file__).resolve().parent.parent / "config.example.yaml"


def test_env_vars_and_data_dir_are_interpolated(tmp_path, monkeypatch):
    monkeypatch.setenv("DESK_TEST_SECRET", "s3cr3t")
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        "data_dir: /srv/desk\n"
        "storage:\n"
        "  main_db_path: ${data_dir}/main.db\n"
        "auth:\n"
        "  secret_key: ${DESK_TEST_SECRET}\n"
        "channels:\n"
        "  whatsapp:\n"
        "    access_token: t\n"
        "    phone_number_id: '123'\n"
        "    verify_token: v\n"
        "    tenant_id: 4\n",
        encoding="utf-8",
    )
    config = load_config(config_file, tmp_path / "missing.env")

    assert config.storage.main_db_path == "/srv/desk/main.db"
    assert config.auth.secret_key == "s3cr3t"
    assert config.channels.whatsapp.tenant_id == 4
    assert config.channels.telegram is None
    assert config.delivery.retry_attempts == 3


def test_dotenv_file_is_loaded(tmp_path, monkeypatch):
    monkeypatch.delenv("DESK_DOTENV_KEY", raising=False)
    (tmp_path / ".env").write_text("DESK_DOTENV_KEY=from-dotenv\n", encoding="utf-8")
    config_file = tmp_path / "config.yaml"
    config_file.write_text("ai:\n  api_key: ${DESK_DOTENV_KEY}\n", encoding="utf-8")

    config = load_config(config_file, tmp_path / ".env")
    assert config.ai.api_key == "from-dotenv"
    monkeypatch.delenv("DESK_DOTENV_KEY", raising=False)


def test_missing_config_file():
    with pytest.raises(FileNotFoundError):
        load_config("/nonexistent/config.yaml")


def test_example_config_is_valid(tmp_path):
    config = load_config(EXAMPLE, tmp_path / "none.env")
    assert config.routing.fallback_scan is True
    assert config.alerts.failure_threshold == 3
