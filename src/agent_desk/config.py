"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


class StorageConfig(BaseModel):
    main_db_path: str = "./data/agent_desk.db"
    tenant_db_dir: str = "./data/tenants"


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class AuthConfig(BaseModel):
    secret_key: str = "change-me"
    algorithm: str = "HS256"
    issuer: str = "agent-desk"
    token_ttl_seconds: int = 7 * 24 * 3600


class RoutingConfig(BaseModel):
    default_tenant_id: Optional[int] = None
    fallback_scan: bool = True


class AIConfig(BaseModel):
    provider: str = "anthropic"
    api_key: str = ""
    base_url: Optional[str] = None
    max_retries: int = 2
    timeout: int = 60
    generation_timeout: float = 30.0
    fallback_message: str = ""
    history_limit: int = 20


class WhatsAppConfig(BaseModel):
    enabled: bool = True
    access_token: str
    phone_number_id: str
    verify_token: str
    app_secret: Optional[str] = None
    api_base: str = "https://graph.facebook.com/v18.0"
    tenant_id: Optional[int] = None


class TelegramConfig(BaseModel):
    enabled: bool = True
    bot_token: str
    webhook_secret: Optional[str] = None
    tenant_id: Optional[int] = None


class MessengerConfig(BaseModel):
    enabled: bool = True
    page_access_token: str
    page_id: str
    verify_token: str
    app_secret: Optional[str] = None
    api_base: str = "https://graph.facebook.com/v18.0"
    tenant_id: Optional[int] = None


class EmailConfig(BaseModel):
    enabled: bool = True
    smtp_host: str
    smtp_port: int = 587
    use_tls: bool = True
    username: str = ""
    password: str = ""
    from_address: str
    inbound_secret: str
    tenant_id: Optional[int] = None


class ChannelsConfig(BaseModel):
    whatsapp: Optional[WhatsAppConfig] = None
    telegram: Optional[TelegramConfig] = None
    messenger: Optional[MessengerConfig] = None
    email: Optional[EmailConfig] = None


class DeliveryConfig(BaseModel):
    retry_attempts: int = 3
    retry_min_wait: float = 0.5
    retry_max_wait: float = 8.0


class AlertsConfig(BaseModel):
    failure_threshold: int = 3
    failure_window_hours: int = 24


class RealtimeConfig(BaseModel):
    metrics_interval_seconds: int = 30
    stale_session_minutes: int = 0
    timezone: str = "UTC"


class AppConfig(BaseModel):
    log_level: str = "INFO"
    data_dir: str = "./data"
    storage: StorageConfig = Field(default_factory=StorageConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    ai: AIConfig = Field(default_factory=AIConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str, extra: dict[str, str] | None = None) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if extra and var_name in extra:
            return extra[var_name]
        value = os.environ.get(var_name)
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation."""
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")

    # data_dir may be referenced by other paths as ${data_dir}
    raw_data = yaml.safe_load(raw_text) or {}
    data_dir = _interpolate_env_vars(str(raw_data.get("data_dir", "./data")))

    interpolated = _interpolate_env_vars(raw_text, extra={"data_dir": data_dir})
    data = yaml.safe_load(interpolated) or {}

    return AppConfig(**data)
