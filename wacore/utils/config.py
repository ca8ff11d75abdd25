from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized application settings.

    Loads from environment with safe local defaults. Delays are expressed in
    seconds so tests can zero them out by constructing their own instance.
    """

    app_name: str = Field(default="wa-session-core")
    app_env: Literal["local", "dev", "staging", "prod"] = Field(default="local", alias="APP_ENV")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    # Database URL for async SQLAlchemy engine. Default to local SQLite file for dev/test.
    database_url: str = Field(default="sqlite+aiosqlite:///./app.db", alias="DATABASE_URL")

    # HTTP session gateway hosting the WhatsApp Web sessions
    gateway_url: str = Field(default="", alias="GATEWAY_URL")
    gateway_api_key: str = Field(default="", alias="GATEWAY_API_KEY")
    gateway_timeout_s: float = Field(default=10.0, alias="GATEWAY_TIMEOUT_S")
    # Shared secret for provider webhook signatures; empty disables verification
    webhook_secret: str = Field(default="", alias="WEBHOOK_SECRET")

    # Blob storage for inbound media
    storage_root: str = Field(default="./storage", alias="STORAGE_ROOT")
    storage_base_url: str = Field(default="/storage", alias="STORAGE_BASE_URL")
    attachment_prefix: str = Field(default="attachments/", alias="ATTACHMENT_PREFIX")

    # Connect: QR polling
    qr_wait_attempts: int = Field(default=30, alias="QR_WAIT_ATTEMPTS")
    qr_poll_interval_s: float = Field(default=1.0, alias="QR_POLL_INTERVAL_S")

    # Outbound send retry/backoff settings
    send_max_attempts: int = Field(default=3, alias="SEND_MAX_ATTEMPTS")
    send_backoff_s: float = Field(default=1.0, alias="SEND_BACKOFF_S")
    bulk_send_delay_s: float = Field(default=0.5, alias="BULK_SEND_DELAY_S")

    # Reconciliation
    sync_cooldown_s: int = Field(default=300, alias="SYNC_COOLDOWN_S")
    sync_interval_s: int = Field(default=300, alias="SYNC_INTERVAL_S")
    sync_fetch_limit: int = Field(default=50, alias="SYNC_FETCH_LIMIT")
    restore_sync_delay_s: float = Field(default=10.0, alias="RESTORE_SYNC_DELAY_S")

    message_retention_limit: int = Field(default=20, alias="MESSAGE_RETENTION_LIMIT")
    auto_reply_text: str = Field(
        default="Thank you for your message. We will get back to you soon.",
        alias="AUTO_REPLY_TEXT",
    )

    # Telephony auto-response for missed WhatsApp calls; empty URL disables it
    pbx_url: str = Field(default="", alias="PBX_URL")
    pbx_timeout_s: float = Field(default=5.0, alias="PBX_TIMEOUT_S")
    missed_call_reply_text: str = Field(
        default="This is an automated call. Thank you for contacting us.",
        alias="MISSED_CALL_REPLY_TEXT",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""
    return Settings()  # type: ignore[call-arg]
