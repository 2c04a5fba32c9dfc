"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development; providers whose
credentials are left empty simply report themselves unavailable.

Usage:
    from backend.app.core.config import settings
    print(settings.DELIVERY_MAX_CONCURRENT)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from typing import TYPE_CHECKING, Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from backend.app.delivery.models import NotificationChannel
    from backend.app.delivery.retry import RetryPolicy


@dataclass(frozen=True)
class ProviderConfig:
    """
    Read-only configuration for one Channel Provider instance.

    Built once at startup; several instances for the same channel may
    coexist (e.g. one Twilio account per tenant).
    """
    name: str
    channel: "NotificationChannel"
    credentials: Dict[str, str] = field(default_factory=dict)
    sender: Optional[str] = None
    max_concurrent: int = 10
    callback_url: Optional[str] = None
    base_url: Optional[str] = None
    timeout_seconds: float = 15.0
    retry_policy: Optional["RetryPolicy"] = None

    def credential(self, key: str) -> str:
        return self.credentials.get(key) or ""


class Settings(BaseSettings):
    """
    Application-wide settings loaded from environment variables or .env file.

    Precedence: env var > .env file > default value
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "Notification Delivery Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── Server ──
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    RELOAD: bool = True

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    CORS_ALLOW_ALL: bool = True

    # ── Delivery ──
    DELIVERY_MAX_CONCURRENT: int = 10
    PROVIDER_TIMEOUT_SECONDS: float = 15.0
    PROVIDER_OUTAGE_THRESHOLD: int = 5
    SUBMIT_WORKERS: int = 4
    BACKGROUND_WORKERS_ENABLED: bool = True

    # ── Retry ──
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BACKOFF_BASE: float = 2.0
    RETRY_BASE_DELAY_SECONDS: float = 5.0
    RETRY_MAX_DELAY_SECONDS: float = 600.0
    RATE_LIMIT_COOLDOWN_SECONDS: float = 60.0
    RETRY_POLL_INTERVAL_SECONDS: float = 5.0

    # ── Status reconciliation ──
    STATUS_POLL_INTERVAL_SECONDS: float = 300.0

    # ── SMS (Twilio) ──
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_FROM_NUMBER: Optional[str] = None
    TWILIO_STATUS_CALLBACK_URL: Optional[str] = None
    TWILIO_BASE_URL: str = "https://api.twilio.com"
    TWILIO_MAX_CONCURRENT: int = 10

    # ── Email (SendGrid) ──
    SENDGRID_API_KEY: Optional[str] = None
    SENDGRID_FROM_EMAIL: Optional[str] = None
    SENDGRID_BASE_URL: str = "https://api.sendgrid.com"
    SENDGRID_MAX_CONCURRENT: int = 10

    # ── Push (FCM HTTP v1) ──
    FCM_PROJECT_ID: Optional[str] = None
    FCM_ACCESS_TOKEN: Optional[str] = None
    FCM_BASE_URL: str = "https://fcm.googleapis.com"
    FCM_MAX_CONCURRENT: int = 20

    # ── Chat bridge (Slack Web API) ──
    SLACK_BOT_TOKEN: Optional[str] = None
    SLACK_BASE_URL: str = "https://slack.com/api"
    SLACK_MAX_CONCURRENT: int = 5

    # ── In-app ──
    IN_APP_ENABLED: bool = True

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    def default_retry_policy(self) -> "RetryPolicy":
        from backend.app.delivery.retry import RetryPolicy

        return RetryPolicy(
            max_attempts=self.RETRY_MAX_ATTEMPTS,
            backoff_base=self.RETRY_BACKOFF_BASE,
            base_delay_seconds=self.RETRY_BASE_DELAY_SECONDS,
            max_delay_seconds=self.RETRY_MAX_DELAY_SECONDS,
            rate_limit_cooldown_seconds=self.RATE_LIMIT_COOLDOWN_SECONDS,
        )

    def provider_configs(self) -> List[ProviderConfig]:
        """Build one ProviderConfig per supported channel from settings."""
        from backend.app.delivery.models import NotificationChannel

        timeout = self.PROVIDER_TIMEOUT_SECONDS
        return [
            ProviderConfig(
                name="twilio",
                channel=NotificationChannel.SMS,
                credentials={
                    "account_sid": self.TWILIO_ACCOUNT_SID or "",
                    "auth_token": self.TWILIO_AUTH_TOKEN or "",
                },
                sender=self.TWILIO_FROM_NUMBER,
                max_concurrent=self.TWILIO_MAX_CONCURRENT,
                callback_url=self.TWILIO_STATUS_CALLBACK_URL,
                base_url=self.TWILIO_BASE_URL,
                timeout_seconds=timeout,
            ),
            ProviderConfig(
                name="sendgrid",
                channel=NotificationChannel.EMAIL,
                credentials={"api_key": self.SENDGRID_API_KEY or ""},
                sender=self.SENDGRID_FROM_EMAIL,
                max_concurrent=self.SENDGRID_MAX_CONCURRENT,
                base_url=self.SENDGRID_BASE_URL,
                timeout_seconds=timeout,
            ),
            ProviderConfig(
                name="fcm",
                channel=NotificationChannel.PUSH,
                credentials={
                    "project_id": self.FCM_PROJECT_ID or "",
                    "access_token": self.FCM_ACCESS_TOKEN or "",
                },
                max_concurrent=self.FCM_MAX_CONCURRENT,
                base_url=self.FCM_BASE_URL,
                timeout_seconds=timeout,
            ),
            ProviderConfig(
                name="slack",
                channel=NotificationChannel.CHAT,
                credentials={"bot_token": self.SLACK_BOT_TOKEN or ""},
                max_concurrent=self.SLACK_MAX_CONCURRENT,
                base_url=self.SLACK_BASE_URL,
                timeout_seconds=timeout,
            ),
            ProviderConfig(
                name="in_app",
                channel=NotificationChannel.IN_APP,
                credentials={"enabled": "1" if self.IN_APP_ENABLED else ""},
                max_concurrent=self.DELIVERY_MAX_CONCURRENT,
                timeout_seconds=timeout,
            ),
        ]


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
