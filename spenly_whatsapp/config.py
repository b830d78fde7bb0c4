from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str
    DB_CONNECT_TIMEOUT_SECONDS: int = 5

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Twilio (outbound messages)
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_WHATSAPP_NUMBER: Optional[str] = None

    # Webhook Security
    # Unsigned webhooks are only accepted when explicitly allowed (local dev).
    TWILIO_WEBHOOK_VERIFY_TOKEN: str = ""
    ALLOW_UNSIGNED_WEBHOOKS: bool = False
    # Public URL Twilio signs against, when running behind a proxy
    WEBHOOK_PUBLIC_URL: Optional[str] = None

    # Bot behaviour
    LINK_TOKEN_TTL_MINUTES: int = 10
    DEFAULT_CATEGORY: str = "Food"

    @property
    def twilio_configured(self) -> bool:
        return bool(self.TWILIO_ACCOUNT_SID and self.TWILIO_AUTH_TOKEN and self.TWILIO_WHATSAPP_NUMBER)

    @property
    def webhook_auth_ready(self) -> bool:
        """Webhook can accept traffic: secret set, or unsigned mode opted into."""
        return bool(self.TWILIO_WEBHOOK_VERIFY_TOKEN) or self.ALLOW_UNSIGNED_WEBHOOKS


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()
