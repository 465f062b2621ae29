from functools import lru_cache
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
    # e.g. sqlite+aiosqlite:///./chatpanel.db or postgresql+asyncpg://...
    DATABASE_URL: str

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Webhook Security
    # APP_SECRET signs inbound deliveries (X-Hub-Signature-256); empty disables the check
    APP_SECRET: str = ""
    VERIFY_TOKEN: str = ""

    # Graph API (outbound gateway)
    ACCESS_TOKEN: str = ""
    PHONE_NUMBER_ID: str = ""
    WABA_ID: str = ""
    GRAPH_API_BASE_URL: str = "https://graph.facebook.com"
    GRAPH_API_VERSION: str = "v21.0"
    GATEWAY_TIMEOUT_SECONDS: float = 15.0
    MEDIA_TIMEOUT_SECONDS: float = 30.0

    # Templates
    DEFAULT_TEMPLATE_LANGUAGE: str = "es"
    # 0 disables the background refresh
    TEMPLATE_REFRESH_SECONDS: int = 3600

    # Panel Security - empty leaves panel routes open
    PANEL_API_KEY: str = ""


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()
