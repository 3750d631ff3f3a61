"""Application configuration via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Resolve .env from the project root regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./hedwig.db"

    # Public URLs
    app_url: str = "http://localhost:3000"
    api_url: str = "http://localhost:8000"

    # Outbound messaging
    sendgrid_api_key: str = ""
    email_from: str = "hedwig@hedwigbot.xyz"
    telegram_bot_token: str = ""

    # Inbound security
    webhook_secret: str = ""
    internal_api_token: str = "hedwig-internal"

    # Workflow tuning
    approval_token_ttl_days: int = 7
    invoice_due_days: int = 30
    invoice_max_attempts: int = 3
    invoice_backoff_base_seconds: float = 1.0
    invoice_retry_after_seconds: int = 60
    store_retry_after_seconds: int = 60
    reminder_window_days: int = 3

    # CORS
    cors_origins: str = "http://localhost:3000"

    # General
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list.

        In debug mode, returns ["*"] to allow any origin.
        """
        if self.debug:
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
