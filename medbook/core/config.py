"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"
    VERSION: str = "0.1.0"

    # Database
    DATABASE_URL: str = "sqlite:///./medbook.db"
    SQLITE_BUSY_TIMEOUT_SECONDS: int = 30

    # Fernet key for calendar integration tokens
    TOKEN_ENCRYPTION_KEY: str = ""

    # Google OAuth / Calendar
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_TOKEN_URL: str = "https://oauth2.googleapis.com/token"
    GOOGLE_REVOKE_URL: str = "https://oauth2.googleapis.com/revoke"
    GOOGLE_CALENDAR_API_BASE: str = "https://www.googleapis.com/calendar/v3"
    GOOGLE_API_TIMEOUT_SECONDS: float = 15.0

    # Slot materialization
    SLOT_EXPANSION_HORIZON_DAYS: int = 90

    # Availability window validation
    MIN_WINDOW_MINUTES: int = 15
    MAX_WINDOW_PAST_DAYS: int = 30
    MAX_WINDOW_FUTURE_MONTHS: int = 3
    DEFAULT_RECURRENCE_WEEKS: int = 4

    # Calendar sync
    FULL_SYNC_WINDOW_DAYS: int = 90
    TOKEN_REFRESH_BUFFER_MINUTES: int = 5
    TOKEN_FALLBACK_EXPIRY_DAYS: int = 7
    SYNC_INTERVAL_MINUTES: int = 15
    SYNC_BATCH_SIZE: int = 50
    MAX_SYNC_RETRIES: int = 5

    # Cron endpoints
    INTERNAL_SECRET: str = ""

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Rate limiting (slowapi format)
    RATE_LIMIT_BOOKING: str = "30/minute"
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_STORAGE_URI: str = "memory://"

    # Error tracking
    SENTRY_DSN: str = ""

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def is_dev(self) -> bool:
        return self.ENV.lower() in ("dev", "development", "test")


settings = Settings()
