"""Application configuration."""

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # AI Provider API Keys
    anthropic_api_key: str = ""
    google_api_key: str = ""
    openai_api_key: str = ""
    mistral_api_key: str = ""

    # Application settings
    environment: str = "development"
    log_level: str = "INFO"
    timezone: str = "Europe/Paris"  # Used for family quiet hours

    # Database settings
    database_url: str = "sqlite+aiosqlite:///./iaiaz.db"
    auto_migrate: bool = True
    database_echo: bool = False

    # Supabase Authentication (HS256 JWTs signed with the project secret)
    supabase_jwt_secret: str = ""
    supabase_jwt_audience: str = "authenticated"

    # Stripe Configuration
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    # SMTP (invite emails)
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from_email: str = "noreply@iaiaz.com"
    smtp_use_ssl: bool = False

    # Frontend URL (for Stripe redirect and invite links)
    frontend_url: str = "http://localhost:3000"

    # CORS Configuration
    # Comma-separated list of allowed origins. In production, set to your domain.
    cors_origins: str = "http://localhost:3000"
    cors_allow_credentials: bool = True

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def auth_enabled(self) -> bool:
        return bool(self.supabase_jwt_secret)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
