"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or .env file."""
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Application
    app_name: str = "Clinic Scheduling"
    debug: bool = False
    app_url: str = "http://localhost:8000"  # Base URL used for OAuth redirects
    internal_api_key: str = ""  # Guards admin-only endpoints when set

    # Server
    host: str = "0.0.0.0"  # Bind to all interfaces for external access
    port: int = 8000
    allowed_origins: str = "*"  # Comma-separated origins, or "*" for all

    # Database
    database_url: str = "sqlite:///./clinic_scheduling.db"

    # Google Calendar API
    google_client_id: str = ""
    google_client_secret: str = ""
    google_token_secret: str = ""  # Key material for encrypting stored tokens
    webhook_public_url: str = ""  # Public base URL Google pushes notifications to
    google_http_timeout_seconds: int = 30

    # Scheduling
    default_timezone: str = "America/Sao_Paulo"

    # Sync settings
    sync_interval_minutes: int = 15
    channel_renewal_interval_minutes: int = 60
    channel_renewal_lead_hours: int = 24

    @property
    def token_secret(self) -> str:
        return (self.google_token_secret or self.google_client_secret).strip()


settings = Settings()
