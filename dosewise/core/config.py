"""Configuration via environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    # API
    api_key: str = ""

    # Storage (empty URL = in-process store)
    mongodb_url: str = ""
    mongodb_database: str = "dosewise"

    # Google Calendar OAuth
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = "http://localhost:3000/calendar/callback"
    google_calendar_api_base: str = "https://www.googleapis.com/calendar/v3"

    # Token encryption at rest
    age_recipient: str = ""
    age_identity: str = ""
    data_audit_path: Path = Path("data/audit")

    # Rewards
    reward_window: int = 100
    daily_bonus_points: int = 10
    on_time_tolerance_minutes: int = 15
    achievement_lookback_days: int = 365

    # Calendar sync
    sync_window_days: int = 14
    sync_max_events: int = 30
    sync_batch_size: int = 4
    sync_batch_delay: float = 1.0
    sync_regimen_chunk_size: int = 3
    sync_regimen_delay: float = 1.0
    sync_regimen_timeout: float = 60.0
    provider_timeout: float = 5.0
    status_cache_seconds: float = 120.0

    # Locale
    timezone: str = "Europe/Warsaw"

    # App
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
