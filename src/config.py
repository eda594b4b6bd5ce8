"""Application configuration loaded from environment variables."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file).

    Variables use the ``GLUCOLINK_`` prefix, e.g. ``GLUCOLINK_LOG_LEVEL``.
    """

    # --- App ---
    app_name: str = "Glucolink"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Storage ---
    database_path: Path = Path("data/glucose.sqlite3")
    retention_hours: int = 24

    # --- Scheduler ---
    poll_interval_seconds: float = 60.0

    # --- CGM configuration ---
    cgm_config_path: Path | None = None  # defaults to the bundled cgm_config.yaml
    shared_storage_dir: Path = Path("data/shared")

    # --- Nightscout ---
    nightscout_url: str = ""
    nightscout_api_secret: str = ""  # server-side only

    model_config = SettingsConfigDict(
        env_prefix="GLUCOLINK_",
        env_file=".env",
        env_file_encoding="utf-8",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
