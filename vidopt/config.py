"""Server-level configuration from environment variables.

Only contains settings needed before the database is available, plus the
orchestrator tuning knobs. All fields have defaults; no .env file is required.

User preferences (output directory, preset, TMDB key) live in the database
via AppConfig; see models/app_config.py.
"""

import sys
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_database_url() -> str:
    """Return the default database URL, using ~/.vidopt/ for frozen builds."""
    if getattr(sys, "frozen", False):
        db_dir = Path.home() / ".vidopt"
        db_dir.mkdir(parents=True, exist_ok=True)
        db_path = db_dir / "vidopt.db"
        return f"sqlite+aiosqlite:///{db_path}"
    return "sqlite+aiosqlite:///./vidopt.db"


class Settings(BaseSettings):
    """Server infrastructure settings. Loaded from VIDOPT_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="VIDOPT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_url: str = _default_database_url()

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    debug: bool = False

    # Orchestrator
    tray_sync_interval: float = 2.0  # Seconds between secondary-surface pushes
    error_message_max_length: int = 100
    encoder_stall_timeout: float = 300.0  # No FFmpeg output for this long = timeout
    tmdb_timeout: float = 10.0

    # Logging
    log_dir: str = ""  # Empty = ~/.vidopt


settings = Settings()
