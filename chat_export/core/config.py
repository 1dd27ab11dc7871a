"""Application configuration using Pydantic Settings.

Loads settings from environment variables and .env file.
All settings have sensible defaults for local development.
"""

from __future__ import annotations

import json
import logging

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Valid Python logging levels
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class Settings(BaseSettings):
    """Service-wide configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Server ---
    service_env: str = "development"
    host: str = "0.0.0.0"
    port: int = 15020
    debug: bool = False

    # --- Logging ---
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level to uppercase.

        Falls back to INFO if an invalid level is provided.
        """
        normalized = v.upper().strip()
        if normalized not in VALID_LOG_LEVELS:
            # Log a warning (to stderr since logging may not be configured yet)
            import sys

            print(
                f"WARNING: Invalid LOG_LEVEL '{v}'. "
                f"Valid levels are: {', '.join(sorted(VALID_LOG_LEVELS))}. "
                "Falling back to INFO.",
                file=sys.stderr,
            )
            return "INFO"
        return normalized

    def get_log_level_int(self) -> int:
        """Return the integer value of the configured log level."""
        return getattr(logging, self.log_level, logging.INFO)

    # --- Asset Resolution ---
    asset_concurrency: int = 4  # simultaneous fetches per job
    asset_timeout_seconds: float = 20.0
    asset_max_retries: int = 2  # retries after the first attempt
    asset_backoff_seconds: float = 0.5  # doubled on every retry
    max_asset_bytes: int = 25 * 1024 * 1024  # 25 MB per image/attachment
    asset_user_agent: str = "chat-export/0.1 (asset-resolver)"

    # --- Normalization ---
    normalize_chunk_size: int = 25  # message elements between cooperative yields
    default_site: str = "generic"

    # --- Naming ---
    default_naming_template: str = ""
    max_filename_length: int = 150

    # --- Screenshot / PDF rendering ---
    screenshot_viewport_width: int = 1000
    screenshot_viewport_height: int = 1200
    screenshot_device_scale: float = 1.0
    render_timeout_seconds: int = 60

    # --- Delivery ---
    # Directory used by FileDeliverySink
    export_output_dir: str = "./exports"
    max_snapshot_bytes: int = 30 * 1024 * 1024  # 30 MB max HTML snapshot upload

    # --- CORS ---
    cors_origins: str = "http://localhost:15000,http://localhost:3000"

    def get_cors_origins(self) -> list[str]:
        """Parse cors_origins as JSON list or comma-separated string."""
        raw = self.cors_origins.strip()
        if raw.startswith("["):
            return json.loads(raw)
        return [o.strip() for o in raw.split(",") if o.strip()]


settings = Settings()
