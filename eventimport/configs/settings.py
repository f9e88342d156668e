"""Centralized settings management for the event import pipeline."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy import make_url


class Settings(BaseSettings):
    """
    Application settings powered by pydantic-settings.

    Loads configuration from environment variables and a .env file located
    at the repository root.
    """

    # -------------------------------------------------------------------------
    # ENVIRONMENT
    # -------------------------------------------------------------------------
    ENV: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    JSON_LOGS: bool = False

    # -------------------------------------------------------------------------
    # DATABASE
    # -------------------------------------------------------------------------
    DATABASE_URL: str = Field(..., min_length=1)

    # -------------------------------------------------------------------------
    # GEOCODING PROVIDERS
    # -------------------------------------------------------------------------
    GEOCODING_GOOGLE_MAPS_API_KEY: SecretStr | None = None
    GEOCODING_OPENCAGE_API_KEY: SecretStr | None = None
    NOMINATIM_DOMAIN: str = "nominatim.openstreetmap.org"
    GEOCODING_USER_AGENT: str = "eventimport-geocoder"

    # -------------------------------------------------------------------------
    # PATHS
    # -------------------------------------------------------------------------
    # BASE_DIR points to the repository root
    BASE_DIR: Path = Path(__file__).resolve().parents[2]

    UPLOAD_DIR: Path = BASE_DIR / "uploads"
    PIPELINE_CONFIG_PATH: Path = BASE_DIR / "eventimport" / "configs" / "pipeline.yaml"

    # -------------------------------------------------------------------------
    # CONFIGURATION
    # -------------------------------------------------------------------------
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        # Allow extra fields in .env but ignore them in the model
        extra="ignore",
    )

    def get_database_backend(self) -> str:
        """
        Return the SQLAlchemy backend name of DATABASE_URL.

        Returns
        -------
        str
            Backend name such as ``postgresql`` or ``sqlite``.
        """
        return make_url(self.DATABASE_URL).get_backend_name()

    def secret(self, name: str) -> str | None:
        """Return the plain value of a SecretStr setting, or None when unset."""
        value = getattr(self, name, None)
        if value is None:
            return None
        return value.get_secret_value() if hasattr(value, "get_secret_value") else str(value)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns
    -------
    Settings
        The singleton settings instance.
    """
    return Settings()
