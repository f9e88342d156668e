"""Configuration loader for the event import pipeline."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from eventimport.configs.settings import Settings, get_settings
from eventimport.schemas.geocoding import GeocodingSettings

# ============================================================================
# PIPELINE CONFIG MODELS
# ============================================================================


class BatchSizes(BaseModel):
    """Rows read per task invocation, per stage."""

    duplicate_analysis: int = Field(default=5000, ge=1)
    schema_detection: int = Field(default=10000, ge=1)
    geocoding: int = Field(default=100, ge=1)
    event_creation: int = Field(default=1000, ge=1)


class RetrySettings(BaseModel):
    max_attempts: int = Field(default=3, ge=0)
    backoff: str = Field(default="exp", pattern="^(exp|fixed|none)$")
    base_delay_s: float = Field(default=60.0, ge=0)
    max_delay_s: float = Field(default=3600.0, ge=0)
    jitter: float = Field(default=0.0, ge=0, le=1)


class ApprovalSettings(BaseModel):
    lock_timeout_hours: float = Field(default=72.0, gt=0)


class PipelineConfig(BaseModel):
    """Validated content of pipeline.yaml."""

    batch_sizes: BatchSizes = Field(default_factory=BatchSizes)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    approval: ApprovalSettings = Field(default_factory=ApprovalSettings)
    geocoding: GeocodingSettings = Field(default_factory=GeocodingSettings)


# ============================================================================
# LOADER
# ============================================================================


def substitute_settings(content: str, settings: Settings) -> str:
    """
    Replace ``${KEY}`` placeholders with values from settings.

    Secrets are unwrapped and unset values become empty strings.
    """
    for key, value in settings.model_dump().items():
        placeholder = f"${{{key}}}"
        if placeholder in content:
            if value is None:
                val_str = ""
            elif hasattr(value, "get_secret_value"):
                val_str = value.get_secret_value()
            else:
                val_str = str(value)
            content = content.replace(placeholder, val_str)
    return content


class Config:
    """Configuration for the event import pipeline."""

    CONFIG_DIR = Path(__file__).parent.resolve()
    DEFAULT_PIPELINE_CONFIG_PATH = CONFIG_DIR / "pipeline.yaml"

    _cache: dict[Path, PipelineConfig] = {}

    @classmethod
    def load_raw(cls, path: Path, settings: Settings) -> dict[str, Any]:
        """Load a YAML file with settings placeholders substituted."""
        if not path.exists():
            raise FileNotFoundError(f"Missing config at {path}")

        with open(path, encoding="utf-8") as f:
            content = substitute_settings(f.read(), settings)
        return yaml.safe_load(content) or {}

    @classmethod
    def load_pipeline_config(cls, settings: Settings | None = None, path: Path | None = None) -> PipelineConfig:
        """Load and validate the pipeline configuration (cached per path)."""
        settings = settings or get_settings()
        path = Path(path or settings.PIPELINE_CONFIG_PATH)
        if path not in cls._cache:
            cls._cache[path] = PipelineConfig.model_validate(cls.load_raw(path, settings))
        return cls._cache[path]

    @classmethod
    def clear_cache(cls) -> None:
        cls._cache.clear()
