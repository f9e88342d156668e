"""
Unit tests for the config module.

Tests for placeholder substitution and pipeline.yaml loading.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from eventimport.configs.config import Config, PipelineConfig, substitute_settings
from eventimport.configs.settings import Settings
from eventimport.schemas.geocoding import ProviderType

# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def settings():
    return Settings(
        DATABASE_URL="sqlite://",
        GEOCODING_GOOGLE_MAPS_API_KEY="g-key",
        GEOCODING_USER_AGENT="tests-agent",
    )


@pytest.fixture(autouse=True)
def clear_config_cache():
    Config.clear_cache()
    yield
    Config.clear_cache()


# =============================================================================
# TEST CLASSES
# =============================================================================


class TestSubstituteSettings:
    """Tests for ${VAR} placeholder substitution."""

    def test_plain_value(self, settings):
        """Plain settings should be inserted as text."""
        assert substitute_settings("agent: ${GEOCODING_USER_AGENT}", settings) == "agent: tests-agent"

    def test_secret_value_is_unwrapped(self, settings):
        """SecretStr settings should be inserted unmasked."""
        assert substitute_settings("key: ${GEOCODING_GOOGLE_MAPS_API_KEY}", settings) == "key: g-key"

    def test_unset_value_becomes_empty(self, settings):
        """Unset optional settings should become empty strings."""
        assert substitute_settings('key: "${GEOCODING_OPENCAGE_API_KEY}"', settings) == 'key: ""'

    def test_unknown_placeholder_is_left(self, settings):
        """Placeholders that are not settings should be left untouched."""
        assert substitute_settings("x: ${NOT_A_SETTING}", settings) == "x: ${NOT_A_SETTING}"


class TestLoadPipelineConfig:
    """Tests for Config.load_pipeline_config."""

    def test_default_file_loads(self, settings):
        """The shipped pipeline.yaml should validate."""
        config = Config.load_pipeline_config(settings)
        assert isinstance(config, PipelineConfig)
        assert config.batch_sizes.duplicate_analysis == 5000
        assert config.approval.lock_timeout_hours == 72

    def test_default_providers(self, settings):
        """Providers should be configured with substituted credentials."""
        config = Config.load_pipeline_config(settings)
        providers = {p.name: p for p in config.geocoding.providers}
        assert providers["google"].type == ProviderType.GOOGLE
        assert providers["google"].config.api_key == "g-key"
        assert providers["opencage"].config.api_key is None
        assert providers["nominatim"].config.user_agent == "tests-agent"

    def test_custom_path(self, settings, tmp_path):
        """A custom YAML file should override defaults and keep the rest."""
        path = tmp_path / "pipeline.yaml"
        path.write_text("batch_sizes:\n  geocoding: 7\nretry:\n  backoff: fixed\n", encoding="utf-8")
        config = Config.load_pipeline_config(settings, path)
        assert config.batch_sizes.geocoding == 7
        assert config.batch_sizes.event_creation == 1000
        assert config.retry.backoff == "fixed"

    def test_empty_file_gives_defaults(self, settings, tmp_path):
        """An empty YAML file should produce the default configuration."""
        path = tmp_path / "pipeline.yaml"
        path.write_text("", encoding="utf-8")
        assert Config.load_pipeline_config(settings, path) == PipelineConfig()

    def test_result_is_cached(self, settings, tmp_path):
        """Loading the same path twice should return the cached object."""
        path = tmp_path / "pipeline.yaml"
        path.write_text("{}", encoding="utf-8")
        assert Config.load_pipeline_config(settings, path) is Config.load_pipeline_config(settings, path)

    def test_missing_file(self, settings):
        """A missing file should raise FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            Config.load_pipeline_config(settings, Path("/nonexistent/pipeline.yaml"))

    def test_invalid_values(self, settings, tmp_path):
        """Invalid values should fail validation."""
        path = tmp_path / "pipeline.yaml"
        path.write_text("retry:\n  backoff: linear\n", encoding="utf-8")
        with pytest.raises(ValidationError):
            Config.load_pipeline_config(settings, path)
