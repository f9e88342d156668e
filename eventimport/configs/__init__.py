from eventimport.configs.config import Config, PipelineConfig
from eventimport.configs.settings import Settings, get_settings

__all__ = ["Config", "PipelineConfig", "Settings", "get_settings"]
