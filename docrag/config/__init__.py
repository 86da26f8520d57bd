"""Configuration module -- exports Settings, the loaders, and a module-level singleton."""

from docrag.config.loader import load_config, load_settings
from docrag.config.settings import Settings

settings = Settings()

__all__ = ["Settings", "load_config", "load_settings", "settings"]
