"""
Settings documents and their loader.
"""

from ai_resilience.config.loader import CONFIG_ENV_VAR, SettingsLoader, parse_document
from ai_resilience.config.settings import ResilienceSettings, build_section

__all__ = [
    "CONFIG_ENV_VAR",
    "ResilienceSettings",
    "SettingsLoader",
    "build_section",
    "parse_document",
]
