"""
Configuration management: config.yaml loading, environment resolution and
typed service settings.
"""

from filepoll.config.loader import Config, load_config
from filepoll.config.resolver import resolve_config
from filepoll.config.settings import ServiceSettings

__all__ = [
    "load_config",
    "Config",
    "resolve_config",
    "ServiceSettings",
]
