"""Utilities package initialization."""
from .config import (
    GlobalSettings,
    enabled_sources,
    get_settings,
    load_sources,
    load_yaml_config,
    parse_sources,
)
from .logging import log_poll_outcome, setup_logger

__all__ = [
    "GlobalSettings",
    "enabled_sources",
    "get_settings",
    "load_sources",
    "load_yaml_config",
    "parse_sources",
    "log_poll_outcome",
    "setup_logger",
]
