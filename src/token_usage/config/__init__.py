"""Configuration module for the token usage service."""

from token_usage.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
