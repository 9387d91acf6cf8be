"""
Configuration for the EON watcher.

Loads settings from environment variables (and .env at the project root).
"""

from backend_eon.config.settings import Settings, get_settings  # noqa: F401

__all__ = ["Settings", "get_settings"]
