"""Environment-driven settings for the session audio service."""

from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
