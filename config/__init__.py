"""Configuration module for the request/vote sync engine."""

from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
