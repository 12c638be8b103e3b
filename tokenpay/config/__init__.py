"""Configuration package for tokenpay."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
