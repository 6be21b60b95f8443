"""Configuration package for STK Push reconciliation."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
