"""
Environment-driven settings.
"""

from .settings import Settings, CDCSettings, DatabaseSettings, MongoSettings, get_settings, reload_settings

__all__ = ["Settings", "CDCSettings", "DatabaseSettings", "MongoSettings", "get_settings", "reload_settings"]
