"""
Configuration dependencies for the OAuth proxy routers.
"""

from typing import Annotated

from fastapi import Depends

from oauth_proxy.core.config import AppSettings, get_settings


def get_app_settings() -> AppSettings:
    """Return the process-wide settings; tests override this to adjust TTLs."""
    return get_settings()


SettingsDependency = Annotated[AppSettings, Depends(get_app_settings)]

__all__ = ["SettingsDependency", "get_app_settings"]
