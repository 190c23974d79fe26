"""
Configuration package for the tutor runtime.
============================================

Key Modules:
- settings: versioned RuntimeSettings with defaults, file and env layering
- env_config: non-raising environment variable helpers

Usage:
    from tutor_runtime.config import RuntimeSettings, load_settings

    settings = load_settings()
"""

from tutor_runtime.config.settings import (
    SETTINGS_SCHEMA_VERSION,
    RuntimeSettings,
    load_settings,
    save_settings,
)

__all__ = [
    "SETTINGS_SCHEMA_VERSION",
    "RuntimeSettings",
    "load_settings",
    "save_settings",
]
