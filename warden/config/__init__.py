"""
Configuration loading for Generation Warden.
"""

from .settings import (
    AuthorizationSettings,
    LedgerSettings,
    LoggingSettings,
    MonitorSettings,
    ReloadSettings,
    RetentionSettings,
    WardenConfig,
    apply_env_overrides,
    load_config,
)

__all__ = [
    'AuthorizationSettings',
    'LedgerSettings',
    'LoggingSettings',
    'MonitorSettings',
    'ReloadSettings',
    'RetentionSettings',
    'WardenConfig',
    'apply_env_overrides',
    'load_config',
]
