"""
Data models for the database migrator.

This module contains the settings models and the session state models.
"""

from dbmigrator.models.settings import (
    BackupSettings,
    LoggingSettings,
    MigratorSettings,
    PathSettings,
    PluginSettings,
    TenantSettings,
    find_config_file,
    load_settings,
)
from dbmigrator.models.session import Session, SessionState, SessionStore

__all__ = [
    "BackupSettings",
    "LoggingSettings",
    "MigratorSettings",
    "PathSettings",
    "PluginSettings",
    "TenantSettings",
    "find_config_file",
    "load_settings",
    "Session",
    "SessionState",
    "SessionStore",
]
