"""
Core module for the database migrator.

This module contains the exception hierarchy and the error
classification and retry machinery used throughout the application.
"""

from dbmigrator.core.exceptions import (
    MigratorError,
    ConfigurationError,
    PluginConfigurationError,
    UnknownProviderError,
    ConnectionNotConfiguredError,
    ProviderNotFoundError,
    PluginLoadError,
    OperationError,
    TransientOperationError,
    PermanentOperationError,
    ValidationError,
    DuplicateMigrationError,
    PartialMigrationError,
    CancelledOperationError,
    BackupError,
)

__all__ = [
    "MigratorError",
    "ConfigurationError",
    "PluginConfigurationError",
    "UnknownProviderError",
    "ConnectionNotConfiguredError",
    "ProviderNotFoundError",
    "PluginLoadError",
    "OperationError",
    "TransientOperationError",
    "PermanentOperationError",
    "ValidationError",
    "DuplicateMigrationError",
    "PartialMigrationError",
    "CancelledOperationError",
    "BackupError",
]
