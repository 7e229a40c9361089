"""
Custom exceptions for the database migrator.

This module defines the exception hierarchy used throughout the
application. Exceptions raised inside provider plugins are classified
into these types at the plugin boundary so callers only ever see
structured results.
"""

from typing import Any, Dict, List, Optional


class MigratorError(Exception):
    """Base exception class for migrator errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}


class ConfigurationError(MigratorError):
    """Raised when there's an error in configuration."""
    pass


class PluginConfigurationError(ConfigurationError):
    """Raised when the set of loaded plugins contradicts itself."""
    pass


class UnknownProviderError(ConfigurationError):
    """Raised when a provider name does not denote a known backend family."""

    def __init__(self, provider_name: str, **kwargs):
        super().__init__(f"Unknown database provider: '{provider_name}'", **kwargs)
        self.provider_name = provider_name


class ConnectionNotConfiguredError(ConfigurationError):
    """Raised when no usable connection string can be resolved."""
    pass


class ProviderNotFoundError(MigratorError):
    """Raised when no registered plugin serves the requested provider."""
    pass


class PluginLoadError(MigratorError):
    """Raised when a plugin module cannot be loaded or validated."""

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.path = path


class OperationError(MigratorError):
    """Base class for failures of a migration operation."""
    pass


class TransientOperationError(OperationError):
    """Raised for failures worth retrying (timeouts, lost connectivity)."""
    pass


class PermanentOperationError(OperationError):
    """Raised for deterministic failures that retrying cannot fix."""
    pass


class ValidationError(PermanentOperationError):
    """Raised when request validation fails."""

    def __init__(
        self,
        message: str,
        failed_checks: Optional[List[str]] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.failed_checks = failed_checks or []


class DuplicateMigrationError(PermanentOperationError):
    """Raised when a migration id collides with an existing migration."""

    def __init__(self, migration_id: str, message: Optional[str] = None, **kwargs):
        super().__init__(message or f"Duplicate migration id: {migration_id}", **kwargs)
        self.migration_id = migration_id


class PartialMigrationError(OperationError):
    """Raised when some migrations committed before a later one failed."""

    def __init__(self, message: str, applied: Optional[List[Any]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.applied = applied or []


class CancelledOperationError(OperationError):
    """Raised when an operation stops because cancellation was requested."""
    pass


class BackupError(MigratorError):
    """Raised when backup operations fail."""
    pass
