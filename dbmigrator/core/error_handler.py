"""
Error classification and retry handling for the database migrator.

This module maps exceptions onto the migrator's failure taxonomy,
decides which failures are transient, and retries transient failures
with constant or exponential backoff.
"""

import asyncio
import inspect
import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import (
    BackupError,
    CancelledOperationError,
    ConfigurationError,
    ConnectionNotConfiguredError,
    PartialMigrationError,
    PermanentOperationError,
    PluginConfigurationError,
    PluginLoadError,
    ProviderNotFoundError,
    TransientOperationError,
    UnknownProviderError,
)


class ErrorCategory(str, Enum):
    """Failure taxonomy shared by results and exceptions."""
    PROVIDER_NOT_FOUND = "provider_not_found"
    CONNECTION_NOT_CONFIGURED = "connection_not_configured"
    PLUGIN_LOAD = "plugin_load"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    BACKUP = "backup"
    PARTIAL_MIGRATION = "partial_migration"
    CANCELLED = "cancelled"
    CONFIGURATION = "configuration"


class ErrorSeverity(str, Enum):
    """Severity levels for errors."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class ErrorContext:
    """Context information for an error occurrence."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    operation: Optional[str] = None
    provider: Optional[str] = None
    tenant_id: Optional[str] = None
    additional_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ErrorInfo:
    """Classified error information."""
    error: Exception
    category: ErrorCategory
    severity: ErrorSeverity
    context: ErrorContext
    remediation_steps: List[str]
    traceback_str: str
    retry_count: int = 0
    is_transient: bool = False


class RetryPolicy(BaseModel):
    """How often and how patiently a transient failure is retried."""

    model_config = ConfigDict(frozen=True)

    max_retry_count: int = Field(default=3, ge=0, le=10)
    delay_seconds: int = Field(default=5, ge=1, le=30)
    exponential: bool = True

    @property
    def max_attempts(self) -> int:
        return self.max_retry_count + 1

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (``attempt`` counts from 0)."""
        if self.exponential:
            return float(self.delay_seconds * (2 ** attempt))
        return float(self.delay_seconds)


class ErrorHandler:
    """
    Classifies exceptions into the failure taxonomy and logs them.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._error_mappings = self._build_error_mappings()
        self._remediation_guides = self._build_remediation_guides()

    def _build_error_mappings(self) -> Dict[Type[BaseException], Dict[str, Any]]:
        """Build mapping of exception types to error categories and severities.

        Order matters: subclasses must come before their bases.
        """
        return {
            PluginConfigurationError: {
                "category": ErrorCategory.CONFIGURATION,
                "severity": ErrorSeverity.CRITICAL,
                "transient": False,
            },
            UnknownProviderError: {
                "category": ErrorCategory.PROVIDER_NOT_FOUND,
                "severity": ErrorSeverity.HIGH,
                "transient": False,
            },
            ConnectionNotConfiguredError: {
                "category": ErrorCategory.CONNECTION_NOT_CONFIGURED,
                "severity": ErrorSeverity.HIGH,
                "transient": False,
            },
            ConfigurationError: {
                "category": ErrorCategory.CONFIGURATION,
                "severity": ErrorSeverity.HIGH,
                "transient": False,
            },
            ProviderNotFoundError: {
                "category": ErrorCategory.PROVIDER_NOT_FOUND,
                "severity": ErrorSeverity.HIGH,
                "transient": False,
            },
            PluginLoadError: {
                "category": ErrorCategory.PLUGIN_LOAD,
                "severity": ErrorSeverity.MEDIUM,
                "transient": False,
            },
            TransientOperationError: {
                "category": ErrorCategory.TRANSIENT,
                "severity": ErrorSeverity.MEDIUM,
                "transient": True,
            },
            PartialMigrationError: {
                "category": ErrorCategory.PARTIAL_MIGRATION,
                "severity": ErrorSeverity.CRITICAL,
                "transient": False,
            },
            CancelledOperationError: {
                "category": ErrorCategory.CANCELLED,
                "severity": ErrorSeverity.LOW,
                "transient": False,
            },
            PermanentOperationError: {
                "category": ErrorCategory.PERMANENT,
                "severity": ErrorSeverity.HIGH,
                "transient": False,
            },
            BackupError: {
                "category": ErrorCategory.BACKUP,
                "severity": ErrorSeverity.CRITICAL,
                "transient": False,
            },
            # Standard Python exceptions
            TimeoutError: {
                "category": ErrorCategory.TRANSIENT,
                "severity": ErrorSeverity.MEDIUM,
                "transient": True,
            },
            asyncio.TimeoutError: {
                "category": ErrorCategory.TRANSIENT,
                "severity": ErrorSeverity.MEDIUM,
                "transient": True,
            },
            ConnectionError: {
                "category": ErrorCategory.TRANSIENT,
                "severity": ErrorSeverity.MEDIUM,
                "transient": True,
            },
        }

    def _build_remediation_guides(self) -> Dict[ErrorCategory, List[str]]:
        """Build remediation guides for each error category."""
        return {
            ErrorCategory.PROVIDER_NOT_FOUND: [
                "Run 'dbmigrator providers' to list the registered plugins",
                "Check the plugin directory for load warnings",
                "Mark exactly one plugin as default for the provider",
            ],
            ErrorCategory.CONNECTION_NOT_CONFIGURED: [
                "Add a connection string for the provider or tenant to the settings file",
                "Check the tenant identifier for typos",
            ],
            ErrorCategory.PLUGIN_LOAD: [
                "Check the plugin module for syntax or import errors",
                "Ensure the module defines exactly one MigrationPlugin subclass",
            ],
            ErrorCategory.TRANSIENT: [
                "Check that the database server is reachable",
                "Increase command_timeout or the retry policy",
            ],
            ErrorCategory.PERMANENT: [
                "Review the migration name and script contents",
                "Inspect the SQL error reported by the database",
            ],
            ErrorCategory.BACKUP: [
                "Ensure the backup directory is writable and has free space",
                "Check that the backup tool (pg_dump, sqlcmd) is installed",
                "Re-run with --no-backup only if another backup exists",
            ],
            ErrorCategory.PARTIAL_MIGRATION: [
                "Fix the failing migration script; earlier migrations stay applied",
                "Run 'dbmigrator status' to see what remains pending",
            ],
            ErrorCategory.CANCELLED: [
                "Re-run the command to apply the remaining migrations",
            ],
            ErrorCategory.CONFIGURATION: [
                "Check configuration file syntax and required fields",
                "Verify file paths and permissions",
            ],
        }

    def categorize_error(self, error: BaseException, context: Optional[ErrorContext] = None) -> ErrorInfo:
        """
        Categorize an error and create error information.

        Args:
            error: The exception that occurred
            context: Optional context information

        Returns:
            ErrorInfo object with categorized error details
        """
        mapping = self._error_mappings.get(type(error))

        if not mapping:
            for exc_type, exc_mapping in self._error_mappings.items():
                if isinstance(error, exc_type):
                    mapping = exc_mapping
                    break

        if not mapping:
            # Unknown faults are assumed deterministic
            mapping = {
                "category": ErrorCategory.PERMANENT,
                "severity": ErrorSeverity.HIGH,
                "transient": False,
            }

        category = mapping["category"]
        return ErrorInfo(
            error=error,
            category=category,
            severity=mapping["severity"],
            context=context or ErrorContext(),
            remediation_steps=self._remediation_guides.get(category, []),
            traceback_str="".join(traceback.format_exception(type(error), error, error.__traceback__)),
            is_transient=mapping["transient"],
        )

    def remediation_for(self, category: ErrorCategory) -> List[str]:
        return list(self._remediation_guides.get(category, []))

    async def handle_error(
        self,
        error: BaseException,
        context: Optional[ErrorContext] = None,
        retry_count: int = 0,
    ) -> ErrorInfo:
        """Categorize and log an error."""
        error_info = self.categorize_error(error, context)
        error_info.retry_count = retry_count
        self._log_error(error_info)
        return error_info

    def _log_error(self, error_info: ErrorInfo) -> None:
        """Log error information with appropriate level."""
        log_data = {
            "error_type": type(error_info.error).__name__,
            "error_message": str(error_info.error),
            "category": error_info.category.value,
            "severity": error_info.severity.value,
            "operation": error_info.context.operation,
            "provider": error_info.context.provider,
            "tenant_id": error_info.context.tenant_id,
            "retry_count": error_info.retry_count,
            "is_transient": error_info.is_transient,
        }
        message = f"{error_info.category.value} error: {error_info.error}"

        if error_info.severity == ErrorSeverity.CRITICAL:
            self.logger.critical(message, extra=log_data)
        elif error_info.severity == ErrorSeverity.HIGH:
            self.logger.error(message, extra=log_data)
        elif error_info.severity == ErrorSeverity.MEDIUM:
            self.logger.warning(message, extra=log_data)
        else:
            self.logger.info(message, extra=log_data)

        if error_info.severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL):
            self.logger.debug("Error traceback:\n%s", error_info.traceback_str)


class RetryHandler:
    """
    Retries transient failures according to a RetryPolicy.
    """

    def __init__(self, error_handler: Optional[ErrorHandler] = None):
        self.error_handler = error_handler or ErrorHandler()
        self.logger = logging.getLogger(__name__)

    async def retry_with_backoff(
        self,
        func: Callable,
        *args,
        retry_policy: Optional[RetryPolicy] = None,
        context: Optional[ErrorContext] = None,
        retry_if: Optional[Callable[[Any], bool]] = None,
        **kwargs
    ) -> Any:
        """
        Execute a function, retrying transient failures with backoff.

        Args:
            func: Function or coroutine function to execute
            *args: Positional arguments for the function
            retry_policy: Retry policy, defaults to ``RetryPolicy()``
            context: Error context information
            retry_if: Predicate over a returned value; a true result is
                treated as a transient failure and retried
            **kwargs: Keyword arguments for the function

        Returns:
            Result of the last attempt

        Raises:
            The exception of the last attempt if it raised a
            non-transient error or all attempts are exhausted
        """
        policy = retry_policy or RetryPolicy()

        for attempt in range(policy.max_attempts):
            last_attempt = attempt == policy.max_attempts - 1
            try:
                result = func(*args, **kwargs)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                error_info = await self.error_handler.handle_error(e, context, retry_count=attempt)
                if not error_info.is_transient:
                    self.logger.info(f"{type(e).__name__} is not retryable")
                    raise
                if last_attempt:
                    raise
            else:
                if retry_if is None or not retry_if(result) or last_attempt:
                    return result

            delay = policy.delay_for(attempt)
            self.logger.info(
                f"Retrying in {delay:.0f} seconds (attempt {attempt + 2}/{policy.max_attempts})"
            )
            await asyncio.sleep(delay)
