"""
Plugin boundary.

Handlers from plugins are wrapped in ``GuardedHandler`` before anything
else sees them. Whatever a plugin raises or returns, callers get a
well-formed ``MigrationResult``/``MigrationStatus`` with the failure
classified.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from dbmigrator.core.error_handler import ErrorCategory, ErrorContext, ErrorHandler
from dbmigrator.core.exceptions import PartialMigrationError
from dbmigrator.utils.helpers import mask_connection_string

from .base import MigrationHandler, MigrationRequest, MigrationResult, MigrationStatus
from .config import ProviderType

logger = logging.getLogger(__name__)


def describe_error(error: BaseException) -> str:
    message = str(error) or type(error).__name__
    return mask_connection_string(message)


class GuardedHandler(MigrationHandler):
    """Wraps a plugin's handler so no fault crosses the plugin boundary."""

    def __init__(
        self,
        handler: MigrationHandler,
        plugin_name: str,
        provider_type: ProviderType,
        error_handler: Optional[ErrorHandler] = None,
    ):
        self._handler = handler
        self._plugin_name = plugin_name
        self._provider_type = provider_type
        self._error_handler = error_handler or ErrorHandler(logger)

    @property
    def provider_type(self) -> ProviderType:
        return self._provider_type

    @property
    def inner(self) -> MigrationHandler:
        return self._handler

    def _context(self, operation: str, request: MigrationRequest) -> ErrorContext:
        return ErrorContext(
            operation=operation,
            provider=self._provider_type.value,
            tenant_id=request.tenant_id,
            additional_data={"plugin": self._plugin_name},
        )

    async def _guard_result(
        self,
        operation: str,
        call: Callable[..., Awaitable[Any]],
        request: MigrationRequest,
        cancel_event: Optional[asyncio.Event],
    ) -> MigrationResult:
        try:
            result = await call(request, cancel_event)
        except Exception as e:
            info = await self._error_handler.handle_error(e, self._context(operation, request))
            applied = list(e.applied) if isinstance(e, PartialMigrationError) else []
            return MigrationResult.failed(
                describe_error(e),
                info.category,
                applied_migrations=applied,
                additional_info={"plugin": self._plugin_name, "error_type": type(e).__name__},
            )

        if not isinstance(result, MigrationResult):
            logger.error(
                f"Plugin '{self._plugin_name}' returned {type(result).__name__} from {operation}"
            )
            return MigrationResult.failed(
                f"Plugin '{self._plugin_name}' returned an invalid result from {operation}",
                ErrorCategory.PERMANENT,
            )

        if not result.success and result.error_category is None:
            category = ErrorCategory.PARTIAL_MIGRATION if result.applied_migrations else ErrorCategory.PERMANENT
            result = result.model_copy(update={"error_category": category})
        if result.error_message:
            result = result.model_copy(update={"error_message": mask_connection_string(result.error_message)})
        return result

    async def create_migration(self, request, cancel_event=None) -> MigrationResult:
        return await self._guard_result("create_migration", self._handler.create_migration, request, cancel_event)

    async def migrate(self, request, cancel_event=None) -> MigrationResult:
        return await self._guard_result("migrate", self._handler.migrate, request, cancel_event)

    async def generate_scripts(self, request, cancel_event=None) -> MigrationResult:
        return await self._guard_result("generate_scripts", self._handler.generate_scripts, request, cancel_event)

    async def get_status(self, request, cancel_event=None) -> MigrationStatus:
        try:
            status = await self._handler.get_status(request, cancel_event)
        except Exception as e:
            info = await self._error_handler.handle_error(e, self._context("get_status", request))
            return MigrationStatus.failed(describe_error(e), info.category, provider_name=self._provider_type)

        if not isinstance(status, MigrationStatus):
            logger.error(
                f"Plugin '{self._plugin_name}' returned {type(status).__name__} from get_status"
            )
            return MigrationStatus.failed(
                f"Plugin '{self._plugin_name}' returned an invalid status",
                ErrorCategory.PERMANENT,
                provider_name=self._provider_type,
            )
        if status.error_message and status.error_category is None:
            status = status.model_copy(update={"error_category": ErrorCategory.PERMANENT})
        return status

    async def test_connection(self, request, cancel_event=None) -> bool:
        try:
            ok = await self._handler.test_connection(request, cancel_event)
        except Exception as e:
            await self._error_handler.handle_error(e, self._context("test_connection", request))
            return False
        return ok is True
